"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
Bearer JWTs are issued elsewhere; this service only verifies them, loads the
user and checks the role (client, worker or admin).
"""

import uuid
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.models.models import User, UserRole
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


def _unauthenticated(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


class TokenData:
    """Claims of a verified access token."""

    def __init__(self, payload: dict):
        self.user_id: uuid.UUID = uuid.UUID(payload["sub"])
        self.role: UserRole = UserRole(payload["role"])
        self.email: str = payload["email"]
        self.jti: str = payload["jti"]


async def get_token_data(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenData:
    if not credentials:
        raise _unauthenticated("Authentication required")
    try:
        return TokenData(verify_access_token(credentials.credentials))
    except (JWTError, KeyError, ValueError):
        raise _unauthenticated("Invalid or expired token")


async def get_current_user(
    token_data: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db.get(User, token_data.user_id)
    if user is None:
        raise _unauthenticated("User not found")
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return user


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        current_user: User = Depends(get_current_user),
    ) -> User:
        if current_user.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return current_user


require_client = RoleRequired(UserRole.CLIENT)
require_worker = RoleRequired(UserRole.WORKER)
require_admin = RoleRequired(UserRole.ADMIN)


def is_party(user: User, *party_ids: Optional[uuid.UUID]) -> bool:
    """Admins may read any record; everyone else only records they are named on."""
    return user.role == UserRole.ADMIN or user.id in party_ids
