"""
shared/utils/security.py
JWT verification for bearer tokens, plus issuance for operators and tests.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings

# Claims every access token must carry
REQUIRED_CLAIMS = {"require_sub": True, "require_exp": True, "require_jti": True}


def create_access_token(
    user_id: str,
    role: str,
    email: str,
    expires_minutes: Optional[int] = None,
) -> tuple[str, str]:
    """
    Create a signed access token for a client, worker or admin.
    Returns (token, jti).
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "email": email,
        "jti": jti,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes or settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
        "type": "access",
    }
    token = jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, jti


def verify_access_token(token: str) -> dict:
    """Raises JWTError on a bad signature, an expired token or a non-access token."""
    payload = jwt.decode(
        token,
        settings.JWT_SECRET_KEY,
        algorithms=[settings.JWT_ALGORITHM],
        options=REQUIRED_CLAIMS,
    )
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    return payload
