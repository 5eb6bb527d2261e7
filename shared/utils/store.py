"""
shared/utils/store.py
Conditional-update helpers for the document store boundary.

Every state change is written as UPDATE ... WHERE id = :id AND status IN (...),
so a write based on a stale read affects zero rows instead of clobbering a
concurrent transition.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Type, TypeVar

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotFound

ModelT = TypeVar("ModelT")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


async def get_or_404(db: AsyncSession, model: Type[ModelT], entity_id: Any, label: str) -> ModelT:
    result = await db.execute(select(model).where(model.id == entity_id))
    entity = result.scalar_one_or_none()
    if entity is None:
        raise NotFound(f"{label} not found")
    return entity


async def compare_and_set(
    db: AsyncSession,
    model: Type[ModelT],
    entity_id: Any,
    *,
    expected: Iterable[Any],
    column: str = "status",
    null_columns: Iterable[str] = (),
    **values: Any,
) -> bool:
    """
    Apply `values` only if `column` still holds one of `expected` and every
    column in `null_columns` is still NULL. Returns False when the
    precondition no longer holds.
    """
    conditions = [getattr(model, column).in_(list(expected))]
    conditions += [getattr(model, name).is_(None) for name in null_columns]
    stmt = (
        update(model)
        .where(model.id == entity_id, *conditions)
        .values(**values)
        .returning(model.id)
        .execution_options(synchronize_session=False)
    )
    # Matched rows come back through RETURNING; rowcount is unreliable with it on SQLite
    if (await db.execute(stmt)).scalar_one_or_none() is None:
        return False
    # Bring any loaded instance in line with the row we just wrote
    await db.get(model, entity_id, populate_existing=True)
    return True

