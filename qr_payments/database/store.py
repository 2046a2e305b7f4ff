"""
Row-store primitives shared by the session and transaction managers.

State changes never read-then-write. ``transition`` issues a single
``UPDATE ... WHERE <key> AND status IN (<expected>)`` and reports whether the
row moved, so two concurrent callers racing on the same pre-state cannot
both succeed.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, List, Optional, Type, TypeVar

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from qr_payments.core.states import check_transition
from qr_payments.database.models import Base, utcnow

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

DEFAULT_LIST_LIMIT = 50


def _key_column(model: Type[Base]) -> Any:
    return getattr(model, model.natural_key)


async def find_by_key(
    db: AsyncSession, model: Type[ModelT], key: str, refresh: bool = False
) -> Optional[ModelT]:
    """
    Load a row by its natural key.

    Args:
        db: Database session
        model: Mapped class exposing ``natural_key``
        key: Natural key value
        refresh: Overwrite any identity-map copy with the stored row

    Returns:
        The row, or None if absent
    """
    stmt = select(model).where(_key_column(model) == key)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def conditional_update(
    db: AsyncSession, model: Type[Base], key: str, *conditions: Any, **values: Any
) -> bool:
    """
    Update one row only if ``conditions`` still hold at write time.

    Returns:
        True if exactly one row was updated
    """
    assignments = {getattr(model, name): value for name, value in values.items()}
    assignments[model.updated_at] = utcnow()
    stmt = (
        update(model)
        .where(_key_column(model) == key, *conditions)
        .values(assignments)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def transition(
    db: AsyncSession,
    model: Type[Base],
    key: str,
    from_states: Iterable[Enum],
    to_state: Enum,
    conditions: Iterable[Any] = (),
    **values: Any,
) -> bool:
    """
    Compare-and-swap the status of one row.

    Args:
        db: Database session
        model: Mapped class exposing ``natural_key`` and ``TRANSITIONS``
        key: Natural key value
        from_states: Statuses the row must currently be in
        to_state: Status to move to
        conditions: Extra predicates that must also hold at write time
        **values: Additional columns to set in the same statement

    Returns:
        True if the row moved, False if it was absent or in another status

    Raises:
        InvalidTransitionError: If the move is not an edge of the model's table
    """
    states = check_transition(model.TRANSITIONS, from_states, to_state)
    moved = await conditional_update(
        db, model, key, model.status.in_(states), *conditions, status=to_state, **values
    )
    if not moved:
        logger.info(
            "transition_not_applied",
            entity=model.__tablename__,
            key=key,
            expected=sorted(s.value for s in states),
            target=to_state.value,
        )
    return moved


async def delete_matching(db: AsyncSession, model: Type[Base], *conditions: Any) -> int:
    """Delete every row matching ``conditions`` and return how many were removed."""
    stmt = delete(model).where(*conditions).execution_options(synchronize_session=False)
    result = await db.execute(stmt)
    return result.rowcount or 0


async def list_filtered(
    db: AsyncSession,
    model: Type[ModelT],
    *conditions: Any,
    status: Optional[Enum] = None,
    type: Optional[Enum] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    limit: int = DEFAULT_LIST_LIMIT,
) -> List[ModelT]:
    """
    List rows newest first, narrowed by optional status/type/creation range.

    ``to_date`` is inclusive.
    """
    stmt = select(model).where(*conditions)
    if status is not None:
        stmt = stmt.where(model.status == status)
    if type is not None:
        stmt = stmt.where(model.type == type)
    if from_date is not None:
        stmt = stmt.where(model.created_at >= from_date)
    if to_date is not None:
        stmt = stmt.where(model.created_at <= to_date)
    stmt = stmt.order_by(model.created_at.desc(), model.id.desc()).limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())
