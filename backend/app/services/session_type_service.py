"""
Session type catalogue.
"""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import BookingValidationError, NotFoundError
from app.core.logging import get_logger
from app.core.security import Actor
from app.models.booking import Booking
from app.models.session_type import ALLOWED_DURATIONS, SessionType

logger = get_logger(__name__)

# Fields that may change after a booking references the type
MUTABLE_WHEN_REFERENCED = {"price_cents", "description", "is_active"}


async def list_session_types(db: AsyncSession, actor: Actor) -> list[SessionType]:
    query = select(SessionType).order_by(SessionType.duration_minutes, SessionType.name)
    if not actor.is_staff:
        query = query.where(SessionType.is_active.is_(True))
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_session_type(db: AsyncSession, session_type_id: int) -> SessionType:
    session_type = await db.get(SessionType, session_type_id)
    if session_type is None:
        raise NotFoundError(f"Session type {session_type_id} not found")
    return session_type


def _validate(duration_minutes: Optional[int], capacity: Optional[int], price_cents: Optional[int]) -> None:
    if duration_minutes is not None and duration_minutes not in ALLOWED_DURATIONS:
        raise BookingValidationError(f"duration_minutes must be one of {list(ALLOWED_DURATIONS)}")
    if capacity is not None and capacity < 1:
        raise BookingValidationError("capacity must be at least 1")
    if price_cents is not None and price_cents < 0:
        raise BookingValidationError("price_cents cannot be negative")


async def create_session_type(
    db: AsyncSession,
    name: str,
    duration_minutes: int,
    capacity: int = 1,
    price_cents: int = 0,
    description: Optional[str] = None,
) -> SessionType:
    _validate(duration_minutes, capacity, price_cents)
    session_type = SessionType(
        name=name,
        description=description,
        duration_minutes=duration_minutes,
        capacity=capacity,
        price_cents=price_cents,
        is_active=True,
        version=1,
    )
    db.add(session_type)
    await db.flush()
    await db.refresh(session_type)
    logger.info("session_type_created", session_type_id=session_type.id, name=name, capacity=capacity)
    return session_type


async def is_referenced(db: AsyncSession, session_type_id: int) -> bool:
    result = await db.execute(select(func.count(Booking.id)).where(Booking.session_type_id == session_type_id))
    return result.scalar_one() > 0


async def update_session_type(db: AsyncSession, session_type_id: int, changes: dict) -> SessionType:
    session_type = await get_session_type(db, session_type_id)
    changes = {k: v for k, v in changes.items() if v is not None}
    _validate(changes.get("duration_minutes"), changes.get("capacity"), changes.get("price_cents"))

    locked = set(changes) - MUTABLE_WHEN_REFERENCED
    if locked and await is_referenced(db, session_type_id):
        raise BookingValidationError(
            f"Cannot change {', '.join(sorted(locked))} on a session type that has bookings"
        )

    for field, value in changes.items():
        setattr(session_type, field, value)
    # Capacity or duration edits invalidate any in-flight capacity check
    session_type.version = session_type.version + 1
    await db.flush()
    await db.refresh(session_type)
    logger.info("session_type_updated", session_type_id=session_type_id, fields=sorted(changes))
    return session_type
