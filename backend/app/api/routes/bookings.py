"""
Booking endpoints with concurrency-safe slot reservation.

Each write commits before the calendar sync is enqueued, so the worker
always reads the committed booking state.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.booking import (
    BookingCancel,
    BookingCancelResponse,
    BookingComplete,
    BookingCreate,
    BookingResponse,
    BookingUpdate,
)
from app.services import booking_service
from app.services.booking_service import BookingRequest
from app.services.cache_service import invalidate_availability_cache
from app.core.exceptions import ForbiddenError
from app.core.security import Actor, get_current_actor, require_staff
from app.core.logging import get_logger
from app.core.metrics import booking_latency
from app.workers.calendar_sync_worker import get_sync_queue

logger = get_logger(__name__)
router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    booking_data: BookingCreate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Book a session slot.

    The slot must be offered by the availability templates (staff may book
    any time), must have room for the session type, and the customer must
    have a payable resource: subscription quota, a session credit, or a
    staff override. Concurrent requests for the last place are settled with
    optimistic locking; the loser gets a 409.
    """
    with booking_latency.time():
        booking = await booking_service.create_booking(
            db,
            actor,
            BookingRequest(
                session_type_id=booking_data.session_type_id,
                start_time=booking_data.start_time,
                notes=booking_data.notes,
                athlete_id=booking_data.athlete_id,
                customer_id=booking_data.customer_id,
            ),
        )
        await db.commit()

    get_sync_queue().enqueue(booking.id)
    await invalidate_availability_cache()
    return booking


@router.get("/", response_model=list[BookingResponse])
async def list_bookings(
    start: Optional[datetime] = Query(None, description="Bookings starting at or after"),
    end: Optional[datetime] = Query(None, description="Bookings starting at or before"),
    status_filter: Optional[str] = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Customers see their own bookings; staff see everyone's."""
    return await booking_service.list_bookings(db, actor, start, end, status_filter)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await booking_service.get_booking(db, actor, booking_id)


@router.patch("/{booking_id}", response_model=BookingResponse)
async def update_booking(
    booking_id: int,
    update_data: BookingUpdate,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Edit notes, or (staff) move the booking to a new time."""
    booking, changed = await booking_service.update_booking(
        db,
        actor,
        booking_id,
        notes=update_data.notes,
        start_time=update_data.start_time,
        end_time=update_data.end_time,
    )
    await db.commit()

    if changed:
        get_sync_queue().enqueue(booking.id)
        await invalidate_availability_cache()
    return booking


@router.post("/{booking_id}/cancel", response_model=BookingCancelResponse)
async def cancel_booking(
    booking_id: int,
    cancel_data: Optional[BookingCancel] = None,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Cancel a booking. Customers must cancel before the notice window;
    staff may cancel at any time.
    """
    cancel_data = cancel_data or BookingCancel()
    if cancel_data.restore_credit is not None and not actor.is_staff:
        raise ForbiddenError("Only staff can choose whether a credit is restored")

    booking = await booking_service.cancel_booking(
        db,
        actor,
        booking_id,
        reason=cancel_data.reason,
        restore_credit=cancel_data.restore_credit,
    )
    await db.commit()

    get_sync_queue().enqueue(booking.id)
    await invalidate_availability_cache()
    return BookingCancelResponse(
        message="Booking cancelled successfully",
        booking_id=booking.id,
        status=booking.status,
    )


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: int,
    complete_data: Optional[BookingComplete] = None,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Record attendance (staff only): completed or no_show."""
    complete_data = complete_data or BookingComplete()
    booking = await booking_service.record_attendance(db, actor, booking_id, complete_data.status)
    await db.commit()
    return booking
