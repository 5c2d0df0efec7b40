"""
Booking service with concurrency-safe slot reservation.

CONCURRENCY STRATEGY: Optimistic Locking with Retry
====================================================

Problem:
  Two customers request the last free place in a slot simultaneously.
  Both count N-1 occupying bookings, both insert.
  Result: Overbooking.

Solution:
  The session type row carries a `version` column. Every insert or
  reschedule for that type is committed together with

    UPDATE session_types SET version = version + 1
    WHERE id = :session_type_id AND version = :seen_version

  1. Read the session type and its current version
  2. Count occupying bookings overlapping [start, end); reject if full
  3. Resolve eligibility (subscription quota, credit, staff override)
  4. Claim the version; rows_affected == 0 means another booking of this
     type committed in between -> rollback, re-read, retry
  5. Debit the chosen resource (guarded updates, see eligibility_service)
  6. Insert the booking

  The version claim and the insert live in one transaction, so the count
  that was checked is the count that holds at commit. Under PostgreSQL
  READ COMMITTED the losing UPDATE blocks on the winner's row lock and then
  matches zero rows, so it never reads a stale count twice.

  The debit and the booking row share that transaction as well: there is
  never a consumed credit without a booking, nor a booking without its
  debit.

Calendar sync is not triggered here. Routes enqueue it after commit.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.exceptions import (
    BookingValidationError,
    CapacityConflictError,
    ContentionError,
    EligibilityDeniedError,
    ForbiddenError,
    NotFoundError,
)
from app.core.logging import get_logger
from app.core.metrics import record_booking_attempt, record_db_retry
from app.core.security import Actor
from app.models.booking import Booking
from app.models.session_type import SessionType
from app.services import availability_service, booking_lifecycle, capacity_service, eligibility_service
from app.services.eligibility_service import Denied, OptimisticConflict
from app.services.policy_service import SchedulingPolicy, load_policy
from app.services.user_service import ensure_user, get_user

logger = get_logger(__name__)


@dataclass
class BookingRequest:
    session_type_id: int
    start_time: datetime
    notes: Optional[str] = None
    athlete_id: Optional[int] = None
    customer_id: Optional[int] = None  # staff only: book on behalf of


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


async def _claim_session_type(db: AsyncSession, session_type_id: int, seen_version: int) -> bool:
    result = await db.execute(
        update(SessionType)
        .where(SessionType.id == session_type_id, SessionType.version == seen_version)
        .values(version=SessionType.version + 1)
    )
    return result.rowcount == 1


async def _load_session_type(db: AsyncSession, session_type_id: int) -> Optional[SessionType]:
    result = await db.execute(
        select(SessionType)
        .where(SessionType.id == session_type_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _validate_request(
    db: AsyncSession,
    actor: Actor,
    request: BookingRequest,
    policy: SchedulingPolicy,
    now: datetime,
) -> tuple[SessionType, int]:
    if request.start_time.tzinfo is None:
        raise BookingValidationError("start_time must include a timezone offset")

    if request.customer_id is not None and request.customer_id != actor.id and not actor.is_staff:
        raise ForbiddenError("Only staff can book on behalf of another customer")

    session_type = await _load_session_type(db, request.session_type_id)
    if session_type is None or not session_type.is_active:
        raise BookingValidationError("Invalid session type")

    if request.start_time < policy.earliest_bookable(now):
        raise BookingValidationError(
            f"Booking must be at least {policy.min_booking_notice_hours} hours in advance"
        )
    if request.start_time > policy.latest_bookable(now):
        raise BookingValidationError(
            f"Bookings can be made at most {policy.booking_window_days} days ahead"
        )

    # Staff may book outside the published templates (quick-book)
    if not actor.is_staff:
        offered = await availability_service.is_offered_slot(
            db, policy, request.start_time, session_type.duration_minutes, now
        )
        if not offered:
            raise BookingValidationError("Requested time is not an available slot")

    if actor.is_staff and request.customer_id is not None:
        customer = await get_user(db, request.customer_id)
        return session_type, customer.id
    return session_type, actor.id


async def create_booking(
    db: AsyncSession,
    actor: Actor,
    request: BookingRequest,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Reserve a slot, debit the paying resource and confirm the booking.
    Retries up to BOOKING_MAX_RETRY_ATTEMPTS on version conflicts.
    """
    now = _now(now)
    settings = get_settings()
    policy = await load_policy(db)

    try:
        session_type, customer_id = await _validate_request(db, actor, request, policy, now)
    except BookingValidationError:
        record_booking_attempt("validation")
        raise

    start = request.start_time.astimezone(timezone.utc)
    end = start + timedelta(minutes=session_type.duration_minutes)
    max_attempts = settings.BOOKING_MAX_RETRY_ATTEMPTS

    for attempt in range(1, max_attempts + 1):
        # A rollback from a previous attempt also discards the user mirror
        if customer_id == actor.id:
            await ensure_user(db, actor)

        # Step 1: Read current session type state
        session_type = await _load_session_type(db, request.session_type_id)
        if session_type is None or not session_type.is_active:
            record_booking_attempt("validation")
            raise BookingValidationError("Invalid session type")
        seen_version = session_type.version

        # Step 2: Capacity
        capacity = await capacity_service.check_capacity(
            db, session_type.id, session_type.capacity, start, end
        )
        if not capacity.has_room:
            logger.warning(
                "booking_failed_slot_full",
                session_type_id=session_type.id,
                start_time=start.isoformat(),
                occupied=capacity.occupied,
                capacity=capacity.capacity,
            )
            record_booking_attempt("capacity_conflict")
            raise CapacityConflictError(occupied=capacity.occupied)

        # Step 3: Eligibility (read only)
        decision = await eligibility_service.resolve(db, actor, customer_id, start, policy, now)
        if isinstance(decision, Denied):
            logger.info("booking_denied", customer_id=customer_id, code=decision.code)
            record_booking_attempt("denied")
            raise EligibilityDeniedError(decision.reason, decision.code)

        # Step 4: Optimistic lock on the session type
        if not await _claim_session_type(db, session_type.id, seen_version):
            logger.info(
                "booking_retry",
                session_type_id=session_type.id,
                attempt=attempt,
                reason="version_conflict",
            )
            record_db_retry("session_type")
            await db.rollback()
            continue

        # Step 5: Debit
        try:
            funding = await eligibility_service.consume(db, decision, customer_id, now)
        except OptimisticConflict as conflict:
            logger.info(
                "booking_retry",
                session_type_id=session_type.id,
                attempt=attempt,
                reason=f"{conflict.resource}_conflict",
            )
            await db.rollback()
            continue

        # Step 6: Create booking record and auto-confirm
        booking = Booking(
            customer_id=customer_id,
            athlete_id=request.athlete_id,
            session_type_id=session_type.id,
            start_time=start,
            end_time=end,
            status="pending",
            notes=request.notes,
            funding_source=funding.source,
            subscription_id=funding.subscription_id,
            credit_id=funding.credit_id,
            calendar_sync_status="pending",
        )
        booking_lifecycle.apply_transition(booking, "confirmed", actor.role)
        db.add(booking)
        await db.flush()
        await db.refresh(booking)

        logger.info(
            "booking_created",
            booking_id=booking.id,
            customer_id=customer_id,
            session_type_id=session_type.id,
            start_time=start.isoformat(),
            funding_source=funding.source,
            attempt=attempt,
        )
        record_booking_attempt("success")
        return booking

    record_booking_attempt("error")
    raise ContentionError()


async def get_booking(db: AsyncSession, actor: Actor, booking_id: int) -> Booking:
    booking = await db.get(Booking, booking_id, populate_existing=True)
    # Customers cannot tell someone else's booking from a missing one
    if booking is None or (not actor.is_staff and booking.customer_id != actor.id):
        raise NotFoundError("Booking not found")
    return booking


async def list_bookings(
    db: AsyncSession,
    actor: Actor,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    status: Optional[str] = None,
) -> list[Booking]:
    query = select(Booking).order_by(Booking.start_time.asc())

    # Non-staff users can only see their own bookings
    if not actor.is_staff:
        query = query.where(Booking.customer_id == actor.id)
    if start is not None:
        query = query.where(Booking.start_time >= start)
    if end is not None:
        query = query.where(Booking.start_time <= end)
    if status is not None:
        query = query.where(Booking.status == status)

    result = await db.execute(query)
    return list(result.scalars().all())


async def cancel_booking(
    db: AsyncSession,
    actor: Actor,
    booking_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    restore_credit: Optional[bool] = None,
) -> Booking:
    """
    Cancel a booking under the notice policy.

    Subscription quota frees itself because usage is counted live. A consumed
    credit is only returned when restore_credit is on (defaults to the
    REFUND_CREDIT_ON_CANCEL setting); otherwise it is forfeited.
    """
    now = _now(now)
    policy = await load_policy(db)
    if restore_credit is None:
        restore_credit = get_settings().REFUND_CREDIT_ON_CANCEL

    booking = await get_booking(db, actor, booking_id)
    booking_lifecycle.ensure_can_cancel(booking, actor, policy, now)
    booking_lifecycle.mark_cancelled(booking, actor, now, reason)

    credit_restored = False
    if restore_credit and booking.funding_source == "credit" and booking.credit_id is not None:
        credit_restored = await eligibility_service.restore_credit(db, booking.credit_id)

    await db.flush()
    await db.refresh(booking)

    logger.info(
        "booking_cancelled",
        booking_id=booking.id,
        customer_id=booking.customer_id,
        cancelled_by=actor.id,
        actor_role=actor.role,
        funding_source=booking.funding_source,
        credit_restored=credit_restored,
    )
    return booking


async def record_attendance(
    db: AsyncSession,
    actor: Actor,
    booking_id: int,
    status: str = "completed",
    now: Optional[datetime] = None,
) -> Booking:
    now = _now(now)
    booking = await get_booking(db, actor, booking_id)
    booking_lifecycle.ensure_can_record_attendance(booking, actor, status, now)
    booking_lifecycle.apply_transition(booking, status, actor.role)
    await db.flush()
    await db.refresh(booking)

    logger.info("booking_attendance_recorded", booking_id=booking.id, status=status)
    return booking


async def update_booking(
    db: AsyncSession,
    actor: Actor,
    booking_id: int,
    notes: Optional[str] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> tuple[Booking, bool]:
    """
    Customers may edit notes on their own bookings. Staff may also move the
    slot; the new slot goes through the same version-guarded capacity check
    as creation. Returns the booking and whether calendar-relevant fields
    changed.
    """
    booking = await get_booking(db, actor, booking_id)

    if not actor.is_staff and (start_time is not None or end_time is not None):
        raise ForbiddenError("Only staff can change booking times")

    changed = False
    if notes is not None and notes != booking.notes:
        booking.notes = notes
        changed = True

    if start_time is None and end_time is None:
        if changed:
            if not booking.is_cancelled:
                booking.calendar_sync_status = "pending"
            await db.flush()
            await db.refresh(booking)
        return booking, changed

    if booking.status not in ("pending", "confirmed"):
        raise BookingValidationError(f"Cannot reschedule a {booking.status} booking")

    for value in (start_time, end_time):
        if value is not None and value.tzinfo is None:
            raise BookingValidationError("Times must include a timezone offset")

    booking_id = booking.id
    max_attempts = get_settings().BOOKING_MAX_RETRY_ATTEMPTS
    for attempt in range(1, max_attempts + 1):
        booking = await get_booking(db, actor, booking_id)
        session_type = await _load_session_type(db, booking.session_type_id)
        seen_version = session_type.version

        new_start = (start_time or booking.start_time).astimezone(timezone.utc)
        if end_time is not None:
            new_end = end_time.astimezone(timezone.utc)
        elif start_time is not None:
            new_end = new_start + timedelta(minutes=session_type.duration_minutes)
        else:
            new_end = booking.end_time
        if new_end <= new_start:
            raise BookingValidationError("end_time must be after start_time")

        capacity = await capacity_service.check_capacity(
            db, session_type.id, session_type.capacity, new_start, new_end, exclude_booking_id=booking.id
        )
        if not capacity.has_room:
            raise CapacityConflictError(occupied=capacity.occupied)

        if not await _claim_session_type(db, session_type.id, seen_version):
            logger.info("booking_reschedule_retry", booking_id=booking_id, attempt=attempt)
            record_db_retry("session_type")
            await db.rollback()
            continue

        if notes is not None:
            booking.notes = notes
        booking.start_time = new_start
        booking.end_time = new_end
        booking.calendar_sync_status = "pending"
        await db.flush()
        await db.refresh(booking)

        logger.info(
            "booking_rescheduled",
            booking_id=booking.id,
            start_time=new_start.isoformat(),
            end_time=new_end.isoformat(),
            by=actor.id,
        )
        return booking, True

    raise ContentionError("Reschedule failed due to high demand. Please try again.")
