"""
Booking state machine.

    pending ──> confirmed ──> completed | no_show
       │            │
       └────────────┴──> cancelled

New bookings are auto-confirmed on creation. `pending` exists for a future
manual-approval flow. completed/no_show are staff-only and only once the
session has started. Non-staff cancellation requires
hours_until(start) >= cancellation_notice_hours; staff may cancel any time.
"""

from datetime import datetime
from typing import Optional

from app.core.exceptions import ForbiddenError, InvalidTransitionError, PolicyViolationError
from app.core.metrics import booking_transitions
from app.core.security import Actor
from app.models.booking import Booking
from app.services.policy_service import SchedulingPolicy

TRANSITIONS = {
    "pending": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"completed", "no_show", "cancelled"}),
    "completed": frozenset(),
    "no_show": frozenset(),
    "cancelled": frozenset(),
}

ATTENDANCE_STATUSES = ("completed", "no_show")


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def hours_until(start: datetime, now: datetime) -> float:
    return (start - now).total_seconds() / 3600


def ensure_can_cancel(booking: Booking, actor: Actor, policy: SchedulingPolicy, now: datetime) -> None:
    if not actor.is_staff and booking.customer_id != actor.id:
        raise ForbiddenError()
    if not can_transition(booking.status, "cancelled"):
        raise InvalidTransitionError(booking.status, "cancelled")
    if actor.is_staff:
        return
    if hours_until(booking.start_time, now) < policy.cancellation_notice_hours:
        raise PolicyViolationError(
            f"Cancellations require {policy.cancellation_notice_hours} hours notice"
        )


def ensure_can_record_attendance(booking: Booking, actor: Actor, target: str, now: datetime) -> None:
    if not actor.is_staff:
        raise ForbiddenError("Staff access required")
    if target not in ATTENDANCE_STATUSES:
        raise PolicyViolationError(f"Invalid status '{target}'")
    if not can_transition(booking.status, target):
        raise InvalidTransitionError(booking.status, target)
    if booking.start_time > now:
        raise PolicyViolationError("Attendance can only be recorded after the session has started")


def apply_transition(booking: Booking, target: str, actor_role: str) -> None:
    if not can_transition(booking.status, target):
        raise InvalidTransitionError(booking.status, target)
    booking.status = target
    booking_transitions.labels(to_status=target, actor_role=actor_role).inc()


def mark_cancelled(booking: Booking, actor: Actor, now: datetime, reason: Optional[str]) -> None:
    apply_transition(booking, "cancelled", actor.role)
    booking.cancelled_at = now
    booking.cancelled_by = actor.id
    booking.cancellation_reason = reason
    # The calendar event is deleted, not marked cancelled
    booking.calendar_sync_status = "not_applicable"
