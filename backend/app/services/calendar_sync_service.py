"""
Calendar sync reconciler.

Keeps the external calendar consistent with booking state. The booking row
is authoritative; the calendar is a best-effort mirror, so every failure
here is recorded on the rows and never propagates to the booking request.

sync_booking() is idempotent and keyed only by booking id. It reads the
booking's current state each time, so running it twice, or out of order
with other tasks for the same booking, converges on the same result:

  - no integration connected        -> nothing happens
  - cancelled with an event id      -> delete event, clear id, not_applicable
  - active without an event id      -> create event, store id
  - active with an event id         -> update event; if the remote event is
                                       gone, create a new one and relink
  - outcome                         -> booking sync status/error and
                                       integration last_sync_at/last_error
                                       are written whatever happens
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.encryption import TokenEncryptionError, decrypt_token, encrypt_token
from app.core.logging import get_logger
from app.core.metrics import record_calendar_sync
from app.integrations.google_calendar import (
    CalendarAPIError,
    CalendarEventNotFound,
    GoogleCalendarClient,
    OAuthTokens,
)
from app.models.booking import OCCUPYING_STATUSES, Booking
from app.models.calendar_integration import CalendarIntegration
from app.models.session_type import SessionType
from app.models.user import User
from app.services.policy_service import load_policy
from app.services.user_service import display_name

logger = get_logger(__name__)

PROVIDER = "google_calendar"
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
RESYNC_BATCH_SIZE = 50

SYNC_SKIPPED = "skipped"
SYNC_SYNCED = "synced"
SYNC_DELETED = "deleted"
SYNC_FAILED = "failed"

SYNC_ERRORS = (CalendarAPIError, TokenEncryptionError, httpx.HTTPError)


@dataclass
class SyncResult:
    synced: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)


async def get_integration(db: AsyncSession) -> Optional[CalendarIntegration]:
    result = await db.execute(
        select(CalendarIntegration).where(
            CalendarIntegration.provider == PROVIDER,
            CalendarIntegration.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def ensure_access_token(
    db: AsyncSession,
    integration: CalendarIntegration,
    client: GoogleCalendarClient,
    now: Optional[datetime] = None,
) -> str:
    """
    Return a usable access token. If the stored one is missing or about to
    expire, refresh it and commit the new encrypted token before returning,
    so a crash later in the task cannot lose it.
    """
    now = now or datetime.now(timezone.utc)
    expires_at = integration.token_expires_at
    if integration.encrypted_access_token and expires_at and expires_at > now + TOKEN_REFRESH_MARGIN:
        return decrypt_token(integration.encrypted_access_token)

    logger.info("calendar_token_refreshing", provider=integration.provider)
    tokens = await client.refresh_access_token(decrypt_token(integration.encrypted_refresh_token))
    integration.encrypted_access_token = encrypt_token(tokens.access_token)
    integration.token_expires_at = tokens.expires_at
    if tokens.refresh_token:
        integration.encrypted_refresh_token = encrypt_token(tokens.refresh_token)
    await db.commit()
    logger.info("calendar_token_refreshed", provider=integration.provider)
    return tokens.access_token


def build_event_body(booking: Booking, session_type: Optional[SessionType], customer: Optional[User], timezone_name: str) -> dict:
    session_name = session_type.name if session_type else "Training Session"
    client_name = display_name(customer)
    description = f"Client: {client_name}\nSession: {session_name}"
    if booking.notes:
        description += f"\nNotes: {booking.notes}"
    return {
        "summary": f"{session_name} - {client_name}",
        "description": description,
        "start": {"dateTime": booking.start_time.isoformat(), "timeZone": timezone_name},
        "end": {"dateTime": booking.end_time.isoformat(), "timeZone": timezone_name},
        "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 60}]},
        "extendedProperties": {"private": {"booking_id": str(booking.id)}},
    }


async def _push_active_booking(
    db: AsyncSession,
    booking: Booking,
    integration: CalendarIntegration,
    client: GoogleCalendarClient,
    access_token: str,
) -> str:
    session_type = await db.get(SessionType, booking.session_type_id)
    customer = await db.get(User, booking.customer_id)
    policy = await load_policy(db)
    body = build_event_body(booking, session_type, customer, policy.timezone)

    if booking.calendar_event_id:
        try:
            await client.update_event(access_token, integration.calendar_id, booking.calendar_event_id, body)
            return booking.calendar_event_id
        except CalendarEventNotFound:
            logger.warning(
                "calendar_event_missing_relinking",
                booking_id=booking.id,
                stale_event_id=booking.calendar_event_id,
            )
    return await client.insert_event(access_token, integration.calendar_id, body)


async def sync_booking(
    db: AsyncSession,
    booking_id: int,
    client: GoogleCalendarClient,
    now: Optional[datetime] = None,
) -> str:
    """Reconcile one booking with the calendar. Returns the outcome."""
    now = now or datetime.now(timezone.utc)

    integration = await get_integration(db)
    if integration is None:
        record_calendar_sync(SYNC_SKIPPED)
        return SYNC_SKIPPED

    booking = await db.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        logger.warning("calendar_sync_booking_missing", booking_id=booking_id)
        record_calendar_sync(SYNC_SKIPPED)
        return SYNC_SKIPPED

    if booking.is_cancelled and not booking.calendar_event_id:
        booking.calendar_sync_status = "not_applicable"
        booking.calendar_sync_error = None
        await db.commit()
        record_calendar_sync(SYNC_SKIPPED)
        return SYNC_SKIPPED

    try:
        access_token = await ensure_access_token(db, integration, client, now)

        if booking.is_cancelled:
            await client.delete_event(access_token, integration.calendar_id, booking.calendar_event_id)
            booking.calendar_event_id = None
            booking.calendar_sync_status = "not_applicable"
            outcome = SYNC_DELETED
        else:
            booking.calendar_event_id = await _push_active_booking(db, booking, integration, client, access_token)
            booking.calendar_sync_status = "synced"
            outcome = SYNC_SYNCED

        booking.calendar_sync_error = None
        integration.last_sync_at = now
        integration.last_error = None
        await db.commit()

        logger.info("calendar_sync_succeeded", booking_id=booking_id, outcome=outcome, event_id=booking.calendar_event_id)
        record_calendar_sync(outcome)
        return outcome

    except SYNC_ERRORS as e:
        message = str(e) or e.__class__.__name__
        # Whatever was half-applied is discarded before recording the failure
        await db.rollback()
        booking = await db.get(Booking, booking_id, populate_existing=True)
        integration = await get_integration(db)
        booking.calendar_sync_status = "failed"
        booking.calendar_sync_error = message
        if integration is not None:
            integration.last_error = message
        await db.commit()

        logger.error("calendar_sync_failed", booking_id=booking_id, error=message)
        record_calendar_sync(SYNC_FAILED)
        return SYNC_FAILED


async def resync_pending(db: AsyncSession, client: GoogleCalendarClient, limit: int = RESYNC_BATCH_SIZE) -> SyncResult:
    """
    Operator-invoked resync of bookings whose mirror is pending or failed.

    Cancelled bookings that still point at a remote event are included
    whatever their sync status, since their event has yet to be deleted.
    """
    result = await db.execute(
        select(Booking.id)
        .where(
            or_(
                and_(
                    Booking.status.in_(OCCUPYING_STATUSES),
                    Booking.calendar_sync_status.in_(("pending", "failed")),
                ),
                and_(
                    Booking.status == "cancelled",
                    Booking.calendar_event_id.is_not(None),
                ),
            )
        )
        .order_by(Booking.start_time.asc())
        .limit(limit)
    )
    booking_ids = list(result.scalars().all())

    summary = SyncResult()
    for booking_id in booking_ids:
        outcome = await sync_booking(db, booking_id, client)
        if outcome == SYNC_FAILED:
            booking = await db.get(Booking, booking_id)
            summary.failed += 1
            summary.errors.append({"booking_id": booking_id, "error": booking.calendar_sync_error})
        elif outcome != SYNC_SKIPPED:
            summary.synced += 1

    logger.info("calendar_resync_completed", synced=summary.synced, failed=summary.failed)
    return summary


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------


async def store_tokens(db: AsyncSession, tokens: OAuthTokens, account_email: Optional[str]) -> CalendarIntegration:
    result = await db.execute(select(CalendarIntegration).where(CalendarIntegration.provider == PROVIDER))
    integration = result.scalar_one_or_none()
    if integration is None:
        integration = CalendarIntegration(provider=PROVIDER, calendar_id="primary")
        db.add(integration)

    integration.encrypted_access_token = encrypt_token(tokens.access_token)
    integration.encrypted_refresh_token = encrypt_token(tokens.refresh_token)
    integration.token_expires_at = tokens.expires_at
    integration.account_email = account_email
    integration.is_active = True
    integration.last_error = None
    await db.flush()
    await db.refresh(integration)

    logger.info("calendar_connected", provider=PROVIDER, account_email=account_email)
    return integration


async def connect(db: AsyncSession, client: GoogleCalendarClient, code: str) -> CalendarIntegration:
    tokens = await client.exchange_code(code)
    email = await client.fetch_account_email(tokens.access_token)
    return await store_tokens(db, tokens, email)


async def disconnect(db: AsyncSession, client: GoogleCalendarClient) -> bool:
    """Revoke the upstream grant, then delete the connection row."""
    result = await db.execute(select(CalendarIntegration).where(CalendarIntegration.provider == PROVIDER))
    integration = result.scalar_one_or_none()
    if integration is None:
        return False

    try:
        await client.revoke(decrypt_token(integration.encrypted_refresh_token))
    except SYNC_ERRORS as e:
        # The local row is removed even if the provider is unreachable
        logger.error("calendar_revoke_failed", error=str(e))

    await db.execute(delete(CalendarIntegration).where(CalendarIntegration.provider == PROVIDER))
    await db.flush()
    logger.info("calendar_disconnected", provider=PROVIDER)
    return True
