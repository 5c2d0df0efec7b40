"""
Google Calendar connection endpoints (staff only, except the OAuth
callback which authenticates through the signed `state` parameter).
"""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.integrations.google_calendar import CalendarAPIError, GoogleCalendarClient
from app.schemas.integration import AuthorizationUrlResponse, CalendarStatusResponse, ResyncResponse
from app.services import calendar_sync_service
from app.core.config import get_settings
from app.core.exceptions import ForbiddenError, IntegrationNotConfiguredError
from app.core.security import Actor, create_access_token, require_staff
from app.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/integrations/google-calendar", tags=["Integrations"])

STATE_PURPOSE = "google_calendar_connect"
STATE_TTL = timedelta(minutes=10)


def get_calendar_client() -> GoogleCalendarClient:
    return GoogleCalendarClient()


def _require_configured() -> None:
    if not get_settings().google_calendar_configured:
        raise IntegrationNotConfiguredError("Google Calendar is not configured")


def _settings_redirect(outcome: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"{get_settings().APP_URL}/admin/settings?calendar={outcome}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/auth", response_model=AuthorizationUrlResponse)
async def start_authorization(
    actor: Actor = Depends(require_staff),
    client: GoogleCalendarClient = Depends(get_calendar_client),
):
    """Consent URL for connecting the business calendar."""
    _require_configured()
    state = create_access_token({"sub": str(actor.id), "purpose": STATE_PURPOSE}, STATE_TTL)
    return AuthorizationUrlResponse(url=client.authorization_url(state))


@router.get("/callback")
async def authorization_callback(
    code: Optional[str] = Query(None),
    state: str = Query(...),
    error: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    client: GoogleCalendarClient = Depends(get_calendar_client),
):
    settings = get_settings()
    try:
        claims = jwt.decode(state, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise ForbiddenError("Invalid OAuth state")
    if claims.get("purpose") != STATE_PURPOSE:
        raise ForbiddenError("Invalid OAuth state")

    if error or not code:
        logger.warning("calendar_oauth_denied", error=error)
        return _settings_redirect("denied")

    try:
        await calendar_sync_service.connect(db, client, code)
    except CalendarAPIError as e:
        logger.error("calendar_connect_failed", error=str(e))
        return _settings_redirect("error")
    await db.commit()
    return _settings_redirect("connected")


@router.get("/status", response_model=CalendarStatusResponse)
async def connection_status(
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    integration = await calendar_sync_service.get_integration(db)
    if integration is None:
        return CalendarStatusResponse(configured=get_settings().google_calendar_configured, connected=False)
    return CalendarStatusResponse(
        configured=get_settings().google_calendar_configured,
        connected=True,
        account_email=integration.account_email,
        calendar_id=integration.calendar_id,
        last_sync_at=integration.last_sync_at,
        last_error=integration.last_error,
    )


@router.post("/disconnect")
async def disconnect(
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    client: GoogleCalendarClient = Depends(get_calendar_client),
):
    removed = await calendar_sync_service.disconnect(db, client)
    await db.commit()
    return {"disconnected": removed}


@router.post("/sync", response_model=ResyncResponse)
async def resync(
    limit: int = Query(calendar_sync_service.RESYNC_BATCH_SIZE, ge=1, le=200),
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    client: GoogleCalendarClient = Depends(get_calendar_client),
):
    """Retry bookings whose calendar mirror is pending or failed."""
    if await calendar_sync_service.get_integration(db) is None:
        raise IntegrationNotConfiguredError("Google Calendar is not connected")
    result = await calendar_sync_service.resync_pending(db, client, limit)
    return ResyncResponse(synced=result.synced, failed=result.failed, errors=result.errors)
