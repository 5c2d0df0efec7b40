"""
Availability endpoints: bookable slots for customers, and template,
exception and settings management for staff.
"""

from dataclasses import asdict
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.models.availability import AvailabilityException, AvailabilityTemplate
from app.schemas.availability import (
    ExceptionCreate,
    ExceptionResponse,
    SettingsResponse,
    SettingsUpdate,
    SlotListResponse,
    SlotResponse,
    TemplateCreate,
    TemplateResponse,
)
from app.services import availability_service, session_type_service
from app.services.cache_service import (
    get_cached_availability,
    invalidate_availability_cache,
    set_cached_availability,
)
from app.services.policy_service import load_policy
from app.core.exceptions import BookingValidationError
from app.core.security import Actor, get_current_actor, require_staff
from app.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/availability", tags=["Availability"])

MAX_RANGE_DAYS = 62


@router.get("/slots", response_model=SlotListResponse)
async def list_slots(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    session_type_id: Optional[int] = Query(None),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """
    Bookable slots with current occupancy.

    Defaults to the next seven days in the business timezone. Served from
    Redis when a fresh listing is cached.
    """
    policy = await load_policy(db)
    now = datetime.now(timezone.utc)
    start_date = start_date or policy.local_date(now)
    end_date = end_date or start_date + timedelta(days=7)
    if end_date < start_date:
        raise BookingValidationError("end_date must not be before start_date")
    if (end_date - start_date).days > MAX_RANGE_DAYS:
        raise BookingValidationError(f"Date range cannot exceed {MAX_RANGE_DAYS} days")

    cached = await get_cached_availability(str(start_date), str(end_date), session_type_id)
    if cached:
        return SlotListResponse(**cached, cached=True)

    session_type = None
    if session_type_id is not None:
        session_type = await session_type_service.get_session_type(db, session_type_id)

    listing = await availability_service.list_slot_availability(
        db, policy, start_date, end_date, now, session_type
    )
    response = SlotListResponse(
        slots=[SlotResponse(**asdict(slot)) for slot in listing],
        start_date=start_date,
        end_date=end_date,
        session_type_id=session_type_id,
        timezone=policy.timezone,
    )
    await set_cached_availability(
        str(start_date), str(end_date), session_type_id, response.model_dump(mode="json", exclude={"cached"})
    )
    return response


# ----- Templates -----


@router.get("/templates", response_model=list[TemplateResponse])
async def list_templates(
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(AvailabilityTemplate).order_by(AvailabilityTemplate.day_of_week, AvailabilityTemplate.start_time)
    )
    return list(result.scalars().all())


@router.post("/templates", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    template_data: TemplateCreate,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    template = await availability_service.create_template(
        db, template_data.day_of_week, template_data.start_time, template_data.end_time
    )
    await db.commit()
    await invalidate_availability_cache()
    return template


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    template_id: int,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    await availability_service.delete_template(db, template_id)
    await db.commit()
    await invalidate_availability_cache()


# ----- Exceptions -----


@router.get("/exceptions", response_model=list[ExceptionResponse])
async def list_exceptions(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    query = select(AvailabilityException).order_by(AvailabilityException.exception_date)
    if start_date is not None:
        query = query.where(AvailabilityException.exception_date >= start_date)
    if end_date is not None:
        query = query.where(AvailabilityException.exception_date <= end_date)
    result = await db.execute(query)
    return list(result.scalars().all())


@router.post("/exceptions", response_model=ExceptionResponse, status_code=status.HTTP_201_CREATED)
async def create_exception(
    exception_data: ExceptionCreate,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Block a whole day, block one slot, or add an extra window."""
    exception = await availability_service.create_exception(
        db,
        exception_data.exception_date,
        exception_data.is_available,
        reason=exception_data.reason,
        start_time=exception_data.start_time,
        end_time=exception_data.end_time,
    )
    await db.commit()
    await invalidate_availability_cache()
    return exception


@router.delete("/exceptions/{exception_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_exception(
    exception_id: int,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    await availability_service.delete_exception(db, exception_id)
    await db.commit()
    await invalidate_availability_cache()


# ----- Settings -----


@router.get("/settings", response_model=SettingsResponse)
async def get_settings_endpoint(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return asdict(await load_policy(db))


@router.put("/settings", response_model=SettingsResponse)
async def update_settings_endpoint(
    settings_data: SettingsUpdate,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    policy = await availability_service.update_settings(db, **settings_data.model_dump())
    await db.commit()
    await invalidate_availability_cache()
    return asdict(policy)
