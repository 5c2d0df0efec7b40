"""
Session type catalogue endpoints.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.session_type import SessionTypeCreate, SessionTypeResponse, SessionTypeUpdate
from app.services import session_type_service
from app.services.cache_service import invalidate_availability_cache
from app.core.security import Actor, get_current_actor, require_staff

router = APIRouter(prefix="/session-types", tags=["Session Types"])


@router.get("/", response_model=list[SessionTypeResponse])
async def list_session_types(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Active session types. Staff also see inactive ones."""
    return await session_type_service.list_session_types(db, actor)


@router.get("/{session_type_id}", response_model=SessionTypeResponse)
async def get_session_type(
    session_type_id: int,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await session_type_service.get_session_type(db, session_type_id)


@router.post("/", response_model=SessionTypeResponse, status_code=status.HTTP_201_CREATED)
async def create_session_type(
    session_type_data: SessionTypeCreate,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    session_type = await session_type_service.create_session_type(
        db,
        name=session_type_data.name,
        duration_minutes=session_type_data.duration_minutes,
        capacity=session_type_data.capacity,
        price_cents=session_type_data.price_cents,
        description=session_type_data.description,
    )
    await db.commit()
    return session_type


@router.patch("/{session_type_id}", response_model=SessionTypeResponse)
async def update_session_type(
    session_type_id: int,
    update_data: SessionTypeUpdate,
    actor: Actor = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    session_type = await session_type_service.update_session_type(
        db, session_type_id, update_data.model_dump(exclude_unset=True)
    )
    await db.commit()
    await invalidate_availability_cache()
    return session_type
