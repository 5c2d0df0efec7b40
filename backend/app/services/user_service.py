"""
Local mirror of identity-provider users.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.core.security import Actor
from app.models.user import User

logger = get_logger(__name__)


async def ensure_user(db: AsyncSession, actor: Actor) -> User:
    """Return the caller's user row, creating it on first sight."""
    user = await db.get(User, actor.id)
    if user is None:
        user = User(id=actor.id, role=actor.role)
        db.add(user)
        await db.flush()
        logger.info("user_mirrored", user_id=actor.id, role=actor.role)
    return user


async def get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def display_name(user: Optional[User]) -> str:
    if user is None:
        return "Client"
    return user.full_name or user.email or f"Client #{user.id}"
