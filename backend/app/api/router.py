"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from app.api.routes import availability, bookings, eligibility, integrations, payments, session_types

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(session_types.router)
api_router.include_router(availability.router)
api_router.include_router(eligibility.router)
api_router.include_router(bookings.router)
api_router.include_router(integrations.router)
api_router.include_router(payments.router)
