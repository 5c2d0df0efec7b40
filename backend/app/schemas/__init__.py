from app.schemas.booking import BookingCreate, BookingUpdate, BookingCancel, BookingComplete, BookingResponse
from app.schemas.availability import SlotResponse, SlotListResponse, TemplateCreate, ExceptionCreate, SettingsUpdate
from app.schemas.session_type import SessionTypeCreate, SessionTypeUpdate, SessionTypeResponse
from app.schemas.eligibility import EligibilityResponse, CreditSummaryResponse
from app.schemas.integration import CalendarStatusResponse, ResyncResponse
from app.schemas.payment import CheckoutCreate, CheckoutResponse, WebhookAck

__all__ = [
    "BookingCreate", "BookingUpdate", "BookingCancel", "BookingComplete", "BookingResponse",
    "SlotResponse", "SlotListResponse", "TemplateCreate", "ExceptionCreate", "SettingsUpdate",
    "SessionTypeCreate", "SessionTypeUpdate", "SessionTypeResponse",
    "EligibilityResponse", "CreditSummaryResponse",
    "CalendarStatusResponse", "ResyncResponse",
    "CheckoutCreate", "CheckoutResponse", "WebhookAck",
]
