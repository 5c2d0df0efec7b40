from app.models.user import User
from app.models.session_type import SessionType
from app.models.availability import AvailabilityTemplate, AvailabilityException, SchedulingSettings
from app.models.subscription import Subscription
from app.models.session_credit import SessionCredit
from app.models.booking import Booking
from app.models.invoice import Invoice
from app.models.calendar_integration import CalendarIntegration
from app.models.payment_event import PaymentEvent

__all__ = [
    "User", "SessionType",
    "AvailabilityTemplate", "AvailabilityException", "SchedulingSettings",
    "Subscription", "SessionCredit", "Booking", "Invoice",
    "CalendarIntegration", "PaymentEvent",
]
