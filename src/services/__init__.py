"""Services module for the band commitment lifecycle engine."""

from services.database import get_session_factory, get_sync_session, session_scope
from services.payment_provider import PaymentProviderClient, PaymentProviderError

__all__ = [
    "get_session_factory",
    "get_sync_session",
    "session_scope",
    "PaymentProviderClient",
    "PaymentProviderError",
]
