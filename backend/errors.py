"""
Exception taxonomy for the booking core

Capacity conflicts and duplicate payment events are reported as results, not
exceptions; only caller mistakes and infrastructure faults raise.
"""
from database.database import StoreUnavailableError


class BookingError(Exception):
    """Base class for booking core errors"""


class ValidationError(BookingError, ValueError):
    """User-correctable input error, raised before any state is created"""


class BookingNotFoundError(BookingError, LookupError):
    """No booking matches the given id or reference"""


class PermissionDeniedError(BookingError):
    """Actor is neither the booking owner nor an administrator"""


class WebhookAuthenticationError(BookingError):
    """Webhook signature header missing or wrong"""


class PaymentGatewayError(BookingError):
    """Payment provider unreachable or returned a server error; safe to retry"""


__all__ = [
    'BookingError', 'ValidationError', 'BookingNotFoundError', 'PermissionDeniedError',
    'WebhookAuthenticationError', 'PaymentGatewayError', 'StoreUnavailableError',
]
