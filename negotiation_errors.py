"""
Error taxonomy for the negotiation / chat core.

Every error carries the HTTP status class the API layer answers with, so the
router can turn any of them into an HTTPException without a lookup table.
"""


class MarketplaceError(Exception):
    """Base class for all errors raised by the negotiation core"""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(MarketplaceError):
    """Negotiation, crop, thread, message or order id does not resolve"""
    status_code = 404


class ForbiddenError(MarketplaceError):
    """Acting user is not a participant of the record"""
    status_code = 403


class InvalidStateError(MarketplaceError):
    """Operation attempted against a negotiation in the wrong status"""
    status_code = 400


class ValidationError(MarketplaceError):
    """Malformed amount, quantity or message content"""
    status_code = 422


class ConcurrentModificationError(MarketplaceError):
    """Stored version moved between read and write"""
    status_code = 409


class InconsistentStateError(MarketplaceError):
    """One half of a dual-write is missing; needs repair, never a retry"""
    status_code = 500
