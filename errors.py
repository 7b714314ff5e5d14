"""
Error taxonomy for the gig-application lifecycle.

Services raise these; app.py turns them into JSON responses with a stable
``code`` and the HTTP status below.
"""


class MarketplaceError(Exception):
    """Base class for business-rule failures raised by the service modules"""
    status_code = 500
    code = 'internal_error'

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        if self.details:
            payload.update(self.details)
        return payload


class ValidationError(MarketplaceError):
    """Malformed or missing input"""
    status_code = 400
    code = 'validation_error'


class ForbiddenError(MarketplaceError):
    """Caller has the wrong role or does not own the resource"""
    status_code = 403
    code = 'forbidden'


class NotFoundError(MarketplaceError):
    status_code = 404
    code = 'not_found'


class PaymentRequiredError(MarketplaceError):
    """No subscription, expired subscription or exhausted application quota"""
    status_code = 402
    code = 'payment_required'


class ConflictError(MarketplaceError):
    """Illegal state transition, duplicate record or insufficient balance"""
    status_code = 409
    code = 'conflict'


class InvalidSignatureError(MarketplaceError):
    """Payment signature did not match; no state may change"""
    status_code = 400
    code = 'invalid_signature'


class RateLimitedError(MarketplaceError):
    status_code = 429
    code = 'rate_limited'


class ServiceUnavailableError(MarketplaceError):
    """Payment provider unreachable or not configured"""
    status_code = 503
    code = 'service_unavailable'
