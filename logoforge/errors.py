"""
logoforge/errors.py

Billing error taxonomy.

Every error carries:
    - code: stable machine-readable code for the client
    - status_code: HTTP status used by the blueprint error handler

Request-local errors (bad input, insufficient credits) are raised by the
services and rendered inline by routes. Errors raised while processing a
webhook after it has been acknowledged are handled by the ingestor's retry
loop and never reach the provider.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for all billing errors."""

    code = 'BILLING_ERROR'
    status_code = 500

    def __init__(self, message: str = '', status_code: Optional[int] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            'success': False,
            'error': self.message,
            'code': self.code,
        }


class InvalidAmount(BillingError):
    code = 'INVALID_AMOUNT'
    status_code = 400


class InvalidRequest(BillingError):
    code = 'INVALID_REQUEST'
    status_code = 400


class InsufficientCredits(BillingError):
    """User-facing, not retryable without a purchase."""

    code = 'INSUFFICIENT_CREDITS'
    status_code = 402

    def __init__(self, required: int, available: Optional[int] = None):
        super().__init__(
            f'Insufficient credits. You need {required} credit(s) to perform this action.'
        )
        self.required = required
        self.available = available

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['required'] = self.required
        data['buy_url'] = '/billing/products'
        return data


class Unauthorized(BillingError):
    code = 'AUTH_REQUIRED'
    status_code = 401


class Forbidden(BillingError):
    code = 'FORBIDDEN'
    status_code = 403


class NotFound(BillingError):
    code = 'NOT_FOUND'
    status_code = 404


class SessionNotFound(NotFound):
    code = 'SESSION_NOT_FOUND'


class SignatureVerificationFailed(BillingError):
    code = 'INVALID_SIGNATURE'
    status_code = 400


class UpstreamProviderError(BillingError):
    """A payment or image-generation provider returned a non-success response."""

    code = 'UPSTREAM_ERROR'
    status_code = 502

    def __init__(self, message: str, provider_status: Optional[int] = None):
        # Client errors from the provider are meaningful to pass through
        status = provider_status if provider_status and 400 <= provider_status < 500 else None
        super().__init__(message, status_code=status)
        self.provider_status = provider_status


class GenerationFailed(BillingError):
    """The costly action failed after its credits were refunded."""

    code = 'GENERATION_FAILED'
    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None, refunded: bool = True):
        super().__init__(message, status_code=status_code)
        self.refunded = refunded

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['refunded'] = self.refunded
        return data


class AttributionFailure(BillingError):
    """A webhook's customer does not map to any known user."""

    code = 'ATTRIBUTION_FAILURE'
    status_code = 500


class PersistenceConflict(BillingError):
    """A storage constraint rejected a concurrent write (expected control flow)."""

    code = 'PERSISTENCE_CONFLICT'
    status_code = 409
