"""Domain exceptions raised by the lifecycle, payment and reconciliation services.

Routes translate these into HTTP responses; services never raise HTTPException.
"""
from typing import Optional


class SadqaError(Exception):
    """Base class for all domain errors"""


class SignatureInvalid(SadqaError):
    """Webhook body does not match its signature header"""


class InvalidTransition(SadqaError):
    """Requested state change is not in the transition table"""

    def __init__(self, message: str, current_state: Optional[str] = None, event: Optional[str] = None):
        super().__init__(message)
        self.current_state = current_state
        self.event = event


class RecordNotFound(SadqaError):
    """Referenced subscription or payment record does not exist"""


class PreconditionFailed(SadqaError):
    """Operation cannot run because required data is missing"""


class Forbidden(SadqaError):
    """Caller is not allowed to act on the record"""


class GatewayError(SadqaError):
    """Payment gateway rejected the request or returned an unusable response"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayUnavailable(GatewayError):
    """Payment gateway could not be reached or answered with a server error"""


class GatewayTimeout(GatewayError):
    """Payment gateway did not answer within the configured timeout"""


HTTP_STATUS = (
    (SignatureInvalid, 400),
    (PreconditionFailed, 400),
    (Forbidden, 403),
    (RecordNotFound, 404),
    (InvalidTransition, 409),
    (GatewayError, 502),
)


def http_status_for(exc: SadqaError) -> int:
    """HTTP status a route should answer with for a domain error"""
    for exc_type, status_code in HTTP_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return 500
