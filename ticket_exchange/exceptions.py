"""
Error taxonomy for marketplace operations.

Every class carries the HTTP status the API layer answers with, so routers
only need to catch ``ValueError`` for malformed input and let these bubble
to the application-level handler registered in ``main.py``.
"""

from fastapi import status


class MarketplaceError(Exception):
    """Base class for rejected marketplace operations"""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": self.__class__.__name__, **self.context}


class NotFound(MarketplaceError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidState(MarketplaceError):
    """Operation attempted from a state that does not permit it"""

    status_code = status.HTTP_409_CONFLICT


class Expired(InvalidState):
    """A wall-clock deadline on the row has passed"""

    status_code = status.HTTP_410_GONE


class DuplicateListing(MarketplaceError):
    """Another active listing for the ticket won the race"""

    status_code = status.HTTP_409_CONFLICT


class CapacityExceeded(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT


class Unauthorized(MarketplaceError):
    """Caller identity lacks the role or ownership the operation requires"""

    status_code = status.HTTP_403_FORBIDDEN


class ProcessorFailure(MarketplaceError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class ConsistencyViolation(MarketplaceError):
    """An asynchronous outcome no longer matches the state it was issued for.

    Always logged at ERROR by whoever detects it; never swallowed.
    """

    status_code = status.HTTP_409_CONFLICT
