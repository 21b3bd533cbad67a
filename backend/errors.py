import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class LMSError(Exception):
    """Base error carrying the HTTP status it maps to"""
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(LMSError):
    status_code = 400
    default_message = "Invalid request"


class AuthenticationError(LMSError):
    status_code = 401
    default_message = "Authentication required. Please provide a valid Bearer token."


class AuthorizationError(LMSError):
    status_code = 403
    default_message = "Access denied"


class NotFoundError(LMSError):
    status_code = 404
    default_message = "Not found"


class ConflictError(LMSError):
    status_code = 409
    default_message = "Conflicting update, please retry"


class PayloadTooLargeError(LMSError):
    status_code = 413
    default_message = "Payload too large"


class InternalError(LMSError):
    status_code = 500


@contextmanager
def store_boundary(db: Session, action: str):
    """Roll back and report a generic InternalError on any store failure.

    LMSError subclasses raised inside the block also roll back, then propagate
    unchanged so the handler can map them to their own status.
    """
    try:
        yield
    except LMSError:
        db.rollback()
        raise
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"❌ Store failure while {action}")
        raise InternalError()
