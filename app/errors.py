"""
ERRORS MODULE
=============

Domain exceptions raised by the services. The API layer (app.main) turns them
into HTTP status codes; the services never build HTTP responses themselves.

  InvalidRequestError - malformed body or missing field          -> 400
  AuthError           - no active identity on an owner-scoped op  -> 401
  NotFoundError       - session absent or owned by someone else   -> 404
  ConflictError       - email already registered                  -> 409
  UpstreamError       - generation service failed                 -> error envelope or 500
  PersistenceError    - document store failed                     -> logged (relay) or 500
"""

from fastapi import HTTPException, status


class ClassChatError(Exception):
    """Base class for every error raised by the ClassChat services."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InvalidRequestError(ClassChatError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthError(ClassChatError):
    status_code = status.HTTP_401_UNAUTHORIZED


class NotFoundError(ClassChatError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(ClassChatError):
    status_code = status.HTTP_409_CONFLICT


class UpstreamError(ClassChatError):
    """The generation service could not be invoked or failed while streaming."""


class PersistenceError(ClassChatError):
    """A document store operation failed."""


class DuplicateKeyError(PersistenceError):
    """Insert or update would break a unique index."""


def to_http_exception(exc: ClassChatError) -> HTTPException:
    """Map a domain error onto the HTTPException FastAPI sends back."""
    return HTTPException(status_code=exc.status_code, detail=exc.message or exc.__class__.__name__)
