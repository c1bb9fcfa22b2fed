"""Domain errors raised by the emergency contact lifecycle.

Services raise these exceptions; only the HTTP layer turns them into
status codes, through the handler installed by
:func:`register_exception_handlers`.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class EmergencyContactError(Exception):
    """Base class for lifecycle errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message = "Emergency contact request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(EmergencyContactError):
    """Referenced owner, contact user or relationship does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ValidationFailed(EmergencyContactError):
    """An invariant would be broken: duplicate, limit, missing field or wrong status."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Validation failed"


class Forbidden(EmergencyContactError):
    """Caller is neither the resource owner nor an administrator."""

    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not authorized to access this user's data"


class InvalidToken(EmergencyContactError):
    """Token is unknown, expired or already used.

    The message is fixed so that callers cannot tell those cases apart.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid or expired verification token"

    def __init__(self):
        super().__init__(self.default_message)


class NotificationError(Exception):
    """A notification could not be addressed or delivered."""


async def emergency_contact_error_handler(
    request: Request, exc: EmergencyContactError
) -> JSONResponse:
    """Render a lifecycle error as ``{"detail": message}``."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def register_exception_handlers(app: FastAPI) -> None:
    """Install the lifecycle error handler on ``app``."""
    app.add_exception_handler(EmergencyContactError, emergency_contact_error_handler)
