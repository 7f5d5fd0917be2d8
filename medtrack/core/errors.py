"""Engine error hierarchy and the HTTP mapping used by the API layer."""
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class MedTrackError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(MedTrackError):
    """Malformed slot time, bad refill quantity, date outside the validity window."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(MedTrackError):
    """Unknown medication, or a slot index that does not exist on that date."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(MedTrackError):
    status_code = status.HTTP_409_CONFLICT


class TransientError(MedTrackError):
    """Storage hiccup. Every mutation is keyed, so callers may simply retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


async def medtrack_error_handler(request: Request, exc: MedTrackError) -> JSONResponse:
    if isinstance(exc, TransientError):
        logger.warning("Transient failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MedTrackError, medtrack_error_handler)
