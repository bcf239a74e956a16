"""
Errores de dominio del motor de reservas y su traducción a respuestas HTTP.

Los servicios lanzan estas excepciones; `main.py` registra un único handler
que las convierte en `{"detail": ..., "code": ...}` con el status adecuado.
"""
from fastapi import Request
from fastapi.responses import JSONResponse
import logging

logger = logging.getLogger(__name__)


class DomainError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(DomainError):
    status_code = 400
    code = "VALIDATION_ERROR"


class SlotUnavailableError(DomainError):
    status_code = 409
    code = "SLOT_UNAVAILABLE"

    def __init__(self, detail: str = "This slot is already booked. Please choose another time."):
        super().__init__(detail)


class InvalidTransitionError(DomainError):
    status_code = 409
    code = "INVALID_TRANSITION"


class UnauthorizedError(DomainError):
    status_code = 401
    code = "UNAUTHORIZED"


class ForbiddenError(DomainError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(DomainError):
    status_code = 404
    code = "NOT_FOUND"


class SignatureError(DomainError):
    status_code = 400
    code = "INVALID_SIGNATURE"


class UpstreamProcessorError(DomainError):
    status_code = 502
    code = "PAYMENT_PROCESSOR_ERROR"


class PersistenceError(DomainError):
    status_code = 500
    code = "PERSISTENCE_ERROR"


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code} en {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )
