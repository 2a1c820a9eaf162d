from __future__ import annotations

from typing import Any, Optional, Tuple

from intelliguard.api.schemas import Envelope, ErrorBody
from intelliguard.logging import get_correlation_id, get_logger, sanitize_error_message
from intelliguard.service.errors import ServiceError
from intelliguard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    423: "account_locked",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _render(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Tuple[int, dict]:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
    )
    envelope = Envelope(status="error", error=error_body)
    request_id = request_id or get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return status_code, envelope.model_dump()


def error_envelope(
    exc: BaseException, *, request_id: Optional[str] = None
) -> Tuple[int, dict]:
    """Map an exception to ``(status, envelope)`` for whatever transport binds the core.

    Service errors keep their own code and status. Storage constraint
    violations that leaked past the service answer 409. Anything else is a
    500 with a generic message so internals never reach the caller.
    """
    if isinstance(exc, ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        message = sanitize_error_message(exc.message) if exc.status_code >= 500 else exc.message
        return _render(
            exc.status_code, message, exc.detail, code=exc.error_code, request_id=request_id
        )

    if isinstance(exc, ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, field=exc.field)
        return _render(409, exc.message, code="conflict", request_id=request_id)

    logger.error("unhandled_exception", error_type=type(exc).__name__)
    return _render(500, "internal server error", request_id=request_id)

