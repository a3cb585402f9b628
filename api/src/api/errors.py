"""Domain error taxonomy for payment flows and its HTTP rendering."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from storefront.config import get_settings

logger = logging.getLogger(__name__)


class PaymentFlowError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    code = "PAYMENT_FLOW_ERROR"
    retryable = False
    expose_message = True

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        fields: dict[str, str] | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.fields = fields or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "fields": self.fields,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PaymentFlowError:
        """Rebuild a stored error, preferring the concrete subclass for its status code."""
        status_code = int(payload.get("status_code") or 500)
        error_cls = _ERRORS_BY_STATUS.get(status_code, PaymentFlowError)
        error = error_cls(
            str(payload.get("message") or "Operation failed"),
            code=str(payload.get("code") or error_cls.code),
            fields=payload.get("fields") or None,
            retryable=bool(payload.get("retryable", False)),
        )
        if error_cls is PaymentFlowError:
            error.status_code = status_code
        return error


class ValidationError(PaymentFlowError):
    status_code = 400
    code = "VALIDATION_ERROR"


class SignatureError(PaymentFlowError):
    status_code = 400
    code = "INVALID_SIGNATURE"


class PaymentDeclined(PaymentFlowError):
    status_code = 402
    code = "PAYMENT_DECLINED"
    retryable = True


class PaymentIncomplete(PaymentFlowError):
    status_code = 402
    code = "PAYMENT_INCOMPLETE"
    retryable = True


class Forbidden(PaymentFlowError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(PaymentFlowError):
    status_code = 404
    code = "NOT_FOUND"


class Conflict(PaymentFlowError):
    status_code = 409
    code = "CONFLICT"


class ProcessorNotConfigured(PaymentFlowError):
    status_code = 503
    code = "PROCESSOR_NOT_CONFIGURED"
    expose_message = False


class UpstreamError(PaymentFlowError):
    status_code = 502
    code = "UPSTREAM_ERROR"
    retryable = True
    expose_message = False


class UpstreamTimeout(UpstreamError):
    """Processor call outcome is unknown; clients should poll status instead of retrying."""

    status_code = 504
    code = "UPSTREAM_TIMEOUT"


_ERRORS_BY_STATUS: dict[int, type[PaymentFlowError]] = {
    400: ValidationError,
    402: PaymentDeclined,
    403: Forbidden,
    404: NotFound,
    409: Conflict,
    502: UpstreamError,
    503: ProcessorNotConfigured,
    504: UpstreamTimeout,
}

_GENERIC_MESSAGES = {
    502: "Payment provider is unavailable. Please try again shortly.",
    503: "Payments are temporarily unavailable.",
    504: "Payment provider did not respond in time. Check the order status before retrying.",
}


def error_payload(exc: PaymentFlowError) -> dict[str, Any]:
    detail = exc.message
    if not exc.expose_message and not get_settings().expose_error_details:
        detail = _GENERIC_MESSAGES.get(exc.status_code, "Payment provider request failed")
    payload: dict[str, Any] = {
        "detail": detail,
        "code": exc.code,
        "retryable": exc.retryable,
    }
    if exc.fields:
        payload["fields"] = exc.fields
    return payload


async def payment_flow_error_handler(request: Request, exc: PaymentFlowError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "Payment flow error on %s %s: %s (%s)",
            request.method,
            request.url.path,
            exc.message,
            exc.code,
        )
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaymentFlowError, payment_flow_error_handler)
