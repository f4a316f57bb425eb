# core/errors.py
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("servicepay")

# What the client payment page should tell the payer
ACTION_RETRY = "retry"
ACTION_LINK_UNUSABLE = "link_unusable"
ACTION_CONTACT_SUPPORT = "contact_support"


class PaymentError(Exception):
    """Base for every error the payment engine raises on purpose."""

    status_code = 400
    code = "payment_error"
    action = ACTION_CONTACT_SUPPORT

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {
            "success": False,
            "error": self.code,
            "message": self.message,
            "action": self.action,
        }
        if self.details:
            body["details"] = self.details
        return body


class PaymentValidationError(PaymentError):
    status_code = 400
    code = "validation_error"


class PaymentLinkUnusableError(PaymentError):
    """Expired or deactivated link, request not payable, or already paid."""

    status_code = 410
    code = "link_unusable"
    action = ACTION_LINK_UNUSABLE


class NotFoundError(PaymentError):
    status_code = 404
    code = "not_found"


class InvalidTransitionError(PaymentError):
    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, message: str, *, current_status: Optional[str] = None, target_status: Optional[str] = None):
        super().__init__(
            message,
            details={k: v for k, v in {"current_status": current_status, "target_status": target_status}.items() if v},
        )
        self.current_status = current_status
        self.target_status = target_status


class GatewayError(PaymentError):
    """The gateway answered and refused; retrying the same call will not help."""

    status_code = 502
    code = "gateway_error"

    def __init__(self, message: str, *, raw_message: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message)
        self.raw_message = raw_message
        self.http_status = http_status


class GatewayUnavailableError(PaymentError):
    status_code = 503
    code = "gateway_unavailable"
    action = ACTION_RETRY


class CircuitOpenError(GatewayUnavailableError):
    code = "gateway_circuit_open"


class WebhookSignatureError(PaymentError):
    status_code = 400
    code = "invalid_signature"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(level, f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "internal_error",
                "message": "Something went wrong. Please contact support.",
                "action": ACTION_CONTACT_SUPPORT,
                "request_id": request.headers.get("X-Request-ID"),
            },
        )
