import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for errors the billing engine reports to callers.

    ``retryable`` tells clients whether trying again later can succeed
    (gateway trouble) or whether the input has to change first.
    """

    status_code: int = 400
    code: str = "billing_error"
    retryable: bool = False

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class SignatureVerificationError(BillingError):
    status_code = 400
    code = "signature_invalid"


class MalformedWebhookError(BillingError):
    status_code = 400
    code = "webhook_malformed"


class PlanNotFoundError(BillingError):
    status_code = 404
    code = "plan_not_found"


class PricingNotFoundError(BillingError):
    status_code = 422
    code = "pricing_not_found"


class UserNotFoundError(BillingError):
    status_code = 404
    code = "user_not_found"


class SubscriptionNotFoundError(BillingError):
    status_code = 404
    code = "subscription_not_found"


class InvalidSubscriptionStateError(BillingError):
    status_code = 409
    code = "invalid_subscription_state"


class GatewayError(BillingError):
    status_code = 502
    code = "gateway_error"
    retryable = True


class GatewayUnavailableError(GatewayError):
    """Credentials missing, provider unreachable or the call timed out."""

    status_code = 503
    code = "gateway_unavailable"


class GatewayRequestError(GatewayError):
    """The provider answered but rejected the request."""

    def __init__(self, message: str, *, provider_status: Optional[int] = None):
        super().__init__(message)
        self.provider_status = provider_status


class WebhookProcessingError(BillingError):
    """Dispatch failed; the event stays unprocessed so the gateway redelivers it."""

    status_code = 500
    code = "webhook_processing_failed"
    retryable = True


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request, exc: BillingError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code, "retryable": exc.retryable},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url}: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "code": "internal_error", "retryable": True},
        )
