"""
Payment gateway seam.

``PaymentGateway`` is the contract the engine talks to. One real provider
(Razorpay) and one flagged development stub implement it. The instance is
built once per process by ``get_gateway_state()``, a single-flight
initializer: the first caller builds, concurrent callers wait on the same
future, and the outcome is a typed ``GatewayReady`` / ``GatewayUnavailable``.
"""
import abc
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from billsync.core.config import settings
from billsync.core.errors import GatewayUnavailableError
from billsync.schemas.webhook import GatewayEvent, WebhookResult

logger = logging.getLogger(__name__)


@dataclass
class PaymentIntent:
    id: str
    amount: Decimal
    currency: str
    status: str
    simulated: bool = False


@dataclass
class GatewaySubscription:
    external_subscription_id: str
    amount: Decimal
    currency: str
    status: str
    short_url: Optional[str] = None
    start_at: Optional[datetime] = None
    simulated: bool = False


@dataclass
class GatewayInvoice:
    id: str
    payment_id: Optional[str]
    amount: Decimal
    currency: str
    status: str
    issued_at: Optional[datetime] = None
    billing_start: Optional[datetime] = None
    billing_end: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.status == "paid" and bool(self.payment_id)


class PaymentGateway(abc.ABC):
    """Everything the billing engine needs from a recurring-billing provider."""

    name: str = ""
    simulated: bool = False

    @abc.abstractmethod
    def create_payment_intent(self, amount: Decimal, currency: str, metadata: Dict[str, Any]) -> PaymentIntent:
        ...

    @abc.abstractmethod
    def create_subscription(self, plan_id: int, user_id: int, metadata: Dict[str, Any]) -> GatewaySubscription:
        """Resolve the regional price, ensure payer and plan objects, create the recurring subscription.

        ``metadata["start_at"]`` (a datetime) schedules the first charge instead of starting now.
        """

    @abc.abstractmethod
    def verify_payment(self, payment_id: str, signature: str, subscription_id: Optional[str] = None) -> bool:
        """Checkout signature check. Never raises."""

    @abc.abstractmethod
    def cancel_subscription(self, external_id: str, at_cycle_end: bool) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def update_subscription(self, external_id: str, options: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def get_subscription(self, external_id: str) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def fetch_invoices_for_subscription(self, external_id: str) -> List[GatewayInvoice]:
        ...

    @abc.abstractmethod
    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        ...

    @abc.abstractmethod
    def parse_webhook(self, raw_event: Dict[str, Any], event_id: Optional[str] = None) -> Optional[GatewayEvent]:
        """Validate and normalize a webhook body.

        Returns None for event names outside the handled catalog; raises
        ``MalformedWebhookError`` for bodies that cannot be understood.
        """

    def process_webhook(self, raw_event: Dict[str, Any], guard, event_id: Optional[str] = None) -> WebhookResult:
        event = self.parse_webhook(raw_event, event_id=event_id)
        if event is None:
            event_name = str(raw_event.get("event") or "")
            logger.info(f"Ignoring unhandled {self.name} webhook event {event_name!r}")
            return WebhookResult(processed=False, event_type=event_name, ignored=True, simulated=self.simulated)
        result = guard.run(event)
        result.simulated = self.simulated
        return result


@dataclass(frozen=True)
class GatewayReady:
    gateway: PaymentGateway


@dataclass(frozen=True)
class GatewayUnavailable:
    reason: str


GatewayState = Union[GatewayReady, GatewayUnavailable]

_state_lock = threading.Lock()
_state_future: Optional["Future[GatewayState]"] = None


def build_gateway() -> GatewayState:
    if settings.razorpay_configured:
        from billsync.services.razorpay_service import RazorpayGateway

        gateway = RazorpayGateway.from_settings()
        gateway.check_connection()
        logger.info("Razorpay gateway initialized")
        return GatewayReady(gateway)

    if settings.GATEWAY_ALLOW_STUB and not settings.is_production:
        from billsync.services.stub_gateway import StubGateway

        logger.warning("STUB GATEWAY enabled: payments are simulated and nothing is charged")
        return GatewayReady(StubGateway())

    return GatewayUnavailable("Razorpay credentials are not configured")


def get_gateway_state() -> GatewayState:
    """Single-flight initialization; failures are not cached so a later call can retry."""
    global _state_future
    with _state_lock:
        future = _state_future
        owner = future is None
        if owner:
            future = Future()
            _state_future = future

    if owner:
        try:
            state = build_gateway()
        except GatewayUnavailableError as e:
            state = GatewayUnavailable(e.message)
        except Exception as e:
            logger.exception("Gateway initialization failed")
            state = GatewayUnavailable(str(e))
        if isinstance(state, GatewayUnavailable):
            logger.error(f"Payment gateway unavailable: {state.reason}")
            with _state_lock:
                _state_future = None
        future.set_result(state)

    return future.result()


def require_gateway() -> PaymentGateway:
    state = get_gateway_state()
    if isinstance(state, GatewayUnavailable):
        raise GatewayUnavailableError(f"Payment gateway unavailable: {state.reason}")
    return state.gateway


def reset_gateway_state() -> None:
    global _state_future
    with _state_lock:
        _state_future = None
