from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from billsync.api.v1.dependencies import get_current_user, get_gateway, get_gateway_provider, get_notifier
from billsync.core.config import settings
from billsync.db.session import get_db
from billsync.models.user import User
from billsync.schemas.subscription import (
    CancelSubscriptionResponse,
    CheckoutResponse,
    ConfirmPaymentRequest,
    DowngradeResponse,
    InvoiceListResponse,
    InvoiceView,
    PlanSelectionRequest,
    ProrationQuoteResponse,
    SubscriptionResponse,
    SubscriptionStatusResponse,
)
from billsync.schemas.transaction import TransactionResponse
from billsync.services.invoice_service import InvoiceService
from billsync.services.notification_service import Notifier
from billsync.services.payment_gateway import PaymentGateway
from billsync.services.subscription_service import SubscriptionService

router = APIRouter(tags=["subscription"])


@router.get("/status", response_model=SubscriptionStatusResponse)
def get_subscription_status(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Current subscription of the authenticated user (the latest one when none is live)."""
    subscription = SubscriptionService(db).get_status(current_user)
    return SubscriptionStatusResponse(
        has_active_subscription=bool(subscription and subscription.is_live),
        subscription=SubscriptionResponse.from_model(subscription) if subscription else None,
    )


@router.get("/proration", response_model=ProrationQuoteResponse)
def get_proration(
    plan_id: int = Query(..., gt=0),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    quote = SubscriptionService(db).quote(current_user, plan_id)
    return ProrationQuoteResponse(**quote.__dict__)


@router.post("/free", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def activate_free_plan(
    body: PlanSelectionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    subscription = SubscriptionService(db, notifier=notifier).activate_free(current_user, body.plan_id)
    return SubscriptionResponse.from_model(subscription)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    body: PlanSelectionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Create the gateway subscription for a paid plan or an upgrade; the client completes payment."""
    gateway_subscription, quote = SubscriptionService(db, gateway=gateway).checkout(current_user, body.plan_id)
    return CheckoutResponse(
        gateway=gateway.name,
        gateway_subscription_id=gateway_subscription.external_subscription_id,
        short_url=gateway_subscription.short_url,
        key_id=settings.RAZORPAY_KEY_ID,
        plan_id=body.plan_id,
        amount=gateway_subscription.amount,
        currency=gateway_subscription.currency,
        amount_due=quote.amount_due,
        is_upgrade=not quote.is_fresh_activation,
        simulated=gateway_subscription.simulated,
    )


@router.post("/confirm", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def confirm_payment(
    body: ConfirmPaymentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    subscription = SubscriptionService(db, gateway=gateway, notifier=notifier).confirm(
        current_user,
        plan_id=body.plan_id,
        payment_id=body.payment_id,
        gateway_subscription_id=body.gateway_subscription_id,
        signature=body.signature,
    )
    return SubscriptionResponse.from_model(subscription)


@router.post("/downgrade", response_model=DowngradeResponse)
def schedule_downgrade(
    body: PlanSelectionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Switch to a cheaper plan at the end of the current cycle."""
    subscription, quote, successor = SubscriptionService(db, gateway=gateway).schedule_downgrade(
        current_user, body.plan_id
    )
    return DowngradeResponse(
        subscription=SubscriptionResponse.from_model(subscription),
        pending_change_to_plan_id=body.plan_id,
        effective_date=quote.effective_date,
        credit_amount=quote.credit,
        currency=quote.currency,
        gateway_subscription_id=successor.external_subscription_id if successor else None,
    )


@router.post("/cancel", response_model=CancelSubscriptionResponse, status_code=status.HTTP_200_OK)
def cancel_subscription(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway_provider=Depends(get_gateway_provider),
):
    """
    Stops renewal. The subscription stays ACTIVE until the end of the paid
    cycle; the gateway's cancellation event closes it then.
    """
    subscription = SubscriptionService(db, gateway_provider=gateway_provider).cancel(current_user)
    return CancelSubscriptionResponse(
        message="Subscription will not renew",
        subscription_cancelled=True,
        access_until=subscription.end_date,
    )


@router.get("/invoices", response_model=InvoiceListResponse)
def list_invoices(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    transactions = InvoiceService(db).list_for_user(current_user.id)
    return InvoiceListResponse(invoices=[TransactionResponse.model_validate(t) for t in transactions])


@router.get("/invoices/{transaction_id}", response_model=InvoiceView)
def get_invoice(
    transaction_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return InvoiceService(db).build_invoice_view(transaction_id, user_id=current_user.id)
