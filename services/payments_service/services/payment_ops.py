"""Payment operations: the only place where major-unit Decimals become the
integer minor units the processor speaks, and back.

Local order payment status is a projection of processor state. Every
operation that advances it re-reads the intent from the processor first.
"""

import asyncio
import uuid
from decimal import Decimal
from typing import TYPE_CHECKING, Optional, Sequence

from libs.auth.models import Actor
from libs.common.config import get_settings
from libs.common.currency import from_minor_units, to_minor_units
from libs.common.datetime_utils import utc_now
from libs.common.errors import (
    NoPayoutAccountError,
    NotFoundError,
    PaymentGatewayError,
    PaymentNotSucceededError,
    PermissionDeniedError,
    ValidationError,
)
from libs.common.logging import get_logger
from services.identity_service.models import Vendor, WebhookProvider
from services.identity_service.services.webhook_ledger import (
    already_processed,
    commit_processed,
)
from services.payments_service.gateway import (
    INTENT_CANCELED,
    INTENT_PROCESSING,
    INTENT_SUCCEEDED,
    PaymentGateway,
    PaymentIntent,
    Refund,
)
from services.payments_service.models import PayoutStatus, VendorPayout
from services.store_service.models import PaymentStatus
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

if TYPE_CHECKING:
    from services.store_service.models import Order
    from services.store_service.services.order_workflow import OrderLine, OrderWorkflow

logger = get_logger(__name__)


def payment_status_for(intent_status: str) -> Optional[PaymentStatus]:
    """Map a processor intent status onto the local payment axis."""
    if intent_status == INTENT_SUCCEEDED:
        return PaymentStatus.COMPLETED
    if intent_status == INTENT_PROCESSING:
        return PaymentStatus.PROCESSING
    if intent_status == INTENT_CANCELED:
        return PaymentStatus.FAILED
    return None


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------


async def create_intent(
    gateway: PaymentGateway,
    amount: Decimal,
    metadata: dict,
    currency: Optional[str] = None,
    payment_method: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> PaymentIntent:
    """Create an intent for a major-unit amount (rounded half-up to cents)."""
    amount_minor = to_minor_units(amount)
    if amount_minor <= 0:
        raise ValidationError(
            "Payment amount must be positive", details={"amount": str(amount)}
        )
    return await gateway.create_intent(
        amount_minor,
        currency or get_settings().PAYMENT_CURRENCY,
        {k: str(v) for k, v in metadata.items()},
        payment_method=payment_method,
        idempotency_key=idempotency_key,
    )


async def verify_intent(gateway: PaymentGateway, intent_id: str) -> PaymentIntent:
    """Re-read an intent from the processor; raise unless it has succeeded."""
    intent = await gateway.retrieve_intent(intent_id)
    if intent.status != INTENT_SUCCEEDED:
        raise PaymentNotSucceededError(intent_id, intent.status)
    return intent


async def confirm_payment(
    gateway: PaymentGateway,
    workflow: "OrderWorkflow",
    intent_id: str,
    actor: Actor,
) -> list["Order"]:
    """Project the processor's view of an intent onto the checkout's orders.

    Called by the client after it reports success; the client's claim is never
    used directly.
    """
    orders = await workflow.orders_for_intent(intent_id)
    if not orders:
        raise NotFoundError(
            f"No orders for payment {intent_id}", details={"intent_id": intent_id}
        )
    if not actor.is_admin and any(o.user_id != actor.user_id for o in orders):
        raise PermissionDeniedError("Not your payment")

    intent = await gateway.retrieve_intent(intent_id)
    status = payment_status_for(intent.status)
    if status == PaymentStatus.FAILED:
        await workflow.fail_payment(intent_id, reason="Payment was cancelled")
    elif status is not None:
        await workflow.apply_payment_status(intent_id, status)

    if intent.status != INTENT_SUCCEEDED:
        raise PaymentNotSucceededError(intent_id, intent.status)
    return await workflow.orders_for_intent(intent_id)


async def confirm_and_settle(
    gateway: PaymentGateway,
    workflow: "OrderWorkflow",
    intent_id: str,
    lines: Sequence["OrderLine"],
    actor: Actor,
    shipping_cost: Decimal = Decimal("0"),
    shipping_address_id: Optional[str] = None,
    billing_address_id: Optional[str] = None,
) -> list["Order"]:
    """Create the vendor orders for an intent the client says it has paid.

    Idempotent per intent: when orders already carry this intent they are
    returned unchanged, so a retried confirmation never bills or reserves
    twice.

    A charge that cannot become orders (stock ran out, a product went away)
    is refunded in full before the error propagates, and the intent is
    refused from then on. Lines that do not add up to the charge are the
    caller's to correct and refund nothing.
    """
    existing = await workflow.orders_for_intent(intent_id)
    if existing:
        logger.info("Intent %s already settled (%d orders)", intent_id, len(existing))
        return existing
    if await already_processed(
        workflow.db, WebhookProvider.STRIPE, _settlement_refund_key(intent_id)
    ):
        raise PaymentNotSucceededError(intent_id, "refunded")

    intent = await verify_intent(gateway, intent_id)
    try:
        return await workflow.settle_paid_intent(
            actor,
            intent_id=intent.id,
            amount_paid=from_minor_units(intent.amount_minor),
            lines=lines,
            shipping_cost=shipping_cost,
            shipping_address_id=shipping_address_id,
            billing_address_id=billing_address_id,
        )
    except ValidationError:
        raise
    except BaseException:
        await asyncio.shield(_refund_unsettled(gateway, workflow, intent))
        raise


def _settlement_refund_key(intent_id: str) -> str:
    return f"refund-intent-{intent_id}"


async def _refund_unsettled(
    gateway: PaymentGateway, workflow: "OrderWorkflow", intent: PaymentIntent
) -> None:
    """Give back a captured charge that no order carries."""
    await workflow.db.rollback()
    if await workflow.orders_for_intent(intent.id):
        return
    key = _settlement_refund_key(intent.id)
    try:
        await refund(gateway, intent.id, idempotency_key=key)
    except PaymentGatewayError:
        logger.exception(
            "Intent %s is paid without orders and could not be refunded", intent.id
        )
        return
    await commit_processed(workflow.db, WebhookProvider.STRIPE, key, "settlement_refund")


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


async def refund(
    gateway: PaymentGateway,
    intent_id: str,
    amount: Optional[Decimal] = None,
    idempotency_key: Optional[str] = None,
) -> Refund:
    """Refund part (`amount`, major units) or all (`None`) of a captured intent."""
    amount_minor = None
    if amount is not None:
        amount_minor = to_minor_units(amount)
        if amount_minor <= 0:
            raise ValidationError(
                "Refund amount must be positive", details={"amount": str(amount)}
            )
    result = await gateway.create_refund(
        intent_id, amount_minor, idempotency_key=idempotency_key
    )
    logger.info(
        "Refunded %s of intent %s (refund=%s)",
        from_minor_units(result.amount_minor),
        intent_id,
        result.id,
    )
    return result


# ---------------------------------------------------------------------------
# Vendor payouts
# ---------------------------------------------------------------------------


async def payout(
    db: AsyncSession,
    gateway: PaymentGateway,
    *,
    vendor_id: uuid.UUID,
    amount: Decimal,
    order_ids: Sequence[uuid.UUID],
    initiated_by: Optional[str] = None,
    currency: Optional[str] = None,
) -> VendorPayout:
    """Transfer settled funds to a vendor's connected account."""
    vendor = (
        await db.execute(select(Vendor).where(Vendor.id == vendor_id))
    ).scalar_one_or_none()
    if vendor is None:
        raise NotFoundError(f"Vendor {vendor_id} not found")
    if not vendor.payout_account_id:
        raise NoPayoutAccountError(vendor_id)

    amount_minor = to_minor_units(amount)
    if amount_minor <= 0:
        raise ValidationError(
            "Payout amount must be positive", details={"amount": str(amount)}
        )
    currency = currency or get_settings().PAYMENT_CURRENCY

    record = VendorPayout(
        vendor_id=vendor.id,
        amount=from_minor_units(amount_minor),
        currency=currency,
        order_ids=[str(o) for o in order_ids],
        destination=vendor.payout_account_id,
        initiated_by=initiated_by,
    )
    db.add(record)
    await db.flush()

    try:
        transfer = await gateway.create_transfer(
            vendor.payout_account_id,
            amount_minor,
            currency,
            metadata={"vendor_id": str(vendor.id), "payout_id": str(record.id)},
        )
    except PaymentGatewayError as e:
        record.status = PayoutStatus.FAILED
        record.failure_reason = e.message
        await db.commit()
        raise

    record.transfer_id = transfer.id
    record.status = PayoutStatus.PAID
    record.paid_at = utc_now()
    await db.commit()
    await db.refresh(record)

    logger.info(
        "Paid out %s %s to vendor %s (transfer=%s)",
        record.amount,
        currency,
        vendor.id,
        transfer.id,
    )
    return record


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


async def reconcile_intent(
    gateway: PaymentGateway, workflow: "OrderWorkflow", intent_id: str
) -> Optional[PaymentStatus]:
    """Bring local payment status in line with the processor for one intent."""
    intent = await gateway.retrieve_intent(intent_id)
    status = payment_status_for(intent.status)
    if status is None:
        # requires_payment_method and friends: the customer may still retry.
        return None
    if status == PaymentStatus.FAILED:
        await workflow.fail_payment(intent_id, reason="Payment was not completed")
    else:
        await workflow.apply_payment_status(intent_id, status)
    return status
