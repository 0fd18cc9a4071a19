"""Order workflow: turns carts into vendor-scoped orders and owns the order
status machine.

Two independent axes live on every order:

    status          PENDING -> CONFIRMED -> PROCESSING -> SHIPPED -> DELIVERED
                    PENDING | CONFIRMED -> CANCELLED
    payment_status  PENDING -> PROCESSING -> COMPLETED -> REFUNDED
                    PENDING | PROCESSING -> FAILED

Stock is reserved through the inventory ledger before any order row exists.
Every reservation taken for a checkout is either attached to a committed
order or restored; restoration runs shielded from request cancellation.
"""

import asyncio
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

from libs.auth.models import Actor
from libs.common.cache import Cache
from libs.common.config import get_settings
from libs.common.currency import percent_of, quantize, to_minor_units
from libs.common.datetime_utils import utc_now, utc_today
from libs.common.errors import (
    EmptyCartError,
    InvalidTransitionError,
    NotFoundError,
    PaymentGatewayError,
    PermissionDeniedError,
    ValidationError,
)
from libs.common.logging import get_logger
from libs.common.notifications import NotificationDispatcher
from services.payments_service.gateway import PaymentGateway, PaymentIntent
from services.payments_service.services import payment_ops
from services.store_service.models import (
    CartItem,
    Order,
    OrderItem,
    OrderNumberSequence,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
    Product,
    ProductStatus,
    ProductVariant,
)
from services.store_service.services.inventory_ledger import InventoryLedger
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------

STATUS_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
    },
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

# Customers may only withdraw an order nobody has started on.
CUSTOMER_CANCELLABLE = {OrderStatus.PENDING}
VENDOR_CANCELLABLE = {OrderStatus.PENDING, OrderStatus.CONFIRMED}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in STATUS_TRANSITIONS.get(current, set())


def payment_sources(target: PaymentStatus) -> list[PaymentStatus]:
    """Payment statuses from which `target` is a forward move."""
    return [s for s, targets in PAYMENT_TRANSITIONS.items() if target in targets]


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderLine:
    """A requested line: what to buy, not what it costs."""

    product_id: uuid.UUID
    quantity: int
    variant_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class PricedLine:
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID]
    vendor_id: uuid.UUID
    title: str
    sku: Optional[str]
    quantity: int
    unit_price: Decimal

    @property
    def total_price(self) -> Decimal:
        return quantize(self.unit_price * self.quantity)


@dataclass
class VendorDraft:
    vendor_id: uuid.UUID
    lines: list[PricedLine]
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    total: Decimal


@dataclass
class CheckoutResult:
    orders: list[Order]
    payment_intent_id: str
    client_secret: Optional[str]
    total: Decimal


@dataclass
class Reservation:
    line: PricedLine
    remaining: int


def price_vendor_orders(
    lines: Sequence[PricedLine],
    shipping_cost: Decimal,
    tax_rate: Optional[Decimal] = None,
) -> list[VendorDraft]:
    """Split lines by vendor and price each vendor's order.

    tax = subtotal x rate rounded half-up to cents; shipping is charged on
    every vendor order; total = subtotal + shipping + tax.
    """
    if tax_rate is None:
        tax_rate = get_settings().TAX_RATE
    shipping_cost = quantize(shipping_cost)
    if shipping_cost < 0:
        raise ValidationError("Shipping cost cannot be negative")

    by_vendor: "OrderedDict[uuid.UUID, list[PricedLine]]" = OrderedDict()
    for line in lines:
        by_vendor.setdefault(line.vendor_id, []).append(line)

    drafts = []
    for vendor_id, vendor_lines in by_vendor.items():
        subtotal = quantize(sum((l.total_price for l in vendor_lines), Decimal("0")))
        tax = percent_of(subtotal, tax_rate)
        drafts.append(
            VendorDraft(
                vendor_id=vendor_id,
                lines=vendor_lines,
                subtotal=subtotal,
                shipping_cost=shipping_cost,
                tax=tax,
                total=quantize(subtotal + shipping_cost + tax),
            )
        )
    return drafts


def format_order_number(day: date, sequence: int) -> str:
    return f"ORD-{day:%Y%m%d}-{sequence:04d}"


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------


class OrderWorkflow:
    def __init__(
        self,
        db: AsyncSession,
        ledger: InventoryLedger,
        gateway: Optional[PaymentGateway],
        cache: Cache,
        notifier: NotificationDispatcher,
    ):
        self.db = db
        self.ledger = ledger
        self.gateway = gateway
        self.cache = cache
        self.notifier = notifier

    # ======================================================================
    # Checkout
    # ======================================================================

    async def checkout(
        self,
        actor: Actor,
        *,
        shipping_cost: Decimal = Decimal("0"),
        shipping_address_id: Optional[str] = None,
        billing_address_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutResult:
        """Convert the actor's cart into one order per vendor sharing one
        payment intent. All-or-nothing with respect to stock."""
        lines = await self._cart_lines(actor.user_id)
        if not lines:
            raise EmptyCartError(actor.user_id)

        drafts = price_vendor_orders(lines, shipping_cost)
        grand_total = quantize(sum((d.total for d in drafts), Decimal("0")))
        reference = f"checkout:{uuid.uuid4().hex}"

        reservations = await self._reserve_all(lines, reference)
        intent: Optional[PaymentIntent] = None
        try:
            intent = await payment_ops.create_intent(
                self.require_gateway(),
                grand_total,
                metadata={
                    "user_id": actor.user_id,
                    "checkout": reference,
                    "vendor_count": len(drafts),
                },
                payment_method=payment_method_id,
                idempotency_key=idempotency_key,
            )
            orders = await self._persist_orders(
                user_id=actor.user_id,
                customer_email=actor.email,
                drafts=drafts,
                payment_intent_id=intent.id,
                payment_status=PaymentStatus.PROCESSING,
                actor_id=str(actor.user_id),
                shipping_address_id=shipping_address_id,
                billing_address_id=billing_address_id,
                payment_method_id=payment_method_id,
                clear_cart=True,
            )
        except BaseException:
            await asyncio.shield(self._abort_checkout(reservations, reference, intent))
            raise

        logger.info(
            "Checkout %s created %d order(s) for user %s (total=%s, intent=%s)",
            reference,
            len(orders),
            actor.user_id,
            grand_total,
            intent.id,
        )
        await self._after_orders_created(orders, reservations, actor.email)
        return CheckoutResult(
            orders=orders,
            payment_intent_id=intent.id,
            client_secret=intent.client_secret,
            total=grand_total,
        )

    async def settle_paid_intent(
        self,
        actor: Actor,
        *,
        intent_id: str,
        amount_paid: Decimal,
        lines: Sequence[OrderLine],
        shipping_cost: Decimal = Decimal("0"),
        shipping_address_id: Optional[str] = None,
        billing_address_id: Optional[str] = None,
    ) -> list[Order]:
        """Create orders for an intent the processor reports as succeeded.

        Prices come from the catalog, never from the caller, and must add up
        to what was actually charged.
        """
        priced = await self._price_lines(lines)
        if not priced:
            raise EmptyCartError(actor.user_id)
        drafts = price_vendor_orders(priced, shipping_cost)
        expected = sum((d.total for d in drafts), Decimal("0"))
        if to_minor_units(expected) != to_minor_units(amount_paid):
            raise ValidationError(
                "Order total does not match the amount paid",
                details={"expected": str(quantize(expected)), "paid": str(amount_paid)},
            )

        reference = f"intent:{intent_id}"
        reservations = await self._reserve_all(priced, reference)
        try:
            orders = await self._persist_orders(
                user_id=actor.user_id,
                customer_email=actor.email,
                drafts=drafts,
                payment_intent_id=intent_id,
                payment_status=PaymentStatus.COMPLETED,
                actor_id=str(actor.user_id),
                shipping_address_id=shipping_address_id,
                billing_address_id=billing_address_id,
                payment_method_id=None,
                clear_cart=False,
            )
        except IntegrityError:
            # A concurrent confirmation settled this intent first.
            await asyncio.shield(self._abort_checkout(reservations, reference, None))
            existing = await self.orders_for_intent(intent_id)
            if existing:
                return existing
            raise
        except BaseException:
            await asyncio.shield(self._abort_checkout(reservations, reference, None))
            logger.error(
                "Intent %s is paid but its orders could not be created", intent_id
            )
            raise

        await self._after_orders_created(orders, reservations, actor.email)
        return orders

    def require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise PaymentGatewayError("Payment processor is not configured")
        return self.gateway

    async def _cart_lines(self, user_id: uuid.UUID) -> list[PricedLine]:
        result = await self.db.execute(
            select(CartItem)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.created_at)
        )
        lines = []
        for item in result.scalars().all():
            product = item.product
            if product.status != ProductStatus.ACTIVE:
                raise ValidationError(
                    f"Product {product.title} is no longer available",
                    details={"product_id": str(product.id)},
                )
            lines.append(self._priced(product, item.variant, item.quantity))
        return lines

    async def _price_lines(self, lines: Sequence[OrderLine]) -> list[PricedLine]:
        product_ids = {line.product_id for line in lines}
        variant_ids = {line.variant_id for line in lines if line.variant_id}
        products = {
            p.id: p
            for p in (
                await self.db.execute(select(Product).where(Product.id.in_(product_ids)))
            ).scalars()
        }
        variants = {}
        if variant_ids:
            variants = {
                v.id: v
                for v in (
                    await self.db.execute(
                        select(ProductVariant).where(ProductVariant.id.in_(variant_ids))
                    )
                ).scalars()
            }

        priced = []
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError("Quantity must be positive")
            product = products.get(line.product_id)
            if product is None or product.status != ProductStatus.ACTIVE:
                raise NotFoundError(f"Product {line.product_id} not found")
            variant = None
            if line.variant_id:
                variant = variants.get(line.variant_id)
                if variant is None or variant.product_id != product.id:
                    raise NotFoundError(f"Variant {line.variant_id} not found")
            priced.append(self._priced(product, variant, line.quantity))
        return priced

    @staticmethod
    def _priced(
        product: Product, variant: Optional[ProductVariant], quantity: int
    ) -> PricedLine:
        unit_price = product.base_price
        if variant is not None and variant.price_override is not None:
            unit_price = variant.price_override
        return PricedLine(
            product_id=product.id,
            variant_id=variant.id if variant else None,
            vendor_id=product.vendor_id,
            title=product.title,
            sku=variant.sku if variant else None,
            quantity=quantity,
            unit_price=quantize(unit_price),
        )

    async def _reserve_all(
        self, lines: Sequence[PricedLine], reference: str
    ) -> list[Reservation]:
        reservations: list[Reservation] = []
        try:
            for line in lines:
                remaining = await self.ledger.reserve(
                    line.product_id, line.quantity, line.variant_id, reference
                )
                reservations.append(Reservation(line, remaining))
        except BaseException:
            await asyncio.shield(self._restore_all(reservations, reference))
            raise
        return reservations

    async def _restore_all(
        self, reservations: Sequence[Reservation], reference: str
    ) -> None:
        for reservation in reservations:
            line = reservation.line
            try:
                await self.ledger.restore(
                    line.product_id, line.quantity, line.variant_id, reference
                )
            except Exception:
                logger.exception(
                    "Failed to restore %d of product %s for %s",
                    line.quantity,
                    line.product_id,
                    reference,
                )

    async def _abort_checkout(
        self,
        reservations: Sequence[Reservation],
        reference: str,
        intent: Optional[PaymentIntent],
    ) -> None:
        await self.db.rollback()
        await self._restore_all(reservations, reference)
        if intent is not None and self.gateway is not None:
            try:
                await self.gateway.cancel_intent(intent.id)
            except Exception as e:
                logger.warning(f"Could not cancel payment intent {intent.id}: {e}")
        logger.info(
            "Checkout %s aborted, %d reservation(s) restored",
            reference,
            len(reservations),
        )

    async def _next_order_number(self, day: date) -> str:
        """Advance the per-day counter in one statement and format the number."""
        dialect = self.db.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = (
            insert(OrderNumberSequence)
            .values(day=day, last_value=1)
            .on_conflict_do_update(
                index_elements=[OrderNumberSequence.day],
                set_={"last_value": OrderNumberSequence.last_value + 1},
            )
            .returning(OrderNumberSequence.last_value)
        )
        sequence = (await self.db.execute(stmt)).scalar_one()
        return format_order_number(day, sequence)

    async def _persist_orders(
        self,
        *,
        user_id: uuid.UUID,
        customer_email: Optional[str],
        drafts: Sequence[VendorDraft],
        payment_intent_id: str,
        payment_status: PaymentStatus,
        actor_id: str,
        shipping_address_id: Optional[str],
        billing_address_id: Optional[str],
        payment_method_id: Optional[str],
        clear_cart: bool,
    ) -> list[Order]:
        """Write every vendor order, its items and first history row, and
        optionally empty the cart, in one transaction."""
        day = utc_today()
        now = utc_now()
        orders = []
        for draft in drafts:
            order = Order(
                order_number=await self._next_order_number(day),
                user_id=user_id,
                vendor_id=draft.vendor_id,
                customer_email=customer_email,
                status=OrderStatus.PENDING,
                payment_status=payment_status,
                subtotal=draft.subtotal,
                shipping_cost=draft.shipping_cost,
                tax=draft.tax,
                total=draft.total,
                payment_intent_id=payment_intent_id,
                shipping_address_id=shipping_address_id,
                billing_address_id=billing_address_id,
                payment_method_id=payment_method_id,
                paid_at=now if payment_status == PaymentStatus.COMPLETED else None,
            )
            order.items = [
                OrderItem(
                    product_id=line.product_id,
                    variant_id=line.variant_id,
                    product_title=line.title,
                    sku=line.sku,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total_price=line.total_price,
                )
                for line in draft.lines
            ]
            order.status_history = [
                OrderStatusHistory(
                    status=OrderStatus.PENDING, notes="Order placed", actor_id=actor_id
                )
            ]
            self.db.add(order)
            orders.append(order)

        if clear_cart:
            await self.db.execute(delete(CartItem).where(CartItem.user_id == user_id))

        await self.db.commit()
        return orders

    async def _after_orders_created(
        self,
        orders: Sequence[Order],
        reservations: Sequence[Reservation],
        customer_email: Optional[str],
    ) -> None:
        product_ids = {r.line.product_id for r in reservations}
        await self.cache.invalidate_products(product_ids)
        if orders:
            await self.cache.invalidate_user(orders[0].user_id)
        for order in orders:
            await self.cache.invalidate_vendor(order.vendor_id)

        await self.notifier.email(
            "order_confirmation",
            customer_email,
            {
                "order_numbers": [o.order_number for o in orders],
                "total": str(sum((o.total for o in orders), Decimal("0"))),
            },
        )
        for order in orders:
            await self.notifier.analytics(
                "order_created",
                {
                    "order_id": str(order.id),
                    "vendor_id": str(order.vendor_id),
                    "user_id": str(order.user_id),
                    "total": str(order.total),
                },
            )
        await self._alert_low_stock(reservations)

    async def _alert_low_stock(self, reservations: Sequence[Reservation]) -> None:
        default_threshold = get_settings().LOW_STOCK_THRESHOLD
        for reservation in reservations:
            line = reservation.line
            threshold = await self.ledger.get_threshold(line.product_id, line.variant_id)
            if threshold is None:
                threshold = default_threshold
            if reservation.remaining <= threshold:
                await self.notifier.low_stock(
                    str(line.product_id), reservation.remaining, str(line.vendor_id)
                )

    # ======================================================================
    # Queries
    # ======================================================================

    async def _load(self, order_id: uuid.UUID, with_history: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id)
        if with_history:
            query = query.options(selectinload(Order.status_history)).execution_options(
                populate_existing=True
            )
        order = (await self.db.execute(query)).scalar_one_or_none()
        if order is None:
            raise NotFoundError(
                f"Order {order_id} not found", details={"order_id": str(order_id)}
            )
        return order

    async def get_order(self, order_id: uuid.UUID, actor: Actor) -> Order:
        order = await self._load(order_id, with_history=True)
        if not (
            actor.is_admin
            or order.user_id == actor.user_id
            or (actor.vendor_id is not None and order.vendor_id == actor.vendor_id)
        ):
            raise PermissionDeniedError("You do not have access to this order")
        return order

    async def orders_for_intent(self, intent_id: str) -> list[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.payment_intent_id == intent_id)
            .order_by(Order.order_number)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _paginate(self, query, page: int, limit: int) -> tuple[list[Order], int]:
        total = (
            await self.db.execute(select(func.count()).select_from(query.subquery()))
        ).scalar_one()
        result = await self.db.execute(
            query.order_by(Order.created_at.desc(), Order.order_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_user_orders(
        self,
        user_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[OrderStatus] = None,
    ) -> tuple[list[Order], int]:
        query = select(Order).where(Order.user_id == user_id)
        if status is not None:
            query = query.where(Order.status == status)
        return await self._paginate(query, page, limit)

    async def list_vendor_orders(
        self,
        vendor_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
        status: Optional[OrderStatus] = None,
    ) -> tuple[list[Order], int]:
        query = select(Order).where(Order.vendor_id == vendor_id)
        if status is not None:
            query = query.where(Order.status == status)
        return await self._paginate(query, page, limit)

    async def order_stats(self, vendor_id: uuid.UUID) -> dict:
        counts = dict(
            (
                await self.db.execute(
                    select(Order.status, func.count())
                    .where(Order.vendor_id == vendor_id)
                    .group_by(Order.status)
                )
            ).all()
        )
        revenue = (
            await self.db.execute(
                select(func.coalesce(func.sum(Order.total), 0)).where(
                    Order.vendor_id == vendor_id,
                    Order.status != OrderStatus.CANCELLED,
                )
            )
        ).scalar_one()
        return {
            "total_orders": sum(counts.values()),
            "pending_orders": counts.get(OrderStatus.PENDING, 0),
            "completed_orders": counts.get(OrderStatus.DELIVERED, 0),
            "cancelled_orders": counts.get(OrderStatus.CANCELLED, 0),
            "total_revenue": quantize(revenue),
        }

    # ======================================================================
    # Status transitions
    # ======================================================================

    async def _transition(
        self,
        order: Order,
        target: OrderStatus,
        actor_id: Optional[str],
        notes: Optional[str] = None,
        **values,
    ) -> Order:
        """Move `order` to `target` only if nobody moved it since it was read."""
        # Rollback expires `order`; only these two are read past it.
        order_id, current = order.id, order.status
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == current)
            .values(status=target, updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            fresh = await self._reload(order_id)
            raise InvalidTransitionError(fresh.status, target)

        self.db.add(
            OrderStatusHistory(
                order_id=order_id, status=target, notes=notes, actor_id=actor_id
            )
        )
        await self.db.commit()
        order = await self._reload(order_id)
        logger.info(
            "Order %s: %s -> %s (actor=%s)",
            order.order_number,
            current.value,
            target.value,
            actor_id,
        )
        await self.cache.invalidate_user(order.user_id)
        await self.cache.invalidate_vendor(order.vendor_id)
        await self.notifier.order_status(str(order.id), target.value, order.customer_email)
        return order

    async def _reload(self, order_id: uuid.UUID) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    def _require_vendor_or_admin(self, order: Order, actor: Actor) -> None:
        if actor.is_admin:
            return
        if actor.vendor_id is None or order.vendor_id != actor.vendor_id:
            raise PermissionDeniedError("Only the order's vendor can do that")

    async def update_status(
        self,
        order_id: uuid.UUID,
        new_status: OrderStatus,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Order:
        """Vendor/admin driven transition along the status machine."""
        order = await self._load(order_id)
        self._require_vendor_or_admin(order, actor)

        if new_status == OrderStatus.CANCELLED:
            return await self._cancel(order, actor, notes, VENDOR_CANCELLABLE)
        if not can_transition(order.status, new_status):
            raise InvalidTransitionError(order.status, new_status)

        values = {}
        if new_status == OrderStatus.SHIPPED:
            values["shipped_at"] = utc_now()
        elif new_status == OrderStatus.DELIVERED:
            values["delivered_at"] = utc_now()
        return await self._transition(order, new_status, str(actor.user_id), notes, **values)

    async def ship_order(
        self,
        order_id: uuid.UUID,
        actor: Actor,
        tracking_number: str,
        notes: Optional[str] = None,
    ) -> Order:
        order = await self._load(order_id)
        self._require_vendor_or_admin(order, actor)
        if order.status != OrderStatus.PROCESSING:
            raise InvalidTransitionError(order.status, OrderStatus.SHIPPED)
        return await self._transition(
            order,
            OrderStatus.SHIPPED,
            str(actor.user_id),
            notes or f"Shipped with tracking {tracking_number}",
            tracking_number=tracking_number,
            shipped_at=utc_now(),
        )

    async def mark_delivered(self, order_id: uuid.UUID, actor: Actor) -> Order:
        order = await self._load(order_id)
        if not (actor.is_admin or order.user_id == actor.user_id):
            raise PermissionDeniedError("Only the customer can confirm delivery")
        if order.status != OrderStatus.SHIPPED:
            raise InvalidTransitionError(order.status, OrderStatus.DELIVERED)
        order = await self._transition(
            order,
            OrderStatus.DELIVERED,
            str(actor.user_id),
            "Delivery confirmed",
            delivered_at=utc_now(),
        )
        await self.notifier.email(
            "order_completed", order.customer_email, {"order_number": order.order_number}
        )
        return order

    async def cancel_order(
        self, order_id: uuid.UUID, actor: Actor, reason: Optional[str] = None
    ) -> Order:
        """Customer cancellation: only the owner, only while PENDING."""
        order = await self._load(order_id)
        if order.user_id != actor.user_id:
            raise PermissionDeniedError("Only the customer can cancel this order")
        return await self._cancel(order, actor, reason, CUSTOMER_CANCELLABLE)

    async def _cancel(
        self,
        order: Order,
        actor: Optional[Actor],
        reason: Optional[str],
        allowed_from: set[OrderStatus],
    ) -> Order:
        if order.status not in allowed_from:
            raise InvalidTransitionError(order.status, OrderStatus.CANCELLED)

        actor_id = str(actor.user_id) if actor else "system"
        order = await self._transition(
            order,
            OrderStatus.CANCELLED,
            actor_id,
            reason or "Order cancelled",
            cancelled_at=utc_now(),
            cancellation_reason=reason,
        )
        await asyncio.shield(self._restore_order_stock(order))

        # Money moves only once the cancellation itself has committed.
        if order.payment_status == PaymentStatus.COMPLETED:
            return await asyncio.shield(self._refund_cancelled(order))
        if order.payment_status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            await asyncio.shield(self._release_intent(order))
        return order

    async def _refund_cancelled(self, order: Order) -> Order:
        """Refund the captured total of a cancelled order and mark it REFUNDED.

        When the processor refuses, the order stays CANCELLED with a COMPLETED
        payment; the reconciliation sweep and any later success event retry
        under the same idempotency key.
        """
        order_id = order.id
        if not order.payment_intent_id:
            return order
        try:
            await payment_ops.refund(
                self.require_gateway(),
                order.payment_intent_id,
                order.total,
                idempotency_key=f"refund-order-{order_id}",
            )
        except PaymentGatewayError:
            logger.exception(
                "Refund for cancelled order %s failed, left for reconciliation",
                order.order_number,
            )
            return order

        await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status == PaymentStatus.COMPLETED,
            )
            .values(payment_status=PaymentStatus.REFUNDED, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        order = await self._reload(order_id)
        logger.info("Refunded cancelled order %s", order.order_number)
        await self.cache.invalidate_user(order.user_id)
        await self.cache.invalidate_vendor(order.vendor_id)
        return order

    async def _release_intent(self, order: Order) -> None:
        """Cancel the processor intent once no live order still needs it."""
        intent_id = order.payment_intent_id
        if self.gateway is None or not intent_id:
            return
        live = (
            await self.db.execute(
                select(func.count())
                .select_from(Order)
                .where(
                    Order.payment_intent_id == intent_id,
                    Order.status != OrderStatus.CANCELLED,
                )
            )
        ).scalar_one()
        if live:
            return
        try:
            await self.gateway.cancel_intent(intent_id)
        except Exception as e:
            # Already captured: the success event refunds the cancelled orders.
            logger.warning(f"Could not cancel payment intent {intent_id}: {e}")

    async def _restore_order_stock(self, order: Order) -> None:
        reference = f"order:{order.id}"
        for item in order.items:
            try:
                await self.ledger.restore(
                    item.product_id, item.quantity, item.variant_id, reference
                )
            except Exception:
                logger.exception(
                    "Failed to restore %d of product %s for %s",
                    item.quantity,
                    item.product_id,
                    reference,
                )
        await self.cache.invalidate_products({item.product_id for item in order.items})

    # ======================================================================
    # Payment status projection
    # ======================================================================

    async def apply_payment_status(
        self, intent_id: str, status: PaymentStatus
    ) -> list[Order]:
        """Advance payment status for every order of an intent.

        Only forward moves apply; repeats and backward moves leave the order
        untouched.
        """
        values = {"payment_status": status, "updated_at": utc_now()}
        if status == PaymentStatus.COMPLETED:
            values["paid_at"] = utc_now()

        result = await self.db.execute(
            update(Order)
            .where(
                Order.payment_intent_id == intent_id,
                Order.payment_status.in_(payment_sources(status)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        orders = await self.orders_for_intent(intent_id)

        changed = result.rowcount or 0
        if changed:
            logger.info(
                "Payment %s -> %s on %d order(s)", intent_id, status.value, changed
            )
            for order in orders:
                await self.cache.invalidate_user(order.user_id)
                await self.notifier.analytics(
                    f"payment_{status.value}",
                    {"order_id": str(order.id), "intent_id": intent_id},
                )
        elif orders:
            logger.info(
                "Ignored payment status %s for %s (already %s)",
                status.value,
                intent_id,
                ", ".join(sorted({o.payment_status.value for o in orders})),
            )

        # Cancelled before the charge went through: give the money back.
        stranded = [
            o
            for o in orders
            if o.status == OrderStatus.CANCELLED
            and o.payment_status == PaymentStatus.COMPLETED
        ]
        for order in stranded:
            await asyncio.shield(self._refund_cancelled(order))
        if stranded:
            orders = await self.orders_for_intent(intent_id)
        return orders

    async def fail_payment(
        self, intent_id: str, reason: str = "Payment failed"
    ) -> list[Order]:
        """Mark an intent's orders FAILED and cancel those still PENDING,
        giving their stock back."""
        orders = await self.apply_payment_status(intent_id, PaymentStatus.FAILED)
        for order in orders:
            if (
                order.payment_status == PaymentStatus.FAILED
                and order.status == OrderStatus.PENDING
            ):
                try:
                    await self._cancel(order, None, reason, CUSTOMER_CANCELLABLE)
                except InvalidTransitionError:
                    logger.info("Order %s moved on before cancellation", order.order_number)
        return await self.orders_for_intent(intent_id)

    async def refund_order(
        self,
        order_id: uuid.UUID,
        actor: Actor,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ):
        """Refund one vendor order (fully when `amount` is omitted).

        Other orders paid through the same intent are left alone. A full
        refund moves this order's payment status to REFUNDED; a partial one
        leaves it COMPLETED.
        """
        order = await self._load(order_id)
        self._require_vendor_or_admin(order, actor)
        if order.payment_status != PaymentStatus.COMPLETED or not order.payment_intent_id:
            raise ValidationError(
                "Only orders with a completed payment can be refunded",
                details={"payment_status": order.payment_status.value},
            )

        amount = order.total if amount is None else quantize(amount)
        if amount > order.total:
            raise ValidationError(
                "Refund exceeds the order total",
                details={"amount": str(amount), "total": str(order.total)},
            )
        full = amount == order.total
        key = f"refund-order-{order.id}"
        if not full:
            key = f"{key}-{to_minor_units(amount)}"

        refund = await payment_ops.refund(
            self.require_gateway(), order.payment_intent_id, amount, idempotency_key=key
        )
        if full:
            await self.db.execute(
                update(Order)
                .where(
                    Order.id == order.id,
                    Order.payment_status.in_(payment_sources(PaymentStatus.REFUNDED)),
                )
                .values(payment_status=PaymentStatus.REFUNDED, updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )
        self.db.add(
            OrderStatusHistory(
                order_id=order.id,
                status=order.status,
                notes=reason or f"Refunded {amount}",
                actor_id=str(actor.user_id),
            )
        )
        await self.db.commit()
        order = await self._reload(order.id)
        await self.cache.invalidate_user(order.user_id)
        await self.notifier.analytics(
            "order_refunded",
            {"order_id": str(order.id), "amount": str(amount), "full": full},
        )
        return order, refund
