"""
Order lifecycle service.

Every public method runs one database transaction: the order row is
re-read under ``FOR UPDATE``, the transition is validated and applied, the
event (and ledger) rows are staged, and the transaction commits. Domain
failures roll the transaction back and come back as ``Outcome.failure``.
Buyer notifications are dispatched only after a successful commit.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tradeflow.core.config import Settings, get_settings
from tradeflow.core.errors import (
    DomainError,
    GuardViolationError,
    InvalidTransitionError,
    NotFoundError,
    Outcome,
    ValidationFailedError,
)
from tradeflow.core.logging import get_logger, log_performance
from tradeflow.core.security import generate_secure_token
from tradeflow.database.integrity import to_constraint_violation
from tradeflow.database.models.order import Order, OrderLineItem
from tradeflow.database.models.payment import PaymentType
from tradeflow.schemas.orders import (
    BuyerOrderResponse,
    ExpirySweepResult,
    LineItemRequest,
    OrderEventResponse,
    OrderListResponse,
    OrderResponse,
    QuotationCreateRequest,
    RetailOrderCreateRequest,
)
from tradeflow.schemas.payments import PaymentReceipt, PaymentRecordResponse
from tradeflow.services.inventory.reservation import InventoryReservationService
from tradeflow.services.notifications.messages import (
    OrderNotification,
    compose_notification,
)
from tradeflow.services.notifications.notifier import OrderNotifier
from tradeflow.services.orders.enums import (
    INITIAL_STATUS,
    OrderEventType,
    OrderKind,
    OrderStatus,
)
from tradeflow.services.orders.pricing import PricingBreakdown, calculate_pricing
from tradeflow.services.orders.repository import OrderRepository
from tradeflow.services.orders.state_machine import (
    EVENT_FOR_STATUS,
    OrderStateMachine,
    TransitionContext,
)
from tradeflow.services.payments.repository import PaymentRepository, build_receipt

logger = get_logger(__name__)

T = TypeVar("T")

PAYMENT_TARGETS: dict[PaymentType, tuple[OrderKind, OrderStatus]] = {
    PaymentType.DEPOSIT: (OrderKind.QUOTATION, OrderStatus.DEPOSIT_PAID),
    PaymentType.BALANCE: (OrderKind.QUOTATION, OrderStatus.FULLY_PAID),
    PaymentType.FULL: (OrderKind.RETAIL, OrderStatus.PROCESSING),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_order_number(kind: OrderKind, now: datetime) -> str:
    """``QUO-20260101-1A2B3C`` for quotations, ``ORD-...`` for retail orders."""
    prefix = "QUO" if kind == OrderKind.QUOTATION else "ORD"
    return f"{prefix}-{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


class OrderService:
    """Quotation and retail order operations."""

    def __init__(
        self,
        session: AsyncSession,
        notifier: Optional[OrderNotifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.notifier = notifier
        self.orders = OrderRepository(session)
        self.payments = PaymentRepository(session)
        self.inventory = InventoryReservationService(session)
        self.state_machine = OrderStateMachine(session)
        self._pending_notifications: list[OrderNotification] = []

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    async def _execute(
        self,
        operation: str,
        work: Callable[[], Awaitable[T]],
        **log_context: Any,
    ) -> Outcome[T]:
        """Run ``work`` in the session's transaction and commit it."""
        self._pending_notifications = []
        try:
            with log_performance(logger, operation, **log_context):
                value = await work()
                try:
                    await self.session.flush()
                except IntegrityError as e:
                    raise to_constraint_violation(
                        e, "Order change rejected by storage", operation=operation
                    ) from e
            await self.session.commit()
        except DomainError as e:
            await self.session.rollback()
            self._pending_notifications = []
            logger.info(
                "Order operation rejected",
                operation=operation,
                error_kind=e.kind.value,
                error=e.message,
                **log_context,
            )
            return Outcome.failure(e)

        notifications, self._pending_notifications = self._pending_notifications, []
        if self.notifier is not None:
            for notification in notifications:
                self.notifier.dispatch(notification)
        return Outcome.success(value)

    def _queue_notification(self, order: Order, event: OrderEventType) -> None:
        notification = compose_notification(order, event)
        if notification is not None:
            self._pending_notifications.append(notification)

    async def _load(
        self,
        order_id: uuid.UUID,
        seller_id: Optional[uuid.UUID] = None,
        for_update: bool = True,
    ) -> Order:
        order = await self.orders.get_by_id(order_id, seller_id, for_update=for_update)
        if order is None:
            raise NotFoundError("Order not found", order_id=str(order_id))
        return order

    async def _load_by_token(self, access_token: str, for_update: bool = True) -> Order:
        order = await self.orders.get_by_access_token(access_token, for_update=for_update)
        if order is None or order.status == OrderStatus.DRAFT:
            raise NotFoundError("Quotation not found")
        return order

    @staticmethod
    def _snapshot(order: Order, now: datetime) -> OrderResponse:
        return OrderResponse.model_validate(order).model_copy(
            update={"is_expired": order.is_expired_at(now)}
        )

    @staticmethod
    def _buyer_snapshot(order: Order, now: datetime) -> BuyerOrderResponse:
        return BuyerOrderResponse.model_validate(order).model_copy(
            update={"is_expired": order.is_expired_at(now)}
        )

    def _transition(
        self, order: Order, target: OrderStatus, context: TransitionContext
    ) -> None:
        self.state_machine.apply_transition(order, target, context)
        self._queue_notification(order, EVENT_FOR_STATUS[target])

    @staticmethod
    def _reserved_lines(order: Order) -> list[tuple[uuid.UUID, int]]:
        return [
            (line.product_id, line.quantity)
            for line in order.line_items
            if line.product_id is not None
        ]

    async def _reserve_inventory(self, order: Order, now: datetime) -> None:
        lines = self._reserved_lines(order)
        if lines:
            await self.inventory.reserve_lines(lines)
            order.inventory_reserved_at = now

    async def _release_inventory(self, order: Order) -> None:
        if order.inventory_reserved_at is None:
            return
        await self.inventory.release_lines(self._reserved_lines(order))
        order.inventory_reserved_at = None

    # ------------------------------------------------------------------
    # Pricing and line items
    # ------------------------------------------------------------------

    async def _price_quotation(
        self, seller_id: uuid.UUID, request: QuotationCreateRequest, currency: str
    ) -> PricingBreakdown:
        deposit_percentage = request.deposit_percentage
        if deposit_percentage is None and request.deposit_cents is None:
            deposit_percentage = self.settings.default_deposit_percentage

        pricing = calculate_pricing(
            [item.model_dump() for item in request.line_items],
            currency=currency,
            tax_rate=request.tax_rate,
            shipping_cents=request.shipping_cents,
            deposit_percentage=deposit_percentage,
            deposit_cents=request.deposit_cents,
            require_split=True,
        )
        await self._check_moq(seller_id, pricing)
        return pricing

    async def _check_moq(self, seller_id: uuid.UUID, pricing: PricingBreakdown) -> None:
        product_ids = {line.product_id for line in pricing.lines if line.product_id}
        if not product_ids:
            return

        products = await self.inventory.load_products(product_ids, seller_id)
        violations = self.inventory.check_moq(pricing.lines, products)
        if violations:
            raise GuardViolationError(
                "; ".join(violation.message for violation in violations),
                lines=[violation.index for violation in violations],
            )

    @staticmethod
    def _build_line_items(pricing: PricingBreakdown) -> list[OrderLineItem]:
        return [
            OrderLineItem(
                position=line.position,
                product_id=line.product_id,
                sku=line.sku,
                name=line.name,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                line_total_cents=line.line_total_cents,
            )
            for line in pricing.lines
        ]

    @staticmethod
    def _apply_pricing(order: Order, pricing: PricingBreakdown) -> None:
        order.subtotal_cents = pricing.subtotal_cents
        order.tax_cents = pricing.tax_cents
        order.shipping_cents = pricing.shipping_cents
        order.total_cents = pricing.total_cents
        order.deposit_cents = pricing.deposit_cents
        order.balance_cents = pricing.balance_cents
        order.deposit_percentage = pricing.deposit_percentage

    # ------------------------------------------------------------------
    # Quotations
    # ------------------------------------------------------------------

    async def create_quotation(
        self,
        seller_id: uuid.UUID,
        request: QuotationCreateRequest,
        actor_id: Optional[str] = None,
    ) -> Outcome[OrderResponse]:
        """Create a draft quotation priced from its line items."""

        async def work() -> OrderResponse:
            now = utc_now()
            currency = request.currency or self.settings.default_currency
            pricing = await self._price_quotation(seller_id, request, currency)

            order = Order(
                id=uuid.uuid4(),
                order_number=generate_order_number(OrderKind.QUOTATION, now),
                kind=OrderKind.QUOTATION,
                status=INITIAL_STATUS[OrderKind.QUOTATION],
                seller_id=seller_id,
                buyer_id=request.buyer_id,
                buyer_email=request.buyer_email,
                buyer_name=request.buyer_name,
                buyer_company=request.buyer_company,
                currency=currency,
                ship_to_country=request.ship_to_country,
                valid_until=request.valid_until
                or now + timedelta(days=self.settings.quotation_validity_days),
                notes=request.notes,
                terms=request.terms,
                access_token=generate_secure_token(),
                created_by=actor_id,
                updated_by=actor_id,
                line_items=self._build_line_items(pricing),
            )
            self._apply_pricing(order, pricing)

            await self.orders.add_order(order)
            self.state_machine.record_event(
                order,
                OrderEventType.CREATED,
                TransitionContext(now=now, actor_id=actor_id),
            )
            return self._snapshot(order, now)

        return await self._execute(
            "create_quotation", work, seller_id=str(seller_id)
        )

    async def update_draft(
        self,
        order_id: uuid.UUID,
        seller_id: uuid.UUID,
        request: QuotationCreateRequest,
        actor_id: Optional[str] = None,
    ) -> Outcome[OrderResponse]:
        """Replace a draft's buyer, line items and terms."""

        async def work() -> OrderResponse:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            if order.status != OrderStatus.DRAFT:
                raise InvalidTransitionError(
                    "Only draft quotations can be edited",
                    current_status=order.status.value,
                    event="update",
                    order_id=str(order_id),
                )

            currency = request.currency or order.currency
            pricing = await self._price_quotation(seller_id, request, currency)

            # Old rows must be gone before new positions are inserted.
            order.line_items.clear()
            await self.session.flush()
            order.line_items.extend(self._build_line_items(pricing))

            order.buyer_id = request.buyer_id
            order.buyer_email = request.buyer_email
            order.buyer_name = request.buyer_name
            order.buyer_company = request.buyer_company
            order.currency = currency
            order.ship_to_country = request.ship_to_country
            if request.valid_until is not None:
                order.valid_until = request.valid_until
            order.notes = request.notes
            order.terms = request.terms
            self._apply_pricing(order, pricing)
            order.updated_at = now
            order.updated_by = actor_id

            self.state_machine.record_event(
                order,
                OrderEventType.UPDATED,
                TransitionContext(now=now, actor_id=actor_id),
                from_status=OrderStatus.DRAFT,
            )
            return self._snapshot(order, now)

        return await self._execute("update_draft", work, order_id=str(order_id))

    async def delete_draft(
        self, order_id: uuid.UUID, seller_id: uuid.UUID
    ) -> Outcome[uuid.UUID]:
        """Delete a quotation that was never sent."""

        async def work() -> uuid.UUID:
            order = await self._load(order_id, seller_id)
            if order.status != OrderStatus.DRAFT:
                raise InvalidTransitionError(
                    "Only draft quotations can be deleted",
                    current_status=order.status.value,
                    event="delete",
                    order_id=str(order_id),
                )
            await self.orders.delete(order)
            logger.info("Draft quotation deleted", order_id=str(order_id))
            return order_id

        return await self._execute("delete_draft", work, order_id=str(order_id))

    async def send(
        self,
        order_id: uuid.UUID,
        seller_id: uuid.UUID,
        actor_id: Optional[str] = None,
    ) -> Outcome[OrderResponse]:
        async def work() -> OrderResponse:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            self._transition(
                order, OrderStatus.SENT, TransitionContext(now=now, actor_id=actor_id)
            )
            return self._snapshot(order, now)

        return await self._execute("send_quotation", work, order_id=str(order_id))

    async def _mark_viewed(self, order: Order, now: datetime) -> None:
        # Repeat opens and opens after acceptance leave the status alone.
        if order.status == OrderStatus.DRAFT:
            raise InvalidTransitionError(
                "Quotation has not been sent",
                current_status=order.status.value,
                event="view",
                order_id=str(order.id),
            )
        if order.status == OrderStatus.SENT:
            self._transition(order, OrderStatus.VIEWED, TransitionContext(now=now))

    async def mark_viewed(self, order_id: uuid.UUID) -> Outcome[OrderResponse]:
        async def work() -> OrderResponse:
            now = utc_now()
            order = await self._load(order_id)
            await self._mark_viewed(order, now)
            return self._snapshot(order, now)

        return await self._execute("mark_viewed", work, order_id=str(order_id))

    async def view_by_token(self, access_token: str) -> Outcome[BuyerOrderResponse]:
        """Buyer opens the quotation link."""

        async def work() -> BuyerOrderResponse:
            now = utc_now()
            order = await self._load_by_token(access_token)
            await self._mark_viewed(order, now)
            return self._buyer_snapshot(order, now)

        return await self._execute("view_quotation_link", work)

    async def _accept(
        self, order: Order, now: datetime, actor_id: Optional[str]
    ) -> None:
        self._transition(
            order, OrderStatus.ACCEPTED, TransitionContext(now=now, actor_id=actor_id)
        )
        await self._reserve_inventory(order, now)

    async def accept(
        self,
        order_id: uuid.UUID,
        actor_id: Optional[str] = None,
        *,
        seller_id: Optional[uuid.UUID] = None,
    ) -> Outcome[OrderResponse]:
        """Accept a sent or viewed quotation and reserve its stock."""

        async def work() -> OrderResponse:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            await self._accept(order, now, actor_id)
            return self._snapshot(order, now)

        return await self._execute("accept_quotation", work, order_id=str(order_id))

    async def accept_by_token(self, access_token: str) -> Outcome[BuyerOrderResponse]:
        async def work() -> BuyerOrderResponse:
            now = utc_now()
            order = await self._load_by_token(access_token)
            await self._accept(order, now, actor_id=order.buyer_email)
            return self._buyer_snapshot(order, now)

        return await self._execute("accept_quotation_link", work)

    async def request_balance(
        self,
        order_id: uuid.UUID,
        seller_id: uuid.UUID,
        actor_id: Optional[str] = None,
    ) -> Outcome[OrderResponse]:
        async def work() -> OrderResponse:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            self._transition(
                order,
                OrderStatus.BALANCE_DUE,
                TransitionContext(now=now, actor_id=actor_id),
            )
            return self._snapshot(order, now)

        return await self._execute("request_balance", work, order_id=str(order_id))

    async def complete(
        self,
        order_id: uuid.UUID,
        seller_id: uuid.UUID,
        actor_id: Optional[str] = None,
    ) -> Outcome[OrderResponse]:
        async def work() -> OrderResponse:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            self._transition(
                order,
                OrderStatus.COMPLETED,
                TransitionContext(now=now, actor_id=actor_id),
            )
            return self._snapshot(order, now)

        return await self._execute("complete_order", work, order_id=str(order_id))

    async def cancel(
        self,
        order_id: uuid.UUID,
        seller_id: uuid.UUID,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Outcome[OrderResponse]:
        """
        Cancel a non-terminal order and restock anything it reserved.

        Payments already captured are not refunded here.
        """

        async def work() -> OrderResponse:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            self._transition(
                order,
                OrderStatus.CANCELLED,
                TransitionContext(now=now, actor_id=actor_id, reason=reason),
            )
            await self._release_inventory(order)
            return self._snapshot(order, now)

        return await self._execute("cancel_order", work, order_id=str(order_id))

    async def expire_overdue(
        self, now: Optional[datetime] = None
    ) -> Outcome[ExpirySweepResult]:
        """
        Move one batch of lapsed quotations to EXPIRED.

        Rows locked by a concurrent transition are skipped and picked up by
        the next sweep.
        """

        async def work() -> ExpirySweepResult:
            sweep_time = now or utc_now()
            orders = await self.orders.find_lapsed_for_update(
                sweep_time, limit=self.settings.expiry_sweep_batch_size
            )
            expired_ids = []
            for order in orders:
                self._transition(
                    order,
                    OrderStatus.EXPIRED,
                    TransitionContext(now=sweep_time, actor_id="system"),
                )
                await self._release_inventory(order)
                expired_ids.append(order.id)

            if expired_ids:
                logger.info("Quotations expired", count=len(expired_ids))
            return ExpirySweepResult(expired=len(expired_ids), order_ids=expired_ids)

        return await self._execute("expire_overdue", work)

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def _record_payment(
        self,
        order_id: uuid.UUID,
        payment_type: PaymentType,
        amount_cents: int,
        idempotency_key: str,
        provider_intent_id: Optional[str],
        actor_id: Optional[str],
        seller_id: Optional[uuid.UUID],
    ) -> Outcome[PaymentReceipt]:
        kind, target = PAYMENT_TARGETS[payment_type]

        async def work() -> PaymentReceipt:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            payment_id = uuid.uuid4()
            receipt = build_receipt(
                record_id=payment_id,
                order_id=order.id,
                order_number=order.order_number,
                payment_type=payment_type,
                amount_cents=amount_cents,
                currency=order.currency,
                idempotency_key=idempotency_key,
                order_status=target.value,
                recorded_at=now,
                provider_intent_id=provider_intent_id,
            )

            # The ledger insert comes first so a reused key is reported as a
            # duplicate whatever status the order has reached since.
            await self.payments.record_payment(
                order_id=order.id,
                payment_type=payment_type,
                amount_cents=amount_cents,
                currency=order.currency,
                idempotency_key=idempotency_key,
                provider_intent_id=provider_intent_id,
                response_payload=receipt,
                payment_id=payment_id,
            )

            if order.kind != kind:
                raise InvalidTransitionError(
                    f"{payment_type.value.capitalize()} payments do not apply to "
                    f"{order.kind.value} orders",
                    current_status=order.status.value,
                    event=f"{payment_type.value}_payment",
                    order_id=str(order.id),
                )

            self._transition(
                order,
                target,
                TransitionContext(
                    now=now,
                    actor_id=actor_id,
                    amount_cents=amount_cents,
                    details={
                        "payment_id": str(payment_id),
                        "idempotency_key": idempotency_key,
                    },
                ),
            )
            return PaymentReceipt.model_validate(receipt)

        return await self._execute(
            f"record_{payment_type.value}_payment",
            work,
            order_id=str(order_id),
            idempotency_key=idempotency_key,
        )

    async def record_deposit_payment(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        idempotency_key: str,
        provider_intent_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        seller_id: Optional[uuid.UUID] = None,
    ) -> Outcome[PaymentReceipt]:
        return await self._record_payment(
            order_id,
            PaymentType.DEPOSIT,
            amount_cents,
            idempotency_key,
            provider_intent_id,
            actor_id,
            seller_id,
        )

    async def record_balance_payment(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        idempotency_key: str,
        provider_intent_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        seller_id: Optional[uuid.UUID] = None,
    ) -> Outcome[PaymentReceipt]:
        return await self._record_payment(
            order_id,
            PaymentType.BALANCE,
            amount_cents,
            idempotency_key,
            provider_intent_id,
            actor_id,
            seller_id,
        )

    async def record_full_payment(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        idempotency_key: str,
        provider_intent_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        seller_id: Optional[uuid.UUID] = None,
    ) -> Outcome[PaymentReceipt]:
        return await self._record_payment(
            order_id,
            PaymentType.FULL,
            amount_cents,
            idempotency_key,
            provider_intent_id,
            actor_id,
            seller_id,
        )

    async def record_payment(
        self,
        order_id: uuid.UUID,
        payment_type: PaymentType,
        amount_cents: int,
        idempotency_key: str,
        provider_intent_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        seller_id: Optional[uuid.UUID] = None,
    ) -> Outcome[PaymentReceipt]:
        """Dispatch on payment type; refunds go through ``refund``."""
        if payment_type == PaymentType.REFUND:
            return Outcome.failure(
                ValidationFailedError(
                    "Refunds are recorded through refund()",
                    payment_type=payment_type.value,
                )
            )
        return await self._record_payment(
            order_id,
            payment_type,
            amount_cents,
            idempotency_key,
            provider_intent_id,
            actor_id,
            seller_id,
        )

    async def refund(
        self,
        order_id: uuid.UUID,
        amount_cents: int,
        idempotency_key: str,
        reason: Optional[str] = None,
        provider_intent_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        seller_id: Optional[uuid.UUID] = None,
    ) -> Outcome[PaymentReceipt]:
        """Refund a processing or delivered retail order."""

        async def work() -> PaymentReceipt:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            captured = await self.payments.captured_total(order.id)
            payment_id = uuid.uuid4()
            receipt = build_receipt(
                record_id=payment_id,
                order_id=order.id,
                order_number=order.order_number,
                payment_type=PaymentType.REFUND,
                amount_cents=amount_cents,
                currency=order.currency,
                idempotency_key=idempotency_key,
                order_status=OrderStatus.REFUNDED.value,
                recorded_at=now,
                provider_intent_id=provider_intent_id,
            )
            await self.payments.record_payment(
                order_id=order.id,
                payment_type=PaymentType.REFUND,
                amount_cents=amount_cents,
                currency=order.currency,
                idempotency_key=idempotency_key,
                provider_intent_id=provider_intent_id,
                response_payload=receipt,
                payment_id=payment_id,
            )
            was_processing = order.status == OrderStatus.PROCESSING
            self._transition(
                order,
                OrderStatus.REFUNDED,
                TransitionContext(
                    now=now,
                    actor_id=actor_id,
                    reason=reason,
                    amount_cents=amount_cents,
                    captured_cents=captured,
                    details={
                        "payment_id": str(payment_id),
                        "idempotency_key": idempotency_key,
                    },
                ),
            )
            # Goods that never shipped go back on the shelf.
            if was_processing:
                await self._release_inventory(order)
            return PaymentReceipt.model_validate(receipt)

        return await self._execute(
            "refund_order",
            work,
            order_id=str(order_id),
            idempotency_key=idempotency_key,
        )

    # ------------------------------------------------------------------
    # Retail orders
    # ------------------------------------------------------------------

    async def create_retail_order(
        self,
        request: RetailOrderCreateRequest,
        actor_id: Optional[str] = None,
    ) -> Outcome[OrderResponse]:
        """
        Create a pending checkout order priced from the catalog.

        Stock for every line is reserved in the same transaction.
        """

        async def work() -> OrderResponse:
            now = utc_now()
            currency = request.currency or self.settings.default_currency
            products = await self.inventory.load_products(
                [item.product_id for item in request.line_items], request.seller_id
            )

            catalog_lines: list[dict[str, Any]] = []
            for item in request.line_items:
                product = products[item.product_id]
                if product.currency != currency:
                    raise GuardViolationError(
                        f"{product.sku} is priced in {product.currency}, not {currency}",
                        product_id=str(product.id),
                    )
                catalog_lines.append(self._catalog_line(item, product))

            pricing = calculate_pricing(
                catalog_lines,
                currency=currency,
                tax_rate=request.tax_rate,
                shipping_cents=request.shipping_cents,
            )
            violations = self.inventory.check_moq(pricing.lines, products)
            if violations:
                raise GuardViolationError(
                    "; ".join(violation.message for violation in violations),
                    lines=[violation.index for violation in violations],
                )

            order = Order(
                id=uuid.uuid4(),
                order_number=generate_order_number(OrderKind.RETAIL, now),
                kind=OrderKind.RETAIL,
                status=INITIAL_STATUS[OrderKind.RETAIL],
                seller_id=request.seller_id,
                buyer_id=request.buyer_id,
                buyer_email=request.buyer_email,
                buyer_name=request.buyer_name,
                currency=currency,
                ship_to_country=request.ship_to_country,
                created_by=actor_id,
                updated_by=actor_id,
                line_items=self._build_line_items(pricing),
            )
            self._apply_pricing(order, pricing)

            await self._reserve_inventory(order, now)
            await self.orders.add_order(order)
            self.state_machine.record_event(
                order,
                OrderEventType.CREATED,
                TransitionContext(now=now, actor_id=actor_id),
            )
            return self._snapshot(order, now)

        return await self._execute(
            "create_retail_order", work, seller_id=str(request.seller_id)
        )

    @staticmethod
    def _catalog_line(item: LineItemRequest, product) -> dict[str, Any]:
        return {
            "product_id": product.id,
            "sku": product.sku,
            "name": product.name,
            "quantity": item.quantity,
            "unit_price_cents": product.price_cents,
        }

    async def ship(
        self,
        order_id: uuid.UUID,
        seller_id: uuid.UUID,
        actor_id: Optional[str] = None,
    ) -> Outcome[OrderResponse]:
        async def work() -> OrderResponse:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            self._transition(
                order, OrderStatus.SHIPPED, TransitionContext(now=now, actor_id=actor_id)
            )
            return self._snapshot(order, now)

        return await self._execute("ship_order", work, order_id=str(order_id))

    async def deliver(
        self,
        order_id: uuid.UUID,
        seller_id: uuid.UUID,
        actor_id: Optional[str] = None,
    ) -> Outcome[OrderResponse]:
        async def work() -> OrderResponse:
            now = utc_now()
            order = await self._load(order_id, seller_id)
            self._transition(
                order,
                OrderStatus.DELIVERED,
                TransitionContext(now=now, actor_id=actor_id),
            )
            return self._snapshot(order, now)

        return await self._execute("deliver_order", work, order_id=str(order_id))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(
        self, order_id: uuid.UUID, seller_id: Optional[uuid.UUID] = None
    ) -> Outcome[OrderResponse]:
        try:
            order = await self._load(order_id, seller_id, for_update=False)
        except NotFoundError as e:
            return Outcome.failure(e)
        return Outcome.success(self._snapshot(order, utc_now()))

    async def get_order_by_token(self, access_token: str) -> Outcome[BuyerOrderResponse]:
        """Buyer view without marking the quotation as viewed."""
        try:
            order = await self._load_by_token(access_token, for_update=False)
        except NotFoundError as e:
            return Outcome.failure(e)
        return Outcome.success(self._buyer_snapshot(order, utc_now()))

    async def list_orders(
        self,
        seller_id: uuid.UUID,
        status: Optional[OrderStatus] = None,
        kind: Optional[OrderKind] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Outcome[OrderListResponse]:
        orders, total = await self.orders.list_orders(
            seller_id, status=status, kind=kind, skip=skip, limit=limit
        )
        now = utc_now()
        return Outcome.success(
            OrderListResponse(
                items=[self._snapshot(order, now) for order in orders],
                total=total,
                skip=skip,
                limit=limit,
            )
        )

    async def list_events(
        self, order_id: uuid.UUID, seller_id: Optional[uuid.UUID] = None
    ) -> Outcome[list[OrderEventResponse]]:
        try:
            await self._load(order_id, seller_id, for_update=False)
        except NotFoundError as e:
            return Outcome.failure(e)
        events = await self.orders.list_events(order_id)
        return Outcome.success(
            [OrderEventResponse.model_validate(event) for event in events]
        )

    async def list_payments(
        self, order_id: uuid.UUID, seller_id: Optional[uuid.UUID] = None
    ) -> Outcome[list[PaymentRecordResponse]]:
        try:
            await self._load(order_id, seller_id, for_update=False)
        except NotFoundError as e:
            return Outcome.failure(e)
        records = await self.payments.list_for_order(order_id)
        return Outcome.success(
            [PaymentRecordResponse.model_validate(record) for record in records]
        )


def get_order_service(
    session: AsyncSession, notifier: Optional[OrderNotifier] = None
) -> OrderService:
    return OrderService(session, notifier=notifier)
