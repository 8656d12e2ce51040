"""
Tests for checkout, transitions and order queries.
"""
from typing import Any

import pytest

from marketplace_payments.core.order_manager import CartLine, CartSnapshot, generate_order_number
from marketplace_payments.domain.errors import (
    ConflictError,
    EmptyCartError,
    GatewayUnavailableError,
    InvalidCartError,
    InvalidTransitionError,
    OrderNotCancellableError,
    OrderNotFoundError,
    PaymentGatewayError,
)
from marketplace_payments.domain.state_machine import OrderStatus, OrderTrigger


class TestCheckout:
    """Test suite for checkout."""

    @pytest.mark.unit
    def test_order_number_format(self) -> None:
        """Order numbers are ORD-<millis>-<9 base36 chars>."""
        number = generate_order_number()
        prefix, millis, suffix = number.split("-")
        assert prefix == "ORD"
        assert millis.isdigit()
        assert len(suffix) == 9
        assert suffix.isalnum() and suffix.upper() == suffix

    @pytest.mark.asyncio
    async def test_checkout_creates_order_and_intent(self, engine: Any, gateway: Any, cart: Any) -> None:
        """Checkout persists the order and attaches the payment intent."""
        result = await engine.orders.checkout(cart())

        assert result.status == OrderStatus.PAYMENT_PROCESSING.value
        assert result.total_amount == 4999
        assert result.currency == "EUR"
        assert result.client_secret.endswith("_secret_test")

        gateway.create_payment_intent.assert_awaited_once_with(
            amount=4999, currency="EUR", order_id=result.order_id
        )
        order = await engine.orders.get_order(result.order_id)
        assert order.status == OrderStatus.PAYMENT_PROCESSING.value
        assert order.payment_intent_id.startswith("pi_")
        assert [(i.product_id, i.seller_id, i.amount) for i in order.items] == [
            ("prod_lamp", "seller_7", 4999)
        ]

    @pytest.mark.asyncio
    async def test_checkout_normalizes_currency(self, engine: Any, cart: Any) -> None:
        result = await engine.orders.checkout(cart(currency="eur"))
        assert result.currency == "EUR"

    @pytest.mark.asyncio
    async def test_empty_cart_rejected(self, engine: Any) -> None:
        with pytest.raises(EmptyCartError):
            await engine.orders.checkout(CartSnapshot("buyer_42", (), 0, "EUR"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "snapshot,reason",
        [
            (CartSnapshot("b", (CartLine("prod_lamp", "seller_7", 1, 4999),), 4999, "EU"), "invalid_currency"),
            (CartSnapshot("b", (CartLine("prod_lamp", "seller_7", 0, 4999),), 0, "EUR"), "invalid_quantity"),
            (CartSnapshot("b", (CartLine("prod_ghost", "seller_7", 1, 100),), 100, "EUR"), "unknown_product"),
            (CartSnapshot("b", (CartLine("prod_lamp", "seller_7", 1, 3999),), 3999, "EUR"), "stale_price"),
            (CartSnapshot("b", (CartLine("prod_lamp", "seller_7", 2, 4999),), 4999, "EUR"), "total_mismatch"),
        ],
    )
    async def test_invalid_cart_rejected(
        self, engine: Any, gateway: Any, snapshot: CartSnapshot, reason: str
    ) -> None:
        """Invalid carts fail with a reason code and never reach the processor."""
        with pytest.raises(InvalidCartError) as exc_info:
            await engine.orders.checkout(snapshot)

        assert exc_info.value.reason_code == reason
        gateway.create_payment_intent.assert_not_awaited()
        assert await engine.orders.list_orders("b") == []

    @pytest.mark.asyncio
    async def test_processor_rejection_fails_order(self, engine: Any, gateway: Any, cart: Any) -> None:
        """A permanent processor rejection leaves the order PAYMENT_FAILED."""
        gateway.create_payment_intent.side_effect = PaymentGatewayError("Your card was declined")

        with pytest.raises(PaymentGatewayError):
            await engine.orders.checkout(cart())

        [order] = await engine.orders.list_orders("buyer_42")
        assert order.status == OrderStatus.PAYMENT_FAILED.value
        assert order.payment_intent_id is None

    @pytest.mark.asyncio
    async def test_processor_outage_leaves_order_processing(
        self, engine: Any, gateway: Any, cart: Any
    ) -> None:
        """An unknown outcome leaves the order for reconciliation."""
        gateway.create_payment_intent.side_effect = GatewayUnavailableError("timeout")

        with pytest.raises(GatewayUnavailableError):
            await engine.orders.checkout(cart())

        [order] = await engine.orders.list_orders("buyer_42")
        assert order.status == OrderStatus.PAYMENT_PROCESSING.value
        history = await engine.audit.history("order", order.id)
        assert history[-1].action == "payment_outcome_unknown"


class TestTransitions:
    """Test suite for status transitions."""

    @pytest.mark.asyncio
    async def test_transition_writes_audit_entry(self, engine: Any, cart: Any) -> None:
        """Every applied transition has an audit entry with its version."""
        order, _ = await engine.orders.create_order(cart())
        result = await engine.orders.transition(order.id, OrderTrigger.PAYMENT_STARTED, source="test")

        assert result.to_status is OrderStatus.PAYMENT_PROCESSING
        entries = await engine.audit.history("order", order.id)
        assert [e.action for e in entries] == ["order_created", "transition"]
        assert entries[-1].from_status == "CREATED"
        assert entries[-1].to_status == "PAYMENT_PROCESSING"
        assert entries[-1].source == "test"
        assert entries[-1].version == result.order.version

    @pytest.mark.asyncio
    async def test_rejected_transition_is_audited(self, engine: Any, cart: Any) -> None:
        """Rejections leave the order unchanged and are recorded."""
        order, _ = await engine.orders.create_order(cart())

        with pytest.raises(InvalidTransitionError):
            await engine.orders.transition(order.id, OrderTrigger.REFUND_REQUESTED)

        reloaded = await engine.orders.get_order(order.id)
        assert reloaded.status == OrderStatus.CREATED.value
        assert reloaded.version == order.version
        entries = await engine.audit.history("order", order.id)
        assert entries[-1].action == "transition_rejected"

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, engine: Any, cart: Any) -> None:
        """A write conditioned on an old version fails with ConflictError."""
        order, _ = await engine.orders.create_order(cart())
        await engine.orders.transition(order.id, OrderTrigger.PAYMENT_STARTED)

        with pytest.raises(ConflictError):
            await engine.orders.transition(
                order.id, OrderTrigger.CANCEL, expected_version=order.version
            )

        reloaded = await engine.orders.get_order(order.id)
        assert reloaded.status == OrderStatus.PAYMENT_PROCESSING.value

    @pytest.mark.asyncio
    async def test_version_increases_on_each_transition(self, engine: Any, cart: Any) -> None:
        order, _ = await engine.orders.create_order(cart())
        first = await engine.orders.transition(order.id, OrderTrigger.PAYMENT_STARTED)
        second = await engine.orders.transition(order.id, OrderTrigger.CANCEL)

        assert order.version < first.order.version < second.order.version

    @pytest.mark.asyncio
    async def test_paid_transition_writes_outbox_event(
        self, engine: Any, paid_order: Any
    ) -> None:
        """Reaching PAID emits an ``order.paid`` outbox event."""
        await paid_order()
        assert await engine.outbox.get_pending_count() == 1

    @pytest.mark.asyncio
    async def test_unknown_order(self, engine: Any) -> None:
        with pytest.raises(OrderNotFoundError):
            await engine.orders.get_order("missing")


class TestCancelAndFulfill:
    """Test suite for buyer cancellation and fulfillment signals."""

    @pytest.mark.asyncio
    async def test_cancel_unpaid_order(self, engine: Any, gateway: Any, cart: Any) -> None:
        """Cancelling cancels the intent at the processor first."""
        result = await engine.orders.checkout(cart())
        order = await engine.orders.cancel_order(result.order_id, reason="changed_mind")

        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancel_reason == "changed_mind"
        gateway.cancel_payment_intent.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, engine: Any, cart: Any) -> None:
        result = await engine.orders.checkout(cart())
        await engine.orders.cancel_order(result.order_id)
        order = await engine.orders.cancel_order(result.order_id)
        assert order.status == OrderStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_cancel_paid_order_rejected(self, engine: Any, paid_order: Any) -> None:
        result = await paid_order()
        with pytest.raises(OrderNotCancellableError):
            await engine.orders.cancel_order(result.order_id)

    @pytest.mark.asyncio
    async def test_cancel_when_intent_already_succeeded(
        self, engine: Any, gateway: Any, cart: Any
    ) -> None:
        """If the buyer paid in the meantime, cancellation is refused."""
        result = await engine.orders.checkout(cart())
        gateway.cancel_payment_intent.side_effect = PaymentGatewayError("cannot cancel")
        gateway.retrieve_payment_intent.return_value = {"status": "succeeded"}

        with pytest.raises(OrderNotCancellableError):
            await engine.orders.cancel_order(result.order_id)

        order = await engine.orders.get_order(result.order_id)
        assert order.status == OrderStatus.PAYMENT_PROCESSING.value

    @pytest.mark.asyncio
    async def test_fulfillment(self, engine: Any, paid_order: Any) -> None:
        result = await paid_order()
        order = await engine.orders.mark_fulfilled(result.order_id)
        assert order.status == OrderStatus.FULFILLED.value

        again = await engine.orders.mark_fulfilled(result.order_id)
        assert again.status == OrderStatus.FULFILLED.value

    @pytest.mark.asyncio
    async def test_fulfillment_before_payment_rejected(self, engine: Any, cart: Any) -> None:
        result = await engine.orders.checkout(cart())
        with pytest.raises(InvalidTransitionError):
            await engine.orders.mark_fulfilled(result.order_id)


class TestQueries:
    """Test suite for order listing."""

    @pytest.mark.asyncio
    async def test_list_orders_by_buyer_and_seller(self, engine: Any, cart: Any) -> None:
        await engine.orders.checkout(cart())
        await engine.orders.checkout(
            cart(
                lines=[
                    CartLine("prod_mug", "seller_3", 2, 1500),
                    CartLine("prod_poster", "seller_7", 1, 2500),
                ],
                buyer_id="buyer_99",
            )
        )

        assert len(await engine.orders.list_orders("buyer_42")) == 1
        assert len(await engine.orders.list_orders("buyer_99")) == 1
        assert len(await engine.orders.list_seller_orders("seller_7")) == 2
        [order] = await engine.orders.list_seller_orders("seller_3")
        assert order.total_amount == 5500
