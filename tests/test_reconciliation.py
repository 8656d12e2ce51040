"""
Tests for the reconciliation sweeps and the daily totals comparison.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import func, select

from marketplace_payments.core.audit import ensure_utc
from marketplace_payments.core.order_manager import CartLine
from marketplace_payments.database.models import ReconciliationRun
from marketplace_payments.domain.errors import GatewayUnavailableError
from marketplace_payments.domain.state_machine import OrderStatus
from marketplace_payments.workers.reconciliation_worker import daily_run_due

LATER = timedelta(hours=2)
MUCH_LATER = timedelta(days=2)


def now() -> datetime:
    return datetime.now(timezone.utc)


class TestStuckPayments:
    """Test suite for orders waiting on a payment webhook."""

    @pytest.mark.asyncio
    async def test_succeeded_intent_applied(
        self, engine: Any, gateway: Any, cart: Any, make_intent: Any
    ) -> None:
        """A lost ``payment_intent.succeeded`` webhook is recovered."""
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)
        gateway.retrieve_payment_intent.return_value = make_intent(order.id, order.payment_intent_id)

        summary = await engine.reconciliation.sweep_stuck_payments(now=now() + LATER)

        assert summary == {"applied": 1}
        order = await engine.orders.get_order(result.order_id)
        assert order.status == OrderStatus.PAID.value
        assert order.charge_id is not None
        history = await engine.audit.history("order", order.id)
        assert history[-1].to_status == OrderStatus.PAID.value
        assert history[-1].source == "reconciliation"

    @pytest.mark.asyncio
    async def test_recent_orders_left_alone(self, engine: Any, gateway: Any, cart: Any) -> None:
        await engine.orders.checkout(cart())

        assert await engine.reconciliation.sweep_stuck_payments() == {}
        gateway.retrieve_payment_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unpaid_intent_waits_until_expiry(
        self, engine: Any, gateway: Any, cart: Any
    ) -> None:
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)
        gateway.retrieve_payment_intent.return_value = {
            "id": order.payment_intent_id,
            "status": "requires_payment_method",
        }

        assert await engine.reconciliation.sweep_stuck_payments(now=now() + LATER) == {"pending": 1}

        summary = await engine.reconciliation.sweep_stuck_payments(now=now() + MUCH_LATER)

        assert summary == {"expired": 1}
        order = await engine.orders.get_order(result.order_id)
        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancel_reason == "checkout_expired"
        gateway.cancel_payment_intent.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_intent_found_by_search(
        self, engine: Any, gateway: Any, cart: Any, make_intent: Any
    ) -> None:
        """An intent created during an outage is found by order id and applied."""
        gateway.create_payment_intent.side_effect = GatewayUnavailableError("timeout")
        with pytest.raises(GatewayUnavailableError):
            await engine.orders.checkout(cart())
        [order] = await engine.orders.list_orders("buyer_42")
        gateway.find_payment_intent_for_order.return_value = make_intent(order.id, "pi_late")

        summary = await engine.reconciliation.sweep_stuck_payments(now=now() + LATER)

        assert summary == {"applied": 1}
        order = await engine.orders.get_order(order.id)
        assert order.payment_intent_id == "pi_late"
        assert order.status == OrderStatus.PAID.value

    @pytest.mark.asyncio
    async def test_checkout_without_intent_expires(
        self, engine: Any, gateway: Any, cart: Any
    ) -> None:
        gateway.create_payment_intent.side_effect = GatewayUnavailableError("timeout")
        with pytest.raises(GatewayUnavailableError):
            await engine.orders.checkout(cart())

        summary = await engine.reconciliation.sweep_stuck_payments(now=now() + MUCH_LATER)

        assert summary == {"expired": 1}
        [order] = await engine.orders.list_orders("buyer_42")
        assert order.status == OrderStatus.CANCELLED.value
        gateway.cancel_payment_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stuck_payments_walk_every_page(
        self, engine: Any, gateway: Any, test_settings: Any, cart: Any
    ) -> None:
        for _ in range(3):
            await engine.orders.checkout(cart())
        test_settings.sweep_batch_size = 2
        gateway.retrieve_payment_intent.return_value = {"id": "pi_x", "status": "processing"}

        summary = await engine.reconciliation.sweep_stuck_payments(now=now() + LATER)

        assert summary == {"pending": 3}


class TestOtherSweeps:
    """Test suite for refund, transfer and attempt sweeps."""

    @pytest.mark.asyncio
    async def test_stuck_refund_resolved(self, engine: Any, gateway: Any, paid_order: Any) -> None:
        result = await paid_order()
        refund = await engine.refunds.request_refund(result.order_id, 2000)
        gateway.retrieve_refund.return_value = {"id": refund.stripe_refund_id, "status": "succeeded"}

        summary = await engine.reconciliation.sweep_stuck_refunds(now=now() + LATER)

        assert summary == {"confirmed": 1}
        order = await engine.orders.get_order(result.order_id)
        assert order.status == OrderStatus.REFUNDED.value
        assert order.refunded_amount == 2000

    @pytest.mark.asyncio
    async def test_unsent_refund_reissued_with_same_key(
        self, engine: Any, gateway: Any, paid_order: Any
    ) -> None:
        """A refund whose call never completed is re-issued, not duplicated."""
        result = await paid_order()
        gateway.create_refund.side_effect = GatewayUnavailableError("timeout")
        refund = await engine.refunds.request_refund(result.order_id, 2000)
        assert refund.stripe_refund_id is None

        gateway.create_refund.side_effect = None
        gateway.create_refund.return_value = {"id": "re_retry", "status": "succeeded"}
        summary = await engine.reconciliation.sweep_stuck_refunds(now=now() + LATER)

        assert summary == {"confirmed": 1}
        assert gateway.create_refund.await_count == 2
        assert gateway.create_refund.await_args.args[0] == refund.id
        [stored] = await engine.refunds.list_refunds(result.order_id)
        assert stored.stripe_refund_id == "re_retry"
        assert stored.attempt_count == 2

    @pytest.mark.asyncio
    async def test_missing_transfers_scheduled(
        self, engine: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        """A paid order whose outbox event was never published still pays out."""
        await payout_ready_seller("seller_7")
        result = await paid_order()

        summary = await engine.reconciliation.sweep_pending_transfers(now=now() + LATER)

        assert summary == {"scheduled": 1}
        [transfer] = await engine.sellers.list_transfers(result.order_id)
        assert transfer.status == "confirmed"

    @pytest.mark.asyncio
    async def test_blocked_sellers_do_not_hide_payable_orders(
        self,
        engine: Any,
        test_settings: Any,
        cart: Any,
        paid_order: Any,
        payout_ready_seller: Any,
    ) -> None:
        """Orders for a seller who cannot be paid never crowd out payable ones."""
        for _ in range(3):
            await paid_order(cart(lines=[CartLine("prod_mug", "seller_3", 1, 1500)]))
        await payout_ready_seller("seller_7")
        payable = await paid_order()
        horizon = now() + LATER

        assert await engine.sellers.find_orders_missing_transfers(horizon, limit=3) == [
            payable.order_id
        ]

        test_settings.sweep_batch_size = 1
        for _ in range(3):
            await engine.reconciliation.sweep_pending_transfers(now=horizon)

        [transfer] = await engine.sellers.list_transfers(payable.order_id)
        assert transfer.status == "confirmed"

    @pytest.mark.asyncio
    async def test_missing_transfers_walk_every_page(
        self, engine: Any, test_settings: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        await payout_ready_seller("seller_7")
        for _ in range(3):
            await paid_order()
        test_settings.sweep_batch_size = 2

        summary = await engine.reconciliation.sweep_pending_transfers(now=now() + LATER)

        assert summary == {"scheduled": 3}

    @pytest.mark.asyncio
    async def test_interrupted_attempts_marked_unknown(self, engine: Any) -> None:
        await engine.audit.begin_attempt("create_transfer", idempotency_key="transfer:o:s", order_id="o")

        assert await engine.reconciliation.sweep_unknown_attempts() == {}
        summary = await engine.reconciliation.sweep_unknown_attempts(now=now() + LATER)

        assert summary == {"unknown": 1}
        [attempt] = await engine.audit.attempts(outcome="unknown")
        assert attempt.error == "interrupted"

    @pytest.mark.asyncio
    async def test_run_sweeps_isolates_failures(
        self, engine: Any, gateway: Any, cart: Any
    ) -> None:
        """One failing sweep is reported; the others still run."""
        await engine.orders.checkout(cart())
        gateway.retrieve_payment_intent.side_effect = RuntimeError("boom")
        await engine.audit.begin_attempt("create_refund", idempotency_key="refund:r")

        summary = await engine.reconciliation.run_sweeps(now=now() + LATER)

        assert set(summary) == {"attempts", "payments", "refunds", "transfers", "idempotency"}
        assert summary["payments"] == {"error": 1}
        assert summary["attempts"] == {"unknown": 1}


class TestDailyReconciliation:
    """Test suite for reconcile_date."""

    @pytest.mark.asyncio
    async def test_totals_match(
        self, engine: Any, gateway: Any, paid_order: Any, make_intent: Any
    ) -> None:
        result = await paid_order()
        order = await engine.orders.get_order(result.order_id)
        gateway.list_payment_intents.return_value = {
            "data": [make_intent(order.id, order.payment_intent_id)],
            "has_more": False,
        }

        report = await engine.reconciliation.reconcile_date(ensure_utc(order.created_at).date())

        assert report["database_total"] == report["processor_total"] == 4999
        assert report["discrepancy_count"] == 0

    @pytest.mark.asyncio
    async def test_discrepancies_reported(
        self, engine: Any, gateway: Any, paid_order: Any, make_intent: Any
    ) -> None:
        """An intent unknown to the database and an amount mismatch are both reported."""
        first = await engine.orders.get_order((await paid_order()).order_id)
        second = await engine.orders.get_order((await paid_order()).order_id)
        gateway.list_payment_intents.return_value = {
            "data": [
                make_intent(first.id, first.payment_intent_id),
                make_intent(second.id, second.payment_intent_id, amount=5999),
                make_intent("ord-unknown", "pi_orphan", amount=1000),
            ],
            "has_more": False,
        }

        report = await engine.reconciliation.reconcile_date(ensure_utc(first.created_at).date())

        types = sorted(d["type"] for d in report["discrepancies"])
        assert types == ["amount_mismatch", "missing_in_database"]
        assert report["processor_total"] == 4999 + 5999 + 1000
        assert report["discrepancy_amount"] == 2000

    @pytest.mark.asyncio
    async def test_paginates_processor_listing(
        self, engine: Any, gateway: Any, paid_order: Any, make_intent: Any
    ) -> None:
        order = await engine.orders.get_order((await paid_order()).order_id)
        gateway.list_payment_intents.side_effect = [
            {"data": [make_intent("ord-a", "pi_a", amount=100)], "has_more": True},
            {"data": [make_intent(order.id, order.payment_intent_id)], "has_more": False},
        ]

        report = await engine.reconciliation.reconcile_date(ensure_utc(order.created_at).date())

        assert report["processor_count"] == 2
        assert gateway.list_payment_intents.await_args.kwargs["starting_after"] == "pi_a"

    @pytest.mark.asyncio
    async def test_rerun_overwrites_run(
        self, engine: Any, session_factory: Any, paid_order: Any
    ) -> None:
        order = await engine.orders.get_order((await paid_order()).order_id)
        day = ensure_utc(order.created_at).date()

        first = await engine.reconciliation.reconcile_date(day)
        second = await engine.reconciliation.reconcile_date(day)

        assert first["discrepancies"][0]["type"] == "missing_at_processor"
        assert second["discrepancy_count"] == 1
        async with session_factory() as db:
            runs = (await db.execute(select(func.count()).select_from(ReconciliationRun))).scalar_one()
        assert runs == 1


class TestDailySchedule:
    """The worker runs the daily comparison once per UTC day."""

    @pytest.mark.unit
    def test_daily_run_due(self) -> None:
        at_three = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)

        assert daily_run_due(at_three, target_hour=2, last_run=None)
        assert not daily_run_due(at_three, target_hour=2, last_run=at_three.date())
        assert not daily_run_due(at_three.replace(hour=1), target_hour=2, last_run=None)
