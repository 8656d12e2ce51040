"""
Tests for seller onboarding, capability checks and transfers.
"""
from typing import Any

import pytest
from sqlalchemy import func, select, update

from marketplace_payments.core.order_manager import CartLine
from marketplace_payments.database.models import SellerAccount, Transfer
from marketplace_payments.domain.errors import (
    GatewayUnavailableError,
    PaymentGatewayError,
    PayoutNotEnabledError,
    SellerAccountNotFoundError,
)


async def transfer_count(session_factory: Any) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(Transfer))).scalar_one()


class TestOnboarding:
    """Test suite for connected account onboarding."""

    @pytest.mark.asyncio
    async def test_start_onboarding_creates_account_once(self, engine: Any, gateway: Any) -> None:
        first = await engine.sellers.start_onboarding("seller_7", email="seller@example.com")
        second = await engine.sellers.start_onboarding("seller_7")

        assert first["stripe_account_id"] == "acct_seller_7"
        assert first["onboarding_url"].startswith("https://connect.stripe.com/")
        assert second["stripe_account_id"] == first["stripe_account_id"]
        gateway.create_connected_account.assert_awaited_once()
        assert gateway.create_account_link.await_count == 2

        account = await engine.sellers.get_account("seller_7")
        assert account.onboarding_status == "in_progress"
        assert not account.payouts_ready

    @pytest.mark.asyncio
    async def test_account_updated_event_refreshes_flags(self, engine: Any, deliver: Any) -> None:
        await engine.sellers.start_onboarding("seller_7")

        ingest = await deliver(
            "account.updated",
            {
                "id": "acct_seller_7",
                "object": "account",
                "charges_enabled": True,
                "payouts_enabled": True,
                "details_submitted": True,
            },
        )

        assert ingest.outcome["payouts_ready"] is True
        account = await engine.sellers.get_account("seller_7")
        assert account.onboarding_status == "complete"
        history = await engine.audit.history("seller", "seller_7")
        assert history[-1].action == "onboarding_status_changed"

    @pytest.mark.asyncio
    async def test_account_update_for_unknown_account(self, engine: Any, deliver: Any) -> None:
        ingest = await deliver("account.updated", {"id": "acct_unknown", "object": "account"})
        assert ingest.outcome["annotation"] == "seller_account_not_found"

    @pytest.mark.asyncio
    async def test_unknown_seller(self, engine: Any) -> None:
        with pytest.raises(SellerAccountNotFoundError):
            await engine.sellers.get_account("seller_ghost")


class TestTransferAuthorization:
    """Transfers are only attempted to payouts-ready sellers."""

    @pytest.mark.asyncio
    async def test_payouts_disabled_blocks_transfer(
        self, engine: Any, gateway: Any, session_factory: Any, paid_order: Any
    ) -> None:
        """payouts_enabled=false: PayoutNotEnabledError and no transfer row."""
        await engine.sellers.start_onboarding("seller_7")
        gateway.retrieve_account.side_effect = lambda account_id: {
            "id": account_id,
            "charges_enabled": True,
            "payouts_enabled": False,
            "details_submitted": True,
        }
        result = await paid_order()

        with pytest.raises(PayoutNotEnabledError):
            await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")

        gateway.create_transfer.assert_not_awaited()
        assert await transfer_count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_stale_flags_refreshed_before_transfer(
        self, engine: Any, gateway: Any, session_factory: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        """Flags older than the freshness window are re-read live."""
        await payout_ready_seller("seller_7")
        async with session_factory() as db:
            await db.execute(update(SellerAccount).values(capabilities_checked_at=None))
            await db.commit()
        gateway.retrieve_account.reset_mock()
        result = await paid_order()

        transfer = await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")

        assert transfer.status == "confirmed"
        gateway.retrieve_account.assert_awaited_once_with("acct_seller_7")

    @pytest.mark.asyncio
    async def test_fresh_flags_used_without_processor_call(
        self, engine: Any, gateway: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        await payout_ready_seller("seller_7")
        gateway.retrieve_account.reset_mock()
        result = await paid_order()

        await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")

        gateway.retrieve_account.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_seller_never_onboarded(self, engine: Any, paid_order: Any) -> None:
        result = await paid_order()
        with pytest.raises(SellerAccountNotFoundError):
            await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")


class TestTransfers:
    """Test suite for transfer scheduling and processor notifications."""

    @pytest.mark.asyncio
    async def test_one_transfer_per_order_and_seller(
        self, engine: Any, gateway: Any, session_factory: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        await payout_ready_seller("seller_7")
        result = await paid_order()

        first = await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")
        second = await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")

        assert first.id == second.id
        assert gateway.create_transfer.await_count == 1
        assert await transfer_count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_schedule_transfers_splits_by_seller(
        self, engine: Any, gateway: Any, paid_order: Any, payout_ready_seller: Any, cart: Any
    ) -> None:
        """Each seller receives the sum of their lines."""
        await payout_ready_seller("seller_3")
        await payout_ready_seller("seller_7")
        result = await paid_order(
            cart(
                lines=[
                    CartLine("prod_mug", "seller_3", 2, 1500),
                    CartLine("prod_poster", "seller_7", 1, 2500),
                    CartLine("prod_lamp", "seller_7", 1, 4999),
                ]
            )
        )

        transfers = await engine.sellers.schedule_transfers(result.order_id)

        amounts = {t.seller_id: t.amount for t in transfers}
        assert amounts == {"seller_3": 3000, "seller_7": 7499}
        assert all(t.status == "confirmed" for t in transfers)
        order = await engine.orders.get_order(result.order_id)
        kwargs = gateway.create_transfer.await_args.kwargs
        assert kwargs["source_transaction"] == order.charge_id

    @pytest.mark.asyncio
    async def test_platform_fee_withheld(
        self, engine: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        engine.sellers.settings = engine.sellers.settings.model_copy(update={"platform_fee_bps": 1000})
        await payout_ready_seller("seller_7")
        result = await paid_order()

        [transfer] = await engine.sellers.schedule_transfers(result.order_id)

        assert transfer.amount == 4500

    @pytest.mark.asyncio
    async def test_blocked_seller_is_audited_and_skipped(
        self, engine: Any, gateway: Any, paid_order: Any, payout_ready_seller: Any, cart: Any
    ) -> None:
        await payout_ready_seller("seller_7")
        result = await paid_order(
            cart(
                lines=[
                    CartLine("prod_mug", "seller_3", 1, 1500),
                    CartLine("prod_lamp", "seller_7", 1, 4999),
                ]
            )
        )

        transfers = await engine.sellers.schedule_transfers(result.order_id)

        assert [t.seller_id for t in transfers] == ["seller_7"]
        history = await engine.audit.history("transfer", f"{result.order_id}:seller_3")
        assert history[0].action == "transfer_blocked"

    @pytest.mark.asyncio
    async def test_blocked_pair_audited_once(self, engine: Any, paid_order: Any, cart: Any) -> None:
        result = await paid_order(cart(lines=[CartLine("prod_mug", "seller_3", 1, 1500)]))

        for _ in range(3):
            assert await engine.sellers.schedule_transfers(result.order_id) == []

        history = await engine.audit.history("transfer", f"{result.order_id}:seller_3")
        assert [entry.action for entry in history] == ["transfer_blocked"]

    @pytest.mark.asyncio
    async def test_unpaid_order_not_scheduled(self, engine: Any, cart: Any) -> None:
        result = await engine.orders.checkout(cart())
        assert await engine.sellers.schedule_transfers(result.order_id) == []

    @pytest.mark.asyncio
    async def test_rejected_transfer_marked_failed(
        self, engine: Any, gateway: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        await payout_ready_seller("seller_7")
        gateway.create_transfer.side_effect = PaymentGatewayError("insufficient funds")
        result = await paid_order()

        transfer = await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")

        assert transfer.status == "failed"
        assert transfer.failure_reason == "insufficient funds"

    @pytest.mark.asyncio
    async def test_unknown_outcome_keeps_transfer_requested(
        self, engine: Any, gateway: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        await payout_ready_seller("seller_7")
        gateway.create_transfer.side_effect = GatewayUnavailableError("timeout")
        result = await paid_order()

        with pytest.raises(GatewayUnavailableError):
            await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")

        [transfer] = await engine.sellers.list_transfers(result.order_id)
        assert transfer.status == "requested"
        assert transfer.attempt_count == 1

    @pytest.mark.asyncio
    async def test_transfer_reversed_event(
        self, engine: Any, paid_order: Any, payout_ready_seller: Any, deliver: Any
    ) -> None:
        await payout_ready_seller("seller_7")
        result = await paid_order()
        transfer = await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")

        ingest = await deliver(
            "transfer.reversed",
            {"id": transfer.stripe_transfer_id, "object": "transfer", "reversed": True},
        )

        assert ingest.outcome["to_status"] == "failed"
        [stored] = await engine.sellers.list_transfers(result.order_id)
        assert stored.status == "failed"
        assert stored.failure_reason == "reversed"

    @pytest.mark.asyncio
    async def test_outbox_schedules_transfers(
        self, engine: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        """Publishing ``order.paid`` pays the sellers and empties the outbox."""
        await payout_ready_seller("seller_7")
        result = await paid_order()

        assert await engine.outbox.process_batch() == 1

        [transfer] = await engine.sellers.list_transfers(result.order_id)
        assert transfer.status == "confirmed"
        assert await engine.outbox.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_failed_consumer_leaves_event_unpublished(
        self, engine: Any, paid_order: Any, mocker: Any
    ) -> None:
        """A consumer error keeps the row for the next poll."""
        mocker.patch.object(
            engine.sellers, "schedule_transfers", side_effect=GatewayUnavailableError("timeout")
        )
        await paid_order()

        assert await engine.outbox.process_batch() == 0
        assert await engine.outbox.get_pending_count() == 1

    @pytest.mark.asyncio
    async def test_resolve_pending_transfer_found_at_processor(
        self, engine: Any, gateway: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        """A transfer the processor already holds is confirmed without a new call."""
        await payout_ready_seller("seller_7")
        gateway.create_transfer.side_effect = GatewayUnavailableError("timeout")
        result = await paid_order()
        with pytest.raises(GatewayUnavailableError):
            await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")
        gateway.list_transfers.return_value = [
            {"id": "tr_found", "metadata": {"order_id": result.order_id, "seller_id": "seller_7"}}
        ]
        [pending] = await engine.sellers.list_transfers(result.order_id)

        assert await engine.sellers.resolve_pending_transfer(pending) == "confirmed"

        [stored] = await engine.sellers.list_transfers(result.order_id)
        assert stored.stripe_transfer_id == "tr_found"
        assert gateway.create_transfer.await_count == 1

    @pytest.mark.asyncio
    async def test_resolve_pending_transfer_reissues(
        self, engine: Any, gateway: Any, paid_order: Any, payout_ready_seller: Any
    ) -> None:
        await payout_ready_seller("seller_7")
        gateway.create_transfer.side_effect = GatewayUnavailableError("timeout")
        result = await paid_order()
        with pytest.raises(GatewayUnavailableError):
            await engine.sellers.create_transfer(result.order_id, "seller_7", 4999, "EUR")
        gateway.create_transfer.side_effect = None
        gateway.create_transfer.return_value = {"id": "tr_retry"}
        [pending] = await engine.sellers.list_transfers(result.order_id)

        assert await engine.sellers.resolve_pending_transfer(pending) == "confirmed"

        [stored] = await engine.sellers.list_transfers(result.order_id)
        assert stored.stripe_transfer_id == "tr_retry"
        assert stored.attempt_count == 2
