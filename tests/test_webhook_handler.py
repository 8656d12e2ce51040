"""
Tests for Stripe webhook verification and exactly-once processing.
"""
import time
from datetime import datetime, timezone
from typing import Any

import pytest
from sqlalchemy import func, select

from marketplace_payments.database.models import IdempotencyRecord, PaymentEvent
from marketplace_payments.domain.errors import RequestInProgressError, WebhookAuthenticationError
from marketplace_payments.domain.events import PaymentEventKind, VerifiedEvent
from marketplace_payments.domain.state_machine import OrderStatus
from marketplace_payments.integrations.webhook_handler import signed_at


async def count_rows(session_factory: Any, model: Any) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


class TestSignatureVerification:
    """Test suite for signature and timestamp checks."""

    @pytest.mark.unit
    def test_valid_signature(self, engine: Any, make_event: Any, signed: Any) -> None:
        payload = make_event("payment_intent.succeeded", {"id": "pi_1", "object": "payment_intent"}, "evt_1")
        event = engine.webhooks.verify(payload, signed(payload))

        assert event.event_id == "evt_1"
        assert event.kind is PaymentEventKind.INTENT_SUCCEEDED
        assert event.payment_intent_ref == "pi_1"
        assert len(event.payload_checksum) == 64

    @pytest.mark.unit
    def test_wrong_secret_rejected(self, engine: Any, make_event: Any, signed: Any) -> None:
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"})
        with pytest.raises(WebhookAuthenticationError) as exc_info:
            engine.webhooks.verify(payload, signed(payload, secret="whsec_other"))
        assert exc_info.value.reason_code == "invalid_signature"
        assert exc_info.value.http_status == 400

    @pytest.mark.unit
    def test_tampered_payload_rejected(self, engine: Any, make_event: Any, signed: Any) -> None:
        payload = make_event("payment_intent.succeeded", {"id": "pi_1", "amount": 100})
        header = signed(payload)
        tampered = payload.replace(b'"amount": 100', b'"amount": 1')
        with pytest.raises(WebhookAuthenticationError):
            engine.webhooks.verify(tampered, header)

    @pytest.mark.unit
    def test_stale_timestamp_rejected(self, engine: Any, make_event: Any, signed: Any) -> None:
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"})
        header = signed(payload, timestamp=int(time.time()) - 3600)
        with pytest.raises(WebhookAuthenticationError) as exc_info:
            engine.webhooks.verify(payload, header)
        assert exc_info.value.reason_code == "stale_timestamp"

    @pytest.mark.unit
    def test_future_timestamp_rejected(self, engine: Any, make_event: Any, signed: Any) -> None:
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"}, "evt_future")
        header = signed(payload, timestamp=int(time.time()) + 86400)
        with pytest.raises(WebhookAuthenticationError) as exc_info:
            engine.webhooks.verify(payload, header)
        assert exc_info.value.reason_code == "stale_timestamp"

    @pytest.mark.unit
    def test_small_clock_skew_accepted(self, engine: Any, make_event: Any, signed: Any) -> None:
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"}, "evt_skewed")
        header = signed(payload, timestamp=int(time.time()) + 30)
        assert engine.webhooks.verify(payload, header).event_id == "evt_skewed"

    @pytest.mark.unit
    def test_signed_at_parses_header(self) -> None:
        assert signed_at("t=1700000000,v1=abc,v0=def") == 1700000000
        assert signed_at("v1=abc") is None

    @pytest.mark.unit
    def test_missing_header_rejected(self, engine: Any, make_event: Any) -> None:
        with pytest.raises(WebhookAuthenticationError):
            engine.webhooks.verify(make_event("payment_intent.succeeded", {}), None)

    @pytest.mark.asyncio
    async def test_rejected_delivery_records_nothing(
        self, engine: Any, session_factory: Any, make_event: Any, signed: Any
    ) -> None:
        """A failed verification leaves no idempotency record and no event."""
        payload = make_event("payment_intent.succeeded", {"id": "pi_1"}, "evt_forged")
        with pytest.raises(WebhookAuthenticationError):
            await engine.webhooks.ingest(payload, signed(payload, secret="whsec_other"))

        assert await engine.idempotency.get("evt_forged") is None
        assert await count_rows(session_factory, PaymentEvent) == 0


class TestExactlyOnce:
    """Test suite for duplicate suppression."""

    @pytest.mark.asyncio
    async def test_payment_succeeded_marks_order_paid(
        self, engine: Any, cart: Any, deliver: Any, make_intent: Any
    ) -> None:
        """A 49.99 EUR order becomes PAID on ``payment_intent.succeeded``."""
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)

        ingest = await deliver(
            "payment_intent.succeeded",
            make_intent(order.id, order.payment_intent_id),
            "evt_paid",
        )

        assert ingest.status == "processed"
        assert ingest.outcome["to_status"] == OrderStatus.PAID.value
        order = await engine.orders.get_order(order.id)
        assert order.status == OrderStatus.PAID.value
        assert order.charge_id.startswith("ch_")

    @pytest.mark.asyncio
    async def test_duplicate_delivery_applied_once(
        self, engine: Any, session_factory: Any, cart: Any, deliver: Any, make_intent: Any
    ) -> None:
        """Two identical deliveries: one event row, one transition, same outcome."""
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)
        intent = make_intent(order.id, order.payment_intent_id)

        first = await deliver("payment_intent.succeeded", intent, "evt_dup")
        second = await deliver("payment_intent.succeeded", intent, "evt_dup")

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert second.outcome == first.outcome
        assert await count_rows(session_factory, PaymentEvent) == 1

        transitions = [
            e for e in await engine.audit.history("order", order.id)
            if e.action == "transition" and e.to_status == OrderStatus.PAID.value
        ]
        assert len(transitions) == 1

    @pytest.mark.asyncio
    async def test_different_event_same_effect_is_noop(
        self, engine: Any, cart: Any, deliver: Any, make_intent: Any
    ) -> None:
        """A second success event for a paid order is a recorded no-op."""
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)
        intent = make_intent(order.id, order.payment_intent_id)

        await deliver("payment_intent.succeeded", intent, "evt_a")
        again = await deliver("payment_intent.succeeded", intent, "evt_b")

        assert again.status == "processed"
        assert again.outcome["result"] == "noop"
        assert again.outcome["annotation"] == "already_applied"

    @pytest.mark.asyncio
    async def test_in_flight_duplicate_is_retryable(self, engine: Any) -> None:
        """While a delivery holds the key, a second one is told to retry."""
        reservation = await engine.idempotency.reserve("evt_busy")
        assert reservation.acquired

        with pytest.raises(RequestInProgressError):
            await engine.webhooks.process(
                VerifiedEvent(
                    event_id="evt_busy",
                    kind=PaymentEventKind.UNHANDLED,
                    event_type="customer.created",
                    payload_checksum="x",
                    received_at=datetime.now(timezone.utc),
                )
            )

    @pytest.mark.asyncio
    async def test_failed_handler_releases_key(
        self, engine: Any, session_factory: Any, cart: Any, deliver: Any, make_intent: Any, mocker: Any
    ) -> None:
        """A handler error leaves no record so Stripe's redelivery is applied."""
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)
        intent = make_intent(order.id, order.payment_intent_id)

        original = engine.webhooks.handlers[PaymentEventKind.INTENT_SUCCEEDED]
        engine.webhooks.handlers[PaymentEventKind.INTENT_SUCCEEDED] = mocker.AsyncMock(
            side_effect=RuntimeError("database went away")
        )
        with pytest.raises(RuntimeError):
            await deliver("payment_intent.succeeded", intent, "evt_retry")
        assert await engine.idempotency.get("evt_retry") is None

        engine.webhooks.handlers[PaymentEventKind.INTENT_SUCCEEDED] = original
        retried = await deliver("payment_intent.succeeded", intent, "evt_retry")
        assert retried.status == "processed"
        assert (await engine.orders.get_order(order.id)).status == OrderStatus.PAID.value

    @pytest.mark.asyncio
    async def test_idempotency_completed_with_event(
        self, engine: Any, cart: Any, deliver: Any, make_intent: Any
    ) -> None:
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)
        await deliver("payment_intent.succeeded", make_intent(order.id, order.payment_intent_id), "evt_rec")

        record = await engine.idempotency.get("evt_rec")
        assert record.state == "completed"
        assert record.scope == "webhook"
        assert record.outcome["order_id"] == order.id


class TestEventHandling:
    """Test suite for event dispatch."""

    @pytest.mark.asyncio
    async def test_payment_failed(self, engine: Any, cart: Any, deliver: Any, make_intent: Any) -> None:
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)
        intent = make_intent(order.id, order.payment_intent_id, status="requires_payment_method")
        intent["last_payment_error"] = {"code": "card_declined"}

        ingest = await deliver("payment_intent.payment_failed", intent)

        assert ingest.outcome["to_status"] == OrderStatus.PAYMENT_FAILED.value

    @pytest.mark.asyncio
    async def test_late_failure_flags_review(
        self, engine: Any, paid_order: Any, deliver: Any, make_intent: Any
    ) -> None:
        """A failure after success does not downgrade the order."""
        result = await paid_order()
        order = await engine.orders.get_order(result.order_id)

        ingest = await deliver(
            "payment_intent.payment_failed",
            make_intent(order.id, order.payment_intent_id, status="requires_payment_method"),
        )

        assert ingest.outcome["result"] == "review"
        order = await engine.orders.get_order(order.id)
        assert order.status == OrderStatus.PAID.value
        assert order.requires_review

    @pytest.mark.asyncio
    async def test_amount_mismatch_flags_review(
        self, engine: Any, cart: Any, deliver: Any, make_intent: Any
    ) -> None:
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)

        ingest = await deliver(
            "payment_intent.succeeded", make_intent(order.id, order.payment_intent_id, amount=100)
        )

        assert ingest.outcome["annotation"] == "amount_mismatch"
        order = await engine.orders.get_order(order.id)
        assert order.status == OrderStatus.PAYMENT_PROCESSING.value
        assert order.review_reason == "amount_mismatch"

    @pytest.mark.asyncio
    async def test_success_for_cancelled_order_flags_review(
        self, engine: Any, cart: Any, deliver: Any, make_intent: Any
    ) -> None:
        result = await engine.orders.checkout(cart())
        order = await engine.orders.get_order(result.order_id)
        await engine.orders.cancel_order(order.id)

        ingest = await deliver("payment_intent.succeeded", make_intent(order.id, order.payment_intent_id))

        assert ingest.outcome["result"] == "review"
        order = await engine.orders.get_order(order.id)
        assert order.status == OrderStatus.CANCELLED.value
        assert order.requires_review

    @pytest.mark.asyncio
    async def test_unknown_order_is_noop(self, engine: Any, deliver: Any, make_intent: Any) -> None:
        ingest = await deliver("payment_intent.succeeded", make_intent("missing", "pi_unknown"))
        assert ingest.outcome == {"result": "noop", "annotation": "order_not_found"}

    @pytest.mark.asyncio
    async def test_unhandled_type_recorded(self, engine: Any, session_factory: Any, deliver: Any) -> None:
        ingest = await deliver("customer.created", {"id": "cus_1"}, "evt_customer")

        assert ingest.kind == PaymentEventKind.UNHANDLED.value
        assert ingest.outcome["annotation"] == "unhandled_event_type:customer.created"
        assert await count_rows(session_factory, PaymentEvent) == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_recorded_once(
        self, engine: Any, session_factory: Any, signed: Any
    ) -> None:
        """A signed but unparseable body is recorded under its checksum."""
        payload = b'{"object": "event"}'
        first = await engine.webhooks.ingest(payload, signed(payload))
        second = await engine.webhooks.ingest(payload, signed(payload))

        assert first.event_id.startswith("payload:")
        assert first.outcome["annotation"] == "malformed_payload"
        assert second.status == "duplicate"
        assert await count_rows(session_factory, PaymentEvent) == 1

    @pytest.mark.asyncio
    async def test_dispute_flags_order(
        self, engine: Any, paid_order: Any, deliver: Any
    ) -> None:
        result = await paid_order()
        order = await engine.orders.get_order(result.order_id)

        ingest = await deliver(
            "charge.dispute.created",
            {"id": "dp_1", "object": "dispute", "payment_intent": order.payment_intent_id, "reason": "fraudulent"},
        )

        assert ingest.outcome["annotation"] == "dispute_opened"
        order = await engine.orders.get_order(order.id)
        assert order.requires_review
        assert order.status == OrderStatus.PAID.value

    @pytest.mark.unit
    def test_every_kind_has_a_handler(self, engine: Any) -> None:
        assert set(engine.webhooks.handlers) == set(PaymentEventKind)

    @pytest.mark.asyncio
    async def test_idempotency_rows_match_events(
        self, engine: Any, session_factory: Any, deliver: Any
    ) -> None:
        await deliver("customer.created", {"id": "cus_1"}, "evt_x")
        await deliver("customer.created", {"id": "cus_1"}, "evt_x")
        assert await count_rows(session_factory, IdempotencyRecord) == 1
