"""
Stripe API client with retry logic and comprehensive error handling.

Implements:
- One bounded retry policy (exponential backoff with jitter) for every call
- Circuit breaker pattern
- Deterministic idempotency keys for every money-moving call
- A gateway attempt record before and after each mutating call

Stripe's SDK is synchronous, so calls run in a worker thread. Results are
returned as plain dicts.
"""
import asyncio
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from marketplace_payments.config import Settings, get_settings
from marketplace_payments.core.audit import AuditLedger
from marketplace_payments.domain.errors import GatewayUnavailableError, PaymentGatewayError
from marketplace_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff
    CIRCUIT_OPEN = "circuit_open"  # Not sent at all


class StripeError(Exception):
    """Classified Stripe failure raised inside the retry loop."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error
        self.code = getattr(original_error, "code", None)

    @property
    def retryable(self) -> bool:
        return self.error_type in (StripeErrorType.TRANSIENT, StripeErrorType.RATE_LIMIT)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, StripeError) and error.retryable


def classify_error(error: Exception) -> StripeErrorType:
    """
    Classify a Stripe SDK error for retry logic.

    Connection failures, 5xx and rate limiting are transient; request
    validation, card and authentication failures are permanent.
    """
    if isinstance(error, stripe.RateLimitError):
        return StripeErrorType.RATE_LIMIT
    if isinstance(
        error,
        (
            stripe.CardError,
            stripe.InvalidRequestError,
            stripe.AuthenticationError,
            stripe.PermissionError,
            stripe.IdempotencyError,
        ),
    ):
        return StripeErrorType.PERMANENT
    if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
        return StripeErrorType.TRANSIENT
    status = getattr(error, "http_status", None)
    if status is not None and 400 <= status < 500 and status != 429:
        return StripeErrorType.PERMANENT
    # Unknown errors are treated as transient
    return StripeErrorType.TRANSIENT


def to_plain(obj: Any) -> Dict[str, Any]:
    """Convert a Stripe object to a plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and type(obj) is dict:
        return obj
    for name in ("to_dict", "to_dict_recursive"):
        converter = getattr(obj, name, None)
        if callable(converter):
            return converter()
    return dict(obj)


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive transient failures exceed the threshold. Permanent
    (4xx) failures prove the processor is reachable and do not count.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._lock = threading.Lock()

    def call(self, func: Callable[[], Any]) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            StripeError: classified failure, or CIRCUIT_OPEN without calling
        """
        with self._lock:
            if self.state == "open":
                if (
                    self.last_failure_time
                    and time.time() - self.last_failure_time > self.timeout
                ):
                    self._set_state("half_open")
                    self.success_count = 0
                    logger.info("circuit_breaker_half_open")
                else:
                    raise StripeError("Circuit breaker is open", StripeErrorType.CIRCUIT_OPEN)

        try:
            result = func()
        except stripe.StripeError as e:
            error_type = classify_error(e)
            if error_type is StripeErrorType.PERMANENT:
                self.on_success()
            else:
                self.on_failure()
            raise StripeError(str(e), error_type, e) from e

        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._set_state("closed")
                    logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.failure_count >= self.failure_threshold and self.state != "open":
                self._set_state("open")
                logger.warning(
                    "circuit_breaker_opened",
                    failure_count=self.failure_count,
                )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StripeClient:
    """
    Gateway adapter for Stripe.

    Every call goes through ``_call``, the only place with retry and backoff.
    Callers see either a plain dict, ``PaymentGatewayError`` (the processor
    rejected the request) or ``GatewayUnavailableError`` (transient failure
    after retries; the outcome is unknown and left to reconciliation).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLedger] = None,
    ) -> None:
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.audit = audit
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout,
        )

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.settings.gateway_retry_max_attempts),
            wait=wait_exponential_jitter(
                initial=self.settings.gateway_retry_base_delay,
                max=self.settings.gateway_retry_max_delay,
                jitter=self.settings.gateway_retry_jitter,
            ),
            reraise=True,
        )

    async def _call(
        self,
        operation: str,
        func: Callable[[], Any],
        *,
        idempotency_key: Optional[str] = None,
        order_id: Optional[str] = None,
        request: Optional[Dict[str, Any]] = None,
        audited: bool = False,
    ) -> Dict[str, Any]:
        attempt_id = None
        if audited and self.audit is not None:
            attempt_id = await self.audit.begin_attempt(
                operation, idempotency_key=idempotency_key, order_id=order_id, request=request
            )

        tries = 0
        start = time.perf_counter()
        try:
            async for attempt in self._retrying():
                with attempt:
                    tries = attempt.retry_state.attempt_number
                    result = await asyncio.to_thread(self.circuit_breaker.call, func)
        except StripeError as e:
            duration = time.perf_counter() - start
            metrics.record_stripe_api_error(e.error_type.value)
            metrics.record_stripe_api_call(operation, "error", duration)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=e.error_type.value,
                error_code=e.code,
                error_message=str(e),
                attempts=tries,
            )
            if e.error_type is StripeErrorType.PERMANENT:
                outcome = "failed"
            elif e.error_type is StripeErrorType.CIRCUIT_OPEN and tries <= 1:
                outcome = "not_sent"
            else:
                outcome = "unknown"
            if attempt_id is not None:
                await self.audit.finish_attempt(
                    attempt_id, outcome, error=str(e), attempts=tries
                )
            raise self._translate(operation, e, outcome) from e

        plain = to_plain(result)
        metrics.record_stripe_api_call(operation, "success", time.perf_counter() - start)
        if attempt_id is not None:
            await self.audit.finish_attempt(
                attempt_id, "succeeded", external_ref=plain.get("id"), attempts=tries
            )
        return plain

    @staticmethod
    def _translate(operation: str, error: StripeError, outcome: str) -> Exception:
        details = {"operation": operation, "outcome": outcome}
        if error.code:
            details["code"] = error.code
        if error.error_type is StripeErrorType.PERMANENT:
            return PaymentGatewayError(str(error), details=details)
        return GatewayUnavailableError(
            f"Payment processor unavailable during {operation}", details=details
        )

    # Payments

    async def create_payment_intent(
        self,
        amount: int,
        currency: str,
        order_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a PaymentIntent for an order.

        The idempotency key is derived from the order id, so a retried
        checkout never creates a second intent.
        """
        idempotency_key = f"order:{order_id}:intent"
        logger.info(
            "creating_payment_intent",
            amount=amount,
            currency=currency,
            order_id=order_id,
        )

        def _create() -> Any:
            return stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                metadata={**(metadata or {}), "order_id": order_id},
                transfer_group=order_id,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )

        intent = await self._call(
            "create_payment_intent",
            _create,
            idempotency_key=idempotency_key,
            order_id=order_id,
            request={"amount": amount, "currency": currency},
            audited=True,
        )
        logger.info(
            "payment_intent_created",
            payment_intent_id=intent.get("id"),
            status=intent.get("status"),
        )
        return intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        """Retrieve a PaymentIntent by ID."""
        logger.info("retrieving_payment_intent", payment_intent_id=payment_intent_id)
        return await self._call(
            "retrieve_payment_intent",
            lambda: stripe.PaymentIntent.retrieve(payment_intent_id),
        )

    async def find_payment_intent_for_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Search for the intent created for ``order_id``, if any reached Stripe."""
        result = await self._call(
            "search_payment_intents",
            lambda: stripe.PaymentIntent.search(
                query=f"metadata['order_id']:'{order_id}'", limit=1
            ),
        )
        data = result.get("data") or []
        return data[0] if data else None

    async def cancel_payment_intent(
        self, payment_intent_id: str, order_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Cancel a PaymentIntent that has not succeeded."""
        idempotency_key = f"order:{order_id}:cancel" if order_id else None
        logger.info("cancelling_payment_intent", payment_intent_id=payment_intent_id)

        def _cancel() -> Any:
            kwargs: Dict[str, Any] = {}
            if idempotency_key:
                kwargs["idempotency_key"] = idempotency_key
            return stripe.PaymentIntent.cancel(payment_intent_id, **kwargs)

        return await self._call(
            "cancel_payment_intent",
            _cancel,
            idempotency_key=idempotency_key,
            order_id=order_id,
            request={"payment_intent": payment_intent_id},
            audited=True,
        )

    async def list_payment_intents(
        self,
        limit: int = 100,
        starting_after: Optional[str] = None,
        created_gte: Optional[int] = None,
        created_lte: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        List PaymentIntents with pagination.

        Args:
            limit: Number of items to return
            starting_after: Cursor for pagination
            created_gte: Filter by creation time (greater than or equal)
            created_lte: Filter by creation time (less than or equal)
        """

        def _list() -> Any:
            kwargs: Dict[str, Any] = {"limit": limit}
            if starting_after:
                kwargs["starting_after"] = starting_after
            if created_gte or created_lte:
                kwargs["created"] = {}
                if created_gte:
                    kwargs["created"]["gte"] = created_gte
                if created_lte:
                    kwargs["created"]["lte"] = created_lte
            return stripe.PaymentIntent.list(**kwargs)

        return await self._call("list_payment_intents", _list)

    # Connected accounts

    async def create_connected_account(
        self,
        seller_id: str,
        email: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create an Express connected account for a seller."""
        idempotency_key = f"seller:{seller_id}:account"

        def _create() -> Any:
            kwargs: Dict[str, Any] = {
                "type": "express",
                "country": country or self.settings.default_seller_country,
                "metadata": {"seller_id": seller_id},
                "capabilities": {
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                "idempotency_key": idempotency_key,
            }
            if email:
                kwargs["email"] = email
            return stripe.Account.create(**kwargs)

        account = await self._call(
            "create_connected_account",
            _create,
            idempotency_key=idempotency_key,
            request={"seller_id": seller_id},
            audited=True,
        )
        logger.info("connected_account_created", seller_id=seller_id, account_id=account.get("id"))
        return account

    async def create_account_link(self, account_id: str) -> Dict[str, Any]:
        """Create a hosted onboarding link for a connected account."""
        return await self._call(
            "create_account_link",
            lambda: stripe.AccountLink.create(
                account=account_id,
                refresh_url=self.settings.stripe_connect_refresh_url,
                return_url=self.settings.stripe_connect_return_url,
                type="account_onboarding",
            ),
        )

    async def retrieve_account(self, account_id: str) -> Dict[str, Any]:
        return await self._call(
            "retrieve_account", lambda: stripe.Account.retrieve(account_id)
        )

    # Transfers

    async def create_transfer(
        self,
        amount: int,
        currency: str,
        destination: str,
        order_id: str,
        seller_id: str,
        source_transaction: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Transfer funds to a connected account.

        Keyed on (order, seller) so retries and re-dispatches never pay the
        same seller twice for one order.
        """
        idempotency_key = f"transfer:{order_id}:{seller_id}"

        def _create() -> Any:
            kwargs: Dict[str, Any] = {
                "amount": amount,
                "currency": currency.lower(),
                "destination": destination,
                "transfer_group": order_id,
                "metadata": {"order_id": order_id, "seller_id": seller_id},
                "idempotency_key": idempotency_key,
            }
            if source_transaction:
                kwargs["source_transaction"] = source_transaction
            return stripe.Transfer.create(**kwargs)

        transfer = await self._call(
            "create_transfer",
            _create,
            idempotency_key=idempotency_key,
            order_id=order_id,
            request={"amount": amount, "currency": currency, "destination": destination},
            audited=True,
        )
        logger.info(
            "transfer_created",
            transfer_id=transfer.get("id"),
            order_id=order_id,
            seller_id=seller_id,
        )
        return transfer

    async def list_transfers(self, transfer_group: str) -> List[Dict[str, Any]]:
        result = await self._call(
            "list_transfers",
            lambda: stripe.Transfer.list(transfer_group=transfer_group, limit=100),
        )
        return list(result.get("data") or [])

    # Refunds

    async def create_refund(
        self,
        refund_id: str,
        amount: int,
        payment_intent_id: Optional[str] = None,
        charge_id: Optional[str] = None,
        reason: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a refund against a charge or payment intent.

        Args:
            refund_id: Local refund id (idempotency key and metadata)
            amount: Amount to refund in minor units
            payment_intent_id: Intent to refund, when no charge id is known
            charge_id: Charge to refund
            reason: Optional Stripe refund reason
        """
        idempotency_key = f"refund:{refund_id}"
        logger.info(
            "creating_refund",
            refund_id=refund_id,
            payment_intent_id=payment_intent_id,
            amount=amount,
        )

        def _create() -> Any:
            kwargs: Dict[str, Any] = {
                "amount": amount,
                "metadata": {"refund_id": refund_id, "order_id": order_id or ""},
                "idempotency_key": idempotency_key,
            }
            if charge_id:
                kwargs["charge"] = charge_id
            else:
                kwargs["payment_intent"] = payment_intent_id
            if reason in ("duplicate", "fraudulent", "requested_by_customer"):
                kwargs["reason"] = reason
            return stripe.Refund.create(**kwargs)

        refund = await self._call(
            "create_refund",
            _create,
            idempotency_key=idempotency_key,
            order_id=order_id,
            request={"amount": amount, "refund_id": refund_id},
            audited=True,
        )
        logger.info("refund_created", refund_id=refund.get("id"), status=refund.get("status"))
        return refund

    async def retrieve_refund(self, stripe_refund_id: str) -> Dict[str, Any]:
        return await self._call(
            "retrieve_refund", lambda: stripe.Refund.retrieve(stripe_refund_id)
        )

    async def list_refunds(self, payment_intent_id: str) -> List[Dict[str, Any]]:
        result = await self._call(
            "list_refunds",
            lambda: stripe.Refund.list(payment_intent=payment_intent_id, limit=100),
        )
        return list(result.get("data") or [])

    # Balance

    async def retrieve_balance(self) -> Dict[str, Any]:
        """Platform balance (available and pending, per currency)."""
        return await self._call("retrieve_balance", lambda: stripe.Balance.retrieve())
