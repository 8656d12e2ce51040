"""
API routes for checkout, orders, refunds, sellers and webhooks.

Engine errors are not caught here; the application-level handler maps every
``EngineError`` to its status code and ``{"error", "message"}`` body.
"""
from dataclasses import asdict
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from marketplace_payments.core.engine import PaymentsEngine
from marketplace_payments.core.idempotency import request_fingerprint
from marketplace_payments.core.order_manager import CartLine, CartSnapshot
from marketplace_payments.domain.errors import NotFoundError

from .schemas import (
    CancelOrderRequest,
    CheckoutRequest,
    CheckoutResponse,
    HealthCheckResponse,
    OnboardingRequest,
    OnboardingResponse,
    OrderResponse,
    ReconciliationResponse,
    RefundRequest,
    RefundResponse,
    SellerAccountResponse,
    SweepResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

checkout_router = APIRouter(tags=["checkout"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
seller_router = APIRouter(prefix="/sellers", tags=["sellers"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
audit_router = APIRouter(prefix="/audit", tags=["audit"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_payments_engine(request: Request) -> PaymentsEngine:
    """The engine built at startup. Tests override this dependency."""
    return request.app.state.engine


# Checkout


@checkout_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Check out a cart",
    description="Create an order from a cart snapshot and start payment",
)
async def checkout(
    body: CheckoutRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    engine: PaymentsEngine = Depends(get_payments_engine),
) -> Any:
    """
    Validate the cart, create the order and its payment intent.

    With an ``Idempotency-Key`` header a retried request returns the first
    response instead of creating a second order.
    """
    cart = CartSnapshot(
        buyer_id=body.buyer_id,
        lines=[
            CartLine(
                product_id=line.product_id,
                seller_id=line.seller_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
            )
            for line in body.items
        ],
        total=body.total,
        currency=body.currency,
    )

    async def _checkout() -> tuple:
        result = await engine.orders.checkout(cart)
        return status.HTTP_201_CREATED, asdict(result)

    logger.info(
        "api_checkout_request",
        buyer_id=body.buyer_id,
        lines=len(body.items),
        total=body.total,
        currency=body.currency,
    )

    if idempotency_key is None:
        _, result = await _checkout()
        return result

    status_code, result = await engine.idempotency.execute_once(
        f"checkout:{idempotency_key}",
        request_fingerprint(body.model_dump()),
        _checkout,
    )
    return JSONResponse(status_code=status_code, content=result)


# Orders


@order_router.get("", response_model=List[OrderResponse], summary="List a buyer's orders")
async def list_orders(
    buyer_id: str = Query(..., min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    engine: PaymentsEngine = Depends(get_payments_engine),
) -> List[Dict[str, Any]]:
    orders = await engine.orders.list_orders(buyer_id, limit=limit, offset=offset)
    return [order.to_dict() for order in orders]


@order_router.get(
    "/seller/{seller_id}",
    response_model=List[OrderResponse],
    summary="List orders containing a seller's items",
)
async def list_seller_orders(
    seller_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    engine: PaymentsEngine = Depends(get_payments_engine),
) -> List[Dict[str, Any]]:
    orders = await engine.orders.list_seller_orders(seller_id, limit=limit, offset=offset)
    return [order.to_dict() for order in orders]


@order_router.get("/{order_id}", response_model=OrderResponse, summary="Get an order")
async def get_order(
    order_id: str, engine: PaymentsEngine = Depends(get_payments_engine)
) -> Dict[str, Any]:
    order = await engine.orders.get_order(order_id)
    return order.to_dict()


@order_router.post("/{order_id}/cancel", response_model=OrderResponse, summary="Cancel an unpaid order")
async def cancel_order(
    order_id: str,
    body: Optional[CancelOrderRequest] = None,
    engine: PaymentsEngine = Depends(get_payments_engine),
) -> Dict[str, Any]:
    order = await engine.orders.cancel_order(order_id, reason=body.reason if body else None)
    logger.info("api_order_cancelled", order_id=order_id)
    return order.to_dict()


@order_router.post(
    "/{order_id}/fulfillment",
    response_model=OrderResponse,
    summary="Fulfillment completed",
    description="Signal from the delivery subsystem that the order was delivered",
)
async def fulfill_order(
    order_id: str, engine: PaymentsEngine = Depends(get_payments_engine)
) -> Dict[str, Any]:
    order = await engine.orders.mark_fulfilled(order_id)
    return order.to_dict()


@order_router.post(
    "/{order_id}/refunds",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund an order",
    description="Full or partial refund of a paid order",
)
async def refund_order(
    order_id: str,
    body: RefundRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    engine: PaymentsEngine = Depends(get_payments_engine),
) -> Any:
    async def _refund() -> tuple:
        refund = await engine.refunds.request_refund(order_id, body.amount, body.reason)
        return status.HTTP_201_CREATED, refund.to_dict()

    logger.info("api_refund_request", order_id=order_id, amount=body.amount, reason=body.reason)

    if idempotency_key is None:
        _, result = await _refund()
        return result

    status_code, result = await engine.idempotency.execute_once(
        f"refund:{order_id}:{idempotency_key}",
        request_fingerprint(body.model_dump()),
        _refund,
    )
    return JSONResponse(status_code=status_code, content=result)


@order_router.get("/{order_id}/refunds", response_model=List[RefundResponse], summary="List refunds")
async def list_refunds(
    order_id: str, engine: PaymentsEngine = Depends(get_payments_engine)
) -> List[Dict[str, Any]]:
    await engine.orders.get_order(order_id)
    return [refund.to_dict() for refund in await engine.refunds.list_refunds(order_id)]


@order_router.get("/{order_id}/transfers", summary="List seller transfers")
async def list_transfers(
    order_id: str, engine: PaymentsEngine = Depends(get_payments_engine)
) -> List[Dict[str, Any]]:
    await engine.orders.get_order(order_id)
    return [transfer.to_dict() for transfer in await engine.sellers.list_transfers(order_id)]


# Sellers


@seller_router.post(
    "/{seller_id}/onboarding",
    response_model=OnboardingResponse,
    summary="Start seller onboarding",
    description="Create the seller's connected account (once) and return an onboarding link",
)
async def start_onboarding(
    seller_id: str,
    body: Optional[OnboardingRequest] = None,
    engine: PaymentsEngine = Depends(get_payments_engine),
) -> Dict[str, Any]:
    body = body or OnboardingRequest()
    return await engine.sellers.start_onboarding(seller_id, email=body.email, country=body.country)


@seller_router.get("/{seller_id}/account", response_model=SellerAccountResponse)
async def get_seller_account(
    seller_id: str, engine: PaymentsEngine = Depends(get_payments_engine)
) -> Dict[str, Any]:
    account = await engine.sellers.get_account(seller_id)
    return account.to_dict()


@seller_router.post("/{seller_id}/account/refresh", response_model=SellerAccountResponse)
async def refresh_seller_account(
    seller_id: str, engine: PaymentsEngine = Depends(get_payments_engine)
) -> Dict[str, Any]:
    account = await engine.sellers.refresh_capabilities(seller_id)
    return account.to_dict()


# Webhooks


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify, deduplicate and apply a Stripe event",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    engine: PaymentsEngine = Depends(get_payments_engine),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Responds 200 for processed, duplicate and ignored events so Stripe stops
    redelivering; 400 on verification failure; 409 while the same event is
    still being processed.
    """
    payload = await request.body()
    result = await engine.webhooks.ingest(payload, stripe_signature)
    return result.to_dict()


# Audit


@audit_router.get("/orders/{order_id}", summary="Audit trail of an order")
async def order_audit(
    order_id: str, engine: PaymentsEngine = Depends(get_payments_engine)
) -> Dict[str, Any]:
    await engine.orders.get_order(order_id)
    entries = await engine.audit.history("order", order_id)
    attempts = await engine.audit.attempts(order_id=order_id)
    return {
        "order_id": order_id,
        "entries": [entry.to_dict() for entry in entries],
        "gateway_attempts": [attempt.to_dict() for attempt in attempts],
    }


@audit_router.get("/idempotency/{key:path}", summary="Look up an idempotency record")
async def idempotency_record(
    key: str, engine: PaymentsEngine = Depends(get_payments_engine)
) -> Dict[str, Any]:
    record = await engine.idempotency.get(key)
    if record is None:
        raise NotFoundError(
            f"No idempotency record for {key}",
            reason_code="idempotency_key_not_found",
            details={"key": key},
        )
    return record.to_dict()


@audit_router.get("/attempts", summary="Gateway attempts")
async def gateway_attempts(
    outcome: Optional[str] = None,
    order_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    engine: PaymentsEngine = Depends(get_payments_engine),
) -> List[Dict[str, Any]]:
    attempts = await engine.audit.attempts(outcome=outcome, order_id=order_id, limit=limit)
    return [attempt.to_dict() for attempt in attempts]


# Admin


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Compare Stripe totals with order records for a date (default: yesterday)",
)
async def run_reconciliation(
    reconciliation_date: Optional[date] = None,
    engine: PaymentsEngine = Depends(get_payments_engine),
) -> Dict[str, Any]:
    recon_date = reconciliation_date or (datetime.now(timezone.utc).date() - timedelta(days=1))
    logger.info("api_reconciliation_started", date=recon_date.isoformat())
    return await engine.reconciliation.reconcile_date(recon_date)


@admin_router.post("/sweep", response_model=SweepResponse, summary="Run reconciliation sweeps")
async def run_sweeps(engine: PaymentsEngine = Depends(get_payments_engine)) -> Dict[str, Any]:
    return {"sweeps": await engine.reconciliation.run_sweeps()}


@admin_router.get("/balance", summary="Platform balance at Stripe")
async def balance(engine: PaymentsEngine = Depends(get_payments_engine)) -> Dict[str, Any]:
    return await engine.gateway.retrieve_balance()


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(engine: PaymentsEngine = Depends(get_payments_engine)) -> Dict[str, Any]:
    return await engine.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
)
async def liveness(engine: PaymentsEngine = Depends(get_payments_engine)) -> Dict[str, Any]:
    return await engine.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
)
async def readiness(engine: PaymentsEngine = Depends(get_payments_engine)) -> Any:
    result = await engine.health.readiness()
    if result["status"] != "ready":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get("/metrics", include_in_schema=False)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
