"""
Buyer-facing order API: checkout, flat payments, payment retry, status
check and cancel. Buyer identity comes from the upstream auth headers.
"""
from dataclasses import asdict

from fastapi import APIRouter, Cookie, Depends, Response

from cardshop.api.deps import get_buyer, get_order_service
from cardshop.core.config import settings
from cardshop.schemas.orders import (
    ActionOut,
    CheckoutIn,
    CheckoutOut,
    PaymentOrderIn,
    StatusCheckOut,
)
from cardshop.services.orders.service import OrderService
from cardshop.services.results import Buyer, CheckoutResult

router = APIRouter(prefix="/orders", tags=["orders"])


def _checkout_out(result: CheckoutResult, response: Response) -> CheckoutOut:
    if result.success and result.payment is not None:
        # Lets a signed-out buyer check the order status after returning from the gateway.
        response.set_cookie(
            settings.pending_order_cookie,
            result.order_id,
            max_age=settings.reservation_ttl_seconds,
            httponly=True,
            samesite="lax",
        )
    return CheckoutOut(**asdict(result))


@router.post("", response_model=CheckoutOut)
def checkout(
    payload: CheckoutIn,
    response: Response,
    buyer: Buyer = Depends(get_buyer),
    service: OrderService = Depends(get_order_service),
) -> CheckoutOut:
    result = service.create_order(
        payload.product_id,
        payload.quantity,
        buyer,
        use_points=payload.use_points,
        email=payload.email,
    )
    return _checkout_out(result, response)


@router.post("/payment", response_model=CheckoutOut)
def create_payment(
    payload: PaymentOrderIn,
    response: Response,
    buyer: Buyer = Depends(get_buyer),
    service: OrderService = Depends(get_order_service),
) -> CheckoutOut:
    result = service.create_payment_order(payload.amount, buyer, payee=payload.payee)
    return _checkout_out(result, response)


@router.post("/{order_id}/retry-payment", response_model=CheckoutOut)
def retry_payment(
    order_id: str,
    response: Response,
    buyer: Buyer = Depends(get_buyer),
    service: OrderService = Depends(get_order_service),
) -> CheckoutOut:
    result = service.get_retry_payment_params(order_id, buyer.user_id)
    return _checkout_out(result, response)


@router.post("/{order_id}/check", response_model=StatusCheckOut)
def check_status(
    order_id: str,
    buyer: Buyer = Depends(get_buyer),
    pending_order: str | None = Cookie(default=None, alias=settings.pending_order_cookie),
    service: OrderService = Depends(get_order_service),
) -> StatusCheckOut:
    result = service.check_order_status(order_id, buyer.user_id, pending_order)
    return StatusCheckOut(**asdict(result))


@router.post("/{order_id}/cancel", response_model=ActionOut)
def cancel(
    order_id: str,
    buyer: Buyer = Depends(get_buyer),
    service: OrderService = Depends(get_order_service),
) -> ActionOut:
    result = service.cancel_order(order_id, buyer.user_id)
    return ActionOut(**asdict(result))
