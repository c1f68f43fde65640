"""
Admin order API. Guarded by X-Admin-Key plus the admin username allowlist;
every action goes through AdminOrderService (same compensations as the
automated paths, audit logged).
"""
from dataclasses import asdict
from typing import Callable

from fastapi import APIRouter, Depends, HTTPException

from cardshop.api.deps import get_admin_order_service
from cardshop.schemas.orders import ActionOut, BulkDeleteIn
from cardshop.services.errors import OrderNotFoundError
from cardshop.services.orders.admin import AdminOrderService
from cardshop.services.results import ActionResult

router = APIRouter(prefix="/admin/orders", tags=["admin"])


def _run(action: Callable[[str], ActionResult], order_id: str) -> ActionOut:
    try:
        result = action(order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    return ActionOut(**asdict(result))


@router.post("/{order_id}/mark-paid", response_model=ActionOut)
def mark_paid(order_id: str, service: AdminOrderService = Depends(get_admin_order_service)) -> ActionOut:
    return _run(service.mark_paid, order_id)


@router.post("/{order_id}/mark-delivered", response_model=ActionOut)
def mark_delivered(order_id: str, service: AdminOrderService = Depends(get_admin_order_service)) -> ActionOut:
    return _run(service.mark_delivered, order_id)


@router.post("/{order_id}/mark-refunded", response_model=ActionOut)
def mark_refunded(order_id: str, service: AdminOrderService = Depends(get_admin_order_service)) -> ActionOut:
    return _run(service.mark_refunded, order_id)


@router.post("/{order_id}/cancel", response_model=ActionOut)
def cancel(order_id: str, service: AdminOrderService = Depends(get_admin_order_service)) -> ActionOut:
    return _run(service.cancel, order_id)


@router.post("/{order_id}/refund", response_model=ActionOut)
def proxy_refund(order_id: str, service: AdminOrderService = Depends(get_admin_order_service)) -> ActionOut:
    return _run(service.proxy_refund, order_id)


@router.post("/{order_id}/verify-refund", response_model=ActionOut)
def verify_refund(order_id: str, service: AdminOrderService = Depends(get_admin_order_service)) -> ActionOut:
    return _run(service.verify_refund_status, order_id)


@router.post("/{order_id}/redeliver", response_model=ActionOut)
def redeliver(order_id: str, service: AdminOrderService = Depends(get_admin_order_service)) -> ActionOut:
    return _run(service.redeliver, order_id)


@router.post("/bulk-delete", response_model=ActionOut)
def bulk_delete(payload: BulkDeleteIn, service: AdminOrderService = Depends(get_admin_order_service)) -> ActionOut:
    return ActionOut(**asdict(service.delete_many(payload.order_ids)))


@router.delete("/{order_id}", response_model=ActionOut)
def delete_order(order_id: str, service: AdminOrderService = Depends(get_admin_order_service)) -> ActionOut:
    return _run(service.delete, order_id)
