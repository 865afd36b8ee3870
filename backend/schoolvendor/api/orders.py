"""
Orders API Endpoints

Checkout, order queries, status changes, tracking and digital downloads.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any
import logging

from ..db.init_db import get_db
from ..models.common import Actor
from ..models.orders import (
    CancelOrderRequest,
    CreateOrderRequest,
    Order,
    TrackingRequest,
    UpdateOrderStatusRequest,
)
from ..services import order_service
from .deps import get_actor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=201)
async def create_order_endpoint(
    request: CreateOrderRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Order:
    """
    Create an order from the checkout payload and reserve stock.

    Example:
        POST /api/orders
        {
            "items": [{"product_id": "prod_abc", "quantity": 2}],
            "payment_method": "mobile_money",
            "customer_info": {"name": "Ama", "email": "ama@example.com"},
            "shipping": {"address": {...}, "contact_phone": "0241234567"}
        }
    """
    return await order_service.create_order(db, request, actor)


@router.get("")
async def list_orders_endpoint(
    limit: int = Query(10, ge=1, le=100, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    orders = await order_service.list_user_orders(db, actor, limit=limit, offset=offset)
    return {
        "orders": [o.model_dump(mode="json") for o in orders],
        "count": len(orders),
        "limit": limit,
        "offset": offset,
    }


@router.get("/{order_id}")
async def get_order_endpoint(
    order_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Order:
    return await order_service.get_order(db, order_id, actor)


@router.put("/{order_id}/status")
async def update_order_status_endpoint(
    order_id: str,
    request: UpdateOrderStatusRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Order:
    """Admin status change through the order state machine."""
    return await order_service.update_order_status(db, order_id, request.status, request.note, actor)


@router.put("/{order_id}/cancel")
async def cancel_order_endpoint(
    order_id: str,
    request: CancelOrderRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Order:
    return await order_service.cancel_order(db, order_id, request.reason, actor)


@router.put("/{order_id}/tracking")
async def add_tracking_endpoint(
    order_id: str,
    request: TrackingRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Order:
    return await order_service.add_tracking(db, order_id, request, actor)


@router.get("/{order_id}/download/{product_id}")
async def download_endpoint(
    order_id: str,
    product_id: str,
    expires: int = Query(..., description="Link expiry (epoch seconds)"),
    signature: str = Query(..., description="HMAC signature"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Redeem a signed download link.

    Example:
        GET /api/orders/ord_abc/download/prod_xyz?expires=1767225600&signature=...
    """
    return await order_service.download_digital_item(db, order_id, product_id, expires, signature, actor)
