"""
Admin Order API Endpoints

Dashboard listing with filters, bulk status changes and per-status counts.
"""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.init_db import get_db
from ..models.common import Actor
from ..models.orders import BulkStatusUpdateRequest, OrderStatus
from ..services import order_service
from .deps import get_actor

router = APIRouter()


@router.get("")
async def list_all_orders_endpoint(
    status: Optional[OrderStatus] = Query(None, description="Filter by order status"),
    payment_method: Optional[str] = Query(None, description="Filter by payment method"),
    min_amount: Optional[Decimal] = Query(None, ge=0, description="Minimum total amount"),
    max_amount: Optional[Decimal] = Query(None, ge=0, description="Maximum total amount"),
    start_date: Optional[date] = Query(None, description="Created on or after (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="Created on or before (YYYY-MM-DD)"),
    search: Optional[str] = Query(None, description="Order number or customer name/email/phone/student id"),
    sort_by: str = Query("created_at", description="created_at, total_amount, order_number or status"),
    sort_order: str = Query("desc", description="asc or desc"),
    limit: int = Query(10, ge=1, le=100, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    All orders for the admin dashboard.

    Example:
        GET /api/admin/orders?status=paid&search=ama&min_amount=100&limit=20
    """
    orders, total = await order_service.list_all_orders(
        db,
        actor,
        status=status,
        payment_method=payment_method,
        min_amount=min_amount,
        max_amount=max_amount,
        start_date=start_date,
        end_date=end_date,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )
    return {
        "orders": [o.model_dump(mode="json") for o in orders],
        "count": len(orders),
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.put("/bulk/status")
async def bulk_update_status_endpoint(
    request: BulkStatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Move several orders to one status; each order succeeds or fails on its own.
    """
    return await order_service.bulk_update_order_status(
        db, request.order_ids, request.status, request.note, actor
    )


@router.get("/count")
async def order_counts_endpoint(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    return await order_service.get_order_counts(db, actor)
