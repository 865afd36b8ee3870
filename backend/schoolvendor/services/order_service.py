"""
Order Service

Checkout (snapshot, totals, order number, stock reservation), order queries,
customer cancellation, shipment tracking, digital downloads and the admin
dashboard (filtered listing, bulk status moves, per-status counts).
"""
import uuid
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..db.models import OrderSequenceModel
from ..db.repository import (
    ORDER_SORT_COLUMNS,
    count_orders_by_status,
    load_order,
    load_product,
    save_order,
    list_orders_for_user,
    search_orders,
    wrap_db_errors,
)
from ..exceptions import (
    StoreError,
    NotFoundError,
    ValidationError,
    InsufficientStockError,
    InvalidStateError,
    AuthorizationError,
)
from ..models.common import Actor, StatusHistoryEntry, to_cents, to_money, utcnow
from ..models.orders import (
    BillingAddress,
    CreateOrderRequest,
    DigitalDelivery,
    Order,
    OrderItem,
    OrderPayment,
    OrderStatus,
    TrackingRequest,
)
from ..models.products import Product
from . import order_state_machine, stock_ledger
from .authorization import require_admin, require_owner_or_admin
from .signature_service import verify_download_signature

logger = logging.getLogger(__name__)

CUSTOMER_CANCELLABLE = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PAYMENT_PENDING,
    OrderStatus.PAYMENT_FAILED,
    OrderStatus.PROCESSING,
    OrderStatus.READY_FOR_SHIPPING,
})

DOWNLOADABLE = frozenset({OrderStatus.COMPLETED, OrderStatus.DELIVERED})


# ============================================================================
# Order Numbers
# ============================================================================

@wrap_db_errors
async def next_order_number(db: AsyncSession, now=None) -> str:
    """
    Allocate the next SV-YYMMDD-NNNN number from the per-day sequence row.

    The increment is a single UPDATE, so concurrent checkouts never share
    a number.
    """
    day = (now or utcnow()).strftime("%y%m%d")

    await db.execute(
        sqlite_insert(OrderSequenceModel)
        .values(day=day, last_value=0)
        .on_conflict_do_nothing(index_elements=["day"])
    )
    await db.execute(
        update(OrderSequenceModel)
        .where(OrderSequenceModel.day == day)
        .values(last_value=OrderSequenceModel.last_value + 1)
    )
    result = await db.execute(
        select(OrderSequenceModel.last_value).where(OrderSequenceModel.day == day)
    )
    value = result.scalar_one()
    await db.commit()

    return f"SV-{day}-{value:04d}"


# ============================================================================
# Totals
# ============================================================================

def shipping_cost_for(method: str) -> Decimal:
    costs = {
        "standard": settings.shipping_cost_standard,
        "express": settings.shipping_cost_express,
        "pickup": settings.shipping_cost_pickup,
    }
    return to_money(costs[method])


def compute_totals(items: List[OrderItem], shipping_amount: Decimal, tax_rate: Decimal) -> Dict[str, Decimal]:
    """
    Derive order totals once at checkout.

    Tax applies to the item subtotal only, not to shipping.
    """
    subtotal = to_money(sum((item.line_total for item in items), Decimal("0")))
    tax_amount = to_money(subtotal * tax_rate)
    shipping_amount = to_money(shipping_amount)
    return {
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "shipping_amount": shipping_amount,
        "total_amount": to_money(subtotal + tax_amount + shipping_amount),
    }


def _snapshot_item(product: Product, quantity: int, now) -> OrderItem:
    delivery = None
    if product.kind in ("digital", "both"):
        details = product.digital_details
        delivery = DigitalDelivery(
            download_limit=details.download_limit,
            access_expiration=(
                now + timedelta(days=details.access_duration_days)
                if details.access_duration_days > 0 else None
            ),
        )

    return OrderItem(
        product_id=product.product_id,
        name=product.name,
        sku=product.sku,
        unit_price=to_money(product.current_price(now)),
        quantity=quantity,
        kind=product.kind,
        digital_delivery=delivery,
    )


# ============================================================================
# Checkout
# ============================================================================

async def create_order(db: AsyncSession, request: CreateOrderRequest, actor: Actor) -> Order:
    """
    Build an order from the checkout request and reserve its stock.

    All validation (products, availability, stock, shipping) happens before
    anything is written. If reservation still fails afterwards, the order is
    force-cancelled with a single history entry and the error is re-raised.

    Args:
        db: Database session
        request: Checkout payload
        actor: Customer placing the order

    Returns:
        The persisted order (status pending, stock_reserved set when physical)

    Raises:
        NotFoundError: unknown product
        ValidationError: unavailable product or missing shipping details
        InsufficientStockError: not enough stock for a physical item
    """
    now = utcnow()

    products: Dict[str, Product] = {}
    requested: Dict[str, int] = defaultdict(int)
    for line in request.items:
        product = products.get(line.product_id) or await load_product(db, line.product_id)
        if product is None:
            raise NotFoundError(f"Product with ID {line.product_id} not found", {"product_id": line.product_id})
        if not product.is_available:
            raise ValidationError(f"Product {product.name} is not available", {"product_id": product.product_id})
        products[product.product_id] = product
        requested[product.product_id] += line.quantity

    for product_id, quantity in requested.items():
        product = products[product_id]
        if product.tracks_stock and product.stock < quantity:
            raise InsufficientStockError(
                f"Insufficient stock for {product.name}. Available: {product.stock}",
                {"product_id": product_id, "available": product.stock, "requested": quantity}
            )

    items = [_snapshot_item(products[line.product_id], line.quantity, now) for line in request.items]
    has_physical = any(item.is_physical for item in items)

    shipping = None
    shipping_amount = Decimal("0.00")
    if has_physical:
        if request.shipping is None:
            raise ValidationError("Shipping details are required for physical items")
        shipping = request.shipping.model_copy(deep=True)
        shipping.shipping_cost = shipping_cost_for(shipping.shipping_method)
        shipping_amount = shipping.shipping_cost

    tax_rate = settings.tax_rate
    totals = compute_totals(items, shipping_amount, tax_rate)
    currency = request.currency or settings.default_currency

    order = Order(
        order_id=f"ord_{uuid.uuid4().hex[:16]}",
        order_number=await next_order_number(db, now),
        user_id=actor.user_id,
        customer_info=request.customer_info,
        items=items,
        tax_rate=tax_rate,
        currency=currency,
        status=OrderStatus.PENDING,
        status_history=[
            StatusHistoryEntry(status=OrderStatus.PENDING.value, note="Order created", actor=actor.user_id)
        ],
        payment=OrderPayment(method=request.payment_method, amount=totals["total_amount"], currency=currency),
        shipping=shipping,
        billing_address=request.billing_address or BillingAddress(),
        notes=request.notes,
        created_at=now,
        updated_at=now,
        **totals,
    )
    await save_order(db, order)

    logger.info(
        f"Created order {order.order_number} ({order.order_id}) for user {actor.user_id}: "
        f"{order.items_count} item(s), total {order.total_amount} {order.currency}"
    )

    if has_physical:
        try:
            await stock_ledger.reserve_stock(
                db, order.items, reason=f"Reserved for order {order.order_number}", actor=actor
            )
        except StoreError:
            order.record_status(OrderStatus.CANCELLED, "Failed to reserve stock", None)
            order.cancelled_at = utcnow()
            order.cancellation_reason = "Failed to reserve stock"
            await save_order(db, order)
            logger.warning(f"Order {order.order_id} cancelled: stock reservation failed")
            raise

        order.stock_reserved = True
        await save_order(db, order)

    return order


# ============================================================================
# Queries
# ============================================================================

async def get_order(db: AsyncSession, order_id: str, actor: Actor) -> Order:
    order = await load_order(db, order_id)
    if order is None:
        raise NotFoundError(f"Order with ID {order_id} not found", {"order_id": order_id})
    require_owner_or_admin(actor, order.user_id, "order")
    return order


async def list_user_orders(db: AsyncSession, actor: Actor, limit: int = 10, offset: int = 0) -> List[Order]:
    """Own orders, newest first."""
    return await list_orders_for_user(db, actor.user_id, limit=limit, offset=offset)


# ============================================================================
# Status Changes
# ============================================================================

async def update_order_status(
    db: AsyncSession,
    order_id: str,
    new_status: OrderStatus,
    note: Optional[str],
    actor: Actor
) -> Order:
    require_admin(actor, "update order status")
    order = await get_order(db, order_id, actor)
    return await order_state_machine.transition(db, order, new_status, note, actor)


async def cancel_order(db: AsyncSession, order_id: str, reason: str, actor: Actor) -> Order:
    """
    Customer (or admin) cancellation before shipment.

    Raises:
        InvalidStateError: order already shipped, paid or closed
    """
    order = await get_order(db, order_id, actor)
    if order.status not in CUSTOMER_CANCELLABLE:
        raise InvalidStateError(
            f"Order cannot be cancelled in status {order.status.value}",
            {"order_id": order_id, "status": order.status.value}
        )
    return await order_state_machine.transition(db, order, OrderStatus.CANCELLED, reason, actor)


async def add_tracking(db: AsyncSession, order_id: str, request: TrackingRequest, actor: Actor) -> Order:
    """
    Attach carrier tracking; a ready_for_shipping order moves on to shipped.
    """
    require_admin(actor, "add tracking information")
    order = await get_order(db, order_id, actor)

    if not order.has_physical_items or order.shipping is None:
        raise ValidationError("Order has no physical items to ship", {"order_id": order_id})
    if order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        raise InvalidStateError(
            f"Cannot add tracking to an order in status {order.status.value}",
            {"order_id": order_id, "status": order.status.value}
        )

    order.shipping.tracking_number = request.tracking_number
    order.shipping.carrier = request.carrier
    order.shipping.estimated_delivery = request.estimated_delivery
    await save_order(db, order)

    logger.info(f"Tracking added to order {order_id}: {request.carrier} {request.tracking_number}")

    if order.status == OrderStatus.READY_FOR_SHIPPING:
        order = await order_state_machine.transition(
            db, order, OrderStatus.SHIPPED,
            f"Shipped via {request.carrier} ({request.tracking_number})", actor
        )

    return order


# ============================================================================
# Admin Dashboard
# ============================================================================

# Cancellation and refunds carry their own flows; bulk moves stay on the
# fulfilment path
BULK_TARGET_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.PAYMENT_PENDING,
    OrderStatus.PAID,
    OrderStatus.READY_FOR_SHIPPING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
})


async def list_all_orders(
    db: AsyncSession,
    actor: Actor,
    status: Optional[OrderStatus] = None,
    payment_method: Optional[str] = None,
    min_amount: Optional[Decimal] = None,
    max_amount: Optional[Decimal] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = "desc",
    limit: int = 10,
    offset: int = 0
) -> Tuple[List[Order], int]:
    """
    All orders, filtered for the admin dashboard.

    Args:
        db: Database session
        actor: Admin
        status: Exact order status
        payment_method: Exact payment method
        min_amount / max_amount: Inclusive bounds on total_amount
        start_date / end_date: Inclusive creation-date range (end covers the whole day)
        search: Substring of order number or customer name, email, phone, student id
        sort_by: created_at, total_amount, order_number or status
        sort_order: asc or desc

    Returns:
        (page of orders, total matching)
    """
    require_admin(actor, "list all orders")

    if sort_by not in ORDER_SORT_COLUMNS:
        raise ValidationError(f"Cannot sort by {sort_by}", {"allowed": sorted(ORDER_SORT_COLUMNS)})
    if sort_order not in ("asc", "desc"):
        raise ValidationError("sort_order must be asc or desc", {"sort_order": sort_order})
    if min_amount is not None and max_amount is not None and min_amount > max_amount:
        raise ValidationError(
            "min_amount cannot exceed max_amount",
            {"min_amount": str(min_amount), "max_amount": str(max_amount)}
        )
    if start_date and end_date and start_date > end_date:
        raise ValidationError(
            "start_date cannot be after end_date",
            {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()}
        )

    return await search_orders(
        db,
        status=status.value if status else None,
        payment_method=payment_method,
        min_total_cents=to_cents(min_amount) if min_amount is not None else None,
        max_total_cents=to_cents(max_amount) if max_amount is not None else None,
        created_from=datetime.combine(start_date, time.min) if start_date else None,
        created_to=datetime.combine(end_date, time.max) if end_date else None,
        search=search,
        sort_by=sort_by,
        descending=sort_order == "desc",
        limit=limit,
        offset=offset,
    )


async def bulk_update_order_status(
    db: AsyncSession,
    order_ids: List[str],
    new_status: OrderStatus,
    note: Optional[str],
    actor: Actor
) -> Dict[str, Any]:
    """
    Move each listed order through the state machine independently.

    A rejected transition or missing order is reported in the failed list
    and never stops the rest of the batch.

    Raises:
        ValidationError: empty id list or a status outside the fulfilment path
        NotFoundError: none of the ids exist
    """
    require_admin(actor, "bulk update order status")
    if not order_ids:
        raise ValidationError("Order IDs are required")
    if new_status not in BULK_TARGET_STATUSES:
        raise ValidationError(
            f"Status {new_status.value} cannot be applied in bulk",
            {"status": new_status.value, "allowed": sorted(s.value for s in BULK_TARGET_STATUSES)}
        )

    successful: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []
    found = 0

    for order_id in dict.fromkeys(order_ids):
        order = await load_order(db, order_id)
        if order is None:
            failed.append({"order_id": order_id, "order_number": None, "current_status": None,
                           "error": "Order not found"})
            continue

        found += 1
        try:
            await order_state_machine.transition(
                db, order, new_status, note or f"Bulk update to {new_status.value}", actor
            )
        except StoreError as e:
            logger.warning(f"Bulk update of {order_id} to {new_status.value} failed: {e.message}")
            failed.append({
                "order_id": order_id,
                "order_number": order.order_number,
                "current_status": order.status.value,
                "error": e.message,
            })
            continue

        successful.append({
            "order_id": order_id,
            "order_number": order.order_number,
            "new_status": order.status.value,
        })

    if found == 0:
        raise NotFoundError("No orders found with the provided IDs", {"order_ids": order_ids})

    logger.info(
        f"Bulk update to {new_status.value} by {actor.user_id}: "
        f"{len(successful)} updated, {len(failed)} failed"
    )

    return {
        "message": f"Updated {len(successful)} orders to status {new_status.value}. "
                   f"{len(failed)} orders failed.",
        "successful_count": len(successful),
        "failed_count": len(failed),
        "results": {"successful": successful, "failed": failed},
    }


async def get_order_counts(db: AsyncSession, actor: Actor) -> Dict[str, Any]:
    """Order count per status plus the overall total."""
    require_admin(actor, "view order counts")
    counts = await count_orders_by_status(db)
    return {"counts": counts, "total": sum(counts.values())}


# ============================================================================
# Digital Downloads
# ============================================================================

async def download_digital_item(
    db: AsyncSession,
    order_id: str,
    product_id: str,
    expires: int,
    signature: str,
    actor: Actor
) -> Dict[str, Any]:
    """
    Redeem a signed download link for one digital item.

    Returns:
        Dict with download_url, file_type, download_count, downloads_remaining
        (None when unlimited)
    """
    order = await get_order(db, order_id, actor)

    if not verify_download_signature(order_id, product_id, expires, signature):
        raise AuthorizationError("Download link is invalid or has expired", {"order_id": order_id})

    if order.status not in DOWNLOADABLE:
        raise InvalidStateError(
            f"Downloads are not available for orders in status {order.status.value}",
            {"order_id": order_id, "status": order.status.value}
        )

    item = next(
        (i for i in order.items if i.product_id == product_id and i.is_digital and i.digital_delivery),
        None
    )
    if item is None:
        raise NotFoundError("Digital item not found in this order", {"order_id": order_id, "product_id": product_id})

    delivery = item.digital_delivery
    if delivery.delivery_status != "delivered":
        raise InvalidStateError("Digital item has not been delivered yet", {"product_id": product_id})
    if delivery.download_limit and delivery.download_count >= delivery.download_limit:
        raise ValidationError("Download limit reached", {"download_limit": delivery.download_limit})
    if delivery.access_expiration and utcnow() > delivery.access_expiration:
        raise ValidationError("Access to this item has expired", {"access_expiration": str(delivery.access_expiration)})

    product = await load_product(db, product_id)
    if product is None or product.digital_details is None:
        raise NotFoundError(f"Product with ID {product_id} not found", {"product_id": product_id})

    delivery.download_count += 1
    await save_order(db, order)

    logger.info(f"Download {delivery.download_count} of {product_id} for order {order_id}")

    return {
        "download_url": product.digital_details.file_url,
        "file_type": product.digital_details.file_type,
        "download_count": delivery.download_count,
        "downloads_remaining": (
            delivery.download_limit - delivery.download_count if delivery.download_limit else None
        ),
    }
