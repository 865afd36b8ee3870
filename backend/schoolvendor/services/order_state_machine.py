"""
Order State Machine

Enforces the order status lifecycle and runs the status-specific side effects
(payment sync, stock restoration, digital delivery, shipping dates).

Terminal states: cancelled, refunded. completed may only move to refunded.
"""
from datetime import datetime
from typing import Dict, FrozenSet, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.repository import save_order
from ..exceptions import InvalidTransitionError, SideEffectError
from ..models.common import Actor, utcnow
from ..models.orders import Order, OrderStatus
from . import stock_ledger
from .signature_service import build_download_link

logger = logging.getLogger(__name__)

S = OrderStatus

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.PROCESSING, S.PAYMENT_PENDING, S.CANCELLED}),
    S.PROCESSING: frozenset({S.READY_FOR_SHIPPING, S.SHIPPED, S.COMPLETED, S.CANCELLED}),
    S.PAYMENT_PENDING: frozenset({S.PAID, S.PAYMENT_FAILED, S.CANCELLED}),
    S.PAYMENT_FAILED: frozenset({S.PAYMENT_PENDING, S.CANCELLED}),
    S.PAID: frozenset({S.PROCESSING, S.READY_FOR_SHIPPING, S.COMPLETED, S.REFUNDED}),
    S.READY_FOR_SHIPPING: frozenset({S.SHIPPED, S.CANCELLED}),
    S.SHIPPED: frozenset({S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset({S.COMPLETED, S.REFUNDED}),
    S.COMPLETED: frozenset({S.REFUNDED}),
    S.CANCELLED: frozenset(),
    S.REFUNDED: frozenset(),
}


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return OrderStatus(requested) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def validate_transition(current: OrderStatus, requested: OrderStatus) -> None:
    """
    Raises:
        InvalidTransitionError: requested status is not reachable from current
    """
    if not can_transition(current, requested):
        raise InvalidTransitionError(OrderStatus(current).value, OrderStatus(requested).value)


async def transition(
    db: AsyncSession,
    order: Order,
    new_status: OrderStatus,
    note: Optional[str] = None,
    actor: Optional[Actor] = None
) -> Order:
    """
    Move an order to a new status.

    Validates against ALLOWED_TRANSITIONS, appends a history entry, persists
    the order and then runs side effects. A side-effect failure does not
    revert the committed status.

    Args:
        db: Database session
        order: Order aggregate (mutated in place)
        new_status: Requested status
        note: History note (for cancellations, the cancellation reason)
        actor: Acting user, None for system actions

    Returns:
        The updated order

    Raises:
        InvalidTransitionError: transition not allowed; order left unchanged
        SideEffectError: status persisted but a side effect failed
    """
    new_status = OrderStatus(new_status)
    previous_status = order.status
    validate_transition(previous_status, new_status)

    order.record_status(new_status, note, actor.user_id if actor else None)
    await save_order(db, order)

    logger.info(
        f"Order {order.order_id} transitioned: {previous_status.value} -> {new_status.value}"
        f" (actor={actor.user_id if actor else 'system'})"
    )

    try:
        await _run_side_effects(db, order, previous_status, new_status, note, actor)
    except SideEffectError:
        raise
    except Exception as e:
        logger.error(
            f"Side effect for {new_status.value} failed on order {order.order_id}; status kept",
            exc_info=True
        )
        raise SideEffectError(
            f"Order {order.order_id} moved to {new_status.value} but a follow-up step failed",
            {"order_id": order.order_id, "status": new_status.value, "error_type": type(e).__name__}
        ) from e

    return order


# ============================================================================
# Side Effects
# ============================================================================

async def _run_side_effects(
    db: AsyncSession,
    order: Order,
    previous_status: OrderStatus,
    new_status: OrderStatus,
    note: Optional[str],
    actor: Optional[Actor]
) -> None:
    now = utcnow()

    if new_status == S.PAID:
        order.payment.status = "completed"
        order.payment.payment_date = now
        await save_order(db, order)

        if order.has_digital_items and not order.has_physical_items:
            await transition(db, order, S.COMPLETED, "Digital order completed automatically", actor)

    elif new_status == S.COMPLETED:
        order.completed_at = now
        deliver_digital_items(order, now)
        await save_order(db, order)

    elif new_status == S.CANCELLED:
        if order.stock_reserved and previous_status != S.COMPLETED:
            await stock_ledger.restore_stock(
                db, order.items, reason=f"Order {order.order_number} cancelled", actor=actor
            )
            order.stock_reserved = False
        order.cancelled_at = now
        order.cancellation_reason = note
        await save_order(db, order)

    elif new_status == S.REFUNDED:
        order.payment.status = "refunded"
        await save_order(db, order)

    elif new_status == S.PAYMENT_FAILED:
        order.payment.status = "failed"
        await save_order(db, order)

    elif new_status == S.SHIPPED and order.shipping:
        order.shipping.shipped_date = now
        await save_order(db, order)

    elif new_status == S.DELIVERED and order.shipping:
        order.shipping.delivered_date = now
        await save_order(db, order)


def deliver_digital_items(order: Order, now: Optional[datetime] = None) -> int:
    """
    Issue signed download links for every pending digital item.

    Returns:
        Number of items delivered by this call
    """
    delivered = 0
    for item in order.items:
        if not item.is_digital or item.digital_delivery is None:
            continue
        if item.digital_delivery.delivery_status == "delivered":
            continue

        item.digital_delivery.download_link = build_download_link(order.order_id, item.product_id, now)
        item.digital_delivery.delivery_status = "delivered"
        delivered += 1

    if delivered:
        logger.info(f"Delivered {delivered} digital item(s) for order {order.order_id}")
    return delivered
