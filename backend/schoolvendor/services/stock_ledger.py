"""
Stock Ledger

Per-product stock with an append-only audit trail.

- reserve: decrement at order creation (physical and "both" items only)
- restore: add back on cancellation
- adjust: administrative absolute set

Every decrement is a single conditional UPDATE (stock >= quantity), so two
concurrent reservations against the same product can never oversell.
"""
from typing import List, Optional, Sequence
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import ProductModel, StockMovementModel
from ..db.repository import wrap_db_errors
from ..exceptions import NotFoundError, InsufficientStockError
from ..models.common import Actor, utcnow
from ..models.orders import OrderItem
from ..models.products import StockMovement

logger = logging.getLogger(__name__)


def _actor_id(actor: Optional[Actor]) -> Optional[str]:
    return actor.user_id if actor else None


async def _get_product_row(db: AsyncSession, product_id: str) -> ProductModel:
    result = await db.execute(
        select(ProductModel)
        .where(ProductModel.id == product_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFoundError(f"Product with ID {product_id} not found", {"product_id": product_id})
    return row


async def _write_movement(
    db: AsyncSession,
    product_id: str,
    action: str,
    quantity: int,
    previous_stock: int,
    new_stock: int,
    reason: Optional[str],
    actor: Optional[str],
) -> StockMovement:
    movement = StockMovement(
        product_id=product_id,
        action=action,
        quantity=quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=reason,
        actor=actor,
    )
    db.add(StockMovementModel(**movement.model_dump()))
    return movement


async def _refresh_low_stock_flag(db: AsyncSession, product_id: str) -> int:
    """Recompute is_low_stock after a mutation; returns the current stock."""
    await db.execute(
        update(ProductModel)
        .where(ProductModel.id == product_id)
        .values(
            is_low_stock=ProductModel.stock <= ProductModel.low_stock_threshold,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(select(ProductModel.stock).where(ProductModel.id == product_id))
    return result.scalar_one()


@wrap_db_errors
async def remove_stock(
    db: AsyncSession,
    product_id: str,
    quantity: int,
    reason: str,
    actor: Optional[Actor] = None
) -> Optional[StockMovement]:
    """
    Atomically decrement one product's stock.

    Returns None when the product does not track stock.

    Raises:
        NotFoundError: product does not exist
        InsufficientStockError: stock < quantity at the time of the update
    """
    row = await _get_product_row(db, product_id)
    if row.kind == "digital" or not row.stock_management:
        return None

    result = await db.execute(
        update(ProductModel)
        .where(ProductModel.id == product_id)
        .where(ProductModel.stock >= quantity)
        .values(stock=ProductModel.stock - quantity)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        await db.rollback()
        current = await _get_product_row(db, product_id)
        raise InsufficientStockError(
            f"Insufficient stock for product {product_id}. Available: {current.stock}",
            {"product_id": product_id, "available": current.stock, "requested": quantity}
        )

    new_stock = await _refresh_low_stock_flag(db, product_id)
    movement = await _write_movement(
        db, product_id, "remove", quantity, new_stock + quantity, new_stock, reason, _actor_id(actor)
    )
    await db.commit()

    logger.info(f"Stock removed: product={product_id}, qty={quantity}, stock={movement.previous_stock}->{new_stock}")
    return movement


@wrap_db_errors
async def add_stock(
    db: AsyncSession,
    product_id: str,
    quantity: int,
    reason: str,
    actor: Optional[Actor] = None
) -> Optional[StockMovement]:
    """Atomically increment one product's stock."""
    row = await _get_product_row(db, product_id)
    if row.kind == "digital" or not row.stock_management:
        return None

    await db.execute(
        update(ProductModel)
        .where(ProductModel.id == product_id)
        .values(stock=ProductModel.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    new_stock = await _refresh_low_stock_flag(db, product_id)
    movement = await _write_movement(
        db, product_id, "add", quantity, new_stock - quantity, new_stock, reason, _actor_id(actor)
    )
    await db.commit()

    logger.info(f"Stock added: product={product_id}, qty={quantity}, stock={movement.previous_stock}->{new_stock}")
    return movement


async def reserve_stock(
    db: AsyncSession,
    items: Sequence[OrderItem],
    reason: str = "Reserved for order",
    actor: Optional[Actor] = None
) -> List[StockMovement]:
    """
    Decrement stock for every physical/both item.

    All-or-nothing: if any item fails, items already decremented by this call
    are added back before the error propagates.
    """
    movements: List[StockMovement] = []
    reserved: List[OrderItem] = []

    try:
        for item in items:
            if not item.is_physical:
                continue
            movement = await remove_stock(db, item.product_id, item.quantity, reason, actor)
            reserved.append(item)
            if movement:
                movements.append(movement)
    except Exception:
        if reserved:
            logger.warning(f"Reservation failed after {len(reserved)} item(s); releasing partial reservation")
            await restore_stock(db, reserved, reason="Released partial reservation", actor=actor)
        raise

    return movements


async def restore_stock(
    db: AsyncSession,
    items: Sequence[OrderItem],
    reason: str = "Restored from cancelled order",
    actor: Optional[Actor] = None
) -> List[StockMovement]:
    """Add back the ordered quantity for every physical/both item."""
    movements: List[StockMovement] = []
    for item in items:
        if not item.is_physical:
            continue
        try:
            movement = await add_stock(db, item.product_id, item.quantity, reason, actor)
        except NotFoundError:
            # Products are never hard-deleted in normal operation
            logger.warning(f"Cannot restore stock for missing product {item.product_id}")
            continue
        if movement:
            movements.append(movement)
    return movements


@wrap_db_errors
async def adjust_stock(
    db: AsyncSession,
    product_id: str,
    target_quantity: int,
    reason: str,
    actor: Optional[Actor] = None
) -> StockMovement:
    """
    Administrative absolute set; always recorded in the audit trail.
    """
    row = await _get_product_row(db, product_id)
    previous_stock = row.stock

    await db.execute(
        update(ProductModel)
        .where(ProductModel.id == product_id)
        .values(stock=target_quantity)
        .execution_options(synchronize_session=False)
    )
    new_stock = await _refresh_low_stock_flag(db, product_id)
    movement = await _write_movement(
        db, product_id, "adjust", target_quantity, previous_stock, new_stock, reason, _actor_id(actor)
    )
    await db.commit()

    logger.info(f"Stock adjusted: product={product_id}, stock={previous_stock}->{new_stock}, reason={reason}")
    return movement


@wrap_db_errors
async def get_stock_history(db: AsyncSession, product_id: str) -> List[StockMovement]:
    result = await db.execute(
        select(StockMovementModel)
        .where(StockMovementModel.product_id == product_id)
        .order_by(StockMovementModel.id)
    )
    return [
        StockMovement(
            product_id=m.product_id,
            action=m.action,
            quantity=m.quantity,
            previous_stock=m.previous_stock,
            new_stock=m.new_stock,
            reason=m.reason,
            actor=m.actor,
            timestamp=m.timestamp,
        )
        for m in result.scalars().all()
    ]
