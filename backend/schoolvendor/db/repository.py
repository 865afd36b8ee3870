"""
Aggregate Persistence

Loads and saves Product, Order and Transaction aggregates. Each save is one
row write committed on its own; there are no multi-document transactions.
"""
from functools import wraps
from datetime import datetime
from typing import Dict, List, Optional, Tuple
import logging

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import DatabaseError
from ..models.common import to_cents, utcnow
from ..models.orders import Order
from ..models.products import Product
from ..models.transactions import Transaction
from .models import ProductModel, OrderModel, TransactionModel

logger = logging.getLogger(__name__)


def wrap_db_errors(func):
    """Translate SQLAlchemy failures into DatabaseError, rolling back the session."""

    @wraps(func)
    async def wrapper(db: AsyncSession, *args, **kwargs):
        try:
            return await func(db, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.error(f"Database operation {func.__name__} failed: {e}", exc_info=True)
            await db.rollback()
            raise DatabaseError(
                f"Database operation failed: {func.__name__}",
                {"error_type": type(e).__name__}
            ) from e

    return wrapper


# ============================================================================
# Products
# ============================================================================

def _to_product(row: ProductModel) -> Product:
    product = Product.model_validate_json(row.product_data)
    # Scalar columns are authoritative for stock
    product.stock = row.stock
    product.low_stock_threshold = row.low_stock_threshold
    product.is_low_stock = row.is_low_stock
    product.stock_management = row.stock_management
    return product


@wrap_db_errors
async def load_product(db: AsyncSession, product_id: str) -> Optional[Product]:
    # Stock columns are changed by bulk UPDATEs; never trust the identity map
    result = await db.execute(
        select(ProductModel)
        .where(ProductModel.id == product_id)
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    return _to_product(row) if row else None


@wrap_db_errors
async def list_low_stock_products(db: AsyncSession) -> List[Product]:
    """Stock-tracked products at or below their threshold, emptiest first."""
    result = await db.execute(
        select(ProductModel)
        .where(ProductModel.is_low_stock.is_(True))
        .where(ProductModel.kind != "digital")
        .order_by(ProductModel.stock)
        .execution_options(populate_existing=True)
    )
    return [_to_product(row) for row in result.scalars().all()]


@wrap_db_errors
async def insert_product(db: AsyncSession, product: Product) -> Product:
    db.add(ProductModel(
        id=product.product_id,
        sku=product.sku,
        kind=product.kind,
        stock=product.stock,
        low_stock_threshold=product.low_stock_threshold,
        is_low_stock=product.is_low_stock,
        stock_management=product.stock_management,
        product_data=product.model_dump_json(),
    ))
    await db.commit()
    return product


# ============================================================================
# Orders
# ============================================================================

@wrap_db_errors
async def load_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    result = await db.execute(select(OrderModel).where(OrderModel.id == order_id))
    row = result.scalar_one_or_none()
    return Order.model_validate_json(row.order_data) if row else None


@wrap_db_errors
async def save_order(db: AsyncSession, order: Order) -> Order:
    """Insert or overwrite the order document and its lookup columns."""
    order.updated_at = utcnow()
    result = await db.execute(select(OrderModel).where(OrderModel.id == order.order_id))
    row = result.scalar_one_or_none()

    if row is None:
        row = OrderModel(
            id=order.order_id,
            order_number=order.order_number,
            user_id=order.user_id,
            created_at=order.created_at,
        )
        db.add(row)

    row.status = order.status.value
    row.payment_status = order.payment.status
    row.payment_method = order.payment.method
    row.customer_name = order.customer_info.name
    row.customer_email = order.customer_info.email
    row.customer_phone = order.customer_info.phone
    row.student_id = order.customer_info.student_id
    row.total_cents = to_cents(order.total_amount)
    row.currency = order.currency
    row.order_data = order.model_dump_json()
    row.updated_at = order.updated_at

    await db.commit()
    return order


@wrap_db_errors
async def list_orders_for_user(
    db: AsyncSession,
    user_id: str,
    limit: int = 10,
    offset: int = 0
) -> List[Order]:
    result = await db.execute(
        select(OrderModel)
        .where(OrderModel.user_id == user_id)
        .order_by(OrderModel.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return [Order.model_validate_json(row.order_data) for row in result.scalars().all()]


ORDER_SORT_COLUMNS = {
    "created_at": OrderModel.created_at,
    "total_amount": OrderModel.total_cents,
    "order_number": OrderModel.order_number,
    "status": OrderModel.status,
}


@wrap_db_errors
async def search_orders(
    db: AsyncSession,
    status: Optional[str] = None,
    payment_method: Optional[str] = None,
    min_total_cents: Optional[int] = None,
    max_total_cents: Optional[int] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    descending: bool = True,
    limit: int = 10,
    offset: int = 0
) -> Tuple[List[Order], int]:
    """
    Filtered, paginated order listing across all users.

    search is a case-insensitive substring match on the order number and the
    customer's name, email, phone or student id.

    Returns:
        (orders on this page, total matching orders)
    """
    conditions = []
    if status:
        conditions.append(OrderModel.status == status)
    if payment_method:
        conditions.append(OrderModel.payment_method == payment_method)
    if min_total_cents is not None:
        conditions.append(OrderModel.total_cents >= min_total_cents)
    if max_total_cents is not None:
        conditions.append(OrderModel.total_cents <= max_total_cents)
    if created_from is not None:
        conditions.append(OrderModel.created_at >= created_from)
    if created_to is not None:
        conditions.append(OrderModel.created_at <= created_to)
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(
            OrderModel.order_number.ilike(pattern),
            OrderModel.customer_name.ilike(pattern),
            OrderModel.customer_email.ilike(pattern),
            OrderModel.customer_phone.ilike(pattern),
            OrderModel.student_id.ilike(pattern),
        ))

    query = select(OrderModel)
    count_query = select(func.count(OrderModel.id))
    for condition in conditions:
        query = query.where(condition)
        count_query = count_query.where(condition)

    column = ORDER_SORT_COLUMNS.get(sort_by, OrderModel.created_at)
    query = query.order_by(column.desc() if descending else column.asc())

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(query.limit(limit).offset(offset))
    return [Order.model_validate_json(row.order_data) for row in result.scalars().all()], total


@wrap_db_errors
async def count_orders_by_status(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(OrderModel.status, func.count(OrderModel.id)).group_by(OrderModel.status)
    )
    return {status: count for status, count in result.all()}


# ============================================================================
# Transactions
# ============================================================================

@wrap_db_errors
async def load_transaction(db: AsyncSession, transaction_id: str) -> Optional[Transaction]:
    result = await db.execute(
        select(TransactionModel).where(TransactionModel.transaction_id == transaction_id)
    )
    row = result.scalar_one_or_none()
    return Transaction.model_validate_json(row.transaction_data) if row else None


@wrap_db_errors
async def transaction_exists(db: AsyncSession, transaction_id: str) -> bool:
    result = await db.execute(
        select(TransactionModel.transaction_id).where(TransactionModel.transaction_id == transaction_id)
    )
    return result.scalar_one_or_none() is not None


@wrap_db_errors
async def find_transaction_by_correlation(
    db: AsyncSession,
    transaction_id: Optional[str],
    provider_reference: Optional[str]
) -> Optional[Transaction]:
    """
    Look up a transaction by primary id first, then by provider reference.
    """
    if transaction_id:
        found = await load_transaction(db, transaction_id)
        if found:
            return found

    if provider_reference:
        result = await db.execute(
            select(TransactionModel)
            .where(or_(
                TransactionModel.provider_reference == provider_reference,
                TransactionModel.transaction_id == provider_reference,
            ))
            .order_by(TransactionModel.created_at.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row:
            return Transaction.model_validate_json(row.transaction_data)

    return None


@wrap_db_errors
async def save_transaction(db: AsyncSession, transaction: Transaction) -> Transaction:
    """Insert or overwrite the transaction document and its lookup columns."""
    transaction.updated_at = utcnow()
    result = await db.execute(
        select(TransactionModel).where(TransactionModel.transaction_id == transaction.transaction_id)
    )
    row = result.scalar_one_or_none()

    if row is None:
        row = TransactionModel(
            transaction_id=transaction.transaction_id,
            order_id=transaction.order_id,
            user_id=transaction.user_id,
            payment_method=transaction.payment_method,
            amount_cents=to_cents(transaction.amount),
            currency=transaction.currency,
            created_at=transaction.created_at,
        )
        db.add(row)

    row.status = transaction.status.value
    row.provider_reference = transaction.provider_reference
    row.expires_at = transaction.expires_at
    row.transaction_data = transaction.model_dump_json()
    row.updated_at = transaction.updated_at

    await db.commit()
    return transaction


@wrap_db_errors
async def list_transactions_for_user(
    db: AsyncSession,
    user_id: str,
    payment_method: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 10,
    offset: int = 0
) -> List[Transaction]:
    query = select(TransactionModel).where(TransactionModel.user_id == user_id)
    if payment_method:
        query = query.where(TransactionModel.payment_method == payment_method)
    if status:
        query = query.where(TransactionModel.status == status)

    result = await db.execute(
        query.order_by(TransactionModel.created_at.desc()).limit(limit).offset(offset)
    )
    return [Transaction.model_validate_json(row.transaction_data) for row in result.scalars().all()]


@wrap_db_errors
async def list_expired_initiated_transactions(db: AsyncSession, now) -> List[Transaction]:
    result = await db.execute(
        select(TransactionModel)
        .where(TransactionModel.status == "initiated")
        .where(TransactionModel.expires_at < now)
    )
    return [Transaction.model_validate_json(row.transaction_data) for row in result.scalars().all()]
