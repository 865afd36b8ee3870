"""
SQLAlchemy ORM Models for School Vendor

Orders and transactions are stored as one JSON document per aggregate plus
indexed scalar columns used for lookups. Product stock is a scalar column so
it can be decremented with a single conditional UPDATE.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, CheckConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ProductModel(Base):
    """
    ORM model for products table.

    Catalog collaborator; only stock columns are mutated by the core.
    """
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    sku = Column(String, nullable=False, unique=True, index=True)
    kind = Column(String, nullable=False, index=True)
    stock = Column(Integer, nullable=False, default=0)
    low_stock_threshold = Column(Integer, nullable=False, default=10)
    is_low_stock = Column(Boolean, nullable=False, default=False, index=True)
    stock_management = Column(Boolean, nullable=False, default=True)
    product_data = Column(Text, nullable=False)  # JSON blob
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="stock_non_negative"),
        CheckConstraint("kind IN ('physical', 'digital', 'both')", name="product_kind_check"),
    )


class StockMovementModel(Base):
    """
    ORM model for stock_movements table.

    Append-only audit trail of every stock change.
    """
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String, nullable=False, index=True)
    action = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    previous_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)
    reason = Column(String)
    actor = Column(String)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    __table_args__ = (
        CheckConstraint("action IN ('add', 'remove', 'adjust')", name="stock_action_check"),
    )


class OrderModel(Base):
    """
    ORM model for orders table.

    Orders are never hard-deleted.
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    payment_status = Column(String, nullable=False, index=True)
    payment_method = Column(String, nullable=True, index=True)
    # Admin search columns, copied from customer_info
    customer_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    student_id = Column(String, nullable=True)
    total_cents = Column(Integer, nullable=False, index=True)
    currency = Column(String, nullable=False, default="GHS")
    order_data = Column(Text, nullable=False)  # JSON blob
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class OrderSequenceModel(Base):
    """
    ORM model for order_sequences table.

    One row per calendar day; last_value is bumped atomically per order.
    """
    __tablename__ = "order_sequences"

    day = Column(String, primary_key=True)  # YYMMDD
    last_value = Column(Integer, nullable=False, default=0)


class TransactionModel(Base):
    """
    ORM model for transactions table.

    provider_reference holds the provider-assigned correlation value
    (merchant transaction id, network reference, client reference, ...).
    """
    __tablename__ = "transactions"

    transaction_id = Column(String, primary_key=True)
    order_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    payment_method = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    provider_reference = Column(String, index=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="GHS")
    transaction_data = Column(Text, nullable=False)  # JSON blob
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('initiated', 'pending', 'processing', 'completed', 'failed', 'refunded', "
            "'partially_refunded', 'cancelled', 'expired', 'disputed')",
            name="transaction_status_check"
        ),
    )
