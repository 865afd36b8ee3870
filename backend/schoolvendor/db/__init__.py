"""
Database package for School Vendor.

Exports database initialization, models, and session management.
"""
from .init_db import initialize_database, get_db, get_async_session, build_engine, create_tables
from .models import (
    Base,
    ProductModel,
    StockMovementModel,
    OrderModel,
    OrderSequenceModel,
    TransactionModel
)

__all__ = [
    "initialize_database",
    "get_db",
    "get_async_session",
    "build_engine",
    "create_tables",
    "Base",
    "ProductModel",
    "StockMovementModel",
    "OrderModel",
    "OrderSequenceModel",
    "TransactionModel",
]
