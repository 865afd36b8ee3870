"""
Catalog Service

Product creation and lookup plus admin stock reporting. Stock itself is only
mutated through the stock ledger.
"""
import uuid
from typing import List
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import ProductModel
from ..db.repository import insert_product, list_low_stock_products, load_product
from ..exceptions import NotFoundError, ValidationError
from ..models.common import Actor
from ..models.products import (
    AdjustStockRequest,
    CreateProductRequest,
    Product,
    ProductStockReport,
)
from . import stock_ledger
from .authorization import require_admin

logger = logging.getLogger(__name__)


async def create_product(db: AsyncSession, request: CreateProductRequest, actor: Actor) -> Product:
    """
    Add a product to the catalog (admin only).

    Raises:
        ValidationError: duplicate SKU or inconsistent kind/digital details
    """
    require_admin(actor, "create products")

    existing = await db.execute(select(ProductModel.id).where(ProductModel.sku == request.sku))
    if existing.scalar_one_or_none():
        raise ValidationError(f"Product with SKU {request.sku} already exists", {"sku": request.sku})

    try:
        product = Product(
            product_id=f"prod_{uuid.uuid4().hex[:12]}",
            is_low_stock=request.stock <= request.low_stock_threshold,
            **request.model_dump(),
        )
    except ValueError as e:
        raise ValidationError(str(e)) from e

    await insert_product(db, product)
    logger.info(f"Created product {product.product_id} ({product.sku}, kind={product.kind}, stock={product.stock})")
    return product


async def get_product(db: AsyncSession, product_id: str) -> Product:
    product = await load_product(db, product_id)
    if product is None:
        raise NotFoundError(f"Product with ID {product_id} not found", {"product_id": product_id})
    return product


async def list_low_stock(db: AsyncSession, actor: Actor) -> List[Product]:
    require_admin(actor, "view low stock products")
    return await list_low_stock_products(db)


async def adjust_product_stock(
    db: AsyncSession,
    product_id: str,
    request: AdjustStockRequest,
    actor: Actor
) -> ProductStockReport:
    """Admin absolute stock set, returning the product's audit trail."""
    require_admin(actor, "adjust stock")
    await stock_ledger.adjust_stock(db, product_id, request.quantity, request.reason, actor)
    return await get_stock_report(db, product_id)


async def get_stock_report(db: AsyncSession, product_id: str) -> ProductStockReport:
    product = await get_product(db, product_id)
    return ProductStockReport(
        product_id=product_id,
        stock=product.stock,
        is_low_stock=product.is_low_stock,
        history=await stock_ledger.get_stock_history(db, product_id),
    )
