"""
Products API Endpoints

Catalog creation and lookup plus admin stock management.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any
import logging

from ..db.init_db import get_db
from ..models.common import Actor
from ..models.products import AdjustStockRequest, CreateProductRequest, Product, ProductStockReport
from ..services import catalog_service
from .deps import get_actor

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=201)
async def create_product_endpoint(
    request: CreateProductRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Product:
    return await catalog_service.create_product(db, request, actor)


@router.get("/low-stock")
async def low_stock_endpoint(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """Products at or below their low-stock threshold (admin)."""
    products = await catalog_service.list_low_stock(db, actor)
    return {"products": [p.model_dump(mode="json") for p in products], "count": len(products)}


@router.get("/{product_id}")
async def get_product_endpoint(
    product_id: str,
    db: AsyncSession = Depends(get_db)
) -> Product:
    return await catalog_service.get_product(db, product_id)


@router.put("/{product_id}/stock")
async def adjust_stock_endpoint(
    product_id: str,
    request: AdjustStockRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db)
) -> ProductStockReport:
    """
    Set stock to an absolute quantity (admin); returns the audit trail.

    Example:
        PUT /api/products/prod_abc/stock
        {"quantity": 40, "reason": "Term restock"}
    """
    return await catalog_service.adjust_product_stock(db, product_id, request, actor)
