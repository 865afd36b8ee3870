"""
Pydantic Product Models

Catalog collaborator types referenced by the order/payment core.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Literal, List
from pydantic import BaseModel, Field, model_validator

from .common import Currency, utcnow

ProductKind = Literal["physical", "digital", "both"]


class DigitalDetails(BaseModel):
    """Access rules for digital products (0 = unlimited)."""
    file_url: str
    file_type: Literal["pdf", "doc", "image", "audio", "video", "software", "other"] = "pdf"
    access_duration_days: int = Field(default=0, ge=0)
    download_limit: int = Field(default=0, ge=0)


class Product(BaseModel):
    """
    Product as seen by the order/payment core.

    Invariants:
    - stock >= 0
    - digital products never carry stock movements
    """
    product_id: str
    name: str
    sku: str
    description: str = ""
    price: Decimal = Field(ge=0)
    sale_price: Optional[Decimal] = Field(default=None, ge=0)
    sale_active: bool = False
    sale_start: Optional[datetime] = None
    sale_end: Optional[datetime] = None
    currency: Currency = "GHS"
    kind: ProductKind
    category_id: Optional[str] = None
    stock: int = Field(default=0, ge=0)
    low_stock_threshold: int = Field(default=10, ge=1)
    is_low_stock: bool = False
    stock_management: bool = True
    digital_details: Optional[DigitalDetails] = None
    is_published: bool = True
    status: Literal["active", "draft", "archived", "out_of_stock"] = "active"

    @model_validator(mode="after")
    def validate_kind_details(self):
        """Digital kinds need a file to deliver; sale price never exceeds price."""
        if self.kind in ("digital", "both") and self.digital_details is None:
            raise ValueError(f"Product kind '{self.kind}' requires digital_details")
        if self.sale_price is not None and self.sale_price > self.price:
            raise ValueError("Sale price must be less than or equal to regular price")
        return self

    @property
    def tracks_stock(self) -> bool:
        return self.kind != "digital" and self.stock_management

    @property
    def is_available(self) -> bool:
        return self.is_published and self.status == "active"

    def current_price(self, now: Optional[datetime] = None) -> Decimal:
        """Sale price while the sale is active and inside its window."""
        if self.sale_active and self.sale_price:
            now = now or utcnow()
            if (self.sale_start is None or now >= self.sale_start) and \
                    (self.sale_end is None or now <= self.sale_end):
                return self.sale_price
        return self.price


class StockMovement(BaseModel):
    """Append-only audit entry for a stock change."""
    product_id: str
    action: Literal["add", "remove", "adjust"]
    quantity: int
    previous_stock: int
    new_stock: int
    reason: Optional[str] = None
    actor: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class CreateProductRequest(BaseModel):
    """Admin payload for adding a product to the catalog."""
    name: str = Field(min_length=1, max_length=100)
    sku: str = Field(min_length=1)
    description: str = ""
    price: Decimal = Field(ge=0)
    sale_price: Optional[Decimal] = Field(default=None, ge=0)
    sale_active: bool = False
    sale_start: Optional[datetime] = None
    sale_end: Optional[datetime] = None
    currency: Currency = "GHS"
    kind: ProductKind
    category_id: Optional[str] = None
    stock: int = Field(default=0, ge=0)
    low_stock_threshold: int = Field(default=10, ge=1)
    stock_management: bool = True
    digital_details: Optional[DigitalDetails] = None
    is_published: bool = True


class AdjustStockRequest(BaseModel):
    quantity: int = Field(ge=0)
    reason: str = Field(min_length=1)


class ProductStockReport(BaseModel):
    product_id: str
    stock: int
    is_low_stock: bool
    history: List[StockMovement] = []
