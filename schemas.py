"""
API Schemas for the Storefront

Each output model mirrors a table in models.py and is built straight from the ORM
object (from_attributes). Request bodies live next to their routes in main.py.

Money is stored as NUMERIC and returned as a JSON number.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import CENTS, CartEntry

# Shared

class Address(BaseModel):
    full_name: str
    line1: str
    line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str
    phone: Optional[str] = None

class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

# Users

class UserOut(ORMModel):
    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    is_active: bool = True
    created_at: Optional[datetime] = None

class AuthResponse(BaseModel):
    token: str
    user: UserOut

# Catalog

class CategoryOut(ORMModel):
    id: int
    name: str
    slug: str
    description: Optional[str] = None

class VariantOut(ORMModel):
    id: int
    product_id: int
    size: str
    stock_quantity: int = Field(..., ge=0)
    price: float = Field(..., ge=0)

class ProductImageOut(ORMModel):
    id: int
    url: str
    position: int = 0

class ProductOut(ORMModel):
    id: int
    name: str
    description: Optional[str] = None
    base_price: float = Field(..., ge=0)
    sku: Optional[str] = None
    brand: Optional[str] = None
    category_id: Optional[int] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    images: List[ProductImageOut] = Field(default_factory=list)
    variants: List[VariantOut] = Field(default_factory=list)

class ProductPage(BaseModel):
    items: List[ProductOut]
    page: int
    page_size: int
    total: int

# Orders

class OrderItemOut(ORMModel):
    id: int
    variant_id: int
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)
    subtotal: float

class OrderOut(ORMModel):
    id: int
    user_id: int
    status: str = Field("pending", description="pending|paid|shipped|delivered|cancelled")
    payment_status: str = Field("pending", description="pending|paid|refunded|failed")
    total_amount: float
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    payment_method: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemOut]

# Cart

class CartItemOut(BaseModel):
    variant_id: int
    product_id: int
    product_name: str
    size: str
    image: Optional[str] = None
    quantity: int
    unit_price: float
    subtotal: float

    @classmethod
    def from_entry(cls, entry: CartEntry) -> "CartItemOut":
        variant = entry.variant
        price = Decimal(variant.price)
        images = variant.product.images
        return cls(
            variant_id=entry.variant_id,
            product_id=variant.product_id,
            product_name=variant.product.name,
            size=variant.size,
            image=images[0].url if images else None,
            quantity=entry.quantity,
            unit_price=price,
            subtotal=(price * entry.quantity).quantize(CENTS),
        )

class CartOut(BaseModel):
    items: List[CartItemOut]
    total: float

    @classmethod
    def from_entries(cls, entries: List[CartEntry]) -> "CartOut":
        items = [CartItemOut.from_entry(e) for e in entries]
        total = sum((Decimal(e.variant.price) * e.quantity for e in entries), Decimal("0.00"))
        return cls(items=items, total=total.quantize(CENTS))
