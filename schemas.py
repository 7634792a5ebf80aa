"""
Database Schemas for the POS App

Each Pydantic model represents one persisted table (products, orders,
categories, card_types) or, for CartItem, an in-memory cart line. Rows are
stored exactly as ``model.model_dump(mode="json")`` produces them.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Sequence

from bson import ObjectId
from pydantic import BaseModel, Field, model_validator


def new_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    completed = "completed"
    pending = "pending"
    cancelled = "cancelled"


class Role(str, Enum):
    admin = "admin"
    cashier = "cashier"
    viewer = "viewer"


# Catalog
class ProductVariant(BaseModel):
    id: str = Field(default_factory=new_id)
    card_type: str
    quantity: int = Field(..., gt=0, description="Bottles per card")
    total_price: float = Field(..., ge=0, description="Price of one card")


class Product(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    bottle_size: str = ""
    bottle_price: float = Field(..., ge=0)
    category: str
    stock: int = Field(0, ge=0, description="Bottles on hand")
    variants: List[ProductVariant] = Field(default_factory=list)
    image: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def get_variant(self, variant_id: str) -> Optional[ProductVariant]:
        return next((v for v in self.variants if v.id == variant_id), None)


class CardType(BaseModel):
    id: Optional[str] = None
    label: str = ""
    quantity: int = Field(..., gt=0)
    is_default: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @model_validator(mode="after")
    def default_label(self) -> "CardType":
        if not self.label:
            self.label = f"{self.quantity}-pack"
        return self


class Category(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    is_default: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


# POS / Orders
class CartItem(BaseModel):
    id: str
    product_id: str
    variant_id: str
    name: str
    bottle_size: str = ""
    card_type: str
    quantity: int = Field(..., ge=1, description="Number of cards")
    bottles_per_card: int
    price_per_card: float
    total_price: float


class Order(BaseModel):
    id: Optional[str] = None
    items: List[CartItem]
    total: float
    customer_name: str = Field(..., min_length=1)
    date: datetime = Field(default_factory=utcnow)
    status: OrderStatus = OrderStatus.completed
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def build_variants(
    bottle_price: float,
    card_types: Sequence[CardType],
    existing: Sequence[ProductVariant] = (),
) -> List[ProductVariant]:
    """Price one variant per selected card type at the current bottle price.

    The price is fixed here; later changes to ``bottle_price`` do not touch
    existing variants until the product is edited again. Variants already on
    the product keep their id when their card type is still selected, so cart
    lines pointing at them stay valid.
    """
    ids = {v.card_type: v.id for v in existing}
    return [
        ProductVariant(
            id=ids.get(ct.label) or new_id(),
            card_type=ct.label,
            quantity=ct.quantity,
            total_price=bottle_price * ct.quantity,
        )
        for ct in card_types
    ]
