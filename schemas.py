"""
Database Schemas for E-Commerce Express

Each Pydantic model represents a MongoDB document. The collection name is the lowercase of the class name.

- User -> "user"
- Product -> "product"
- Cart -> "cart" (CartItem is embedded in Cart.items)

Fields are stored snake_case and rendered camelCase in API responses
(model_dump(by_alias=True)).
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

ROLE_CUSTOMER = "customer"
ROLE_MODERATOR = "moderator"
ROLE_ADMIN = "admin"


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(ApiModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=2, max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercase")
    password_hash: str = Field(..., description="Hashed password")
    role: str = Field(ROLE_CUSTOMER, description="customer | moderator | admin")
    otp_code: Optional[str] = Field(None, description="Pending one-time password")
    otp_expires_at: Optional[datetime] = Field(None, description="OTP is valid while now < otp_expires_at")
    token_version: int = Field(0, ge=0, description="Bumped on password change to revoke tokens")
    deleted: bool = Field(False, description="Soft-deleted users cannot sign in")
    created_by: Optional[str] = Field(None, description="Admin who created a moderator account")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def public(self) -> dict:
        return self.model_dump(
            by_alias=True,
            exclude={"password_hash", "otp_code", "otp_expires_at", "token_version"},
        )


class Variant(ApiModel):
    variant_id: str
    sku: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, description="Overrides the product price")
    discount_price: Optional[float] = Field(None, ge=0, description="Overrides the product discount price")
    stock: int = Field(0, ge=0)
    is_active: bool = True


class Product(ApiModel):
    id: Optional[str] = None
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Base price")
    discount_price: Optional[float] = Field(None, ge=0, description="Base discount price")
    category: Optional[str] = Field(None, description="Category name")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    stock: int = Field(0, ge=0)
    track_inventory: bool = Field(True, description="Whether stock limits apply")
    is_active: bool = Field(True, description="Whether product can be bought")
    variants: List[Variant] = Field(default_factory=list)

    @property
    def has_variants(self) -> bool:
        return len(self.variants) > 0

    def variant_by_id(self, variant_id: str) -> Optional[Variant]:
        for v in self.variants:
            if v.variant_id == variant_id:
                return v
        return None


class VariantSelection(ApiModel):
    variant_id: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None
    sku: Optional[str] = None


class ProductSnapshot(ApiModel):
    name: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None


def effective_price(price: float, discount_price: Optional[float]) -> float:
    if discount_price is not None and discount_price < price:
        return discount_price
    return price


class CartItem(ApiModel):
    item_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price captured when added")
    discount_price: Optional[float] = Field(None, ge=0, description="Unit discount price captured when added")
    variant: Optional[VariantSelection] = None
    line_key: str
    product_snapshot: ProductSnapshot = Field(default_factory=ProductSnapshot)
    added_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def effective_price(self) -> float:
        return effective_price(self.price, self.discount_price)

    @property
    def line_total(self) -> float:
        return round(self.effective_price * self.quantity, 2)


class CartTotals(ApiModel):
    item_count: int = 0
    total_quantity: int = 0
    subtotal: float = 0
    total_discount: float = 0
    final_total: float = 0


class Cart(ApiModel):
    id: Optional[str] = None
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return len(self.items) == 0

    def find_item(self, item_id: str) -> Optional[CartItem]:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None
