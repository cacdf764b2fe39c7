from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from .product import Product


class CartItemBase(BaseModel):
    product_id: str
    quantity: int


class CartItemCreate(CartItemBase):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0, description="Quantity must be positive")


class CartItemUpdate(BaseModel):
    # 0 означает удаление позиции
    quantity: int = Field(ge=0, description="Quantity cannot be negative")


class CartItem(CartItemBase):
    """Позиция корзины вместе с актуальными данными товара"""

    id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    product: Product

    class Config:
        from_attributes = True
