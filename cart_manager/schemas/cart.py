from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Optional
from .cart_item import CartItem


class CartSummary(BaseModel):
    """Корзина с итогами; пересчитывается при каждом чтении по текущим ценам"""

    items: List[CartItem] = []
    total_items: int = 0
    subtotal: float = 0.0
    total_amount: float = 0.0

    class Config:
        from_attributes = True


class CartResponse(BaseModel):
    cart: CartSummary
    is_guest: bool


class MessageResponse(BaseModel):
    message: str


class CartMergeRequest(BaseModel):
    guest_session_id: str = Field(min_length=1, description="Guest session ID is required")


class MergeStatus(str, Enum):
    MERGED = "merged"
    SKIPPED_INSUFFICIENT_STOCK = "skipped_insufficient_stock"
    SKIPPED_PRODUCT_NOT_FOUND = "skipped_product_not_found"
    SKIPPED_ERROR = "skipped_error"


class MergeLineOutcome(BaseModel):
    """Результат переноса одной гостевой позиции"""

    product_id: str
    status: MergeStatus
    requested_quantity: int
    merged_quantity: Optional[int] = None
    available_stock: Optional[int] = None
    detail: Optional[str] = None


class CartMergeResult(BaseModel):
    cart: CartSummary
    outcomes: List[MergeLineOutcome] = []

    @property
    def merged(self) -> List[MergeLineOutcome]:
        return [o for o in self.outcomes if o.status == MergeStatus.MERGED]

    @property
    def skipped(self) -> List[MergeLineOutcome]:
        return [o for o in self.outcomes if o.status != MergeStatus.MERGED]


class CartMergeResponse(CartResponse):
    is_guest: bool = False
    outcomes: List[MergeLineOutcome] = []


class StockIssue(BaseModel):
    product_id: str
    requested_quantity: int
    available_stock: int


class CartValidationResult(BaseModel):
    is_valid: bool = True
    errors: List[str] = []
    unavailable_items: List[str] = []
    stock_issues: List[StockIssue] = []
