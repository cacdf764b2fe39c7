from .cart import (
    CartSummary,
    CartResponse,
    MessageResponse,
    CartMergeRequest,
    CartMergeResult,
    CartMergeResponse,
    MergeStatus,
    MergeLineOutcome,
    StockIssue,
    CartValidationResult,
)
from .cart_item import CartItem, CartItemCreate, CartItemUpdate
from .product import Product

__all__ = [
    "CartSummary", "CartResponse", "MessageResponse",
    "CartMergeRequest", "CartMergeResult", "CartMergeResponse",
    "MergeStatus", "MergeLineOutcome", "StockIssue", "CartValidationResult",
    "CartItem", "CartItemCreate", "CartItemUpdate", "Product",
]
