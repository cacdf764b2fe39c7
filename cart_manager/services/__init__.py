from .cart_service import CartService
from .catalog_client import CatalogClient, CatalogLookup
from .guest_store import GuestCartStore, InMemoryGuestCartStore, RedisGuestCartStore, build_guest_cart_store

__all__ = [
    "CartService",
    "CatalogClient",
    "CatalogLookup",
    "GuestCartStore",
    "InMemoryGuestCartStore",
    "RedisGuestCartStore",
    "build_guest_cart_store",
]
