"""
Pytest configuration and fixtures.

Настройки подставляются через переменные окружения до импорта пакета:
SQLite в памяти вместо PostgreSQL, гостевые корзины в памяти, Kafka выключена.
"""
import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("GUEST_CART_BACKEND", "memory")
os.environ.setdefault("KAFKA_ENABLED", "false")
os.environ.setdefault("KAFKA_CONSUMER_ENABLED", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-cart-manager-0123456789")

from typing import Dict, List, Optional, Set  # noqa: E402

import pytest  # noqa: E402

from cart_manager.database import Base, SessionLocal, engine  # noqa: E402
from cart_manager.exceptions import CatalogUnavailableException  # noqa: E402
from cart_manager.models import CartItem  # noqa: E402,F401
from cart_manager.schemas.product import Product  # noqa: E402
from cart_manager.services.cart_service import CartService  # noqa: E402
from cart_manager.services.guest_store import InMemoryGuestCartStore  # noqa: E402
from cart_manager.services.locks import KeyedLock  # noqa: E402


class FakeCatalog:
    """Каталог в памяти с возможностью менять остатки и удалять товары"""

    def __init__(self):
        self.products: Dict[str, Product] = {}
        self.failing: Set[str] = set()
        self.lookups: List[str] = []

    def add(self, product_id: str, stock: int, price: float = 10.0, name: Optional[str] = None) -> Product:
        product = Product(id=product_id, name=name or f"Product {product_id}", price=price, stock=stock)
        self.products[product_id] = product
        return product

    def set_stock(self, product_id: str, stock: int):
        self.products[product_id] = self.products[product_id].model_copy(update={"stock": stock})

    def set_price(self, product_id: str, price: float):
        self.products[product_id] = self.products[product_id].model_copy(update={"price": price})

    def remove(self, product_id: str):
        self.products.pop(product_id, None)

    async def find_product(self, product_id: str) -> Optional[Product]:
        self.lookups.append(product_id)
        # Переключение задач, как при настоящем HTTP-запросе
        await asyncio.sleep(0)
        if product_id in self.failing:
            raise CatalogUnavailableException(product_id, "catalog down")
        return self.products.get(product_id)


class RecordingEvents:
    """Подменяет KafkaClient и запоминает опубликованные события"""

    def __init__(self):
        self.published = []

    async def publish_event(self, topic, event_type, payload, key=None):
        self.published.append({"topic": topic, "event_type": event_type, "payload": payload, "key": key})
        return True

    def topics(self) -> List[str]:
        return [event["topic"] for event in self.published]


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def guest_store():
    return InMemoryGuestCartStore()


@pytest.fixture
def events():
    return RecordingEvents()


@pytest.fixture
def cart_service(db_session, catalog, guest_store, events):
    return CartService(db_session, catalog, guest_store, events=events, locks=KeyedLock())
