"""
Хранилища гостевых корзин.

InMemoryGuestCartStore держит корзины в памяти процесса: они теряются при
перезапуске и не видны другим воркерам, поэтому годится только для
развёртывания в один процесс. Для нескольких воркеров используйте
RedisGuestCartStore (guest_cart_backend=redis).
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, TypeVar
from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import WatchError

from ..config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Изменение корзины: правит переданный GuestCart на месте и возвращает результат
CartMutation = Callable[["GuestCart"], T]


class GuestCartItem(BaseModel):
    product_id: str
    quantity: int


class GuestCart(BaseModel):
    session_id: str
    items: List[GuestCartItem] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def new(cls, session_id: str) -> "GuestCart":
        now = datetime.utcnow()
        return cls(session_id=session_id, items=[], created_at=now, updated_at=now)

    def find(self, product_id: str) -> Optional[GuestCartItem]:
        return next((item for item in self.items if item.product_id == product_id), None)

    def set_quantity(self, product_id: str, quantity: int):
        """Записать абсолютное количество (создаёт позицию, если её нет)"""
        item = self.find(product_id)
        if item:
            item.quantity = quantity
        else:
            self.items.append(GuestCartItem(product_id=product_id, quantity=quantity))
        self.updated_at = datetime.utcnow()

    def remove(self, product_id: str) -> bool:
        before = len(self.items)
        self.items = [item for item in self.items if item.product_id != product_id]
        self.updated_at = datetime.utcnow()
        return len(self.items) != before


class GuestCartStore(ABC):
    """Хранилище гостевых корзин по идентификатору сессии"""

    backend = "unknown"

    @abstractmethod
    async def get(self, session_id: str) -> Optional[GuestCart]:
        ...

    @abstractmethod
    async def save(self, cart: GuestCart):
        ...

    @abstractmethod
    async def delete(self, session_id: str):
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    async def update(self, session_id: str, mutate: CartMutation) -> T:
        """
        Прочитать корзину, изменить её через mutate и сохранить.

        Если корзины нет, mutate получает новую пустую; она сохраняется,
        только если в ней появились позиции. Исключение из mutate
        отменяет запись.
        """
        cart = await self.get(session_id)
        existed = cart is not None
        if cart is None:
            cart = GuestCart.new(session_id)

        result = mutate(cart)
        if existed or cart.items:
            await self.save(cart)
        return result

    async def close(self):
        pass


class InMemoryGuestCartStore(GuestCartStore):
    """Корзины в словаре процесса; без вытеснения по времени"""

    backend = "memory"

    def __init__(self):
        self._carts: Dict[str, GuestCart] = {}

    async def get(self, session_id: str) -> Optional[GuestCart]:
        cart = self._carts.get(session_id)
        # Отдаём копию: изменения видны только после save()
        return cart.model_copy(deep=True) if cart else None

    async def save(self, cart: GuestCart):
        self._carts[cart.session_id] = cart.model_copy(deep=True)

    async def delete(self, session_id: str):
        self._carts.pop(session_id, None)

    async def count(self) -> int:
        return len(self._carts)


class RedisGuestCartStore(GuestCartStore):
    """Корзины в Redis: общие для всех воркеров, с необязательным TTL"""

    backend = "redis"
    prefix = "cart:guest:"
    max_update_attempts = 10

    def __init__(self, redis: Redis, ttl_seconds: Optional[int] = None):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{self.prefix}{session_id}"

    async def get(self, session_id: str) -> Optional[GuestCart]:
        raw = await self.redis.get(self._key(session_id))
        if raw is None:
            return None
        return GuestCart.model_validate_json(raw)

    async def save(self, cart: GuestCart):
        await self.redis.set(self._key(cart.session_id), cart.model_dump_json(), ex=self.ttl_seconds)

    async def delete(self, session_id: str):
        await self.redis.delete(self._key(session_id))

    async def update(self, session_id: str, mutate: CartMutation) -> T:
        """
        Оптимистичное обновление через WATCH/MULTI.

        Если ключ изменил другой воркер между чтением и записью, EXEC
        отклоняется и mutate применяется заново к свежей версии корзины.
        """
        key = self._key(session_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            for attempt in range(1, self.max_update_attempts + 1):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    existed = raw is not None
                    cart = GuestCart.model_validate_json(raw) if existed else GuestCart.new(session_id)

                    result = mutate(cart)
                    if not (existed or cart.items):
                        return result

                    pipe.multi()
                    pipe.set(key, cart.model_dump_json(), ex=self.ttl_seconds)
                    await pipe.execute()
                    return result

                except WatchError:
                    logger.debug(f"Guest cart {session_id} changed concurrently, retry {attempt}")
                    await pipe.reset()

        raise RuntimeError(f"Guest cart {session_id} kept changing, gave up after {self.max_update_attempts} attempts")

    async def count(self) -> int:
        total = 0
        async for _ in self.redis.scan_iter(match=f"{self.prefix}*"):
            total += 1
        return total

    async def close(self):
        await self.redis.aclose()


def build_guest_cart_store(settings: Settings) -> GuestCartStore:
    """Создать хранилище согласно настройкам"""
    backend = settings.guest_cart_backend.lower()
    if backend == "redis":
        logger.info("Using Redis guest cart store")
        return RedisGuestCartStore(
            Redis.from_url(settings.redis_url),
            ttl_seconds=settings.guest_cart_ttl_seconds
        )
    if backend != "memory":
        raise ValueError(f"Unknown guest cart backend: {settings.guest_cart_backend}")

    logger.warning("Using in-memory guest cart store: carts are lost on restart and not shared between workers")
    return InMemoryGuestCartStore()
