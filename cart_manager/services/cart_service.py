import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..exceptions import (
    CartItemNotFoundException,
    InsufficientStockException,
    NoCartContextException,
    ProductNotFoundException,
)
from ..models.cart_item import CartItem
from ..owner import AccountOwner, CartOwner, GuestOwner
from ..schemas.cart import (
    CartMergeResult,
    CartSummary,
    CartValidationResult,
    MergeLineOutcome,
    MergeStatus,
    StockIssue,
)
from ..schemas.cart_item import CartItem as CartItemView
from ..schemas.product import Product
from . import kafka_client as topics
from .catalog_client import CatalogLookup
from .guest_store import GuestCart, GuestCartItem, GuestCartStore
from .kafka_client import KafkaClient
from .locks import KeyedLock

logger = logging.getLogger(__name__)

# Общие для всех запросов процесса
cart_locks = KeyedLock()


@dataclass
class StoredLine:
    """Позиция корзины в том виде, в каком она хранится"""

    id: str
    product_id: str
    quantity: int
    created_at: datetime
    updated_at: datetime
    user_id: Optional[str] = None
    session_id: Optional[str] = None


def calculate_cart_summary(items: List[CartItemView]) -> CartSummary:
    total_items = sum(item.quantity for item in items)
    subtotal = round(sum(item.product.price * item.quantity for item in items), 2)

    return CartSummary(
        items=items,
        total_items=total_items,
        subtotal=subtotal,
        # Налоги и доставка не считаются
        total_amount=subtotal
    )


def empty_cart_summary() -> CartSummary:
    return CartSummary(items=[], total_items=0, subtotal=0.0, total_amount=0.0)


class CartService:
    """
    Корзина для гостей и авторизованных пользователей.

    Корзина пользователя хранится в таблице cart_items, гостевая - в
    GuestCartStore. Итоги всегда пересчитываются по текущим данным каталога.
    """

    def __init__(
            self,
            db: Session,
            catalog: CatalogLookup,
            guest_store: GuestCartStore,
            events: Optional[KafkaClient] = None,
            locks: Optional[KeyedLock] = None
    ):
        self.db = db
        self.catalog = catalog
        self.guest_store = guest_store
        self.events = events
        self.locks = locks or cart_locks

    # Чтение

    async def get_cart(self, owner: CartOwner) -> CartSummary:
        """Получить корзину с подсчётом итогов"""
        lines = await self._load_lines(owner)
        if not lines:
            return empty_cart_summary()

        items = []
        for line in lines:
            product = await self.catalog.find_product(line.product_id)
            if product is None:
                # Товар пропал из каталога - просто не показываем позицию
                logger.warning(f"Dropping cart line {line.product_id} for {owner.key}: product not in catalog")
                continue
            items.append(self._to_view(line, product))

        return calculate_cart_summary(items)

    # Изменение

    async def add_item(self, owner: CartOwner, product_id: str, quantity: int) -> CartSummary:
        """Добавить товар; количество суммируется с уже лежащим в корзине"""
        if quantity <= 0:
            raise ValueError("Quantity must be positive")

        async with self.locks.acquire(self._lock_key(owner, product_id)):
            product = await self._require_product(product_id)

            if isinstance(owner, AccountOwner):
                old_quantity, new_quantity = self._write_account_line(
                    owner.account_id, product, quantity, accumulate=True
                )
            else:
                old_quantity, new_quantity = await self._write_guest_line(
                    owner.session_id, product, quantity, accumulate=True
                )

        logger.info(f"Added {quantity} x {product_id} to cart {owner.key} ({old_quantity} -> {new_quantity})")
        await self._publish(owner, topics.CART_ITEM_ADDED, "item_added_to_cart", {
            "product_id": product_id,
            "quantity": new_quantity,
            "added": quantity,
            "product": {"name": product.name, "price": product.price},
            "action": "added" if old_quantity == 0 else "updated",
        })
        return await self.get_cart(owner)

    async def update_item(self, owner: CartOwner, product_id: str, quantity: int) -> CartSummary:
        """Установить количество; 0 удаляет позицию"""
        if quantity == 0:
            return await self.remove_item(owner, product_id)
        if quantity < 0:
            raise ValueError("Quantity cannot be negative")

        async with self.locks.acquire(self._lock_key(owner, product_id)):
            product = await self._require_product(product_id)

            if isinstance(owner, AccountOwner):
                old_quantity, _ = self._write_account_line(
                    owner.account_id, product, quantity, accumulate=False, must_exist=True
                )
            else:
                old_quantity, _ = await self._write_guest_line(
                    owner.session_id, product, quantity, accumulate=False, must_exist=True
                )

        logger.info(f"Updated {product_id} in cart {owner.key}: {old_quantity} -> {quantity}")
        await self._publish(owner, topics.CART_ITEM_UPDATED, "item_updated_in_cart", {
            "product_id": product_id,
            "quantity": quantity,
            "old_quantity": old_quantity,
            "product": {"name": product.name, "price": product.price},
            "action": "updated",
            "change": {
                "from": old_quantity,
                "to": quantity,
                "difference": quantity - old_quantity
            }
        })
        return await self.get_cart(owner)

    async def remove_item(self, owner: CartOwner, product_id: str) -> CartSummary:
        """Удалить товар; отсутствие позиции ошибкой не считается"""
        async with self.locks.acquire(self._lock_key(owner, product_id)):
            if isinstance(owner, AccountOwner):
                deleted = self.db.query(CartItem).filter(
                    CartItem.user_id == owner.account_id,
                    CartItem.product_id == product_id
                ).delete(synchronize_session=False)
                self.db.commit()
                removed = deleted > 0
            else:
                removed = await self.guest_store.update(
                    owner.session_id, lambda cart: cart.remove(product_id)
                )

        if removed:
            logger.info(f"Removed {product_id} from cart {owner.key}")
            await self._publish(owner, topics.CART_ITEM_REMOVED, "item_removed_from_cart", {
                "product_id": product_id,
                "action": "removed"
            })
        return await self.get_cart(owner)

    async def clear_cart(self, owner: CartOwner):
        """Очистить корзину"""
        if isinstance(owner, AccountOwner):
            try:
                items_count = self.db.query(CartItem).filter(
                    CartItem.user_id == owner.account_id
                ).delete(synchronize_session=False)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"❌ Error clearing cart {owner.key}: {e}")
                raise
        else:
            async with self.locks.acquire(self._lock_key(owner)):
                cart = await self.guest_store.get(owner.session_id)
                items_count = len(cart.items) if cart else 0
                await self.guest_store.delete(owner.session_id)

        logger.info(f"🧹 Cart {owner.key} cleared: {items_count} items removed")
        await self._publish(owner, topics.CART_CLEARED, "cart_cleared", {
            "items_removed": items_count,
            "action": "cleared"
        })

    # Слияние гостевой корзины

    async def merge_guest_cart(self, account: AccountOwner, guest_session_id: str) -> CartMergeResult:
        """
        Перенести гостевую корзину в корзину пользователя при входе.

        Каждая позиция обрабатывается отдельно: если товара не хватает на
        складе, его нет в каталоге или при обработке случилась ошибка,
        позиция пропускается, а остальные переносятся. Гостевая корзина
        удаляется в любом случае. Что именно произошло с каждой позицией,
        видно в CartMergeResult.outcomes.
        """
        # Гостевая сессия блокируется целиком до удаления корзины
        async with self.locks.acquire(self._lock_key(GuestOwner(session_id=guest_session_id))):
            guest_cart = await self.guest_store.get(guest_session_id)
            if guest_cart is None:
                return CartMergeResult(cart=await self.get_cart(account), outcomes=[])

            outcomes = []
            for guest_item in guest_cart.items:
                outcomes.append(await self._merge_line(account, guest_item))

            await self.guest_store.delete(guest_session_id)

        merged = [o for o in outcomes if o.status == MergeStatus.MERGED]
        logger.info(
            f"Merged guest cart {guest_session_id} into {account.key}: "
            f"{len(merged)} merged, {len(outcomes) - len(merged)} skipped"
        )
        await self._publish(account, topics.CART_MERGED, "guest_cart_merged", {
            "guest_session_id": guest_session_id,
            "outcomes": [o.model_dump(mode="json") for o in outcomes],
            "action": "merged"
        })

        return CartMergeResult(cart=await self.get_cart(account), outcomes=outcomes)

    async def _merge_line(self, account: AccountOwner, guest_item: GuestCartItem) -> MergeLineOutcome:
        product_id = guest_item.product_id
        try:
            async with self.locks.acquire(self._lock_key(account, product_id)):
                product = await self.catalog.find_product(product_id)
                if product is None:
                    logger.warning(f"Skipping merge of {product_id}: product not found")
                    return MergeLineOutcome(
                        product_id=product_id,
                        status=MergeStatus.SKIPPED_PRODUCT_NOT_FOUND,
                        requested_quantity=guest_item.quantity
                    )

                try:
                    _, new_quantity = self._write_account_line(
                        account.account_id, product, guest_item.quantity, accumulate=True
                    )
                except InsufficientStockException as e:
                    logger.warning(f"Skipping merge of {product_id}: {e}")
                    return MergeLineOutcome(
                        product_id=product_id,
                        status=MergeStatus.SKIPPED_INSUFFICIENT_STOCK,
                        requested_quantity=e.requested,
                        available_stock=e.available,
                        detail=str(e)
                    )

            return MergeLineOutcome(
                product_id=product_id,
                status=MergeStatus.MERGED,
                requested_quantity=guest_item.quantity,
                merged_quantity=new_quantity,
                available_stock=product.stock
            )

        except Exception as e:
            self.db.rollback()
            logger.warning(f"Failed to merge item {product_id}: {e}", exc_info=True)
            return MergeLineOutcome(
                product_id=product_id,
                status=MergeStatus.SKIPPED_ERROR,
                requested_quantity=guest_item.quantity,
                detail=str(e)
            )

    # Проверка перед оформлением

    async def validate_cart(self, owner: Optional[CartOwner]) -> CartValidationResult:
        """
        Проверить наличие товаров и остатки.

        Бизнес-нарушения попадают в результат, исключение только при
        отсутствии владельца корзины.
        """
        if owner is None:
            raise NoCartContextException()

        result = CartValidationResult()

        for line in await self._load_lines(owner):
            product = await self.catalog.find_product(line.product_id)

            if product is None:
                result.unavailable_items.append(line.product_id)
                result.errors.append(f"Product {line.product_id} no longer available")
                result.is_valid = False
                continue

            if product.stock < line.quantity:
                result.stock_issues.append(StockIssue(
                    product_id=line.product_id,
                    requested_quantity=line.quantity,
                    available_stock=product.stock
                ))
                result.errors.append(
                    f"Insufficient stock for {product.name}. "
                    f"Available: {product.stock}, Requested: {line.quantity}"
                )
                result.is_valid = False

        return result

    # Вспомогательные методы

    @staticmethod
    def _lock_key(owner: CartOwner, product_id: Optional[str] = None) -> tuple:
        """
        Ключ блокировки для чтения-изменения-записи.

        Строки корзины пользователя независимы, поэтому блокируется пара
        (владелец, товар). Гостевая корзина хранится одним документом, и
        запись любой позиции перезаписывает его целиком: блокируется вся сессия.
        """
        if isinstance(owner, GuestOwner) or product_id is None:
            return (owner.key,)
        return (owner.key, product_id)

    async def _require_product(self, product_id: str) -> Product:
        product = await self.catalog.find_product(product_id)
        if product is None:
            raise ProductNotFoundException(product_id)
        return product

    async def _load_lines(self, owner: CartOwner) -> List[StoredLine]:
        if isinstance(owner, AccountOwner):
            rows = self.db.query(CartItem).filter(
                CartItem.user_id == owner.account_id
            ).order_by(CartItem.created_at.desc()).all()
            return [
                StoredLine(
                    id=row.id,
                    product_id=row.product_id,
                    quantity=row.quantity,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                    user_id=row.user_id
                )
                for row in rows
            ]

        cart = await self.guest_store.get(owner.session_id)
        if cart is None:
            return []
        return [
            StoredLine(
                id=f"guest-{cart.session_id}-{item.product_id}",
                product_id=item.product_id,
                quantity=item.quantity,
                created_at=cart.updated_at or cart.created_at,
                updated_at=cart.updated_at or cart.created_at,
                session_id=cart.session_id
            )
            for item in cart.items
        ]

    def _write_account_line(
            self,
            account_id: str,
            product: Product,
            quantity: int,
            accumulate: bool,
            must_exist: bool = False
    ) -> Tuple[int, int]:
        """
        Чтение и запись позиции в одной транзакции с блокировкой строки.

        Возвращает (старое, новое) количество. Количество записывается
        абсолютным значением, а не приращением.
        """
        for attempt in range(2):
            try:
                item = self.db.query(CartItem).filter(
                    CartItem.user_id == account_id,
                    CartItem.product_id == product.id
                ).with_for_update().first()

                if item is None and must_exist:
                    raise CartItemNotFoundException(product.id)

                old_quantity = item.quantity if item else 0
                new_quantity = old_quantity + quantity if accumulate else quantity

                if product.stock < new_quantity:
                    raise InsufficientStockException(product.id, new_quantity, product.stock)

                if item:
                    item.quantity = new_quantity
                else:
                    self.db.add(CartItem(user_id=account_id, product_id=product.id, quantity=new_quantity))

                self.db.commit()
                return old_quantity, new_quantity

            except IntegrityError:
                # Строку вставил параллельный запрос - повторяем уже с блокировкой
                self.db.rollback()
                if attempt:
                    raise
                logger.warning(f"Concurrent insert of {product.id} for user {account_id}, retrying")
            except Exception:
                self.db.rollback()
                raise

    async def _write_guest_line(
            self,
            session_id: str,
            product: Product,
            quantity: int,
            accumulate: bool,
            must_exist: bool = False
    ) -> Tuple[int, int]:
        def write(cart: GuestCart) -> Tuple[int, int]:
            existing = cart.find(product.id)

            if existing is None and must_exist:
                raise CartItemNotFoundException(product.id)

            old_quantity = existing.quantity if existing else 0
            new_quantity = old_quantity + quantity if accumulate else quantity

            if product.stock < new_quantity:
                raise InsufficientStockException(product.id, new_quantity, product.stock)

            cart.set_quantity(product.id, new_quantity)
            return old_quantity, new_quantity

        # Сравнение с остатком и запись идут в одном update хранилища
        return await self.guest_store.update(session_id, write)

    def _to_view(self, line: StoredLine, product: Product) -> CartItemView:
        return CartItemView(
            id=line.id,
            product_id=line.product_id,
            quantity=line.quantity,
            user_id=line.user_id,
            session_id=line.session_id,
            created_at=line.created_at,
            updated_at=line.updated_at,
            product=product
        )

    async def _publish(self, owner: CartOwner, topic: str, event_type: str, payload: dict):
        if self.events is None:
            return

        payload = {
            "cart_id": owner.account_id if isinstance(owner, AccountOwner) else owner.session_id,
            "is_guest": isinstance(owner, GuestOwner),
            **payload
        }
        await self.events.publish_event(topic=topic, event_type=event_type, payload=payload, key=owner.key)
