from sqlalchemy.orm import Session
from typing import Callable, Dict, Any, Optional
import logging

from ..database import SessionLocal
from ..owner import AccountOwner
from ..services.cart_service import CartService
from ..services.catalog_client import CatalogClient, CatalogLookup
from ..services.guest_store import GuestCartStore
from ..services.kafka_client import KafkaClient

logger = logging.getLogger(__name__)


class CartEventHandlers:
    """Обработчики событий других сервисов"""

    def __init__(
            self,
            guest_store: GuestCartStore,
            events: Optional[KafkaClient] = None,
            catalog: Optional[CatalogLookup] = None,
            session_factory: Callable[[], Session] = SessionLocal
    ):
        self.guest_store = guest_store
        self.events = events
        self.catalog = catalog or CatalogClient()
        self.session_factory = session_factory

    async def handle_order_created(self, payload: Dict[Any, Any], event: Dict[Any, Any]):
        """
        Обрабатывает событие создания заказа.
        Очищает корзину пользователя, оформившего заказ.
        """
        try:
            user_id = payload.get("user_id")
            order_id = payload.get("order_id")

            if not user_id:
                logger.warning(f"Received order_created event {order_id} without user_id")
                return

            owner = AccountOwner(account_id=str(user_id))
            db = self.session_factory()
            try:
                cart_service = CartService(db, self.catalog, self.guest_store, events=self.events)
                await cart_service.clear_cart(owner)
                logger.info(f"Cart {owner.key} cleared after order {order_id} creation")
            finally:
                db.close()

        except Exception as e:
            logger.error(f"Error handling order_created event: {e}")
