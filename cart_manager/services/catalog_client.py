import httpx
import logging
from typing import Optional, Protocol
from pydantic import ValidationError

from ..config import settings
from ..exceptions import CatalogUnavailableException
from ..schemas.product import Product

logger = logging.getLogger(__name__)


class CatalogLookup(Protocol):
    """Поиск товара в каталоге (корзина каталог не изменяет)"""

    async def find_product(self, product_id: str) -> Optional[Product]:
        ...


class CatalogClient:
    """Клиент для взаимодействия с Catalog Service"""

    def __init__(
            self,
            base_url: Optional[str] = None,
            timeout: Optional[float] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.catalog_service_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.catalog_timeout
        self.transport = transport

    async def find_product(self, product_id: str) -> Optional[Product]:
        """
        Получить информацию о товаре.

        None означает, что товара нет (404). Любая другая ошибка каталога
        поднимается как CatalogUnavailableException, чтобы не выдавать
        сбой каталога за отсутствие товара.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(f"{self.base_url}/products/{product_id}")
        except httpx.TimeoutException:
            logger.error(f"Timeout when fetching product {product_id}")
            raise CatalogUnavailableException(product_id, "timeout")
        except httpx.HTTPError as e:
            logger.error(f"Error fetching product {product_id}: {e}")
            raise CatalogUnavailableException(product_id, str(e))

        if response.status_code == 404:
            logger.warning(f"Product {product_id} not found")
            return None

        if response.status_code != 200:
            logger.error(f"Error fetching product {product_id}: {response.status_code}")
            raise CatalogUnavailableException(product_id, f"status {response.status_code}")

        body = response.json()
        # Каталог может отдавать товар в обёртке {"data": {...}}
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]

        try:
            return Product.model_validate(body)
        except ValidationError as e:
            logger.error(f"Malformed product payload for {product_id}: {e}")
            raise CatalogUnavailableException(product_id, "malformed payload")
