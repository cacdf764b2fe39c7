"""
Исключения Cart Manager.

Иерархия:

CartManagerException
├── ProductNotFoundException      - товара нет в каталоге (404)
├── InsufficientStockException    - запрошено больше, чем есть на складе (400)
├── CartItemNotFoundException     - позиции нет в корзине (404)
├── NoCartContextException        - не передан ни пользователь, ни сессия (400)
└── CatalogUnavailableException   - каталог не отвечает (503)

Бизнес-ошибки поднимаются к вызывающему коду; HTTP-слой переводит их в
ответы через обработчики в main.py.
"""


class CartManagerException(Exception):
    """Базовое исключение сервиса корзины"""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        if self.details:
            details_str = ', '.join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.__class__.__name__}('{self.message}', {details_str})"
        return f"{self.__class__.__name__}('{self.message}')"


class ProductNotFoundException(CartManagerException):
    status_code = 404
    error = "Not found"

    def __init__(self, product_id: str):
        super().__init__(
            f"Product {product_id} not found",
            details={'product_id': product_id}
        )
        self.product_id = product_id


class InsufficientStockException(CartManagerException):
    """Запрошенное количество превышает остаток на складе"""

    status_code = 400
    error = "Bad request"

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock. Available: {available}, Requested: {requested}",
            details={'product_id': product_id, 'requested': requested, 'available': available}
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class CartItemNotFoundException(CartManagerException):
    status_code = 404
    error = "Not found"

    def __init__(self, product_id: str):
        super().__init__(
            f"Cart item {product_id} not found",
            details={'product_id': product_id}
        )
        self.product_id = product_id


class NoCartContextException(CartManagerException):
    """Нет ни пользователя, ни гостевой сессии"""

    status_code = 400
    error = "Bad request"

    def __init__(self):
        super().__init__("Session ID is required for guest users")


class CatalogUnavailableException(CartManagerException):
    """Каталог недоступен или ответил ошибкой"""

    status_code = 503
    error = "Service unavailable"

    def __init__(self, product_id: str, reason: str):
        super().__init__(
            f"Catalog lookup failed for product {product_id}: {reason}",
            details={'product_id': product_id, 'reason': reason}
        )
        self.product_id = product_id
        self.reason = reason
