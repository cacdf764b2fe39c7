from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class AccountOwner:
    """Корзина авторизованного пользователя (хранится в БД)"""

    account_id: str

    @property
    def is_guest(self) -> bool:
        return False

    @property
    def key(self) -> str:
        return f"user:{self.account_id}"


@dataclass(frozen=True)
class GuestOwner:
    """Гостевая корзина, привязанная к идентификатору сессии"""

    session_id: str

    @property
    def is_guest(self) -> bool:
        return True

    @property
    def key(self) -> str:
        return f"guest:{self.session_id}"


CartOwner = Union[AccountOwner, GuestOwner]
