import uuid
import logging
from typing import Optional
import jwt
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..owner import AccountOwner, CartOwner, GuestOwner
from ..services.cart_service import CartService
from ..services.catalog_client import CatalogClient, CatalogLookup
from ..services.guest_store import GuestCartStore
from ..services.kafka_client import KafkaClient, get_kafka_client

logger = logging.getLogger(__name__)


def get_catalog() -> CatalogLookup:
    """Dependency для получения клиента каталога"""
    return CatalogClient()


def get_guest_store(request: Request) -> GuestCartStore:
    """Хранилище гостевых корзин, созданное при запуске приложения"""
    return request.app.state.guest_store


def get_cart_service(
        db: Session = Depends(get_db),
        catalog: CatalogLookup = Depends(get_catalog),
        guest_store: GuestCartStore = Depends(get_guest_store),
        events: KafkaClient = Depends(get_kafka_client)
) -> CartService:
    """Dependency для получения CartService"""
    return CartService(db, catalog, guest_store, events=events)


def get_account_id(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    """ID пользователя из bearer-токена; None, если токена нет"""
    if not authorization:
        return None

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    try:
        claims = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except jwt.PyJWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    account_id = claims.get("sub") or claims.get("userId")
    if not account_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(account_id)


def get_session_id(request: Request) -> Optional[str]:
    session_id = request.headers.get(settings.session_header)
    return session_id or None


def get_cart_owner(
        account_id: Optional[str] = Depends(get_account_id),
        session_id: Optional[str] = Depends(get_session_id)
) -> Optional[CartOwner]:
    """Пользователь или гостевая сессия; None, если нет ни того, ни другого"""
    if account_id:
        return AccountOwner(account_id=account_id)
    if session_id:
        return GuestOwner(session_id=session_id)
    return None


def get_or_create_cart_owner(owner: Optional[CartOwner] = Depends(get_cart_owner)) -> CartOwner:
    """Для новых гостей выдаём свежую сессию"""
    if owner is None:
        return GuestOwner(session_id=str(uuid.uuid4()))
    return owner


def require_account(account_id: Optional[str] = Depends(get_account_id)) -> AccountOwner:
    if not account_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return AccountOwner(account_id=account_id)
