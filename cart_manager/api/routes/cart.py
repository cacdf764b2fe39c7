from fastapi import APIRouter, Depends, Response
from typing import Optional

from ...config import settings
from ...exceptions import NoCartContextException
from ...owner import AccountOwner, CartOwner, GuestOwner
from ...schemas.cart import (
    CartMergeRequest,
    CartMergeResponse,
    CartResponse,
    CartSummary,
    CartValidationResult,
    MessageResponse,
)
from ...schemas.cart_item import CartItemCreate, CartItemUpdate
from ...services.cart_service import CartService
from ..dependencies import get_cart_owner, get_cart_service, get_or_create_cart_owner, require_account

router = APIRouter()


def _respond(owner: CartOwner, cart: CartSummary, response: Response) -> CartResponse:
    if isinstance(owner, GuestOwner):
        # Фронтенд сохраняет ID сессии из заголовка
        response.headers[settings.session_header] = owner.session_id
    return CartResponse(cart=cart, is_guest=owner.is_guest)


def _require_owner(owner: Optional[CartOwner]) -> CartOwner:
    if owner is None:
        raise NoCartContextException()
    return owner


@router.get("/cart", response_model=CartResponse)
async def get_cart(
        response: Response,
        owner: CartOwner = Depends(get_or_create_cart_owner),
        cart_service: CartService = Depends(get_cart_service)
):
    """Получение текущей корзины (пользователя или гостя)"""
    cart = await cart_service.get_cart(owner)
    return _respond(owner, cart, response)


@router.post("/cart/items", response_model=CartResponse, status_code=201)
async def add_item_to_cart(
        item: CartItemCreate,
        response: Response,
        owner: CartOwner = Depends(get_or_create_cart_owner),
        cart_service: CartService = Depends(get_cart_service)
):
    """Добавление товара в корзину"""
    cart = await cart_service.add_item(owner, item.product_id, item.quantity)
    return _respond(owner, cart, response)


@router.put("/cart/items/{product_id}", response_model=CartResponse)
async def update_cart_item(
        product_id: str,
        item: CartItemUpdate,
        response: Response,
        owner: Optional[CartOwner] = Depends(get_cart_owner),
        cart_service: CartService = Depends(get_cart_service)
):
    """Обновление количества товара (0 - удаление)"""
    owner = _require_owner(owner)
    cart = await cart_service.update_item(owner, product_id, item.quantity)
    return _respond(owner, cart, response)


@router.delete("/cart/items/{product_id}", response_model=CartResponse)
async def remove_item_from_cart(
        product_id: str,
        response: Response,
        owner: Optional[CartOwner] = Depends(get_cart_owner),
        cart_service: CartService = Depends(get_cart_service)
):
    """Удаление товара из корзины"""
    owner = _require_owner(owner)
    cart = await cart_service.remove_item(owner, product_id)
    return _respond(owner, cart, response)


@router.delete("/cart", response_model=MessageResponse)
async def clear_cart(
        owner: Optional[CartOwner] = Depends(get_cart_owner),
        cart_service: CartService = Depends(get_cart_service)
):
    """Очистка корзины"""
    await cart_service.clear_cart(_require_owner(owner))
    return MessageResponse(message="Cart cleared successfully")


@router.post("/cart/merge", response_model=CartMergeResponse)
async def merge_cart(
        body: CartMergeRequest,
        account: AccountOwner = Depends(require_account),
        cart_service: CartService = Depends(get_cart_service)
):
    """Перенос гостевой корзины в корзину пользователя после входа"""
    result = await cart_service.merge_guest_cart(account, body.guest_session_id)
    return CartMergeResponse(cart=result.cart, is_guest=False, outcomes=result.outcomes)


@router.get("/cart/validate", response_model=CartValidationResult)
async def validate_cart(
        owner: Optional[CartOwner] = Depends(get_cart_owner),
        cart_service: CartService = Depends(get_cart_service)
):
    """Проверка корзины перед оформлением заказа"""
    return await cart_service.validate_cart(owner)
