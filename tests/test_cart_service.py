"""
Unit Tests: CartService CRUD

Покрывает get_cart / add_item / update_item / remove_item / clear_cart для
корзин пользователя (SQLite) и гостя (память), а также параллельные
изменения одной корзины (память и Redis через fakeredis).
"""
import asyncio

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from cart_manager.exceptions import (
    CartItemNotFoundException,
    InsufficientStockException,
    ProductNotFoundException,
)
from cart_manager.models import CartItem
from cart_manager.owner import AccountOwner, GuestOwner
from cart_manager.services.cart_service import CartService
from cart_manager.services.guest_store import RedisGuestCartStore
from cart_manager.services.locks import KeyedLock

USER = AccountOwner(account_id="user-1")
GUEST = GuestOwner(session_id="session-1")


@pytest.fixture(params=["account", "guest"])
def owner(request):
    return USER if request.param == "account" else GUEST


def quantities(summary):
    return {item.product_id: item.quantity for item in summary.items}


class TestGetCart:

    @pytest.mark.asyncio
    async def test_empty_guest_cart_summary(self, cart_service):
        summary = await cart_service.get_cart(GuestOwner(session_id="never-seen"))

        assert summary.items == []
        assert summary.total_items == 0
        assert summary.subtotal == 0
        assert summary.total_amount == 0

    @pytest.mark.asyncio
    async def test_empty_account_cart_summary(self, cart_service):
        summary = await cart_service.get_cart(USER)

        assert summary.items == []
        assert summary.total_items == 0

    @pytest.mark.asyncio
    async def test_totals_use_current_prices(self, cart_service, catalog, owner):
        catalog.add("a", stock=10, price=2.5)
        catalog.add("b", stock=10, price=4.0)
        await cart_service.add_item(owner, "a", 2)
        await cart_service.add_item(owner, "b", 1)

        catalog.set_price("a", 3.0)
        summary = await cart_service.get_cart(owner)

        assert summary.total_items == 3
        assert summary.subtotal == 10.0
        assert summary.total_amount == summary.subtotal

    @pytest.mark.asyncio
    async def test_lines_missing_from_catalog_are_dropped(self, cart_service, catalog, owner):
        catalog.add("a", stock=10)
        catalog.add("b", stock=10)
        await cart_service.add_item(owner, "a", 1)
        await cart_service.add_item(owner, "b", 1)

        catalog.remove("b")
        summary = await cart_service.get_cart(owner)

        assert quantities(summary) == {"a": 1}

    @pytest.mark.asyncio
    async def test_guest_line_ids_and_owner_fields(self, cart_service, catalog):
        catalog.add("a", stock=10)
        summary = await cart_service.add_item(GUEST, "a", 1)

        item = summary.items[0]
        assert item.id == "guest-session-1-a"
        assert item.session_id == "session-1"
        assert item.user_id is None
        assert item.product.name == "Product a"


class TestAddItem:

    @pytest.mark.asyncio
    async def test_accumulates_into_single_line(self, cart_service, catalog, owner):
        catalog.add("a", stock=10)

        await cart_service.add_item(owner, "a", 2)
        summary = await cart_service.add_item(owner, "a", 3)

        assert len(summary.items) == 1
        assert summary.items[0].quantity == 5

    @pytest.mark.asyncio
    async def test_single_row_per_user_and_product(self, cart_service, catalog, db_session):
        catalog.add("a", stock=10)

        await cart_service.add_item(USER, "a", 2)
        await cart_service.add_item(USER, "a", 3)

        rows = db_session.query(CartItem).filter(CartItem.user_id == USER.account_id).all()
        assert len(rows) == 1
        assert rows[0].quantity == 5

    @pytest.mark.asyncio
    async def test_combined_quantity_exceeding_stock_fails(self, cart_service, catalog, owner):
        catalog.add("a", stock=4)
        await cart_service.add_item(owner, "a", 3)

        with pytest.raises(InsufficientStockException) as exc_info:
            await cart_service.add_item(owner, "a", 2)

        assert exc_info.value.requested == 5
        assert exc_info.value.available == 4
        assert quantities(await cart_service.get_cart(owner)) == {"a": 3}

    @pytest.mark.asyncio
    async def test_combined_quantity_equal_to_stock_succeeds(self, cart_service, catalog, owner):
        catalog.add("a", stock=4)
        await cart_service.add_item(owner, "a", 3)

        summary = await cart_service.add_item(owner, "a", 1)

        assert quantities(summary) == {"a": 4}

    @pytest.mark.asyncio
    async def test_unknown_product(self, cart_service, owner):
        with pytest.raises(ProductNotFoundException):
            await cart_service.add_item(owner, "missing", 1)

        assert (await cart_service.get_cart(owner)).items == []

    @pytest.mark.asyncio
    async def test_non_positive_quantity_rejected(self, cart_service, catalog, owner):
        catalog.add("a", stock=4)

        with pytest.raises(ValueError):
            await cart_service.add_item(owner, "a", 0)

    @pytest.mark.asyncio
    async def test_publishes_item_added_event(self, cart_service, catalog, events):
        catalog.add("a", stock=4)

        await cart_service.add_item(USER, "a", 2)

        event = events.published[-1]
        assert event["topic"] == "cart.item.added"
        assert event["key"] == "user:user-1"
        assert event["payload"]["cart_id"] == "user-1"
        assert event["payload"]["quantity"] == 2
        assert event["payload"]["action"] == "added"


class TestUpdateItem:

    @pytest.mark.asyncio
    async def test_update_replaces_quantity(self, cart_service, catalog, owner):
        catalog.add("a", stock=4)
        await cart_service.add_item(owner, "a", 3)

        summary = await cart_service.update_item(owner, "a", 4)

        assert quantities(summary) == {"a": 4}

    @pytest.mark.asyncio
    async def test_update_checks_absolute_quantity(self, cart_service, catalog, owner):
        catalog.add("a", stock=4)
        await cart_service.add_item(owner, "a", 3)

        with pytest.raises(InsufficientStockException) as exc_info:
            await cart_service.update_item(owner, "a", 5)

        assert exc_info.value.requested == 5
        assert quantities(await cart_service.get_cart(owner)) == {"a": 3}

    @pytest.mark.asyncio
    async def test_update_to_zero_equals_remove(self, cart_service, catalog, owner):
        catalog.add("a", stock=4)
        catalog.add("b", stock=4)
        await cart_service.add_item(owner, "a", 1)
        await cart_service.add_item(owner, "b", 2)

        summary = await cart_service.update_item(owner, "a", 0)

        assert quantities(summary) == {"b": 2}

    @pytest.mark.asyncio
    async def test_update_cannot_create_line(self, cart_service, catalog, owner):
        catalog.add("a", stock=4)

        with pytest.raises(CartItemNotFoundException):
            await cart_service.update_item(owner, "a", 1)

        assert (await cart_service.get_cart(owner)).items == []

    @pytest.mark.asyncio
    async def test_update_unknown_product(self, cart_service, owner):
        with pytest.raises(ProductNotFoundException):
            await cart_service.update_item(owner, "missing", 1)

    @pytest.mark.asyncio
    async def test_update_to_zero_of_absent_line_is_noop(self, cart_service, owner):
        summary = await cart_service.update_item(owner, "missing", 0)

        assert summary.items == []


class TestRemoveAndClear:

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, cart_service, catalog, owner):
        catalog.add("a", stock=4)
        await cart_service.add_item(owner, "a", 2)

        summary = await cart_service.remove_item(owner, "not-in-cart")
        assert quantities(summary) == {"a": 2}

        await cart_service.remove_item(owner, "a")
        summary = await cart_service.remove_item(owner, "a")
        assert summary.items == []

    @pytest.mark.asyncio
    async def test_remove_without_guest_cart(self, cart_service):
        summary = await cart_service.remove_item(GuestOwner(session_id="nobody"), "a")

        assert summary.total_items == 0

    @pytest.mark.asyncio
    async def test_remove_publishes_only_when_something_removed(self, cart_service, catalog, events):
        catalog.add("a", stock=4)
        await cart_service.add_item(USER, "a", 1)

        await cart_service.remove_item(USER, "b")
        assert "cart.item.removed" not in events.topics()

        await cart_service.remove_item(USER, "a")
        assert events.topics()[-1] == "cart.item.removed"

    @pytest.mark.asyncio
    async def test_clear_removes_everything(self, cart_service, catalog, owner):
        catalog.add("a", stock=4)
        catalog.add("b", stock=4)
        await cart_service.add_item(owner, "a", 1)
        await cart_service.add_item(owner, "b", 1)

        await cart_service.clear_cart(owner)
        await cart_service.clear_cart(owner)

        assert (await cart_service.get_cart(owner)).items == []

    @pytest.mark.asyncio
    async def test_clear_deletes_guest_cart(self, cart_service, catalog, guest_store):
        catalog.add("a", stock=4)
        await cart_service.add_item(GUEST, "a", 1)

        await cart_service.clear_cart(GUEST)

        assert await guest_store.get(GUEST.session_id) is None

    @pytest.mark.asyncio
    async def test_clear_only_touches_one_owner(self, cart_service, catalog):
        catalog.add("a", stock=10)
        other = AccountOwner(account_id="user-2")
        await cart_service.add_item(USER, "a", 1)
        await cart_service.add_item(other, "a", 2)

        await cart_service.clear_cart(USER)

        assert quantities(await cart_service.get_cart(other)) == {"a": 2}


@pytest_asyncio.fixture
async def redis_store():
    store = RedisGuestCartStore(FakeAsyncRedis())
    yield store
    await store.close()


class TestConcurrentChanges:
    """Параллельные запросы к одной корзине не теряют изменений"""

    @pytest.mark.asyncio
    async def test_same_product_adds_accumulate(self, cart_service, catalog, owner):
        catalog.add("a", stock=10)

        await asyncio.gather(
            cart_service.add_item(owner, "a", 1),
            cart_service.add_item(owner, "a", 1),
        )

        assert quantities(await cart_service.get_cart(owner)) == {"a": 2}

    @pytest.mark.asyncio
    async def test_stock_is_checked_against_committed_quantity(self, cart_service, catalog, owner):
        catalog.add("a", stock=1)

        results = await asyncio.gather(
            cart_service.add_item(owner, "a", 1),
            cart_service.add_item(owner, "a", 1),
            return_exceptions=True
        )

        assert sum(isinstance(r, InsufficientStockException) for r in results) == 1
        assert quantities(await cart_service.get_cart(owner)) == {"a": 1}

    @pytest.mark.asyncio
    async def test_guest_adds_of_different_products(self, cart_service, catalog):
        catalog.add("a", stock=10)
        catalog.add("b", stock=10)

        await asyncio.gather(
            cart_service.add_item(GUEST, "a", 1),
            cart_service.add_item(GUEST, "b", 1),
        )

        assert quantities(await cart_service.get_cart(GUEST)) == {"a": 1, "b": 1}

    @pytest.mark.asyncio
    async def test_redis_guest_adds_of_different_products(self, db_session, catalog, redis_store):
        service = CartService(db_session, catalog, redis_store, locks=KeyedLock())
        catalog.add("a", stock=10)
        catalog.add("b", stock=10)

        await asyncio.gather(
            service.add_item(GUEST, "a", 1),
            service.add_item(GUEST, "b", 1),
        )

        assert quantities(await service.get_cart(GUEST)) == {"a": 1, "b": 1}

    @pytest.mark.asyncio
    async def test_redis_guest_changes_from_separate_workers(self, db_session, catalog, redis_store):
        # У каждого воркера свои блокировки, общий только Redis
        workers = [CartService(db_session, catalog, redis_store, locks=KeyedLock()) for _ in range(3)]
        for product_id in ("a", "b", "c"):
            catalog.add(product_id, stock=10)
        await workers[0].add_item(GUEST, "c", 1)

        await asyncio.gather(
            workers[0].add_item(GUEST, "a", 2),
            workers[1].add_item(GUEST, "b", 3),
            workers[2].remove_item(GUEST, "c"),
        )

        assert quantities(await workers[0].get_cart(GUEST)) == {"a": 2, "b": 3}

    @pytest.mark.asyncio
    async def test_redis_guest_stock_failure_leaves_cart_unchanged(self, db_session, catalog, redis_store):
        service = CartService(db_session, catalog, redis_store, locks=KeyedLock())
        catalog.add("a", stock=2)
        await service.add_item(GUEST, "a", 2)

        with pytest.raises(InsufficientStockException):
            await service.add_item(GUEST, "a", 1)

        assert (await redis_store.get(GUEST.session_id)).find("a").quantity == 2

    @pytest.mark.asyncio
    async def test_redis_remove_from_missing_cart_creates_nothing(self, db_session, catalog, redis_store):
        service = CartService(db_session, catalog, redis_store, locks=KeyedLock())

        await service.remove_item(GUEST, "a")

        assert await redis_store.get(GUEST.session_id) is None
        assert await redis_store.count() == 0
