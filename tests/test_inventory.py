import asyncio

import pytest

from torptcg.services.inventory import InventoryService
from torptcg.utils.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError


@pytest.fixture
def inventory(store):
    return InventoryService(store, "master")


def master_row(store, product_id):
    return next((row for row in store.bins["master"]["inventory"] if row["productId"] == product_id), None)


async def test_adjust_stock_decrements_and_writes_master(inventory, store):
    row = await inventory.adjust_stock("booster-box", -2)

    assert row["stock"] == 1
    assert master_row(store, "booster-box")["stock"] == 1
    assert store.writes == ["master"]


async def test_adjust_stock_clamps_at_zero(inventory, store):
    row = await inventory.adjust_stock("booster-box", -5)

    assert row["stock"] == 0
    assert master_row(store, "booster-box")["stock"] == 0


async def test_adjust_stock_increments(inventory, store):
    await inventory.adjust_stock("OGN-200", "3")

    assert master_row(store, "OGN-200")["stock"] == 3


async def test_adjust_stock_rejects_decrement_of_empty_row(inventory, store):
    with pytest.raises(InsufficientStockError) as excinfo:
        await inventory.adjust_stock("OGN-200", -1)

    assert excinfo.value.status == 409
    assert excinfo.value.message == "insufficient_stock"
    assert store.writes == []


async def test_adjust_stock_unknown_product(inventory, store):
    with pytest.raises(NotFoundError):
        await inventory.adjust_stock("nope", -1)
    assert store.writes == []


async def test_adjust_stock_rejects_non_numeric_delta(inventory):
    with pytest.raises(ValidationError):
        await inventory.adjust_stock("booster-box", "lots")


async def test_concurrent_adjustments_are_not_lost(inventory, store):
    store.bins["master"]["inventory"][0]["stock"] = 10

    await asyncio.gather(*(inventory.adjust_stock("booster-box", -1) for _ in range(4)))

    assert master_row(store, "booster-box")["stock"] == 6


async def test_set_stock_updates_price_and_bin(inventory, store):
    row = await inventory.set_stock("sleeves", 7, price="4.5", bin_id="accessories-bin")

    assert row["stock"] == 7
    assert row["price"] == 4.5
    assert master_row(store, "sleeves")["binId"] == "accessories-bin"


async def test_set_stock_to_zero_removes_row(inventory, store):
    assert await inventory.set_stock("booster-box", 0) is None
    assert master_row(store, "booster-box") is None


async def test_set_stock_creates_row_with_default_price(inventory, store):
    row = await inventory.set_stock("OGN-300", 2, bin_id="calm", category="singles")

    assert row == {
        "productId": "OGN-300",
        "binId": "calm",
        "category": "singles",
        "stock": 2,
        "price": 0.50,
        "preOrder": False,
    }
    assert master_row(store, "OGN-300") == row


async def test_set_stock_new_row_requires_bin_and_category(inventory):
    with pytest.raises(ValidationError):
        await inventory.set_stock("OGN-300", 2, category="singles")


async def test_set_stock_zero_for_unknown_row_writes_nothing(inventory, store):
    assert await inventory.set_stock("OGN-300", 0) is None
    assert store.writes == []


async def test_delete_row(inventory, store):
    assert await inventory.delete_row("sleeves") is True
    assert await inventory.delete_row("sleeves") is False
    assert master_row(store, "sleeves") is None


async def test_create_product_keeps_bin_shape_and_adds_master_row(inventory, store):
    store.bins["wrapped"] = {"products": [{"id": "playmat"}]}
    product = {"id": "deck-box", "title": "Deck Box", "category": "accessories", "stock": 4, "madeToOrder": True}

    row = await inventory.create_product(product, "wrapped")

    assert store.bins["wrapped"] == {"products": [{"id": "playmat"}, product]}
    assert row == {
        "productId": "deck-box",
        "binId": "wrapped",
        "category": "accessories",
        "stock": 4,
        "preOrder": True,
    }
    assert master_row(store, "deck-box") == row


async def test_create_product_rejects_duplicates(inventory):
    with pytest.raises(ConflictError):
        await inventory.create_product({"id": "booster-box"}, "products")


async def test_upsert_row_keeps_existing_price(inventory, store):
    row = await inventory.upsert_row({"id": "booster-box", "category": "sealed", "stock": 9}, "products")

    assert row["price"] == 89.99
    assert row["stock"] == 9


async def test_reassign_bin(inventory, store):
    updated, size = await inventory.reassign_bin({"OGN-100", "OGN-200"}, "dual")

    assert (updated, size) == (2, 5)
    assert master_row(store, "OGN-100")["binId"] == "dual"
    assert master_row(store, "OGN-200")["binId"] == "dual"


@pytest.mark.parametrize("delta", [float("inf"), float("-inf"), 1e400])
async def test_adjust_stock_rejects_infinite_delta(inventory, store, delta):
    with pytest.raises(ValidationError):
        await inventory.adjust_stock("sleeves", delta)
    assert store.writes == []
