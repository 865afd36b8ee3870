from decimal import Decimal

import pytest

from schoolvendor.exceptions import InsufficientStockError, NotFoundError
from schoolvendor.models.orders import OrderItem
from schoolvendor.services import catalog_service, stock_ledger


def _item(product, quantity):
    return OrderItem(
        product_id=product.product_id,
        name=product.name,
        sku=product.sku,
        unit_price=product.price,
        quantity=quantity,
        kind=product.kind,
    )


@pytest.mark.asyncio
async def test_reserve_then_restore_returns_stock_to_start(db, make_product):
    book = await make_product(stock=10)
    pen = await make_product(name="Pen", price=Decimal("5.00"), stock=7)
    items = [_item(book, 2), _item(pen, 3)]

    await stock_ledger.reserve_stock(db, items, reason="Reserved for order SV-TEST")
    assert (await catalog_service.get_product(db, book.product_id)).stock == 8
    assert (await catalog_service.get_product(db, pen.product_id)).stock == 4

    await stock_ledger.restore_stock(db, items)
    assert (await catalog_service.get_product(db, book.product_id)).stock == 10
    assert (await catalog_service.get_product(db, pen.product_id)).stock == 7


@pytest.mark.asyncio
async def test_reserve_writes_audit_entries(db, make_product, customer):
    book = await make_product(stock=10)

    await stock_ledger.reserve_stock(db, [_item(book, 4)], reason="Reserved for order SV-1", actor=customer)

    history = await stock_ledger.get_stock_history(db, book.product_id)
    assert len(history) == 1
    entry = history[0]
    assert entry.action == "remove"
    assert entry.quantity == 4
    assert entry.previous_stock == 10
    assert entry.new_stock == 6
    assert entry.reason == "Reserved for order SV-1"
    assert entry.actor == customer.user_id


@pytest.mark.asyncio
async def test_insufficient_stock_leaves_stock_untouched(db, make_product):
    book = await make_product(stock=1)

    with pytest.raises(InsufficientStockError) as exc_info:
        await stock_ledger.remove_stock(db, book.product_id, 2, "Reserved")

    assert exc_info.value.details["available"] == 1
    assert (await catalog_service.get_product(db, book.product_id)).stock == 1
    assert await stock_ledger.get_stock_history(db, book.product_id) == []


@pytest.mark.asyncio
async def test_partial_reservation_is_released_on_failure(db, make_product):
    book = await make_product(stock=10)
    ruler = await make_product(name="Ruler", stock=2)

    with pytest.raises(InsufficientStockError):
        await stock_ledger.reserve_stock(db, [_item(book, 3), _item(ruler, 5)])

    assert (await catalog_service.get_product(db, book.product_id)).stock == 10
    assert (await catalog_service.get_product(db, ruler.product_id)).stock == 2

    actions = [m.action for m in await stock_ledger.get_stock_history(db, book.product_id)]
    assert actions == ["remove", "add"]


@pytest.mark.asyncio
async def test_digital_items_never_move_stock(db, make_digital_product):
    ebook = await make_digital_product()

    movements = await stock_ledger.reserve_stock(db, [_item(ebook, 3)])

    assert movements == []
    assert (await catalog_service.get_product(db, ebook.product_id)).stock == 0


@pytest.mark.asyncio
async def test_untracked_product_is_skipped(db, make_product):
    poster = await make_product(stock=0, stock_management=False)

    assert await stock_ledger.remove_stock(db, poster.product_id, 5, "Reserved") is None
    assert (await catalog_service.get_product(db, poster.product_id)).stock == 0


@pytest.mark.asyncio
async def test_adjust_sets_absolute_value_and_low_stock_flag(db, make_product, admin):
    book = await make_product(stock=10, low_stock_threshold=3)

    movement = await stock_ledger.adjust_stock(db, book.product_id, 2, "Damaged in storage", admin)

    assert movement.action == "adjust"
    assert movement.previous_stock == 10
    assert movement.new_stock == 2
    product = await catalog_service.get_product(db, book.product_id)
    assert product.stock == 2
    assert product.is_low_stock is True

    await stock_ledger.adjust_stock(db, book.product_id, 20, "Term restock", admin)
    assert (await catalog_service.get_product(db, book.product_id)).is_low_stock is False


@pytest.mark.asyncio
async def test_unknown_product_raises_not_found(db):
    with pytest.raises(NotFoundError):
        await stock_ledger.remove_stock(db, "prod_missing", 1, "Reserved")


@pytest.mark.asyncio
async def test_low_stock_listing_reflects_current_stock(db, make_product, admin):
    book = await make_product(stock=10)
    pen = await make_product(name="Pen", price=Decimal("5.00"), stock=7)
    await make_product(name="Ruler", price=Decimal("3.00"), stock=30)
    await stock_ledger.adjust_stock(db, book.product_id, 2, "Damaged in storage", admin)
    await stock_ledger.adjust_stock(db, pen.product_id, 0, "Sold out at fair", admin)

    low = await catalog_service.list_low_stock(db, admin)

    assert [(p.product_id, p.stock) for p in low] == [(pen.product_id, 0), (book.product_id, 2)]
    assert all(p.is_low_stock for p in low)

    await stock_ledger.adjust_stock(db, book.product_id, 15, "Term restock", admin)
    assert [p.product_id for p in await catalog_service.list_low_stock(db, admin)] == [pen.product_id]
