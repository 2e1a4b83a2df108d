import pytest

from storefront import inventory
from storefront.errors import InsufficientStock, NotFound

from conftest import stock_of


def test_reserve_decrements_and_returns_new_level(db, make_product):
    product = make_product(stock=5)

    assert inventory.reserve(db, product.id, 3) == 2
    db.commit()
    assert stock_of(db, product.id) == 2


def test_reserve_more_than_available_raises_and_leaves_stock(db, make_product):
    product = make_product(title="ID Lace", stock=2)

    with pytest.raises(InsufficientStock) as exc:
        inventory.reserve(db, product.id, 3)
    db.rollback()

    assert exc.value.available == 2
    assert exc.value.requested == 3
    assert exc.value.to_dict()["productId"] == product.id
    assert stock_of(db, product.id) == 2


def test_reserve_missing_or_archived_product_is_not_found(db, make_product):
    archived = make_product(stock=5, is_archived=True)

    with pytest.raises(NotFound):
        inventory.reserve(db, 999, 1)
    with pytest.raises(NotFound):
        inventory.reserve(db, archived.id, 1)


def test_reserve_rejects_non_positive_quantity(db, make_product):
    product = make_product()
    with pytest.raises(ValueError):
        inventory.reserve(db, product.id, 0)


def test_restore_adds_back(db, make_product):
    product = make_product(stock=1)
    assert inventory.restore(db, product.id, 4) == 5


def test_restore_missing_product_is_skipped(db):
    assert inventory.restore(db, 12345, 2) is None


def test_merge_items_combines_duplicates_in_id_order():
    assert inventory.merge_items([(3, 1), (1, 2), (3, 4)]) == [(1, 2), (3, 5)]


def test_reserve_items_is_all_or_nothing_after_rollback(db, make_product):
    plenty = make_product(title="Polo", stock=10)
    scarce = make_product(title="Pants", stock=1)

    with pytest.raises(InsufficientStock):
        inventory.reserve_items(db, [(plenty.id, 2), (scarce.id, 2)])
    db.rollback()

    assert stock_of(db, plenty.id) == 10
    assert stock_of(db, scarce.id) == 1


def test_stock_never_goes_negative_over_many_reservations(db, make_product):
    product = make_product(stock=3)
    successes = 0
    for _ in range(5):
        try:
            inventory.reserve(db, product.id, 1)
            db.commit()
            successes += 1
        except InsufficientStock:
            db.rollback()

    assert successes == 3
    assert stock_of(db, product.id) == 0
