import pytest
from bson.objectid import ObjectId

import inventory
from errors import NotFound, PreconditionFailed, ValidationFailed

from conftest import make_product, make_user, stock_of


@pytest.fixture
def seller(db):
    return make_user(db, role="seller")


def test_reserve_decrements_stock(db, seller):
    product = make_product(db, seller, stock=5)
    updated = inventory.reserve(db, str(product["_id"]), 3)
    assert updated["stock"] == 2
    assert stock_of(db, product) == 2


def test_reserve_rejects_when_short(db, seller):
    product = make_product(db, seller, stock=2, name="Mouse")
    with pytest.raises(PreconditionFailed) as exc:
        inventory.reserve(db, str(product["_id"]), 3)
    assert exc.value.detail == "Insufficient stock for Mouse. Available: 2"
    assert stock_of(db, product) == 2


def test_reserve_exact_remaining_stock(db, seller):
    product = make_product(db, seller, stock=2)
    inventory.reserve(db, str(product["_id"]), 2)
    assert stock_of(db, product) == 0
    with pytest.raises(PreconditionFailed):
        inventory.reserve(db, str(product["_id"]), 1)
    assert stock_of(db, product) == 0


def test_reserve_missing_product(db):
    with pytest.raises(NotFound):
        inventory.reserve(db, str(ObjectId()), 1)
    with pytest.raises(NotFound):
        inventory.reserve(db, "not-an-id", 1)


def test_reserve_inactive_product(db, seller):
    product = make_product(db, seller, stock=5, name="Old Cable")
    db["product"].update_one({"_id": product["_id"]}, {"$set": {"is_active": False}})
    with pytest.raises(PreconditionFailed, match="Old Cable is not available"):
        inventory.reserve(db, str(product["_id"]), 1)
    assert stock_of(db, product) == 5


def test_reserve_requires_positive_quantity(db, seller):
    product = make_product(db, seller, stock=5)
    with pytest.raises(ValidationFailed):
        inventory.reserve(db, str(product["_id"]), 0)
    assert stock_of(db, product) == 5


def test_release_returns_units(db, seller):
    product = make_product(db, seller, stock=1)
    assert inventory.release(db, str(product["_id"]), 4) is True
    assert stock_of(db, product) == 5


def test_release_of_deleted_product_is_skipped(db, seller):
    product = make_product(db, seller, stock=1)
    db["product"].delete_one({"_id": product["_id"]})
    assert inventory.release(db, str(product["_id"]), 1) is False


def test_reserve_all_is_all_or_nothing(db, seller):
    a = make_product(db, seller, stock=5)
    b = make_product(db, seller, stock=5)
    c = make_product(db, seller, stock=1)
    lines = [(str(a["_id"]), 2), (str(b["_id"]), 3), (str(c["_id"]), 2)]

    with pytest.raises(PreconditionFailed):
        inventory.reserve_all(db, lines)

    assert stock_of(db, a) == 5
    assert stock_of(db, b) == 5
    assert stock_of(db, c) == 1


def test_reserve_all_returns_products_in_order(db, seller):
    a = make_product(db, seller, stock=5, name="A")
    b = make_product(db, seller, stock=5, name="B")
    products = inventory.reserve_all(db, [(str(b["_id"]), 1), (str(a["_id"]), 2)])
    assert [p["name"] for p in products] == ["B", "A"]
    assert stock_of(db, a) == 3
    assert stock_of(db, b) == 4


def test_second_reservation_of_exhausted_stock_is_rejected(db, seller):
    product = make_product(db, seller, stock=2)
    results = []
    for _ in range(2):
        try:
            inventory.reserve(db, str(product["_id"]), 2)
            results.append("ok")
        except PreconditionFailed:
            results.append("rejected")
    assert sorted(results) == ["ok", "rejected"]
    assert stock_of(db, product) == 0


def test_low_stock_lists_sellers_products_below_threshold(db, seller):
    other = make_user(db, role="seller")
    make_product(db, seller, stock=50, name="Plenty")
    make_product(db, seller, stock=3, name="Few")
    make_product(db, seller, stock=0, name="None left")
    make_product(db, other, stock=1, name="Someone else's")

    names = [p["name"] for p in inventory.low_stock(db, seller["id"])]
    assert names == ["None left", "Few"]
    assert [p["name"] for p in inventory.low_stock(db, seller["id"], threshold=1)] == ["None left"]
