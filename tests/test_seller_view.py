import pytest

import orders
import seller_view

from conftest import make_product, make_user, place


@pytest.fixture
def shared_order(db, shop):
    """One order holding lines from two sellers."""
    other_seller = make_user(db, role="seller")
    other_product = make_product(db, other_seller, stock=10, price=40.0)
    order = place(db, shop["customer"], (shop["product"], 2), (other_product, 3), tax_amount=50)
    return order, other_seller, other_product


def test_projection_keeps_only_own_items(db, shop, shared_order):
    order, other_seller, other_product = shared_order

    mine = seller_view.project_for_seller(order, shop["seller"]["id"])
    assert [i["product_id"] for i in mine["order_items"]] == [str(shop["product"]["_id"])]
    assert mine["total_amount"] == 500.0
    for field in seller_view.HIDDEN_FIELDS:
        assert field not in mine

    theirs = seller_view.project_for_seller(order, other_seller["id"])
    assert [i["product_id"] for i in theirs["order_items"]] == [str(other_product["_id"])]
    assert theirs["total_amount"] == 120.0


def test_projection_for_uninvolved_seller_is_empty(db, shop, shared_order):
    order, _, _ = shared_order
    assert seller_view.project_for_seller(order, make_user(db, role="seller")["id"]) is None


def test_projection_does_not_touch_the_stored_order(db, shop, shared_order):
    order, _, _ = shared_order
    seller_view.project_for_seller(order, shop["seller"]["id"])
    stored = orders.load_order(db, str(order["_id"]))
    assert len(stored["order_items"]) == 2
    assert stored["total_amount"] == 670.0


def test_legacy_items_matched_by_product_ownership(db, shop):
    order = place(db, shop["customer"], (shop["product"], 1))
    legacy = dict(order, order_items=[{k: v for k, v in i.items() if k != "seller_id"} for i in order["order_items"]])
    assert seller_view.project_for_seller(legacy, shop["seller"]["id"]) is None

    ids = seller_view.seller_product_ids(db, shop["seller"]["id"])
    view = seller_view.project_for_seller(legacy, shop["seller"]["id"], ids)
    assert view["total_amount"] == 250.0


def test_seller_orders_lists_only_involved_orders(db, shop, shared_order):
    order, other_seller, _ = shared_order
    own_only = place(db, shop["customer"], (shop["product"], 1))

    mine = seller_view.seller_orders(db, shop["seller"]["id"])
    assert {o["id"] for o in mine["orders"]} == {str(order["_id"]), str(own_only["_id"])}
    assert mine["pagination"]["total_orders"] == 2

    theirs = seller_view.seller_orders(db, other_seller["id"])
    assert [o["id"] for o in theirs["orders"]] == [str(order["_id"])]


def test_seller_orders_status_filter(db, shop, shared_order):
    order, _, _ = shared_order
    orders.accept_order(db, shop["seller"], str(order["_id"]))
    place(db, shop["customer"], (shop["product"], 1))

    confirmed = seller_view.seller_orders(db, shop["seller"]["id"], status="confirmed")
    assert [o["id"] for o in confirmed["orders"]] == [str(order["_id"])]


def test_dashboard(db, shop, shared_order):
    order, other_seller, _ = shared_order
    cancelled = place(db, shop["customer"], (shop["product"], 1))
    orders.cancel_by_customer(db, shop["customer"], str(cancelled["_id"]))

    stats = seller_view.seller_dashboard(db, shop["seller"]["id"])
    assert stats["total_products"] == 1
    assert stats["total_orders"] == 2
    # cancelled orders do not count towards revenue
    assert stats["total_revenue"] == 500.0
    assert len(stats["recent_orders"]) == 2
    assert [p["name"] for p in stats["low_stock_products"]] == [shop["product"]["name"]]

    other = seller_view.seller_dashboard(db, other_seller["id"])
    assert other["total_revenue"] == 120.0
    assert [p["stock"] for p in other["low_stock_products"]] == [7]
