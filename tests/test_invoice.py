import pytest

import delivery
import invoice
import orders
from errors import Forbidden, PreconditionFailed

from conftest import make_agent, make_product, make_user, place


def _deliver(db, shop, oid):
    delivery.generate_otp(db, shop["agent_actor"], oid)
    code = orders.load_order(db, oid)["delivery_otp"]
    delivery.complete_delivery(db, shop["agent_actor"], oid, code)


def test_invoice_only_for_delivered_orders(db, shop, out_for_delivery):
    with pytest.raises(PreconditionFailed, match="only available for delivered"):
        invoice.build_invoice(db, shop["customer"], out_for_delivery)


def test_customer_invoice(db, shop, out_for_delivery):
    _deliver(db, shop, out_for_delivery)
    doc = invoice.build_invoice(db, shop["customer"], out_for_delivery)

    order = orders.load_order(db, out_for_delivery)
    assert doc["order_number"] == order["order_number"]
    assert doc["invoice_number"].startswith("INV-")
    assert doc["invoice_number"].endswith(order["order_number"])
    assert doc["items"] == [
        {"name": shop["product"]["name"], "quantity": 2, "unit_price": 250.0, "line_total": 500.0}
    ]
    assert doc["total"] == 500.0
    assert doc["customer"]["email"] == shop["customer"]["email"]
    assert doc["sellers"][0]["business_name"].startswith("Shop ")


def test_seller_invoice_covers_own_items(db, shop):
    other_seller = make_user(db, role="seller")
    other_product = make_product(db, other_seller, stock=5, price=30.0)
    oid = str(place(db, shop["customer"], (shop["product"], 1), (other_product, 2), shipping_amount=40)["_id"])
    orders.admin_force_deliver(db, shop["admin"], oid)

    mine = invoice.build_invoice(db, shop["seller"], oid)
    assert [i["name"] for i in mine["items"]] == [shop["product"]["name"]]
    assert mine["shipping_amount"] == 0
    assert mine["total"] == 250.0

    full = invoice.build_invoice(db, shop["customer"], oid)
    assert full["total"] == 350.0
    assert len(full["sellers"]) == 2


def test_strangers_get_no_invoice(db, shop, out_for_delivery):
    _deliver(db, shop, out_for_delivery)
    stranger_actor, _ = make_agent(db)
    for actor in (make_user(db), make_user(db, role="seller"), stranger_actor):
        with pytest.raises(Forbidden):
            invoice.build_invoice(db, actor, out_for_delivery)


def test_stranger_is_refused_before_status_is_checked(db, shop):
    oid = str(place(db, shop["customer"], (shop["product"], 1))["_id"])
    with pytest.raises(Forbidden):
        invoice.build_invoice(db, make_user(db), oid)
    with pytest.raises(PreconditionFailed):
        invoice.build_invoice(db, shop["customer"], oid)
