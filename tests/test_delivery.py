from datetime import timedelta

import pytest

import delivery
import orders
from config import settings
from database import utcnow
from errors import Conflict, Forbidden, PreconditionFailed, ValidationFailed

from conftest import make_agent, make_user, place


def _otp(db, oid):
    return orders.load_order(db, oid)["delivery_otp"]


def test_new_otp_is_six_digits():
    for _ in range(200):
        code = delivery.new_otp()
        assert len(code) == 6
        assert 100000 <= int(code) <= 999999


def test_start_delivery_requires_assigned_agent(db, shop):
    oid = str(place(db, shop["customer"], (shop["product"], 1))["_id"])
    orders.accept_order(db, shop["seller"], oid)
    orders.ship_order(db, shop["seller"], oid)
    orders.assign_delivery(db, shop["seller"], oid, str(shop["agent"]["_id"]))

    other_actor, _ = make_agent(db)
    with pytest.raises(Forbidden):
        delivery.start_delivery(db, other_actor, oid)
    assert delivery.start_delivery(db, shop["agent_actor"], oid)["status"] == "out_for_delivery"


def test_generate_otp_requires_out_for_delivery(db, shop):
    oid = str(place(db, shop["customer"], (shop["product"], 1))["_id"])
    with pytest.raises(PreconditionFailed, match="not ready for delivery"):
        delivery.generate_otp(db, shop["seller"], oid)


def test_generate_otp_by_agent_hides_code(db, shop, out_for_delivery):
    result = delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
    assert "otp" not in result
    assert result["message"] == "OTP sent to customer"

    order = orders.load_order(db, out_for_delivery)
    assert len(order["delivery_otp"]) == 6
    assert order["delivery_otp_attempts"] == 0
    note = db["notification"].find_one({"order_id": out_for_delivery, "event": "otp_generated"})
    assert note["recipient_id"] == shop["customer"]["id"]
    assert note["data"]["otp"] == order["delivery_otp"]


def test_generate_otp_by_seller_returns_code(db, shop, out_for_delivery):
    result = delivery.generate_otp(db, shop["seller"], out_for_delivery)
    assert result["otp"] == _otp(db, out_for_delivery)


def test_unrelated_users_cannot_generate_otp(db, shop, out_for_delivery):
    with pytest.raises(Forbidden):
        delivery.generate_otp(db, make_user(db, role="seller"), out_for_delivery)
    with pytest.raises(Forbidden):
        delivery.generate_otp(db, shop["customer"], out_for_delivery)


def test_complete_with_matching_otp(db, shop, out_for_delivery):
    delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
    code = _otp(db, out_for_delivery)

    delivered = delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, code)
    assert delivered["status"] == "delivered"
    assert delivered["is_delivered"] is True
    assert delivered["delivered_at"] is not None
    assert delivered["delivery_otp"] is None
    assert delivered["delivery_attempts"][-1]["status"] == "success"
    # cash on delivery is settled at the door
    assert delivered["is_paid"] is True
    assert delivered["payment_status"] == "completed"

    agent = db["deliveryagent"].find_one({"_id": shop["agent"]["_id"]})
    assert agent["total_deliveries"] == 1
    assert agent["active_order_id"] is None


def test_complete_without_otp(db, shop, out_for_delivery):
    with pytest.raises(PreconditionFailed, match="No delivery OTP"):
        delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, "123456")


def test_wrong_otp_is_logged_and_status_kept(db, shop, out_for_delivery):
    delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
    code = _otp(db, out_for_delivery)
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(PreconditionFailed, match="Invalid OTP"):
        delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, wrong)

    order = orders.load_order(db, out_for_delivery)
    assert order["status"] == "out_for_delivery"
    assert order["delivery_otp_attempts"] == 1
    assert order["delivery_attempts"][-1]["status"] == "failed"
    assert db["deliveryagent"].find_one({"_id": shop["agent"]["_id"]})["total_deliveries"] == 0


def test_otp_locks_after_max_attempts(db, shop, out_for_delivery):
    delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
    code = _otp(db, out_for_delivery)
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(settings.OTP_MAX_ATTEMPTS):
        with pytest.raises(PreconditionFailed, match="Invalid OTP"):
            delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, wrong)
    with pytest.raises(PreconditionFailed, match="locked"):
        delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, code)

    # a fresh code unlocks the hand-off
    delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
    fresh = _otp(db, out_for_delivery)
    assert delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, fresh)["status"] == "delivered"


def test_expired_otp_is_rejected(db, shop, out_for_delivery):
    delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
    code = _otp(db, out_for_delivery)
    db["order"].update_one(
        {"order_number": orders.load_order(db, out_for_delivery)["order_number"]},
        {"$set": {"delivery_otp_expiry": utcnow() - timedelta(minutes=1)}},
    )
    with pytest.raises(PreconditionFailed, match="expired"):
        delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, code)
    assert orders.load_order(db, out_for_delivery)["status"] == "out_for_delivery"


def test_regenerating_replaces_previous_code(db, shop, out_for_delivery):
    delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
    first = _otp(db, out_for_delivery)
    second = first
    while second == first:
        delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
        second = _otp(db, out_for_delivery)

    with pytest.raises(PreconditionFailed, match="Invalid OTP"):
        delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, first)
    assert delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, second)["status"] == "delivered"


def test_only_assigned_agent_can_complete(db, shop, out_for_delivery):
    delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
    code = _otp(db, out_for_delivery)
    other_actor, _ = make_agent(db)
    for actor in (other_actor, shop["seller"], shop["customer"]):
        with pytest.raises(Forbidden):
            delivery.complete_delivery(db, actor, out_for_delivery, code)
    assert orders.load_order(db, out_for_delivery)["status"] == "out_for_delivery"


def test_complete_twice_is_rejected(db, shop, out_for_delivery):
    delivery.generate_otp(db, shop["agent_actor"], out_for_delivery)
    code = _otp(db, out_for_delivery)
    delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, code)
    with pytest.raises(PreconditionFailed):
        delivery.complete_delivery(db, shop["agent_actor"], out_for_delivery, code)
    assert db["deliveryagent"].find_one({"_id": shop["agent"]["_id"]})["total_deliveries"] == 1


def test_prepaid_order_keeps_payment_record(db, shop):
    oid = str(place(db, shop["customer"], (shop["product"], 1), payment_method="card")["_id"])
    orders.mark_paid(db, shop["customer"], oid, {"id": "txn_9"})
    orders.accept_order(db, shop["seller"], oid)
    orders.ship_order(db, shop["seller"], oid)
    orders.assign_delivery(db, shop["seller"], oid, str(shop["agent"]["_id"]))
    delivery.start_delivery(db, shop["agent_actor"], oid)
    delivery.generate_otp(db, shop["agent_actor"], oid)

    delivered = delivery.complete_delivery(db, shop["agent_actor"], oid, _otp(db, oid))
    assert delivered["is_paid"] is True
    assert delivered["payment_result"] == {"id": "txn_9"}


def test_record_attempt(db, shop, out_for_delivery):
    updated = delivery.record_attempt(db, shop["agent_actor"], out_for_delivery, notes="Door locked")
    assert updated["status"] == "out_for_delivery"
    assert updated["delivery_attempts"][-1]["status"] == "customer_unavailable"
    assert updated["delivery_attempts"][-1]["notes"] == "Door locked"
    with pytest.raises(ValidationFailed):
        delivery.record_attempt(db, shop["agent_actor"], out_for_delivery, status="success")


def test_agent_orders(db, shop, out_for_delivery):
    listed = delivery.agent_orders(db, shop["agent_actor"])
    assert [o["id"] for o in listed] == [out_for_delivery]
    assert "delivery_otp" not in listed[0]

    delivery.set_availability(db, shop["agent_actor"], False)
    with pytest.raises(Forbidden, match="not eligible"):
        delivery.agent_orders(db, shop["agent_actor"])


def test_register_and_verify_agent(db, shop):
    ids = delivery.register_agent(
        db, name="Ravi", email="ravi@example.com", password_hash="x", phone="9000000000",
        vehicle_type="bike", vehicle_number="KA05XY1234", license_number="DL-42",
        aadhar_number="1234-5678-9012", area="Mysuru",
    )
    assert delivery.available_agents(db, "Mysuru") == []

    delivery.verify_agent(db, shop["admin"], ids["agent_id"])
    listed = delivery.available_agents(db, "Mysuru")
    assert [a["id"] for a in listed] == [ids["agent_id"]]
    assert "license_number" not in listed[0]
    assert "aadhar_number" not in listed[0]
    assert listed[0]["user"]["email"] == "ravi@example.com"

    with pytest.raises(Conflict, match="Vehicle number"):
        delivery.register_agent(
            db, name="Copy", email="copy@example.com", password_hash="x", phone=None,
            vehicle_type="car", vehicle_number="KA05XY1234", license_number="DL-43",
            aadhar_number="0000-0000-0000", area="Mysuru",
        )
    with pytest.raises(Forbidden):
        delivery.verify_agent(db, shop["seller"], ids["agent_id"])


def test_update_location(db, shop):
    delivery.update_location(db, shop["agent_actor"], 12.97, 77.59)
    agent = db["deliveryagent"].find_one({"_id": shop["agent"]["_id"]})
    assert agent["current_location"]["coordinates"] == [77.59, 12.97]
    with pytest.raises(ValidationFailed):
        delivery.update_location(db, shop["agent_actor"], 120, 0)


def _deliver(db, shop, oid):
    delivery.generate_otp(db, shop["agent_actor"], oid)
    delivery.complete_delivery(db, shop["agent_actor"], oid, _otp(db, oid))


def test_rate_agent_once_per_order(db, shop, out_for_delivery):
    with pytest.raises(PreconditionFailed, match="Only delivered"):
        delivery.rate_agent(db, shop["customer"], out_for_delivery, 5)

    _deliver(db, shop, out_for_delivery)
    result = delivery.rate_agent(db, shop["customer"], out_for_delivery, 4, "Polite")
    assert result == {"average_rating": 4, "ratings": 1}
    with pytest.raises(Conflict):
        delivery.rate_agent(db, shop["customer"], out_for_delivery, 5)
    with pytest.raises(Forbidden):
        delivery.rate_agent(db, make_user(db), out_for_delivery, 5)
    with pytest.raises(ValidationFailed):
        delivery.rate_agent(db, shop["customer"], out_for_delivery, 6)


def test_average_rating():
    assert delivery.average_rating([]) == 0
    assert delivery.average_rating([{"rating": 5}, {"rating": 4}, {"rating": 3}]) == 4
    assert delivery.average_rating([{"rating": 5}, {"rating": 4}]) == 4.5


def test_stale_average_is_not_stored(db, shop, out_for_delivery):
    _deliver(db, shop, out_for_delivery)
    delivery.rate_agent(db, shop["customer"], out_for_delivery, 2)
    late = {"order_id": "other-order", "rating": 5, "comment": None, "created_at": utcnow()}
    db["deliveryagent"].update_one({"_id": shop["agent"]["_id"]}, {"$push": {"ratings": late}})

    stale = db["deliveryagent"].find_one({"_id": shop["agent"]["_id"]})["ratings"][:1]
    assert delivery.store_average(db, shop["agent"]["_id"], stale) is False
    assert db["deliveryagent"].find_one({"_id": shop["agent"]["_id"]})["average_rating"] == 2

    current = db["deliveryagent"].find_one({"_id": shop["agent"]["_id"]})["ratings"]
    assert delivery.store_average(db, shop["agent"]["_id"], current) is True
    assert db["deliveryagent"].find_one({"_id": shop["agent"]["_id"]})["average_rating"] == 3.5
