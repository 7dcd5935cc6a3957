"""
Delivery agents and the OTP hand-off.

Once an order is out for delivery, a 6-digit code is issued to the customer.
The agent collects it at the door and submits it; only a matching, unexpired,
unlocked code moves the order to `delivered`. Issuing a code replaces any
earlier one, and too many wrong submissions lock the code until a new one is
generated.
"""
import logging
import secrets
from datetime import timedelta
from typing import List, Optional

from pymongo import ReturnDocument

import notifications
from config import settings
from database import as_utc, create_document, get_documents, serialize_doc, to_object_id, utcnow
from errors import Conflict, Forbidden, NotFound, PreconditionFailed, ValidationFailed
from orders import agent_profile, load_order, present_order, transition
from permissions import require, require_role
from schemas import AgentRating, DeliveryAgent, DeliveryAttempt, User

logger = logging.getLogger(__name__)

OTP_MIN = 100000
OTP_MAX = 999999


def new_otp() -> str:
    # uniform over [100000, 999999]
    return str(OTP_MIN + secrets.randbelow(OTP_MAX - OTP_MIN + 1))


def _attempt(status: str, notes: str) -> dict:
    return DeliveryAttempt(attempted_at=utcnow(), status=status, notes=notes).model_dump()


def _own_agent(db, actor: dict) -> dict:
    require_role(actor, "delivery")
    agent = agent_profile(db, actor)
    if not agent:
        raise NotFound("Delivery agent not found")
    return agent


# ----------------------- Hand-off -----------------------

def start_delivery(db, actor: dict, order_id: str) -> dict:
    order = load_order(db, order_id)
    require(actor, "order:start_delivery", order, agent_profile(db, actor))
    updated = transition(db, order, "start_delivery")
    notifications.emit(db, order["user_id"], notifications.OUT_FOR_DELIVERY, order_id,
                       {"order_number": order["order_number"]})
    return updated


def generate_otp(db, actor: dict, order_id: str) -> dict:
    order = load_order(db, order_id)
    require(actor, "order:generate_otp", order, agent_profile(db, actor))
    if order.get("status") != "out_for_delivery":
        raise PreconditionFailed("Order is not ready for delivery")

    otp = new_otp()
    now = utcnow()
    expiry = now + timedelta(minutes=settings.OTP_TTL_MINUTES)
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "out_for_delivery"},
        {"$set": {
            "delivery_otp": otp,
            "delivery_otp_issued_at": now,
            "delivery_otp_expiry": expiry,
            "delivery_otp_attempts": 0,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise PreconditionFailed("Order is not ready for delivery")

    logger.info("Delivery OTP issued for order %s by %s", order["order_number"], actor.get("role"))
    notifications.emit(db, order["user_id"], notifications.OTP_GENERATED, order_id,
                       {"order_number": order["order_number"], "otp": otp})

    result = {"order_id": order_id, "expires_at": expiry.isoformat(), "message": "OTP sent to customer"}
    if actor.get("role") == "seller":
        result["otp"] = otp
    return result


def complete_delivery(db, actor: dict, order_id: str, otp: str) -> dict:
    order = load_order(db, order_id)
    agent = agent_profile(db, actor)
    require(actor, "order:complete", order, agent)
    if order.get("status") != "out_for_delivery":
        raise PreconditionFailed("Order is not out for delivery")

    stored = order.get("delivery_otp")
    if not stored:
        raise PreconditionFailed("No delivery OTP has been generated")
    if order.get("delivery_otp_attempts", 0) >= settings.OTP_MAX_ATTEMPTS:
        raise PreconditionFailed("OTP locked after too many failed attempts. Generate a new code.")
    expiry = as_utc(order.get("delivery_otp_expiry"))
    if expiry is not None and utcnow() > expiry:
        raise PreconditionFailed("OTP has expired. Generate a new code.")

    submitted = str(otp or "").strip()
    if not secrets.compare_digest(submitted.encode(), stored.encode()):
        db["order"].update_one(
            {"_id": order["_id"], "delivery_otp": stored},
            {
                "$inc": {"delivery_otp_attempts": 1},
                "$push": {"delivery_attempts": _attempt("failed", "Invalid OTP submitted")},
                "$set": {"updated_at": utcnow()},
            },
        )
        logger.warning("Invalid delivery OTP for order %s (attempt %d)",
                       order["order_number"], order.get("delivery_otp_attempts", 0) + 1)
        raise PreconditionFailed("Invalid OTP")

    now = utcnow()
    delivered = {
        "delivered_at": now,
        "is_delivered": True,
        "delivery_otp": None,
        "delivery_otp_issued_at": None,
        "delivery_otp_expiry": None,
        "delivery_otp_attempts": 0,
    }
    if order.get("payment_method") == "cod" and not order.get("is_paid"):
        delivered.update({"is_paid": True, "paid_at": now, "payment_status": "completed"})
    updated = transition(
        db, order, "complete", delivered,
        push={"delivery_attempts": _attempt("success", "Delivery completed successfully")},
        guard={"delivery_otp": stored},
    )

    db["deliveryagent"].update_one(
        {"_id": agent["_id"]},
        {"$inc": {"total_deliveries": 1}, "$set": {"active_order_id": None, "updated_at": now}},
    )
    logger.info("Order %s delivered by agent %s", order["order_number"], agent["_id"])
    notifications.emit(db, order["user_id"], notifications.ORDER_DELIVERED, order_id,
                       {"order_number": order["order_number"]})
    return updated


def record_attempt(db, actor: dict, order_id: str, status: str = "customer_unavailable",
                   notes: Optional[str] = None) -> dict:
    """Log an unsuccessful visit without changing the order status."""
    if status not in ("failed", "customer_unavailable"):
        raise ValidationFailed("Attempt status must be 'failed' or 'customer_unavailable'")
    order = load_order(db, order_id)
    require(actor, "order:attempt", order, agent_profile(db, actor))
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "out_for_delivery"},
        {"$push": {"delivery_attempts": _attempt(status, notes or "")}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise PreconditionFailed("Order is not out for delivery")
    return updated


# ----------------------- Agents -----------------------

def register_agent(db, name: str, email: str, password_hash: str, phone: Optional[str],
                   vehicle_type: str, vehicle_number: str, license_number: str,
                   aadhar_number: str, area: str) -> dict:
    if db["user"].find_one({"email": email}):
        raise Conflict("Email already registered")
    for field, value, label in (
        ("vehicle_number", vehicle_number, "Vehicle number"),
        ("license_number", license_number, "License number"),
        ("aadhar_number", aadhar_number, "Aadhar number"),
    ):
        if db["deliveryagent"].find_one({field: value}):
            raise Conflict(f"{label} already registered")

    user = User(name=name, email=email, password_hash=password_hash, phone=phone, role="delivery")
    user_id = create_document(db, "user", user)
    agent = DeliveryAgent(
        user_id=user_id,
        vehicle_type=vehicle_type,
        vehicle_number=vehicle_number,
        license_number=license_number,
        aadhar_number=aadhar_number,
        area=area,
    )
    agent_id = create_document(db, "deliveryagent", agent)
    logger.info("Delivery agent %s registered (user %s), awaiting verification", agent_id, user_id)
    return {"user_id": user_id, "agent_id": agent_id}


def verify_agent(db, actor: dict, agent_id: str, verified: bool = True) -> dict:
    require(actor, "order:admin")
    updated = db["deliveryagent"].find_one_and_update(
        {"_id": to_object_id(agent_id, "Delivery agent")},
        {"$set": {"is_verified": verified, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Delivery agent not found")
    return serialize_doc(updated)


def set_availability(db, actor: dict, is_available: bool) -> dict:
    agent = _own_agent(db, actor)
    updated = db["deliveryagent"].find_one_and_update(
        {"_id": agent["_id"]},
        {"$set": {"is_available": is_available, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return serialize_doc(updated)


def update_location(db, actor: dict, latitude: float, longitude: float) -> dict:
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        raise ValidationFailed("Invalid coordinates")
    agent = _own_agent(db, actor)
    db["deliveryagent"].update_one(
        {"_id": agent["_id"]},
        # GeoJSON order is [longitude, latitude]
        {"$set": {"current_location": {"type": "Point", "coordinates": [longitude, latitude]},
                  "updated_at": utcnow()}},
    )
    return {"message": "Location updated successfully"}


def available_agents(db, area: Optional[str] = None) -> List[dict]:
    query = {"is_available": True, "is_verified": True}
    if area:
        query["area"] = area
    agents = []
    for agent in get_documents(db, "deliveryagent", query):
        doc = serialize_doc(agent)
        for key in ("license_number", "aadhar_number"):
            doc.pop(key, None)
        user = db["user"].find_one({"_id": to_object_id(agent["user_id"], "User")},
                                   {"name": 1, "email": 1, "phone": 1})
        doc["user"] = serialize_doc(user) if user else None
        agents.append(doc)
    return agents


def agent_orders(db, actor: dict) -> List[dict]:
    agent = _own_agent(db, actor)
    if not agent.get("is_available"):
        raise Forbidden("You are not eligible for delivery")
    cursor = db["order"].find({
        "delivery_agent_id": str(agent["_id"]),
        "status": {"$in": ["shipped", "out_for_delivery"]},
    }).sort("updated_at", -1)
    return [present_order(o, actor) for o in cursor]


def rate_agent(db, actor: dict, order_id: str, rating: int, comment: Optional[str] = None) -> dict:
    if not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationFailed("Rating must be between 1 and 5")
    order = load_order(db, order_id)
    require(actor, "order:rate", order)
    if order.get("status") != "delivered":
        raise PreconditionFailed("Only delivered orders can be rated")
    if not order.get("delivery_agent_id"):
        raise PreconditionFailed("Order has no delivery agent")

    order_key = str(order["_id"])
    entry = AgentRating(order_id=order_key, rating=rating, comment=comment, created_at=utcnow())
    agent_oid = to_object_id(order["delivery_agent_id"], "Delivery agent")
    updated = db["deliveryagent"].find_one_and_update(
        {"_id": agent_oid, "ratings.order_id": {"$ne": order_key}},
        {"$push": {"ratings": entry.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if not db["deliveryagent"].find_one({"_id": agent_oid}):
            raise NotFound("Delivery agent not found")
        raise Conflict("Delivery already rated")

    ratings = updated.get("ratings", [])
    average = average_rating(ratings)
    store_average(db, agent_oid, ratings)
    return {"average_rating": average, "ratings": len(ratings)}


def store_average(db, agent_oid, ratings: List[dict]) -> bool:
    """
    Write the mean of `ratings` unless the agent has gained ratings since they
    were read. A later rater holds the longer list and writes the newer mean.
    """
    res = db["deliveryagent"].update_one(
        {"_id": agent_oid, "ratings": {"$size": len(ratings)}},
        {"$set": {"average_rating": average_rating(ratings), "updated_at": utcnow()}},
    )
    return res.matched_count == 1


def average_rating(ratings: List[dict]) -> float:
    if not ratings:
        return 0
    return sum(r["rating"] for r in ratings) / len(ratings)
