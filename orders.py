"""
Order lifecycle.

    pending -> confirmed -> shipped -> out_for_delivery -> delivered
    pending | confirmed -> cancelled

`delivered` and `cancelled` are terminal for every actor except the audited
admin overrides at the bottom of this module. Each transition is a single
conditional write on the order's current status, so of two concurrent callers
only one can move the order, and only the winner performs side effects such
as releasing stock.
"""
import logging
import secrets
import time
from typing import Any, Dict, List, Optional, get_args

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import inventory
import notifications
import seller_view
from config import settings
from database import create_document, serialize_doc, to_object_id, utcnow
from errors import NotFound, PreconditionFailed, ValidationFailed
from permissions import is_admin, is_owner, require, seller_ids
from schemas import ORDER_STATUSES, AuditLog, Order, OrderItem, PaymentMethod, ShippingAddress

logger = logging.getLogger(__name__)

BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

ACTIVE_DELIVERY_STATUSES = ("shipped", "out_for_delivery")

# name -> (allowed from-states, to-state)
TRANSITIONS = {
    "accept": (("pending",), "confirmed"),
    "ship": (("confirmed",), "shipped"),
    "start_delivery": (("shipped",), "out_for_delivery"),
    "complete": (("out_for_delivery",), "delivered"),
    "cancel_customer": (("pending",), "cancelled"),
    "cancel_seller": (("pending", "confirmed"), "cancelled"),
}

REJECTIONS = {
    "accept": "Only pending orders can be accepted",
    "ship": "Only confirmed orders can be shipped",
    "start_delivery": "Order is not ready for delivery",
    "complete": "Order is not out for delivery",
    "cancel_customer": "Order cannot be cancelled",
    "cancel_seller": "Order cannot be cancelled",
}


def generate_order_number() -> str:
    """ORD-<ms timestamp>-<5 base36 chars>"""
    timestamp = int(time.time() * 1000)
    suffix = "".join(secrets.choice(BASE36) for _ in range(5))
    return f"ORD-{timestamp}-{suffix}"


def load_order(db, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")
    return order


def agent_profile(db, actor: dict) -> Optional[dict]:
    if actor.get("role") != "delivery":
        return None
    return db["deliveryagent"].find_one({"user_id": actor.get("id")})


def present_order(order: dict, actor: dict) -> dict:
    """Serialize an order for `actor`. Only the customer and admins see the OTP."""
    doc = serialize_doc(order)
    if not (is_owner(actor, order) or is_admin(actor)):
        doc.pop("delivery_otp", None)
    return doc


def transition(
    db,
    order: dict,
    name: str,
    extra_set: Optional[dict] = None,
    push: Optional[dict] = None,
    guard: Optional[dict] = None,
) -> dict:
    """
    Move `order` along the named transition; returns the updated document.

    `guard` adds conditions to the status check, evaluated in the same write.
    """
    from_states, to_state = TRANSITIONS[name]
    if order.get("status") not in from_states:
        raise PreconditionFailed(REJECTIONS[name])

    update: Dict[str, Any] = {"$set": {"status": to_state, "updated_at": utcnow(), **(extra_set or {})}}
    if push:
        update["$push"] = push
    query = {"_id": order["_id"], "status": {"$in": list(from_states)}}
    query.update(guard or {})
    updated = db["order"].find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
    if updated is None:
        # lost a race with another writer
        raise PreconditionFailed(REJECTIONS[name])
    logger.info("Order %s: %s -> %s", order.get("order_number"), order.get("status"), to_state)
    return updated


def _resolve_address(user: dict, address_id: Optional[str]) -> ShippingAddress:
    addresses = user.get("addresses", [])
    if address_id:
        selected = next((a for a in addresses if a.get("id") == address_id), None)
        if not selected:
            raise ValidationFailed("Invalid delivery address")
    else:
        selected = next((a for a in addresses if a.get("is_default")), None)
        if not selected:
            raise ValidationFailed("No delivery address on file")
    return ShippingAddress(
        name=selected["name"],
        street=selected["street"],
        city=selected["city"],
        state=selected["state"],
        pincode=selected["pincode"],
        phone=selected["phone"],
    )


def _requested_lines(db, user_id: str, items: Optional[List[dict]]) -> List[tuple]:
    if items is None:
        cart = db["cart"].find_one({"user_id": user_id}) or {}
        items = cart.get("items", [])
    if not items:
        raise ValidationFailed("No order items")

    lines = []
    for item in items:
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if not product_id:
            raise ValidationFailed("Order item is missing product_id")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationFailed("Quantity must be at least 1")
        lines.append((str(product_id), quantity))
    return lines


def _insert_order(db, order_data: dict) -> str:
    for attempt in range(settings.ORDER_NUMBER_RETRIES):
        try:
            return create_document(db, "order", order_data)
        except DuplicateKeyError:
            logger.warning("Order number collision on %s, regenerating", order_data["order_number"])
            order_data["order_number"] = generate_order_number()
    raise PreconditionFailed("Could not allocate an order number, please retry")


def create_order(
    db,
    actor: dict,
    items: Optional[List[dict]] = None,
    address_id: Optional[str] = None,
    payment_method: str = "cod",
    tax_amount: float = 0,
    shipping_amount: float = 0,
    notes: Optional[str] = None,
) -> dict:
    require(actor, "order:create")
    user = db["user"].find_one({"_id": to_object_id(actor["id"], "User")})
    if not user:
        raise NotFound("User not found")

    lines = _requested_lines(db, actor["id"], items)
    shipping_address = _resolve_address(user, address_id)
    if tax_amount < 0 or shipping_amount < 0:
        raise ValidationFailed("Tax and shipping amounts cannot be negative")
    if payment_method not in get_args(PaymentMethod):
        raise ValidationFailed(f"Unsupported payment method: {payment_method}")

    products = inventory.reserve_all(db, lines)
    try:
        order_items = []
        for (product_id, quantity), product in zip(lines, products):
            images = product.get("images") or []
            order_items.append(OrderItem(
                product_id=product_id,
                seller_id=product["seller_id"],
                name=product["name"],
                image=images[0] if images else None,
                price=product["price"],
                quantity=quantity,
            ))
        items_amount = round(sum(i.price * i.quantity for i in order_items), 2)
        order = Order(
            order_number=generate_order_number(),
            user_id=actor["id"],
            order_items=order_items,
            shipping_address=shipping_address,
            payment_method=payment_method,
            items_amount=items_amount,
            tax_amount=tax_amount,
            shipping_amount=shipping_amount,
            total_amount=round(items_amount + tax_amount + shipping_amount, 2),
            notes=notes,
        )
        order_id = _insert_order(db, order.model_dump())
    except Exception:
        logger.exception("Order creation failed for user %s, releasing stock", actor["id"])
        inventory.release_all(db, lines)
        raise

    db["cart"].update_one({"user_id": actor["id"]}, {"$set": {"items": [], "updated_at": utcnow()}})
    created = load_order(db, order_id)
    logger.info("Order %s created for user %s (%d items)", created["order_number"], actor["id"], len(order_items))

    for seller_id in {i.seller_id for i in order_items}:
        notifications.emit(db, seller_id, notifications.ORDER_PLACED, order_id,
                           {"order_number": created["order_number"]})
    return created


# ----------------------- Seller transitions -----------------------

def accept_order(db, actor: dict, order_id: str) -> dict:
    order = load_order(db, order_id)
    require(actor, "order:accept", order)
    updated = transition(db, order, "accept")
    notifications.emit(db, order["user_id"], notifications.ORDER_CONFIRMED, order_id,
                       {"order_number": order["order_number"]})
    return updated


def ship_order(db, actor: dict, order_id: str, tracking_number: Optional[str] = None) -> dict:
    order = load_order(db, order_id)
    require(actor, "order:ship", order)
    updated = transition(db, order, "ship", {"tracking_number": tracking_number})
    notifications.emit(db, order["user_id"], notifications.ORDER_SHIPPED, order_id,
                       {"order_number": order["order_number"], "tracking_number": tracking_number})
    return updated


def cancel_by_seller(db, actor: dict, order_id: str, reason: Optional[str] = None) -> dict:
    order = load_order(db, order_id)
    require(actor, "order:cancel_seller", order)
    updated = transition(db, order, "cancel_seller", {"notes": reason or "Cancelled by seller"})
    own_lines = [
        (i["product_id"], i["quantity"]) for i in order["order_items"] if i.get("seller_id") == actor["id"]
    ]
    inventory.release_all(db, own_lines)
    logger.info("Order %s cancelled by seller %s", order["order_number"], actor["id"])
    notifications.emit(db, order["user_id"], notifications.ORDER_CANCELLED, order_id,
                       {"order_number": order["order_number"], "reason": reason or "Cancelled by seller"})
    return updated


def assign_delivery(db, actor: dict, order_id: str, agent_id: str) -> dict:
    order = load_order(db, order_id)
    require(actor, "order:assign", order)
    if order.get("status") != "shipped":
        raise PreconditionFailed("Only shipped orders can be assigned for delivery")

    agent_oid = to_object_id(agent_id, "Delivery agent")
    agent = db["deliveryagent"].find_one({"_id": agent_oid})
    if not agent:
        raise NotFound("Delivery agent not found")
    if not agent.get("is_verified"):
        raise PreconditionFailed("Delivery agent is not verified")
    if not agent.get("is_available"):
        raise PreconditionFailed("Delivery agent is not available")

    order_key = str(order["_id"])
    claimed = db["deliveryagent"].find_one_and_update(
        {"_id": agent_oid, "active_order_id": {"$in": [None, order_key]}},
        {"$set": {"active_order_id": order_key, "updated_at": utcnow()}},
    )
    if claimed is None:
        raise PreconditionFailed("Delivery agent is busy with another order")

    previous = order.get("delivery_agent_id")
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "shipped"},
        {"$set": {"delivery_agent_id": str(agent_oid), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        db["deliveryagent"].update_one(
            {"_id": agent_oid, "active_order_id": order_key}, {"$set": {"active_order_id": None}}
        )
        raise PreconditionFailed("Only shipped orders can be assigned for delivery")

    if previous and previous != str(agent_oid):
        db["deliveryagent"].update_one(
            {"_id": to_object_id(previous), "active_order_id": order_key}, {"$set": {"active_order_id": None}}
        )
    logger.info("Order %s assigned to delivery agent %s", order["order_number"], agent_id)
    notifications.emit(db, agent["user_id"], notifications.DELIVERY_ASSIGNED, order_id,
                       {"order_number": order["order_number"]})
    return updated


# ----------------------- Customer operations -----------------------

def cancel_by_customer(db, actor: dict, order_id: str) -> dict:
    order = load_order(db, order_id)
    require(actor, "order:cancel_customer", order)
    updated = transition(db, order, "cancel_customer")
    inventory.release_all(db, [(i["product_id"], i["quantity"]) for i in order["order_items"]])
    logger.info("Order %s cancelled by customer", order["order_number"])
    for seller_id in seller_ids(order):
        notifications.emit(db, seller_id, notifications.ORDER_CANCELLED, order_id,
                           {"order_number": order["order_number"]})
    return updated


def mark_paid(db, actor: dict, order_id: str, payment_result: Optional[dict] = None) -> dict:
    """Record a (simulated) payment capture."""
    order = load_order(db, order_id)
    require(actor, "order:pay", order)
    if order.get("status") == "cancelled":
        raise PreconditionFailed("Cancelled orders cannot be paid")
    now = utcnow()
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "is_paid": False, "status": {"$ne": "cancelled"}},
        {"$set": {
            "is_paid": True,
            "paid_at": now,
            "payment_status": "completed",
            "payment_result": payment_result or {},
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise PreconditionFailed("Order is already paid")
    return updated


def list_orders_for_user(db, actor: dict) -> List[dict]:
    cursor = db["order"].find({"user_id": actor["id"]}).sort("created_at", -1)
    return [present_order(o, actor) for o in cursor]


def get_order_for_actor(db, actor: dict, order_id: str) -> dict:
    order = load_order(db, order_id)
    require(actor, "order:view", order, agent_profile(db, actor))
    if actor.get("role") == "seller":
        return seller_view.project_for_seller(order, actor["id"])
    return present_order(order, actor)


# ----------------------- Admin overrides -----------------------

def _audit(db, actor: dict, action: str, order: dict, old_status: Optional[str], new_status: str):
    at = utcnow()
    logger.warning(
        "ADMIN OVERRIDE %s by %s on order %s: %s -> %s",
        action, actor.get("id"), order.get("order_number"), old_status, new_status,
    )
    create_document(db, "auditlog", AuditLog(
        actor_id=actor["id"],
        action=action,
        order_id=str(order["_id"]),
        old_status=old_status,
        new_status=new_status,
        at=at,
    ))


def _release_agent(db, order: dict):
    """Free the agent holding `order`, if any."""
    if order.get("delivery_agent_id"):
        db["deliveryagent"].update_one(
            {"_id": to_object_id(order["delivery_agent_id"]), "active_order_id": str(order["_id"])},
            {"$set": {"active_order_id": None, "updated_at": utcnow()}},
        )


def admin_force_deliver(db, actor: dict, order_id: str) -> dict:
    require(actor, "order:admin")
    _id = to_object_id(order_id, "Order")
    now = utcnow()
    before = db["order"].find_one_and_update(
        {"_id": _id},
        {"$set": {
            "status": "delivered",
            "is_delivered": True,
            "delivered_at": now,
            "delivery_otp": None,
            "delivery_otp_expiry": None,
            "updated_at": now,
        }},
        return_document=ReturnDocument.BEFORE,
    )
    if before is None:
        raise NotFound("Order not found")
    _release_agent(db, before)
    _audit(db, actor, "force_deliver", before, before.get("status"), "delivered")
    return load_order(db, order_id)


def admin_set_status(db, actor: dict, order_id: str, status: str) -> dict:
    """Unconditional status override. No stock or OTP side effects; the
    assigned agent is freed unless the order stays in a delivery status.
    """
    require(actor, "order:admin")
    if status not in ORDER_STATUSES:
        raise ValidationFailed(f"Invalid status: {status}")
    _id = to_object_id(order_id, "Order")
    before = db["order"].find_one_and_update(
        {"_id": _id},
        {"$set": {"status": status, "updated_at": utcnow()}},
        return_document=ReturnDocument.BEFORE,
    )
    if before is None:
        raise NotFound("Order not found")
    if status not in ACTIVE_DELIVERY_STATUSES:
        _release_agent(db, before)
    _audit(db, actor, "set_status", before, before.get("status"), status)
    return load_order(db, order_id)


def list_all_orders(db, actor: dict, page: int = 1, limit: int = 20) -> dict:
    require(actor, "order:admin")
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    total = db["order"].count_documents({})
    cursor = db["order"].find({}).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "orders": [serialize_doc(o) for o in cursor],
        "pagination": {
            "current_page": page,
            "total_pages": (total + limit - 1) // limit,
            "total_orders": total,
        },
    }
