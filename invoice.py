"""
Invoice payloads for delivered orders.

Only the data is assembled here; turning it into a PDF is left to the
document renderer.
"""
import time

from database import as_utc, to_object_id, utcnow
from errors import NotFound, PreconditionFailed
from orders import load_order
from permissions import require, seller_ids
from seller_view import seller_items

COMPANY = {
    "name": "Marketplace Internet Private Limited",
    "address": "Outer Ring Road, Bengaluru, 560103, Karnataka, India",
}


def invoice_number(order_number: str) -> str:
    return f"INV-{int(time.time() * 1000)}-{order_number}"


def _seller_details(db, seller_id: str) -> dict:
    seller = db["user"].find_one({"_id": to_object_id(seller_id, "Seller")})
    if not seller:
        raise NotFound("Seller not found")
    info = seller.get("seller_info") or {}
    return {
        "id": seller_id,
        "business_name": info.get("business_name") or seller.get("name"),
        "business_address": info.get("business_address"),
        "gst_number": info.get("gst_number"),
        "pan_number": info.get("pan_number"),
    }


def build_invoice(db, actor: dict, order_id: str) -> dict:
    order = load_order(db, order_id)
    require(actor, "order:invoice", order)
    if order.get("status") != "delivered":
        raise PreconditionFailed("Invoice is only available for delivered orders")

    customer = db["user"].find_one({"_id": to_object_id(order["user_id"], "User")}, {"name": 1, "email": 1})
    if actor.get("role") == "seller":
        items = seller_items(order, actor["id"])
        sellers = [actor["id"]]
        tax_amount = shipping_amount = 0
    else:
        items = order["order_items"]
        sellers = sorted(s for s in seller_ids(order) if s)
        tax_amount = order.get("tax_amount", 0)
        shipping_amount = order.get("shipping_amount", 0)

    lines = [
        {
            "name": i["name"],
            "quantity": i["quantity"],
            "unit_price": i["price"],
            "line_total": round(i["price"] * i["quantity"], 2),
        }
        for i in items
    ]
    subtotal = round(sum(line["line_total"] for line in lines), 2)
    created_at = as_utc(order.get("created_at"))
    return {
        "invoice_number": invoice_number(order["order_number"]),
        "order_number": order["order_number"],
        "order_date": created_at.date().isoformat() if created_at else None,
        "invoice_date": utcnow().date().isoformat(),
        "company": COMPANY,
        "sellers": [_seller_details(db, s) for s in sellers],
        "customer": {"name": customer.get("name"), "email": customer.get("email")} if customer else None,
        "shipping_address": order.get("shipping_address"),
        "payment_method": order.get("payment_method"),
        "items": lines,
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "shipping_amount": shipping_amount,
        "total": round(subtotal + tax_amount + shipping_amount, 2),
    }
