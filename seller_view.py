"""
Seller-scoped projections of shared orders.

A single order can hold items from several sellers. A seller only ever sees
their own line items and a total computed from those items; the other
sellers' lines, the order-wide amounts and the delivery OTP are dropped.
"""
from typing import Iterable, List, Optional

import inventory
from database import serialize_doc

HIDDEN_FIELDS = (
    "items_amount",
    "tax_amount",
    "shipping_amount",
    "delivery_otp",
    "delivery_otp_attempts",
    "payment_result",
)


def seller_product_ids(db, seller_id: str) -> set:
    return {str(_id) for _id in db["product"].distinct("_id", {"seller_id": seller_id})}


def seller_items(order: dict, seller_id: str, product_ids: Iterable[str] = ()) -> List[dict]:
    product_ids = set(product_ids)
    return [
        item for item in order.get("order_items", [])
        if item.get("seller_id") == seller_id or item.get("product_id") in product_ids
    ]


def project_for_seller(order: dict, seller_id: str, product_ids: Iterable[str] = ()) -> Optional[dict]:
    items = seller_items(order, seller_id, product_ids)
    if not items:
        return None
    doc = serialize_doc(order)
    for field in HIDDEN_FIELDS:
        doc.pop(field, None)
    doc["order_items"] = [dict(i) for i in items]
    doc["total_amount"] = round(sum(i["price"] * i["quantity"] for i in items), 2)
    return doc


def _seller_query(seller_id: str, product_ids: set, status: Optional[str] = None) -> dict:
    query = {"$or": [
        {"order_items.seller_id": seller_id},
        {"order_items.product_id": {"$in": list(product_ids)}},
    ]}
    if status:
        query["status"] = status
    return query


def seller_orders(db, seller_id: str, page: int = 1, limit: int = 10, status: Optional[str] = None) -> dict:
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    product_ids = seller_product_ids(db, seller_id)
    query = _seller_query(seller_id, product_ids, status)

    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    orders = [p for p in (project_for_seller(o, seller_id, product_ids) for o in cursor) if p]
    return {
        "orders": orders,
        "pagination": {
            "current_page": page,
            "total_pages": (total + limit - 1) // limit,
            "total_orders": total,
        },
    }


def seller_dashboard(db, seller_id: str) -> dict:
    product_ids = seller_product_ids(db, seller_id)
    query = _seller_query(seller_id, product_ids)

    total_revenue = 0.0
    total_orders = 0
    for order in db["order"].find(query):
        total_orders += 1
        if order.get("status") == "cancelled":
            continue
        total_revenue += sum(i["price"] * i["quantity"] for i in seller_items(order, seller_id, product_ids))

    recent = db["order"].find(query).sort("created_at", -1).limit(5)
    return {
        "total_products": len(product_ids),
        "total_orders": total_orders,
        "total_revenue": round(total_revenue, 2),
        "recent_orders": [project_for_seller(o, seller_id, product_ids) for o in recent],
        "low_stock_products": inventory.low_stock(db, seller_id),
    }
