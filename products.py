import logging
import time

from pydantic import ValidationError
from pymongo import ReturnDocument

import categories
from database import create_document, serialize_doc, to_object_id, utcnow
from errors import Forbidden, NotFound, ValidationFailed
from permissions import require_role
from schemas import Product

logger = logging.getLogger(__name__)


def generate_sku(seller_id: str) -> str:
    return f"{seller_id[-6:]}-{int(time.time() * 1000)}"


def _owned_product(db, actor: dict, product_id: str) -> dict:
    require_role(actor, "seller")
    product = db["product"].find_one({"_id": to_object_id(product_id, "Product")})
    if not product:
        raise NotFound("Product not found")
    if product.get("seller_id") != actor["id"]:
        raise Forbidden("Access denied")
    return product


def create_product(db, actor: dict, data: dict) -> dict:
    require_role(actor, "seller")
    data = categories.apply_category(db, {k: v for k, v in data.items() if v is not None})
    if not data.get("category"):
        raise ValidationFailed("Category is required")
    product = Product(**data, sku=generate_sku(actor["id"]), seller_id=actor["id"])
    product_id = create_document(db, "product", product)
    logger.info("Product %s (%s) created by seller %s", product_id, product.sku, actor["id"])
    return serialize_doc(db["product"].find_one({"_id": to_object_id(product_id)}))


def update_product(db, actor: dict, product_id: str, changes: dict) -> dict:
    product = _owned_product(db, actor, product_id)
    update = categories.apply_category(db, {k: v for k, v in changes.items() if v is not None})
    # validate the merged document before writing
    merged = {k: v for k, v in product.items() if k in Product.model_fields}
    merged.update(update)
    try:
        Product(**merged)
    except ValidationError as e:
        raise ValidationFailed(f"Invalid product data: {e.errors()[0].get('msg')}")
    update["updated_at"] = utcnow()
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"]}, {"$set": update}, return_document=ReturnDocument.AFTER
    )
    return serialize_doc(updated)


def delete_product(db, actor: dict, product_id: str):
    product = _owned_product(db, actor, product_id)
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("Product %s deleted by seller %s", product_id, actor["id"])


def seller_products(db, actor: dict, page: int = 1, limit: int = 10) -> dict:
    require_role(actor, "seller")
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    query = {"seller_id": actor["id"]}
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "products": [serialize_doc(p) for p in cursor],
        "pagination": {
            "current_page": page,
            "total_pages": (total + limit - 1) // limit,
            "total_products": total,
        },
    }


def list_products(db, page: int = 1, limit: int = 20):
    page = max(page, 1)
    limit = max(min(limit, 100), 1)
    cursor = db["product"].find({"is_active": True}).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return [serialize_doc(p) for p in cursor]


def get_product(db, product_id: str, include_inactive: bool = False) -> dict:
    query = {"_id": to_object_id(product_id, "Product")}
    if not include_inactive:
        query["is_active"] = True
    product = db["product"].find_one(query)
    if not product:
        raise NotFound("Product not found")
    return serialize_doc(product)
