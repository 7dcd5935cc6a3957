"""
Inventory ledger: per-product stock, reserved at checkout and released on
cancellation.

Stock only ever moves through a single conditional update per product, so two
checkouts racing for the last units cannot both succeed. Multi-item
reservations keep an undo log and give back what they took if a later line
fails.
"""
import logging
from typing import Iterable, List, Optional, Tuple

from pymongo import ReturnDocument

from config import settings
from database import serialize_doc, to_object_id, utcnow
from errors import NotFound, PreconditionFailed, ValidationFailed

logger = logging.getLogger(__name__)


def reserve(db, product_id: str, qty: int) -> dict:
    """Atomically take `qty` units of a product. Returns the updated product."""
    if qty < 1:
        raise ValidationFailed("Quantity must be at least 1")
    _id = to_object_id(product_id, "Product")
    updated = db["product"].find_one_and_update(
        {"_id": _id, "stock": {"$gte": qty}, "is_active": {"$ne": False}},
        {"$inc": {"stock": -qty}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        return updated

    product = db["product"].find_one({"_id": _id})
    if not product:
        raise NotFound(f"Product {product_id} not found")
    if product.get("is_active") is False:
        raise PreconditionFailed(f"{product.get('name')} is not available")
    raise PreconditionFailed(
        f"Insufficient stock for {product.get('name')}. Available: {product.get('stock', 0)}"
    )


def release(db, product_id: str, qty: int) -> bool:
    """Give `qty` units back. Returns False if the product no longer exists."""
    res = db["product"].update_one(
        {"_id": to_object_id(product_id, "Product")},
        {"$inc": {"stock": qty}, "$set": {"updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        logger.warning("Stock release skipped, product %s no longer exists (qty=%s)", product_id, qty)
        return False
    return True


def reserve_all(db, items: Iterable[Tuple[str, int]]) -> List[dict]:
    """
    Reserve every (product_id, qty) pair or none of them.

    On the first failure all reservations already applied are released and
    the original error is re-raised.
    """
    applied: List[Tuple[str, int]] = []
    products = []
    try:
        for product_id, qty in items:
            products.append(reserve(db, product_id, qty))
            applied.append((product_id, qty))
    except Exception:
        if applied:
            logger.info("Rolling back %d stock reservation(s)", len(applied))
            release_all(db, applied)
        raise
    return products


def release_all(db, items: Iterable[Tuple[str, int]]):
    for product_id, qty in items:
        release(db, product_id, qty)


def low_stock(db, seller_id: str, threshold: Optional[int] = None, limit: int = 10) -> List[dict]:
    if threshold is None:
        threshold = settings.LOW_STOCK_THRESHOLD
    cursor = (
        db["product"]
        .find({"seller_id": seller_id, "stock": {"$lt": threshold}}, {"name": 1, "stock": 1, "sku": 1})
        .sort("stock", 1)
        .limit(limit)
    )
    return [serialize_doc(p) for p in cursor]
