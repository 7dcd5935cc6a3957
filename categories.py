"""Product categories. Products keep the category name for display and a category_id reference."""
import logging
import re
from typing import List, Optional

from database import create_document, serialize_doc, to_object_id
from errors import Conflict, NotFound, ValidationFailed
from permissions import require_role
from schemas import Category

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "-", name.strip().lower())
    return re.sub(r"-+", "-", slug)


def create_category(db, actor: dict, name: str, description: Optional[str] = None,
                    image: str = "", parent_id: Optional[str] = None, sort_order: int = 0) -> dict:
    require_role(actor, "admin")
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("Category name is required")
    slug = slugify(name)
    if db["category"].find_one({"$or": [{"name": name}, {"slug": slug}]}):
        raise Conflict("Category already exists")
    if parent_id:
        get_category(db, parent_id)

    category = Category(
        name=name,
        description=description,
        slug=slug,
        image=image,
        parent_id=parent_id,
        sort_order=sort_order,
    )
    category_id = create_document(db, "category", category)
    logger.info("Category %s (%s) created", category_id, slug)
    return serialize_doc(db["category"].find_one({"_id": to_object_id(category_id)}))


def get_category(db, category_id: str) -> dict:
    category = db["category"].find_one({"_id": to_object_id(category_id, "Category"), "is_active": True})
    if not category:
        raise NotFound("Category not found")
    return category


def list_categories(db) -> List[dict]:
    cursor = db["category"].find({"is_active": True}).sort([("sort_order", 1), ("name", 1)])
    return [serialize_doc(c) for c in cursor]


def apply_category(db, data: dict) -> dict:
    """Fill `category` from `category_id` when a reference is given."""
    data = dict(data)
    if data.get("category_id"):
        data["category"] = get_category(db, data["category_id"])["name"]
    return data
