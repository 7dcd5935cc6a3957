"""Shopping cart, one document per user. Checkout draws from it when no items are passed."""
from database import create_document, serialize_doc, to_object_id, utcnow
from errors import NotFound, PreconditionFailed, ValidationFailed
from schemas import Cart, CartItem


def _product(db, product_id: str) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "Product"), "is_active": {"$ne": False}})
    if not product:
        raise NotFound("Product not found")
    return product


def _load(db, user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if cart is None:
        create_document(db, "cart", Cart(user_id=user_id))
        cart = db["cart"].find_one({"user_id": user_id})
    return cart


def _save(db, cart: dict):
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": cart["items"], "updated_at": utcnow()}})


def _present(db, cart: dict) -> dict:
    items = []
    for item in cart.get("items", []):
        product = db["product"].find_one(
            {"_id": to_object_id(item["product_id"], "Product")},
            {"name": 1, "price": 1, "images": 1, "stock": 1},
        )
        entry = dict(item)
        entry["product"] = serialize_doc(product) if product else None
        items.append(entry)
    return {
        "id": str(cart["_id"]),
        "user_id": cart["user_id"],
        "items": items,
        "total_items": sum(i["quantity"] for i in items),
        "total_amount": round(sum(i["price"] * i["quantity"] for i in items), 2),
    }


def get_cart(db, user_id: str) -> dict:
    return _present(db, _load(db, user_id))


def add_item(db, user_id: str, product_id: str, quantity: int = 1) -> dict:
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")
    product = _product(db, product_id)
    cart = _load(db, user_id)

    existing = next((i for i in cart["items"] if i["product_id"] == product_id), None)
    new_quantity = quantity + (existing["quantity"] if existing else 0)
    if new_quantity > product.get("stock", 0):
        raise PreconditionFailed("Insufficient stock")
    if existing:
        existing["quantity"] = new_quantity
        existing["price"] = product["price"]
    else:
        cart["items"].append(CartItem(product_id=product_id, quantity=quantity, price=product["price"]).model_dump())
    _save(db, cart)
    return _present(db, cart)


def update_item(db, user_id: str, product_id: str, quantity: int) -> dict:
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")
    product = _product(db, product_id)
    if product.get("stock", 0) < quantity:
        raise PreconditionFailed("Insufficient stock")
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    item = next((i for i in cart["items"] if i["product_id"] == product_id), None)
    if not item:
        raise NotFound("Item not found in cart")
    item["quantity"] = quantity
    item["price"] = product["price"]
    _save(db, cart)
    return _present(db, cart)


def remove_item(db, user_id: str, product_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    cart["items"] = [i for i in cart["items"] if i["product_id"] != product_id]
    _save(db, cart)
    return _present(db, cart)


def clear_cart(db, user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    cart["items"] = []
    _save(db, cart)
    return _present(db, cart)
