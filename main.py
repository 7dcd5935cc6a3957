import hashlib
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Literal, Optional

import jwt
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field

import addresses
import cart
import categories
import database
import delivery
import inventory
import invoice
import orders
import products
import seller_view
from config import settings
from database import create_document, serialize_doc, to_object_id
from errors import MarketplaceError
from permissions import require_role
from schemas import Product as ProductSchema, Role, SellerInfo, User as UserSchema, VehicleType

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


# ----------------------- Utils -----------------------
JWT_ALGO = "HS256"
security = HTTPBearer()


def get_db():
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return database.db


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=settings.JWT_EXPIRE_DAYS)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def public_user(user: dict) -> dict:
    suser = serialize_doc(user)
    suser.pop("password_hash", None)
    return suser


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security), db=Depends(get_db)):
    token = credentials.credentials
    payload = decode_token(token)
    user_id = payload.get("id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    try:
        user = db["user"].find_one({"_id": to_object_id(user_id, "User")})
    except MarketplaceError:
        user = None
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return public_user(user)


def token_response(user: dict) -> dict:
    token = create_token({"id": user["id"], "email": user["email"], "role": user["role"]})
    return {"token": token, "user": user}


# ----------------------- Models -----------------------
class SignupBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    role: Literal["customer", "seller"] = "customer"
    seller_info: Optional[SellerInfo] = None


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class DeliveryRegisterBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    vehicle_type: VehicleType
    vehicle_number: str
    license_number: str
    aadhar_number: str
    area: str


class ProductCreateBody(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    category_id: Optional[str] = None
    brand: str
    images: List[str] = []
    stock: int = Field(0, ge=0)
    specifications: List[dict] = []
    features: List[str] = []
    warranty: Optional[str] = None
    return_policy: Optional[str] = None
    delivery_time: Optional[str] = None
    is_active: bool = True


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    category_id: Optional[str] = None
    brand: Optional[str] = None
    images: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    specifications: Optional[List[dict]] = None
    features: Optional[List[str]] = None
    warranty: Optional[str] = None
    return_policy: Optional[str] = None
    delivery_time: Optional[str] = None
    is_active: Optional[bool] = None


class CartItemBody(BaseModel):
    product_id: str
    quantity: int = 1


class AddressBody(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    phone: Optional[str] = None
    is_default: Optional[bool] = None


class OrderItemBody(BaseModel):
    product_id: str
    quantity: int


class OrderCreateBody(BaseModel):
    items: Optional[List[OrderItemBody]] = None
    address_id: Optional[str] = None
    payment_method: str = "cod"
    tax_amount: float = 0
    shipping_amount: float = 0
    notes: Optional[str] = None


class PaymentBody(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    update_time: Optional[str] = None
    email_address: Optional[str] = None


class ShipBody(BaseModel):
    tracking_number: Optional[str] = None


class CancelBody(BaseModel):
    reason: Optional[str] = None


class AssignBody(BaseModel):
    agent_id: str


class OtpBody(BaseModel):
    otp: str


class AttemptBody(BaseModel):
    status: str = "customer_unavailable"
    notes: Optional[str] = None


class LocationBody(BaseModel):
    latitude: float
    longitude: float


class AvailabilityBody(BaseModel):
    is_available: bool


class RatingBody(BaseModel):
    rating: int
    comment: Optional[str] = None


class StatusBody(BaseModel):
    status: str


class VerifyBody(BaseModel):
    verified: bool = True


class CategoryBody(BaseModel):
    name: str
    description: Optional[str] = None
    image: str = ""
    parent_id: Optional[str] = None
    sort_order: int = 0


class UserUpdateBody(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": f"{settings.PROJECT_NAME} running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if settings.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/auth/signup", status_code=201)
def signup(body: SignupBody, db=Depends(get_db)):
    if db["user"].find_one({"email": body.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        phone=body.phone,
        role=body.role,
        seller_info=body.seller_info if body.role == "seller" else None,
    )
    user_id = create_document(db, "user", user)
    return token_response(public_user(db["user"].find_one({"_id": to_object_id(user_id)})))


@app.post("/auth/login")
def login(body: LoginBody, db=Depends(get_db)):
    user = db["user"].find_one({"email": body.email})
    if not user or user.get("password_hash") != hash_password(body.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return token_response(public_user(user))


@app.get("/auth/me")
def me(user=Depends(get_current_user)):
    return user


@app.post("/delivery/register", status_code=201)
def register_delivery(body: DeliveryRegisterBody, db=Depends(get_db)):
    ids = delivery.register_agent(
        db,
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        phone=body.phone,
        vehicle_type=body.vehicle_type,
        vehicle_number=body.vehicle_number,
        license_number=body.license_number,
        aadhar_number=body.aadhar_number,
        area=body.area,
    )
    return {**ids, "message": "Registration successful. Please wait for admin verification."}


# ----------------------- Products -----------------------
@app.get("/products")
def list_products(page: int = 1, limit: int = 20, db=Depends(get_db)):
    return products.list_products(db, page, limit)


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return products.get_product(db, product_id)


@app.get("/categories")
def list_categories(db=Depends(get_db)):
    return categories.list_categories(db)


@app.post("/categories", status_code=201)
def create_category(body: CategoryBody, user=Depends(get_current_user), db=Depends(get_db)):
    return categories.create_category(db, user, **body.model_dump())


# ----------------------- Seller -----------------------
@app.get("/seller/products")
def seller_products(page: int = 1, limit: int = 10, user=Depends(get_current_user), db=Depends(get_db)):
    return products.seller_products(db, user, page, limit)


@app.post("/seller/products", status_code=201)
def create_product(body: ProductCreateBody, user=Depends(get_current_user), db=Depends(get_db)):
    return products.create_product(db, user, body.model_dump())


@app.put("/seller/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(get_current_user), db=Depends(get_db)):
    return products.update_product(db, user, product_id, body.model_dump(exclude_none=True))


@app.delete("/seller/products/{product_id}")
def delete_product(product_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    products.delete_product(db, user, product_id)
    return {"ok": True}


@app.get("/seller/dashboard")
def seller_dashboard(user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "seller")
    return seller_view.seller_dashboard(db, user["id"])


@app.get("/seller/low-stock")
def seller_low_stock(threshold: Optional[int] = None, user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "seller")
    return inventory.low_stock(db, user["id"], threshold)


@app.get("/seller/orders")
def seller_orders(page: int = 1, limit: int = 10, status: Optional[str] = None,
                  user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "seller")
    return seller_view.seller_orders(db, user["id"], page, limit, status)


@app.put("/seller/orders/{order_id}/accept")
def seller_accept(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    order = orders.accept_order(db, user, order_id)
    return seller_view.project_for_seller(order, user["id"])


@app.put("/seller/orders/{order_id}/ship")
def seller_ship(order_id: str, body: ShipBody, user=Depends(get_current_user), db=Depends(get_db)):
    order = orders.ship_order(db, user, order_id, body.tracking_number)
    return seller_view.project_for_seller(order, user["id"])


@app.put("/seller/orders/{order_id}/cancel")
def seller_cancel(order_id: str, body: CancelBody, user=Depends(get_current_user), db=Depends(get_db)):
    order = orders.cancel_by_seller(db, user, order_id, body.reason)
    return seller_view.project_for_seller(order, user["id"])


@app.put("/seller/orders/{order_id}/assign")
def seller_assign(order_id: str, body: AssignBody, user=Depends(get_current_user), db=Depends(get_db)):
    order = orders.assign_delivery(db, user, order_id, body.agent_id)
    if user.get("role") == "seller":
        return seller_view.project_for_seller(order, user["id"])
    return orders.present_order(order, user)


@app.post("/seller/orders/{order_id}/otp")
def seller_generate_otp(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "seller")
    return delivery.generate_otp(db, user, order_id)


# ----------------------- Cart -----------------------
@app.get("/cart")
def get_cart(user=Depends(get_current_user), db=Depends(get_db)):
    return cart.get_cart(db, user["id"])


@app.post("/cart/add")
def cart_add(body: CartItemBody, user=Depends(get_current_user), db=Depends(get_db)):
    return cart.add_item(db, user["id"], body.product_id, body.quantity)


@app.put("/cart/update")
def cart_update(body: CartItemBody, user=Depends(get_current_user), db=Depends(get_db)):
    return cart.update_item(db, user["id"], body.product_id, body.quantity)


@app.delete("/cart/remove/{product_id}")
def cart_remove(product_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return cart.remove_item(db, user["id"], product_id)


@app.delete("/cart/clear")
def cart_clear(user=Depends(get_current_user), db=Depends(get_db)):
    return cart.clear_cart(db, user["id"])


# ----------------------- Addresses -----------------------
@app.get("/users/addresses")
def list_addresses(user=Depends(get_current_user), db=Depends(get_db)):
    return addresses.list_addresses(db, user["id"])


@app.post("/users/addresses", status_code=201)
def add_address(body: AddressBody, user=Depends(get_current_user), db=Depends(get_db)):
    return addresses.add(db, user["id"], body.model_dump(exclude_none=True))


@app.put("/users/addresses/{address_id}")
def update_address(address_id: str, body: AddressBody, user=Depends(get_current_user), db=Depends(get_db)):
    return addresses.update(db, user["id"], address_id, body.model_dump(exclude_none=True))


@app.delete("/users/addresses/{address_id}")
def delete_address(address_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return addresses.delete(db, user["id"], address_id)


@app.put("/users/addresses/{address_id}/default")
def set_default_address(address_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return addresses.make_default(db, user["id"], address_id)


# ----------------------- Orders -----------------------
@app.post("/orders", status_code=201)
def create_order(body: OrderCreateBody, user=Depends(get_current_user), db=Depends(get_db)):
    items = [i.model_dump() for i in body.items] if body.items is not None else None
    order = orders.create_order(
        db,
        user,
        items=items,
        address_id=body.address_id,
        payment_method=body.payment_method,
        tax_amount=body.tax_amount,
        shipping_amount=body.shipping_amount,
        notes=body.notes,
    )
    return orders.present_order(order, user)


@app.get("/orders")
def my_orders(user=Depends(get_current_user), db=Depends(get_db)):
    return orders.list_orders_for_user(db, user)


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return orders.get_order_for_actor(db, user, order_id)


@app.put("/orders/{order_id}/pay")
def pay_order(order_id: str, body: PaymentBody, user=Depends(get_current_user), db=Depends(get_db)):
    return orders.present_order(orders.mark_paid(db, user, order_id, body.model_dump()), user)


@app.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return orders.present_order(orders.cancel_by_customer(db, user, order_id), user)


@app.get("/orders/{order_id}/invoice")
def get_invoice(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return invoice.build_invoice(db, user, order_id)


@app.post("/orders/{order_id}/rate-delivery")
def rate_delivery(order_id: str, body: RatingBody, user=Depends(get_current_user), db=Depends(get_db)):
    return delivery.rate_agent(db, user, order_id, body.rating, body.comment)


# ----------------------- Delivery -----------------------
@app.get("/delivery/orders")
def delivery_orders(user=Depends(get_current_user), db=Depends(get_db)):
    return delivery.agent_orders(db, user)


@app.post("/delivery/orders/{order_id}/start")
def delivery_start(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return orders.present_order(delivery.start_delivery(db, user, order_id), user)


@app.post("/delivery/orders/{order_id}/generateotp")
def delivery_generate_otp(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "delivery")
    return delivery.generate_otp(db, user, order_id)


@app.post("/delivery/orders/{order_id}/complete")
def delivery_complete(order_id: str, body: OtpBody, user=Depends(get_current_user), db=Depends(get_db)):
    delivery.complete_delivery(db, user, order_id, body.otp)
    return {"message": "Delivery completed successfully"}


@app.post("/delivery/orders/{order_id}/attempt")
def delivery_attempt(order_id: str, body: AttemptBody, user=Depends(get_current_user), db=Depends(get_db)):
    return orders.present_order(delivery.record_attempt(db, user, order_id, body.status, body.notes), user)


@app.put("/delivery/location")
def delivery_location(body: LocationBody, user=Depends(get_current_user), db=Depends(get_db)):
    return delivery.update_location(db, user, body.latitude, body.longitude)


@app.put("/delivery/availability")
def delivery_availability(body: AvailabilityBody, user=Depends(get_current_user), db=Depends(get_db)):
    return delivery.set_availability(db, user, body.is_available)


@app.get("/delivery/agents")
def delivery_agents(area: Optional[str] = None, user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "seller", "admin")
    return delivery.available_agents(db, area)


# ----------------------- Admin -----------------------
@app.get("/admin/orders")
def admin_orders(page: int = 1, limit: int = 20, user=Depends(get_current_user), db=Depends(get_db)):
    return orders.list_all_orders(db, user, page, limit)


@app.put("/admin/orders/{order_id}/deliver")
def admin_deliver(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(orders.admin_force_deliver(db, user, order_id))


@app.put("/admin/orders/{order_id}/status")
def admin_status(order_id: str, body: StatusBody, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize_doc(orders.admin_set_status(db, user, order_id, body.status))


@app.put("/admin/agents/{agent_id}/verify")
def admin_verify_agent(agent_id: str, body: VerifyBody, user=Depends(get_current_user), db=Depends(get_db)):
    return delivery.verify_agent(db, user, agent_id, body.verified)


@app.get("/admin/stats")
def admin_stats(user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "admin")
    return {
        "users": db["user"].count_documents({}),
        "products": db["product"].count_documents({}),
        "orders": db["order"].count_documents({}),
        "delivery_agents": db["deliveryagent"].count_documents({}),
    }


def _load_user(db, user_id: str) -> dict:
    found = db["user"].find_one({"_id": to_object_id(user_id, "User")})
    if not found:
        raise HTTPException(status_code=404, detail="User not found")
    return found


@app.get("/users")
def admin_list_users(user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "admin")
    return [public_user(u) for u in db["user"].find({}).sort("created_at", -1)]


@app.get("/users/{user_id}")
def admin_get_user(user_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "admin")
    return public_user(_load_user(db, user_id))


@app.put("/users/{user_id}")
def admin_update_user(user_id: str, body: UserUpdateBody, user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "admin")
    target = _load_user(db, user_id)
    changes = body.model_dump(exclude_none=True)
    if "email" in changes and db["user"].find_one({"email": changes["email"], "_id": {"$ne": target["_id"]}}):
        raise HTTPException(status_code=400, detail="Email already registered")
    if changes:
        changes["updated_at"] = datetime.now(timezone.utc)
        db["user"].update_one({"_id": target["_id"]}, {"$set": changes})
        logger.info("User %s updated by admin %s: %s", user_id, user["id"], sorted(changes))
    return public_user(_load_user(db, user_id))


@app.delete("/users/{user_id}")
def admin_delete_user(user_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    require_role(user, "admin")
    target = _load_user(db, user_id)
    db["user"].delete_one({"_id": target["_id"]})
    db["deliveryagent"].delete_one({"user_id": user_id})
    logger.warning("User %s deleted by admin %s", user_id, user["id"])
    return {"message": "User removed"}


# ----------------------- Seed Demo Data -----------------------
DEMO_PRODUCTS = [
    {
        "name": "Pixel 7A",
        "brand": "Google",
        "description": "Powerful camera and smooth Android experience.",
        "price": 34999,
        "original_price": 39999,
        "category": "Mobiles",
        "images": ["https://images.unsplash.com/photo-1511707171634-5f897ff02aa9"],
        "specifications": [{"key": "storage", "value": "128GB"}, {"key": "ram", "value": "8GB"}],
        "stock": 25,
    },
    {
        "name": "ThinkPad X1",
        "brand": "Lenovo",
        "description": "Business-class laptop with legendary keyboard.",
        "price": 119999,
        "category": "Laptops",
        "images": ["https://images.unsplash.com/photo-1517336714731-489689fd1ca8"],
        "specifications": [{"key": "cpu", "value": "i7"}, {"key": "ram", "value": "16GB"}],
        "stock": 10,
    },
    {
        "name": "Noise Cancelling Headphones",
        "brand": "Sony",
        "description": "Immerse in music with ANC.",
        "price": 19999,
        "category": "Accessories",
        "images": ["https://images.unsplash.com/photo-1518443248587-30bdc8f94f04"],
        "features": ["30h battery", "Bluetooth 5.2"],
        "stock": 40,
    },
    {
        "name": "Mechanical Keyboard",
        "brand": "Keychron",
        "description": "Hot-swappable RGB keyboard.",
        "price": 7999,
        "category": "Accessories",
        "images": ["https://images.unsplash.com/photo-1516382799247-87df95d790b5"],
        "stock": 8,
    },
]


@app.post("/seed")
def seed(db=Depends(get_db)):
    if db["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    seller = db["user"].find_one({"email": "seller@shop.com"})
    if seller:
        seller_id = str(seller["_id"])
    else:
        seller_id = create_document(db, "user", UserSchema(
            name="Demo Seller",
            email="seller@shop.com",
            password_hash=hash_password("seller123"),
            role="seller",
            seller_info=SellerInfo(business_name="Demo Electronics", gst_number="29ABCDE1234F1Z5"),
        ))
    for i, p in enumerate(DEMO_PRODUCTS):
        prod = ProductSchema(**p, sku=f"{products.generate_sku(seller_id)}-{i}", seller_id=seller_id)
        create_document(db, "product", prod)
    if db["user"].count_documents({"role": "admin"}) == 0:
        admin = UserSchema(name="Admin", email="admin@shop.com", password_hash=hash_password("admin123"), role="admin")
        create_document(db, "user", admin)
    return {"seeded": True, "products": db["product"].count_documents({})}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
