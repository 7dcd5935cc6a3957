"""
Database Schemas for the Marketplace

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
Embedded models (addresses, line items, attempts) live inside their parent document.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["customer", "seller", "delivery", "admin"]
AddressType = Literal["home", "work", "other"]
PaymentMethod = Literal["cod", "card", "upi", "credit_card", "debit_card", "paypal"]
PaymentStatus = Literal["pending", "completed", "failed"]
OrderStatus = Literal["pending", "confirmed", "shipped", "out_for_delivery", "delivered", "cancelled"]
AttemptStatus = Literal["success", "failed", "customer_unavailable"]
VehicleType = Literal["bike", "car", "bicycle"]

ORDER_STATUSES = ("pending", "confirmed", "shipped", "out_for_delivery", "delivered", "cancelled")


class Address(BaseModel):
    id: str
    name: str
    type: AddressType = "home"
    street: str
    city: str
    state: str
    pincode: str
    phone: str
    is_default: bool = False


class SellerInfo(BaseModel):
    business_name: Optional[str] = None
    business_address: Optional[str] = None
    business_phone: Optional[str] = None
    business_email: Optional[str] = None
    gst_number: Optional[str] = None
    pan_number: Optional[str] = None
    is_verified: bool = False


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password")
    phone: Optional[str] = None
    role: Role = "customer"
    addresses: List[Address] = []
    address_version: int = 0
    seller_info: Optional[SellerInfo] = None


class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    category: str
    category_id: Optional[str] = None
    brand: str
    images: List[str] = []
    stock: int = Field(0, ge=0)
    sku: str
    rating: float = Field(0, ge=0, le=5)
    num_reviews: int = 0
    seller_id: str
    specifications: List[Dict[str, Any]] = []
    features: List[str] = []
    warranty: str = "No warranty"
    return_policy: str = "7 days return policy"
    delivery_time: str = "3-5 days"
    is_active: bool = True


class Category(BaseModel):
    name: str
    description: Optional[str] = None
    slug: str
    image: str = ""
    parent_id: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class OrderItem(BaseModel):
    product_id: str
    seller_id: str
    name: str
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class ShippingAddress(BaseModel):
    name: str
    street: str
    city: str
    state: str
    pincode: str
    phone: str
    country: str = "India"


class DeliveryAttempt(BaseModel):
    attempted_at: datetime
    status: AttemptStatus
    notes: Optional[str] = None


class Order(BaseModel):
    order_number: str
    user_id: str
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "cod"
    payment_status: PaymentStatus = "pending"
    payment_result: Optional[Dict[str, Any]] = None
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    items_amount: float = Field(..., ge=0)
    tax_amount: float = Field(0, ge=0)
    shipping_amount: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    tracking_number: Optional[str] = None
    delivery_agent_id: Optional[str] = None
    delivery_otp: Optional[str] = None
    delivery_otp_issued_at: Optional[datetime] = None
    delivery_otp_expiry: Optional[datetime] = None
    delivery_otp_attempts: int = 0
    delivery_attempts: List[DeliveryAttempt] = []
    notes: Optional[str] = None


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = [0, 0]


class AgentRating(BaseModel):
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: datetime


class DeliveryAgent(BaseModel):
    user_id: str
    vehicle_type: VehicleType
    vehicle_number: str
    license_number: str
    aadhar_number: str
    area: str
    is_verified: bool = False
    is_available: bool = True
    current_location: GeoPoint = GeoPoint()
    ratings: List[AgentRating] = []
    average_rating: float = 0
    total_deliveries: int = 0
    active_order_id: Optional[str] = None


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []


class Notification(BaseModel):
    recipient_id: str
    event: str
    order_id: Optional[str] = None
    data: Dict[str, Any] = {}


class AuditLog(BaseModel):
    actor_id: str
    action: str
    order_id: str
    old_status: Optional[str] = None
    new_status: str
    at: datetime
