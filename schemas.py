"""
Database Schemas for QuickKart

Each Pydantic model below either describes the shape of a MongoDB document or
an API request body. Collection models map to a collection named after the
lowercased class name (DarkStore -> "darkstore", Order -> "order"); embedded
models (order items, cart lines, subscriptions) live inside their parent
document. References between documents are stored as ObjectIds.
"""
from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

# ------------ Enumerations ------------

PENDING_PAYMENT = "Pending Payment"
PLACED = "Placed"
PACKED = "Packed"
OUT_FOR_DELIVERY = "Out for Delivery"
DELIVERED = "Delivered"
CANCELLED = "Cancelled"

COD = "Cash on Delivery"
ONLINE = "Online"

ROLE_CUSTOMER = "customer"
ROLE_DELIVERY_PARTNER = "delivery_partner"
ROLE_ADMIN = "admin"

SETTINGS_KEY = "quickkart_settings"

PaymentMethod = Literal["Cash on Delivery", "Online"]
DiscountType = Literal["Percentage", "FixedAmount"]
Frequency = Literal["Daily", "Weekly", "Monthly"]
IssueType = Literal["Late Delivery", "Wrong Item", "Missing Item", "Damaged Item", "Other"]
IssueStatus = Literal["Pending", "Investigating", "Resolved", "Rejected"]
RefundStatus = Literal["Pending", "Approved", "Rejected"]


class MongoModel(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")

    @classmethod
    def from_lat_lng(cls, latitude: float, longitude: float) -> "GeoPoint":
        return cls(coordinates=[longitude, latitude])


# ------------ Auth & User ------------

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    role: Literal["customer", "delivery_partner"] = "customer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class AddressIn(BaseModel):
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str = Field(..., pattern=r"^\d{6}$")
    is_default: bool = False


class AddressUpdate(BaseModel):
    address_line1: Optional[str] = Field(None, min_length=1)
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = Field(None, pattern=r"^\d{6}$")
    is_default: Optional[bool] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    allow_email_promotions: Optional[bool] = None
    allow_sms_notifications: Optional[bool] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class FcmTokenRequest(BaseModel):
    fcm_token: str


class PromoRequest(BaseModel):
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    type: Literal["Email", "SMS", "All"] = "All"


class CartLine(MongoModel):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    product: ObjectId
    name: str
    image: str = ""
    price: float = Field(..., ge=0)
    qty: int = Field(..., ge=1)
    store: ObjectId


class CartItemIn(BaseModel):
    product_id: str
    qty: int = Field(1, ge=1)
    pincode: str = Field(..., pattern=r"^\d{6}$")


class Subscription(MongoModel):
    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    product: ObjectId
    store: ObjectId
    quantity: int = Field(..., ge=1)
    frequency: Frequency
    next_delivery_date: datetime
    shipping_address: dict
    is_active: bool = True


class SubscriptionCreate(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    frequency: Frequency
    shipping_address_id: str
    pincode: str = Field(..., pattern=r"^\d{6}$")


# ------------ Catalog ------------

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    brand: str
    category: str
    image: str
    features: List[str] = []
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    sale_end_date: Optional[datetime] = None
    is_available: bool = True


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    image: Optional[str] = None
    features: Optional[List[str]] = None
    price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    sale_end_date: Optional[datetime] = None
    is_available: Optional[bool] = None


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)


# ------------ Dark stores & inventory ------------

class StoreCreate(BaseModel):
    name: str = Field(..., min_length=1)
    pincode: str = Field(..., pattern=r"^\d{6}$")
    address: str
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class StoreStockUpdate(BaseModel):
    product_id: str
    stock: int = Field(..., ge=0)


# ------------ Coupons ------------

class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_value: float = Field(..., gt=0)
    min_order_amount: float = Field(0, ge=0)
    expiry_date: datetime
    usage_limit: Optional[int] = Field(None, ge=1)


class CouponValidateRequest(BaseModel):
    code: str = Field(..., min_length=1)


class Coupon(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: float
    min_order_amount: float = 0
    expiry_date: datetime
    is_active: bool = True
    usage_limit: Optional[int] = None
    used_count: int = 0


# ------------ Orders ------------

class OrderItem(MongoModel):
    product: ObjectId
    name: str
    qty: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    image: str = ""


class ShippingAddress(BaseModel):
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    pincode: str
    location: Optional[GeoPoint] = None


class PaymentResult(BaseModel):
    id: Optional[str] = None
    order_id: Optional[str] = None
    signature: Optional[str] = None
    status: Optional[str] = None


class Order(MongoModel):
    user: ObjectId
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_result: Optional[PaymentResult] = None
    coupon_code: Optional[str] = None
    items_price: float
    discount_amount: float = 0.0
    tax_price: float
    shipping_price: float
    total_price: float
    order_status: str = PENDING_PAYMENT
    dark_store: Optional[ObjectId] = None
    delivery_partner: Optional[ObjectId] = None
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    source: Literal["checkout", "subscription"] = "checkout"


class PlaceOrderRequest(BaseModel):
    shipping_address_id: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    coupon_code: Optional[str] = None
    payment_method: PaymentMethod


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)


class FeedbackRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = None


class IssueReportRequest(BaseModel):
    issue_type: IssueType
    description: str = Field(..., min_length=1)
    request_refund: bool = False
    refund_amount: Optional[float] = Field(None, gt=0)


class ResolveIssueRequest(BaseModel):
    status: IssueStatus
    resolution: Optional[str] = None
    refund_status: Optional[RefundStatus] = None


# ------------ Delivery ------------

class DeliveryStatusRequest(BaseModel):
    is_online: bool


class LocationRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class AssignPartnerRequest(BaseModel):
    partner_id: str


# ------------ Settings ------------

class Settings(BaseModel):
    site_identifier: str = SETTINGS_KEY
    delivery_search_radius: int = 5000
    delivery_start_time: str = "08:00"
    delivery_end_time: str = "22:00"
    allowed_pincodes: List[str] = []
    low_stock_threshold: int = 10


class SettingsUpdate(BaseModel):
    delivery_search_radius: Optional[int] = Field(None, gt=0)
    delivery_start_time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    delivery_end_time: Optional[str] = Field(None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    allowed_pincodes: Optional[List[str]] = None
    low_stock_threshold: Optional[int] = Field(None, ge=0)
