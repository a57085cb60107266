"""
Database Schemas for the StyleHub back-office

Each document model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Collection -> collection "collection", class ProductQuantity -> "productquantity"

The *In / *Update models are the validated inputs the store modules accept.
"""
from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from database import as_utc, utcnow

SIZES = ("XS", "S", "M", "L", "XL", "XXL")
PACKAGE_STATUSES = ("packed", "shipped", "in_transit", "delivered")

ProductType = Literal["top", "bottom"]
Gender = Literal["m", "f", "unisex"]
Role = Literal["customer", "owner"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
PackageStatus = Literal["packed", "shipped", "in_transit", "delivered"]


def normalize_sizes(sizes: List[str]) -> List[str]:
    wanted = {s.strip().upper() for s in sizes}
    unknown = wanted - set(SIZES)
    if unknown:
        raise ValueError(f"Unknown sizes: {', '.join(sorted(unknown))}")
    return [s for s in SIZES if s in wanted]


def normalize_colors(colors: List[str]) -> List[str]:
    out = []
    for c in colors:
        c = c.strip().lower()
        if c and c not in out:
            out.append(c)
    return out


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

# Directory

class Address(BaseModel):
    line1: str = Field(..., min_length=1)
    area: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    pincode: str = Field(..., pattern=r"^[1-9][0-9]{5}$")

class User(Document):
    name: str = Field(..., max_length=50)
    email: EmailStr
    mobile: str = Field(..., pattern=r"^[6-9]\d{9}$")
    role: Role = "customer"
    address: Optional[Address] = None
    order_history: List[ObjectId] = Field(default_factory=list)
    is_active: bool = True
    hashed_password: str

class CustomerIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    mobile: str = Field(..., pattern=r"^[6-9]\d{9}$")
    password: str = Field(..., min_length=6)
    address: Optional[Address] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()

class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    address: Optional[Address] = None

# Catalog

class Collection(Document):
    name: str = Field(..., max_length=50)
    image_url: str
    description: Optional[str] = Field(None, max_length=200)
    is_active: bool = True
    products_count: int = Field(0, ge=0)

class CollectionIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    image_url: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=200)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()

class CollectionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    image_url: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, max_length=200)

class ProductImage(BaseModel):
    color: str
    urls: List[str] = Field(default_factory=list)

    @field_validator("color")
    @classmethod
    def lower_color(cls, v: str) -> str:
        return v.strip().lower()

class Product(Document):
    collection_id: ObjectId
    name: str = Field(..., max_length=100)
    description: str = Field(..., max_length=500)
    type: ProductType
    gender: Gender
    activity: str
    images: List[ProductImage] = Field(default_factory=list)
    available_colors: List[str] = Field(default_factory=list)
    available_sizes: List[str] = Field(default_factory=list)
    is_active: bool = True

class ProductIn(BaseModel):
    collection_id: str
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    type: ProductType
    gender: Gender
    activity: str = Field(..., min_length=1)
    images: List[ProductImage] = Field(default_factory=list)
    available_colors: List[str] = Field(..., min_length=1)
    available_sizes: List[str] = Field(..., min_length=1)

    @field_validator("available_sizes")
    @classmethod
    def check_sizes(cls, v: List[str]) -> List[str]:
        return normalize_sizes(v)

    @field_validator("available_colors")
    @classmethod
    def check_colors(cls, v: List[str]) -> List[str]:
        v = normalize_colors(v)
        if not v:
            raise ValueError("At least one color is required")
        return v

class ProductUpdate(BaseModel):
    collection_id: Optional[str] = None
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    type: Optional[ProductType] = None
    gender: Optional[Gender] = None
    activity: Optional[str] = Field(None, min_length=1)
    images: Optional[List[ProductImage]] = None
    available_colors: Optional[List[str]] = Field(None, min_length=1)
    available_sizes: Optional[List[str]] = Field(None, min_length=1)

    @field_validator("available_sizes")
    @classmethod
    def check_sizes(cls, v):
        return normalize_sizes(v) if v is not None else v

    @field_validator("available_colors")
    @classmethod
    def check_colors(cls, v):
        if v is None:
            return v
        v = normalize_colors(v)
        if not v:
            raise ValueError("At least one color is required")
        return v

class ProductQuantity(Document):
    product_id: ObjectId
    size: str
    color: str
    quantity: int = Field(0, ge=0)
    price: float = Field(..., ge=0)
    is_active: bool = True

class VariantIn(BaseModel):
    size: str
    color: str
    quantity: int = Field(..., ge=0)
    price: float = Field(..., ge=0)

    @field_validator("size")
    @classmethod
    def upper_size(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in SIZES:
            raise ValueError(f"Size must be one of {', '.join(SIZES)}")
        return v

    @field_validator("color")
    @classmethod
    def lower_color(cls, v: str) -> str:
        return v.strip().lower()

# Orders

class ItemSnapshot(BaseModel):
    name: str
    description: Optional[str] = None
    image_url: Optional[str] = None

class OrderItem(Document):
    variant_id: ObjectId
    product_id: ObjectId
    product: ItemSnapshot
    size: str
    color: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)

class Order(Document):
    customer_id: ObjectId
    order_number: str
    items: List[OrderItem]
    total_mrp: float = Field(..., ge=0)
    discount_amount: float = Field(0, ge=0)
    final_amount: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    shipping_address: Optional[Address] = None
    tracking_id: Optional[str] = None
    package_id: Optional[ObjectId] = None

    @model_validator(mode="after")
    def check_amounts(self):
        if self.discount_amount > self.total_mrp:
            raise ValueError("Discount amount cannot exceed total MRP")
        if round(self.total_mrp - self.discount_amount, 2) != round(self.final_amount, 2):
            raise ValueError("Final amount must equal total MRP minus discount")
        return self

class OrderItemIn(BaseModel):
    variant_id: str
    quantity: int = Field(..., ge=1)

class OrderIn(BaseModel):
    customer_id: Optional[str] = None
    items: List[OrderItemIn] = Field(..., min_length=1)
    coupon_code: Optional[str] = None
    shipping_address: Optional[Address] = None

# Promotions

class PriceCondition(BaseModel):
    low: Optional[float] = Field(None, ge=0)
    high: Optional[float] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_range(self):
        if self.low is not None and self.high is not None and self.low > self.high:
            raise ValueError("Price condition low cannot exceed high")
        return self

class CouponUse(Document):
    customer_id: ObjectId
    used_at: datetime

class Coupon(Document):
    coupon_code: str
    applicable: List[ObjectId] = Field(default_factory=list)
    used_by: List[CouponUse] = Field(default_factory=list)
    price_condition: Optional[PriceCondition] = None
    reduction_price: float = Field(0, ge=0)
    reduction_percent: float = Field(0, ge=0, le=100)
    max_usage: int = Field(100, ge=1)
    is_active: bool = True
    expiry_date: datetime

class CouponIn(BaseModel):
    coupon_code: str = Field(..., min_length=3, max_length=20)
    applicable: List[str] = Field(default_factory=list)
    price_condition: Optional[PriceCondition] = None
    reduction_price: float = Field(0, ge=0)
    reduction_percent: float = Field(0, ge=0, le=100)
    max_usage: int = Field(100, ge=1)
    expiry_date: datetime

    @field_validator("coupon_code", mode="before")
    @classmethod
    def upper_code(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("expiry_date")
    @classmethod
    def utc_expiry(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def one_reduction(self):
        if self.reduction_price > 0 and self.reduction_percent > 0:
            raise ValueError("Cannot have both reduction price and reduction percent")
        if self.reduction_price == 0 and self.reduction_percent == 0:
            raise ValueError("Either reduction price or reduction percent must be provided")
        return self

class CouponUpdate(BaseModel):
    coupon_code: Optional[str] = Field(None, min_length=3, max_length=20)
    applicable: Optional[List[str]] = None
    price_condition: Optional[PriceCondition] = None
    reduction_price: Optional[float] = Field(None, ge=0)
    reduction_percent: Optional[float] = Field(None, ge=0, le=100)
    max_usage: Optional[int] = Field(None, ge=1)
    expiry_date: Optional[datetime] = None
    is_active: Optional[bool] = None

class Discount(Document):
    name: str = Field(..., max_length=100)
    products: List[ObjectId] = Field(default_factory=list)
    discount_percent: float = Field(..., gt=0, le=90)
    is_active: bool = True
    start_date: datetime
    end_date: datetime
    description: Optional[str] = Field(None, max_length=200)

class DiscountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    products: List[str] = Field(default_factory=list)
    discount_percent: float = Field(..., gt=0, le=90)
    start_date: datetime = Field(default_factory=utcnow)
    end_date: datetime
    description: Optional[str] = Field(None, max_length=200)

    @field_validator("start_date", "end_date")
    @classmethod
    def utc_dates(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def check_window(self):
        if self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self

class DiscountUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    products: Optional[List[str]] = None
    discount_percent: Optional[float] = Field(None, gt=0, le=90)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    description: Optional[str] = Field(None, max_length=200)
    is_active: Optional[bool] = None

# Fulfilment

class Dimensions(BaseModel):
    length: float = Field(0, ge=0)
    width: float = Field(0, ge=0)
    height: float = Field(0, ge=0)

class Package(Document):
    orders: List[ObjectId] = Field(..., min_length=1)
    package_number: str
    status: PackageStatus = "packed"
    tracking_id: Optional[str] = None
    courier_service: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    weight: float = Field(0, ge=0)
    dimensions: Dimensions = Field(default_factory=Dimensions)

class PackageIn(BaseModel):
    order_ids: List[str] = Field(..., min_length=1)
    courier_service: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    weight: float = Field(0, ge=0)
    dimensions: Dimensions = Field(default_factory=Dimensions)

    @field_validator("estimated_delivery")
    @classmethod
    def utc_eta(cls, v):
        return as_utc(v)
