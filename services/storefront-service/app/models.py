from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shared.utils import utcnow, ensure_utc


def normalize_sku(value: str) -> str:
    return value.strip().upper() if isinstance(value, str) else value


def to_document(model: BaseModel) -> dict:
    """Mongo shape: `_id` key, Decimals stored as floats."""
    doc = model.model_dump(by_alias=True, exclude={"id"})
    return _bson_safe(doc)


def _bson_safe(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _bson_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_bson_safe(v) for v in value]
    return value


class DBModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("*", mode="after")
    @classmethod
    def utc_datetimes(cls, v):
        return ensure_utc(v) if isinstance(v, datetime) else v


class ProductDB(DBModel):
    id: Optional[str] = Field(None, alias="_id")
    sku: str = Field(..., min_length=1)
    name: str
    brand: str = ""
    category: str = "General"
    image_url: Optional[str] = None
    base_price: Decimal = Field(..., ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("sku", mode="before")
    @classmethod
    def normalize_sku_value(cls, v):
        return normalize_sku(v)


class PriceOverrideDB(DBModel):
    id: Optional[str] = Field(None, alias="_id")
    customer_id: str
    product_id: str
    sku: str
    price: Decimal = Field(..., ge=0)
    is_active: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    updated_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("sku", mode="before")
    @classmethod
    def normalize_sku_value(cls, v):
        return normalize_sku(v)

    @staticmethod
    def key(customer_id: str, product_id: str) -> str:
        # One document per (customer, product) pair
        return f"{customer_id}_{product_id}"

    def is_effective(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.valid_from is not None and now < self.valid_from:
            return False
        if self.valid_until is not None and now >= self.valid_until:
            return False
        return True


class CustomerDB(DBModel):
    id: Optional[str] = Field(None, alias="_id")
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "customer"  # customer, admin
    free_shipping_threshold: Optional[Decimal] = Field(None, ge=0)


class CartItemDB(DBModel):
    sku: str
    product_id: Optional[str] = None
    name: str
    brand: str = ""
    image_url: Optional[str] = None
    price: Decimal = Field(..., ge=0)  # unit price at add or last repricing
    has_custom_price: bool = False
    quantity: int = Field(..., gt=0)
    added_at: datetime = Field(default_factory=utcnow)

    @field_validator("sku", mode="before")
    @classmethod
    def normalize_sku_value(cls, v):
        return normalize_sku(v)


class CartDB(DBModel):
    id: Optional[str] = Field(None, alias="_id")
    customer_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItemDB] = []
    subtotal: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    shipping: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    currency: str = "USD"
    pricing_applied: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_single_owner(self):
        if bool(self.customer_id) == bool(self.session_id):
            raise ValueError("A cart belongs to exactly one of customer_id or session_id")
        return self

    def item(self, sku: str) -> Optional[CartItemDB]:
        sku = normalize_sku(sku)
        for it in self.items:
            if it.sku == sku:
                return it
        return None


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ORDER_TRANSITIONS: Dict[OrderStatus, set] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


class ShippingInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str
    phone: Optional[str] = None


class PaymentInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    method: str = "invoice"
    status: str = "pending"  # pending, paid, failed
    reference: Optional[str] = None


class OrderItemDB(DBModel):
    sku: str
    product_id: Optional[str] = None
    name: str
    brand: str = ""
    unit_price: Decimal
    quantity: int
    line_total: Decimal


class OrderDB(DBModel):
    id: Optional[str] = Field(None, alias="_id")
    order_number: str
    customer_id: str
    items: List[OrderItemDB]
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    currency: str = "USD"
    status: OrderStatus = OrderStatus.PENDING
    shipping_info: Optional[ShippingInfo] = None
    payment_info: PaymentInfo = Field(default_factory=PaymentInfo)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class PricedProduct(BaseModel):
    """A product as one caller sees it: base price plus that caller's effective price."""

    id: Optional[str] = None
    sku: str
    name: str
    brand: str = ""
    category: str = "General"
    image_url: Optional[str] = None
    price: Decimal
    base_price: Decimal
    has_custom_price: bool = False
    pricing_applied: bool = True

    @classmethod
    def build(cls, product: ProductDB, price: Decimal, has_custom_price: bool, pricing_applied: bool):
        return cls(
            id=product.id,
            sku=product.sku,
            name=product.name,
            brand=product.brand,
            category=product.category,
            image_url=product.image_url,
            price=price,
            base_price=product.base_price,
            has_custom_price=has_custom_price,
            pricing_applied=pricing_applied,
        )
