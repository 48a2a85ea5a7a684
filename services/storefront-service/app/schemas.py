from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Any
from decimal import Decimal
from datetime import datetime
from shared.security_config import sanitize_input
from app.models import OrderStatus, ShippingInfo

# --- Cart ---

class CartItemAdd(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sku: str = Field(..., min_length=1, max_length=64)
    # range is checked by the cart engine so the message is the same everywhere
    quantity: Any
    session_id: Optional[str] = None

class CartItemUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    quantity: Any
    session_id: Optional[str] = None

class CartMerge(BaseModel):
    session_id: str = Field(..., min_length=1)

class CartItemResponse(BaseModel):
    sku: str
    product_id: Optional[str] = None
    name: str
    brand: str = ""
    image_url: Optional[str] = None
    price: Decimal
    has_custom_price: bool
    quantity: int
    line_total: Decimal
    added_at: datetime

class CartResponse(BaseModel):
    id: Optional[str] = None
    customer_id: Optional[str] = None
    session_id: Optional[str] = None
    items: List[CartItemResponse]
    item_count: int
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    currency: str
    free_shipping_threshold: Decimal
    updated_at: datetime

# --- Products ---

class ProductResponse(BaseModel):
    id: Optional[str] = None
    sku: str
    name: str
    brand: str
    category: str
    image_url: Optional[str] = None
    price: Decimal
    base_price: Decimal
    has_custom_price: bool

class ProductUpsert(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1)
    brand: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    base_price: Optional[Decimal] = Field(None, ge=0)
    is_active: Optional[bool] = None

    @field_validator('name', 'brand', 'category')
    def sanitize_text(cls, v):
        return sanitize_input(v)

# --- Pricing administration ---

class PriceOverrideUpsert(BaseModel):
    model_config = ConfigDict(extra="forbid")

    price: Decimal = Field(..., ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

class PriceOverrideResponse(BaseModel):
    id: str
    customer_id: str
    product_id: str
    sku: str
    price: Decimal
    is_active: bool
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

class BulkPriceRows(BaseModel):
    # rows are validated one by one so a bad row does not reject the upload
    rows: List[dict] = Field(..., min_length=1, max_length=5000)

class BulkPriceResult(BaseModel):
    total_rows: int
    successful_updates: int
    failed_updates: int
    errors: List[str]

# --- Orders ---

class OrderCreate(BaseModel):
    shipping_info: Optional[ShippingInfo] = None
    payment_method: str = "invoice"
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator('payment_method', 'notes')
    def sanitize_text(cls, v):
        return sanitize_input(v)

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

class OrderItemResponse(BaseModel):
    sku: str
    product_id: Optional[str] = None
    name: str
    brand: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal

class OrderResponse(BaseModel):
    id: str
    order_number: str
    customer_id: str
    items: List[OrderItemResponse]
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    currency: str
    status: OrderStatus
    shipping_info: Optional[ShippingInfo] = None
    payment_method: str
    payment_status: str
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

# --- Cache administration ---

class CachePatternClear(BaseModel):
    pattern: str = Field(..., min_length=1, max_length=200)

class CacheEntrySet(BaseModel):
    value: Any
    ttl: Optional[int] = Field(None, ge=0)

class CacheWarm(BaseModel):
    skus: Optional[List[str]] = None
    customer_ids: List[str] = []

class CacheEntryResponse(BaseModel):
    key: str
    value: Any
