from fastapi import FastAPI, Depends, HTTPException, status, Query, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional, List
import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from shared.utils import (
    get_db_client, get_cache_client, settings, utcnow, verify_token,
    SuccessResponse, ErrorResponse, HealthResponse,
    AppException, UnauthorizedException, ForbiddenException, NotFoundException,
)
from shared.cache import CacheStore
from shared.documents import DocumentStore
from shared.logging_config import setup_logging, RequestLoggingMiddleware, identity_var
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from app.schemas import (
    CartItemAdd, CartItemUpdate, CartMerge, CartResponse, CartItemResponse,
    ProductResponse, ProductUpsert,
    PriceOverrideUpsert, PriceOverrideResponse, BulkPriceRows, BulkPriceResult,
    OrderCreate, OrderStatusUpdate, OrderResponse, OrderItemResponse,
    CachePatternClear, CacheEntrySet, CacheWarm, CacheEntryResponse,
)
from app.models import CartDB, OrderDB, PricedProduct, PriceOverrideDB
from app.identity import Identity, resolve_identity
from app.repository import StorefrontRepository
from app import cart_engine

SERVICE_NAME = "storefront-service"

# Setup Logging
logger = setup_logging(SERVICE_NAME, settings.LOG_LEVEL)


async def ensure_indexes(db):
    await db.products.create_index("sku", unique=True)
    await db.price_overrides.create_index([("customer_id", 1), ("sku", 1)])
    await db.carts.create_index("customer_id", sparse=True)
    await db.carts.create_index("session_id", sparse=True)
    await db.orders.create_index([("customer_id", 1), ("created_at", -1)])


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install their own repository before the app starts
    owns_clients = getattr(app.state, "repository", None) is None
    if owns_clients:
        mongodb_client = get_db_client(settings.MONGO_URL)
        db = mongodb_client[settings.MONGO_DB_NAME]
        await ensure_indexes(db)
        cache = CacheStore(
            get_cache_client(settings.REDIS_URL),
            prefix=settings.CACHE_PREFIX,
            default_ttl=settings.DEFAULT_CACHE_TTL,
        )
        app.state.repository = StorefrontRepository(cache, DocumentStore(db), config=settings)
        logger.info("Connected to MongoDB and Redis")
    yield
    if owns_clients:
        await app.state.repository.cache.close()
        mongodb_client.close()


app = FastAPI(title="Storefront Service", lifespan=lifespan)

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Error handling ---
@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.detail).model_dump(),
        headers=exc.headers,
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=jsonable_encoder(ErrorResponse(error="Invalid request", details=details)),
    )

# --- Dependencies ---
def get_repository(request: Request) -> StorefrontRepository:
    return request.app.state.repository

def http_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.3, min=0.3, max=3),
        retry=retry_if_exception_type(httpx.TransportError),
    )

@http_retry()
async def verify_remote(authorization: str, request_id: Optional[str] = None) -> httpx.Response:
    headers = {"Authorization": authorization}
    if request_id:
        headers["X-Request-ID"] = request_id
    async with httpx.AsyncClient(timeout=5.0) as client:
        return await client.get(f"{settings.AUTH_SERVICE_URL}/verify", headers=headers)

async def get_current_user(request: Request, authorization: Optional[str] = Header(None)) -> Optional[dict]:
    """Bearer token is optional: anonymous shoppers use a session id instead."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedException("Invalid authentication credentials")

    if settings.AUTH_SERVICE_URL:
        try:
            response = await verify_remote(authorization, getattr(request.state, "request_id", None))
            response.raise_for_status()
        except httpx.RequestError:
            raise AppException(status.HTTP_503_SERVICE_UNAVAILABLE, "Auth service unavailable")
        except httpx.HTTPStatusError:
            raise UnauthorizedException("Invalid authentication credentials")
        data = response.json()
        if not data.get("success"):
            raise UnauthorizedException("Invalid token")
        payload = data["data"]
    else:
        payload = verify_token(token)

    if not payload.get("sub"):
        raise UnauthorizedException("Token has no subject")
    request.state.user_id = payload["sub"]
    identity_var.set(f"customer:{payload['sub']}")
    return payload

async def require_auth(user: Optional[dict] = Depends(get_current_user)) -> dict:
    if user is None:
        raise UnauthorizedException("Not authenticated")
    return user

async def require_admin(
    user: dict = Depends(require_auth),
    repo: StorefrontRepository = Depends(get_repository),
) -> dict:
    role = await repo.customer_role(user["sub"], default=user.get("role"))
    if role != "admin":
        raise ForbiddenException("Admin access required")
    return user

def current_identity(user: Optional[dict], session_id: Optional[str]) -> Identity:
    return resolve_identity(user["sub"] if user else None, session_id)

# --- Response mapping ---
async def to_cart_response(repo: StorefrontRepository, identity: Identity, cart: CartDB) -> CartResponse:
    items = [
        CartItemResponse(
            **it.model_dump(),
            line_total=cart_engine.money(it.price * it.quantity),
        )
        for it in cart.items
    ]
    return CartResponse(
        id=cart.id,
        customer_id=cart.customer_id,
        session_id=cart.session_id,
        items=items,
        item_count=cart_engine.item_count(cart),
        subtotal=cart.subtotal,
        tax=cart.tax,
        shipping=cart.shipping,
        total=cart.total,
        currency=cart.currency,
        free_shipping_threshold=await repo.free_shipping_threshold(identity),
        updated_at=cart.updated_at,
    )

def to_product_response(product: PricedProduct) -> ProductResponse:
    return ProductResponse(**product.model_dump())

def to_order_response(order: OrderDB) -> OrderResponse:
    return OrderResponse(
        **order.model_dump(exclude={"items", "payment_info"}),
        items=[OrderItemResponse(**it.model_dump()) for it in order.items],
        payment_method=order.payment_info.method,
        payment_status=order.payment_info.status,
    )

def to_override_response(override: PriceOverrideDB) -> PriceOverrideResponse:
    return PriceOverrideResponse(**override.model_dump())

# --- Endpoints ---

# Cart
@app.get("/cart", response_model=SuccessResponse[CartResponse])
@limiter.limit("120/minute")
async def get_cart(
    request: Request,
    session_id: Optional[str] = Query(None),
    user: Optional[dict] = Depends(get_current_user),
    repo: StorefrontRepository = Depends(get_repository),
):
    identity = current_identity(user, session_id)
    cart = await repo.get_cart(identity)
    return SuccessResponse(data=await to_cart_response(repo, identity, cart))

@app.post("/cart/items", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def add_to_cart(
    request: Request,
    item: CartItemAdd,
    user: Optional[dict] = Depends(get_current_user),
    repo: StorefrontRepository = Depends(get_repository),
):
    identity = current_identity(user, item.session_id)
    cart = await repo.add_item(identity, item.sku, item.quantity)
    return SuccessResponse(data=await to_cart_response(repo, identity, cart), message="Item added to cart")

@app.put("/cart/items/{sku}", response_model=SuccessResponse[CartResponse])
async def update_cart_item(
    sku: str,
    update: CartItemUpdate,
    user: Optional[dict] = Depends(get_current_user),
    repo: StorefrontRepository = Depends(get_repository),
):
    identity = current_identity(user, update.session_id)
    cart = await repo.update_item(identity, sku, update.quantity)
    return SuccessResponse(data=await to_cart_response(repo, identity, cart))

@app.delete("/cart/items/{sku}", response_model=SuccessResponse[CartResponse])
async def remove_cart_item(
    sku: str,
    session_id: Optional[str] = Query(None),
    user: Optional[dict] = Depends(get_current_user),
    repo: StorefrontRepository = Depends(get_repository),
):
    identity = current_identity(user, session_id)
    cart = await repo.remove_item(identity, sku)
    return SuccessResponse(data=await to_cart_response(repo, identity, cart), message="Item removed")

@app.delete("/cart", response_model=SuccessResponse[CartResponse])
async def clear_cart(
    session_id: Optional[str] = Query(None),
    user: Optional[dict] = Depends(get_current_user),
    repo: StorefrontRepository = Depends(get_repository),
):
    identity = current_identity(user, session_id)
    cart = await repo.clear_cart(identity)
    return SuccessResponse(data=await to_cart_response(repo, identity, cart), message="Cart cleared")

@app.post("/cart/merge", response_model=SuccessResponse[CartResponse])
async def merge_cart(
    merge: CartMerge,
    user: dict = Depends(require_auth),
    repo: StorefrontRepository = Depends(get_repository),
):
    cart = await repo.merge_guest_cart(user["sub"], merge.session_id)
    identity = current_identity(user, None)
    return SuccessResponse(data=await to_cart_response(repo, identity, cart), message="Guest cart merged")

# Products
@app.get("/products", response_model=SuccessResponse[List[ProductResponse]])
@limiter.limit("120/minute")
async def list_products(
    request: Request,
    category: Optional[str] = Query(None),
    brand: Optional[str] = Query(None),
    user: Optional[dict] = Depends(get_current_user),
    repo: StorefrontRepository = Depends(get_repository),
):
    customer_id = user["sub"] if user else None
    products = await repo.list_products(category, brand, customer_id)
    return SuccessResponse(data=[to_product_response(p) for p in products])

@app.get("/products/{sku}", response_model=SuccessResponse[ProductResponse])
@limiter.limit("120/minute")
async def get_product(
    request: Request,
    sku: str,
    user: Optional[dict] = Depends(get_current_user),
    repo: StorefrontRepository = Depends(get_repository),
):
    product = await repo.get_product(sku, user["sub"] if user else None)
    if product is None:
        raise NotFoundException("Product not found")
    return SuccessResponse(data=to_product_response(product))

# Orders
@app.post("/orders", response_model=SuccessResponse[OrderResponse])
@limiter.limit("10/minute")
async def create_order(
    request: Request,
    order: OrderCreate,
    user: dict = Depends(require_auth),
    repo: StorefrontRepository = Depends(get_repository),
):
    created = await repo.create_order(
        user["sub"],
        shipping_info=order.shipping_info,
        payment_method=order.payment_method,
        notes=order.notes,
    )
    return SuccessResponse(data=to_order_response(created), message="Order created successfully")

@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    user: dict = Depends(require_auth),
    repo: StorefrontRepository = Depends(get_repository),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    orders = await repo.list_orders(user["sub"])
    skip = (page - 1) * limit
    return SuccessResponse(data=[to_order_response(o) for o in orders[skip:skip + limit]])

@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(
    order_id: str,
    user: dict = Depends(require_auth),
    repo: StorefrontRepository = Depends(get_repository),
):
    order = await repo.get_order(order_id, customer_id=user["sub"])
    return SuccessResponse(data=to_order_response(order))

# Admin: pricing
@app.put("/admin/pricing/{customer_id}/{sku}", response_model=SuccessResponse[PriceOverrideResponse])
async def set_price_override(
    customer_id: str,
    sku: str,
    body: PriceOverrideUpsert,
    admin: dict = Depends(require_admin),
    repo: StorefrontRepository = Depends(get_repository),
):
    override = await repo.set_price_override(
        customer_id, sku, body.price,
        valid_from=body.valid_from,
        valid_until=body.valid_until,
        updated_by=admin["sub"],
    )
    return SuccessResponse(data=to_override_response(override), message="Price override saved")

@app.delete("/admin/pricing/{customer_id}/{sku}", response_model=SuccessResponse[dict])
async def deactivate_price_override(
    customer_id: str,
    sku: str,
    admin: dict = Depends(require_admin),
    repo: StorefrontRepository = Depends(get_repository),
):
    retired = await repo.deactivate_price_override(customer_id, sku, updated_by=admin["sub"])
    return SuccessResponse(data={"deactivated": retired}, message="Price override deactivated")

@app.get("/admin/pricing/{customer_id}", response_model=SuccessResponse[List[PriceOverrideResponse]])
async def list_price_overrides(
    customer_id: str,
    admin: dict = Depends(require_admin),
    repo: StorefrontRepository = Depends(get_repository),
):
    overrides = await repo.list_price_overrides(customer_id)
    return SuccessResponse(data=[to_override_response(o) for o in overrides])

@app.post("/admin/pricing/{customer_id}/bulk", response_model=SuccessResponse[BulkPriceResult])
async def bulk_price_overrides(
    customer_id: str,
    body: BulkPriceRows,
    admin: dict = Depends(require_admin),
    repo: StorefrontRepository = Depends(get_repository),
):
    result = await repo.bulk_set_price_overrides(customer_id, body.rows, updated_by=admin["sub"])
    return SuccessResponse(data=BulkPriceResult(**result))

# Admin: catalogue and orders
@app.put("/admin/products/{sku}", response_model=SuccessResponse[ProductResponse])
async def upsert_product(
    sku: str,
    body: ProductUpsert,
    admin: dict = Depends(require_admin),
    repo: StorefrontRepository = Depends(get_repository),
):
    product = await repo.upsert_product(sku, body.model_dump(exclude_unset=True))
    priced = PricedProduct.build(product, product.base_price, False, True)
    return SuccessResponse(data=to_product_response(priced), message="Product saved")

@app.put("/admin/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    status_update: OrderStatusUpdate,
    admin: dict = Depends(require_admin),
    repo: StorefrontRepository = Depends(get_repository),
):
    order = await repo.update_order_status(order_id, status_update.status)
    return SuccessResponse(data=to_order_response(order))

# Admin: cache
@app.get("/admin/cache/stats", response_model=SuccessResponse[dict])
async def cache_stats(admin: dict = Depends(require_admin), repo: StorefrontRepository = Depends(get_repository)):
    return SuccessResponse(data=await repo.cache_stats())

@app.post("/admin/cache/clear", response_model=SuccessResponse[dict])
async def clear_cache(admin: dict = Depends(require_admin), repo: StorefrontRepository = Depends(get_repository)):
    deleted = await repo.clear_cache()
    logger.warning("Cache cleared by admin", extra={"user_id": admin["sub"]})
    return SuccessResponse(data={"deleted": deleted}, message="Cache cleared")

@app.post("/admin/cache/clear-pattern", response_model=SuccessResponse[dict])
async def clear_cache_pattern(
    body: CachePatternClear,
    admin: dict = Depends(require_admin),
    repo: StorefrontRepository = Depends(get_repository),
):
    deleted = await repo.clear_cache_pattern(body.pattern)
    return SuccessResponse(data={"deleted": deleted, "pattern": body.pattern})

@app.get("/admin/cache/keys/{key:path}", response_model=SuccessResponse[CacheEntryResponse])
async def get_cache_entry(key: str, admin: dict = Depends(require_admin), repo: StorefrontRepository = Depends(get_repository)):
    value = await repo.get_cache_entry(key)
    return SuccessResponse(data=CacheEntryResponse(key=key, value=value))

@app.put("/admin/cache/keys/{key:path}", response_model=SuccessResponse[CacheEntryResponse])
async def set_cache_entry(
    key: str,
    body: CacheEntrySet,
    admin: dict = Depends(require_admin),
    repo: StorefrontRepository = Depends(get_repository),
):
    await repo.set_cache_entry(key, body.value, body.ttl)
    return SuccessResponse(data=CacheEntryResponse(key=key, value=body.value), message="Cache key set")

@app.delete("/admin/cache/keys/{key:path}", response_model=SuccessResponse[dict])
async def delete_cache_entry(key: str, admin: dict = Depends(require_admin), repo: StorefrontRepository = Depends(get_repository)):
    deleted = await repo.delete_cache_entry(key)
    return SuccessResponse(data={"deleted": deleted})

@app.post("/admin/cache/warm", response_model=SuccessResponse[dict])
async def warm_cache(
    body: CacheWarm,
    admin: dict = Depends(require_admin),
    repo: StorefrontRepository = Depends(get_repository),
):
    warmed = await repo.warm_products(body.skus, body.customer_ids)
    return SuccessResponse(data={"warmed": warmed}, message="Cache warmed")

@app.get("/health", response_model=HealthResponse)
async def health_check(repo: StorefrontRepository = Depends(get_repository)):
    dependencies = await repo.health()

    # A cache outage degrades latency, not correctness
    if dependencies["database"] != "connected":
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service Unhealthy"
        )

    return HealthResponse(
        service=SERVICE_NAME,
        status="healthy" if dependencies["cache"] == "connected" else "degraded",
        timestamp=utcnow(),
        version="1.0.0",
        database=dependencies["database"],
        dependencies={"redis": dependencies["cache"]},
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8003)
