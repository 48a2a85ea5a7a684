"""
Cache-coherent access to carts, products, price overrides and orders.

Reads go through the cache and fall back to the document store; mutations
write the store first and only then overwrite or invalidate cache entries.
Cache failures are logged and never reach the caller. Store failures
propagate as DurableStoreUnavailable.
"""
import logging
import secrets
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, TypeVar

from pydantic import ValidationError

from shared.cache import CacheStore
from shared.documents import DocumentStore, new_id
from shared.security_config import validate_cache_pattern
from shared.utils import (
    Settings, settings as default_settings, utcnow,
    ValidationException, NotFoundException, DurableStoreUnavailable, CacheUnavailable,
)
from app import cart_engine
from app.cache_keys import CacheKeys
from app.identity import Identity, CustomerIdentity, AnonymousIdentity
from app.models import (
    ProductDB, PriceOverrideDB, CustomerDB, CartDB, CartItemDB, OrderDB, OrderItemDB,
    OrderStatus, ORDER_TRANSITIONS, PaymentInfo, ShippingInfo, PricedProduct,
    normalize_sku, to_document,
)
from app.pricing import PricingResolver, PriceQuote

logger = logging.getLogger(__name__)

T = TypeVar("T")

PRODUCTS = "products"
OVERRIDES = "price_overrides"
CARTS = "carts"
ORDERS = "orders"
CUSTOMERS = "customers"

# Fields whose change can move a product in or out of a cached listing
_LISTING_FIELDS = ("category", "brand", "is_active")


def generate_order_number(now=None) -> str:
    now = now or utcnow()
    return f"ORD-{now:%y%m%d}-{secrets.token_hex(3).upper()}"


def _cached_product(entry) -> PricedProduct:
    # entries without the pricing marker were not written by this service
    if "pricing_applied" not in entry:
        raise KeyError("pricing_applied")
    return PricedProduct(**entry)


def _cached_listing(entry) -> Tuple[bool, List[PricedProduct]]:
    return bool(entry["pricing_applied"]), [_cached_product(item) for item in entry["items"]]


class StorefrontRepository:
    def __init__(
        self,
        cache: CacheStore,
        store: DocumentStore,
        pricing: Optional[PricingResolver] = None,
        config: Settings = default_settings,
    ):
        self.cache = cache
        self.store = store
        self.pricing = pricing or PricingResolver(store)
        self.config = config

    # --- Cache helpers: failures are logged, never raised ---

    async def _cache_get(self, key: str) -> Optional[Any]:
        try:
            return await self.cache.get(key)
        except CacheUnavailable as e:
            logger.warning(f"Cache read failed, using store: {e.detail}", extra={"cache_key": key})
            return None

    async def _cache_read(self, key: str, parse: Callable[[Any], T]) -> Optional[T]:
        """A cached entry that does not parse into the expected shape counts as a miss."""
        cached = await self._cache_get(key)
        if cached is None:
            return None
        try:
            return parse(cached)
        except (ValidationError, TypeError, KeyError):
            logger.warning("Discarding cached entry of unexpected shape", extra={"cache_key": key})
            return None

    async def _cache_set(self, key: str, value: Any, ttl: int, tags: Iterable[str] = ()) -> None:
        try:
            await self.cache.set(key, value, ttl=ttl, tags=tags)
        except CacheUnavailable as e:
            logger.warning(f"Cache write skipped: {e.detail}", extra={"cache_key": key})

    async def _cache_delete(self, *keys: str) -> None:
        try:
            await self.cache.delete(*keys)
        except CacheUnavailable as e:
            logger.error(f"Cache invalidation failed: {e.detail}", extra={"cache_key": ",".join(keys)})

    async def _cache_delete_pattern(self, pattern: str) -> None:
        try:
            await self.cache.delete_pattern(pattern)
        except CacheUnavailable as e:
            logger.error(f"Cache invalidation failed: {e.detail}", extra={"cache_key": pattern})

    async def _cache_invalidate_tag(self, tag: str) -> None:
        try:
            await self.cache.invalidate_tag(tag)
        except CacheUnavailable as e:
            logger.error(f"Cache tag invalidation failed: {e.detail}", extra={"cache_key": tag})

    # --- Store helpers ---

    async def _load_product(self, sku: str) -> Optional[ProductDB]:
        doc = await self.store.first(PRODUCTS, {"sku": normalize_sku(sku)})
        return ProductDB(**doc) if doc else None

    async def _load_products(self, skus: Iterable[str]) -> Dict[str, ProductDB]:
        skus = list(dict.fromkeys(normalize_sku(s) for s in skus))
        if not skus:
            return {}
        docs = await self.store.query(PRODUCTS, {"sku": {"$in": skus}})
        products = [ProductDB(**doc) for doc in docs]
        return {p.sku: p for p in products}

    async def _load_cart(self, identity: Identity) -> Optional[CartDB]:
        doc = await self.store.first(CARTS, {identity.owner_field: identity.key})
        return CartDB(**doc) if doc else None

    def _new_cart(self, identity: Identity) -> CartDB:
        return CartDB(
            id=new_id(),
            currency=self.config.CURRENCY,
            pricing_applied=True,
            **{identity.owner_field: identity.key},
        )

    async def free_shipping_threshold(self, identity: Identity) -> Decimal:
        default = self.config.DEFAULT_FREE_SHIPPING_THRESHOLD
        if not isinstance(identity, CustomerIdentity):
            return default
        doc = await self.store.get(CUSTOMERS, identity.customer_id)
        if not doc:
            return default
        customer = CustomerDB(**doc)
        if customer.free_shipping_threshold is None:
            return default
        return customer.free_shipping_threshold

    async def customer_role(self, customer_id: str, default: Optional[str] = None) -> Optional[str]:
        doc = await self.store.get(CUSTOMERS, customer_id)
        return CustomerDB(**doc).role if doc else default

    async def _quote(
        self, identity: Identity, products: Mapping[str, ProductDB]
    ) -> Tuple[Dict[str, PriceQuote], bool]:
        base_prices = {sku: p.base_price for sku, p in products.items()}
        quotes = await self.pricing.resolve_prices(identity.customer_id, base_prices)
        applied = not any(q.degraded for q in quotes.values())
        return quotes, applied

    async def _recalculate(self, identity: Identity, cart: CartDB) -> CartDB:
        threshold = await self.free_shipping_threshold(identity)
        return cart_engine.recalculate(
            cart,
            threshold,
            tax_rate=self.config.TAX_RATE,
            flat_shipping_fee=self.config.FLAT_SHIPPING_FEE,
        )

    async def _cache_cart(self, identity: Identity, cart: CartDB) -> None:
        key = CacheKeys.cart(identity.key)
        if isinstance(identity, AnonymousIdentity):
            # guest and customer carts share the key shape; a customer's entry is never displaced by a guest
            existing = await self._cache_get(key)
            if isinstance(existing, dict) and existing.get("customer_id"):
                logger.warning("Not caching guest cart over a customer cart", extra={"cache_key": key})
                return
        await self._cache_set(
            key,
            cart.model_dump(mode="json"),
            ttl=self.config.CART_CACHE_TTL,
            tags=[CacheKeys.sku_tag(it.sku) for it in cart.items],
        )

    async def _save_cart(self, identity: Identity, cart: CartDB) -> CartDB:
        cart = await self._recalculate(identity, cart)
        await self.store.set(CARTS, cart.id, to_document(cart))
        await self._cache_cart(identity, cart)
        return cart

    async def _priced_cart(self, identity: Identity, cart: CartDB) -> Tuple[CartDB, Dict[str, ProductDB]]:
        products = await self._load_products(it.sku for it in cart.items)
        quotes, applied = await self._quote(identity, products)
        return cart_engine.reprice(cart, quotes, applied), products

    # --- Reads ---

    async def get_product(self, sku: str, customer_id: Optional[str] = None) -> Optional[PricedProduct]:
        sku = normalize_sku(sku)
        key = CacheKeys.product(sku, customer_id)
        cached = await self._cache_read(key, _cached_product)
        if cached is not None:
            if customer_id and not cached.pricing_applied:
                logger.info("Discarding cached product priced without overrides", extra={"cache_key": key})
            else:
                return cached

        product = await self._load_product(sku)
        if product is None or not product.is_active:
            return None

        quote = await self.pricing.resolve_price(customer_id, sku, product.base_price)
        priced = PricedProduct.build(product, quote.price, quote.is_override, not quote.degraded)
        await self._cache_set(
            key, priced.model_dump(mode="json"),
            ttl=self.config.PRODUCT_CACHE_TTL, tags=[CacheKeys.sku_tag(sku)],
        )
        logger.debug("Product loaded from store", extra={"sku": sku, "identity": customer_id})
        return priced

    async def list_products(
        self,
        category: Optional[str] = None,
        brand: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> List[PricedProduct]:
        key = CacheKeys.products(category, brand, customer_id)
        cached = await self._cache_read(key, _cached_listing)
        if cached is not None:
            applied, items = cached
            if not customer_id or applied:
                return items

        filters: Dict[str, Any] = {"is_active": True}
        if category:
            filters["category"] = category
        if brand:
            filters["brand"] = brand
        docs = await self.store.query(PRODUCTS, filters, sort=[("sku", 1)])
        products = [ProductDB(**doc) for doc in docs]

        quotes = await self.pricing.resolve_prices(customer_id, {p.sku: p.base_price for p in products})
        applied = not any(q.degraded for q in quotes.values())
        items = [
            PricedProduct.build(p, quotes[p.sku].price, quotes[p.sku].is_override, applied)
            for p in products
        ]
        await self._cache_set(
            key,
            {"pricing_applied": applied, "items": [i.model_dump(mode="json") for i in items]},
            ttl=self.config.PRODUCT_CACHE_TTL,
            tags=[CacheKeys.sku_tag(p.sku) for p in products],
        )
        return items

    async def get_cart(self, identity: Identity) -> CartDB:
        key = CacheKeys.cart(identity.key)
        cart = await self._cache_read(key, lambda c: CartDB(**c))
        if cart is not None:
            if getattr(cart, identity.owner_field) != identity.key:
                logger.warning("Cached cart belongs to another identity", extra={"cache_key": key})
            elif isinstance(identity, CustomerIdentity) and not cart.pricing_applied:
                logger.info("Discarding cached cart priced without overrides", extra={"cache_key": key})
            else:
                return cart

        cart = await self._load_cart(identity)
        if cart is None:
            cart = await self._recalculate(identity, self._new_cart(identity))
            await self.store.set(CARTS, cart.id, to_document(cart))
            logger.info("Created empty cart", extra={"identity": identity.key})
        else:
            cart, _ = await self._priced_cart(identity, cart)
            cart = await self._recalculate(identity, cart)

        await self._cache_cart(identity, cart)
        return cart

    # --- Cart mutations ---

    async def add_item(self, identity: Identity, sku: str, quantity: int) -> CartDB:
        cap = self.config.MAX_ITEM_QUANTITY
        cart_engine.validate_quantity(quantity, cap)
        sku = normalize_sku(sku)

        cart = await self._load_cart(identity) or self._new_cart(identity)
        products = await self._load_products([it.sku for it in cart.items] + [sku])
        product = products.get(sku)
        if product is None or not product.is_active:
            raise NotFoundException("Product not found")

        quotes, applied = await self._quote(identity, products)
        quote = quotes[sku]
        item = CartItemDB(
            sku=sku,
            product_id=product.id,
            name=product.name,
            brand=product.brand,
            image_url=product.image_url,
            price=quote.price,
            has_custom_price=quote.is_override,
            quantity=quantity,
        )
        cart = cart_engine.reprice(cart, quotes, applied)
        cart = cart_engine.add_item(cart, item, quantity, cap=cap)
        logger.info("Added item to cart", extra={"identity": identity.key, "sku": sku})
        return await self._save_cart(identity, cart)

    async def update_item(self, identity: Identity, sku: str, quantity: int) -> CartDB:
        cap = self.config.MAX_ITEM_QUANTITY
        cart_engine.validate_quantity(quantity, cap)
        cart = await self._load_cart(identity)
        if cart is None:
            raise NotFoundException("Item not found in cart")

        cart, _ = await self._priced_cart(identity, cart)
        cart = cart_engine.update_quantity(cart, sku, quantity, cap=cap)
        return await self._save_cart(identity, cart)

    async def remove_item(self, identity: Identity, sku: str) -> CartDB:
        cart = await self._load_cart(identity)
        if cart is None:
            raise NotFoundException("Item not found in cart")

        cart, _ = await self._priced_cart(identity, cart)
        cart = cart_engine.remove_item(cart, sku)
        return await self._save_cart(identity, cart)

    async def clear_cart(self, identity: Identity) -> CartDB:
        cart = await self._load_cart(identity) or self._new_cart(identity)
        cart = cart_engine.clear(cart).model_copy(update={"pricing_applied": True})
        return await self._save_cart(identity, cart)

    async def merge_guest_cart(self, customer_id: str, session_id: str) -> CartDB:
        """
        Fold a guest cart into the customer's cart, in the guest cart's item order.
        Quantities for a sku already in the customer cart are summed; if any sum
        exceeds the cap nothing is written. The guest cart is emptied afterwards.
        Items whose product is gone or inactive are dropped.
        """
        customer = CustomerIdentity(customer_id)
        guest = AnonymousIdentity(session_id)
        guest_cart = await self._load_cart(guest)
        if guest_cart is None or not guest_cart.items:
            return await self.get_cart(customer)

        cart = await self._load_cart(customer) or self._new_cart(customer)
        skus = [it.sku for it in cart.items] + [it.sku for it in guest_cart.items]
        products = await self._load_products(skus)
        quotes, applied = await self._quote(customer, products)
        cart = cart_engine.reprice(cart, quotes, applied)

        cap = self.config.MAX_ITEM_QUANTITY
        for guest_item in guest_cart.items:
            product = products.get(guest_item.sku)
            if product is None or not product.is_active:
                logger.warning("Dropping unavailable item from guest cart", extra={"sku": guest_item.sku})
                continue
            quote = quotes[guest_item.sku]
            item = guest_item.model_copy(update={
                "product_id": product.id,
                "name": product.name,
                "brand": product.brand,
                "image_url": product.image_url,
                "price": quote.price,
                "has_custom_price": quote.is_override,
            })
            cart = cart_engine.add_item(cart, item, guest_item.quantity, cap=cap)

        cart = await self._save_cart(customer, cart)
        await self._save_cart(guest, cart_engine.clear(guest_cart))
        logger.info("Merged guest cart", extra={"identity": customer_id, "source": session_id})
        return cart

    # --- Orders ---

    async def create_order(
        self,
        customer_id: str,
        shipping_info: Optional[ShippingInfo] = None,
        payment_method: str = "invoice",
        notes: Optional[str] = None,
    ) -> OrderDB:
        identity = CustomerIdentity(customer_id)
        cart = await self._load_cart(identity)
        if cart is None or not cart.items:
            raise ValidationException("Cart is empty")

        cart, products = await self._priced_cart(identity, cart)
        for item in cart.items:
            product = products.get(item.sku)
            if product is None or not product.is_active:
                raise ValidationException(f"Product {item.sku} is no longer available")
        if not cart.pricing_applied:
            # never charge base prices to a customer who may have overrides
            raise DurableStoreUnavailable("Pricing temporarily unavailable, please retry")
        cart = await self._recalculate(identity, cart)

        now = utcnow()
        order = OrderDB(
            id=new_id(),
            order_number=generate_order_number(now),
            customer_id=customer_id,
            items=[
                OrderItemDB(
                    sku=it.sku,
                    product_id=it.product_id,
                    name=it.name,
                    brand=it.brand,
                    unit_price=it.price,
                    quantity=it.quantity,
                    line_total=cart_engine.money(it.price * it.quantity),
                )
                for it in cart.items
            ],
            subtotal=cart.subtotal,
            tax=cart.tax,
            shipping=cart.shipping,
            total=cart.total,
            currency=cart.currency,
            shipping_info=shipping_info,
            payment_info=PaymentInfo(method=payment_method),
            notes=notes,
            created_at=now,
        )
        emptied = await self._recalculate(identity, cart_engine.clear(cart, now=now))

        batch = self.store.batch()
        batch.add(ORDERS, to_document(order), doc_id=order.id)
        batch.set(CARTS, emptied.id, to_document(emptied))
        await batch.commit()

        await self._cache_cart(identity, emptied)
        await self._cache_delete(CacheKeys.user_orders(customer_id))
        logger.info(f"Created order {order.order_number}", extra={"order_id": order.id, "identity": customer_id})
        return order

    async def list_orders(self, customer_id: str) -> List[OrderDB]:
        key = CacheKeys.user_orders(customer_id)
        cached = await self._cache_read(key, lambda entry: [OrderDB(**doc) for doc in entry])
        if cached is not None:
            return cached

        docs = await self.store.query(ORDERS, {"customer_id": customer_id}, sort=[("created_at", -1)])
        orders = [OrderDB(**doc) for doc in docs]
        await self._cache_set(
            key, [o.model_dump(mode="json") for o in orders], ttl=self.config.ORDER_CACHE_TTL
        )
        return orders

    async def get_order(self, order_id: str, customer_id: Optional[str] = None) -> OrderDB:
        """Customers only see their own orders; pass customer_id=None for admin reads."""
        key = CacheKeys.order(order_id)
        order = await self._cache_read(key, lambda entry: OrderDB(**entry))
        if order is None:
            doc = await self.store.get(ORDERS, order_id)
            if not doc:
                raise NotFoundException("Order not found")
            order = OrderDB(**doc)
            await self._cache_set(key, order.model_dump(mode="json"), ttl=self.config.ORDER_CACHE_TTL)

        if customer_id is not None and order.customer_id != customer_id:
            raise NotFoundException("Order not found")
        return order

    async def update_order_status(self, order_id: str, new_status: OrderStatus) -> OrderDB:
        doc = await self.store.get(ORDERS, order_id)
        if not doc:
            raise NotFoundException("Order not found")
        order = OrderDB(**doc)
        new_status = OrderStatus(new_status)

        if new_status not in ORDER_TRANSITIONS[order.status]:
            raise ValidationException(
                f"Cannot change order status from {order.status.value} to {new_status.value}"
            )

        now = utcnow()
        await self.store.update(ORDERS, order_id, {"status": new_status.value, "updated_at": now})
        await self._cache_delete(CacheKeys.order(order_id), CacheKeys.user_orders(order.customer_id))
        logger.info(
            f"Order status {order.status.value} -> {new_status.value}",
            extra={"order_id": order_id},
        )
        return order.model_copy(update={"status": new_status, "updated_at": now})

    # --- Pricing administration ---

    async def invalidate_customer_pricing(self, customer_id: str, skus: Iterable[str]) -> None:
        """Drop every cached value that embeds this customer's prices for the given skus."""
        keys = [CacheKeys.product(sku, customer_id) for sku in skus]
        keys.append(CacheKeys.cart(customer_id))
        await self._cache_delete(*keys)
        await self._cache_delete_pattern(CacheKeys.customer_products_pattern(customer_id))

    async def set_price_override(
        self,
        customer_id: str,
        sku: str,
        price: Decimal,
        valid_from=None,
        valid_until=None,
        updated_by: Optional[str] = None,
    ) -> PriceOverrideDB:
        sku = normalize_sku(sku)
        if valid_from and valid_until and valid_until <= valid_from:
            raise ValidationException("valid_until must be after valid_from")

        product = await self._load_product(sku)
        if product is None:
            raise NotFoundException(f"Product {sku} not found")

        override_id = PriceOverrideDB.key(customer_id, product.id)
        existing = await self.store.get(OVERRIDES, override_id)
        now = utcnow()
        try:
            override = PriceOverrideDB(
                id=override_id,
                customer_id=customer_id,
                product_id=product.id,
                sku=sku,
                price=price,
                valid_from=valid_from,
                valid_until=valid_until,
                updated_by=updated_by,
                created_at=existing.get("created_at", now) if existing else now,
                updated_at=now,
            )
        except ValidationError:
            raise ValidationException("Price must be a non-negative amount")

        await self.store.set(OVERRIDES, override_id, to_document(override))
        await self.invalidate_customer_pricing(customer_id, [sku])
        logger.info("Price override saved", extra={"identity": customer_id, "sku": sku})
        return override

    async def deactivate_price_override(
        self, customer_id: str, sku: str, updated_by: Optional[str] = None
    ) -> int:
        sku = normalize_sku(sku)
        docs = await self.store.query(OVERRIDES, {"customer_id": customer_id, "sku": sku, "is_active": True})
        if not docs:
            raise NotFoundException("Price override not found")

        now = utcnow()
        for doc in docs:
            await self.store.update(
                OVERRIDES, doc["_id"], {"is_active": False, "updated_at": now, "updated_by": updated_by}
            )
        await self.invalidate_customer_pricing(customer_id, [sku])
        logger.info("Price override retired", extra={"identity": customer_id, "sku": sku})
        return len(docs)

    async def list_price_overrides(self, customer_id: str) -> List[PriceOverrideDB]:
        docs = await self.store.query(OVERRIDES, {"customer_id": customer_id}, sort=[("sku", 1)])
        return [PriceOverrideDB(**doc) for doc in docs]

    async def bulk_set_price_overrides(
        self,
        customer_id: str,
        rows: List[Mapping[str, Any]],
        updated_by: Optional[str] = None,
    ) -> dict:
        """
        Rows are `{sku, price}` mappings. Valid rows are written in one batch;
        invalid ones are reported by row number (1-based) and skipped.
        """
        products = await self._load_products(
            str(row.get("sku") or "") for row in rows if row.get("sku")
        )
        override_ids = [PriceOverrideDB.key(customer_id, p.id) for p in products.values()]
        existing = await self.store.get_many(OVERRIDES, override_ids)

        now = utcnow()
        batch = self.store.batch()
        errors: List[str] = []
        updated_skus: List[str] = []
        for n, row in enumerate(rows, start=1):
            sku = normalize_sku(str(row.get("sku") or ""))
            if not sku:
                errors.append(f"Row {n}: missing sku")
                continue
            product = products.get(sku)
            if product is None:
                errors.append(f"Row {n}: product {sku} not found")
                continue
            override_id = PriceOverrideDB.key(customer_id, product.id)
            previous = existing.get(override_id)
            try:
                override = PriceOverrideDB(
                    id=override_id,
                    customer_id=customer_id,
                    product_id=product.id,
                    sku=sku,
                    price=row.get("price"),
                    updated_by=updated_by,
                    created_at=previous.get("created_at", now) if previous else now,
                    updated_at=now,
                )
            except ValidationError:
                errors.append(f"Row {n}: invalid price {row.get('price')!r}")
                continue
            batch.set(OVERRIDES, override_id, to_document(override))
            updated_skus.append(sku)

        if len(batch):
            await batch.commit()
            await self.invalidate_customer_pricing(customer_id, updated_skus)

        logger.info(
            f"Bulk price update: {len(updated_skus)} ok, {len(errors)} failed",
            extra={"identity": customer_id},
        )
        return {
            "total_rows": len(rows),
            "successful_updates": len(updated_skus),
            "failed_updates": len(errors),
            "errors": errors,
        }

    # --- Products ---

    async def upsert_product(self, sku: str, fields: Mapping[str, Any]) -> ProductDB:
        sku = normalize_sku(sku)
        existing = await self._load_product(sku)
        now = utcnow()
        try:
            if existing is None:
                product = ProductDB(**{**fields, "_id": new_id(), "sku": sku, "created_at": now})
            else:
                merged = {**existing.model_dump(), **fields, "sku": sku, "updated_at": now}
                product = ProductDB(**merged)
        except ValidationError as e:
            raise ValidationException(f"Invalid product: {e.errors()[0]['msg']}")

        await self.store.set(PRODUCTS, product.id, to_document(product))

        # every cached value embedding this sku: product reads for all customers, carts, listings
        await self._cache_invalidate_tag(CacheKeys.sku_tag(sku))
        if existing is None or any(getattr(existing, f) != getattr(product, f) for f in _LISTING_FIELDS):
            await self._cache_delete_pattern("products:*")
        logger.info("Product saved", extra={"sku": sku})
        return product

    # --- Cache administration ---

    async def cache_stats(self) -> dict:
        return await self.cache.stats()

    async def clear_cache(self) -> int:
        return await self.cache.clear_all()

    async def clear_cache_pattern(self, pattern: str) -> int:
        if not validate_cache_pattern(pattern):
            raise ValidationException("Invalid cache key pattern")
        return await self.cache.delete_pattern(pattern)

    async def get_cache_entry(self, key: str) -> Any:
        value = await self.cache.get(key)
        if value is None:
            raise NotFoundException("Cache key not found")
        return value

    async def set_cache_entry(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.cache.set(key, value, ttl=self.config.DEFAULT_CACHE_TTL if ttl is None else ttl)

    async def delete_cache_entry(self, key: str) -> int:
        return await self.cache.delete(key)

    async def warm_products(
        self, skus: Optional[List[str]] = None, customer_ids: Iterable[str] = ()
    ) -> int:
        """Populate product entries for anonymous readers and the given customers."""
        if skus:
            products = list((await self._load_products(skus)).values())
        else:
            docs = await self.store.query(PRODUCTS, {"is_active": True}, sort=[("sku", 1)])
            products = [ProductDB(**doc) for doc in docs]

        warmed = 0
        for customer_id in [None, *customer_ids]:
            for product in products:
                if await self.get_product(product.sku, customer_id) is not None:
                    warmed += 1
        logger.info(f"Warmed {warmed} product cache entries")
        return warmed

    async def health(self) -> Dict[str, str]:
        return {
            "database": "connected" if await self.store.ping() else "disconnected",
            "cache": "connected" if await self.cache.ping() else "disconnected",
        }
