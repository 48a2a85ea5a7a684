"""
Cart rules as pure functions over CartDB values.

Nothing here awaits or touches a store: every function takes a cart and
returns a new one. Totals are only ever produced by `recalculate`, so a cart
that went through any mutation here must be recalculated before it is saved.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping, Optional

from shared.utils import settings, utcnow, ValidationException, NotFoundException
from app.models import CartDB, CartItemDB, normalize_sku

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def validate_quantity(quantity, cap: Optional[int] = None) -> int:
    cap = settings.MAX_ITEM_QUANTITY if cap is None else cap
    # bool is an int subclass; True is not a quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationException("Quantity must be a positive integer")
    if quantity > cap:
        raise ValidationException(f"Quantity cannot exceed {cap}")
    return quantity


def add_item(
    cart: CartDB,
    item: CartItemDB,
    quantity: int,
    now: Optional[datetime] = None,
    cap: Optional[int] = None,
) -> CartDB:
    cap = settings.MAX_ITEM_QUANTITY if cap is None else cap
    validate_quantity(quantity, cap)
    now = now or utcnow()

    items = list(cart.items)
    for i, existing in enumerate(items):
        if existing.sku == item.sku:
            new_quantity = existing.quantity + quantity
            if new_quantity > cap:
                raise ValidationException(
                    f"Quantity cannot exceed {cap} ({existing.quantity} already in cart)"
                )
            items[i] = existing.model_copy(update={"quantity": new_quantity, "added_at": now})
            break
    else:
        items.append(item.model_copy(update={"quantity": quantity, "added_at": now}))

    return cart.model_copy(update={"items": items, "updated_at": now})


def update_quantity(
    cart: CartDB,
    sku: str,
    quantity: int,
    now: Optional[datetime] = None,
    cap: Optional[int] = None,
) -> CartDB:
    validate_quantity(quantity, cap)
    sku = normalize_sku(sku)
    now = now or utcnow()

    if cart.item(sku) is None:
        raise NotFoundException("Item not found in cart")

    items = [
        it.model_copy(update={"quantity": quantity, "added_at": now}) if it.sku == sku else it
        for it in cart.items
    ]
    return cart.model_copy(update={"items": items, "updated_at": now})


def remove_item(cart: CartDB, sku: str, now: Optional[datetime] = None) -> CartDB:
    sku = normalize_sku(sku)
    if cart.item(sku) is None:
        raise NotFoundException("Item not found in cart")

    items = [it for it in cart.items if it.sku != sku]
    return cart.model_copy(update={"items": items, "updated_at": now or utcnow()})


def recalculate(
    cart: CartDB,
    free_shipping_threshold: Optional[Decimal] = None,
    tax_rate: Optional[Decimal] = None,
    flat_shipping_fee: Optional[Decimal] = None,
) -> CartDB:
    """Derive subtotal, tax, shipping and total from the item list alone."""
    if free_shipping_threshold is None:
        free_shipping_threshold = settings.DEFAULT_FREE_SHIPPING_THRESHOLD
    tax_rate = settings.TAX_RATE if tax_rate is None else Decimal(str(tax_rate))
    flat_shipping_fee = settings.FLAT_SHIPPING_FEE if flat_shipping_fee is None else flat_shipping_fee

    subtotal = money(sum((it.price * it.quantity for it in cart.items), ZERO))
    tax = money(subtotal * tax_rate)
    if not cart.items or subtotal >= Decimal(str(free_shipping_threshold)):
        shipping = ZERO
    else:
        shipping = money(flat_shipping_fee)
    total = money(subtotal + tax + shipping)

    return cart.model_copy(update={
        "subtotal": subtotal,
        "tax": tax,
        "shipping": shipping,
        "total": total,
    })


def clear(
    cart: CartDB,
    free_shipping_threshold: Optional[Decimal] = None,
    now: Optional[datetime] = None,
    **rates,
) -> CartDB:
    emptied = cart.model_copy(update={"items": [], "updated_at": now or utcnow()})
    return recalculate(emptied, free_shipping_threshold, **rates)


def reprice(cart: CartDB, quotes: Mapping[str, object], pricing_applied: bool) -> CartDB:
    """Refresh unit prices from resolved quotes; items without a quote keep their snapshot."""
    items = []
    for it in cart.items:
        quote = quotes.get(it.sku)
        if quote is None:
            items.append(it)
        else:
            items.append(it.model_copy(update={
                "price": quote.price,
                "has_custom_price": quote.is_override,
            }))
    return cart.model_copy(update={"items": items, "pricing_applied": pricing_applied})


def item_count(cart: CartDB) -> int:
    return sum(it.quantity for it in cart.items)
