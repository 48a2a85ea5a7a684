from typing import Optional

from app.models import normalize_sku


class CacheKeys:
    """Cache key shapes, relative to the store's namespace prefix."""

    @staticmethod
    def cart(identity_key: str) -> str:
        return f"cart:{identity_key}"

    @staticmethod
    def product(sku: str, customer_id: Optional[str] = None) -> str:
        sku = normalize_sku(sku)
        if customer_id:
            return f"product:{sku}_user_{customer_id}"
        return f"product:{sku}"

    @staticmethod
    def products(category: Optional[str] = None, brand: Optional[str] = None,
                 customer_id: Optional[str] = None) -> str:
        key = f"products:{category or 'all'}:{brand or 'all'}"
        if customer_id:
            key += f"_user_{customer_id}"
        return key

    @staticmethod
    def customer_products_pattern(customer_id: str) -> str:
        return f"products:*_user_{customer_id}"

    @staticmethod
    def user_orders(customer_id: str) -> str:
        return f"orders:user:{customer_id}"

    @staticmethod
    def order(order_id: str) -> str:
        return f"order:{order_id}"

    @staticmethod
    def sku_tag(sku: str) -> str:
        return f"sku:{normalize_sku(sku)}"
