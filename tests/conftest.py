import os

# Settings are read at import time
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret"
os.environ.pop("AUTH_SERVICE_URL", None)

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import fakeredis
import pytest
from httpx import AsyncClient, ASGITransport
from jose import jwt
from mongomock_motor import AsyncMongoMockClient

from shared.cache import CacheStore
from shared.documents import DocumentStore
from shared.utils import settings
from app.models import ProductDB, CustomerDB, to_document
from app.pricing import PricingResolver
from app.repository import StorefrontRepository


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def cache(redis_client):
    return CacheStore(redis_client, prefix="api", default_ttl=3600)


@pytest.fixture
def db():
    return AsyncMongoMockClient()["storefront_test"]


@pytest.fixture
def store(db):
    return DocumentStore(db)


@pytest.fixture
def repo(cache, store):
    return StorefrontRepository(cache, store, PricingResolver(store), config=settings)


async def add_product(db, sku, base_price, **fields):
    product = ProductDB(_id=f"prod-{sku.lower()}", sku=sku, name=fields.pop("name", f"Product {sku}"),
                        base_price=Decimal(base_price), **fields)
    await db.products.insert_one({**to_document(product), "_id": product.id})
    return product


async def add_customer(db, customer_id, **fields):
    customer = CustomerDB(_id=customer_id, **fields)
    await db.customers.insert_one({**to_document(customer), "_id": customer_id})
    return customer


@pytest.fixture
async def catalogue(db):
    """Three active products and one retired one."""
    return {
        "VALVE-1": await add_product(db, "VALVE-1", "120.00", brand="Acme", category="valves"),
        "PUMP-1": await add_product(db, "PUMP-1", "450.50", brand="Acme", category="pumps"),
        "SEAL-1": await add_product(db, "SEAL-1", "2.25", brand="Tight", category="seals"),
        "OLD-1": await add_product(db, "OLD-1", "10.00", brand="Acme", category="valves", is_active=False),
    }


def make_token(subject, role="customer", minutes=30):
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return jwt.encode({"sub": subject, "role": role, "exp": expire}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def bearer(subject, role="customer"):
    return {"Authorization": f"Bearer {make_token(subject, role)}"}


@pytest.fixture
async def client(repo):
    from app.main import app

    app.state.repository = repo
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.state.repository = None
