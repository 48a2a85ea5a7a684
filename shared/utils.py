from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from jose import JWTError, jwt
import redis.asyncio as aioredis

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "storefront_db"
    REDIS_URL: str = "redis://redis:6379/0"

    # Cache namespace and TTLs (seconds)
    CACHE_PREFIX: str = "api"
    DEFAULT_CACHE_TTL: int = 3600
    CART_CACHE_TTL: int = 1800
    PRODUCT_CACHE_TTL: int = 300
    ORDER_CACHE_TTL: int = 900

    # Cart totals
    TAX_RATE: Decimal = Decimal("0.10")
    FLAT_SHIPPING_FEE: Decimal = Decimal("10.00")
    DEFAULT_FREE_SHIPPING_THRESHOLD: Decimal = Decimal("1000")
    MAX_ITEM_QUANTITY: int = 100
    CURRENCY: str = "USD"

    # Tokens are issued by the identity provider; we only verify them.
    SECRET_KEY: str = "secret"
    ALGORITHM: str = "HS256"
    AUTH_SERVICE_URL: Optional[str] = None

    RATE_LIMIT_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()

# --- Clients ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url, tz_aware=True)

def get_cache_client(url: str = settings.REDIS_URL) -> aioredis.Redis:
    return aioredis.Redis.from_url(url, decode_responses=True)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """MongoDB hands back naive datetimes unless the client is tz-aware; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

# --- Authentication ---
def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class ValidationException(AppException):
    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class DurableStoreUnavailable(AppException):
    """The document store could not complete the operation; safe to retry."""

    def __init__(self, detail: str = "Storage temporarily unavailable, please retry"):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            headers={"Retry-After": "1"}
        )

class CacheUnavailable(AppException):
    """Raised by the cache store; the repository swallows it, admin endpoints surface it."""

    def __init__(self, detail: str = "Cache unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)

class PricingResolutionError(Exception):
    pass
