from dataclasses import dataclass
from typing import Optional, Union

from shared.utils import ValidationException


@dataclass(frozen=True)
class CustomerIdentity:
    customer_id: str

    @property
    def key(self) -> str:
        return self.customer_id

    @property
    def owner_field(self) -> str:
        return "customer_id"


@dataclass(frozen=True)
class AnonymousIdentity:
    session_id: str

    @property
    def key(self) -> str:
        return self.session_id

    @property
    def customer_id(self) -> None:
        return None

    @property
    def owner_field(self) -> str:
        return "session_id"


Identity = Union[CustomerIdentity, AnonymousIdentity]


def resolve_identity(customer_id: Optional[str] = None, session_id: Optional[str] = None) -> Identity:
    """An authenticated customer always wins over the anonymous session."""
    if customer_id and customer_id.strip():
        return CustomerIdentity(customer_id.strip())
    if session_id and session_id.strip():
        return AnonymousIdentity(session_id.strip())
    raise ValidationException("User ID or Session ID required")
