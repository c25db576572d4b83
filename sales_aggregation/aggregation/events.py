"""
Sales Event Model

Immutable, externally produced sales events. The engine consumes them
read-only; validation happens once, at the ingest boundary.
"""

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import IngestError


class EventType(str, Enum):
    """Sales event lifecycle types"""
    CREATED = "created"
    PAID = "paid"
    FULFILLED = "fulfilled"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    RETURNED = "returned"
    SHIPPED = "shipped"
    # Any other upstream lifecycle step; never financially recognized
    OTHER = "other"


class SalesChannel(str, Enum):
    """Known sales channels"""
    WEB = "web"
    MOBILE = "mobile"
    MARKETPLACE = "marketplace"
    DIRECT = "direct"
    SOCIAL = "social"


# Only these event types denote actual revenue recognition
FINANCIAL_EVENT_TYPES = frozenset({EventType.PAID, EventType.FULFILLED})

KNOWN_CHANNELS = tuple(channel.value for channel in SalesChannel)
UNCLASSIFIED_CHANNEL = "unclassified"

_EVENT_TYPE_ALIASES = {
    "cancelled": EventType.CANCELED.value,
}
_EVENT_TYPE_VALUES = frozenset(event_type.value for event_type in EventType)


class SalesEvent(BaseModel):
    """A single sales lifecycle event for one product line of an order"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_id: str = Field(min_length=1)
    seller_id: str = Field(min_length=1, validation_alias=AliasChoices("seller_id", "artisan_id"))
    product_id: Optional[str] = None
    product_name: str = ""
    event_type: EventType
    channel: str = UNCLASSIFIED_CHANNEL
    quantity: int = Field(default=0, ge=0)
    unit_price: Decimal = Decimal("0")
    total_amount: Decimal
    net_revenue: Decimal
    event_timestamp: datetime

    @model_validator(mode="before")
    @classmethod
    def fill_derived_amounts(cls, data: Any) -> Any:
        """Derive total_amount from price * quantity and net_revenue from total_amount when absent"""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("total_amount") is None and data.get("unit_price") is not None:
            try:
                data["total_amount"] = Decimal(str(data["unit_price"])) * int(data.get("quantity") or 0)
            except (InvalidOperation, TypeError, ValueError):
                pass
        if data.get("net_revenue") is None and data.get("total_amount") is not None:
            data["net_revenue"] = data["total_amount"]
        return data

    @field_validator("event_type", mode="before")
    @classmethod
    def normalize_event_type(cls, v: Any) -> Any:
        """Accept upstream names such as 'order_paid'"""
        if isinstance(v, str):
            v = v.strip().lower()
            if v.startswith("order_"):
                v = v[len("order_"):]
            v = _EVENT_TYPE_ALIASES.get(v, v)
            if v and v not in _EVENT_TYPE_VALUES:
                return EventType.OTHER
        return v

    @field_validator("product_id", mode="before")
    @classmethod
    def blank_product_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("channel", mode="before")
    @classmethod
    def normalize_channel(cls, v: Any) -> Any:
        if v is None:
            return UNCLASSIFIED_CHANNEL
        if isinstance(v, str):
            return v.strip().lower() or UNCLASSIFIED_CHANNEL
        return v

    @field_validator("event_timestamp")
    @classmethod
    def to_utc(cls, v: datetime) -> datetime:
        """Naive timestamps are UTC; aware ones are converted to UTC"""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @property
    def is_financially_recognized(self) -> bool:
        return self.event_type in FINANCIAL_EVENT_TYPES


def parse_sales_event(payload: Union[SalesEvent, Mapping[str, Any]]) -> SalesEvent:
    """
    Validate a raw payload into a SalesEvent.

    Args:
        payload: An already-built event or a mapping of its fields

    Returns:
        SalesEvent: The validated event

    Raises:
        IngestError: If required fields are missing or malformed
    """
    if isinstance(payload, SalesEvent):
        return payload
    if not isinstance(payload, Mapping):
        raise IngestError(f"Sales event must be a mapping, got {type(payload).__name__}")

    try:
        return SalesEvent.model_validate(dict(payload))
    except ValidationError as e:
        errors: List[Dict[str, Any]] = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise IngestError("Malformed sales event", errors=errors) from e
