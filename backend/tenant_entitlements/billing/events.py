"""
Billing provider events.

Webhook payloads are validated into BillingEvent before they reach the
reconciler. Two input shapes are accepted:
- the normalised shape (event_id, type, timestamp, ...), and
- the provider envelope (id, type, created, data.object), via
  BillingEvent.from_provider_payload

Anything that fails validation raises InvalidEventError.
"""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from tenant_entitlements.entitlements.errors import InvalidEventError
from tenant_entitlements.models.subscription import SubscriptionTier


class BillingEventType(str, Enum):
    """Normalised billing event types."""
    CHECKOUT_COMPLETED = "checkout.completed"
    INVOICE_PAID = "invoice.paid"
    PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"


# Provider event names accepted as aliases
PROVIDER_EVENT_ALIASES = {
    "checkout.session.completed": BillingEventType.CHECKOUT_COMPLETED,
    "invoice.payment_succeeded": BillingEventType.INVOICE_PAID,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_CANCELLED,
}


def _to_utc(value: Any) -> Any:
    """Epoch seconds or ISO strings to aware UTC datetimes. Naive values are taken as UTC."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("timestamp must be a datetime, ISO string or epoch seconds")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"timestamp out of range: {value!r}") from e
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    raise ValueError(f"Unsupported timestamp: {value!r}")


def _id_of(value: Any) -> Optional[str]:
    """Provider references arrive either as an id string or an expanded object."""
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


def _mapping_or_empty(value: Any, field: str, event_id: Any) -> Mapping[str, Any]:
    if value is None or value == "":
        return {}
    if not isinstance(value, Mapping):
        raise InvalidEventError(f"{field} must be an object", event_id=event_id)
    return value


class BillingEvent(BaseModel):
    """Validated billing event. Never persisted as an entity."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(min_length=1)
    type: BillingEventType
    timestamp: datetime
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    tier: Optional[SubscriptionTier] = None
    price_id: Optional[str] = None
    period_end: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def normalise_type(cls, value: Any) -> Any:
        if isinstance(value, str) and value in PROVIDER_EVENT_ALIASES:
            return PROVIDER_EVENT_ALIASES[value]
        return value

    @field_validator("tier", mode="before")
    @classmethod
    def parse_tier(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return SubscriptionTier.parse(value)

    @field_validator("timestamp", "period_end", mode="before")
    @classmethod
    def normalise_datetime(cls, value: Any) -> Any:
        return _to_utc(value)

    @model_validator(mode="after")
    def require_reference(self) -> "BillingEvent":
        if not self.billing_customer_id and not self.billing_subscription_id:
            raise ValueError("event must reference a billing customer or subscription")
        return self

    def payload_hash(self) -> str:
        body = json.dumps(self.payload, sort_keys=True, default=str)
        return hashlib.sha256(body.encode("utf-8")).hexdigest()

    def log_context(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.type.value,
            "billing_customer_id": self.billing_customer_id,
            "billing_subscription_id": self.billing_subscription_id,
            "event_timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "BillingEvent":
        """
        Validate a normalised event dict.

        Raises:
            InvalidEventError: On any validation failure
        """
        try:
            return cls.model_validate(dict(data))
        except (ValidationError, ValueError, TypeError) as e:
            raise InvalidEventError(
                f"Invalid billing event: {e}",
                event_id=data.get("event_id") if isinstance(data, Mapping) else None,
            ) from e

    @classmethod
    def from_provider_payload(
        cls,
        raw: Mapping[str, Any],
        price_tiers: Optional[Mapping[str, SubscriptionTier]] = None,
    ) -> "BillingEvent":
        """
        Build an event from the provider envelope {id, type, created, data: {object}}.

        The tier comes from object metadata when present, otherwise from the
        configured price id mapping.

        Raises:
            InvalidEventError: On a malformed envelope or unsupported type
        """
        if not isinstance(raw, Mapping):
            raise InvalidEventError("Billing payload must be an object")
        event_id = raw.get("id")
        event_type = raw.get("type")
        data = _mapping_or_empty(raw.get("data"), "data", event_id)
        obj = _mapping_or_empty(data.get("object"), "data.object", event_id)

        if event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
            subscription_id = _id_of(obj.get("id"))
        else:
            subscription_id = _id_of(obj.get("subscription"))

        price_id = None
        items = _mapping_or_empty(obj.get("items"), "data.object.items", event_id).get("data") or []
        if not isinstance(items, list):
            raise InvalidEventError("data.object.items.data must be a list", event_id=event_id)
        if items and isinstance(items[0], Mapping):
            price_id = _id_of(items[0].get("price"))
        metadata = _mapping_or_empty(obj.get("metadata"), "data.object.metadata", event_id)
        price_id = price_id or _id_of(metadata.get("price_id"))

        tier = metadata.get("tier")
        if not tier and price_id and price_tiers:
            tier = price_tiers.get(price_id)

        return cls.parse({
            "event_id": event_id,
            "type": event_type,
            "timestamp": raw.get("created"),
            "billing_customer_id": _id_of(obj.get("customer")),
            "billing_subscription_id": subscription_id,
            "tier": tier,
            "price_id": price_id,
            "period_end": obj.get("current_period_end") or obj.get("period_end"),
            "payload": dict(raw),
        })
