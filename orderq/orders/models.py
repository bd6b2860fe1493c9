"""
Order domain models.

RawEmail comes in from a mail source, ParsedOrderFragment is what one email
yields after extraction, and CanonicalOrder is the merged record for one
real-world purchase. SyncSummary is what a sync run hands back.
"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderq.config import DEFAULT_CURRENCY, MIN_USEFUL_BODY_CHARS
from orderq.utils.html import html_to_text


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so every comparison is aware-vs-aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class OrderStatus(str, Enum):
    """Lifecycle status of an order. Ordered by rank except the terminal pair."""

    ORDERED = "ordered"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"  # terminal
    RETURNED = "returned"  # terminal


class EmailType(str, Enum):
    """What kind of vendor email a fragment came from."""

    CONFIRMATION = "confirmation"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FEEDBACK = "feedback"  # post-delivery review request
    CANCELLATION = "cancellation"
    RETURN = "return"
    OTHER = "other"


_STATUS_RANK: dict[OrderStatus, int] = {
    OrderStatus.ORDERED: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.OUT_FOR_DELIVERY: 4,
    OrderStatus.DELIVERED: 5,
}

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.CANCELLED, OrderStatus.RETURNED}
)

TERMINAL_RANK = 100


def is_terminal(status: OrderStatus | str) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def status_rank(status: OrderStatus | str) -> int:
    """Rank used for monotonicity checks. Terminal statuses rank above everything."""
    status = OrderStatus(status)
    if status in TERMINAL_STATUSES:
        return TERMINAL_RANK
    return _STATUS_RANK[status]


def _is_body_boilerplate(body: str) -> bool:
    """Check if body text is empty or just boilerplate (URLs, separators)."""
    if not body:
        return True
    stripped = re.sub(r"https?://\S+", "", body)
    stripped = re.sub(r"[=\-]{3,}", "", stripped)
    stripped = re.sub(r"\s+", " ", stripped).strip()
    return len(stripped) < MIN_USEFUL_BODY_CHARS


class RawEmail(BaseModel):
    """One email as supplied by a mail source. Immutable."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(..., description="Provider-assigned message identifier")
    sender: str = Field(..., description="From header, e.g. 'Amazon <auto-confirm@amazon.in>'")
    subject: str = Field(default="")
    html_body: str = Field(default="")
    text_body: str = Field(default="")
    received_at: datetime

    @field_validator("message_id")
    @classmethod
    def message_id_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("message_id cannot be empty")
        return v.strip()

    @field_validator("received_at")
    @classmethod
    def received_at_aware(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def content(self) -> str:
        """Best plain-text rendition of the body.

        Prefers the text part; falls back to the HTML converted to text when
        the text part is empty or only a "view in browser" stub.
        """
        if self.html_body and _is_body_boilerplate(self.text_body):
            return html_to_text(self.html_body)
        return self.text_body


class Item(BaseModel):
    """A line item of an order."""

    model_config = ConfigDict(frozen=True)

    name: str
    quantity: int = Field(default=1, ge=1)
    unit_price: float | None = Field(default=None, ge=0)
    total_price: float | None = Field(default=None, ge=0)

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("item name cannot be empty")
        return v.strip()

    def dedup_key(self) -> tuple[str, float | None]:
        """Normalized name + price, the identity of an item within one order."""
        name = re.sub(r"[^a-z0-9]+", " ", self.name.lower()).strip()
        price = self.total_price if self.total_price is not None else self.unit_price
        return name, price


def _same_item(a: tuple[str, float | None], b: tuple[str, float | None]) -> bool:
    # An unpriced mention of a name matches a priced one
    if a[0] != b[0]:
        return False
    return a[1] is None or b[1] is None or abs(a[1] - b[1]) < 0.01


def merge_items(current: list[Item], incoming: list[Item], limit: int | None = None) -> list[Item]:
    """Append incoming items that are not already present, keeping order.

    When an incoming priced item matches an unpriced one, the priced one
    takes its slot.
    """
    merged = list(current)
    for item in incoming:
        key = item.dedup_key()
        for pos, existing in enumerate(merged):
            existing_key = existing.dedup_key()
            if _same_item(existing_key, key):
                if existing_key[1] is None and key[1] is not None:
                    merged[pos] = item
                break
        else:
            merged.append(item)
    if limit is not None:
        merged = merged[:limit]
    return merged


class ParsedOrderFragment(BaseModel):
    """Structured data extracted from one email, before reconciliation. Never mutated."""

    model_config = ConfigDict(frozen=True)

    platform: str
    order_ref: str | None = None
    tracking_ref: str | None = None
    amount: float | None = None
    currency: str = DEFAULT_CURRENCY
    items: list[Item] = Field(default_factory=list)
    product_name: str | None = None
    product_is_placeholder: bool = False
    status: OrderStatus = OrderStatus.ORDERED
    status_identified: bool = False
    email_type: EmailType = EmailType.OTHER
    order_date: datetime | None = None
    delivery_location: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    # Back-reference to the source email
    source_message_id: str
    received_at: datetime
    subject: str = ""

    @field_validator("order_date", "received_at")
    @classmethod
    def dates_aware(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @property
    def has_real_product(self) -> bool:
        return bool(self.product_name) and not self.product_is_placeholder


class CanonicalOrder(BaseModel):
    """
    The merged record representing one real-world purchase.

    Created from the first fragment of a new identity and afterwards changed
    only by the lifecycle reconciler, which always works on a copy.
    """

    model_config = ConfigDict(frozen=False)

    id: str = Field(..., description="Unique identifier (UUID)")
    user_id: str
    platform: str

    order_ref: str | None = None
    tracking_ref: str | None = None
    amount: float | None = None
    currency: str = DEFAULT_CURRENCY
    items: list[Item] = Field(default_factory=list)
    product_name: str | None = None
    product_is_placeholder: bool = False
    status: OrderStatus = OrderStatus.ORDERED
    order_date: datetime | None = None
    delivered_date: datetime | None = None
    delivery_location: str | None = None

    fragment_refs: list[str] = Field(default_factory=list, description="Source message ids")
    identity_keys: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    integrity_warnings: list[str] = Field(default_factory=list)

    last_email_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("order_date", "delivered_date", "last_email_at", "created_at", "updated_at")
    @classmethod
    def dates_aware(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v)

    @property
    def has_real_product(self) -> bool:
        return bool(self.product_name) and not self.product_is_placeholder

    def completeness(self) -> int:
        """Percent of the key fields populated (order ref, amount, items, tracking, order date)."""
        fields = [
            bool(self.order_ref),
            bool(self.amount),
            bool(self.items),
            bool(self.tracking_ref),
            self.order_date is not None,
        ]
        return round(100 * sum(fields) / len(fields))

    def to_db_dict(self) -> dict[str, Any]:
        """Convert to dict for database storage. Items are stored separately."""
        from orderq.orders.normalizer import product_key

        return {
            "id": self.id,
            "user_id": self.user_id,
            "platform": self.platform,
            "order_ref": self.order_ref,
            "tracking_ref": self.tracking_ref,
            "amount": self.amount,
            "currency": self.currency,
            "product_name": self.product_name,
            "product_is_placeholder": int(self.product_is_placeholder),
            "product_key": product_key(self.product_name) if self.has_real_product else None,
            "status": self.status.value,
            "order_date": self.order_date.isoformat() if self.order_date else None,
            "delivered_date": self.delivered_date.isoformat() if self.delivered_date else None,
            "delivery_location": self.delivery_location,
            "fragment_refs": json.dumps(self.fragment_refs),
            "identity_keys": json.dumps(self.identity_keys),
            "confidence": self.confidence,
            "integrity_warnings": json.dumps(self.integrity_warnings),
            "last_email_at": self.last_email_at.isoformat() if self.last_email_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any], items: list[Item] | None = None) -> CanonicalOrder:
        """Create CanonicalOrder from a canonical_orders row plus its item rows."""

        def parse_dt(val: str | None) -> datetime | None:
            if val is None:
                return None
            return datetime.fromisoformat(val)

        return cls(
            id=row["id"],
            user_id=row["user_id"],
            platform=row["platform"],
            order_ref=row.get("order_ref"),
            tracking_ref=row.get("tracking_ref"),
            amount=row.get("amount"),
            currency=row.get("currency") or DEFAULT_CURRENCY,
            items=items or [],
            product_name=row.get("product_name"),
            product_is_placeholder=bool(row.get("product_is_placeholder")),
            status=OrderStatus(row["status"]),
            order_date=parse_dt(row.get("order_date")),
            delivered_date=parse_dt(row.get("delivered_date")),
            delivery_location=row.get("delivery_location"),
            fragment_refs=json.loads(row.get("fragment_refs") or "[]"),
            identity_keys=json.loads(row.get("identity_keys") or "[]"),
            confidence=row.get("confidence") or 0.0,
            integrity_warnings=json.loads(row.get("integrity_warnings") or "[]"),
            last_email_at=parse_dt(row.get("last_email_at")),
            created_at=parse_dt(row["created_at"]),
            updated_at=parse_dt(row["updated_at"]),
        )


class EmailOutcome(BaseModel):
    """Why one email was skipped or errored during a sync."""

    message_id: str
    reason: str
    platform: str | None = None


class SyncSummary(BaseModel):
    """Result of one sync run for one user."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errored: int = 0
    orders: list[CanonicalOrder] = Field(default_factory=list)

    skipped_emails: list[EmailOutcome] = Field(default_factory=list)
    error_emails: list[EmailOutcome] = Field(default_factory=list)
    platforms: dict[str, int] = Field(default_factory=dict)
    average_completeness: int = 0
    data_quality: str = "low"
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
