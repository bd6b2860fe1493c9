"""
Pytest configuration for orderq tests

Provides email/fragment builders and store fixtures shared across unit and
integration tests.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from itertools import count
from types import SimpleNamespace

import pytest

from orderq.infrastructure.database import init_database
from orderq.observability.telemetry import reset_counters, reset_latencies
from orderq.orders.models import EmailType, Item, OrderStatus, ParsedOrderFragment, RawEmail
from orderq.orders.repository import InMemoryOrderStore, SqliteOrderStore
from orderq.orders.rules import get_default_registry

BASE_TIME = datetime(2025, 3, 3, 9, 30, tzinfo=UTC)
AMAZON_SENDER = "Amazon.in <auto-confirm@amazon.in>"
FLIPKART_SENDER = "Flipkart <no-reply@rmt.flipkart.com>"

_ids = count(1)


def make_email(
    subject: str,
    text_body: str = "",
    sender: str = AMAZON_SENDER,
    html_body: str = "",
    days: float = 0,
    message_id: str | None = None,
) -> RawEmail:
    """Build a RawEmail received `days` after BASE_TIME."""
    return RawEmail(
        message_id=message_id or f"msg-{next(_ids)}",
        sender=sender,
        subject=subject,
        text_body=text_body,
        html_body=html_body,
        received_at=BASE_TIME + timedelta(days=days),
    )


def make_fragment(**overrides) -> ParsedOrderFragment:
    """Build a confirmation fragment for Amazon order 123-4567890-1234567."""
    received_at = overrides.pop("received_at", BASE_TIME)
    fields = {
        "platform": "amazon",
        "order_ref": "123-4567890-1234567",
        "tracking_ref": None,
        "amount": 804.0,
        "items": [Item(name="Desk Lamp")],
        "product_name": "Desk Lamp",
        "product_is_placeholder": False,
        "status": OrderStatus.CONFIRMED,
        "status_identified": True,
        "email_type": EmailType.CONFIRMATION,
        "order_date": received_at,
        "confidence": 0.85,
        "source_message_id": f"frag-{next(_ids)}",
        "received_at": received_at,
    }
    fields.update(overrides)
    return ParsedOrderFragment(**fields)


# =============================================================================
# Scenario emails: one Amazon order through its lifecycle
# =============================================================================

ORDER_REF = "123-4567890-1234567"


def desk_lamp_confirmation(days: float = 0, message_id: str | None = None) -> RawEmail:
    return make_email(
        subject='Ordered: "Desk Lamp"',
        text_body=(
            "Hello,\n"
            "Thank you for your order.\n"
            f"Order #{ORDER_REF}\n"
            "Item: Desk Lamp\n"
            "Qty: 1\n"
            "Grand Total: Rs. 804.00\n"
            "Order Date: March 3, 2025\n"
        ),
        days=days,
        message_id=message_id,
    )


def desk_lamp_shipped(days: float = 1, message_id: str | None = None) -> RawEmail:
    return make_email(
        subject='Shipped: "Desk Lamp"',
        sender="Amazon.in <shipment-tracking@amazon.in>",
        text_body=(
            "Your package has been shipped.\n"
            f"Order #{ORDER_REF}\n"
            "Tracking ID: TRK99\n"
        ),
        days=days,
        message_id=message_id,
    )


def desk_lamp_delivered(days: float = 3, message_id: str | None = None) -> RawEmail:
    return make_email(
        subject='Delivered: "Desk Lamp"',
        sender="Amazon.in <shipment-tracking@amazon.in>",
        text_body=(
            "Your package has been delivered.\n"
            f"Order #{ORDER_REF}\n"
        ),
        days=days,
        message_id=message_id,
    )


@pytest.fixture
def desk_lamp_batch():
    """Confirmation, shipped and delivered emails for one order (stable ids)."""
    return [
        desk_lamp_confirmation(message_id="lamp-confirm"),
        desk_lamp_shipped(message_id="lamp-shipped"),
        desk_lamp_delivered(message_id="lamp-delivered"),
    ]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_telemetry():
    """Each test starts with empty counters."""
    reset_counters()
    reset_latencies()
    yield


@pytest.fixture(scope="session")
def registry():
    """Rule registry loaded from config/platform_rules.yaml."""
    return get_default_registry()


@pytest.fixture
def memory_store():
    return InMemoryOrderStore()


@pytest.fixture
def sqlite_store(tmp_path):
    """SQLite store on a fresh database file."""
    return SqliteOrderStore(init_database(tmp_path / "orders.db"))


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Both store implementations, for tests that must hold for either."""
    if request.param == "memory":
        return InMemoryOrderStore()
    return SqliteOrderStore(init_database(tmp_path / "orders.db"))


@pytest.fixture
def email_factory():
    """make_email(subject, text_body="", sender=AMAZON_SENDER, html_body="", days=0, message_id=None)"""
    return make_email


@pytest.fixture
def fragment_factory():
    """make_fragment(**overrides): Amazon Desk Lamp confirmation fragment by default."""
    return make_fragment


@pytest.fixture
def lamp():
    """Builders for the Desk Lamp lifecycle emails (confirmation, shipped, delivered)."""
    return SimpleNamespace(
        order_ref=ORDER_REF,
        confirmation=desk_lamp_confirmation,
        shipped=desk_lamp_shipped,
        delivered=desk_lamp_delivered,
    )


@pytest.fixture
def flipkart_sender():
    return FLIPKART_SENDER


@pytest.fixture
def base_time():
    """Receive time of day 0 in every scenario."""
    return BASE_TIME
