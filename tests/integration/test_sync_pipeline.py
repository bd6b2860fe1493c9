"""
Integration tests for the sync pipeline.

Raw emails in, canonical orders out: classification, extraction,
deduplication, reconciliation and persistence together, against both
store implementations where it matters.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import timedelta

import pytest

from orderq.cli import main
from orderq.observability.telemetry import get_counter
from orderq.orders.errors import PersistenceError
from orderq.orders.extractor import OrderEmailExtractor
from orderq.orders.models import OrderStatus, utc_now
from orderq.orders.repository import InMemoryOrderStore, SqliteOrderStore
from orderq.orders.sync import SyncOrchestrator, order_emails, subject_priority

USER = "user-1"


@pytest.fixture
def orchestrator_for(registry):
    def build(store):
        return SyncOrchestrator(store, extractor=OrderEmailExtractor(registry=registry))

    return build


@pytest.fixture
def headphone_emails(email_factory, flipkart_sender):
    """Flipkart confirmation and shipping notice for one purchase, with unrelated order ids."""

    def build(order_id, subject, days):
        return email_factory(
            subject=subject,
            text_body=(
                f"Order ID {order_id}\n"
                "Item: Boat Rockerz Headphones\n"
                "Amount Paid: Rs. 1499\n"
                "Thank you for shopping with us.\n"
            ),
            sender=flipkart_sender,
            days=days,
        )

    return (
        build("OD123456789012345678", "Your Flipkart order has been placed", 0),
        build("OD987654321098765432", "Your Flipkart order has been shipped", 2),
    )


class TestDeskLampLifecycle:
    def test_three_emails_one_order(self, store, orchestrator_for, desk_lamp_batch, base_time):
        """Confirmation, shipped and delivered fold into one delivered order."""
        summary = orchestrator_for(store).sync(USER, desk_lamp_batch)

        assert (summary.created, summary.updated, summary.skipped, summary.errored) == (1, 0, 0, 0)
        assert len(summary.orders) == 1
        order = summary.orders[0]
        assert order.status == OrderStatus.DELIVERED
        assert order.order_ref == "123-4567890-1234567"
        assert order.tracking_ref == "TRK99"
        assert order.amount == 804.0
        assert order.product_name == "Desk Lamp"
        assert order.fragment_refs == ["lamp-confirm", "lamp-shipped", "lamp-delivered"]
        assert order.delivered_date == base_time + timedelta(days=3)
        assert order.integrity_warnings == []
        assert order.confidence == 0.95

        stored = store.find_by_identity(USER, order.identity_keys)
        assert [o.status for o in stored] == [OrderStatus.DELIVERED]

    def test_input_order_does_not_matter(self, memory_store, orchestrator_for, desk_lamp_batch):
        """Emails are sorted by received time before processing."""
        summary = orchestrator_for(memory_store).sync(USER, list(reversed(desk_lamp_batch)))
        assert summary.created == 1
        assert summary.skipped == 0
        assert summary.orders[0].status == OrderStatus.DELIVERED

    def test_summary_statistics(self, memory_store, orchestrator_for, desk_lamp_batch):
        summary = orchestrator_for(memory_store).sync(USER, desk_lamp_batch)
        assert summary.platforms == {"amazon": 1}
        assert summary.average_completeness == 100
        assert summary.data_quality == "high"
        assert summary.cancelled is False

        data = summary.to_dict()
        assert data["orders"][0]["status"] == "delivered"
        json.dumps(data)

    def test_rerun_is_idempotent(self, store, orchestrator_for, desk_lamp_batch):
        """Syncing the same emails again changes nothing."""
        orchestrator = orchestrator_for(store)
        orchestrator.sync(USER, desk_lamp_batch)
        before = store.list_by_user(USER)
        summary = orchestrator.sync(USER, desk_lamp_batch)

        assert (summary.created, summary.updated, summary.skipped) == (0, 0, 3)
        assert {o.reason for o in summary.skipped_emails} == {"already_linked"}
        assert summary.orders == []

        after = store.list_by_user(USER)
        assert len(after) == 1
        assert after[0].id == before[0].id
        assert after[0].items == before[0].items
        assert after[0].items
        assert after[0].fragment_refs == before[0].fragment_refs

    def test_continues_across_runs(self, store, orchestrator_for, lamp):
        """A later run folds new lifecycle emails into the stored order."""
        orchestrator = orchestrator_for(store)
        first = orchestrator.sync(USER, [lamp.confirmation()])
        second = orchestrator.sync(USER, [lamp.shipped(), lamp.delivered()])

        assert (second.created, second.updated) == (0, 1)
        assert second.orders[0].id == first.orders[0].id
        assert second.orders[0].status == OrderStatus.DELIVERED

    def test_late_shipping_notice_never_regresses_status(self, store, orchestrator_for, lamp):
        """A shipped email received after delivery is linked but leaves the order delivered."""
        emails = [lamp.confirmation(), lamp.delivered(days=3), lamp.shipped(days=4)]
        summary = orchestrator_for(store).sync(USER, emails)

        order = summary.orders[0]
        assert order.status == OrderStatus.DELIVERED
        assert order.tracking_ref == "TRK99"
        assert "status_monotonic:delivered->shipped" in order.integrity_warnings
        assert len(order.fragment_refs) == 3

    def test_same_timestamp_uses_subject_priority(self, memory_store, orchestrator_for, lamp):
        """A delivered and a confirmation email with equal timestamps: confirmation first."""
        emails = [lamp.delivered(days=0), lamp.confirmation(days=0)]
        summary = orchestrator_for(memory_store).sync(USER, emails)
        assert summary.created == 1
        assert summary.skipped == 0
        assert summary.orders[0].status == OrderStatus.DELIVERED


class TestRejections:
    def test_promotional_email_is_skipped(self, memory_store, orchestrator_for, email_factory):
        email = email_factory(subject="Weekend picks", text_body="Click here to unsubscribe")
        summary = orchestrator_for(memory_store).sync(USER, [email])

        assert summary.skipped == 1
        assert summary.skipped_emails[0].reason == "unclassified:promotional:unsubscribe"
        assert summary.skipped_emails[0].message_id == email.message_id
        assert get_counter("orders.sync.skipped") == 1

    def test_orphan_delivery_is_discarded(self, store, orchestrator_for, lamp):
        """A delivery notice alone never creates an order."""
        summary = orchestrator_for(store).sync(USER, [lamp.delivered()])

        assert summary.created == 0
        assert summary.skipped_emails[0].reason == "orphan_delivery"
        assert summary.skipped_emails[0].platform == "amazon"

    def test_unparseable_vendor_email(self, memory_store, orchestrator_for, email_factory):
        email = email_factory(subject='Shipped: "Desk Lamp"', text_body="On its way!")
        summary = orchestrator_for(memory_store).sync(USER, [email])
        assert summary.skipped_emails[0].reason == "unextractable:no_reference"


class TestSharedTracking:
    """Two orders shipped in one package carry the same tracking id."""

    @pytest.fixture
    def two_order_batch(self, email_factory):
        def confirmation(ref, product, amount, message_id):
            return email_factory(
                subject=f'Ordered: "{product}"',
                text_body=(
                    "Thank you for your order.\n"
                    f"Order #{ref}\n"
                    f"Grand Total: Rs. {amount}\n"
                ),
                message_id=message_id,
            )

        def shipped(ref, product, message_id):
            return email_factory(
                subject=f'Shipped: "{product}"',
                sender="Amazon.in <shipment-tracking@amazon.in>",
                text_body=f"Your package has been shipped.\nOrder #{ref}\nTracking ID: TRK99\n",
                days=1,
                message_id=message_id,
            )

        return [
            confirmation("402-5551234-7654321", "Desk Lamp", "804.00", "lamp-confirm"),
            confirmation("171-9988776-1122334", "Bulb Pack", "349.00", "bulbs-confirm"),
            shipped("402-5551234-7654321", "Desk Lamp", "lamp-shipped"),
            shipped("171-9988776-1122334", "Bulb Pack", "bulbs-shipped"),
        ]

    def test_both_orders_advance(self, store, orchestrator_for, two_order_batch):
        """The second shipping notice still ships its own order."""
        summary = orchestrator_for(store).sync(USER, two_order_batch)

        assert (summary.created, summary.errored) == (2, 0)
        orders = {o.order_ref: o for o in store.list_by_user(USER)}
        lamp_order = orders["402-5551234-7654321"]
        bulb_order = orders["171-9988776-1122334"]

        assert lamp_order.status == OrderStatus.SHIPPED
        assert bulb_order.status == OrderStatus.SHIPPED
        assert bulb_order.tracking_ref == "TRK99"
        assert "bulbs-shipped" in bulb_order.fragment_refs
        assert "identity_shared:tracking" in bulb_order.integrity_warnings
        assert lamp_order.integrity_warnings == []
        assert not set(lamp_order.identity_keys) & set(bulb_order.identity_keys)

    def test_rerun_links_nothing_twice(self, store, orchestrator_for, two_order_batch):
        orchestrator = orchestrator_for(store)
        orchestrator.sync(USER, two_order_batch)
        summary = orchestrator.sync(USER, two_order_batch)

        assert (summary.created, summary.updated, summary.errored) == (0, 0, 0)
        assert {o.reason for o in summary.skipped_emails} == {"already_linked"}
        assert len(store.list_by_user(USER)) == 2


class TestHeuristicMerge:
    def test_same_run(self, store, orchestrator_for, headphone_emails):
        """Two Flipkart emails with different order ids merge on product, amount and date."""
        summary = orchestrator_for(store).sync(USER, list(headphone_emails))

        assert summary.created == 1
        order = summary.orders[0]
        assert order.platform == "flipkart"
        assert order.order_ref == "OD123456789012345678"
        assert order.status == OrderStatus.SHIPPED
        assert len(order.identity_keys) == 2
        assert get_counter("orders.dedup.match.heuristic") == 1

    def test_across_runs_through_the_store(self, store, orchestrator_for, headphone_emails):
        """The store's heuristic lookup finds the earlier order in a later run."""
        placed, shipped = headphone_emails
        orchestrator = orchestrator_for(store)
        orchestrator.sync(USER, [placed])
        summary = orchestrator.sync(USER, [shipped])

        assert (summary.created, summary.updated) == (0, 1)
        assert summary.orders[0].status == OrderStatus.SHIPPED


class FailingUpdateStore(InMemoryOrderStore):
    def update(self, order):
        raise PersistenceError("disk full", order_id=order.id)


class FailingLookupStore(InMemoryOrderStore):
    def find_by_identity(self, user_id, keys):
        raise sqlite3.OperationalError("disk I/O error")


class CancellingStore(InMemoryOrderStore):
    """Sets the cancel event as soon as the first order is created."""

    def __init__(self, event):
        super().__init__()
        self.event = event

    def create(self, order):
        created = super().create(order)
        self.event.set()
        return created


class TestFailures:
    def test_failed_update_is_recorded_per_email(self, orchestrator_for, desk_lamp_batch):
        """Persistence errors are reported in the summary; the run carries on."""
        summary = orchestrator_for(FailingUpdateStore()).sync(USER, desk_lamp_batch)

        assert summary.created == 1
        assert summary.errored == 2
        assert [e.message_id for e in summary.error_emails] == ["lamp-shipped", "lamp-delivered"]
        assert all(e.reason == "persistence:disk full" for e in summary.error_emails)
        assert summary.orders[0].status == OrderStatus.CONFIRMED

    def test_lookup_failure_propagates(self, orchestrator_for, desk_lamp_batch):
        """A store that cannot be read aborts the run rather than creating duplicates."""
        with pytest.raises(sqlite3.OperationalError):
            orchestrator_for(FailingLookupStore()).sync(USER, desk_lamp_batch)

    def test_cancellation_between_emails(self, orchestrator_for, desk_lamp_batch):
        """A cancelled run stops before the next email and keeps what it persisted."""
        event = threading.Event()
        store = CancellingStore(event)
        summary = orchestrator_for(store).sync(USER, desk_lamp_batch, cancel_event=event)

        assert summary.cancelled
        assert summary.created == 1
        assert summary.orders[0].status == OrderStatus.CONFIRMED
        assert len(store.list_by_user(USER)) == 1
        assert get_counter("orders.sync.cancelled") == 1

    def test_extraction_crash_is_recorded(self, memory_store, orchestrator_for, lamp, monkeypatch):
        orchestrator = orchestrator_for(memory_store)

        def explode(email):
            raise RuntimeError("bad markup")

        monkeypatch.setattr(orchestrator.extractor, "extract_from_email", explode)
        summary = orchestrator.sync(USER, [lamp.confirmation()])
        assert summary.errored == 1
        assert summary.error_emails[0].reason == "error:bad markup"


class TestUsersAndSources:
    def test_users_sync_concurrently_in_isolation(self, memory_store, orchestrator_for, lamp):
        """The same emails for two users produce two separate orders."""
        orchestrator = orchestrator_for(memory_store)
        results = {}

        def run(user_id):
            batch = [lamp.confirmation(), lamp.shipped(), lamp.delivered()]
            results[user_id] = orchestrator.sync(user_id, batch)

        threads = [threading.Thread(target=run, args=(u,)) for u in ("user-a", "user-b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results["user-a"].created == 1
        assert results["user-b"].created == 1
        assert results["user-a"].orders[0].id != results["user-b"].orders[0].id
        assert len(memory_store.list_by_user("user-a")) == 1

    def test_sync_from_source(self, memory_store, orchestrator_for, desk_lamp_batch):
        """The fetch window and limit are handed to the mail source."""
        calls = []

        class FakeSource:
            def fetch(self, user_id, since, max_count):
                calls.append((user_id, since, max_count))
                return desk_lamp_batch

        summary = orchestrator_for(memory_store).sync_from_source(
            USER, FakeSource(), days=30, max_count=10
        )

        assert summary.created == 1
        user_id, since, max_count = calls[0]
        assert (user_id, max_count) == (USER, 10)
        assert abs((utc_now() - timedelta(days=30)) - since) < timedelta(minutes=1)


def test_order_emails_tie_break(lamp):
    emails = [lamp.delivered(days=0), lamp.shipped(days=0), lamp.confirmation(days=0)]
    assert [subject_priority(e.subject) for e in order_emails(emails)] == [1, 2, 3]
    assert subject_priority("Your receipt") == 4


class TestCli:
    @pytest.fixture
    def export(self, tmp_path, desk_lamp_batch):
        path = tmp_path / "emails.jsonl"
        path.write_text(
            "\n".join(json.dumps(e.model_dump(mode="json")) for e in desk_lamp_batch),
            encoding="utf-8",
        )
        return path

    def test_memory_store_all_emails(self, export, capsys):
        assert main([str(export), "--user", USER, "--memory", "--all"]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["created"] == 1
        assert summary["orders"][0]["status"] == "delivered"

    def test_sqlite_store(self, export, tmp_path, capsys):
        db = tmp_path / "orders.db"
        assert main([str(export), "--user", USER, "--db", str(db), "--all"]) == 0
        capsys.readouterr()
        assert len(SqliteOrderStore(db).list_by_user(USER)) == 1

    def test_date_window_excludes_old_mail(self, export, capsys):
        """Without --all only the last few days are synced."""
        assert main([str(export), "--user", USER, "--memory", "--days", "7"]) == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["created"] == 0
        assert summary["orders"] == []

    def test_missing_file(self, tmp_path, capsys):
        assert main([str(tmp_path / "nope.jsonl"), "--user", USER, "--memory", "--all"]) == 1
        assert "error:" in capsys.readouterr().err
