"""
Sync Orchestrator - one user's batch of emails in, canonical orders out.

For each email, strictly in ascending received order:
classify → extract → compute identities → match (in-run map plus store)
→ create or fold → persist.

The in-run identity map lives on a SyncRun owned by a single sync() call,
so emails of the same batch correlate before the store is consulted and
independent users never share mutable state. Each create/update is one
store transaction; a cancelled run stops between emails and leaves every
processed order fully persisted.
"""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Iterable
from datetime import timedelta

from orderq.config import (
    DATA_QUALITY_HIGH,
    DATA_QUALITY_MEDIUM,
    DEFAULT_DAYS_TO_FETCH,
    HEURISTIC_DATE_WINDOW_DAYS,
    MAX_EMAILS_PER_SYNC,
)
from orderq.observability.logging import get_logger
from orderq.observability.telemetry import counter, log_event, time_block
from orderq.orders.deduplicator import OrderDeduplicator
from orderq.orders.extractor import OrderEmailExtractor
from orderq.orders.mail_source import MailSource
from orderq.orders.models import (
    CanonicalOrder,
    EmailOutcome,
    ParsedOrderFragment,
    RawEmail,
    SyncSummary,
    utc_now,
)
from orderq.orders.normalizer import identities_for, product_key
from orderq.orders.platform_data import DEFAULT_SUBJECT_PRIORITY, SUBJECT_PRIORITY_KEYWORDS
from orderq.orders.reconciler import LifecycleReconciler
from orderq.orders.repository import OrderStore
from orderq.orders.types import OrderIdentity

logger = get_logger(__name__)


def subject_priority(subject: str) -> int:
    """Tie-break for emails sharing a timestamp: confirmation 1, shipped 2, delivered 3."""
    lower = (subject or "").lower()
    for priority, keywords in SUBJECT_PRIORITY_KEYWORDS:
        if any(kw in lower for kw in keywords):
            return priority
    return DEFAULT_SUBJECT_PRIORITY


def order_emails(emails: Iterable[RawEmail]) -> list[RawEmail]:
    """Ascending received time, subject priority on ties."""
    return sorted(emails, key=lambda e: (e.received_at, subject_priority(e.subject)))


def data_quality(average_completeness: int) -> str:
    if average_completeness >= DATA_QUALITY_HIGH:
        return "high"
    if average_completeness >= DATA_QUALITY_MEDIUM:
        return "medium"
    return "low"


class SyncRun:
    """State for one sync call: the in-run identity map and the running summary."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.summary = SyncSummary()
        self._orders: dict[str, CanonicalOrder] = {}
        self._identity_map: dict[str, str] = {}
        self._touched: list[str] = []
        self._created: set[str] = set()
        self._updated: set[str] = set()

    @property
    def orders(self) -> list[CanonicalOrder]:
        return list(self._orders.values())

    def lookup(self, keys: Iterable[str]) -> list[CanonicalOrder]:
        order_ids = {self._identity_map[k] for k in keys if k in self._identity_map}
        return [self._orders[oid] for oid in order_ids]

    def remember(self, order: CanonicalOrder) -> None:
        """Record the latest persisted state of an order."""
        self._orders[order.id] = order
        for key in order.identity_keys:
            self._identity_map[key] = order.id

    def record_created(self, order: CanonicalOrder) -> None:
        self.remember(order)
        self._created.add(order.id)
        self._touch(order.id)

    def record_updated(self, order: CanonicalOrder) -> None:
        self.remember(order)
        if order.id not in self._created:
            self._updated.add(order.id)
        self._touch(order.id)

    def skip(self, email: RawEmail, reason: str, platform: str | None = None) -> None:
        self.summary.skipped += 1
        self.summary.skipped_emails.append(
            EmailOutcome(message_id=email.message_id, reason=reason, platform=platform)
        )
        counter("orders.sync.skipped")

    def error(self, email: RawEmail, reason: str, platform: str | None = None) -> None:
        self.summary.errored += 1
        self.summary.error_emails.append(
            EmailOutcome(message_id=email.message_id, reason=reason[:200], platform=platform)
        )
        counter("orders.sync.errored")

    def finalize(self) -> SyncSummary:
        summary = self.summary
        summary.created = len(self._created)
        summary.updated = len(self._updated)
        summary.orders = [self._orders[oid] for oid in self._touched]
        summary.platforms = dict(Counter(o.platform for o in summary.orders))
        if summary.orders:
            summary.average_completeness = round(
                sum(o.completeness() for o in summary.orders) / len(summary.orders)
            )
        summary.data_quality = data_quality(summary.average_completeness)
        return summary

    def _touch(self, order_id: str) -> None:
        if order_id not in self._touched:
            self._touched.append(order_id)


class SyncOrchestrator:
    """
    Drives one user's sync against an order store.

    Usage:
        orchestrator = SyncOrchestrator(SqliteOrderStore())
        summary = orchestrator.sync("user-1", emails)
    """

    def __init__(
        self,
        store: OrderStore,
        extractor: OrderEmailExtractor | None = None,
        deduplicator: OrderDeduplicator | None = None,
        reconciler: LifecycleReconciler | None = None,
        date_window_days: int = HEURISTIC_DATE_WINDOW_DAYS,
    ):
        self.store = store
        self.extractor = extractor or OrderEmailExtractor()
        self.deduplicator = deduplicator or OrderDeduplicator(date_window_days=date_window_days)
        self.reconciler = reconciler or LifecycleReconciler()
        self.date_window_days = date_window_days

    def sync(
        self,
        user_id: str,
        emails: Iterable[RawEmail],
        cancel_event: threading.Event | None = None,
    ) -> SyncSummary:
        """
        Process one user's batch.

        Args:
            user_id: Owner of the emails
            emails: Raw emails in any order; sorted ascending before use
            cancel_event: Checked between emails; when set, the run stops and
                returns a partial summary with cancelled=True

        Returns:
            SyncSummary with counts, touched orders and per-email outcomes

        Raises:
            Whatever the store's lookup operations raise
        """
        run = SyncRun(user_id)
        batch = order_emails(emails)
        counter("orders.sync.started")
        log_event("orders.sync.started", user_id=user_id, emails=len(batch))

        with time_block("orders.sync"):
            for email in batch:
                if cancel_event is not None and cancel_event.is_set():
                    run.summary.cancelled = True
                    counter("orders.sync.cancelled")
                    logger.warning("Sync cancelled for user %s before message %s", user_id, email.message_id)
                    break
                self._process_email(run, email)

        summary = run.finalize()
        log_event(
            "orders.sync.complete",
            user_id=user_id,
            created=summary.created,
            updated=summary.updated,
            skipped=summary.skipped,
            errored=summary.errored,
            cancelled=summary.cancelled,
        )
        return summary

    def sync_from_source(
        self,
        user_id: str,
        source: MailSource,
        days: int = DEFAULT_DAYS_TO_FETCH,
        max_count: int = MAX_EMAILS_PER_SYNC,
        cancel_event: threading.Event | None = None,
    ) -> SyncSummary:
        """Fetch the last `days` of mail (at most `max_count`) and sync it. Source errors propagate."""
        since = utc_now() - timedelta(days=days)
        emails = list(source.fetch(user_id, since, max_count))
        logger.info("Fetched %d emails for user %s (last %d days)", len(emails), user_id, days)
        return self.sync(user_id, emails, cancel_event=cancel_event)

    def _process_email(self, run: SyncRun, email: RawEmail) -> None:
        try:
            result = self.extractor.extract_from_email(email)
        except Exception as e:
            logger.error("Failed to extract email %s: %s", email.message_id, e)
            run.error(email, f"error:{e}")
            return

        if not result.success or result.fragment is None:
            platform = result.classification.platform if result.classification else None
            run.skip(email, result.rejection_reason or "rejected", platform)
            return

        fragment = result.fragment
        identities = identities_for(fragment, run.user_id)
        known = self._candidates(run, fragment, identities)
        match = self.deduplicator.find_match(fragment, identities, known)

        if not match.matched:
            if self.reconciler.is_delivery_only(fragment):
                logger.info(
                    "Discarding delivery-only message %s: no matching order", email.message_id
                )
                run.skip(email, "orphan_delivery", fragment.platform)
                return
            self._create(run, email, fragment)
            return

        order = match.order
        run.remember(order)
        if email.message_id in order.fragment_refs:
            run.skip(email, "already_linked", fragment.platform)
            return

        logger.info("Message %s matched order %s by %s", email.message_id, order.id, match.rule.value)
        merged = self.reconciler.fold(
            order, fragment, run.user_id, claimed_keys=self._claimed_keys(order, identities, known)
        )
        try:
            self.store.update(merged)
        except Exception as e:
            logger.error("Failed to update order %s from %s: %s", order.id, email.message_id, e)
            run.error(email, f"persistence:{e}", fragment.platform)
            return
        run.record_updated(merged)

    def _create(self, run: SyncRun, email: RawEmail, fragment: ParsedOrderFragment) -> None:
        order = self.reconciler.new_order(fragment, run.user_id)
        try:
            self.store.create(order)
        except Exception as e:
            logger.error("Failed to create order from %s: %s", email.message_id, e)
            run.error(email, f"persistence:{e}", fragment.platform)
            return
        run.record_created(order)

    @staticmethod
    def _claimed_keys(
        order: CanonicalOrder, identities: list[OrderIdentity], known: list[CanonicalOrder]
    ) -> set[str]:
        """Fragment identity keys already owned by an order other than `order`."""
        keys = {i.key for i in identities}
        return {
            key for other in known if other.id != order.id for key in other.identity_keys if key in keys
        }

    def _candidates(
        self, run: SyncRun, fragment: ParsedOrderFragment, identities: list[OrderIdentity]
    ) -> list[CanonicalOrder]:
        """In-run orders plus store lookups; the in-run copy wins for the same id."""
        keys = [i.key for i in identities]
        candidates: dict[str, CanonicalOrder] = {
            o.id: o for o in self.store.find_by_identity(run.user_id, keys)
        }

        key = product_key(fragment.product_name) if fragment.has_real_product else ""
        if key and fragment.amount is not None and fragment.order_date is not None:
            for order in self.store.find_by_heuristic_keys(
                run.user_id,
                fragment.platform,
                key,
                fragment.amount,
                fragment.order_date,
                self.date_window_days,
            ):
                candidates.setdefault(order.id, order)

        # In-run orders first so the cascade prefers them on equal rules,
        # identity hits from the run map ahead of the rest
        in_run = run.lookup(keys)
        in_run_ids = {o.id for o in in_run}
        in_run += [o for o in run.orders if o.id not in in_run_ids]
        in_run_ids = {o.id for o in in_run}
        return in_run + [o for oid, o in candidates.items() if oid not in in_run_ids]
