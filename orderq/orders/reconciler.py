"""
Lifecycle Reconciler - fold fragments of one purchase into a CanonicalOrder.

Fragments are sequenced by lifecycle stage (confirmation < processing <
shipped < out_for_delivery < delivered < feedback; cancellation and return
are terminal) and received time, then folded one by one:

- references: first non-null wins, later fragments only fill empty slots
- identity keys: unioned, except keys another order already owns
- amount: first non-zero value wins, never reset by zero or null
- product name: replaced only by a "better" name
- status: replaced only by an equal or higher rank; terminal always wins
- delivered date: set once, on the first transition to delivered
- confidence: grows with corroborating fragments, capped below 1.0

Integrity checks run on every fold. Violations become warnings on the
order, they never block a merge.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable

from rapidfuzz import fuzz

from orderq.config import (
    CORROBORATION_BONUS,
    HEURISTIC_AMOUNT_TOLERANCE,
    MAX_ITEMS,
    NAME_SIMILARITY_MIN,
    ORDER_CONFIDENCE_CAP,
)
from orderq.observability.logging import get_logger
from orderq.observability.telemetry import counter
from orderq.orders.models import (
    CanonicalOrder,
    EmailType,
    OrderStatus,
    ParsedOrderFragment,
    is_terminal,
    merge_items,
    status_rank,
    utc_now,
)
from orderq.orders.normalizer import identities_for, product_key
from orderq.orders.product_names import is_better_name
from orderq.orders.types import IntegrityReport

logger = get_logger(__name__)

FEEDBACK_RANK = status_rank(OrderStatus.DELIVERED) + 1

DELIVERY_ONLY_TYPES = frozenset(
    {EmailType.OUT_FOR_DELIVERY, EmailType.DELIVERED, EmailType.FEEDBACK}
)


def name_similarity(a: str | None, b: str | None) -> float:
    """Edit-distance ratio between two product names, 0.0-1.0."""
    if not a or not b:
        return 0.0
    return fuzz.ratio(product_key(a), product_key(b)) / 100.0


class LifecycleReconciler:
    """Merges fragments into canonical orders. Inputs are never mutated."""

    def __init__(
        self,
        amount_tolerance: float = HEURISTIC_AMOUNT_TOLERANCE,
        name_similarity_min: float = NAME_SIMILARITY_MIN,
    ):
        self.amount_tolerance = amount_tolerance
        self.name_similarity_min = name_similarity_min

    @staticmethod
    def stage_rank(fragment: ParsedOrderFragment) -> int:
        """Lifecycle position of a fragment; feedback sits just after delivered."""
        if fragment.email_type == EmailType.FEEDBACK:
            return FEEDBACK_RANK
        return status_rank(fragment.status)

    @staticmethod
    def is_delivery_only(fragment: ParsedOrderFragment) -> bool:
        """Delivery/tracking notices and fragments without an order reference."""
        return fragment.email_type in DELIVERY_ONLY_TYPES or not fragment.order_ref

    def sort_cluster(self, fragments: Iterable[ParsedOrderFragment]) -> list[ParsedOrderFragment]:
        return sorted(fragments, key=lambda f: (self.stage_rank(f), f.received_at))

    def new_order(self, fragment: ParsedOrderFragment, user_id: str) -> CanonicalOrder:
        """A cluster of one: the fragment becomes an order unchanged."""
        now = utc_now()
        return CanonicalOrder(
            id=str(uuid.uuid4()),
            user_id=user_id,
            platform=fragment.platform,
            order_ref=fragment.order_ref,
            tracking_ref=fragment.tracking_ref,
            amount=fragment.amount or None,
            currency=fragment.currency,
            items=list(fragment.items),
            product_name=fragment.product_name,
            product_is_placeholder=fragment.product_is_placeholder,
            status=fragment.status,
            order_date=fragment.order_date,
            delivered_date=(
                fragment.received_at if fragment.status == OrderStatus.DELIVERED else None
            ),
            delivery_location=fragment.delivery_location,
            fragment_refs=[fragment.source_message_id],
            identity_keys=[i.key for i in identities_for(fragment, user_id)],
            confidence=fragment.confidence,
            last_email_at=fragment.received_at,
            created_at=now,
            updated_at=now,
        )

    def fold(
        self,
        order: CanonicalOrder,
        fragment: ParsedOrderFragment,
        user_id: str,
        claimed_keys: Iterable[str] = (),
    ) -> CanonicalOrder:
        """
        Fold one fragment into a copy of an order.

        Args:
            order: Current canonical order (left untouched)
            fragment: Next fragment in lifecycle order
            user_id: Owner, used for identity keys
            claimed_keys: Identity keys owned by other orders; never added,
                recorded as an identity_shared warning instead

        Returns:
            A new CanonicalOrder with the fragment applied
        """
        report = self.check_integrity(order, fragment)
        merged = order.model_copy(deep=True)

        if not merged.order_ref and fragment.order_ref:
            merged.order_ref = fragment.order_ref
        if not merged.tracking_ref and fragment.tracking_ref:
            merged.tracking_ref = fragment.tracking_ref
        if not merged.amount and fragment.amount:
            merged.amount = fragment.amount
            merged.currency = fragment.currency
        if merged.order_date is None and fragment.order_date is not None:
            merged.order_date = fragment.order_date
        if not merged.delivery_location and fragment.delivery_location:
            merged.delivery_location = fragment.delivery_location

        if is_better_name(
            fragment.product_name,
            fragment.product_is_placeholder,
            merged.product_name,
            merged.product_is_placeholder,
        ):
            merged.product_name = fragment.product_name
            merged.product_is_placeholder = fragment.product_is_placeholder

        merged.items = merge_items(merged.items, fragment.items, limit=MAX_ITEMS)

        previous_status = merged.status
        if self._status_advances(merged.status, fragment.status):
            merged.status = fragment.status
        if (
            merged.status == OrderStatus.DELIVERED
            and previous_status != OrderStatus.DELIVERED
            and merged.delivered_date is None
        ):
            merged.delivered_date = fragment.received_at

        if fragment.source_message_id not in merged.fragment_refs:
            merged.fragment_refs.append(fragment.source_message_id)
        taken = set(claimed_keys)
        for identity in identities_for(fragment, user_id):
            if identity.key in merged.identity_keys:
                continue
            if identity.key in taken:
                # One package can carry several orders under one tracking id
                report.identities_unique = False
                report.violations.append(f"identity_shared:{identity.kind}")
                counter("orders.reconciler.identity_shared")
                logger.warning(
                    "Order %s: %s identity from %s already belongs to another order",
                    order.id,
                    identity.kind,
                    fragment.source_message_id,
                )
                continue
            merged.identity_keys.append(identity.key)

        merged.confidence = round(
            min(
                ORDER_CONFIDENCE_CAP,
                max(merged.confidence, fragment.confidence) + CORROBORATION_BONUS,
            ),
            3,
        )

        if merged.last_email_at is None or fragment.received_at > merged.last_email_at:
            merged.last_email_at = fragment.received_at

        for violation in report.violations:
            if violation not in merged.integrity_warnings:
                merged.integrity_warnings.append(violation)

        merged.updated_at = utc_now()
        return merged

    def reconcile(
        self,
        fragments: Iterable[ParsedOrderFragment],
        user_id: str,
        existing: CanonicalOrder | None = None,
    ) -> CanonicalOrder:
        """
        Fold a whole cluster, optionally on top of an existing order.

        Raises:
            ValueError: No fragments and no existing order
        """
        ordered = self.sort_cluster(fragments)
        if existing is None:
            if not ordered:
                raise ValueError("cannot reconcile an empty cluster")
            existing, ordered = self.new_order(ordered[0], user_id), ordered[1:]

        order = existing
        for fragment in ordered:
            order = self.fold(order, fragment, user_id)
        return order

    @staticmethod
    def _status_advances(current: OrderStatus, incoming: OrderStatus) -> bool:
        if is_terminal(incoming):
            return True
        return status_rank(incoming) >= status_rank(current)

    # ------------------------------------------------------------------
    # Integrity checks
    # ------------------------------------------------------------------

    def check_integrity(self, order: CanonicalOrder, fragment: ParsedOrderFragment) -> IntegrityReport:
        """Compare an incoming fragment with the order it is about to be folded into."""
        report = IntegrityReport()

        if (
            fragment.status_identified
            and not is_terminal(fragment.status)
            and status_rank(fragment.status) < status_rank(order.status)
        ):
            report.add("status_monotonic", f"{order.status.value}->{fragment.status.value}")

        if order.amount and fragment.amount:
            if abs(order.amount - fragment.amount) > self.amount_tolerance:
                report.add("amounts_consistent", f"{order.amount:.2f}!={fragment.amount:.2f}")

        if order.has_real_product and fragment.has_real_product:
            similarity = name_similarity(order.product_name, fragment.product_name)
            if similarity < self.name_similarity_min:
                report.add("names_similar", f"ratio={similarity:.2f}")

        if order.last_email_at and fragment.received_at < order.last_email_at:
            report.add("timestamps_ordered", fragment.source_message_id)

        self._log_report(report, order.id)
        return report

    def check_cluster(self, fragments: Iterable[ParsedOrderFragment]) -> IntegrityReport:
        """Check a whole cluster in lifecycle order (status, amount, names, timestamps)."""
        report = IntegrityReport()
        ordered = self.sort_cluster(fragments)

        highest = None
        for fragment in ordered:
            if not fragment.status_identified or is_terminal(fragment.status):
                continue
            rank = status_rank(fragment.status)
            if highest is not None and rank < highest:
                report.add("status_monotonic", fragment.source_message_id)
            highest = rank if highest is None else max(highest, rank)

        amounts = [f.amount for f in ordered if f.amount]
        if amounts and max(amounts) - min(amounts) > self.amount_tolerance:
            report.add("amounts_consistent", f"spread={max(amounts) - min(amounts):.2f}")

        names = [f.product_name for f in ordered if f.has_real_product]
        for name in names[1:]:
            similarity = name_similarity(names[0], name)
            if similarity < self.name_similarity_min:
                report.add("names_similar", f"ratio={similarity:.2f}")
                break

        for previous, current in zip(ordered, ordered[1:]):
            if current.received_at < previous.received_at:
                report.add("timestamps_ordered", current.source_message_id)

        return report

    @staticmethod
    def _log_report(report: IntegrityReport, order_id: str) -> None:
        if report.ok:
            return
        counter("orders.reconciler.integrity_warning", len(report.violations))
        logger.warning("Integrity warnings for order %s: %s", order_id, report.violations)
