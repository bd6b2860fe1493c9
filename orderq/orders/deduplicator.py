"""
Deduplicator - does a fresh fragment belong to an order we already know?

Cascade over the known orders (in-run plus store-supplied), first rule wins:

1. Exact normalized order reference
2. Exact tracking reference
3. Exact identity key
4. Heuristic: same platform, same normalized product name, amount within
   tolerance, order dates within a day window, same delivery location when
   both carry one

The heuristic exists only for purchases whose emails never share an
explicit identifier. Placeholder names never match heuristically.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta

from orderq.config import HEURISTIC_AMOUNT_TOLERANCE, HEURISTIC_DATE_WINDOW_DAYS
from orderq.observability.logging import get_logger
from orderq.observability.telemetry import counter
from orderq.orders.models import CanonicalOrder, ParsedOrderFragment
from orderq.orders.normalizer import normalize_reference, product_key
from orderq.orders.types import MatchResult, MatchRule, OrderIdentity

logger = get_logger(__name__)


class OrderDeduplicator:
    """Resolve a fragment to an existing CanonicalOrder, or to nothing."""

    def __init__(
        self,
        date_window_days: int = HEURISTIC_DATE_WINDOW_DAYS,
        amount_tolerance: float = HEURISTIC_AMOUNT_TOLERANCE,
    ):
        self.date_window = timedelta(days=date_window_days)
        self.amount_tolerance = amount_tolerance

    def find_match(
        self,
        fragment: ParsedOrderFragment,
        identities: list[OrderIdentity],
        known: Iterable[CanonicalOrder],
    ) -> MatchResult:
        """
        Run the match cascade.

        Args:
            fragment: Freshly extracted fragment
            identities: Identities computed for the fragment
            known: Candidate orders for the same user

        Returns:
            MatchResult with the matched order and the rule that matched,
            or an empty MatchResult
        """
        candidates = [o for o in known if o.platform == fragment.platform]
        if not candidates:
            return MatchResult()

        order_ref = normalize_reference(fragment.order_ref)
        if order_ref:
            for order in candidates:
                if normalize_reference(order.order_ref) == order_ref:
                    return self._matched(order, MatchRule.ORDER_REF)

        tracking_ref = normalize_reference(fragment.tracking_ref)
        if tracking_ref:
            for order in candidates:
                if normalize_reference(order.tracking_ref) == tracking_ref:
                    return self._matched(order, MatchRule.TRACKING_REF)

        keys = {identity.key for identity in identities}
        if keys:
            for order in candidates:
                if keys.intersection(order.identity_keys):
                    return self._matched(order, MatchRule.IDENTITY)

        best = self._heuristic_match(fragment, candidates)
        if best is not None:
            return self._matched(best, MatchRule.HEURISTIC)

        return MatchResult()

    def heuristic_matches(self, fragment: ParsedOrderFragment, order: CanonicalOrder) -> bool:
        """Whether a fragment and an order look like the same purchase without shared ids."""
        if order.platform != fragment.platform:
            return False
        if not fragment.has_real_product or not order.has_real_product:
            return False

        key = product_key(fragment.product_name)
        if not key or key != product_key(order.product_name):
            return False

        if fragment.amount is None or order.amount is None:
            return False
        if abs(fragment.amount - order.amount) > self.amount_tolerance:
            return False

        if fragment.order_date is None or order.order_date is None:
            return False
        if abs(fragment.order_date - order.order_date) > self.date_window:
            return False

        if fragment.delivery_location and order.delivery_location:
            return fragment.delivery_location == order.delivery_location
        return True

    def _heuristic_match(
        self, fragment: ParsedOrderFragment, candidates: list[CanonicalOrder]
    ) -> CanonicalOrder | None:
        matches = [o for o in candidates if self.heuristic_matches(fragment, o)]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                "Heuristic match is ambiguous for message %s: %d candidates",
                fragment.source_message_id,
                len(matches),
            )
            counter("orders.dedup.heuristic_ambiguous")
        # Closest order date wins
        return min(matches, key=lambda o: abs(fragment.order_date - o.order_date))

    @staticmethod
    def _matched(order: CanonicalOrder, rule: MatchRule) -> MatchResult:
        counter(f"orders.dedup.match.{rule.value}")
        return MatchResult(order=order, rule=rule)
