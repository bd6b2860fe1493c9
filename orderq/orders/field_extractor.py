"""
Field Extractor - turn one classified email into a ParsedOrderFragment.

Stage 2 of the order pipeline. One shared, vendor-agnostic algorithm driven
by the platform's rule table:
- Every field has an ordered list of strategies tagged with a priority
- Subject strategies outrank body strategies at equal priority
- Each candidate is validated (format, placeholder tokens, numeric range);
  an invalid candidate falls through to the next strategy
- Amount ties go to the larger value

Emails without an order reference AND without a tracking reference yield no
fragment; they are terminally unparseable.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime

from orderq.config import (
    CONFIDENCE_WEIGHTS,
    DEFAULT_CURRENCY,
    FRAGMENT_CONFIDENCE_CAP,
    MAX_ITEMS,
    ORDER_REF_MAX_LEN,
    ORDER_REF_MIN_LEN,
    PRODUCT_QUALITY_BONUS,
)
from orderq.observability.logging import get_logger
from orderq.observability.telemetry import counter
from orderq.orders.models import (
    EmailType,
    Item,
    OrderStatus,
    ParsedOrderFragment,
    RawEmail,
    merge_items,
)
from orderq.orders.normalizer import clean_text, normalize_currency, normalize_reference
from orderq.orders.platform_data import EMAIL_TYPE_KEYWORDS, GARBAGE_REFERENCE_WORDS, PROCESSING_KEYWORDS
from orderq.orders.product_names import ProductName, ProductNameExtractor, garbage_reason
from orderq.orders.rules import (
    AmountRules,
    PatternRule,
    PlatformRules,
    ReferenceRules,
    RuleRegistry,
    get_default_registry,
)
from orderq.orders.types import ExtractionDiagnostics

logger = get_logger(__name__)

EMAIL_TYPE_STATUS: dict[EmailType, OrderStatus] = {
    EmailType.CONFIRMATION: OrderStatus.CONFIRMED,
    EmailType.SHIPPED: OrderStatus.SHIPPED,
    EmailType.OUT_FOR_DELIVERY: OrderStatus.OUT_FOR_DELIVERY,
    EmailType.DELIVERED: OrderStatus.DELIVERED,
    EmailType.FEEDBACK: OrderStatus.DELIVERED,
    EmailType.CANCELLATION: OrderStatus.CANCELLED,
    EmailType.RETURN: OrderStatus.RETURNED,
}

DATE_FORMATS: tuple[str, ...] = (
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%b %d %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%d %B, %Y",
    "%d %b, %Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d/%m/%y",
    "%d-%m-%y",
    "%Y-%m-%d",
)

_PLACEHOLDER_REF_RE = re.compile(r"^[0\-]+$")
_SOURCE_RANK = {"subject": 1, "body": 0}


def parse_amount(raw: str | None) -> float | None:
    """'1,299.00' -> 1299.0; None for anything unparseable."""
    if not raw:
        return None
    try:
        return float(raw.replace(",", "").strip().rstrip("."))
    except ValueError:
        return None


def parse_date(raw: str | None) -> datetime | None:
    """Parse a date string in any of DATE_FORMATS into an aware UTC datetime."""
    if not raw:
        return None
    value = re.sub(r"\s+", " ", raw.replace(".", " ")).strip()
    value = re.sub(r"\s+,", ",", value)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return None


@dataclass
class _RefCandidate:
    value: str
    priority: int
    source_rank: int
    index: int
    label: str


class OrderFieldExtractor:
    """
    Extract every fragment field for a known platform.

    Usage:
        extractor = OrderFieldExtractor()
        fragment = extractor.extract(email, "amazon")
    """

    def __init__(
        self,
        registry: RuleRegistry | None = None,
        product_extractor: ProductNameExtractor | None = None,
    ):
        self.registry = registry or get_default_registry()
        self.products = product_extractor or ProductNameExtractor()

    def extract(
        self,
        email: RawEmail,
        platform: str,
        content: str | None = None,
        diagnostics: ExtractionDiagnostics | None = None,
    ) -> ParsedOrderFragment | None:
        """
        Extract a fragment from one email.

        Args:
            email: Source email
            platform: Platform id from the classifier
            content: Pre-computed plain-text body
            diagnostics: Collector for winning strategies and rejected candidates

        Returns:
            ParsedOrderFragment, or None when neither an order nor a tracking
            reference could be extracted
        """
        diagnostics = diagnostics if diagnostics is not None else ExtractionDiagnostics()
        rules = self.registry.get(platform)

        subject = normalize_currency(email.subject)
        body = normalize_currency(content if content is not None else email.content())

        order_ref = self.extract_reference("order_ref", rules.order_ref, subject, body, diagnostics)
        tracking_ref = self.extract_reference(
            "tracking_ref", rules.tracking_ref, subject, body, diagnostics
        )
        if tracking_ref and tracking_ref == order_ref:
            tracking_ref = None

        if not order_ref and not tracking_ref:
            counter("orders.extractor.no_reference")
            logger.info("No order or tracking reference in message %s", email.message_id)
            return None

        email_type, type_identified = self.detect_email_type(subject, body)
        status, status_identified = self.derive_status(email_type, type_identified, subject, body)

        amount = self.extract_amount(rules.amount, subject, body, diagnostics)

        product = self.products.extract(
            rules,
            subject=subject,
            body=body,
            html_body=email.html_body,
            email_type=email_type,
            order_ref=order_ref,
            tracking_ref=tracking_ref,
            diagnostics=diagnostics,
        )

        items = self.extract_items(rules.items, body, diagnostics, rules=rules)
        if not items and not product.is_placeholder:
            items = [Item(name=product.name, quantity=1)]

        order_date = self.extract_order_date(rules.order_date, body, diagnostics)
        if order_date is None:
            order_date = email.received_at
            diagnostics.accept("order_date", "received_at")

        location = self.extract_first(rules.location, body, "delivery_location", diagnostics)

        confidence = self.score_confidence(
            order_ref=order_ref,
            tracking_ref=tracking_ref,
            amount=amount,
            items=items,
            product=product,
            status_identified=status_identified,
        )

        counter(f"orders.extractor.fragment.{rules.id}")
        return ParsedOrderFragment(
            platform=rules.id,
            order_ref=order_ref,
            tracking_ref=tracking_ref,
            amount=amount,
            currency=DEFAULT_CURRENCY,
            items=items,
            product_name=product.name,
            product_is_placeholder=product.is_placeholder,
            status=status,
            status_identified=status_identified,
            email_type=email_type,
            order_date=order_date,
            delivery_location=location,
            confidence=confidence,
            source_message_id=email.message_id,
            received_at=email.received_at,
            subject=email.subject,
        )

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def extract_reference(
        self,
        field_name: str,
        rules: ReferenceRules,
        subject: str,
        body: str,
        diagnostics: ExtractionDiagnostics,
    ) -> str | None:
        """First valid match per strategy and source; best by priority, subject first."""
        candidates: list[_RefCandidate] = []

        for index, strategy in enumerate(rules.patterns):
            for source, text in (("subject", subject), ("body", body)):
                if not text or not strategy.applies_to(source):
                    continue
                for match in strategy.regex.finditer(text):
                    value = normalize_reference(match.group(1))
                    reason = self.reference_rejection(value, rules)
                    if reason:
                        diagnostics.reject(field_name, match.group(1), strategy.label, reason)
                        continue
                    candidates.append(
                        _RefCandidate(value, strategy.priority, _SOURCE_RANK[source], index, strategy.label)
                    )
                    break

        if not candidates:
            return None

        best = min(candidates, key=lambda c: (-c.priority, -c.source_rank, c.index))
        diagnostics.accept(field_name, best.label)
        return best.value

    @staticmethod
    def reference_rejection(value: str | None, rules: ReferenceRules) -> str | None:
        """
        Why a reference candidate is invalid, or None.

        Rejects:
        - empty values, out-of-range lengths
        - common words (ORDER, TRACKING, ...)
        - placeholder tokens (all zeros, configured placeholders)
        - values without digits when the platform requires one
        - values failing the platform's strict format
        """
        if not value:
            return "empty"
        if len(value) < ORDER_REF_MIN_LEN or len(value) > ORDER_REF_MAX_LEN:
            return "length"
        if value.lower() in GARBAGE_REFERENCE_WORDS:
            return "garbage_word"
        if _PLACEHOLDER_REF_RE.match(value) or value in {p.upper() for p in rules.placeholders}:
            return "placeholder"
        if rules.require_digit and not any(c.isdigit() for c in value):
            return "no_digit"
        if not rules.matches_format(value):
            return "format"
        return None

    # ------------------------------------------------------------------
    # Amount
    # ------------------------------------------------------------------

    def extract_amount(
        self,
        rules: AmountRules,
        subject: str,
        body: str,
        diagnostics: ExtractionDiagnostics,
    ) -> float | None:
        """Highest-priority plausible amount; ties broken by larger magnitude."""
        candidates: list[tuple[int, float, str]] = []

        for strategy in rules.strategies:
            for source, text in (("subject", subject), ("body", body)):
                if not text or not strategy.applies_to(source):
                    continue
                for match in strategy.regex.finditer(text):
                    raw = match.group(1)
                    value = parse_amount(raw)
                    reason = self.amount_rejection(value, strategy, rules)
                    if reason:
                        diagnostics.reject("amount", raw, strategy.label, reason)
                        continue
                    candidates.append((strategy.priority, value, strategy.label))

        if not candidates:
            return None

        priority, value, label = max(candidates, key=lambda c: (c[0], c[1]))
        diagnostics.accept("amount", label)
        return value

    @staticmethod
    def amount_rejection(value: float | None, strategy: PatternRule, rules: AmountRules) -> str | None:
        if value is None:
            return "unparseable"
        low = strategy.min if strategy.min is not None else rules.min
        high = strategy.max if strategy.max is not None else rules.max
        if value <= low:
            return "below_range"
        if value >= high:
            return "above_range"
        if strategy.priority <= rules.low_priority_threshold:
            if value < rules.low_priority_min:
                return "low_priority_small"
            if value > 1000 and value % 100 == 0:
                return "low_priority_round"
        return None

    # ------------------------------------------------------------------
    # Email type and status
    # ------------------------------------------------------------------

    @staticmethod
    def detect_email_type(subject: str, body: str) -> tuple[EmailType, bool]:
        """Keyword sets over the subject first, then the body; terminal types win."""
        for text in (subject, body):
            lower = text.lower()
            if not lower:
                continue
            for type_name, keywords in EMAIL_TYPE_KEYWORDS:
                if any(kw in lower for kw in keywords):
                    return EmailType(type_name), True
        return EmailType.OTHER, False

    @staticmethod
    def derive_status(
        email_type: EmailType, type_identified: bool, subject: str, body: str
    ) -> tuple[OrderStatus, bool]:
        """Status implied by the email type; lowest rank when nothing matches."""
        if type_identified and email_type in EMAIL_TYPE_STATUS:
            return EMAIL_TYPE_STATUS[email_type], True
        text = f"{subject}\n{body}".lower()
        if any(kw in text for kw in PROCESSING_KEYWORDS):
            return OrderStatus.PROCESSING, True
        return OrderStatus.ORDERED, False

    # ------------------------------------------------------------------
    # Items, dates, location
    # ------------------------------------------------------------------

    def extract_items(
        self,
        strategies: list[PatternRule],
        body: str,
        diagnostics: ExtractionDiagnostics,
        rules: PlatformRules | None = None,
    ) -> list[Item]:
        items: list[Item] = []
        for strategy in sorted(strategies, key=lambda s: -s.priority):
            for match in strategy.regex.finditer(body or ""):
                groups = match.groupdict()
                name = clean_text(groups.get("name"))
                reason = garbage_reason(name, rules)
                if reason:
                    diagnostics.reject("items", name or match.group(0), strategy.label, reason)
                    continue
                quantity = max(1, int(groups.get("qty") or 1))
                total = parse_amount(groups.get("price"))
                items.append(
                    Item(
                        name=name,
                        quantity=quantity,
                        total_price=total,
                        unit_price=round(total / quantity, 2) if total is not None else None,
                    )
                )
        if items:
            diagnostics.accept("items", "patterns")
        return merge_items([], items, limit=MAX_ITEMS)

    def extract_order_date(
        self, strategies: list[PatternRule], body: str, diagnostics: ExtractionDiagnostics
    ) -> datetime | None:
        for strategy in sorted(strategies, key=lambda s: -s.priority):
            for match in strategy.regex.finditer(body or ""):
                parsed = parse_date(match.group(1))
                if parsed is None:
                    diagnostics.reject("order_date", match.group(1), strategy.label, "unparseable")
                    continue
                diagnostics.accept("order_date", strategy.label)
                return parsed
        return None

    @staticmethod
    def extract_first(
        strategies: list[PatternRule],
        text: str,
        field_name: str,
        diagnostics: ExtractionDiagnostics,
    ) -> str | None:
        for strategy in sorted(strategies, key=lambda s: -s.priority):
            match = strategy.regex.search(text or "")
            if match:
                diagnostics.accept(field_name, strategy.label)
                return match.group(1).strip()
        return None

    # ------------------------------------------------------------------
    # Confidence
    # ------------------------------------------------------------------

    @staticmethod
    def score_confidence(
        order_ref: str | None,
        tracking_ref: str | None,
        amount: float | None,
        items: list[Item],
        product: ProductName,
        status_identified: bool,
    ) -> float:
        """Weighted sum over populated fields plus a product-quality bonus, capped."""
        score = 0.0
        if order_ref:
            score += CONFIDENCE_WEIGHTS["order_ref"]
        if tracking_ref:
            score += CONFIDENCE_WEIGHTS["tracking_ref"]
        if amount:
            score += CONFIDENCE_WEIGHTS["amount"]
        if items:
            score += CONFIDENCE_WEIGHTS["items"]
        if status_identified:
            score += CONFIDENCE_WEIGHTS["status"]
        if not product.is_placeholder and (len(product.name) > 15 or len(product.name.split()) >= 3):
            score += PRODUCT_QUALITY_BONUS
        return round(min(score, FRAGMENT_CONFIDENCE_CAP), 3)
