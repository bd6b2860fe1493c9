"""
Platform classifier.

Stage 1 of the order pipeline. Decides which vendor template produced an
email, or rejects it as non-order mail, using only the rule tables:

1. Promotional keywords reject, even when a vendor signal also matches
2. Vendor sender/subject signals pick the platform
3. Unknown senders pass through a generic gate: an order-reference-shaped
   token AND an order keyword must both appear
"""

from __future__ import annotations

import re

from orderq.observability.logging import get_logger
from orderq.observability.telemetry import counter
from orderq.orders.models import RawEmail
from orderq.orders.rules import PlatformRules, RuleRegistry, get_default_registry
from orderq.orders.types import GENERIC_PLATFORM, NO_PLATFORM, ClassificationResult

logger = get_logger(__name__)


def _keyword_regex(keyword: str) -> re.Pattern[str]:
    # Word boundaries only where the keyword itself starts/ends with a word char
    prefix = r"(?<!\w)" if keyword[:1].isalnum() else ""
    suffix = r"(?!\w)" if keyword[-1:].isalnum() else ""
    return re.compile(prefix + re.escape(keyword) + suffix, re.IGNORECASE)


class PlatformClassifier:
    """
    Identify the vendor of an email from sender, subject and body signals.

    Signal lists come from the rule registry, so adding a vendor never
    touches this class.
    """

    def __init__(self, registry: RuleRegistry | None = None):
        self.registry = registry or get_default_registry()
        self._keyword_cache: dict[str, re.Pattern[str]] = {}

    def classify(self, email: RawEmail, content: str | None = None) -> ClassificationResult:
        """
        Classify one email.

        Args:
            email: The raw email
            content: Pre-computed plain-text body (avoids converting HTML twice)

        Returns:
            ClassificationResult with a platform id, "generic", or "none"
        """
        body = content if content is not None else email.content()
        domain = self._extract_domain(email.sender)
        text = f"{email.subject}\n{body}"

        promo = self._find_keyword(text, self.registry.promo_keywords)
        if promo:
            counter("orders.classifier.rejected_promotional")
            return ClassificationResult(NO_PLATFORM, f"promotional:{promo}", "promotional")

        platform = self._match_platform(email.sender, domain, email.subject)
        if platform is not None:
            rules, signal, match_type = platform
            promo = self._find_keyword(text, rules.promo_keywords)
            if promo:
                counter("orders.classifier.rejected_promotional")
                return ClassificationResult(NO_PLATFORM, f"promotional:{promo}", "promotional")
            counter(f"orders.classifier.platform.{rules.id}")
            return ClassificationResult(rules.id, f"{match_type}:{signal}", match_type)

        generic = self._check_generic_gate(text)
        if generic is not None:
            counter("orders.classifier.generic")
            return ClassificationResult(GENERIC_PLATFORM, f"generic:{generic}", "generic")

        counter("orders.classifier.no_signal")
        logger.debug("No order signal for sender domain %s", domain)
        return ClassificationResult(NO_PLATFORM, "no_signal", "unknown")

    def _match_platform(
        self, sender: str, domain: str, subject: str
    ) -> tuple[PlatformRules, str, str] | None:
        sender_lower = sender.lower()
        subject_lower = subject.lower()

        for rules in self.registry.platforms():
            for signal in rules.sender_signals:
                if signal in sender_lower or signal in domain:
                    return rules, signal, "sender"

        for rules in self.registry.platforms():
            for signal in rules.subject_signals:
                if signal in subject_lower:
                    return rules, signal, "subject"

        return None

    def _check_generic_gate(self, text: str) -> str | None:
        """Return the matched token pattern when both gate conditions hold."""
        gate = self.registry.generic_gate
        text_lower = text.lower()
        if not any(kw in text_lower for kw in gate.order_keywords):
            return None
        for regex in gate.regexes:
            if regex.search(text):
                return regex.pattern
        return None

    def _find_keyword(self, text: str, keywords: list[str]) -> str | None:
        for keyword in keywords:
            regex = self._keyword_cache.get(keyword)
            if regex is None:
                regex = self._keyword_cache[keyword] = _keyword_regex(keyword)
            if regex.search(text):
                return keyword
        return None

    @staticmethod
    def _extract_domain(sender: str) -> str:
        """
        Extract the sender's domain.

        Handles formats:
        - "auto-confirm@amazon.in" → "amazon.in"
        - "Amazon.in <shipment-tracking@amazon.in>" → "amazon.in"
        - "noreply@nct.flipkart.com" → "nct.flipkart.com"
        """
        match = re.search(r"<([^>]+)>", sender)
        if match:
            sender = match.group(1)

        if "@" in sender:
            return sender.split("@")[-1].lower().strip()
        return sender.lower().strip()
