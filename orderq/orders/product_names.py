"""
Product-name extraction.

A five-stage fallback chain, each stage tried only when the previous one
produced nothing acceptable:

1. Structured markup: CSS selectors on the HTML body, then labelled
   patterns in a window around the order reference
2. Subject-line patterns ("Shipped: "Desk Lamp"")
3. Aggressive subject stripping (vendor prefixes, "has been shipped", ...)
4. Body keyword search ("Item:", "1 x", name followed by a price)
5. Synthesized placeholder: "<Platform> <Type> <ref>"

Every stage except the last must pass the garbage filter.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from orderq.config import PRODUCT_CONTEXT_WINDOW
from orderq.orders.models import EmailType
from orderq.orders.normalizer import clean_text
from orderq.orders.platform_data import (
    BOILERPLATE_WORDS,
    GARBAGE_PATTERNS,
    PRODUCT_INDICATOR_PATTERNS,
    PRODUCT_MIN_ALPHA,
    PRODUCT_MIN_LEN_WITHOUT_INDICATOR,
    TYPE_LABELS,
)
from orderq.orders.rules import PatternRule, PlatformRules
from orderq.orders.types import ExtractionDiagnostics
from orderq.utils.html import select_texts

_GARBAGE_RES = [re.compile(p, re.IGNORECASE) for p in GARBAGE_PATTERNS]
# The capitalized-words indicator is case-sensitive, the rest are not
_INDICATOR_RES = [re.compile(p) for p in PRODUCT_INDICATOR_PATTERNS[:1]] + [
    re.compile(p, re.IGNORECASE) for p in PRODUCT_INDICATOR_PATTERNS[1:]
]

_WORD_RE = re.compile(r"[a-z]+")

MARKUP_PRIORITY = 100

# Stages whose output must also look like a product, not just avoid garbage
STRICT_STAGES = frozenset({"stripped_subject"})


@dataclass
class ProductName:
    name: str
    is_placeholder: bool
    stage: str


@dataclass
class _Candidate:
    text: str
    priority: int
    label: str


def garbage_reason(name: str, rules: PlatformRules | None = None) -> str | None:
    """Why a candidate is clearly not a product name, or None if it may be one."""
    if not name or len(name) < 3:
        return "too_short"
    if sum(1 for c in name if c.isalpha()) < PRODUCT_MIN_ALPHA:
        return "too_few_letters"

    lower = name.lower().strip()
    tokens = _WORD_RE.findall(lower)
    if lower in BOILERPLATE_WORDS or (tokens and all(t in BOILERPLATE_WORDS for t in tokens)):
        return "boilerplate"

    for regex in _GARBAGE_RES:
        if regex.search(name):
            return "markup_or_chrome"

    if rules is not None:
        if lower == rules.display_name.lower():
            return "platform_name"
        for term in rules.product.garbage_terms:
            if term.lower() in lower:
                return f"platform_term:{term}"
    return None


def looks_like_product(name: str) -> bool:
    """Stricter check: capitalized words, descriptive words, or simply long enough."""
    if len(name) >= PRODUCT_MIN_LEN_WITHOUT_INDICATOR:
        return True
    return any(regex.search(name) for regex in _INDICATOR_RES)


def is_better_name(
    candidate: str | None,
    candidate_placeholder: bool,
    current: str | None,
    current_placeholder: bool,
) -> bool:
    """
    Whether a candidate product name should replace the current one.

    A real name always beats a placeholder. Between two real names the
    candidate must have more words AND more characters.
    """
    if not candidate:
        return False
    if not current:
        return True
    if candidate_placeholder:
        return False
    if current_placeholder:
        return True
    return len(candidate.split()) > len(current.split()) and len(candidate) > len(current)


def placeholder_name(rules: PlatformRules, email_type: EmailType, reference: str | None) -> str:
    label = TYPE_LABELS.get(EmailType(email_type).value, TYPE_LABELS["other"])
    parts = [rules.display_name, label]
    if reference:
        parts.append(reference)
    return " ".join(parts)


class ProductNameExtractor:
    """Runs the fallback chain for one email and records why candidates lost."""

    def extract(
        self,
        rules: PlatformRules,
        subject: str,
        body: str,
        html_body: str,
        email_type: EmailType,
        order_ref: str | None,
        tracking_ref: str | None = None,
        diagnostics: ExtractionDiagnostics | None = None,
    ) -> ProductName:
        diagnostics = diagnostics or ExtractionDiagnostics()

        stages = (
            ("markup", lambda: self._markup_candidates(rules, body, html_body, order_ref)),
            ("subject", lambda: self._pattern_candidates(rules.product.subject_patterns, subject)),
            ("stripped_subject", lambda: self._stripped_subject_candidates(rules, subject)),
            ("body_keywords", lambda: self._pattern_candidates(rules.product.keyword_patterns, body)),
        )

        for stage, produce in stages:
            name = self._pick(stage, produce(), rules, diagnostics)
            if name:
                diagnostics.accept("product_name", stage)
                return ProductName(name=name, is_placeholder=False, stage=stage)

        diagnostics.accept("product_name", "placeholder")
        return ProductName(
            name=placeholder_name(rules, email_type, order_ref or tracking_ref),
            is_placeholder=True,
            stage="placeholder",
        )

    def _markup_candidates(
        self, rules: PlatformRules, body: str, html_body: str, order_ref: str | None
    ) -> list[_Candidate]:
        candidates = [
            _Candidate(text, MARKUP_PRIORITY, "markup_selector")
            for text in select_texts(html_body, rules.product.markup_selectors)
        ]

        if order_ref and body:
            idx = body.upper().find(order_ref.upper())
            if idx >= 0:
                window = body[
                    max(0, idx - PRODUCT_CONTEXT_WINDOW) : idx + len(order_ref) + PRODUCT_CONTEXT_WINDOW
                ]
                candidates.extend(self._pattern_candidates(rules.product.context_patterns, window))
        return candidates

    @staticmethod
    def _pattern_candidates(patterns: list[PatternRule], text: str) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        if not text:
            return candidates
        for rule in patterns:
            for match in rule.regex.finditer(text):
                candidates.append(_Candidate(match.group(1), rule.priority, rule.label))
        return candidates

    @staticmethod
    def _stripped_subject_candidates(rules: PlatformRules, subject: str) -> list[_Candidate]:
        stripped = subject
        for regex in rules.product.strip_regexes:
            stripped = regex.sub(" ", stripped)
        stripped = re.sub(r"\s+", " ", stripped).strip()
        if not stripped:
            return []
        return [_Candidate(stripped, 0, "stripped_subject")]

    @staticmethod
    def _pick(
        stage: str,
        candidates: list[_Candidate],
        rules: PlatformRules,
        diagnostics: ExtractionDiagnostics,
    ) -> str | None:
        """Highest priority valid candidate; ties go to the one that looks like a product."""
        valid: list[tuple[int, bool, int, str]] = []
        for index, candidate in enumerate(candidates):
            name = clean_text(candidate.text)
            reason = garbage_reason(name, rules)
            product_like = not reason and looks_like_product(name)
            if not reason and stage in STRICT_STAGES and not product_like:
                reason = "not_product_like"
            if reason:
                diagnostics.reject(
                    "product_name", name or candidate.text, f"{stage}:{candidate.label}", reason
                )
                continue
            valid.append((candidate.priority, product_like, -index, name))

        if not valid:
            return None
        return max(valid)[3]
