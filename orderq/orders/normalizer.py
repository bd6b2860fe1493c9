"""
Normalizer / identity hasher.

Cleans extracted text and turns order and tracking references into
deterministic identity keys: sha256 of "platform-normalizedRef-userId".
Two fragments that expose different identifiers at different lifecycle
stages still correlate because each fragment yields one identity per
reference it carries.
"""

from __future__ import annotations

import hashlib
import html
import re
from typing import TYPE_CHECKING

from orderq.config import PRODUCT_NAME_MAX_LEN
from orderq.orders.platform_data import (
    CANONICAL_CURRENCY,
    CURRENCY_LITERALS,
    CURRENCY_REGEXES,
    STOP_WORDS,
)
from orderq.orders.types import OrderIdentity

if TYPE_CHECKING:
    from orderq.orders.models import ParsedOrderFragment

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_EDGE_RE = re.compile(r"^[^\w(\[]+|[^\w)\]]+$")
_CURRENCY_RES = [re.compile(p, re.IGNORECASE) for p in CURRENCY_REGEXES]


def normalize_currency(text: str) -> str:
    """Rewrite every currency variant (mangled encodings, Rs., INR) to one glyph."""
    if not text:
        return ""
    for literal in CURRENCY_LITERALS:
        text = text.replace(literal, CANONICAL_CURRENCY)
    for regex in _CURRENCY_RES:
        text = regex.sub(CANONICAL_CURRENCY, text)
    return text


def clean_text(value: str | None, max_len: int = PRODUCT_NAME_MAX_LEN) -> str:
    """Decode entities, drop tags, collapse whitespace, trim edge punctuation, bound length."""
    if not value:
        return ""
    text = html.unescape(value)
    text = _TAG_RE.sub(" ", text)
    text = _WS_RE.sub(" ", text).strip()
    text = _EDGE_RE.sub("", text)
    if len(text) > max_len:
        text = text[:max_len].rsplit(" ", 1)[0] if " " in text[:max_len] else text[:max_len]
    return text.strip()


def normalize_reference(ref: str | None) -> str | None:
    """Uppercase and drop whitespace and a leading '#'; separators like '-' are kept."""
    if not ref:
        return None
    normalized = _WS_RE.sub("", ref).upper().lstrip("#")
    return normalized or None


def compute_identity(platform: str, reference: str, user_id: str, kind: str = "order") -> OrderIdentity:
    """Identity for one reference. Raises ValueError for an empty reference."""
    normalized = normalize_reference(reference)
    if not normalized:
        raise ValueError("cannot compute identity for an empty reference")
    platform_id = platform.lower()
    raw = f"{platform_id}-{normalized}-{user_id or ''}"
    key = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return OrderIdentity(
        platform=platform_id,
        kind=kind,
        reference=normalized,
        user_id=user_id,
        key=key,
    )


def identities_for(fragment: ParsedOrderFragment, user_id: str) -> list[OrderIdentity]:
    """Order-reference identity first, then the tracking-reference identity if present."""
    identities: list[OrderIdentity] = []
    if fragment.order_ref:
        identities.append(compute_identity(fragment.platform, fragment.order_ref, user_id, "order"))
    if fragment.tracking_ref:
        identities.append(
            compute_identity(fragment.platform, fragment.tracking_ref, user_id, "tracking")
        )
    return identities


def product_key(name: str | None) -> str:
    """Comparison key for product names: lowercase alphanumeric tokens minus stop words."""
    if not name:
        return ""
    tokens = re.split(r"[^a-z0-9]+", html.unescape(name).lower())
    return " ".join(t for t in tokens if t and t not in STOP_WORDS)
