"""
Module: platform_data
Purpose: Vendor-agnostic keyword and token constants for the order pipeline.
Dependencies: None (pure data, no imports)

Per-platform tables (signals, regexes, ranges) live in
config/platform_rules.yaml. This file holds the lists every platform shares:
lifecycle keywords, currency glyph variants, and product-name deny lists.
"""

# ---------------------------------------------------------------------------
# Currency: every variant is rewritten to CANONICAL_CURRENCY before matching
# ---------------------------------------------------------------------------

CANONICAL_CURRENCY = "₹"

# Literal replacements, longest first so mangled sequences are not half-replaced
CURRENCY_LITERALS: tuple[str, ...] = (
    "Ã¢â€šÂ¹",
    "Ã¢â€šÂ¨",
    "â‚¹",
    "&#8377;",
    "&#x20b9;",
    "&#X20B9;",
    "&₹",
    "₨",
)

# Regex replacements for textual currency markers; only when a number follows
CURRENCY_REGEXES: tuple[str, ...] = (
    r"\bRs\.?(?=\s*\d)",
    r"\bINR\.?(?=\s*\d)",
)

# Expanded inside rule patterns
PATTERN_MACROS: dict[str, str] = {
    "{cur}": r"₹\.?\s*",
    "{amt}": r"(\d[\d,]*(?:\.\d{1,2})?)",
}

# ---------------------------------------------------------------------------
# Email type keywords, checked top to bottom (terminal types first)
# ---------------------------------------------------------------------------

EMAIL_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "cancellation",
        (
            "has been cancelled",
            "has been canceled",
            "order cancelled",
            "order canceled",
            "cancellation confirmed",
            "item cancelled successfully",
            "refund initiated",
        ),
    ),
    (
        "return",
        (
            "has been returned",
            "return received",
            "return request",
            "return completed",
            "refund for your return",
            "being returned to us",
        ),
    ),
    (
        "feedback",
        (
            "regarding your recent order",
            "share your experience",
            "rate and review",
            "how was your order",
            "review your purchase",
        ),
    ),
    (
        "delivered",
        (
            "delivered:",
            "has been delivered",
            "was delivered",
            "delivered successfully",
            "delivered today",
            "package has been delivered",
            "order delivered",
        ),
    ),
    (
        "out_for_delivery",
        (
            "out for delivery",
            "arriving today",
            "will be delivered today",
        ),
    ),
    (
        "shipped",
        (
            "shipped:",
            "has been shipped",
            "has shipped",
            "dispatched",
            "on the way",
            "in transit",
        ),
    ),
    (
        "confirmation",
        (
            "ordered:",
            "thank you for your order",
            "thanks for your order",
            "order confirmation",
            "order confirmed",
            "order placed",
            "order has been placed",
            "order total",
            "amount paid",
        ),
    ),
)

PROCESSING_KEYWORDS: tuple[str, ...] = (
    "being processed",
    "processing your order",
    "preparing your order",
    "being packed",
    "packing your order",
)

# Subject priority used to order emails that share a timestamp
SUBJECT_PRIORITY_KEYWORDS: tuple[tuple[int, tuple[str, ...]], ...] = (
    (1, ("ordered", "order confirmation", "order confirmed", "order placed", "thank you")),
    (2, ("shipped", "dispatched", "on the way", "out for delivery")),
    (3, ("delivered",)),
)
DEFAULT_SUBJECT_PRIORITY = 4

# ---------------------------------------------------------------------------
# Placeholder product name labels per email type
# ---------------------------------------------------------------------------

TYPE_LABELS: dict[str, str] = {
    "confirmation": "Order",
    "shipped": "Shipped Item",
    "out_for_delivery": "Out for Delivery",
    "delivered": "Delivered Item",
    "feedback": "Delivered Item",
    "cancellation": "Cancelled Order",
    "return": "Returned Item",
    "other": "Item",
}

# ---------------------------------------------------------------------------
# Reference deny list
# ---------------------------------------------------------------------------

GARBAGE_REFERENCE_WORDS: frozenset[str] = frozenset(
    {
        "confirmation",
        "tracking",
        "order",
        "number",
        "receipt",
        "invoice",
        "shipping",
        "delivery",
        "purchase",
        "pending",
        "unknown",
        "none",
        "n/a",
        "null",
    }
)

# ---------------------------------------------------------------------------
# Product name garbage filter
# ---------------------------------------------------------------------------

# A candidate made only of these words is never a product
BOILERPLATE_WORDS: frozenset[str] = frozenset(
    {
        "amazon",
        "flipkart",
        "order",
        "orders",
        "delivered",
        "shipped",
        "confirmation",
        "notification",
        "email",
        "package",
        "item",
        "items",
        "shipment",
        "delivery",
        "payment",
        "total",
        "amount",
        "seller",
        "qty",
        "your",
        "the",
        "this",
        "that",
        "has",
        "been",
        "was",
        "will",
        "dear",
        "hello",
        "hi",
        "thanks",
        "thank",
        "regarding",
        "update",
        "updates",
        "status",
        "details",
        "summary",
        "receipt",
        "invoice",
        "tracking",
        "info",
        "placed",
        "confirmed",
        "dispatched",
        "arriving",
        "today",
        "tomorrow",
        "new",
        "for",
        "of",
        "is",
        "on",
        "a",
        "an",
        "and",
        "our",
        "you",
        "we",
        "here",
        "s",
    }
)

# Regexes that mark markup, URLs or UI chrome anywhere in the candidate
GARBAGE_PATTERNS: tuple[str, ...] = (
    r"background|url\(|\.css|\.js\b|font-family|doctype|<html|style\s*=|class\s*=|src\s*=",
    r"https?:|www\.|\.com\b|\.in\b|mailto|@",
    r"^[\d\s.,;:\-₹]+$",
    r"^[a-f0-9]{8,}$",
    r"\b(?:track|view|manage)\s+(?:your\s+)?order\b",
    r"\bcustomer\s+(?:care|support)\b|\bhelp\s+cent(?:er|re)\b|\bcontact\s+us\b",
    r"\breturn\s+policy\b|\bdownload\s+(?:the\s+)?app\b|\bunsubscribe\b",
    r"copyright|all\s+rights\s+reserved|trademark|privacy\s+policy|terms\s+(?:of|and)\b",
    r"^(?:your\s+)?(?:order|item|shipment|package)\s*(?:#|id|number|no\.?)?\s*:?\s*#?[\w\-]*\d[\w\-]*$",
)

# Signals that a string reads like a product title
PRODUCT_INDICATOR_PATTERNS: tuple[str, ...] = (
    r"[A-Z][a-z]+\s+[A-Z][a-z]+",
    r"\b(?:for|with|and|or|of)\b",
    r"\b(?:boys?|girls?|kids?|men|women|unisex|set|pack|combo|kit|size|ml|kg|gb|inch)\b",
)

PRODUCT_MIN_ALPHA = 3
PRODUCT_MIN_LEN_WITHOUT_INDICATOR = 15

# ---------------------------------------------------------------------------
# Product-name comparison stop words
# ---------------------------------------------------------------------------

STOP_WORDS: frozenset[str] = frozenset(
    {
        "the",
        "a",
        "an",
        "and",
        "or",
        "for",
        "of",
        "in",
        "to",
        "with",
        "by",
        "on",
        "at",
        "from",
        "your",
        "my",
        "x",
        "pack",
        "qty",
    }
)
