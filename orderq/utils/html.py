"""HTML helpers for email bodies.

Vendor order emails are frequently HTML-only, or carry a text/plain part that
is just a "view in browser" link. These helpers turn the HTML into readable
text for the extractors and expose parsed markup for structured lookups.
"""

from __future__ import annotations

import re

from bs4 import BeautifulSoup

from orderq.observability.logging import get_logger

logger = get_logger(__name__)

_DROP_TAGS = ("script", "style", "head", "title", "meta")


def parse_html(html: str) -> BeautifulSoup:
    """Parse an email body with the stdlib-backed parser and drop non-content tags."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(list(_DROP_TAGS)):
        tag.decompose()
    return soup


def html_to_text(html: str) -> str:
    """Convert HTML email body to plain text.

    Args:
        html: Raw HTML string from email body.

    Returns:
        Plain text, one block element per line, blank-line runs collapsed.
    """
    if not html:
        return ""

    text = parse_html(html).get_text(separator="\n")

    lines = [line.strip() for line in text.splitlines()]
    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def select_texts(html: str, selectors: list[str], limit: int = 20) -> list[str]:
    """Return stripped text of elements matching any CSS selector, in document order."""
    if not html or not selectors:
        return []

    soup = parse_html(html)
    seen: set[str] = set()
    texts: list[str] = []
    for selector in selectors:
        try:
            elements = soup.select(selector)
        except Exception as e:  # soupsieve.SelectorSyntaxError
            logger.warning("Invalid CSS selector %r: %s", selector, e)
            continue
        for element in elements:
            text = element.get_text(" ", strip=True)
            if text and text not in seen:
                seen.add(text)
                texts.append(text)
            if len(texts) >= limit:
                return texts
    return texts
