"""
Mail sources - where raw emails come from.

The engine never builds provider queries; it consumes whatever sequence a
MailSource returns and sorts it itself. fetch_in_batches is the helper for
sources whose per-message fetch is slow I/O: bounded parallel batches,
results put back in input order.
"""

from __future__ import annotations

import concurrent.futures
import json
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import ValidationError

from orderq.config import FETCH_BATCH_SIZE, FETCH_MAX_WORKERS
from orderq.observability.logging import get_logger
from orderq.observability.telemetry import counter, log_event, time_block
from orderq.orders.models import RawEmail, ensure_utc

logger = get_logger(__name__)

T = TypeVar("T")


class MailSource(Protocol):
    def fetch(self, user_id: str, since: datetime, max_count: int) -> Iterable[RawEmail]: ...


def fetch_in_batches(
    message_ids: Sequence[str],
    fetch_one: Callable[[str], T],
    batch_size: int = FETCH_BATCH_SIZE,
    max_workers: int = FETCH_MAX_WORKERS,
) -> list[T]:
    """
    Fetch messages in bounded parallel batches, preserving input order.

    Args:
        message_ids: Ids to fetch, in the order the caller wants them back
        fetch_one: Fetches one message; may raise
        batch_size: Messages submitted per batch
        max_workers: Thread pool size

    Returns:
        Fetched messages in input order. Messages whose fetch raised are
        dropped (logged and counted).
    """
    results: list[tuple[int, T]] = []

    with time_block("orders.fetch.parallel"):
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            for start in range(0, len(message_ids), batch_size):
                batch = message_ids[start : start + batch_size]
                future_to_idx = {
                    executor.submit(fetch_one, message_id): start + offset
                    for offset, message_id in enumerate(batch)
                }

                for future in concurrent.futures.as_completed(future_to_idx):
                    idx = future_to_idx[future]
                    try:
                        results.append((idx, future.result()))
                    except Exception as exc:
                        logger.warning("Failed to fetch message %s: %s", message_ids[idx], exc)
                        log_event("orders.fetch.error", index=idx, error=str(exc)[:100])
                        counter("orders.fetch.errors")

    # Restore original order
    results.sort(key=lambda x: x[0])
    counter("orders.fetch.count", len(results))
    return [message for _, message in results]


class JsonlMailSource:
    """
    Reads RawEmail records from a JSON-lines file, one email per line.

    Lines may use the RawEmail field names or the common export aliases
    `id`, `from`, `body`, `body_html`.
    """

    _ALIASES = {"id": "message_id", "from": "sender", "body": "text_body", "body_html": "html_body"}

    def __init__(self, path: Path):
        self.path = Path(path)

    def fetch(self, user_id: str, since: datetime, max_count: int) -> list[RawEmail]:
        """
        Emails received at or after `since`, newest `max_count`, oldest first.

        Raises:
            FileNotFoundError: File missing
            ValueError: A line is not valid JSON or not a valid email record
        """
        since = ensure_utc(since)
        emails = [e for e in self._read() if e.received_at >= since]
        emails.sort(key=lambda e: e.received_at)
        if max_count and len(emails) > max_count:
            emails = emails[-max_count:]
        logger.info("Loaded %d emails for user %s from %s", len(emails), user_id, self.path.name)
        return emails

    def _read(self) -> list[RawEmail]:
        emails = []
        with open(self.path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                    emails.append(RawEmail(**{self._ALIASES.get(k, k): v for k, v in record.items()}))
                except (json.JSONDecodeError, ValidationError) as e:
                    raise ValueError(f"{self.path}:{line_no}: invalid email record: {e}") from e
        return emails
