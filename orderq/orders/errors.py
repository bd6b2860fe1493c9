"""Exception types raised by the order engine."""

from __future__ import annotations


class OrderqError(Exception):
    """Base class for engine errors."""


class RuleConfigError(OrderqError):
    """Platform rule file is missing, unreadable, or fails validation."""


class PersistenceError(OrderqError):
    """A store could not apply a create or update.

    Raised by store implementations; the sync orchestrator catches it per
    order and records it in the summary.
    """

    def __init__(self, message: str, order_id: str | None = None):
        super().__init__(message)
        self.order_id = order_id
