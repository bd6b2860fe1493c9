"""orderq - Turn transactional shopping emails into canonical orders"""

from __future__ import annotations

__version__ = "0.1.0"


# Lazy imports for the orders module
def __getattr__(name: str):
    """
    Lazy imports to avoid loading the rule registry when only importing lightweight modules.
    """
    if name in ("CanonicalOrder", "RawEmail", "SyncSummary"):
        from orderq.orders import models

        return getattr(models, name)

    if name in ("InMemoryOrderStore", "SqliteOrderStore"):
        from orderq.orders import repository

        return getattr(repository, name)

    if name == "SyncOrchestrator":
        from orderq.orders.sync import SyncOrchestrator

        return SyncOrchestrator

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "CanonicalOrder",
    "RawEmail",
    "SyncSummary",
    "InMemoryOrderStore",
    "SqliteOrderStore",
    "SyncOrchestrator",
]
