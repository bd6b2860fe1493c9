"""
orderq orders module - email-to-order extraction and reconciliation.
"""

from orderq.orders.classifier import PlatformClassifier
from orderq.orders.deduplicator import OrderDeduplicator
from orderq.orders.errors import OrderqError, PersistenceError, RuleConfigError
from orderq.orders.extractor import OrderEmailExtractor
from orderq.orders.field_extractor import OrderFieldExtractor
from orderq.orders.mail_source import JsonlMailSource, MailSource, fetch_in_batches
from orderq.orders.models import (
    CanonicalOrder,
    EmailType,
    Item,
    OrderStatus,
    ParsedOrderFragment,
    RawEmail,
    SyncSummary,
)
from orderq.orders.reconciler import LifecycleReconciler
from orderq.orders.repository import InMemoryOrderStore, OrderStore, SqliteOrderStore
from orderq.orders.rules import PlatformRules, RuleRegistry
from orderq.orders.sync import SyncOrchestrator
from orderq.orders.types import (
    ClassificationResult,
    ExtractionDiagnostics,
    ExtractionResult,
    ExtractionStage,
    IntegrityReport,
    MatchResult,
    MatchRule,
    OrderIdentity,
)

__all__ = [
    # Models
    "CanonicalOrder",
    "EmailType",
    "Item",
    "OrderStatus",
    "ParsedOrderFragment",
    "RawEmail",
    "SyncSummary",
    # Rules
    "PlatformRules",
    "RuleRegistry",
    # Pipeline stages
    "ClassificationResult",
    "ExtractionDiagnostics",
    "ExtractionResult",
    "ExtractionStage",
    "LifecycleReconciler",
    "OrderDeduplicator",
    "OrderEmailExtractor",
    "OrderFieldExtractor",
    "PlatformClassifier",
    # Identity and matching
    "IntegrityReport",
    "MatchResult",
    "MatchRule",
    "OrderIdentity",
    # Collaborators
    "InMemoryOrderStore",
    "JsonlMailSource",
    "MailSource",
    "OrderStore",
    "SqliteOrderStore",
    "fetch_in_batches",
    # Orchestration
    "SyncOrchestrator",
    # Errors
    "OrderqError",
    "PersistenceError",
    "RuleConfigError",
]
