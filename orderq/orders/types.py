"""
Module: types
Purpose: Result and diagnostics types shared across the order pipeline.
Dependencies: orderq.orders.models (type-checking only)

Leaf module: classifier, field_extractor, deduplicator, reconciler and sync
all import from here, so it must not import any of them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from orderq.orders.models import CanonicalOrder, ParsedOrderFragment


NO_PLATFORM = "none"
GENERIC_PLATFORM = "generic"


# ---------------------------------------------------------------------------
# Classifier result (from classifier.py)
# ---------------------------------------------------------------------------


@dataclass
class ClassificationResult:
    """Which vendor template produced an email, or why it is not order mail."""

    platform: str  # platform id, "generic" or "none"
    reason: str
    match_type: str  # "promotional" | "sender" | "subject" | "generic" | "unknown"

    @property
    def is_order(self) -> bool:
        return self.platform != NO_PLATFORM


# ---------------------------------------------------------------------------
# Extraction diagnostics (from field_extractor.py)
# ---------------------------------------------------------------------------


@dataclass
class RejectedCandidate:
    """A matched value that failed validation and was passed over."""

    field: str
    value: str
    strategy: str
    reason: str


@dataclass
class ExtractionDiagnostics:
    """Which strategy produced each field and what was rejected on the way."""

    strategies: dict[str, str] = field(default_factory=dict)
    rejected: list[RejectedCandidate] = field(default_factory=list)

    def accept(self, field_name: str, strategy: str) -> None:
        self.strategies[field_name] = strategy

    def reject(self, field_name: str, value: str, strategy: str, reason: str) -> None:
        self.rejected.append(RejectedCandidate(field_name, value[:80], strategy, reason))

    def rejected_for(self, field_name: str) -> list[RejectedCandidate]:
        return [r for r in self.rejected if r.field == field_name]


# ---------------------------------------------------------------------------
# Pipeline stage enum (from extractor.py)
# ---------------------------------------------------------------------------


class ExtractionStage(str, Enum):
    """Pipeline stage reached for one email."""

    NONE = "none"
    CLASSIFIER = "classifier"
    EXTRACTOR = "extractor"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ExtractionResult:
    """Result of classify + extract for one email."""

    success: bool
    fragment: ParsedOrderFragment | None = None
    classification: ClassificationResult | None = None
    diagnostics: ExtractionDiagnostics | None = None
    rejection_reason: str | None = None
    stage_reached: ExtractionStage = ExtractionStage.NONE

    @classmethod
    def rejected_at_classifier(cls, classification: ClassificationResult) -> ExtractionResult:
        return cls(
            success=False,
            classification=classification,
            rejection_reason=f"unclassified:{classification.reason}",
            stage_reached=ExtractionStage.CLASSIFIER,
        )

    @classmethod
    def rejected_at_extractor(
        cls, classification: ClassificationResult, diagnostics: ExtractionDiagnostics
    ) -> ExtractionResult:
        return cls(
            success=False,
            classification=classification,
            diagnostics=diagnostics,
            rejection_reason="unextractable:no_reference",
            stage_reached=ExtractionStage.EXTRACTOR,
        )

    @classmethod
    def failed(cls, error: Exception) -> ExtractionResult:
        return cls(
            success=False,
            rejection_reason=f"error:{str(error)[:100]}",
            stage_reached=ExtractionStage.ERROR,
        )

    @classmethod
    def completed(
        cls,
        fragment: ParsedOrderFragment,
        classification: ClassificationResult,
        diagnostics: ExtractionDiagnostics,
    ) -> ExtractionResult:
        return cls(
            success=True,
            fragment=fragment,
            classification=classification,
            diagnostics=diagnostics,
            stage_reached=ExtractionStage.COMPLETE,
        )


# ---------------------------------------------------------------------------
# Identity (from normalizer.py)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderIdentity:
    """Deterministic key grouping fragments of the same purchase."""

    platform: str
    kind: str  # "order" | "tracking"
    reference: str  # normalized
    user_id: str
    key: str


# ---------------------------------------------------------------------------
# Deduplication result (from deduplicator.py)
# ---------------------------------------------------------------------------


class MatchRule(str, Enum):
    """Which rule of the dedup cascade linked a fragment to an order."""

    ORDER_REF = "order_ref"
    TRACKING_REF = "tracking_ref"
    IDENTITY = "identity"
    HEURISTIC = "heuristic"


@dataclass
class MatchResult:
    order: CanonicalOrder | None = None
    rule: MatchRule | None = None

    @property
    def matched(self) -> bool:
        return self.order is not None


# ---------------------------------------------------------------------------
# Integrity checks (from reconciler.py)
# ---------------------------------------------------------------------------


@dataclass
class IntegrityReport:
    """Outcome of the non-blocking integrity checks over a merge."""

    status_monotonic: bool = True
    amounts_consistent: bool = True
    names_similar: bool = True
    timestamps_ordered: bool = True
    identities_unique: bool = True
    violations: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    def add(self, check: str, detail: str) -> None:
        setattr(self, check, False)
        self.violations.append(f"{check}:{detail}")
