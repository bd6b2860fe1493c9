"""
Order Email Extractor - classify + extract for one email.

Coordinates:
1. PlatformClassifier (Stage 1) - vendor signals, promo rejection, generic gate
2. OrderFieldExtractor (Stage 2) - rule-driven field extraction

Entry point: OrderEmailExtractor.extract_from_email()
"""

from __future__ import annotations

from pathlib import Path

from orderq.observability.logging import get_logger, redact_subject
from orderq.observability.telemetry import counter, log_event
from orderq.orders.classifier import PlatformClassifier
from orderq.orders.field_extractor import OrderFieldExtractor
from orderq.orders.models import RawEmail
from orderq.orders.rules import RuleRegistry, get_default_registry
from orderq.orders.types import ExtractionDiagnostics, ExtractionResult

logger = get_logger(__name__)


class OrderEmailExtractor:
    """
    Runs the two extraction stages for one email.

    Pipeline:
    1. PlatformClassifier → platform id or rejection (promotional / no signal)
    2. OrderFieldExtractor → ParsedOrderFragment or rejection (no reference)

    Nothing here touches persistence; the sync orchestrator owns that.
    """

    def __init__(self, rules_path: Path | None = None, registry: RuleRegistry | None = None):
        if registry is None:
            registry = RuleRegistry(rules_path) if rules_path else get_default_registry()
        self.registry = registry
        self.classifier = PlatformClassifier(registry)
        self.field_extractor = OrderFieldExtractor(registry)

    def extract_from_email(self, email: RawEmail) -> ExtractionResult:
        """
        Classify and extract one email.

        Args:
            email: The raw email

        Returns:
            ExtractionResult with success=True and a fragment when the email is
            order mail with at least one reference, success=False with
            rejection_reason otherwise.
        """
        counter("orders.extraction.started")
        logger.info(
            "EXTRACTION START: message=%s subject='%s'",
            email.message_id,
            redact_subject(email.subject),
        )

        content = email.content()

        # =========================================================
        # Stage 1: Platform classification
        # =========================================================
        classification = self.classifier.classify(email, content=content)
        if not classification.is_order:
            counter("orders.extraction.rejected_classifier")
            logger.info(
                "STAGE 1 REJECTED: message=%s reason=%s", email.message_id, classification.reason
            )
            log_event(
                "orders.extraction.rejected",
                stage="classifier",
                reason=classification.reason,
            )
            return ExtractionResult.rejected_at_classifier(classification)

        logger.info(
            "STAGE 1 PASSED: platform=%s reason=%s", classification.platform, classification.reason
        )

        # =========================================================
        # Stage 2: Field extraction
        # =========================================================
        diagnostics = ExtractionDiagnostics()
        fragment = self.field_extractor.extract(
            email, classification.platform, content=content, diagnostics=diagnostics
        )
        if fragment is None:
            counter("orders.extraction.rejected_extractor")
            logger.info("STAGE 2 REJECTED: message=%s no order or tracking reference", email.message_id)
            log_event(
                "orders.extraction.rejected",
                stage="extractor",
                reason="no_reference",
                platform=classification.platform,
            )
            return ExtractionResult.rejected_at_extractor(classification, diagnostics)

        counter("orders.extraction.success")
        logger.info(
            "EXTRACTION COMPLETE: platform=%s type=%s status=%s confidence=%.2f strategies=%s",
            fragment.platform,
            fragment.email_type.value,
            fragment.status.value,
            fragment.confidence,
            diagnostics.strategies,
        )
        return ExtractionResult.completed(fragment, classification, diagnostics)

    def process_email_batch(self, emails: list[RawEmail]) -> list[ExtractionResult]:
        """
        Extract a batch of emails independently.

        One failing email never aborts the batch: it yields an error result.

        Args:
            emails: Raw emails, any order

        Returns:
            One ExtractionResult per email, in input order
        """
        results = []

        for email in emails:
            try:
                results.append(self.extract_from_email(email))
            except Exception as e:
                logger.error("Failed to process email %s: %s", email.message_id, e)
                counter("orders.extraction.error")
                results.append(ExtractionResult.failed(e))

        successful = sum(1 for r in results if r.success)
        log_event(
            "orders.extraction.batch_complete",
            total=len(emails),
            successful=successful,
        )
        return results
