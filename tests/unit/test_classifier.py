"""
Unit tests for PlatformClassifier.

Tests sender/subject signals, promotional rejection, and the generic gate
for senders without a vendor signal.
"""

from __future__ import annotations

import pytest

from orderq.observability.telemetry import get_counter
from orderq.orders.classifier import PlatformClassifier


@pytest.fixture
def classifier(registry) -> PlatformClassifier:
    return PlatformClassifier(registry)


class TestVendorSignals:
    def test_amazon_sender(self, classifier, lamp):
        """Amazon order mail is recognized by its sender domain."""
        result = classifier.classify(lamp.confirmation())
        assert result.platform == "amazon"
        assert result.reason == "sender:amazon.in"
        assert result.match_type == "sender"
        assert result.is_order
        assert get_counter("orders.classifier.platform.amazon") == 1

    def test_flipkart_sender(self, classifier, email_factory, flipkart_sender):
        """Flipkart mail from a notification subdomain still matches."""
        email = email_factory(
            subject="Your Flipkart order has been shipped",
            text_body="Order ID OD123456789012345678 is on the way.",
            sender=flipkart_sender,
        )
        result = classifier.classify(email)
        assert result.platform == "flipkart"
        assert result.reason == "sender:flipkart.com"

    def test_subject_signal_when_sender_is_unknown(self, classifier, email_factory):
        """Swiggy Instamart mail relayed from another sender is caught by subject."""
        email = email_factory(
            subject="Your Instamart order is on the way",
            text_body="Order ID: 1234567890123",
            sender="Notifications <noreply@relay.example>",
        )
        result = classifier.classify(email)
        assert result.platform == "swiggy"
        assert result.reason == "subject:instamart"
        assert result.match_type == "subject"


class TestPromotionalRejection:
    def test_global_promo_keyword_rejects(self, classifier, email_factory):
        """A vendor newsletter is rejected even though the sender matches."""
        email = email_factory(
            subject="Big savings this weekend",
            text_body="Shop now. Click here to unsubscribe.",
        )
        result = classifier.classify(email)
        assert result.platform == "none"
        assert result.reason == "promotional:unsubscribe"
        assert result.match_type == "promotional"
        assert not result.is_order

    def test_platform_promo_keyword_rejects(self, classifier, email_factory):
        """Amazon's own promo list applies on top of the global one."""
        email = email_factory(
            subject="Explore new arrivals",
            text_body="Picked just for you this week.",
        )
        result = classifier.classify(email)
        assert result.reason == "promotional:explore"
        assert get_counter("orders.classifier.rejected_promotional") == 1

    def test_keyword_inside_longer_word_does_not_reject(self, classifier, email_factory, lamp):
        """'Discounted' in a product name is not the promo keyword 'discount'."""
        email = email_factory(
            subject='Ordered: "Discounted Desk Lamp"',
            text_body=f"Thank you for your order.\nOrder #{lamp.order_ref}\n",
        )
        result = classifier.classify(email)
        assert result.platform == "amazon"


class TestGenericGate:
    def test_unknown_sender_with_reference_and_keyword(self, classifier, email_factory):
        """An unlisted shop passes when both an id-shaped token and a keyword appear."""
        email = email_factory(
            subject="Your order has shipped",
            text_body="Order ID: 987654321012\nThanks for shopping with us.",
            sender="Orders <orders@shopmart.example>",
        )
        result = classifier.classify(email)
        assert result.platform == "generic"
        assert result.match_type == "generic"
        assert result.reason.startswith("generic:")

    def test_reference_without_keyword_is_rejected(self, classifier, email_factory):
        """A long number alone is not enough to call something order mail."""
        email = email_factory(
            subject="Hi",
            text_body="Reference 987654321012 for your booking.",
            sender="Someone <someone@example.com>",
        )
        result = classifier.classify(email)
        assert result.platform == "none"
        assert result.reason == "no_signal"

    def test_personal_mail_has_no_signal(self, classifier, email_factory):
        """Ordinary mail is rejected with no_signal."""
        email = email_factory(
            subject="Lunch?",
            text_body="See you at noon.",
            sender="Friend <friend@example.com>",
        )
        result = classifier.classify(email)
        assert result.reason == "no_signal"
        assert result.match_type == "unknown"
        assert get_counter("orders.classifier.no_signal") == 1


class TestExtractDomain:
    @pytest.mark.parametrize(
        "sender,expected",
        [
            ("auto-confirm@amazon.in", "amazon.in"),
            ("Amazon.in <shipment-tracking@amazon.in>", "amazon.in"),
            ("noreply@nct.flipkart.com", "nct.flipkart.com"),
            ("Flipkart", "flipkart"),
        ],
    )
    def test_extract_domain(self, sender, expected):
        """Domains are read from bare addresses and display-name forms."""
        assert PlatformClassifier._extract_domain(sender) == expected
