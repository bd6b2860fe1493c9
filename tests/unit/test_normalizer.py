"""Tests for text cleanup, reference normalization and identity hashing."""

from __future__ import annotations

import hashlib

import pytest

from orderq.orders.normalizer import (
    clean_text,
    compute_identity,
    identities_for,
    normalize_currency,
    normalize_reference,
    product_key,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Total: Rs. 804", "Total: ₹ 804"),
        ("Total: Rs.804", "Total: ₹804"),
        ("Total: INR 1,299", "Total: ₹ 1,299"),
        ("Total: â‚¹500", "Total: ₹500"),
        ("Total: &#8377;500", "Total: ₹500"),
        ("Total: ₨ 500", "Total: ₹ 500"),
        ("Dear Mrs. Rao", "Dear Mrs. Rao"),
        ("Rs. will be refunded", "Rs. will be refunded"),
        ("", ""),
    ],
)
def test_normalize_currency(raw, expected):
    """Currency markers become ₹ only where a number follows."""
    assert normalize_currency(raw) == expected


def test_clean_text_decodes_and_trims():
    """Entities, tags, whitespace runs and edge punctuation are cleaned up."""
    assert clean_text('  &quot;Desk&nbsp;Lamp&quot;  ') == "Desk Lamp"
    assert clean_text("<b>Desk</b>   Lamp") == "Desk Lamp"
    assert clean_text("Desk Lamp (White)") == "Desk Lamp (White)"
    assert clean_text(None) == ""


def test_clean_text_bounds_length_on_word_boundary():
    text = clean_text("word " * 50, max_len=20)
    assert text == "word word word word"


@pytest.mark.parametrize(
    "raw,expected",
    [
        (" #od 1234 5678 ", "OD12345678"),
        ("123-4567890-1234567", "123-4567890-1234567"),
        ("#", None),
        (None, None),
    ],
)
def test_normalize_reference(raw, expected):
    """Whitespace and a leading '#' go; case is folded; separators stay."""
    assert normalize_reference(raw) == expected


class TestIdentity:
    def test_key_is_sha256_of_platform_reference_user(self):
        identity = compute_identity("amazon", "123-4567890-1234567", "user-1")
        expected = hashlib.sha256(b"amazon-123-4567890-1234567-user-1").hexdigest()
        assert identity.key == expected
        assert identity.kind == "order"
        assert identity.reference == "123-4567890-1234567"

    def test_key_is_stable_across_spellings(self):
        """Case and '#' differences in the reference or platform do not split identities."""
        a = compute_identity("Amazon", "#123-4567890-1234567", "user-1")
        b = compute_identity("amazon", "123-4567890-1234567", "user-1")
        assert a.key == b.key

    def test_users_never_share_identities(self):
        a = compute_identity("amazon", "123-4567890-1234567", "user-1")
        b = compute_identity("amazon", "123-4567890-1234567", "user-2")
        assert a.key != b.key

    def test_empty_reference_raises(self):
        with pytest.raises(ValueError):
            compute_identity("amazon", "  ", "user-1")

    def test_one_identity_per_reference(self, fragment_factory):
        """Order identity first, then tracking identity."""
        fragment = fragment_factory(tracking_ref="TRK99")
        identities = identities_for(fragment, "user-1")
        assert [i.kind for i in identities] == ["order", "tracking"]
        assert identities[1].reference == "TRK99"

    def test_tracking_only_fragment(self, fragment_factory):
        fragment = fragment_factory(order_ref=None, tracking_ref="TRK99")
        identities = identities_for(fragment, "user-1")
        assert [i.kind for i in identities] == ["tracking"]


@pytest.mark.parametrize(
    "name,expected",
    [
        ("The Desk Lamp (Pack of 2)", "desk lamp 2"),
        ("boAt Rockerz 450 Headphones", "boat rockerz 450 headphones"),
        ("Desk&amp;Lamp", "desk lamp"),
        (None, ""),
    ],
)
def test_product_key(name, expected):
    """Lowercase alphanumeric tokens with stop words removed."""
    assert product_key(name) == expected
