"""
Platform rule registry.

Loads config/platform_rules.yaml, validates it with pydantic, and hands out
one PlatformRules per vendor. Platform entries inherit any section they omit
from the `generic` entry, so a new vendor can be added with nothing but a
sender signal list.
"""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError, field_validator

from orderq.config import PLATFORM_RULES_PATH
from orderq.observability.logging import get_logger
from orderq.orders.errors import RuleConfigError
from orderq.orders.platform_data import PATTERN_MACROS
from orderq.orders.types import GENERIC_PLATFORM

logger = get_logger(__name__)

_FLAGS = re.IGNORECASE | re.MULTILINE


def expand_macros(pattern: str) -> str:
    for macro, replacement in PATTERN_MACROS.items():
        pattern = pattern.replace(macro, replacement)
    return pattern


def _compile(pattern: str, flags: int = _FLAGS) -> re.Pattern[str]:
    try:
        return re.compile(expand_macros(pattern), flags)
    except re.error as e:
        raise ValueError(f"invalid regex {pattern!r}: {e}") from e


class PatternRule(BaseModel):
    """One extraction strategy: a regex with a priority and a source."""

    model_config = ConfigDict(extra="forbid")

    label: str
    pattern: str
    priority: int = 50
    source: Literal["subject", "body", "any"] = "body"
    min: float | None = None
    max: float | None = None

    _regex: re.Pattern[str] | None = PrivateAttr(default=None)

    @field_validator("pattern")
    @classmethod
    def pattern_compiles(cls, v: str) -> str:
        # Extraction reads group 1 (or the named groups), never the whole match
        if _compile(v).groups < 1:
            raise ValueError(f"pattern {v!r} has no capture group")
        return v

    @property
    def regex(self) -> re.Pattern[str]:
        if self._regex is None:
            self._regex = _compile(self.pattern)
        return self._regex

    def applies_to(self, source: str) -> bool:
        return self.source == "any" or self.source == source


class ReferenceRules(BaseModel):
    """Order or tracking reference strategies plus the strict format check."""

    model_config = ConfigDict(extra="forbid")

    patterns: list[PatternRule] = Field(default_factory=list)
    format: str | None = None
    require_digit: bool = False
    placeholders: list[str] = Field(default_factory=list)

    _format_regex: re.Pattern[str] | None = PrivateAttr(default=None)

    @field_validator("format")
    @classmethod
    def format_compiles(cls, v: str | None) -> str | None:
        if v is not None:
            _compile(v)
        return v

    def matches_format(self, value: str) -> bool:
        if self.format is None:
            return True
        if self._format_regex is None:
            self._format_regex = _compile(self.format)
        return self._format_regex.fullmatch(value) is not None


class AmountRules(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategies: list[PatternRule] = Field(default_factory=list)
    min: float = 0
    max: float = 1_000_000
    low_priority_threshold: int = 40
    low_priority_min: float = 25


class ProductRules(BaseModel):
    model_config = ConfigDict(extra="forbid")

    markup_selectors: list[str] = Field(default_factory=list)
    context_patterns: list[PatternRule] = Field(default_factory=list)
    subject_patterns: list[PatternRule] = Field(default_factory=list)
    strip_patterns: list[str] = Field(default_factory=list)
    keyword_patterns: list[PatternRule] = Field(default_factory=list)
    garbage_terms: list[str] = Field(default_factory=list)

    _strip_regexes: list[re.Pattern[str]] | None = PrivateAttr(default=None)

    @field_validator("strip_patterns")
    @classmethod
    def strip_patterns_compile(cls, v: list[str]) -> list[str]:
        for pattern in v:
            _compile(pattern)
        return v

    @property
    def strip_regexes(self) -> list[re.Pattern[str]]:
        if self._strip_regexes is None:
            self._strip_regexes = [_compile(p) for p in self.strip_patterns]
        return self._strip_regexes


class PlatformRules(BaseModel):
    """Everything the shared extraction algorithm needs to know about one vendor."""

    model_config = ConfigDict(extra="forbid")

    id: str
    display_name: str
    sender_signals: list[str] = Field(default_factory=list)
    subject_signals: list[str] = Field(default_factory=list)
    promo_keywords: list[str] = Field(default_factory=list)
    order_ref: ReferenceRules = Field(default_factory=ReferenceRules)
    tracking_ref: ReferenceRules = Field(default_factory=ReferenceRules)
    amount: AmountRules = Field(default_factory=AmountRules)
    product: ProductRules = Field(default_factory=ProductRules)
    items: list[PatternRule] = Field(default_factory=list)
    order_date: list[PatternRule] = Field(default_factory=list)
    location: list[PatternRule] = Field(default_factory=list)

    @field_validator("sender_signals", "subject_signals", "promo_keywords")
    @classmethod
    def lowercase(cls, v: list[str]) -> list[str]:
        return [s.lower() for s in v]


class GenericGate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reference_patterns: list[str] = Field(default_factory=list)
    order_keywords: list[str] = Field(default_factory=list)

    _regexes: list[re.Pattern[str]] | None = PrivateAttr(default=None)

    @property
    def regexes(self) -> list[re.Pattern[str]]:
        # Case-sensitive: prefixed ids like OD... are upper case by format
        if self._regexes is None:
            self._regexes = [_compile(p, 0) for p in self.reference_patterns]
        return self._regexes


class RuleRegistry:
    """
    Registry mapping platform id to its rule table.

    Args:
        rules_path: YAML rule file. Defaults to ORDERQ_PLATFORM_RULES_PATH.
        data: Already-parsed rule data (used instead of the file when given).

    Raises:
        RuleConfigError: file missing, not YAML, or failing validation
    """

    def __init__(self, rules_path: Path | None = None, data: dict[str, Any] | None = None):
        if data is None:
            rules_path = rules_path or PLATFORM_RULES_PATH
            data = self._load_rules(rules_path)

        self.version: int = int(data.get("version", 1))
        self.promo_keywords: list[str] = [kw.lower() for kw in data.get("promo_keywords", [])]

        try:
            self.generic_gate = GenericGate(**(data.get("generic_gate") or {}))
            self._platforms = self._build_platforms(data.get("platforms") or {})
        except ValidationError as e:
            raise RuleConfigError(f"Invalid platform rules: {e}") from e

        logger.info(
            "RuleRegistry initialized: %d platforms, %d promo keywords",
            len(self._platforms) - (1 if GENERIC_PLATFORM in self._platforms else 0),
            len(self.promo_keywords),
        )

    @staticmethod
    def _load_rules(path: Path) -> dict[str, Any]:
        if not path.exists():
            raise RuleConfigError(f"Platform rules not found at {path}")
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RuleConfigError(f"Platform rules at {path} are not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise RuleConfigError(f"Platform rules at {path} must be a mapping")
        return data

    @staticmethod
    def _build_platforms(raw: dict[str, Any]) -> dict[str, PlatformRules]:
        base = dict(raw.get(GENERIC_PLATFORM) or {"display_name": "Online"})
        # Signal lists are never inherited: generic has no sender of its own
        inheritable = {
            k: v
            for k, v in base.items()
            if k not in ("display_name", "sender_signals", "subject_signals", "promo_keywords")
        }

        platforms: dict[str, PlatformRules] = {
            GENERIC_PLATFORM: PlatformRules(id=GENERIC_PLATFORM, **base),
        }
        for platform_id, section in raw.items():
            if platform_id == GENERIC_PLATFORM:
                continue
            merged = {**inheritable, **(section or {})}
            merged.setdefault("display_name", platform_id.title())
            platforms[platform_id] = PlatformRules(id=platform_id, **merged)
        return platforms

    def get(self, platform_id: str) -> PlatformRules:
        """Rules for a platform; unknown ids get the generic table."""
        return self._platforms.get(platform_id) or self._platforms[GENERIC_PLATFORM]

    def platforms(self) -> list[PlatformRules]:
        """Vendor platforms in file order, excluding the generic table."""
        return [p for pid, p in self._platforms.items() if pid != GENERIC_PLATFORM]

    def __contains__(self, platform_id: str) -> bool:
        return platform_id in self._platforms


@lru_cache(maxsize=1)
def get_default_registry() -> RuleRegistry:
    """Process-wide registry for the default rule file (read-only after load)."""
    return RuleRegistry()
