"""
base_pass.py
-------------
Abstract base class for all classification passes.

Each concrete pass (subscription signatures, issuer signatures, generic
fallback) inherits from this. Shared extraction logic (running amount
rules, detecting currency from the matched substring, normalizing the
merchant) lives here so it's never duplicated.

Concrete passes only need to implement:
    - run(): returns a ClassificationResult for one message
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Iterable, List, Tuple

from core.exceptions import AmountParseError
from core.models import ClassificationResult, ExtractedPayload, InboundMessage
from core.normalizer import FieldNormalizer
from core.pattern_store import AmountRule, PatternStore

logger = logging.getLogger(__name__)


class BaseClassificationPass(ABC):
    """
    Abstract base for classification passes.

    A pass never raises for message content problems. It returns either a
    successful ClassificationResult or ClassificationResult.failure() with
    the reasons collected along the way.
    """

    name: str = "base"

    def __init__(self, pattern_store: PatternStore, normalizer: FieldNormalizer, config: dict):
        self.pattern_store = pattern_store
        self.normalizer = normalizer
        self.config = config
        self.merchant_max_length: int = config["merchant_max_length"]
        self.unknown_merchant: str = config["unknown_merchant"]

    # -------------------------------------------------------------------------
    # ABSTRACT METHODS: implement in each pass
    # -------------------------------------------------------------------------

    @abstractmethod
    def run(self, message: InboundMessage) -> ClassificationResult:
        """Classifies one message with this pass's rules."""
        ...

    # -------------------------------------------------------------------------
    # SHARED HELPERS
    # -------------------------------------------------------------------------

    def _extract_first_amount(self, content: str, rules: Iterable[AmountRule]) -> Tuple[Decimal, str] | None:
        """
        Tries each rule in order against the first match in `content`.
        The first rule yielding a positive amount wins.
        """
        for rule in rules:
            match = rule.regex.search(content)
            if match is None:
                continue
            parsed = self._parse_match(match, rule.amount_group)
            if parsed is not None:
                return parsed
        return None

    def _extract_any_amount(self, content: str, rules: Iterable[AmountRule]) -> Tuple[Decimal, str] | None:
        """Like _extract_first_amount, but scans every match of each rule."""
        for rule in rules:
            for match in rule.regex.finditer(content):
                parsed = self._parse_match(match, rule.amount_group)
                if parsed is not None:
                    return parsed
        return None

    def _parse_match(self, match, amount_group: int) -> Tuple[Decimal, str] | None:
        try:
            literal = match.group(amount_group)
        except IndexError:
            logger.debug(f"Amount rule {match.re.pattern!r} has no group {amount_group}")
            return None

        currency = self.normalizer.detect_currency(match.group(0))
        try:
            amount = self.normalizer.normalize_amount(literal, currency)
        except AmountParseError as e:
            logger.debug(f"Amount extraction error: {e}")
            return None

        if amount <= 0:
            return None
        return amount, currency

    def _truncate(self, merchant: str) -> str:
        return merchant[: self.merchant_max_length]

    def _build_payload(self, amount: Decimal, currency: str, merchant_raw: str, **extra) -> ExtractedPayload:
        merchant, merchant_normalized = self.normalizer.normalize_merchant(merchant_raw)
        return ExtractedPayload(
            amount=amount,
            currency=currency,
            merchant=merchant,
            merchant_normalized=merchant_normalized,
            merchant_raw=merchant_raw,
            **extra,
        )

    @staticmethod
    def _no_match(errors: List[str]) -> ClassificationResult:
        return ClassificationResult.failure(errors)
