"""
pattern_passes.py
------------------
Concrete classification passes. One class per pass, run by the
MessageClassifier in this order:

    1. SubscriptionPatternPass: known subscription services (kind=SUBSCRIPTION)
    2. IssuerPatternPass:       card-issuer usage notices (kind=TRANSACTION)
    3. GenericFallbackPass:     symbol/suffix amount rules, low confidence

Signature passes follow a consistent pattern:

    1. Gate: sender rule AND subject rule must match, else try the next signature.
    2. Amount: amount rules in order against subject + body; the first
       positive parse wins. No amount → record an error, try the next signature.
    3. Merchant: merchant rules in order, with a per-pass fallback.

Rule tables come from config.yaml; only the extraction structure lives in code.
"""

import logging
import re
from abc import abstractmethod
from typing import List

from classifiers.base_pass import BaseClassificationPass
from core.models import ClassificationResult, ExtractedPayload, InboundMessage, Kind
from core.normalizer import normalize_ymd
from core.pattern_store import Signature

logger = logging.getLogger(__name__)


_SENDER_DOMAIN = re.compile(r"@([^.]+)")


class SignaturePass(BaseClassificationPass):
    """Shared gate / extract loop for the two signature tables."""

    kind: Kind = Kind.UNKNOWN

    @abstractmethod
    def signatures(self) -> tuple:
        """The signature table this pass walks, in priority order."""
        ...

    def run(self, message: InboundMessage) -> ClassificationResult:
        content = f"{message.subject} {message.body}"
        errors: List[str] = []

        for signature in self.signatures():
            try:
                if not signature.matches(message.sender, message.subject):
                    continue

                logger.debug(f"{signature.name}: pattern matched, extracting data")
                amount = self._extract_first_amount(content, signature.amount_rules)
                if amount is None:
                    errors.append(f"{signature.name}: amount extraction failed")
                    continue

                payload = self._extract_payload(content, signature, *amount)
            except Exception as e:
                errors.append(f"{signature.name}: {e}")
                continue

            return ClassificationResult(
                success=True,
                confidence=signature.confidence,
                kind=self.kind,
                payload=payload,
                matched_pattern=signature.name,
            )

        return self._no_match(errors)

    @abstractmethod
    def _extract_payload(self, content: str, signature: Signature, amount, currency) -> ExtractedPayload:
        ...


# =============================================================================
# SUBSCRIPTION SIGNATURES
# =============================================================================
class SubscriptionPatternPass(SignaturePass):
    """
    Matches billing mail from known subscription services.

    Merchant is the whole text matched by a merchant rule (e.g. "Netflix"),
    falling back to the service name.
    """

    name = "subscription"
    kind = Kind.SUBSCRIPTION

    def signatures(self) -> tuple:
        return self.pattern_store.subscription_signatures

    def _extract_payload(self, content, signature, amount, currency) -> ExtractedPayload:
        merchant_raw = signature.name
        for rule in signature.merchant_rules:
            match = rule.search(content)
            if match and match.group(0).strip():
                merchant_raw = match.group(0).strip()
                break

        return self._build_payload(
            amount,
            currency,
            merchant_raw,
            service_name=signature.name,
            billing_cycle=signature.billing_cycle,
        )


# =============================================================================
# CARD ISSUER SIGNATURES
# =============================================================================
class IssuerPatternPass(SignaturePass):
    """
    Matches card-usage notices from known issuers.

    Merchant rules capture group 1 when present. The occurrence date, when
    the notice states one, is kept as "YYYY-MM-DD" or "YYYY-MM-DD HH:MM".
    """

    name = "issuer"
    kind = Kind.TRANSACTION

    def signatures(self) -> tuple:
        return self.pattern_store.issuer_signatures

    def _extract_payload(self, content, signature, amount, currency) -> ExtractedPayload:
        merchant_raw = self.unknown_merchant
        for rule in signature.merchant_rules:
            match = rule.search(content)
            if match:
                captured = (match.group(1) if match.groups() and match.group(1) else match.group(0)).strip()
                if captured:
                    merchant_raw = self._truncate(captured)
                    break

        return self._build_payload(
            amount,
            currency,
            merchant_raw,
            issuer=signature.name,
            occurred_at=self._extract_date(content, signature),
        )

    @staticmethod
    def _extract_date(content: str, signature: Signature) -> str | None:
        for rule in signature.date_rules:
            match = rule.search(content)
            if not match:
                continue
            date = normalize_ymd(match.group(1))
            time_of_day = match.group(2) if rule.groups >= 2 else None
            return f"{date} {time_of_day}" if time_of_day else date
        return None


# =============================================================================
# GENERIC FALLBACK
# =============================================================================
class GenericFallbackPass(BaseClassificationPass):
    """
    Best-effort extraction for senders with no signature.

    Scans every match of the generic amount rules across subject, body and
    snippet. A hit is low confidence and left as kind=UNKNOWN so the
    refiner can promote it later. No amount at all is an outright failure.
    """

    name = "generic"

    def __init__(self, pattern_store, normalizer, config):
        super().__init__(pattern_store, normalizer, config)
        self.confidence: float = config["generic_confidence"]

    def run(self, message: InboundMessage) -> ClassificationResult:
        content = f"{message.subject} {message.body} {message.snippet or ''}"

        try:
            amount = self._extract_any_amount(content, self.pattern_store.generic_amount_rules)
            if amount is None:
                return self._no_match(["Generic: amount not found"])

            merchant_raw = self._extract_merchant(content, message.sender)
            payload = self._build_payload(amount[0], amount[1], merchant_raw)
        except Exception as e:
            return self._no_match([f"Generic parsing failed: {e}"])

        return ClassificationResult(
            success=True,
            confidence=self.confidence,
            kind=Kind.UNKNOWN,
            payload=payload,
            matched_pattern=self.name,
        )

    def _extract_merchant(self, content: str, sender: str) -> str:
        min_length = self.pattern_store.generic_merchant_min_length

        # Labelled fields and store-name suffixes
        for rule in self.pattern_store.generic_merchant_rules:
            match = rule.search(content)
            if match:
                captured = (match.group(1) if match.groups() and match.group(1) else match.group(0)).strip()
                if len(captured) >= min_length:
                    return self._truncate(captured)

        # Last resort: first label of the sender's domain
        domain_match = _SENDER_DOMAIN.search(sender or "")
        if domain_match:
            domain = re.sub(r"[-_]", " ", domain_match.group(1))
            if len(domain) >= min_length:
                return self._truncate(domain[0].upper() + domain[1:])

        return self.unknown_merchant


def get_all_passes(pattern_store, normalizer, config) -> List[BaseClassificationPass]:
    """Returns the passes in priority order."""
    return [
        SubscriptionPatternPass(pattern_store, normalizer, config),
        IssuerPatternPass(pattern_store, normalizer, config),
        GenericFallbackPass(pattern_store, normalizer, config),
    ]
