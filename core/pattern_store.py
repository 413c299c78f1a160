"""
pattern_store.py
-----------------
Pattern store lookup layer.

Loads the subscription, issuer and generic-fallback tables from
config.yaml and compiles them into immutable, ordered signature objects.
Table order is significant: the classifier walks each table top to bottom
and the first matching signature wins.

Pattern updates happen in config.yaml, no code changes required. Tests
can build a PatternStore from their own tables with `from_tables()`.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from config.config_loader import get_pattern_tables
from core.models import Kind


_FLAGS = re.IGNORECASE


@dataclass(frozen=True)
class AmountRule:
    """A regex whose `amount_group` captures the numeric literal."""
    regex: re.Pattern
    amount_group: int = 1


@dataclass(frozen=True)
class SampleMessage:
    """A known-good message shipped with a signature, used by the accuracy harness."""
    subject: str
    sender: str
    body: str
    expected: Dict[str, str]


@dataclass(frozen=True)
class Signature:
    """
    One service or issuer signature.

    A message matches when any sender rule AND any subject rule match.
    """

    name: str                                # Service name or issuer name
    kind: Kind                               # SUBSCRIPTION or TRANSACTION
    sender_rules: Tuple[re.Pattern, ...]
    subject_rules: Tuple[re.Pattern, ...]
    amount_rules: Tuple[AmountRule, ...]
    merchant_rules: Tuple[re.Pattern, ...]
    confidence: float
    billing_cycle: Optional[str] = None
    date_rules: Tuple[re.Pattern, ...] = ()
    samples: Tuple[SampleMessage, ...] = field(default_factory=tuple)

    @property
    def service_name(self) -> Optional[str]:
        return self.name if self.kind == Kind.SUBSCRIPTION else None

    @property
    def issuer(self) -> Optional[str]:
        return self.name if self.kind == Kind.TRANSACTION else None

    def matches(self, sender: str, subject: str) -> bool:
        if not any(rule.search(sender or "") for rule in self.sender_rules):
            return False
        return any(rule.search(subject or "") for rule in self.subject_rules)


class PatternStore:
    """
    Immutable container for the three pattern tables.

    Built once and injected into the classifier. Thread-safe for reads.
    """

    def __init__(
        self,
        subscription_signatures: Tuple[Signature, ...],
        issuer_signatures: Tuple[Signature, ...],
        generic_amount_rules: Tuple[AmountRule, ...],
        generic_merchant_rules: Tuple[re.Pattern, ...],
        generic_merchant_min_length: int = 3,
    ):
        self.subscription_signatures = tuple(subscription_signatures)
        self.issuer_signatures = tuple(issuer_signatures)
        self.generic_amount_rules = tuple(generic_amount_rules)
        self.generic_merchant_rules = tuple(generic_merchant_rules)
        self.generic_merchant_min_length = generic_merchant_min_length

    @classmethod
    def default(cls) -> "PatternStore":
        """Builds the store from config.yaml."""
        return cls.from_tables(get_pattern_tables())

    @classmethod
    def from_tables(cls, tables: Dict[str, Any]) -> "PatternStore":
        """Compiles raw config tables (see config.yaml layout) into a store."""
        return cls(
            subscription_signatures=tuple(
                _build_signature(entry, entry["service_name"], Kind.SUBSCRIPTION)
                for entry in tables.get("subscription_patterns", [])
            ),
            issuer_signatures=tuple(
                _build_signature(entry, entry["issuer"], Kind.TRANSACTION)
                for entry in tables.get("issuer_patterns", [])
            ),
            generic_amount_rules=tuple(_build_amount_rule(r) for r in tables.get("generic_amount_rules", [])),
            generic_merchant_rules=tuple(re.compile(r, _FLAGS) for r in tables.get("generic_merchant_rules", [])),
            generic_merchant_min_length=tables.get("generic_merchant_min_length", 3),
        )

    def get_signature(self, name: str) -> Optional[Signature]:
        """Looks up a subscription or issuer signature by name."""
        for signature in self.subscription_signatures + self.issuer_signatures:
            if signature.name == name:
                return signature
        return None

    def all_signatures(self) -> Tuple[Signature, ...]:
        return self.subscription_signatures + self.issuer_signatures

    def __len__(self) -> int:
        return len(self.subscription_signatures) + len(self.issuer_signatures)

    def __repr__(self) -> str:
        return (
            f"PatternStore(subscriptions={[s.name for s in self.subscription_signatures]}, "
            f"issuers={[s.name for s in self.issuer_signatures]})"
        )


def _build_amount_rule(entry: Any) -> AmountRule:
    if isinstance(entry, str):
        return AmountRule(regex=re.compile(entry, _FLAGS))
    return AmountRule(regex=re.compile(entry["regex"], _FLAGS), amount_group=entry.get("amount_group", 1))


def _build_signature(entry: Dict[str, Any], name: str, kind: Kind) -> Signature:
    return Signature(
        name=name,
        kind=kind,
        sender_rules=tuple(re.compile(r, _FLAGS) for r in entry["sender_rules"]),
        subject_rules=tuple(re.compile(r, _FLAGS) for r in entry["subject_rules"]),
        amount_rules=tuple(_build_amount_rule(r) for r in entry["amount_rules"]),
        merchant_rules=tuple(re.compile(r, _FLAGS) for r in entry.get("merchant_rules", [])),
        confidence=float(entry["confidence"]),
        billing_cycle=entry.get("billing_cycle"),
        date_rules=tuple(re.compile(r, _FLAGS) for r in entry.get("date_rules", [])),
        samples=tuple(
            SampleMessage(
                subject=s["subject"],
                sender=s["sender"],
                body=s["body"],
                expected={k: str(v) for k, v in s.get("expected", {}).items()},
            )
            for s in entry.get("samples") or []
        ),
    )
