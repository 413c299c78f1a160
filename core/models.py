"""
models.py
----------
Core domain models. These are the typed contracts between engine layers.

- InboundMessage: A fetched notification email. Read-only input.

- ClassificationResult: Output of the message classifier. Tagged by Kind,
  carries an ExtractedPayload only when extraction succeeded.

- ClassifiedRecord: A message joined with its classification. This is the
  unit the subscription refiner mutates and the monthly aggregator folds.

- RefinementDecision / MonthlySummary: Outputs of the cross-record passes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


UNKNOWN_ISSUER = "Unknown"


class Kind(str, Enum):
    """Classification outcome category."""
    SUBSCRIPTION = "SUBSCRIPTION"
    TRANSACTION = "TRANSACTION"
    UNKNOWN = "UNKNOWN"


class Category(str, Enum):
    """Fixed spending categories used by the monthly aggregation."""
    TRANSPORT = "Transport"
    FOOD = "Food"
    SUBSCRIPTION = "Subscription"
    OTHER = "Other"


class ErrorType(str, Enum):
    """Closed error taxonomy, grouped by domain."""

    # Network / API
    API_RATE_LIMIT = "API_RATE_LIMIT"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    UPSTREAM_API_ERROR = "UPSTREAM_API_ERROR"

    # Extraction
    AMOUNT_EXTRACTION_FAILED = "AMOUNT_EXTRACTION_FAILED"
    MERCHANT_PARSING_FAILED = "MERCHANT_PARSING_FAILED"
    UNKNOWN_EMAIL_FORMAT = "UNKNOWN_EMAIL_FORMAT"
    MULTIPLE_AMOUNTS_FOUND = "MULTIPLE_AMOUNTS_FOUND"
    PATTERN_MATCH_FAILED = "PATTERN_MATCH_FAILED"

    # Validation
    INVALID_AMOUNT_FORMAT = "INVALID_AMOUNT_FORMAT"
    UNSUPPORTED_CURRENCY = "UNSUPPORTED_CURRENCY"
    INVALID_DATE_FORMAT = "INVALID_DATE_FORMAT"
    MISSING_REQUIRED_FIELDS = "MISSING_REQUIRED_FIELDS"

    # Persistence
    DATABASE_SAVE_FAILED = "DATABASE_SAVE_FAILED"
    DATABASE_CONNECTION_FAILED = "DATABASE_CONNECTION_FAILED"
    DUPLICATE_RECORD = "DUPLICATE_RECORD"

    # Execution
    PROCESSING_TIMEOUT = "PROCESSING_TIMEOUT"
    RESOURCE_LIMIT_EXCEEDED = "RESOURCE_LIMIT_EXCEEDED"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # fromisoformat only accepts a trailing Z from 3.11 on
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as local time, so mixed inputs compare safely."""
    if value is None or value.tzinfo is not None:
        return value
    return value.astimezone()


@dataclass(frozen=True)
class InboundMessage:
    """A notification email as returned by the message source."""
    id: str
    subject: str
    sender: str
    received_at: Optional[datetime]
    body: str
    snippet: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject": self.subject,
            "sender": self.sender,
            "received_at": to_iso(self.received_at),
            "body": self.body,
            "snippet": self.snippet,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboundMessage":
        return cls(
            id=str(data["id"]),
            subject=data.get("subject", ""),
            sender=data.get("sender", ""),
            received_at=from_iso(data.get("received_at")),
            body=data.get("body", ""),
            snippet=data.get("snippet", ""),
        )


@dataclass
class ExtractedPayload:
    """Fields extracted from one message. Amount is in the currency's major unit."""

    amount: Decimal
    currency: str
    merchant: str                    # Cleaned, display form
    merchant_normalized: str         # Lower-cased grouping form
    merchant_raw: str = ""           # Text as captured from the message
    service_name: Optional[str] = None
    billing_cycle: Optional[str] = None
    issuer: Optional[str] = None
    occurred_at: Optional[str] = None  # "YYYY-MM-DD HH:MM" when the message states it

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": str(self.amount),
            "currency": self.currency,
            "merchant": self.merchant,
            "merchant_normalized": self.merchant_normalized,
            "merchant_raw": self.merchant_raw,
            "service_name": self.service_name,
            "billing_cycle": self.billing_cycle,
            "issuer": self.issuer,
            "occurred_at": self.occurred_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractedPayload":
        return cls(
            amount=Decimal(data["amount"]),
            currency=data["currency"],
            merchant=data["merchant"],
            merchant_normalized=data["merchant_normalized"],
            merchant_raw=data.get("merchant_raw", ""),
            service_name=data.get("service_name"),
            billing_cycle=data.get("billing_cycle"),
            issuer=data.get("issuer"),
            occurred_at=data.get("occurred_at"),
        )


@dataclass
class ClassificationResult:
    """
    Classifier output, one per message.

    Invariant: success implies payload is present, payload.amount > 0 and
    payload.currency is non-empty. Use ClassificationResult.failure() for
    every unsuccessful outcome so the invariant holds by construction.
    """

    success: bool
    confidence: float
    kind: Kind
    payload: Optional[ExtractedPayload] = None
    errors: List[str] = field(default_factory=list)
    matched_pattern: str = "none"
    processing_ms: float = 0.0

    def __post_init__(self):
        if self.success:
            if self.payload is None:
                raise ValueError("Successful classification requires a payload")
            if not self.payload.amount > 0:
                raise ValueError(f"Successful classification requires amount > 0, got {self.payload.amount}")
            if not self.payload.currency:
                raise ValueError("Successful classification requires a currency")

    @classmethod
    def failure(cls, errors: List[str], confidence: float = 0.0, matched_pattern: str = "none") -> "ClassificationResult":
        return cls(
            success=False,
            confidence=confidence,
            kind=Kind.UNKNOWN,
            payload=None,
            errors=list(errors),
            matched_pattern=matched_pattern,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "confidence": self.confidence,
            "kind": self.kind.value,
            "payload": self.payload.to_dict() if self.payload else None,
            "errors": list(self.errors),
            "matched_pattern": self.matched_pattern,
            "processing_ms": self.processing_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationResult":
        payload = data.get("payload")
        return cls(
            success=data["success"],
            confidence=data["confidence"],
            kind=Kind(data["kind"]),
            payload=ExtractedPayload.from_dict(payload) if payload else None,
            errors=list(data.get("errors", [])),
            matched_pattern=data.get("matched_pattern", "none"),
            processing_ms=data.get("processing_ms", 0.0),
        )


@dataclass
class ClassifiedRecord:
    """
    One message plus its classification.

    `kind` starts as the classifier's kind and may be promoted to
    SUBSCRIPTION by the refiner. `is_subscription_candidate` is the
    preliminary flag set at classification time and by promotion.
    """

    message_id: str
    received_at: Optional[datetime]
    sender: str
    subject: str
    result: ClassificationResult
    kind: Kind
    is_subscription_candidate: bool = False

    @classmethod
    def from_classification(
        cls, message: InboundMessage, result: ClassificationResult, subscription_candidate: bool = False
    ) -> "ClassifiedRecord":
        return cls(
            message_id=message.id,
            received_at=message.received_at,
            sender=message.sender,
            subject=message.subject,
            result=result,
            kind=result.kind,
            is_subscription_candidate=subscription_candidate,
        )

    @property
    def success(self) -> bool:
        return self.result.success

    @property
    def amount(self) -> Optional[Decimal]:
        return self.result.payload.amount if self.result.payload else None

    @property
    def currency(self) -> Optional[str]:
        return self.result.payload.currency if self.result.payload else None

    @property
    def issuer(self) -> str:
        payload = self.result.payload
        return (payload.issuer if payload and payload.issuer else UNKNOWN_ISSUER)

    @property
    def merchant(self) -> str:
        return self.result.payload.merchant if self.result.payload else ""

    @property
    def merchant_normalized(self) -> str:
        return self.result.payload.merchant_normalized if self.result.payload else ""

    @property
    def merchant_raw(self) -> str:
        return self.result.payload.merchant_raw if self.result.payload else ""

    @property
    def occurred_at(self) -> Optional[str]:
        return self.result.payload.occurred_at if self.result.payload else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "received_at": to_iso(self.received_at),
            "sender": self.sender,
            "subject": self.subject,
            "result": self.result.to_dict(),
            "kind": self.kind.value,
            "is_subscription_candidate": self.is_subscription_candidate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassifiedRecord":
        return cls(
            message_id=data["message_id"],
            received_at=from_iso(data.get("received_at")),
            sender=data.get("sender", ""),
            subject=data.get("subject", ""),
            result=ClassificationResult.from_dict(data["result"]),
            kind=Kind(data["kind"]),
            is_subscription_candidate=data.get("is_subscription_candidate", False),
        )


@dataclass
class RefinementDecision:
    """Per-group outcome of the subscription refinement pass."""

    issuer: str
    merchant_key: str
    member_count: int
    mean_amount: float
    std_amount: float                # Population standard deviation
    distinct_months: int             # Empty month keys excluded
    threshold: float
    overseas: bool
    promoted: bool


@dataclass
class MonthlySummary:
    """Per (month, issuer) spending report row."""

    month: str                       # "YYYY-MM", or "" when no date could be derived
    issuer: str
    total: Decimal = Decimal("0")
    by_category: Dict[Category, Decimal] = field(
        default_factory=lambda: {category: Decimal("0") for category in Category}
    )
    transaction_count: int = 0
