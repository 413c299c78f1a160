"""
models.py
----------
Batch job models.

- ProcessingOptions: caller-supplied knobs for one scan.
- SearchQuery: the candidate-message window, fixed when the job starts so
  every continuation re-runs the same query.
- JobResult: one processed message inside a job.
- ProcessingJob: the unit of resumable work. Only the BatchJobController
  mutates it; the job store persists it between invocations.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from core.models import ClassifiedRecord, Kind, from_iso, to_iso


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PARTIAL = "PARTIAL"          # Checkpointed, waiting for a continuation trigger
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PARTIAL)


@dataclass
class DateRange:
    start: datetime
    end: datetime | None = None


@dataclass
class ProcessingOptions:
    """Unset fields fall back to the batch_processing block of config.yaml."""
    max_emails: int | None = None
    confidence_threshold: float | None = None
    auto_save: bool = False
    date_range: DateRange | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_emails": self.max_emails,
            "confidence_threshold": self.confidence_threshold,
            "auto_save": self.auto_save,
            "date_range": (
                {"start": to_iso(self.date_range.start), "end": to_iso(self.date_range.end)}
                if self.date_range else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "ProcessingOptions":
        data = data or {}
        date_range = data.get("date_range")
        return cls(
            max_emails=data.get("max_emails"),
            confidence_threshold=data.get("confidence_threshold"),
            auto_save=bool(data.get("auto_save", False)),
            date_range=(
                DateRange(start=from_iso(date_range["start"]), end=from_iso(date_range.get("end")))
                if date_range else None
            ),
        )


@dataclass(frozen=True)
class SearchQuery:
    """Received-time window for candidate messages. Either bound may be open."""
    start: datetime | None = None
    end: datetime | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {"start": to_iso(self.start), "end": to_iso(self.end)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "SearchQuery":
        data = data or {}
        return cls(start=from_iso(data.get("start")), end=from_iso(data.get("end")))


@dataclass
class JobResult:
    """Outcome of one message within a job."""

    email_id: str
    success: bool
    kind: Kind | None = None
    confidence: float = 0.0
    amount: Decimal | None = None
    currency: str | None = None
    merchant: str | None = None
    service_name: str | None = None
    transaction_id: str | None = None
    subscription_id: str | None = None
    error: str = ""
    record: ClassifiedRecord | None = None

    @classmethod
    def from_record(cls, record: ClassifiedRecord) -> "JobResult":
        result = record.result
        payload = result.payload
        return cls(
            email_id=record.message_id,
            success=result.success,
            kind=record.kind,
            confidence=result.confidence,
            amount=payload.amount if payload else None,
            currency=payload.currency if payload else None,
            merchant=payload.merchant if payload else None,
            service_name=payload.service_name if payload else None,
            error="; ".join(result.errors),
            record=record,
        )

    @classmethod
    def failed(cls, email_id: str, error: str) -> "JobResult":
        return cls(email_id=email_id, success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email_id": self.email_id,
            "success": self.success,
            "kind": self.kind.value if self.kind else None,
            "confidence": self.confidence,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "merchant": self.merchant,
            "service_name": self.service_name,
            "transaction_id": self.transaction_id,
            "subscription_id": self.subscription_id,
            "error": self.error,
            "record": self.record.to_dict() if self.record else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobResult":
        return cls(
            email_id=data["email_id"],
            success=data["success"],
            kind=Kind(data["kind"]) if data.get("kind") else None,
            confidence=data.get("confidence", 0.0),
            amount=Decimal(data["amount"]) if data.get("amount") is not None else None,
            currency=data.get("currency"),
            merchant=data.get("merchant"),
            service_name=data.get("service_name"),
            transaction_id=data.get("transaction_id"),
            subscription_id=data.get("subscription_id"),
            error=data.get("error", ""),
            record=ClassifiedRecord.from_dict(data["record"]) if data.get("record") else None,
        )


@dataclass
class ProcessingJob:
    """
    One resumable scan.

    `cursor` is the index of the next unprocessed message in the query's
    ordered candidate list. It only moves forward, one committed message
    at a time, so processed_emails == cursor for every job.
    """

    id: str
    user_id: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0                       # 0-100
    total_emails: int = 0
    processed_emails: int = 0
    cursor: int = 0
    results: List[JobResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    options: ProcessingOptions = field(default_factory=ProcessingOptions)
    query: SearchQuery = field(default_factory=SearchQuery)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def records(self) -> List[ClassifiedRecord]:
        return [r.record for r in self.results if r.record is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "progress": self.progress,
            "total_emails": self.total_emails,
            "processed_emails": self.processed_emails,
            "cursor": self.cursor,
            "results": [r.to_dict() for r in self.results],
            "errors": list(self.errors),
            "options": self.options.to_dict(),
            "query": self.query.to_dict(),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingJob":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            status=JobStatus(data["status"]),
            progress=data.get("progress", 0),
            total_emails=data.get("total_emails", 0),
            processed_emails=data.get("processed_emails", 0),
            cursor=data.get("cursor", 0),
            results=[JobResult.from_dict(r) for r in data.get("results", [])],
            errors=list(data.get("errors", [])),
            options=ProcessingOptions.from_dict(data.get("options")),
            query=SearchQuery.from_dict(data.get("query")),
            created_at=from_iso(data["created_at"]),
            updated_at=from_iso(data["updated_at"]),
            completed_at=from_iso(data.get("completed_at")),
        )
