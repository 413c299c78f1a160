"""
error_manager.py
-----------------
Error classification, retry and statistics for the processing engine.

Every fallible collaborator call (message search, fetch, persistence) goes
through ErrorManager.handle_retryable_error(), so backoff policy and
retryability are decided in one place:

    1. Retryability: a fixed per-type mapping. Network / upstream /
       connection / timeout failures are retried, everything else is not.
    2. Severity: a fixed per-type mapping, CRITICAL raising an alert.
    3. Backoff: fixed delay schedule from config.yaml.

The read side (statistics, pattern analysis) never affects control flow.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, TypeVar

import pandas as pd

from config.config_loader import get_error_handling_config
from core.exceptions import ProcessingFailure
from core.models import ErrorType, InboundMessage, Severity

logger = logging.getLogger(__name__)

T = TypeVar("T")

ERROR_LOG_FAILED = "ERROR_LOG_FAILED"
_FIELD_LIMIT = 255


SEVERITY_BY_TYPE: Dict[ErrorType, Severity] = {
    # Whole-system impact
    ErrorType.AUTHENTICATION_FAILED: Severity.CRITICAL,
    ErrorType.DATABASE_CONNECTION_FAILED: Severity.CRITICAL,
    ErrorType.RESOURCE_LIMIT_EXCEEDED: Severity.CRITICAL,
    # Feature-level impact
    ErrorType.API_RATE_LIMIT: Severity.HIGH,
    ErrorType.UPSTREAM_API_ERROR: Severity.HIGH,
    ErrorType.DATABASE_SAVE_FAILED: Severity.HIGH,
    # Partial impact
    ErrorType.PROCESSING_TIMEOUT: Severity.MEDIUM,
    ErrorType.NETWORK_TIMEOUT: Severity.MEDIUM,
    ErrorType.MULTIPLE_AMOUNTS_FOUND: Severity.MEDIUM,
    # Single-message misses
    ErrorType.AMOUNT_EXTRACTION_FAILED: Severity.LOW,
    ErrorType.MERCHANT_PARSING_FAILED: Severity.LOW,
    ErrorType.UNKNOWN_EMAIL_FORMAT: Severity.LOW,
    ErrorType.PATTERN_MATCH_FAILED: Severity.LOW,
    ErrorType.INVALID_AMOUNT_FORMAT: Severity.LOW,
    ErrorType.UNSUPPORTED_CURRENCY: Severity.LOW,
    ErrorType.INVALID_DATE_FORMAT: Severity.LOW,
    ErrorType.MISSING_REQUIRED_FIELDS: Severity.LOW,
}

RETRYABLE_TYPES = frozenset({
    ErrorType.API_RATE_LIMIT,
    ErrorType.NETWORK_TIMEOUT,
    ErrorType.UPSTREAM_API_ERROR,
    ErrorType.DATABASE_CONNECTION_FAILED,
    ErrorType.PROCESSING_TIMEOUT,
})

RECOMMENDED_ACTIONS: Dict[ErrorType, str] = {
    ErrorType.API_RATE_LIMIT: "Reduce request frequency or check the API quota.",
    ErrorType.AMOUNT_EXTRACTION_FAILED: "Extend the amount rules in the pattern tables.",
    ErrorType.AUTHENTICATION_FAILED: "Reconnect the user's mail account.",
    ErrorType.DATABASE_SAVE_FAILED: "Check the record store connection and schema.",
    ErrorType.UPSTREAM_API_ERROR: "Check the mail provider's status and retry later.",
}
DEFAULT_ACTION = "Needs investigation."


def determine_severity(error_type: ErrorType) -> Severity:
    return SEVERITY_BY_TYPE.get(error_type, Severity.MEDIUM)


def is_retryable(error_type: ErrorType) -> bool:
    return error_type in RETRYABLE_TYPES


@dataclass
class ProcessingError:
    """One logged failure."""
    type: ErrorType
    message: str
    severity: Severity
    is_retryable: bool
    id: str = ""
    email_id: str | None = None
    email_subject: str | None = None
    email_sender: str | None = None
    context: Dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    occurred_at: datetime = field(default_factory=datetime.now)
    resolved_at: datetime | None = None
    user_id: str | None = None
    job_id: str | None = None


class InMemoryErrorStore:
    """Thread-safe error log. Stands in for the persistence collaborator."""

    def __init__(self):
        self._errors: Dict[str, ProcessingError] = {}
        self._lock = threading.Lock()

    def add(self, error: ProcessingError) -> str:
        with self._lock:
            error_id = error.id or str(uuid.uuid4())
            self._errors[error_id] = replace(error, id=error_id)
            return error_id

    def get(self, error_id: str) -> ProcessingError | None:
        with self._lock:
            return self._errors.get(error_id)

    def mark_resolved(self, error_id: str, resolved_at: datetime) -> bool:
        with self._lock:
            error = self._errors.get(error_id)
            if error is None:
                return False
            error.resolved_at = resolved_at
            return True

    def query(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> List[ProcessingError]:
        """Returns matching errors, most recent first."""
        with self._lock:
            errors = list(self._errors.values())
        if user_id is not None:
            errors = [e for e in errors if e.user_id == user_id]
        if start is not None:
            errors = [e for e in errors if e.occurred_at >= start]
        if end is not None:
            errors = [e for e in errors if e.occurred_at <= end]
        errors.sort(key=lambda e: e.occurred_at, reverse=True)
        return errors[:limit] if limit else errors

    def __len__(self) -> int:
        return len(self._errors)


class ErrorManager:
    """
    Classifies, logs and retries failures.

    Usage:
        errors = ErrorManager()
        ids = errors.handle_retryable_error(lambda: source.search(query, 200), ErrorType.UPSTREAM_API_ERROR)
    """

    def __init__(
        self,
        store: InMemoryErrorStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
        alert_handler: Callable[[ProcessingError], None] | None = None,
        now: Callable[[], datetime] = datetime.now,
        config: dict | None = None,
    ):
        self.config = config or get_error_handling_config()
        self.store = store if store is not None else InMemoryErrorStore()
        self.sleep = sleep
        self.alert_handler = alert_handler or self._log_critical_alert
        self.now = now
        self.max_retry_attempts: int = self.config["max_retry_attempts"]
        self.retry_delays: List[float] = list(self.config["retry_delays_seconds"])

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: LOGGING AND RETRY
    # -------------------------------------------------------------------------

    def log_error(
        self,
        error_type: ErrorType,
        message: str,
        email: InboundMessage | None = None,
        context: Dict[str, Any] | None = None,
        severity: Severity | None = None,
        retryable: bool | None = None,
        retry_count: int = 0,
        max_retries: int | None = None,
        user_id: str | None = None,
        job_id: str | None = None,
    ) -> str:
        """
        Records one failure. Severity and retryability default to the fixed
        per-type mappings.

        Returns:
            The stored error id, or ERROR_LOG_FAILED when the store rejects it.
        """
        error = ProcessingError(
            type=error_type,
            message=message or "Unknown error",
            severity=severity or determine_severity(error_type),
            is_retryable=retryable if retryable is not None else is_retryable(error_type),
            email_id=email.id if email else None,
            email_subject=email.subject[:_FIELD_LIMIT] if email else None,
            email_sender=email.sender[:_FIELD_LIMIT] if email else None,
            context=dict(context or {}),
            retry_count=retry_count,
            max_retries=max_retries or self.max_retry_attempts,
            occurred_at=self.now(),
            user_id=user_id,
            job_id=job_id,
        )

        try:
            error_id = self.store.add(error)
        except Exception as e:
            logger.error(f"Failed to log error ({error_type.value}: {message}): {e}")
            return ERROR_LOG_FAILED

        if error.severity == Severity.CRITICAL:
            self.alert_handler(replace(error, id=error_id))
        return error_id

    def handle_retryable_error(
        self,
        operation: Callable[[], T],
        error_type: ErrorType,
        context: Dict[str, Any] | None = None,
    ) -> T:
        """
        Runs `operation`, retrying retryable failures on the backoff schedule.

        A ProcessingFailure's own error type overrides `error_type`. Errors
        logged for attempts that were later retried successfully are marked
        resolved.

        Raises:
            The last failure, once attempts are exhausted or it is not retryable.
        """
        context = dict(context or {})
        logged_ids: List[str] = []
        attempt = 0

        while True:
            try:
                result = operation()
            except Exception as e:
                attempt += 1
                effective_type = e.error_type if isinstance(e, ProcessingFailure) else error_type
                logged_ids.append(self.log_error(
                    effective_type,
                    str(e),
                    context={**context, "attempt": attempt},
                    retry_count=attempt,
                    user_id=context.get("user_id"),
                    job_id=context.get("job_id"),
                ))

                if not is_retryable(effective_type) or attempt >= self.max_retry_attempts:
                    if attempt > 1:
                        logger.error(f"All {attempt} attempts failed ({effective_type.value}): {e}")
                    raise

                delay = self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]
                logger.warning(
                    f"Attempt {attempt}/{self.max_retry_attempts} failed ({effective_type.value}): {e}. "
                    f"Retrying in {delay}s..."
                )
                self.sleep(delay)
                continue

            if logged_ids:
                for error_id in logged_ids:
                    self.mark_resolved(error_id)
            return result

    def attempt_auto_recovery(self, error_id: str, recovery: Callable[[ProcessingError], bool] | None = None) -> bool:
        """
        Runs a recovery strategy for a retryable error and marks it resolved
        when the strategy reports success.
        """
        error = self.store.get(error_id)
        if error is None or not error.is_retryable or recovery is None:
            return False

        try:
            recovered = bool(recovery(error))
        except Exception as e:
            logger.error(f"Auto recovery failed for error {error_id}: {e}")
            return False

        if recovered:
            self.mark_resolved(error_id)
        return recovered

    def mark_resolved(self, error_id: str) -> bool:
        return self.store.mark_resolved(error_id, self.now())

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: READ SIDE
    # -------------------------------------------------------------------------

    def get_error_statistics(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> Dict[str, Any]:
        """
        Aggregate counts over logged errors.

        Returns:
            Dict with total_errors, errors_by_type, errors_by_severity,
            retry_success_rate, most_common_errors (top N with a sample
            message) and error_trends (daily counts for the trailing window).
        """
        errors = self.store.query(user_id=user_id, start=start, end=end)
        trend_end = end or self.now()
        trends = self._daily_trend(errors, trend_end)

        if not errors:
            return {
                "total_errors": 0,
                "errors_by_type": {},
                "errors_by_severity": {},
                "retry_success_rate": 0.0,
                "most_common_errors": [],
                "error_trends": trends,
            }

        df = self._to_frame(errors)
        by_type = df["type"].value_counts()

        retried = df[df["retry_count"] > 0]
        retry_success_rate = float(retried["resolved"].mean()) if not retried.empty else 0.0

        most_common = []
        for error_type, count in by_type.head(self.config["most_common_limit"]).items():
            sample = df.loc[df["type"] == error_type, "message"].iloc[0]
            most_common.append({"type": error_type, "count": int(count), "message": sample})

        return {
            "total_errors": len(df),
            "errors_by_type": {k: int(v) for k, v in by_type.items()},
            "errors_by_severity": {k: int(v) for k, v in df["severity"].value_counts().items()},
            "retry_success_rate": round(retry_success_rate, 4),
            "most_common_errors": most_common,
            "error_trends": trends,
        }

    def analyze_error_patterns(self, user_id: str | None = None, limit: int | None = None) -> Dict[str, Any]:
        """
        Groups recent errors by type and attaches a recommended action.

        Returns:
            {"patterns": [...], "recommendations": [...]}, patterns sorted by
            frequency descending.
        """
        limit = limit or self.config["pattern_sample_limit"]
        errors = self.store.query(user_id=user_id, limit=limit)
        if not errors:
            return {"patterns": [], "recommendations": []}

        df = self._to_frame(errors)
        patterns = []
        for error_type, group in df.groupby("type", sort=False):
            patterns.append({
                "pattern": error_type,
                "frequency": len(group),
                "severity": group["severity"].iloc[0],
                "examples": group["message"].head(3).tolist(),
                "recommended_action": RECOMMENDED_ACTIONS.get(ErrorType(error_type), DEFAULT_ACTION),
            })
        patterns.sort(key=lambda p: p["frequency"], reverse=True)

        return {"patterns": patterns, "recommendations": self._global_recommendations(patterns)}

    # -------------------------------------------------------------------------
    # INTERNAL
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_frame(errors: List[ProcessingError]) -> pd.DataFrame:
        return pd.DataFrame([
            {
                "type": e.type.value,
                "severity": e.severity.value,
                "message": e.message,
                "retry_count": e.retry_count,
                "resolved": e.resolved_at is not None,
                "occurred_at": e.occurred_at,
            }
            for e in errors
        ])

    def _daily_trend(self, errors: List[ProcessingError], end: datetime) -> List[Dict[str, Any]]:
        """Daily error counts for the trailing window ending at `end`, zero-filled."""
        days = self.config["trend_days"]
        index = pd.date_range(end=pd.Timestamp(end).normalize(), periods=days, freq="D")
        if errors:
            dates = pd.Series([pd.Timestamp(e.occurred_at).normalize() for e in errors])
            counts = dates.value_counts().reindex(index, fill_value=0)
        else:
            counts = pd.Series(0, index=index)
        return [{"date": day.strftime("%Y-%m-%d"), "count": int(count)} for day, count in counts.items()]

    @staticmethod
    def _global_recommendations(patterns: List[Dict[str, Any]]) -> List[str]:
        recommendations = []
        names = [p["pattern"] for p in patterns]
        if any("API_RATE_LIMIT" in n for n in names):
            recommendations.append("API rate limit reached. Space out processing runs.")
        if any("EXTRACTION_FAILED" in n for n in names):
            recommendations.append("Extraction misses detected. Add rules for new message formats.")
        if any("AUTHENTICATION_FAILED" in n for n in names):
            recommendations.append("Authentication failures detected. Ask affected users to reconnect.")
        return recommendations

    @staticmethod
    def _log_critical_alert(error: ProcessingError) -> None:
        logger.critical(
            f"CRITICAL {error.type.value}: {error.message} "
            f"(user={error.user_id}, job={error.job_id}, error_id={error.id})"
        )
