"""
batch_controller.py
--------------------
Time-boxed, resumable batch processing.

A scan runs as a chain of short invocations coordinated only through the
job store:

    start_job()  →  PENDING job + trigger (job_id, 0)
    run_batch()  →  claims the job, re-runs the job's fixed query, processes
                    the window [cursor, cursor + batch_size) one message at a
                    time, committing after each message, then either:
                        - PARTIAL + trigger (job_id, next) on deadline / window end
                        - COMPLETED (progress 100) when the list is exhausted

Guarantees:
    - One bad message never fails the job; its error is recorded and the
      cursor moves on.
    - A trigger whose cursor is not the job's persisted cursor is ignored,
      so duplicate continuations never reprocess committed messages.
    - CANCELLED is checked at every commit and before every claim.
    - The deadline is checked before each message, never mid-classification.

Failures reaching the whole job (no message source, search exhausted its
retries, continuation could not be scheduled) mark the job FAILED; callers
see them in the job's errors, not as exceptions.
"""

import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from config.config_loader import get_batch_processing_config
from core.exceptions import ActiveJobExistsError, JobNotFoundError, ProcessingFailure
from core.message_classifier import MessageClassifier
from core.models import ClassifiedRecord, ErrorType, InboundMessage, Kind, MonthlySummary
from core.monthly_aggregator import MonthlyAggregator
from core.subscription_refiner import SubscriptionRefiner
from jobs.collaborators import MessageSource, RecordStore, SourceResolver, resolve_source
from jobs.job_store import JobStore
from jobs.models import JobResult, JobStatus, ProcessingJob, ProcessingOptions, SearchQuery
from jobs.scheduler import ContinuationScheduler, InlineScheduler
from monitoring.error_manager import ErrorManager

logger = logging.getLogger(__name__)


class BatchJobController:
    """
    Owns every ProcessingJob state transition.

    Usage:
        controller = BatchJobController(job_store, resolver, record_store, scheduler)
        job = controller.start_job("user-1", ProcessingOptions(auto_save=True))
        scheduler.run_pending()
        print(controller.get_job_status(job.id))
    """

    def __init__(
        self,
        job_store: JobStore,
        source_resolver: SourceResolver,
        record_store: RecordStore | None = None,
        scheduler: ContinuationScheduler | None = None,
        classifier: MessageClassifier | None = None,
        error_manager: ErrorManager | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
        config: dict | None = None,
    ):
        self.config = config or get_batch_processing_config()
        self.job_store = job_store
        self.source_resolver = source_resolver
        self.record_store = record_store
        self.scheduler = scheduler or InlineScheduler()
        self.classifier = classifier or MessageClassifier()
        self.error_manager = error_manager or ErrorManager(now=now)
        self.clock = clock
        self.now = now

        self.batch_size: int = self.config["batch_size"]
        self.soft_deadline: float = self.config["soft_deadline_seconds"]
        self.lease_seconds: float = self.config["running_lease_seconds"]

        self.scheduler.attach(self.run_batch)

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: JOB LIFECYCLE
    # -------------------------------------------------------------------------

    def start_job(self, user_id: str, options: ProcessingOptions | None = None) -> ProcessingJob:
        """
        Creates a PENDING job and schedules its first batch.

        Raises:
            ActiveJobExistsError: The user already owns a non-terminal job.
            MessageSourceNotConnectedError: No mailbox is connected.
            ProcessingFailure: Counting candidates failed after retries.
        """
        options = options or ProcessingOptions()

        active = self.job_store.find_active(user_id)
        if active is not None:
            raise ActiveJobExistsError(user_id, active.id)

        source = resolve_source(self.source_resolver, user_id)
        max_emails = options.max_emails or self.config["default_max_emails"]
        query = self._build_query(options)

        candidates = self.error_manager.handle_retryable_error(
            lambda: source.search(query, max_emails),
            ErrorType.UPSTREAM_API_ERROR,
            context={"user_id": user_id, "operation": "search"},
        )

        now = self.now()
        job = ProcessingJob(
            id=str(uuid.uuid4()),
            user_id=user_id,
            status=JobStatus.PENDING,
            total_emails=min(len(candidates), max_emails),
            options=options,
            query=query,
            created_at=now,
            updated_at=now,
        )
        self.job_store.create_exclusive(job)
        logger.info(f"Job {job.id} created for user {user_id}. Candidates: {job.total_emails:,}.")

        try:
            self.scheduler.schedule(job.id, 0)
        except Exception as e:
            return self._fail_job(job, e)

        return self.job_store.get(job.id) or job

    def run_batch(self, job_id: str, cursor: int) -> ProcessingJob | None:
        """
        Processes one window of a job, starting at `cursor`.

        Returns:
            The job after this invocation, or None when the trigger was
            ignored (unknown / terminal / cancelled job, stale cursor, or a
            live invocation already holds the job).
        """
        started = self.clock()

        job = self.job_store.claim(job_id, cursor, self.now(), self.lease_seconds)
        if job is None:
            logger.info(f"Ignoring trigger for job {job_id} at cursor {cursor}.")
            return None

        try:
            source = resolve_source(self.source_resolver, job.user_id)
        except ProcessingFailure as e:
            return self._fail_job(job, e)

        try:
            candidates = self.error_manager.handle_retryable_error(
                lambda: source.search(job.query, job.total_emails),
                ErrorType.UPSTREAM_API_ERROR,
                context={"user_id": job.user_id, "job_id": job.id, "operation": "search"},
            )
        except Exception as e:
            return self._fail_job(job, e, already_logged=True)

        last_index = min(len(candidates), job.total_emails)
        window_end = min(cursor + self.batch_size, last_index)
        threshold = self._confidence_threshold(job.options)

        logger.info(f"Job {job.id}: processing messages [{cursor}, {window_end}) of {last_index}.")

        for index in range(cursor, window_end):
            if self.clock() - started > self.soft_deadline:
                logger.info(f"Job {job.id}: soft deadline reached at message {index}; checkpointing.")
                return self._checkpoint(job, index)

            job.results.append(self._process_message(job, source, candidates[index], threshold))
            job.processed_emails += 1
            job.cursor = index + 1
            job.progress = round(job.processed_emails / job.total_emails * 100) if job.total_emails else 0
            job.updated_at = self.now()

            if not self.job_store.save(job):
                logger.info(f"Job {job.id}: cancelled; stopping at message {index + 1}.")
                return self.job_store.get(job.id)

        if window_end >= last_index:
            return self._complete(job)
        return self._checkpoint(job, window_end)

    def cancel_job(self, job_id: str) -> ProcessingJob:
        """
        Cancels a non-terminal job. A terminal job is returned unchanged.

        Raises:
            JobNotFoundError
        """
        job = self.job_store.cancel(job_id, self.now())
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status == JobStatus.CANCELLED:
            logger.info(f"Job {job_id} cancelled at cursor {job.cursor}.")
        else:
            logger.info(f"Job {job_id} already {job.status.value}; cancel ignored.")
        return job

    def resume_jobs(self, user_id: str | None = None) -> List[ProcessingJob]:
        """
        Cron-style tick: runs one batch for every non-terminal job at its
        persisted cursor. Jobs held by a live invocation are skipped.
        """
        resumed = []
        for job in self.job_store.list_jobs(user_id=user_id):
            if not job.is_active:
                continue
            result = self.run_batch(job.id, job.cursor)
            if result is not None:
                resumed.append(result)
        return resumed

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE: READ SIDE
    # -------------------------------------------------------------------------

    def get_job(self, job_id: str) -> ProcessingJob:
        job = self.job_store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """
        Snapshot for status polling: job fields, result statistics and the
        estimated seconds remaining.

        Raises:
            JobNotFoundError
        """
        job = self.get_job(job_id)
        return {
            "id": job.id,
            "user_id": job.user_id,
            "status": job.status.value,
            "progress": job.progress,
            "total_emails": job.total_emails,
            "processed_emails": job.processed_emails,
            "cursor": job.cursor,
            "errors": list(job.errors),
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat(),
            "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            "stats": calculate_job_stats(job),
            "estimated_seconds_remaining": estimate_seconds_remaining(job, self.now()),
        }

    def list_jobs(self, user_id: str, status: JobStatus | None = None, limit: int | None = None) -> List[ProcessingJob]:
        """Most recent jobs first, capped at `limit` (default: job_history_limit)."""
        limit = limit or self.config["job_history_limit"]
        return self.job_store.list_jobs(user_id=user_id, status=status)[:limit]

    def build_report(self, job_id: str) -> List[MonthlySummary]:
        """Refines the job's classified records and folds them into monthly summaries."""
        records = self.get_job(job_id).records()
        SubscriptionRefiner().refine(records)
        return MonthlyAggregator().aggregate(records)

    # -------------------------------------------------------------------------
    # INTERNAL: PER-MESSAGE PROCESSING
    # -------------------------------------------------------------------------

    def _process_message(self, job: ProcessingJob, source: MessageSource, message_id: str, threshold: float) -> JobResult:
        context = {"user_id": job.user_id, "job_id": job.id, "message_id": message_id}

        try:
            message = self.error_manager.handle_retryable_error(
                lambda: source.fetch(message_id),
                ErrorType.NETWORK_TIMEOUT,
                context={**context, "operation": "fetch"},
            )
            record = self.classifier.classify_record(message)
        except Exception as e:
            logger.warning(f"Job {job.id}: message {message_id} failed: {e}")
            job.errors.append(f"Email {message_id}: {e}")
            return JobResult.failed(message_id, str(e))

        result = JobResult.from_record(record)

        if not record.success:
            self.error_manager.log_error(
                ErrorType.AMOUNT_EXTRACTION_FAILED,
                result.error,
                email=message,
                user_id=job.user_id,
                job_id=job.id,
            )
            return result

        if job.options.auto_save and result.confidence >= threshold:
            try:
                self._persist(job, message, record, result)
            except Exception as e:
                logger.warning(f"Job {job.id}: save failed for message {message_id}: {e}")
                result.error = f"Save failed: {e}"
                job.errors.append(f"Email {message_id}: Save failed: {e}")

        return result

    def _persist(self, job: ProcessingJob, message: InboundMessage, record: ClassifiedRecord, result: JobResult) -> None:
        """Writes the email record, then its transaction or subscription. Every write is keyed for dedupe."""
        if self.record_store is None:
            raise ProcessingFailure("No record store configured", ErrorType.DATABASE_SAVE_FAILED)

        store = self.record_store
        payload = record.result.payload
        context = {"user_id": job.user_id, "job_id": job.id, "message_id": message.id}

        def save(operation, name):
            return self.error_manager.handle_retryable_error(
                operation, ErrorType.DATABASE_SAVE_FAILED, context={**context, "operation": name}
            )

        email_record_id = save(lambda: store.upsert_email_record(job.user_id, message.id, {
            "subject": message.subject,
            "sender": message.sender,
            "received_at": message.received_at.isoformat() if message.received_at else None,
            "kind": record.kind.value,
            "confidence": result.confidence,
            "amount": payload.amount,
            "currency": payload.currency,
            "merchant": payload.merchant,
        }), "upsert_email_record")

        if record.kind == Kind.SUBSCRIPTION:
            result.subscription_id = save(lambda: store.create_subscription({
                "user_id": job.user_id,
                "email_record_id": email_record_id,
                "service_name": payload.service_name or payload.merchant,
                "amount": payload.amount,
                "currency": payload.currency,
                "billing_cycle": payload.billing_cycle,
                "confidence": result.confidence,
            }), "create_subscription")
        elif record.kind == Kind.TRANSACTION:
            result.transaction_id = save(lambda: store.create_transaction({
                "user_id": job.user_id,
                "email_record_id": email_record_id,
                "amount": payload.amount,
                "currency": payload.currency,
                "merchant": payload.merchant,
                "issuer": payload.issuer,
                "transaction_date": payload.occurred_at or (
                    message.received_at.isoformat() if message.received_at else None
                ),
                "is_verified": result.confidence >= self.config["verified_confidence"],
            }), "create_transaction")

    # -------------------------------------------------------------------------
    # INTERNAL: STATE TRANSITIONS
    # -------------------------------------------------------------------------

    def _checkpoint(self, job: ProcessingJob, next_index: int) -> ProcessingJob:
        job.status = JobStatus.PARTIAL
        job.cursor = next_index
        job.updated_at = self.now()
        if not self.job_store.save(job):
            return self.job_store.get(job.id)

        try:
            self.scheduler.schedule(job.id, next_index)
        except Exception as e:
            return self._fail_job(job, e)

        logger.info(f"Job {job.id}: checkpointed at {next_index}/{job.total_emails} ({job.progress}%).")
        return job

    def _complete(self, job: ProcessingJob) -> ProcessingJob:
        now = self.now()
        job.status = JobStatus.COMPLETED
        job.progress = 100
        job.updated_at = now
        job.completed_at = now
        if not self.job_store.save(job):
            return self.job_store.get(job.id)

        stats = calculate_job_stats(job)
        logger.info(
            f"Job {job.id} completed. Processed: {job.processed_emails:,}. "
            f"Successful: {stats['successful']:,}. Errors: {len(job.errors):,}."
        )
        return job

    def _fail_job(self, job: ProcessingJob, error: Exception, already_logged: bool = False) -> ProcessingJob:
        job.status = JobStatus.FAILED
        job.errors.append(f"Processing error: {error}")
        job.updated_at = self.now()

        if not already_logged:
            error_type = error.error_type if isinstance(error, ProcessingFailure) else ErrorType.UNEXPECTED_ERROR
            self.error_manager.log_error(error_type, str(error), user_id=job.user_id, job_id=job.id)

        logger.error(f"Job {job.id} failed: {error}")
        if not self.job_store.save(job):
            return self.job_store.get(job.id)
        return job

    # -------------------------------------------------------------------------
    # INTERNAL: HELPERS
    # -------------------------------------------------------------------------

    def _build_query(self, options: ProcessingOptions) -> SearchQuery:
        """Fixes the query window at job start so every continuation sees the same list."""
        now = self.now()
        if options.date_range is not None:
            return SearchQuery(start=options.date_range.start, end=options.date_range.end or now)
        return SearchQuery(start=now - timedelta(days=self.config["default_days_past"]), end=now)

    def _confidence_threshold(self, options: ProcessingOptions) -> float:
        if options.confidence_threshold is not None:
            return options.confidence_threshold
        return self.config["default_confidence_threshold"]


# =============================================================================
# JOB STATISTICS
# =============================================================================

def calculate_job_stats(job: ProcessingJob) -> Dict[str, Any]:
    successful = [r for r in job.results if r.success]
    return {
        "total_processed": len(job.results),
        "successful": len(successful),
        "failed": len(job.results) - len(successful),
        "subscriptions_found": sum(1 for r in successful if r.kind == Kind.SUBSCRIPTION),
        "transactions_found": sum(1 for r in successful if r.kind == Kind.TRANSACTION),
        "average_confidence": (
            round(sum(r.confidence for r in successful) / len(successful), 4) if successful else 0.0
        ),
    }


def estimate_seconds_remaining(job: ProcessingJob, now: datetime) -> int:
    """Linear extrapolation from elapsed time and progress. 0 unless the job is in flight."""
    if job.progress == 0 or job.status not in (JobStatus.RUNNING, JobStatus.PARTIAL):
        return 0
    elapsed = (now - job.created_at).total_seconds()
    return round(elapsed / job.progress * (100 - job.progress))
