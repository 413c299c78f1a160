"""
test_jobs.py
-------------
Test suite for resumable batch processing and error handling.

Run from the project root:
    python -m pytest tests/test_jobs.py -v

Tests are organized by layer:
    - Job Store
    - Batch Job Controller
    - Schedulers
    - Collaborators
    - Error Manager
"""

import sys
import os
import base64
import json
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import get_batch_processing_config, reset_config
from core.exceptions import (
    ActiveJobExistsError, JobNotFoundError, MessageSourceNotConnectedError, ProcessingFailure, SchedulingError,
)
from core.models import ErrorType, InboundMessage, Kind, Severity
from jobs.batch_controller import BatchJobController, calculate_job_stats, estimate_seconds_remaining
from jobs.collaborators import (
    FileRecordStore, InMemoryMessageSource, InMemoryRecordStore, JsonMessageSource, extract_body,
)
from jobs.job_store import FileJobStore, InMemoryJobStore
from jobs.models import JobStatus, ProcessingJob, ProcessingOptions, SearchQuery
from jobs.scheduler import DeferredScheduler, InlineScheduler, ThreadedScheduler
from monitoring.error_manager import ERROR_LOG_FAILED, ErrorManager, InMemoryErrorStore


FIXED_NOW = datetime(2024, 6, 30, 12, 0)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


class FakeClock:
    """Monotonic clock that advances `step` seconds on every read."""

    def __init__(self, step: float = 0.0):
        self.value = 0.0
        self.step = step

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


def _make_messages(n: int = 7) -> list:
    """Helper: Rakuten card notices m0..m(n-1), one per day of June 2024."""
    return [
        InboundMessage(
            id=f"m{i}",
            subject="カード利用のお知らせ",
            sender="info@rakuten-card.co.jp",
            received_at=datetime(2024, 6, 1 + i, 10, 0),
            body=f"ご利用日：2024/06/{i + 1:02d}\nご利用金額：¥{1000 + i * 10:,}\nご利用店舗：Store {i}",
        )
        for i in range(n)
    ]


def _junk_message(message_id: str = "junk") -> InboundMessage:
    return InboundMessage(
        id=message_id, subject="Hello", sender="a@example.com",
        received_at=datetime(2024, 6, 20, 10, 0), body="No payment here.",
    )


def _build(
    messages=None,
    batch_size: int = 3,
    clock=None,
    fail_fetch=None,
    scheduler=None,
    source=None,
    record_store=None,
):
    """Helper: wires a controller over in-memory collaborators with a fixed clock."""
    source = source or InMemoryMessageSource(messages if messages is not None else _make_messages(), fail_fetch)
    sources = {"u1": source}
    sleeps, alerts = [], []
    error_manager = ErrorManager(sleep=sleeps.append, alert_handler=alerts.append, now=lambda: FIXED_NOW)
    job_store = InMemoryJobStore()
    record_store = record_store if record_store is not None else InMemoryRecordStore()
    scheduler = scheduler or InlineScheduler()

    controller = BatchJobController(
        job_store=job_store,
        source_resolver=sources.get,
        record_store=record_store,
        scheduler=scheduler,
        error_manager=error_manager,
        clock=clock or FakeClock(),
        now=lambda: FIXED_NOW,
        config={**get_batch_processing_config(), "batch_size": batch_size},
    )
    return SimpleNamespace(
        controller=controller, job_store=job_store, record_store=record_store, scheduler=scheduler,
        source=source, sources=sources, error_manager=error_manager, sleeps=sleeps, alerts=alerts,
    )


def _new_job(job_id: str = "job-1", user_id: str = "u1", status: JobStatus = JobStatus.PENDING) -> ProcessingJob:
    return ProcessingJob(
        id=job_id, user_id=user_id, status=status, total_emails=5,
        created_at=FIXED_NOW, updated_at=FIXED_NOW,
    )


# =============================================================================
# JOB STORE
# =============================================================================

class TestJobStore:
    def test_create_exclusive_rejects_second_active_job(self):
        store = InMemoryJobStore()
        store.create_exclusive(_new_job("a"))
        with pytest.raises(ActiveJobExistsError) as exc:
            store.create_exclusive(_new_job("b"))
        assert exc.value.job_id == "a"
        assert store.get("b") is None

    def test_terminal_job_does_not_block_new_job(self):
        store = InMemoryJobStore()
        store.create_exclusive(_new_job("a", status=JobStatus.COMPLETED))
        store.create_exclusive(_new_job("b"))
        assert store.find_active("u1").id == "b"

    def test_claim_rules(self):
        store = InMemoryJobStore()
        store.create_exclusive(_new_job())

        assert store.claim("job-1", 1, FIXED_NOW, 60) is None          # wrong cursor
        claimed = store.claim("job-1", 0, FIXED_NOW, 60)
        assert claimed.status == JobStatus.RUNNING
        assert store.claim("job-1", 0, FIXED_NOW, 60) is None          # live lease
        later = FIXED_NOW + timedelta(seconds=61)
        assert store.claim("job-1", 0, later, 60) is not None           # stale lease
        assert store.claim("missing", 0, FIXED_NOW, 60) is None

    def test_cancel_is_sticky(self):
        store = InMemoryJobStore()
        store.create_exclusive(_new_job())
        cancelled = store.cancel("job-1", FIXED_NOW)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.completed_at == FIXED_NOW

        stale = _new_job(status=JobStatus.RUNNING)
        assert store.save(stale) is False
        assert store.get("job-1").status == JobStatus.CANCELLED
        assert store.claim("job-1", 0, FIXED_NOW, 60) is None

    def test_cancel_terminal_and_unknown(self):
        store = InMemoryJobStore()
        store.create_exclusive(_new_job(status=JobStatus.COMPLETED))
        assert store.cancel("job-1", FIXED_NOW).status == JobStatus.COMPLETED
        assert store.cancel("missing", FIXED_NOW) is None

    def test_file_store_round_trip(self, tmp_path):
        env = _build(batch_size=10)
        job = env.controller.start_job("u1", ProcessingOptions(auto_save=True))
        env.scheduler.run_pending()
        completed = env.job_store.get(job.id)

        store = FileJobStore(str(tmp_path / "jobs"))
        older = _new_job("older", user_id="u2", status=JobStatus.FAILED)
        older.created_at = FIXED_NOW - timedelta(days=1)
        store.save(older)
        store.save(completed)

        loaded = store.get(job.id)
        assert loaded.to_dict() == completed.to_dict()
        assert loaded.records()[0].amount == Decimal("1000")
        assert [j.id for j in store.list_jobs()] == [job.id, "older"]
        assert store.list_jobs(user_id="u2", status=JobStatus.FAILED)[0].id == "older"
        assert not any(name.endswith(".tmp") for name in os.listdir(tmp_path / "jobs"))


# =============================================================================
# BATCH JOB CONTROLLER
# =============================================================================

class TestBatchJobController:
    def test_start_job_creates_pending_job_and_trigger(self):
        env = _build()
        job = env.controller.start_job("u1")
        assert job.status == JobStatus.PENDING
        assert job.total_emails == 7
        assert job.query == SearchQuery(start=FIXED_NOW - timedelta(days=30), end=FIXED_NOW)
        assert env.scheduler.history == [(job.id, 0)]

    def test_full_run_completes(self):
        env = _build(batch_size=3)
        job = env.controller.start_job("u1", ProcessingOptions(auto_save=True))
        env.scheduler.run_pending()

        done = env.job_store.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.processed_emails == done.cursor == 7
        assert done.completed_at == FIXED_NOW
        assert env.scheduler.history == [(job.id, 0), (job.id, 3), (job.id, 6)]
        assert env.record_store.writes == {"email_records": 7, "transactions": 7, "subscriptions": 0}
        assert all(r.transaction_id for r in done.results)

        stats = calculate_job_stats(done)
        assert stats["successful"] == 7
        assert stats["transactions_found"] == 7
        assert stats["average_confidence"] == pytest.approx(0.9)

    def test_mailbox_with_offset_timestamps(self, tmp_path):
        path = tmp_path / "mailbox.json"
        path.write_text(json.dumps([
            {"id": "jst", "subject": "カード利用のお知らせ", "sender": "info@rakuten-card.co.jp",
             "received_at": "2024-06-20T10:00:00+09:00", "body": "ご利用金額：¥1,200\nご利用店舗：Store A"},
            {"id": "utc", "subject": "カード利用のお知らせ", "sender": "info@rakuten-card.co.jp",
             "received_at": "2024-06-21T01:00:00Z", "body": "ご利用金額：¥800\nご利用店舗：Store B"},
        ], ensure_ascii=False), encoding="utf-8")
        env = _build(source=JsonMessageSource(str(path)))

        job = env.controller.start_job("u1", ProcessingOptions(auto_save=True))
        assert job.total_emails == 2
        env.scheduler.run_pending()

        done = env.job_store.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert [r.email_id for r in done.results] == ["jst", "utc"]
        assert all(r.success for r in done.results)
        assert env.sleeps == []

    def test_auto_save_survives_restart(self, tmp_path):
        path = str(tmp_path / "records.json")
        env = _build(record_store=FileRecordStore(path))
        env.controller.start_job("u1", ProcessingOptions(auto_save=True))
        env.scheduler.run_pending()

        reopened = FileRecordStore(path)
        assert len(reopened.email_records) == 7
        assert len(reopened.transactions) == 7

        rerun = _build(record_store=reopened)
        rerun.controller.start_job("u1", ProcessingOptions(auto_save=True))
        rerun.scheduler.run_pending()
        assert reopened.writes == {"email_records": 0, "transactions": 0, "subscriptions": 0}
        assert len(FileRecordStore(path).email_records) == 7

    def test_max_emails_caps_total(self):
        env = _build()
        job = env.controller.start_job("u1", ProcessingOptions(max_emails=4))
        env.scheduler.run_pending()
        done = env.job_store.get(job.id)
        assert done.total_emails == 4
        assert done.processed_emails == 4
        assert [r.email_id for r in done.results] == ["m0", "m1", "m2", "m3"]

    def test_deadline_resumption_matches_unbounded_run(self):
        unbounded = _build(batch_size=50)
        job_a = unbounded.controller.start_job("u1", ProcessingOptions(auto_save=True))
        unbounded.scheduler.run_pending()

        # Each read advances 5s against a 12s soft deadline: two messages per invocation
        bounded = _build(batch_size=50, clock=FakeClock(step=5))
        job_b = bounded.controller.start_job("u1", ProcessingOptions(auto_save=True))
        bounded.scheduler.run_pending()

        a = unbounded.job_store.get(job_a.id)
        b = bounded.job_store.get(job_b.id)
        assert len(bounded.scheduler.history) == 4
        assert b.status == a.status == JobStatus.COMPLETED
        assert [(r.email_id, r.amount, r.merchant) for r in b.results] == \
               [(r.email_id, r.amount, r.merchant) for r in a.results]
        assert bounded.record_store.writes == unbounded.record_store.writes
        assert bounded.source.fetch_calls == 7

    def test_duplicate_trigger_ignored(self):
        env = _build(batch_size=3)
        job = env.controller.start_job("u1", ProcessingOptions(auto_save=True))
        env.scheduler.run_pending(max_triggers=1)
        assert env.job_store.get(job.id).cursor == 3

        assert env.controller.run_batch(job.id, 0) is None
        env.controller.run_batch(job.id, 3)          # delivered twice
        env.scheduler.run_pending()

        done = env.job_store.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert [r.email_id for r in done.results] == [f"m{i}" for i in range(7)]
        assert env.source.fetch_calls == 7
        assert env.record_store.writes["transactions"] == 7

    def test_live_lease_blocks_second_invocation(self):
        env = _build()
        job = env.controller.start_job("u1")
        env.job_store.claim(job.id, 0, FIXED_NOW, 60)
        assert env.controller.run_batch(job.id, 0) is None
        assert env.source.fetch_calls == 0

    def test_cancel_stops_processing(self):
        env = _build(batch_size=3)
        job = env.controller.start_job("u1")
        env.scheduler.run_pending(max_triggers=1)

        cancelled = env.controller.cancel_job(job.id)
        assert cancelled.status == JobStatus.CANCELLED
        env.scheduler.run_pending()

        final = env.job_store.get(job.id)
        assert final.status == JobStatus.CANCELLED
        assert final.processed_emails == 3
        assert env.source.fetch_calls == 3

    def test_cancel_during_batch_discards_next_commit(self):
        class CancellingSource(InMemoryMessageSource):
            controller = None
            job_id = None

            def fetch(self, message_id):
                if message_id == "m1":
                    self.controller.cancel_job(self.job_id)
                return super().fetch(message_id)

        source = CancellingSource(_make_messages())
        env = _build(source=source, batch_size=10)
        job = env.controller.start_job("u1")
        source.controller, source.job_id = env.controller, job.id
        env.scheduler.run_pending()

        final = env.job_store.get(job.id)
        assert final.status == JobStatus.CANCELLED
        assert final.processed_emails == 1
        assert source.fetch_calls == 2

    def test_cancel_unknown_and_terminal_jobs(self):
        env = _build()
        with pytest.raises(JobNotFoundError):
            env.controller.cancel_job("missing")

        job = env.controller.start_job("u1")
        env.scheduler.run_pending()
        assert env.controller.cancel_job(job.id).status == JobStatus.COMPLETED

    def test_active_job_exists_leaves_existing_untouched(self):
        env = _build()
        first = env.controller.start_job("u1")
        snapshot = env.job_store.get(first.id).to_dict()

        with pytest.raises(ActiveJobExistsError) as exc:
            env.controller.start_job("u1")
        assert exc.value.job_id == first.id
        assert exc.value.code == "ACTIVE_JOB_EXISTS"
        assert env.job_store.get(first.id).to_dict() == snapshot
        assert len(env.job_store.list_jobs(user_id="u1")) == 1

        env.scheduler.run_pending()
        second = env.controller.start_job("u1")
        assert second.id != first.id

    def test_source_not_connected(self):
        env = _build()
        with pytest.raises(MessageSourceNotConnectedError):
            env.controller.start_job("nobody")
        assert env.job_store.list_jobs() == []

    def test_source_disconnected_mid_job_fails_job(self):
        env = _build(batch_size=3)
        job = env.controller.start_job("u1")
        env.scheduler.run_pending(max_triggers=1)
        del env.sources["u1"]
        env.scheduler.run_pending()

        final = env.job_store.get(job.id)
        assert final.status == JobStatus.FAILED
        assert final.processed_emails == 3
        assert any("No message source connected" in e for e in final.errors)
        assert env.alerts and env.alerts[0].type == ErrorType.AUTHENTICATION_FAILED

    def test_fetch_failure_does_not_abort_job(self):
        env = _build(fail_fetch={"m2": ErrorType.NETWORK_TIMEOUT}, batch_size=10)
        job = env.controller.start_job("u1", ProcessingOptions(auto_save=True))
        env.scheduler.run_pending()

        final = env.job_store.get(job.id)
        assert final.status == JobStatus.COMPLETED
        assert final.processed_emails == 7
        assert not final.results[2].success
        assert any(e.startswith("Email m2:") for e in final.errors)
        assert env.sleeps == [1, 2]
        assert env.record_store.writes["transactions"] == 6

    def test_search_failure_at_start_raises(self):
        class DownSource(InMemoryMessageSource):
            def search(self, query, max_results):
                self.search_calls += 1
                raise ProcessingFailure("503 from provider", ErrorType.UPSTREAM_API_ERROR)

        env = _build(source=DownSource([]))
        with pytest.raises(ProcessingFailure):
            env.controller.start_job("u1")
        assert env.source.search_calls == 3
        assert env.job_store.list_jobs() == []

    def test_low_confidence_not_saved(self):
        env = _build(batch_size=10)
        job = env.controller.start_job("u1", ProcessingOptions(auto_save=True, confidence_threshold=0.95))
        env.scheduler.run_pending()
        assert env.job_store.get(job.id).status == JobStatus.COMPLETED
        assert env.record_store.writes["transactions"] == 0

    def test_save_without_record_store_recorded_per_message(self):
        env = _build(batch_size=10)
        env.controller.record_store = None
        job = env.controller.start_job("u1", ProcessingOptions(auto_save=True))
        env.scheduler.run_pending()
        final = env.job_store.get(job.id)
        assert final.status == JobStatus.COMPLETED
        assert all(r.error.startswith("Save failed:") for r in final.results)
        assert len(final.errors) == 7

    def test_unclassifiable_message_logged(self):
        env = _build(messages=_make_messages(2) + [_junk_message()], batch_size=10)
        job = env.controller.start_job("u1")
        env.scheduler.run_pending()

        final = env.job_store.get(job.id)
        assert final.status == JobStatus.COMPLETED
        assert calculate_job_stats(final)["failed"] == 1
        stats = env.error_manager.get_error_statistics(user_id="u1")
        assert stats["errors_by_type"] == {"AMOUNT_EXTRACTION_FAILED": 1}

    def test_job_status_snapshot(self):
        env = _build(batch_size=3)
        job = env.controller.start_job("u1")
        env.scheduler.run_pending(max_triggers=1)

        status = env.controller.get_job_status(job.id)
        assert status["status"] == "PARTIAL"
        assert status["progress"] == 43
        assert status["cursor"] == 3
        assert status["stats"]["total_processed"] == 3
        with pytest.raises(JobNotFoundError):
            env.controller.get_job_status("missing")

    def test_estimate_seconds_remaining(self):
        job = _new_job(status=JobStatus.PARTIAL)
        job.progress = 25
        job.created_at = FIXED_NOW - timedelta(seconds=100)
        assert estimate_seconds_remaining(job, FIXED_NOW) == 300
        job.status = JobStatus.COMPLETED
        assert estimate_seconds_remaining(job, FIXED_NOW) == 0

    def test_list_jobs_newest_first(self):
        env = _build()
        env.job_store.save(_new_job("old", status=JobStatus.COMPLETED))
        newer = _new_job("new", status=JobStatus.FAILED)
        newer.created_at = FIXED_NOW + timedelta(minutes=1)
        env.job_store.save(newer)
        assert [j.id for j in env.controller.list_jobs("u1")] == ["new", "old"]
        assert [j.id for j in env.controller.list_jobs("u1", limit=1)] == ["new"]
        assert [j.id for j in env.controller.list_jobs("u1", status=JobStatus.COMPLETED)] == ["old"]

    def test_build_report(self):
        env = _build(batch_size=10)
        job = env.controller.start_job("u1")
        env.scheduler.run_pending()

        summaries = env.controller.build_report(job.id)
        assert len(summaries) == 1
        assert summaries[0].month == "2024-06"
        assert summaries[0].issuer == "Rakuten"
        assert summaries[0].transaction_count == 7
        assert summaries[0].total == sum(Decimal(1000 + i * 10) for i in range(7))

    def test_resume_with_deferred_scheduler(self):
        env = _build(batch_size=3, scheduler=DeferredScheduler())
        job = env.controller.start_job("u1")

        cursors = []
        for _ in range(5):
            resumed = env.controller.resume_jobs(user_id="u1")
            cursors.extend(j.cursor for j in resumed)

        assert cursors == [3, 6, 7]
        assert env.job_store.get(job.id).status == JobStatus.COMPLETED

    def test_scheduling_failure_fails_job(self):
        class BrokenScheduler(InlineScheduler):
            def schedule(self, job_id, cursor):
                raise SchedulingError("queue unavailable")

        env = _build(scheduler=BrokenScheduler())
        job = env.controller.start_job("u1")
        assert job.status == JobStatus.FAILED
        assert env.job_store.get(job.id).status == JobStatus.FAILED
        assert any("queue unavailable" in e for e in job.errors)


# =============================================================================
# SCHEDULERS
# =============================================================================

class TestSchedulers:
    def test_inline_scheduler_requires_handler(self):
        with pytest.raises(SchedulingError):
            InlineScheduler().schedule("job", 0)

    def test_threaded_scheduler_delivers(self):
        delivered = []
        scheduler = ThreadedScheduler()
        scheduler.attach(lambda job_id, cursor: delivered.append((job_id, cursor)))
        scheduler.schedule("job", 0)
        scheduler.schedule("job", 3)
        scheduler.join(timeout=5)
        assert sorted(delivered) == [("job", 0), ("job", 3)]

    def test_threaded_controller_run(self):
        env = _build(batch_size=2, scheduler=ThreadedScheduler())
        job = env.controller.start_job("u1")
        env.scheduler.join(timeout=10)
        assert env.job_store.get(job.id).status == JobStatus.COMPLETED


# =============================================================================
# COLLABORATORS
# =============================================================================

def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


class TestCollaborators:
    def test_extract_body_prefers_plain_text(self):
        payload = {
            "mimeType": "multipart/alternative",
            "parts": [
                {"mimeType": "text/html", "body": {"data": _b64("<p>HTML ¥500</p>")}},
                {"mimeType": "text/plain", "body": {"data": _b64("Plain ¥500")}},
            ],
        }
        assert extract_body(payload) == "Plain ¥500"

    def test_extract_body_strips_html(self):
        payload = {"mimeType": "text/html", "body": {"data": _b64("<div><b>Total</b> ¥500</div>")}}
        assert extract_body(payload) == "Total ¥500"
        assert extract_body({}) == ""

    def test_json_message_source(self, tmp_path):
        path = tmp_path / "mailbox.json"
        path.write_text(json.dumps([
            {"id": 2, "subject": "B", "from": "b@example.com", "received_at": "2024-06-02T10:00:00", "body": "¥200"},
            {"id": 1, "subject": "A", "sender": "a@example.com", "received_at": "2024-06-01T10:00:00",
             "snippet": "Snippet ¥100"},
        ]), encoding="utf-8")

        source = JsonMessageSource(str(path))
        assert source.search(SearchQuery(), 10) == ["1", "2"]
        assert source.fetch("1").body == "Snippet ¥100"
        assert source.fetch("2").sender == "b@example.com"
        assert source.search(SearchQuery(start=datetime(2024, 6, 2)), 10) == ["2"]

    def test_missing_message_raises(self):
        with pytest.raises(ProcessingFailure) as exc:
            InMemoryMessageSource([]).fetch("nope")
        assert exc.value.error_type == ErrorType.UPSTREAM_API_ERROR

    def test_record_store_dedupes(self):
        store = InMemoryRecordStore()
        first = store.upsert_email_record("u1", "m1", {"amount": Decimal("1490")})
        again = store.upsert_email_record("u1", "m1", {"amount": Decimal("1490")})
        assert first == again

        sub = {"user_id": "u1", "service_name": "Netflix", "amount": Decimal("1490")}
        assert store.create_subscription(sub) == store.create_subscription({**sub, "amount": 1490})
        assert store.writes == {"email_records": 1, "transactions": 0, "subscriptions": 1}

    def test_file_record_store_keeps_dedupe_keys(self, tmp_path):
        path = str(tmp_path / "state" / "records.json")
        store = FileRecordStore(path)
        email_id = store.upsert_email_record("u1", "m1", {"amount": Decimal("1490")})
        transaction_id = store.create_transaction({"email_record_id": email_id, "amount": Decimal("1490")})
        sub = {"user_id": "u1", "service_name": "Netflix", "amount": Decimal("1490")}
        subscription_id = store.create_subscription(sub)

        reopened = FileRecordStore(path)
        assert reopened.upsert_email_record("u1", "m1", {"amount": Decimal("1490")}) == email_id
        assert reopened.create_transaction({"email_record_id": email_id}) == transaction_id
        assert reopened.create_subscription({**sub, "amount": 1490}) == subscription_id
        assert reopened.writes == {"email_records": 0, "transactions": 0, "subscriptions": 0}

    def test_search_order_with_mixed_timestamps(self):
        source = InMemoryMessageSource([
            InboundMessage(id="aware", subject="", sender="", body="",
                           received_at=datetime(2024, 6, 10, 10, 0, tzinfo=timezone(timedelta(hours=9)))),
            InboundMessage(id="naive", subject="", sender="", body="", received_at=datetime(2024, 6, 1, 10, 0)),
            InboundMessage(id="undated", subject="", sender="", body="", received_at=None),
        ])
        assert source.search(SearchQuery(), 10) == ["undated", "naive", "aware"]
        assert source.search(SearchQuery(start=datetime(2024, 6, 5, tzinfo=timezone.utc)), 10) == ["aware"]
        assert source.search(SearchQuery(end=datetime(2024, 6, 5)), 10) == ["naive"]


# =============================================================================
# ERROR MANAGER
# =============================================================================

def _error_manager(store=None):
    sleeps, alerts = [], []
    manager = ErrorManager(store=store, sleep=sleeps.append, alert_handler=alerts.append, now=lambda: FIXED_NOW)
    return manager, sleeps, alerts


def _flaky(failures: int, error: Exception, result="ok"):
    calls = {"n": 0}

    def operation():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise error
        return result

    return operation, calls


class TestErrorManager:
    def test_retry_then_success(self):
        manager, sleeps, _ = _error_manager()
        operation, calls = _flaky(2, ProcessingFailure("timeout", ErrorType.NETWORK_TIMEOUT))

        assert manager.handle_retryable_error(operation, ErrorType.NETWORK_TIMEOUT) == "ok"
        assert calls["n"] == 3
        assert sleeps == [1, 2]

        stats = manager.get_error_statistics()
        assert stats["total_errors"] == 2
        assert stats["retry_success_rate"] == 1.0

    def test_non_retryable_raised_immediately(self):
        manager, sleeps, _ = _error_manager()
        operation, calls = _flaky(5, ProcessingFailure("constraint violated", ErrorType.DATABASE_SAVE_FAILED))

        # The failure's own type wins over the caller's default
        with pytest.raises(ProcessingFailure):
            manager.handle_retryable_error(operation, ErrorType.NETWORK_TIMEOUT)
        assert calls["n"] == 1
        assert sleeps == []

    def test_retries_exhausted(self):
        manager, sleeps, _ = _error_manager()
        operation, calls = _flaky(10, ConnectionError("reset"))

        with pytest.raises(ConnectionError):
            manager.handle_retryable_error(operation, ErrorType.UPSTREAM_API_ERROR, context={"user_id": "u1"})
        assert calls["n"] == 3
        assert sleeps == [1, 2]

        stats = manager.get_error_statistics(user_id="u1")
        assert stats["total_errors"] == 3
        assert stats["retry_success_rate"] == 0.0
        assert stats["errors_by_severity"] == {"HIGH": 3}

    def test_critical_error_raises_alert(self):
        manager, _, alerts = _error_manager()
        error_id = manager.log_error(ErrorType.AUTHENTICATION_FAILED, "token revoked", user_id="u1")
        assert len(alerts) == 1
        assert alerts[0].id == error_id
        assert alerts[0].severity == Severity.CRITICAL
        assert not alerts[0].is_retryable

    def test_log_error_captures_message_fields(self):
        manager, _, _ = _error_manager()
        message = _junk_message()
        error_id = manager.log_error(ErrorType.AMOUNT_EXTRACTION_FAILED, "no amount", email=message)
        stored = manager.store.get(error_id)
        assert stored.email_id == "junk"
        assert stored.email_sender == "a@example.com"
        assert stored.severity == Severity.LOW

    def test_store_failure_returns_sentinel(self):
        class BrokenStore(InMemoryErrorStore):
            def add(self, error):
                raise IOError("disk full")

        manager, _, _ = _error_manager(store=BrokenStore())
        assert manager.log_error(ErrorType.UNEXPECTED_ERROR, "boom") == ERROR_LOG_FAILED

    def test_statistics_trend_and_most_common(self):
        manager, _, _ = _error_manager()
        for _ in range(3):
            manager.log_error(ErrorType.AMOUNT_EXTRACTION_FAILED, "amount not found")
        manager.log_error(ErrorType.NETWORK_TIMEOUT, "timeout")

        stats = manager.get_error_statistics()
        assert stats["most_common_errors"][0] == {
            "type": "AMOUNT_EXTRACTION_FAILED", "count": 3, "message": "amount not found",
        }
        assert len(stats["error_trends"]) == 7
        assert stats["error_trends"][-1] == {"date": "2024-06-30", "count": 4}
        assert sum(d["count"] for d in stats["error_trends"]) == 4

    def test_empty_statistics(self):
        manager, _, _ = _error_manager()
        stats = manager.get_error_statistics()
        assert stats["total_errors"] == 0
        assert len(stats["error_trends"]) == 7

    def test_analyze_error_patterns(self):
        manager, _, _ = _error_manager()
        manager.log_error(ErrorType.AMOUNT_EXTRACTION_FAILED, "amount not found")
        manager.log_error(ErrorType.AMOUNT_EXTRACTION_FAILED, "amount not found again")
        manager.log_error(ErrorType.API_RATE_LIMIT, "429")

        analysis = manager.analyze_error_patterns()
        top = analysis["patterns"][0]
        assert top["pattern"] == "AMOUNT_EXTRACTION_FAILED"
        assert top["frequency"] == 2
        assert top["recommended_action"] == "Extend the amount rules in the pattern tables."
        assert len(analysis["recommendations"]) == 2

    def test_auto_recovery(self):
        manager, _, _ = _error_manager()
        retryable = manager.log_error(ErrorType.NETWORK_TIMEOUT, "timeout")
        permanent = manager.log_error(ErrorType.DATABASE_SAVE_FAILED, "constraint")

        assert manager.attempt_auto_recovery(retryable, recovery=lambda error: True)
        assert manager.store.get(retryable).resolved_at == FIXED_NOW
        assert not manager.attempt_auto_recovery(permanent, recovery=lambda error: True)
        assert not manager.attempt_auto_recovery("missing", recovery=lambda error: True)
