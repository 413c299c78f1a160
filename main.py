"""
main.py
--------
Entry point for the Card & Subscription Mail Engine.

Subcommands:
    report      Classify an exported mailbox in one pass and write the
                classified records plus the monthly summary to CSV.
    start-job   Create a resumable scan job for a user.
    run-batch   Run one batch of a job at a given cursor.
    resume      Run one batch for every job left PARTIAL / PENDING (cron tick).
    job-status  Print a job's status snapshot as JSON.
    cancel-job  Cancel a job.
    harness     Run the parse-accuracy harness.

Job state and auto-saved records live under --state-dir so they survive
between invocations.
Continuations are deferred: the persisted cursor is picked up by the next
`resume` tick.

Usage (from the project root):
    python main.py report --input mailbox.json
    python main.py start-job --input mailbox.json --user-id u1 --auto-save
    python main.py resume --input mailbox.json
"""

import sys
import os
import argparse
import json
import logging
from datetime import datetime

import pandas as pd

# Ensure project root is on path (for VS Code runs from any working directory)
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.exceptions import ActiveJobExistsError, EngineError, JobNotFoundError
from core.models import Category, from_iso
from jobs.batch_controller import BatchJobController
from jobs.collaborators import FileRecordStore, JsonMessageSource
from jobs.job_store import FileJobStore
from jobs.models import DateRange, ProcessingOptions
from jobs.scheduler import DeferredScheduler
from monitoring.accuracy_harness import AccuracyHarness
from pipeline import ScanPipeline


# =============================================================================
# LOGGING SETUP
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("main")


EXIT_ACTIVE_JOB = 2
EXIT_NOT_FOUND = 3


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Card & Subscription Mail Engine: extract card charges and subscriptions from notification emails."
    )
    parser.add_argument(
        "--state-dir", type=str, default=None,
        help="Directory for persisted job state. Defaults to state/ in project root."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    report = sub.add_parser("report", help="Classify a mailbox export and write CSV reports.")
    report.add_argument("--input", type=str, required=True, help="Path to the mailbox JSON export.")
    report.add_argument(
        "--output-dir", type=str, default=None,
        help="Output directory. Defaults to outputs/ in project root."
    )

    start = sub.add_parser("start-job", help="Create a resumable scan job.")
    start.add_argument("--input", type=str, required=True, help="Path to the mailbox JSON export.")
    start.add_argument("--user-id", type=str, required=True)
    start.add_argument("--max-emails", type=int, default=None, help="Defaults to config value (200).")
    start.add_argument("--confidence-threshold", type=float, default=None, help="Defaults to config value (0.7).")
    start.add_argument("--auto-save", action="store_true", default=False)
    start.add_argument("--start", type=str, default=None, help="Window start, ISO 8601.")
    start.add_argument("--end", type=str, default=None, help="Window end, ISO 8601.")

    run = sub.add_parser("run-batch", help="Run one batch of a job.")
    run.add_argument("--input", type=str, required=True)
    run.add_argument("--job-id", type=str, required=True)
    run.add_argument("--cursor", type=int, required=True)

    resume = sub.add_parser("resume", help="Run one batch for every active job.")
    resume.add_argument("--input", type=str, required=True)
    resume.add_argument("--user-id", type=str, default=None)

    status = sub.add_parser("job-status", help="Print a job's status snapshot.")
    status.add_argument("--job-id", type=str, required=True)

    cancel = sub.add_parser("cancel-job", help="Cancel a job.")
    cancel.add_argument("--job-id", type=str, required=True)

    harness = sub.add_parser("harness", help="Run the parse-accuracy harness.")
    harness.add_argument("--tags", nargs="*", default=None)

    return parser.parse_args(argv)


# =============================================================================
# WIRING
# =============================================================================

def _build_controller(args: argparse.Namespace, input_path: str | None = None) -> BatchJobController:
    state_dir = args.state_dir or os.path.join(PROJECT_ROOT, "state")
    job_store = FileJobStore(os.path.join(state_dir, "jobs"))

    source = None
    if input_path is not None:
        if not os.path.exists(input_path):
            logger.error(f"Input file not found: {input_path}")
            sys.exit(1)
        source = JsonMessageSource(input_path)

    return BatchJobController(
        job_store=job_store,
        source_resolver=lambda user_id: source,
        record_store=FileRecordStore(os.path.join(state_dir, "records.json")),
        scheduler=DeferredScheduler(),
    )


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


# =============================================================================
# COMMANDS
# =============================================================================

def run_report(args: argparse.Namespace) -> int:
    output_dir = args.output_dir or os.path.join(PROJECT_ROOT, "outputs")
    os.makedirs(output_dir, exist_ok=True)

    logger.info(f"Loading messages from: {args.input}")
    if not os.path.exists(args.input):
        logger.error(f"Input file not found: {args.input}")
        return 1
    source = JsonMessageSource(args.input)
    messages = source.all_messages()

    pipeline = ScanPipeline()
    summary = pipeline.run(messages)
    records = pipeline.records_frame()

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    records_path = os.path.join(output_dir, f"records_{timestamp}.csv")
    summary_path = os.path.join(output_dir, f"monthly_summary_{timestamp}.csv")
    records.to_csv(records_path, index=False)
    summary.to_csv(summary_path, index=False)
    logger.info(f"Records saved to: {records_path}")
    logger.info(f"Monthly summary saved to: {summary_path}")

    _print_summary(summary, records)
    return 0


def run_start_job(args: argparse.Namespace) -> int:
    controller = _build_controller(args, args.input)
    date_range = None
    if args.start:
        date_range = DateRange(
            start=from_iso(args.start),
            end=from_iso(args.end),
        )
    options = ProcessingOptions(
        max_emails=args.max_emails,
        confidence_threshold=args.confidence_threshold,
        auto_save=args.auto_save,
        date_range=date_range,
    )

    try:
        job = controller.start_job(args.user_id, options)
    except ActiveJobExistsError as e:
        logger.error(f"{e.code}: {e}")
        return EXIT_ACTIVE_JOB

    _print_json(controller.get_job_status(job.id))
    return 0


def run_batch(args: argparse.Namespace) -> int:
    controller = _build_controller(args, args.input)
    job = controller.run_batch(args.job_id, args.cursor)
    if job is None:
        logger.info("Trigger ignored.")
        return 0
    _print_json(controller.get_job_status(job.id))
    return 0


def run_resume(args: argparse.Namespace) -> int:
    controller = _build_controller(args, args.input)
    jobs = controller.resume_jobs(user_id=args.user_id)
    logger.info(f"Resumed {len(jobs):,} jobs.")
    _print_json([controller.get_job_status(job.id) for job in jobs])
    return 0


def run_job_status(args: argparse.Namespace) -> int:
    controller = _build_controller(args)
    _print_json(controller.get_job_status(args.job_id))
    return 0


def run_cancel_job(args: argparse.Namespace) -> int:
    controller = _build_controller(args)
    job = controller.cancel_job(args.job_id)
    _print_json(controller.get_job_status(job.id))
    return 0


def run_harness(args: argparse.Namespace) -> int:
    report = AccuracyHarness().run_suite(tags=args.tags)
    print(f"\n  Harness: {report.passed}/{report.total} passed, accuracy {report.overall_accuracy:.1%}")
    for item in report.common_errors:
        print(f"    {item['count']:>3}  {item['error']}")
    return 0 if report.failed == 0 else 1


COMMANDS = {
    "report": run_report,
    "start-job": run_start_job,
    "run-batch": run_batch,
    "resume": run_resume,
    "job-status": run_job_status,
    "cancel-job": run_cancel_job,
    "harness": run_harness,
}


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except JobNotFoundError as e:
        logger.error(str(e))
        return EXIT_NOT_FOUND
    except EngineError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


def _print_summary(summary: pd.DataFrame, records: pd.DataFrame):
    """Prints a clean summary table to the console."""
    if summary.empty:
        print("\n  No successful records to summarize.\n")
        return

    print("\n" + "=" * 80)
    print("  MONTHLY SPENDING SUMMARY")
    print("=" * 80)

    categories = [c.value for c in Category]
    for _, row in summary.iterrows():
        month = row["month"] or "(no date)"
        breakdown = ", ".join(f"{c}: {row[c]:,.0f}" for c in categories if row[c])
        print(f"    {month:10s}  {row['issuer']:12s}  {row['total']:>12,.0f}  ({breakdown})")

    successful = int(records["success"].sum())
    print(f"\n  Messages: {len(records):,}. Successful: {successful:,}. "
          f"Subscription candidates: {int(records['is_subscription_candidate'].sum()):,}.")
    print("=" * 80 + "\n")


if __name__ == "__main__":
    sys.exit(main())
