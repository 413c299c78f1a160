"""
accuracy_harness.py
--------------------
Parse-accuracy harness for the message classifier.

Builds cases from the sample messages embedded in the pattern tables, plus
a few fixed failure / edge cases, and scores classifier output against the
expected values:

    - Amount: exact match = 1, within the configured tolerance = partial credit
    - Currency: exact match
    - Merchant: case-insensitive containment

Cases run on a small bounded thread pool; this is the only place besides
MessageClassifier.classify_many that classifies concurrently.

All tolerances come from config.yaml.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

import pandas as pd

from config.config_loader import get_harness_config
from core.message_classifier import MessageClassifier
from core.models import ClassificationResult, InboundMessage, Kind

logger = logging.getLogger(__name__)


@dataclass
class HarnessCase:
    """One message with its expected classification."""
    case_id: str
    message: InboundMessage
    expect_success: bool
    kind: Kind | None = None
    pattern: str | None = None                # Signature the case belongs to
    amount: Decimal | None = None
    currency: str | None = None
    merchant: str | None = None
    min_confidence: float | None = None
    tags: List[str] = field(default_factory=list)


@dataclass
class CaseResult:
    case: HarnessCase
    result: ClassificationResult
    passed: bool
    accuracy: float
    errors: List[str] = field(default_factory=list)


@dataclass
class SuiteReport:
    """Full harness run."""
    total: int
    passed: int
    failed: int
    overall_accuracy: float
    average_ms: float
    results: List[CaseResult] = field(default_factory=list)
    by_kind: Dict[str, Dict[str, float]] = field(default_factory=dict)
    by_pattern: Dict[str, Dict[str, float]] = field(default_factory=dict)
    common_errors: List[Dict[str, Any]] = field(default_factory=list)
    generated_at: str = ""


class AccuracyHarness:
    """
    Runs the classifier against known-good samples.

    Usage:
        harness = AccuracyHarness()
        report = harness.run_suite()
        print(report.overall_accuracy)
    """

    def __init__(self, classifier: MessageClassifier | None = None, config: dict | None = None):
        self.config = config or get_harness_config()
        self.classifier = classifier or MessageClassifier()
        self.tolerance: float = self.config["amount_tolerance"]
        self.partial_credit: float = self.config["amount_partial_credit"]
        self.cases: List[HarnessCase] = self._build_default_cases()

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def add_case(self, case: HarnessCase) -> None:
        self.cases.append(case)

    def get_cases(self, tags: List[str] | None = None) -> List[HarnessCase]:
        if not tags:
            return list(self.cases)
        return [c for c in self.cases if any(tag in c.tags for tag in tags)]

    def run_case(self, case: HarnessCase) -> CaseResult:
        result = self.classifier.classify(case.message)
        errors = self._validate(case, result)
        return CaseResult(
            case=case,
            result=result,
            passed=not errors,
            accuracy=self.score(case, result),
            errors=errors,
        )

    def run_suite(self, tags: List[str] | None = None, max_workers: int | None = None) -> SuiteReport:
        """Runs every matching case on a bounded pool. Result order matches case order."""
        cases = self.get_cases(tags)
        max_workers = max_workers or self.config["max_workers"]
        logger.info(f"Running {len(cases)} harness cases with {max_workers} workers...")

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(self.run_case, cases))

        report = self._summarize(results)
        logger.info(
            f"Harness complete. Passed: {report.passed}/{report.total}. "
            f"Overall accuracy: {report.overall_accuracy:.1%}."
        )
        return report

    def run_performance(self, iterations: int = 100, max_workers: int = 5) -> Dict[str, float]:
        """Classifies one subscription sample repeatedly and reports timings and throughput."""
        case = next((c for c in self.cases if "subscription" in c.tags), None)
        if case is None:
            raise ValueError("No subscription sample available for performance testing")

        started = time.perf_counter()
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(lambda _: self.classifier.classify(case.message), range(iterations)))
        elapsed = time.perf_counter() - started

        timings = [r.processing_ms for r in results]
        return {
            "iterations": iterations,
            "average_ms": sum(timings) / len(timings) if timings else 0.0,
            "min_ms": min(timings) if timings else 0.0,
            "max_ms": max(timings) if timings else 0.0,
            "throughput_per_second": iterations / elapsed if elapsed > 0 else 0.0,
        }

    def analyze_accuracy(self, tags: List[str] | None = None) -> Dict[str, Any]:
        """Accuracy breakdown plus the cases under the low-accuracy threshold."""
        report = self.run_suite(tags, max_workers=1)
        low = [r for r in report.results if r.accuracy < self.config["low_accuracy_threshold"]]
        return {
            "overall_accuracy": report.overall_accuracy,
            "accuracy_by_pattern": {k: v["accuracy"] for k, v in report.by_pattern.items()},
            "accuracy_by_kind": {k: v["accuracy"] for k, v in report.by_kind.items()},
            "low_accuracy_cases": low,
            "recommendations": self._recommendations(low),
        }

    def score(self, case: HarnessCase, result: ClassificationResult) -> float:
        """0–1 field accuracy. A case expected to fail scores 1 when it does fail."""
        if not case.expect_success:
            return 0.0 if result.success else 1.0
        if not result.success or result.payload is None:
            return 0.0

        payload = result.payload
        score, total = 0.0, 0

        if case.amount is not None:
            total += 1
            if payload.amount == case.amount:
                score += 1
            elif abs(payload.amount - case.amount) / case.amount < Decimal(str(self.tolerance)):
                score += self.partial_credit

        if case.currency:
            total += 1
            if payload.currency == case.currency:
                score += 1

        if case.merchant:
            total += 1
            if case.merchant.lower() in payload.merchant.lower():
                score += 1

        return score / total if total else 1.0

    # -------------------------------------------------------------------------
    # INTERNAL: CASES
    # -------------------------------------------------------------------------

    def _build_default_cases(self) -> List[HarnessCase]:
        cases: List[HarnessCase] = []
        store = self.classifier.pattern_store

        for signature in store.all_signatures():
            prefix = "sub" if signature.kind == Kind.SUBSCRIPTION else "card"
            tag = "subscription" if signature.kind == Kind.SUBSCRIPTION else "credit_card"
            slug = signature.name.lower().replace(" ", "_")
            for i, sample in enumerate(signature.samples):
                expected = sample.expected
                cases.append(HarnessCase(
                    case_id=f"{prefix}_{slug}_{i}",
                    message=InboundMessage(
                        id=f"harness_{prefix}_{slug}_{i}",
                        subject=sample.subject,
                        sender=sample.sender,
                        received_at=None,
                        body=sample.body,
                    ),
                    expect_success=True,
                    kind=signature.kind,
                    pattern=signature.name,
                    amount=Decimal(expected["amount"]) if "amount" in expected else None,
                    currency=expected.get("currency"),
                    merchant=expected.get("merchant"),
                    min_confidence=signature.confidence,
                    tags=[tag, slug],
                ))

        cases.extend(self._error_cases())
        return cases

    @staticmethod
    def _error_cases() -> List[HarnessCase]:
        def message(case_id, subject, sender, body):
            return InboundMessage(id=case_id, subject=subject, sender=sender, received_at=None, body=body)

        return [
            HarnessCase(
                case_id="error_no_amount",
                message=message(
                    "harness_error_1", "Netflix - Account Update", "noreply@account.netflix.com",
                    "Your Netflix account settings have been updated. No payment information.",
                ),
                expect_success=False,
                tags=["error", "no_amount"],
            ),
            HarnessCase(
                case_id="error_invalid_amount",
                message=message(
                    "harness_error_2", "Payment Notification", "test@example.com",
                    "Payment amount: ¥abc,123 has been processed.",
                ),
                expect_success=False,
                tags=["error", "invalid_amount"],
            ),
            HarnessCase(
                case_id="edge_multiple_amounts",
                message=message(
                    "harness_error_3", "Payment Summary", "billing@example.com",
                    "Subtotal: ¥1,000, Tax: ¥100, Total: ¥1,500, Refund: ¥200",
                ),
                expect_success=True,
                tags=["edge_case", "multiple_amounts"],
            ),
        ]

    # -------------------------------------------------------------------------
    # INTERNAL: VALIDATION AND SUMMARY
    # -------------------------------------------------------------------------

    def _validate(self, case: HarnessCase, result: ClassificationResult) -> List[str]:
        errors: List[str] = []
        if case.expect_success != result.success:
            return [f"Expected success: {case.expect_success}, got: {result.success}"]
        if not result.success:
            return errors

        payload = result.payload
        if case.kind is not None and result.kind != case.kind:
            errors.append(f"Expected kind: {case.kind.value}, got: {result.kind.value}")
        if case.amount is not None and payload.amount != case.amount:
            if abs(payload.amount - case.amount) / case.amount > Decimal(str(self.tolerance)):
                errors.append(f"Expected amount: {case.amount}, got: {payload.amount}")
        if case.currency and payload.currency != case.currency:
            errors.append(f"Expected currency: {case.currency}, got: {payload.currency}")
        if case.min_confidence is not None and result.confidence < case.min_confidence:
            errors.append(f"Expected confidence: >= {case.min_confidence}, got: {result.confidence}")
        return errors

    def _summarize(self, results: List[CaseResult]) -> SuiteReport:
        if not results:
            return SuiteReport(0, 0, 0, 0.0, 0.0, generated_at=datetime.now().isoformat())

        df = pd.DataFrame([
            {
                "kind": r.case.kind.value if r.case.kind else None,
                "pattern": r.case.pattern,
                "passed": r.passed,
                "accuracy": r.accuracy,
                "ms": r.result.processing_ms,
            }
            for r in results
        ])

        errors = pd.Series([e for r in results for e in r.errors], dtype=object)
        common = errors.value_counts().head(5) if not errors.empty else pd.Series(dtype=int)

        passed = int(df["passed"].sum())
        return SuiteReport(
            total=len(df),
            passed=passed,
            failed=len(df) - passed,
            overall_accuracy=float(df["accuracy"].mean()),
            average_ms=float(df["ms"].mean()),
            results=results,
            by_kind=self._breakdown(df, "kind"),
            by_pattern=self._breakdown(df, "pattern"),
            common_errors=[{"error": e, "count": int(n)} for e, n in common.items()],
            generated_at=datetime.now().isoformat(),
        )

    @staticmethod
    def _breakdown(df: pd.DataFrame, column: str) -> Dict[str, Dict[str, float]]:
        grouped = df.dropna(subset=[column]).groupby(column).agg(
            passed=("passed", "sum"), total=("passed", "size"), accuracy=("accuracy", "mean")
        )
        return {
            key: {"passed": int(row["passed"]), "total": int(row["total"]), "accuracy": float(row["accuracy"])}
            for key, row in grouped.iterrows()
        }

    @staticmethod
    def _recommendations(low: List[CaseResult]) -> List[str]:
        prefixes = {error.split(":")[0] for r in low for error in r.errors}
        recommendations = []
        if "Expected amount" in prefixes:
            recommendations.append("Review the amount rules; a new amount notation is not covered.")
        if "Expected kind" in prefixes:
            recommendations.append("Review sender rules; messages are landing in the wrong pass.")
        if "Expected currency" in prefixes:
            recommendations.append("Add currency markers for the notation in the failing samples.")
        if not recommendations and low:
            recommendations.append("Low-accuracy cases found; inspect merchant extraction for these samples.")
        return recommendations
