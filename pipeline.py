"""
pipeline.py
------------
Main orchestration layer for offline scans. Wires together:
    1. MessageClassifier     →  classifies each message into a ClassifiedRecord
    2. SubscriptionRefiner   →  promotes recurring, stable-amount groups
    3. MonthlyAggregator     →  folds records into (month, issuer) summaries

The batch job controller runs the same stages over a persisted job; this
class runs them in one pass over an in-memory list of messages.

Usage:
    from pipeline import ScanPipeline

    pipeline = ScanPipeline()
    summary_df = pipeline.run(messages)
"""

import logging
from typing import List

import pandas as pd

from core.message_classifier import MessageClassifier
from core.models import ClassifiedRecord, InboundMessage
from core.monthly_aggregator import MonthlyAggregator
from core.subscription_refiner import SubscriptionRefiner

logger = logging.getLogger(__name__)


RECORD_COLUMNS = [
    "message_id", "received_at", "sender", "subject", "success", "kind",
    "confidence", "amount", "currency", "merchant", "merchant_normalized",
    "issuer", "service_name", "occurred_at", "is_subscription_candidate",
    "matched_pattern", "errors",
]


class ScanPipeline:
    """
    End-to-end scan: classification → refinement → aggregation.

    Keeps the records from the last run so callers can export them next to
    the monthly summary.
    """

    def __init__(
        self,
        classifier: MessageClassifier | None = None,
        refiner: SubscriptionRefiner | None = None,
        aggregator: MonthlyAggregator | None = None,
    ):
        self.classifier = classifier or MessageClassifier()
        self.refiner = refiner or SubscriptionRefiner()
        self.aggregator = aggregator or MonthlyAggregator()
        self.records: List[ClassifiedRecord] = []

        logger.info(f"Pipeline initialized. Pattern store: {self.classifier.pattern_store!r}.")

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def run(self, messages: List[InboundMessage]) -> pd.DataFrame:
        """
        Run the full scan.

        Returns:
            Monthly summary DataFrame, one row per (month, issuer).
        """
        logger.info(f"Pipeline starting. Input: {len(messages):,} messages.")

        # --- Stage 1: Classification ---
        self.records = self.classify(messages)
        successful = sum(1 for r in self.records if r.success)
        logger.info(f"Stage 1 complete. Classified: {len(self.records):,}. Successful: {successful:,}.")

        # --- Stage 2: Subscription refinement ---
        self.refiner.refine(self.records)
        candidates = sum(1 for r in self.records if r.is_subscription_candidate)
        logger.info(f"Stage 2 complete. Subscription candidates: {candidates:,}.")

        # --- Stage 3: Monthly aggregation ---
        summaries = self.aggregator.aggregate(self.records)
        summary_df = self.aggregator.to_frame(summaries)
        logger.info(f"Pipeline complete. Summary rows: {len(summary_df):,}.")

        return summary_df

    def classify(self, messages: List[InboundMessage]) -> List[ClassifiedRecord]:
        """Stage 1 only. Records come back in input order."""
        results = self.classifier.classify_many(messages)
        return [
            ClassifiedRecord.from_classification(
                message, result, subscription_candidate=self.classifier.is_subscription_candidate(result)
            )
            for message, result in zip(messages, results)
        ]

    def records_frame(self) -> pd.DataFrame:
        """Flattens the records from the last run."""
        return serialize_records(self.records)


# =============================================================================
# OUTPUT SERIALIZATION
# =============================================================================

def serialize_records(records: List[ClassifiedRecord]) -> pd.DataFrame:
    """One row per record; failed records keep their errors and empty payload columns."""
    if not records:
        return pd.DataFrame(columns=RECORD_COLUMNS)

    rows = []
    for r in records:
        payload = r.result.payload
        rows.append({
            "message_id": r.message_id,
            "received_at": r.received_at.strftime("%Y-%m-%d %H:%M:%S") if r.received_at else "",
            "sender": r.sender,
            "subject": r.subject,
            "success": r.success,
            "kind": r.kind.value,
            "confidence": r.result.confidence,
            "amount": float(payload.amount) if payload else None,
            "currency": payload.currency if payload else "",
            "merchant": payload.merchant if payload else "",
            "merchant_normalized": payload.merchant_normalized if payload else "",
            "issuer": r.issuer,
            "service_name": (payload.service_name or "") if payload else "",
            "occurred_at": r.occurred_at or "",
            "is_subscription_candidate": r.is_subscription_candidate,
            "matched_pattern": r.result.matched_pattern,
            "errors": " | ".join(r.result.errors),
        })

    return pd.DataFrame(rows, columns=RECORD_COLUMNS)
