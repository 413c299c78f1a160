"""
subscription_refiner.py
------------------------
Cross-message subscription refinement.

Runs after a full window of messages has been classified. It answers one
question per (issuer, merchant) group:

    "Do these charges recur across months at a stable amount?"

Promoted groups get every member flagged as a subscription candidate, and
members still classified UNKNOWN become SUBSCRIPTION. Promotion never
demotes, and running the pass twice changes nothing further.

Design decisions:
    - Grouping key is (issuer, merchant_normalized), falling back to the
      display merchant when the normalized form is empty.
    - Only successful records carry an amount, so only they are grouped.
    - Months come from the received timestamp, else the extracted
      occurrence date. Unparseable dates yield "" and are not counted.
    - Overseas usage on the relaxed issuer gets a wider stddev threshold,
      because card-network FX conversion makes those amounts drift.
    - All thresholds are read from config.yaml.
"""

import logging
from typing import List

import numpy as np
import pandas as pd

from config.config_loader import get_refinement_config
from core.models import ClassifiedRecord, Kind, RefinementDecision
from core.normalizer import month_of

logger = logging.getLogger(__name__)


class SubscriptionRefiner:
    """
    Promotes recurring, stable-amount groups to subscriptions.

    Usage:
        refiner = SubscriptionRefiner()
        records = refiner.refine(records)
    """

    def __init__(self, config: dict | None = None):
        self.config = config or get_refinement_config()
        self.min_amounts: int = self.config["min_amounts"]
        self.min_distinct_months: int = self.config["min_distinct_months"]
        self.relaxed_issuer: str = self.config["relaxed_issuer"]
        self.overseas_marker: str = self.config["overseas_marker"]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def refine(self, records: List[ClassifiedRecord]) -> List[ClassifiedRecord]:
        """
        Applies promotion decisions to `records` in place.

        Returns:
            The same list, for chaining.
        """
        frame = self._to_frame(records)
        promoted_groups = 0

        for decision, positions in self._evaluate_groups(frame):
            if not decision.promoted:
                continue
            promoted_groups += 1
            for position in positions:
                record = records[position]
                record.is_subscription_candidate = True
                if record.kind == Kind.UNKNOWN:
                    record.kind = Kind.SUBSCRIPTION

        logger.info(f"Refinement complete. Records: {len(records):,}. Promoted groups: {promoted_groups:,}.")
        return records

    def evaluate(self, records: List[ClassifiedRecord]) -> List[RefinementDecision]:
        """Returns one decision per evaluated group without touching the records."""
        return [decision for decision, _ in self._evaluate_groups(self._to_frame(records))]

    # -------------------------------------------------------------------------
    # INTERNAL: DATA PREPARATION
    # -------------------------------------------------------------------------

    def _to_frame(self, records: List[ClassifiedRecord]) -> pd.DataFrame:
        rows = []
        for position, record in enumerate(records):
            if not record.success or record.amount is None:
                continue
            rows.append({
                "position": position,
                "issuer": record.issuer,
                "merchant_key": record.merchant_normalized or record.merchant,
                "amount": float(record.amount),
                "month": month_of(record.received_at, record.occurred_at),
                "merchant_raw": record.merchant_raw or "",
            })
        return pd.DataFrame(rows, columns=["position", "issuer", "merchant_key", "amount", "month", "merchant_raw"])

    # -------------------------------------------------------------------------
    # INTERNAL: GROUP EVALUATION
    # -------------------------------------------------------------------------

    def _evaluate_groups(self, frame: pd.DataFrame):
        """Yields (RefinementDecision, member positions) per group with enough amounts."""
        if frame.empty:
            return

        for (issuer, merchant_key), group in frame.groupby(["issuer", "merchant_key"], sort=False):
            amounts = group["amount"].to_numpy(dtype=float)
            amounts = amounts[~np.isnan(amounts)]
            if len(amounts) < self.min_amounts:
                continue

            mean_amount = float(np.mean(amounts))
            std_amount = float(np.std(amounts))  # population stddev (ddof=0)
            distinct_months = len({m for m in group["month"] if m})

            overseas = issuer == self.relaxed_issuer and any(
                self.overseas_marker in raw for raw in group["merchant_raw"]
            )
            threshold = self._threshold(mean_amount, overseas)
            promoted = distinct_months >= self.min_distinct_months and std_amount <= threshold

            logger.debug(
                f"Group ({issuer}, {merchant_key}): n={len(amounts)}, mean={mean_amount:.2f}, "
                f"std={std_amount:.2f}, months={distinct_months}, threshold={threshold:.2f}, promoted={promoted}"
            )

            decision = RefinementDecision(
                issuer=issuer,
                merchant_key=merchant_key,
                member_count=len(group),
                mean_amount=mean_amount,
                std_amount=std_amount,
                distinct_months=distinct_months,
                threshold=threshold,
                overseas=overseas,
                promoted=promoted,
            )
            yield decision, group["position"].tolist()

    def _threshold(self, mean_amount: float, overseas: bool) -> float:
        if overseas:
            return max(self.config["relaxed_threshold_floor"], self.config["relaxed_threshold_ratio"] * mean_amount)
        return max(self.config["default_threshold_floor"], self.config["default_threshold_ratio"] * mean_amount)
