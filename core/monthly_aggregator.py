"""
monthly_aggregator.py
----------------------
Monthly spending report.

Folds refined records into one MonthlySummary per (month, issuer). This is
a pure function of its input: summaries are recomputed on demand and never
persisted.

Category rules, in order:
    1. Transport keyword in the normalized merchant  → Transport
    2. Food keyword in the merchant                  → Food
    3. Refined kind SUBSCRIPTION, or candidate flag  → Subscription
    4. Otherwise                                     → Other
"""

import logging
from typing import Dict, List, Tuple

import pandas as pd

from config.config_loader import get_category_keywords
from core.models import Category, ClassifiedRecord, Kind, MonthlySummary
from core.normalizer import month_of

logger = logging.getLogger(__name__)


class MonthlyAggregator:
    """
    Aggregates successful records by (month, issuer).

    Usage:
        aggregator = MonthlyAggregator()
        summaries = aggregator.aggregate(records)
        df = aggregator.to_frame(summaries)
    """

    def __init__(self, keywords: Dict[str, List[str]] | None = None):
        keywords = keywords or get_category_keywords()
        self.transport_keywords = [k.lower() for k in keywords["transport_keywords"]]
        self.food_keywords = list(keywords["food_keywords"])

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def aggregate(self, records: List[ClassifiedRecord]) -> List[MonthlySummary]:
        """
        Returns summaries sorted by month, then issuer. A record with no
        derivable date lands under month "".
        """
        summaries: Dict[Tuple[str, str], MonthlySummary] = {}

        for record in records:
            if not record.success or record.amount is None:
                continue

            month = month_of(record.received_at, record.occurred_at)
            key = (month, record.issuer)
            summary = summaries.get(key)
            if summary is None:
                summary = MonthlySummary(month=month, issuer=record.issuer)
                summaries[key] = summary

            category = self.categorize(record)
            summary.total += record.amount
            summary.by_category[category] += record.amount
            summary.transaction_count += 1

        return [summaries[key] for key in sorted(summaries)]

    def categorize(self, record: ClassifiedRecord) -> Category:
        normalized = record.merchant_normalized or ""
        if any(keyword in normalized for keyword in self.transport_keywords):
            return Category.TRANSPORT

        merchant = record.merchant or ""
        lowered = merchant.lower()
        if any(keyword in merchant or keyword.lower() in lowered for keyword in self.food_keywords):
            return Category.FOOD

        if record.kind == Kind.SUBSCRIPTION or record.is_subscription_candidate:
            return Category.SUBSCRIPTION
        return Category.OTHER

    @staticmethod
    def to_frame(summaries: List[MonthlySummary]) -> pd.DataFrame:
        """Flattens summaries into a report DataFrame, one row per (month, issuer)."""
        columns = ["month", "issuer", "total"] + [c.value for c in Category] + ["transaction_count"]
        if not summaries:
            return pd.DataFrame(columns=columns)

        rows = []
        for s in summaries:
            row = {"month": s.month, "issuer": s.issuer, "total": float(s.total)}
            for category in Category:
                row[category.value] = float(s.by_category[category])
            row["transaction_count"] = s.transaction_count
            rows.append(row)

        return pd.DataFrame(rows, columns=columns)
