"""
message_classifier.py
----------------------
Message classification entry point.

Runs the classification passes in priority order against one inbound
message and folds their outcomes into a single ClassificationResult:

    - The first pass whose result is successful with confidence >= 0.7
      short-circuits the remaining passes.
    - Otherwise the generic fallback's outcome is returned, with confidence
      set to the maximum seen across all passes and every pass's errors kept.

classify() never raises. Unexpected failures resolve to success=False with
a "Parse error" entry.

Usage:
    classifier = MessageClassifier()
    result = classifier.classify(message)
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List

from classifiers.pattern_passes import get_all_passes
from config.config_loader import get_category_keywords, get_classification_config, get_refinement_config
from core.models import ClassificationResult, ClassifiedRecord, InboundMessage
from core.normalizer import FieldNormalizer
from core.pattern_store import PatternStore

logger = logging.getLogger(__name__)


class MessageClassifier:
    """
    Classifies inbound notification messages.

    The pattern store and normalizer are injected at construction so tests
    can run isolated instances with different tables. Instances hold no
    per-message state and may be shared across threads.
    """

    def __init__(
        self,
        pattern_store: PatternStore | None = None,
        normalizer: FieldNormalizer | None = None,
        config: dict | None = None,
    ):
        self.config = config or get_classification_config()
        self.pattern_store = pattern_store or PatternStore.default()
        self.normalizer = normalizer or FieldNormalizer(home_currency=self.config["home_currency"])
        self.short_circuit_confidence: float = self.config["short_circuit_confidence"]
        self.passes = get_all_passes(self.pattern_store, self.normalizer, self.config)

        refinement = get_refinement_config()
        self.relaxed_issuer: str = refinement["relaxed_issuer"]
        self.overseas_marker: str = refinement["overseas_marker"]
        self.subscription_keywords: List[str] = [
            k.lower() for k in get_category_keywords()["subscription_keywords"]
        ]

    # -------------------------------------------------------------------------
    # PUBLIC INTERFACE
    # -------------------------------------------------------------------------

    def classify(self, message: InboundMessage) -> ClassificationResult:
        """
        Classifies one message.

        Returns:
            ClassificationResult. On success the payload carries amount,
            currency and merchant; on failure `errors` says why.
        """
        start = time.perf_counter()
        try:
            logger.debug(f"Classifying message {message.id}: {message.subject!r}")
            result = self._run_passes(message)
        except Exception as e:
            logger.warning(f"Parse error on message {message.id}: {e}")
            result = ClassificationResult.failure([f"Parse error: {e}"])

        result.processing_ms = round((time.perf_counter() - start) * 1000, 3)
        return result

    def classify_record(self, message: InboundMessage) -> ClassifiedRecord:
        """Classifies one message and wraps it with its preliminary subscription flag."""
        result = self.classify(message)
        return ClassifiedRecord.from_classification(
            message, result, subscription_candidate=self.is_subscription_candidate(result)
        )

    def classify_many(self, messages: List[InboundMessage], max_workers: int | None = None) -> List[ClassificationResult]:
        """
        Classifies a list of messages on a bounded thread pool.

        Output order matches input order. A worker failure becomes an
        UNKNOWN result with a "Batch processing error" entry.
        """
        max_workers = max_workers or self.config["batch_max_workers"]
        if not messages:
            return []

        results: List[ClassificationResult] = []
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(self.classify, message) for message in messages]
            for future in futures:
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.error(f"Batch classification worker failed: {e}")
                    results.append(ClassificationResult.failure([f"Batch processing error: {e}"]))

        logger.info(
            f"Classified {len(messages):,} messages with {max_workers} workers. "
            f"Successful: {sum(1 for r in results if r.success):,}."
        )
        return results

    def is_subscription_candidate(self, result: ClassificationResult) -> bool:
        """
        Preliminary subscription flag, set before any cross-message evidence:
        overseas usage on the relaxed issuer, or a merchant name containing a
        known subscription keyword.
        """
        payload = result.payload
        if not result.success or payload is None:
            return False
        if payload.issuer == self.relaxed_issuer and self.overseas_marker in payload.merchant_raw:
            return True
        return any(keyword in payload.merchant_normalized for keyword in self.subscription_keywords)

    # -------------------------------------------------------------------------
    # INTERNAL: PASS ORCHESTRATION
    # -------------------------------------------------------------------------

    def _run_passes(self, message: InboundMessage) -> ClassificationResult:
        outcomes: List[ClassificationResult] = []

        for classification_pass in self.passes:
            outcome = classification_pass.run(message)
            outcomes.append(outcome)
            if outcome.success and outcome.confidence >= self.short_circuit_confidence:
                logger.debug(f"Message {message.id}: {classification_pass.name} pass matched {outcome.matched_pattern}")
                return outcome

        # No confident pass: the last (generic) outcome stands, with the
        # best confidence seen and every pass's errors.
        final = outcomes[-1]
        final.confidence = max(o.confidence for o in outcomes)
        final.errors = [error for o in outcomes for error in o.errors]
        return final
