"""
Threshold Evaluator

Decides whether an accumulating bucket is ready for generation.

OR across thresholds, and within a HYBRID threshold OR across whichever of
count / amount / time are configured. Thresholds are checked in creation
order and the first satisfied one is reported.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List

from ..models.db_models import ThresholdType, TimeDuration
from ..models.domain import ThresholdSnapshot, ThresholdEvaluation

logger = logging.getLogger(__name__)


TIME_DURATION_HOURS = {
    TimeDuration.DAILY: 24,
    TimeDuration.WEEKLY: 168,
    TimeDuration.BIWEEKLY: 336,
    TimeDuration.MONTHLY: 720,
}


def duration_for(time_duration: TimeDuration) -> timedelta:
    return timedelta(hours=TIME_DURATION_HOURS[time_duration])


class ThresholdEvaluator:
    """Stateless; safe to share between threads."""

    def count_reached(self, bucket, max_claims: Optional[int]) -> bool:
        return max_claims is not None and (bucket.claim_count or 0) >= max_claims

    def amount_reached(self, bucket, max_amount: Optional[Decimal]) -> bool:
        return max_amount is not None and Decimal(bucket.total_amount or 0) >= max_amount

    def time_reached(self, bucket, time_duration: Optional[TimeDuration], now: datetime) -> bool:
        # Never fires an empty bucket
        if time_duration is None or (bucket.claim_count or 0) <= 0 or bucket.created_at is None:
            return False
        return now - bucket.created_at >= duration_for(time_duration)

    def check(self, bucket, threshold: ThresholdSnapshot, now: datetime) -> Optional[str]:
        """Return a reason string if the threshold is satisfied, else None."""
        ttype = threshold.threshold_type

        if ttype in (ThresholdType.CLAIM_COUNT, ThresholdType.HYBRID):
            if self.count_reached(bucket, threshold.max_claims):
                return f"claim count {bucket.claim_count} >= {threshold.max_claims}"

        if ttype in (ThresholdType.AMOUNT, ThresholdType.HYBRID):
            if self.amount_reached(bucket, threshold.max_amount):
                return f"total amount {bucket.total_amount} >= {threshold.max_amount}"

        if ttype in (ThresholdType.TIME, ThresholdType.HYBRID):
            if self.time_reached(bucket, threshold.time_duration, now):
                return f"{threshold.time_duration.value} period elapsed since {bucket.created_at.isoformat()}"

        return None

    def evaluate(self, bucket, thresholds: List[ThresholdSnapshot], now: datetime) -> ThresholdEvaluation:
        if (bucket.claim_count or 0) <= 0:
            return ThresholdEvaluation(triggered=False, reason="bucket is empty")

        for threshold in thresholds:
            reason = self.check(bucket, threshold, now)
            if reason:
                logger.info(f"Threshold {threshold.threshold_name} met for bucket {bucket.id}: {reason}")
                return ThresholdEvaluation(
                    triggered=True,
                    threshold_id=threshold.id,
                    threshold_name=threshold.threshold_name,
                    reason=reason,
                )

        return ThresholdEvaluation(triggered=False)
