"""
Commit Criteria Evaluator

AUTO    - generate as soon as a threshold fires
MANUAL  - always wait for an approver
HYBRID  - generate only while the bucket is below BOTH the amount and the
          claim-count thresholds; reaching either one requires approval
"""
from decimal import Decimal
from typing import Optional, List

from ..models.db_models import CommitMode
from ..models.domain import CriteriaSnapshot, CommitDecision


class CommitCriteriaEvaluator:

    def decide(self, bucket, criteria: CriteriaSnapshot) -> CommitDecision:
        if criteria.commit_mode == CommitMode.AUTO:
            return CommitDecision.AUTO_GENERATE

        if criteria.commit_mode == CommitMode.MANUAL:
            return CommitDecision.REQUIRE_APPROVAL

        # HYBRID: an unset sub-threshold places no limit
        amount = Decimal(bucket.total_amount or 0)
        count = bucket.claim_count or 0
        amount_limit: Optional[Decimal] = criteria.auto_commit_amount_threshold
        count_limit: Optional[int] = criteria.manual_approval_claim_threshold

        under_amount = amount_limit is None or amount < amount_limit
        under_count = count_limit is None or count < count_limit

        if under_amount and under_count:
            return CommitDecision.AUTO_GENERATE
        return CommitDecision.REQUIRE_APPROVAL

    def required_roles(self, criteria: CriteriaSnapshot) -> List[str]:
        """Roles allowed to approve; empty means any approver."""
        if criteria.commit_mode == CommitMode.AUTO:
            return []
        return [role.upper() for role in criteria.approval_roles]
