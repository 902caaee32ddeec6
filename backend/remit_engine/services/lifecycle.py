"""
Bucket Lifecycle Controller

Orchestrates what happens to an accumulating bucket once its counters move:

    threshold evaluation
        -> payer/payee configuration check   (gap -> MISSING_CONFIGURATION)
        -> commit criteria                   (approval -> PENDING_APPROVAL)
        -> payment instrument gate           (failure -> PENDING_APPROVAL)
        -> GENERATING

Callers own the unit of work: the controller only mutates rows in the
session it was given, the caller commits through commit() and then hands
GENERATING buckets to the generation handoff outside the per-key section.
A payment instrument reserved in a unit of work that is rolled back is
released back to the assigner.
"""
import logging
from datetime import datetime
from typing import Optional, List, Tuple

from ..models.db_models import BucketDB, BucketStatus, ActorType, PaymentStatus
from ..models.domain import (
    ThresholdEvaluation, CommitDecision, AssignmentResult, OperationResult, ErrorCode,
)
from .commit_criteria import CommitCriteriaEvaluator
from .configuration import PartyDirectory
from .generation import GenerationHandoff, truncate_error
from .state_machine import BucketStateMachine
from .thresholds import ThresholdEvaluator

logger = logging.getLogger(__name__)


class BucketLifecycleController:

    def __init__(self, db_session, context):
        self.db = db_session
        self.context = context
        self.state_machine = BucketStateMachine(db_session)
        self.threshold_evaluator = ThresholdEvaluator()
        self.criteria_evaluator = CommitCriteriaEvaluator()
        self.parties = PartyDirectory(db_session)
        # Instruments reserved since the last commit: (bucket id, reference)
        self._reserved: List[Tuple[str, str]] = []

    # =========================================================================
    # THRESHOLD PATH
    # =========================================================================

    def evaluate(self, bucket: BucketDB, now: Optional[datetime] = None) -> ThresholdEvaluation:
        """
        Evaluate an ACCUMULATING bucket and apply the resulting transition.

        Anything else is left alone, which is what makes repeated sweeps
        no-ops for buckets that already moved on.
        """
        if bucket.status != BucketStatus.ACCUMULATING:
            return ThresholdEvaluation(triggered=False, reason=f"bucket is {bucket.status.value}")

        now = now or self.context.clock.now()
        thresholds = self.context.config.thresholds_for_rule(bucket.bucketing_rule_id)
        evaluation = self.threshold_evaluator.evaluate(bucket, thresholds, now)
        if not evaluation.triggered:
            return evaluation

        bucket.triggered_threshold_id = evaluation.threshold_id
        self._route_triggered(bucket, evaluation, now)
        return evaluation

    def _route_triggered(self, bucket: BucketDB, evaluation: ThresholdEvaluation, now: datetime):
        detail = {
            "reason": evaluation.reason,
            "threshold_name": evaluation.threshold_name,
            "claim_count": bucket.claim_count,
            "total_amount": str(bucket.total_amount),
        }

        missing = self.missing_configuration(bucket)
        if missing:
            self._record_error(bucket, "; ".join(missing), now)
            logger.warning(f"Bucket {bucket.id} is missing configuration: {', '.join(missing)}")
            self.state_machine.transition(
                bucket, BucketStatus.MISSING_CONFIGURATION, "missing_configuration", ActorType.SYSTEM,
                threshold_id=evaluation.threshold_id, detail={**detail, "missing": missing}, now=now,
            )
            return

        criteria = self.context.config.criteria_for_rule(bucket.bucketing_rule_id)
        decision = self.criteria_evaluator.decide(bucket, criteria)
        detail["commit_mode"] = criteria.commit_mode.value
        detail["decision"] = decision.value

        if decision == CommitDecision.REQUIRE_APPROVAL:
            self.state_machine.transition(
                bucket, BucketStatus.PENDING_APPROVAL, "threshold_met", ActorType.SYSTEM,
                threshold_id=evaluation.threshold_id, detail=detail, now=now,
            )
            return

        assignment = self.assign_payment(bucket)
        if not assignment.success:
            # Claims are never dropped: fall back to a human decision
            self._record_error(bucket, assignment.message, now)
            self.state_machine.transition(
                bucket, BucketStatus.PENDING_APPROVAL, "payment_assignment_failed", ActorType.SYSTEM,
                threshold_id=evaluation.threshold_id,
                detail={**detail, "error_code": assignment.error_code.value, "error": assignment.message},
                now=now,
            )
            return

        self.state_machine.transition(
            bucket, BucketStatus.GENERATING, "threshold_met", ActorType.SYSTEM,
            threshold_id=evaluation.threshold_id, detail=detail, now=now,
        )

    # =========================================================================
    # SHARED GATES
    # =========================================================================

    def missing_configuration(self, bucket: BucketDB) -> List[str]:
        return self.parties.missing_configuration(bucket.payer_id, bucket.payee_id)

    def assign_payment(self, bucket: BucketDB) -> AssignmentResult:
        """Reserve a payment instrument if the bucket needs one and has none yet."""
        if not bucket.payment_required or bucket.payment_status == PaymentStatus.ASSIGNED:
            return AssignmentResult.assigned(bucket.payment_reference)

        try:
            result = self.context.payments.assign(bucket)
        except Exception as e:
            logger.error(f"Payment assignment raised for bucket {bucket.id}: {e}", exc_info=True)
            result = AssignmentResult.failed(f"Payment assignment error: {e}")

        if result.success:
            bucket.payment_status = PaymentStatus.ASSIGNED
            bucket.payment_reference = result.reference
            self._reserved.append((bucket.id, result.reference))
        else:
            if result.error_code is None:
                result.error_code = ErrorCode.ASSIGNMENT_FAILED
            logger.warning(
                f"Payment assignment failed for bucket {bucket.id}: {result.error_code.value} {result.message}"
            )
        return result

    def commit(self):
        """Commit the caller's unit of work; reserved instruments go back if it fails."""
        try:
            self.db.commit()
        except Exception:
            self.release_uncommitted()
            raise
        self._reserved = []

    def release_uncommitted(self):
        """Hand back instruments reserved in a unit of work that was rolled back."""
        reserved, self._reserved = self._reserved, []
        for bucket_id, reference in reserved:
            try:
                self.context.payments.release(bucket_id, reference)
            except Exception as e:
                logger.error(f"Could not release payment instrument {reference} for bucket {bucket_id}: {e}")

    def _record_error(self, bucket: BucketDB, message: Optional[str], now: datetime):
        bucket.last_error_message = truncate_error(message)
        bucket.last_error_at = now

    # =========================================================================
    # MISSING CONFIGURATION RECOVERY
    # =========================================================================

    def recheck_configuration(self, bucket: BucketDB, actor_name: str = "system",
                              actor: ActorType = ActorType.SYSTEM) -> OperationResult:
        """MISSING_CONFIGURATION -> PENDING_APPROVAL once payer and payee are configured."""
        if bucket.status != BucketStatus.MISSING_CONFIGURATION:
            return OperationResult.fail(
                ErrorCode.INVALID_STATE,
                f"Bucket is {bucket.status.value}, not MISSING_CONFIGURATION",
                bucket.id, bucket.status,
            )

        missing = self.missing_configuration(bucket)
        if missing:
            return OperationResult.fail(
                ErrorCode.VALIDATION, f"Still missing: {'; '.join(missing)}", bucket.id, bucket.status,
            )

        bucket.last_error_message = None
        self.state_machine.transition(
            bucket, BucketStatus.PENDING_APPROVAL, "configuration_supplied", actor, actor_name=actor_name,
            now=self.context.clock.now(),
        )
        return OperationResult.ok("Configuration complete; bucket awaits approval", bucket.id, bucket.status)

    # =========================================================================
    # GENERATION
    # =========================================================================

    def hand_off(self, bucket_id: str) -> OperationResult:
        """Run generation for a bucket committed in GENERATING."""
        return GenerationHandoff(self.db, self.context).generate(bucket_id)
