"""
Approval Workflow

Human-in-the-loop operations on buckets:
- approve        PENDING_APPROVAL -> GENERATING | MISSING_CONFIGURATION
- reject         PENDING_APPROVAL -> ACCUMULATING | FAILED (policy)
- bulk_approve   approve per id, independent outcomes
- reset          FAILED -> ACCUMULATING | PENDING_APPROVAL (operator override)
- recheck_configuration  MISSING_CONFIGURATION -> PENDING_APPROVAL

Every action runs inside the bucket key's exclusive section, the same one
the aggregator uses, so a bucket cannot be approved and rejected at once.
An approval whose payment assignment fails is rolled back completely.
"""
import logging
from datetime import datetime
from typing import Optional, List
from uuid import uuid4

from sqlalchemy.orm.exc import StaleDataError

from ..config import RejectionPolicy
from ..models.db_models import (
    BucketDB, BucketStatus, ActorType, ApprovalAction, BucketApprovalLogDB,
)
from ..models.domain import (
    OperationResult, BulkApprovalResult, ErrorCode, InvalidBucketTransition,
)
from .lifecycle import BucketLifecycleController
from .state_machine import BucketStateMachine
from .store import BucketStore

logger = logging.getLogger(__name__)


class ApprovalWorkflow:

    def __init__(self, db_session, context):
        self.db = db_session
        self.context = context
        self.store = BucketStore(db_session)
        self.state_machine = BucketStateMachine(db_session)
        self.controller = BucketLifecycleController(db_session, context)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _run_locked(self, bucket_id: str, action):
        """Load the bucket, enter its key section, refresh, run action(bucket)."""
        bucket = self.store.get(bucket_id)
        if bucket is None:
            return OperationResult.fail(ErrorCode.NOT_FOUND, f"Bucket {bucket_id} not found", bucket_id)

        rule_id, grouping_key = bucket.lock_key
        with self.context.locks.hold(rule_id, grouping_key):
            self.store.refresh(bucket)
            try:
                return action(bucket)
            except InvalidBucketTransition as e:
                self.controller.release_uncommitted()
                self.db.rollback()
                return OperationResult.fail(ErrorCode.INVALID_STATE, str(e), bucket_id)
            except StaleDataError:
                self.controller.release_uncommitted()
                self.db.rollback()
                logger.warning(f"Bucket {bucket_id} changed concurrently")
                return OperationResult.fail(ErrorCode.CONFLICT, "Bucket was modified concurrently", bucket_id)

    def _log_action(self, bucket: BucketDB, action: ApprovalAction, actor: str,
                    comments: Optional[str], now: datetime,
                    scheduled_generation_time: Optional[datetime] = None):
        self.db.add(BucketApprovalLogDB(
            id=str(uuid4()),
            bucket_id=bucket.id,
            action=action,
            actor=actor,
            comments=comments,
            scheduled_generation_time=scheduled_generation_time,
            created_at=now,
        ))

    def _finish(self, result: OperationResult) -> OperationResult:
        """Hand GENERATING buckets to generation once the approval is committed."""
        if not result.success or result.status != BucketStatus.GENERATING:
            return result
        handoff = self.controller.hand_off(result.bucket_id)
        if handoff.success:
            result.status = handoff.status
            result.file_id = handoff.file_id
            result.message = f"{result.message}; file generated"
        else:
            # The approval stays committed; the caller still sees the generation error
            result.success = False
            result.error_code = handoff.error_code
            result.status = handoff.status or result.status
            result.message = f"{result.message}; {handoff.message}"
        return result

    # =========================================================================
    # APPROVE
    # =========================================================================

    def approve(
        self,
        bucket_id: str,
        actor: str,
        comments: Optional[str] = None,
        actor_roles: Optional[List[str]] = None,
        scheduled_generation_time: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Approve a PENDING_APPROVAL bucket.

        actor_roles, when given, must intersect the criteria's approval roles.
        """
        if not (actor or "").strip():
            return OperationResult.fail(ErrorCode.VALIDATION, "Approver is required", bucket_id)

        def action(bucket: BucketDB) -> OperationResult:
            if bucket.status != BucketStatus.PENDING_APPROVAL:
                return OperationResult.fail(
                    ErrorCode.INVALID_STATE,
                    f"Bucket is {bucket.status.value}, not PENDING_APPROVAL",
                    bucket.id, bucket.status,
                )

            criteria = self.context.config.criteria_for_rule(bucket.bucketing_rule_id)
            required = self.controller.criteria_evaluator.required_roles(criteria)
            if required and actor_roles is not None:
                granted = {role.upper() for role in actor_roles}
                if not granted.intersection(required):
                    logger.warning(f"{actor} lacks approval role for bucket {bucket.id} (needs one of {required})")
                    return OperationResult.fail(
                        ErrorCode.UNAUTHORIZED,
                        f"Approver needs one of roles {required}",
                        bucket.id, bucket.status,
                    )

            now = self.context.clock.now()
            bucket.approved_by = actor
            bucket.approved_at = now
            self._log_action(bucket, ApprovalAction.APPROVE, actor, comments, now, scheduled_generation_time)

            missing = self.controller.missing_configuration(bucket)
            if missing:
                bucket.last_error_message = "; ".join(missing)
                self.state_machine.transition(
                    bucket, BucketStatus.MISSING_CONFIGURATION, "missing_configuration", ActorType.USER,
                    actor_name=actor, detail={"missing": missing}, now=now,
                )
                self.db.commit()
                logger.warning(f"Approved bucket {bucket.id} is missing configuration: {', '.join(missing)}")
                return OperationResult.ok(
                    f"Approved, but configuration is missing: {'; '.join(missing)}",
                    bucket.id, bucket.status,
                )

            assignment = self.controller.assign_payment(bucket)
            if not assignment.success:
                self.db.rollback()
                self.store.refresh(bucket)
                logger.warning(
                    f"Approval of bucket {bucket.id} rolled back: {assignment.error_code.value} {assignment.message}"
                )
                return OperationResult.fail(
                    assignment.error_code or ErrorCode.ASSIGNMENT_FAILED,
                    assignment.message or "Payment assignment failed",
                    bucket.id, bucket.status,
                )

            self.state_machine.transition(
                bucket, BucketStatus.GENERATING, "approved", ActorType.USER,
                actor_name=actor, detail={"comments": comments}, now=now,
            )
            self.controller.commit()
            logger.info(f"Bucket {bucket.id} approved by {actor}")
            return OperationResult.ok(f"Approved by {actor}", bucket.id, bucket.status)

        return self._finish(self._run_locked(bucket_id, action))

    def bulk_approve(
        self,
        bucket_ids: List[str],
        actor: str,
        comments: Optional[str] = None,
        actor_roles: Optional[List[str]] = None,
    ) -> BulkApprovalResult:
        """Approve each bucket on its own; one failure never undoes another."""
        summary = BulkApprovalResult()
        for bucket_id in bucket_ids:
            try:
                result = self.approve(bucket_id, actor, comments, actor_roles=actor_roles)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Bulk approval failed for bucket {bucket_id}: {e}", exc_info=True)
                result = OperationResult.fail(ErrorCode.CONFLICT, str(e), bucket_id)
            summary.add(result)

        logger.info(
            f"Bulk approval by {actor}: {summary.succeeded} succeeded, {summary.failed} failed of {summary.total}"
        )
        return summary

    # =========================================================================
    # REJECT
    # =========================================================================

    def reject(self, bucket_id: str, actor: str, reason: str) -> OperationResult:
        if not (reason or "").strip():
            return OperationResult.fail(ErrorCode.VALIDATION, "Rejection reason is required", bucket_id)
        if not (actor or "").strip():
            return OperationResult.fail(ErrorCode.VALIDATION, "Actor is required", bucket_id)

        def action(bucket: BucketDB) -> OperationResult:
            if bucket.status != BucketStatus.PENDING_APPROVAL:
                return OperationResult.fail(
                    ErrorCode.INVALID_STATE,
                    f"Bucket is {bucket.status.value}, not PENDING_APPROVAL",
                    bucket.id, bucket.status,
                )

            now = self.context.clock.now()
            self._log_action(bucket, ApprovalAction.REJECT, actor, reason, now)
            bucket.rejection_count = (bucket.rejection_count or 0) + 1

            target = BucketStatus.ACCUMULATING
            if self.context.settings.rejection_policy == RejectionPolicy.FAIL:
                target = BucketStatus.FAILED
            elif self.store.has_other_accumulating(bucket):
                # Only one ACCUMULATING bucket per key
                target = BucketStatus.FAILED

            if target == BucketStatus.FAILED:
                bucket.last_error_message = f"Rejected by {actor}: {reason}"
            self.state_machine.transition(
                bucket, target, "rejected", ActorType.USER,
                actor_name=actor, detail={"reason": reason}, now=now,
            )
            self.db.commit()
            logger.info(f"Bucket {bucket.id} rejected by {actor} -> {target.value}: {reason}")
            return OperationResult.ok(f"Rejected by {actor}", bucket.id, bucket.status)

        return self._run_locked(bucket_id, action)

    # =========================================================================
    # OPERATOR RECOVERY
    # =========================================================================

    def reset(self, bucket_id: str, actor: str, reason: Optional[str] = None) -> OperationResult:
        """Reopen a FAILED bucket for another run."""
        if not (actor or "").strip():
            return OperationResult.fail(ErrorCode.VALIDATION, "Actor is required", bucket_id)
        reason = (reason or "").strip() or "manual reset"

        def action(bucket: BucketDB) -> OperationResult:
            if bucket.status != BucketStatus.FAILED:
                return OperationResult.fail(
                    ErrorCode.INVALID_STATE,
                    f"Only FAILED buckets can be reset (bucket is {bucket.status.value})",
                    bucket.id, bucket.status,
                )

            now = self.context.clock.now()
            target = BucketStatus.ACCUMULATING
            if self.store.has_other_accumulating(bucket):
                target = BucketStatus.PENDING_APPROVAL

            self._log_action(bucket, ApprovalAction.OVERRIDE, actor, f"RESET: {reason}", now)
            bucket.last_error_message = None
            bucket.last_error_at = None
            self.state_machine.transition(
                bucket, target, "reset", ActorType.USER,
                actor_name=actor, detail={"reason": reason}, now=now, override=True,
            )
            self.db.commit()
            logger.info(f"Bucket {bucket.id} reset by {actor} -> {target.value}: {reason}")
            return OperationResult.ok(f"Reset to {target.value}", bucket.id, bucket.status)

        return self._run_locked(bucket_id, action)

    def recheck_configuration(self, bucket_id: str, actor: str = "system") -> OperationResult:
        actor_type = ActorType.SYSTEM if actor == "system" else ActorType.USER

        def action(bucket: BucketDB) -> OperationResult:
            result = self.controller.recheck_configuration(bucket, actor_name=actor, actor=actor_type)
            if result.success:
                self.db.commit()
                logger.info(f"Bucket {bucket.id} configuration complete; awaiting approval")
            else:
                self.db.rollback()
            return result

        return self._run_locked(bucket_id, action)
