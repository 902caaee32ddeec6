"""
Tests for ApprovalWorkflow:
1. Approve hands the bucket to generation
2. Approver roles
3. Failed payment assignment rolls the approval back completely
4. Reject honours the rejection policy and the one-accumulating-bucket rule
5. Bulk approve reports per-bucket outcomes
6. Operator reset and configuration recheck
"""
import pytest
from decimal import Decimal

from conftest import PAYER, PAYEE


COUNT_5 = {"threshold_name": "five claims", "threshold_type": "CLAIM_COUNT", "max_claims": 5}
MANUAL = {"criteria_name": "manual", "commit_mode": "MANUAL"}


def _fill(db, context, make_event, claims=5, payee=PAYEE):
    """Push claims for one key; returns the id of the bucket they landed in."""
    from remit_engine.services.aggregator import ClaimAggregator
    aggregator = ClaimAggregator(db, context)
    result = None
    for _ in range(claims):
        result = aggregator.apply(make_event(payee=payee))
    return result.bucket_id


def _workflow(db, context):
    from remit_engine.services.approval import ApprovalWorkflow
    return ApprovalWorkflow(db, context)


def _bucket(db, bucket_id):
    from remit_engine.models.db_models import BucketDB
    db.expire_all()
    return db.query(BucketDB).filter(BucketDB.id == bucket_id).one()


# =============================================================================
# TEST: APPROVE
# =============================================================================

class TestApprove:

    def test_approve_generates_file(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketStatus, ApprovalAction, FileGenerationHistoryDB
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event)

        result = _workflow(db, context).approve(bucket_id, "alice", comments="looks right")

        assert result.success
        assert result.status == BucketStatus.COMPLETED
        history = db.query(FileGenerationHistoryDB).one()
        assert result.file_id == history.id
        bucket = _bucket(db, bucket_id)
        assert bucket.approved_by == "alice"
        assert bucket.awaiting_approval_since is None
        assert [(log.action, log.actor, log.comments) for log in bucket.approval_log] == [
            (ApprovalAction.APPROVE, "alice", "looks right"),
        ]

    def test_generation_failure_is_reported(self, db, make_context, configure, make_event):
        from remit_engine.models.db_models import BucketStatus, ApprovalAction
        from remit_engine.models.domain import ErrorCode

        class BrokenComposer:
            def compose(self, bucket, claims):
                raise IOError("disk full")

        context = make_context(composer=BrokenComposer())
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event)

        result = _workflow(db, context).approve(bucket_id, "alice")

        assert not result.success
        assert result.error_code == ErrorCode.GENERATION_FAILED
        assert result.status == BucketStatus.FAILED
        bucket = _bucket(db, bucket_id)
        assert bucket.approved_by == "alice"
        assert [log.action for log in bucket.approval_log] == [ApprovalAction.APPROVE]

    def test_approve_requires_pending_bucket(self, db, context, configure, make_event):
        from remit_engine.models.domain import ErrorCode
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event, claims=2)

        result = _workflow(db, context).approve(bucket_id, "alice")

        assert not result.success
        assert result.error_code == ErrorCode.INVALID_STATE

    def test_unknown_bucket(self, db, context):
        from remit_engine.models.domain import ErrorCode

        result = _workflow(db, context).approve("missing", "alice")

        assert result.error_code == ErrorCode.NOT_FOUND

    def test_blank_approver(self, db, context):
        from remit_engine.models.domain import ErrorCode
        assert _workflow(db, context).approve("any", "  ").error_code == ErrorCode.VALIDATION

    def test_roles_enforced(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketStatus
        from remit_engine.models.domain import ErrorCode
        configure(threshold=COUNT_5, criteria={**MANUAL, "approval_roles": ["FINANCE_MANAGER"]})
        bucket_id = _fill(db, context, make_event)
        workflow = _workflow(db, context)

        denied = workflow.approve(bucket_id, "bob", actor_roles=["clerk"])
        assert denied.error_code == ErrorCode.UNAUTHORIZED
        assert _bucket(db, bucket_id).status == BucketStatus.PENDING_APPROVAL

        allowed = workflow.approve(bucket_id, "carol", actor_roles=["finance_manager"])
        assert allowed.success
        assert allowed.status == BucketStatus.COMPLETED

    def test_approve_with_missing_configuration(self, db, context, configure, make_event, registry):
        from remit_engine.models.db_models import BucketStatus
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event)
        registry.upsert_payer({"payer_id": PAYER, "payer_name": "Acme Health", "sender_id": ""})

        result = _workflow(db, context).approve(bucket_id, "alice")

        assert result.success
        assert result.status == BucketStatus.MISSING_CONFIGURATION
        assert "has no sender id" in _bucket(db, bucket_id).last_error_message


class TestApprovalRollback:

    def test_assignment_failure_leaves_bucket_untouched(self, db, make_context, configure, make_event):
        """Empty instrument pool: approval fails and nothing about the bucket changes."""
        from remit_engine.models.db_models import BucketStatus, BucketApprovalLogDB, PaymentStatus
        from remit_engine.models.domain import ErrorCode
        from remit_engine.services.payments import InstrumentPoolAssigner
        pool = InstrumentPoolAssigner([])
        context = make_context(payments=pool)
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event)
        workflow = _workflow(db, context)

        result = workflow.approve(bucket_id, "alice")

        assert not result.success
        assert result.error_code == ErrorCode.NO_AVAILABLE_RESOURCE
        bucket = _bucket(db, bucket_id)
        assert bucket.status == BucketStatus.PENDING_APPROVAL
        assert bucket.claim_count == 5
        assert bucket.total_amount == Decimal("500.00")
        assert bucket.approved_by is None
        assert bucket.payment_status == PaymentStatus.PENDING
        assert db.query(BucketApprovalLogDB).count() == 0

        pool.restock(["CHK-2001"])
        retried = workflow.approve(bucket_id, "alice")

        assert retried.success
        assert retried.status == BucketStatus.COMPLETED
        bucket = _bucket(db, bucket_id)
        assert bucket.payment_status == PaymentStatus.ASSIGNED
        assert bucket.payment_reference == "CHK-2001"
        assert db.query(BucketApprovalLogDB).count() == 1


# =============================================================================
# TEST: REJECT
# =============================================================================

class TestReject:

    def test_reason_required(self, db, context):
        from remit_engine.models.domain import ErrorCode
        assert _workflow(db, context).reject("any", "alice", "   ").error_code == ErrorCode.VALIDATION

    def test_return_to_accumulating(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketStatus, ApprovalAction
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event)

        result = _workflow(db, context).reject(bucket_id, "alice", "wrong payee")

        assert result.success
        bucket = _bucket(db, bucket_id)
        assert bucket.status == BucketStatus.ACCUMULATING
        assert bucket.rejection_count == 1
        assert bucket.claim_count == 5
        assert bucket.approval_log[0].action == ApprovalAction.REJECT
        assert bucket.approval_log[0].comments == "wrong payee"

    def test_sibling_accumulating_forces_failed(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketStatus
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event)
        sibling_id = _fill(db, context, make_event, claims=1)
        assert sibling_id != bucket_id

        result = _workflow(db, context).reject(bucket_id, "alice", "hold")

        assert result.status == BucketStatus.FAILED
        assert _bucket(db, bucket_id).last_error_message == "Rejected by alice: hold"
        assert _bucket(db, sibling_id).status == BucketStatus.ACCUMULATING

    def test_fail_policy(self, db, make_context, configure, make_event):
        from dataclasses import replace
        from remit_engine.config import EngineSettings, RejectionPolicy
        from remit_engine.models.db_models import BucketStatus
        context = make_context(settings=replace(EngineSettings(), rejection_policy=RejectionPolicy.FAIL))
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event)

        result = _workflow(db, context).reject(bucket_id, "alice", "duplicate batch")

        assert result.status == BucketStatus.FAILED

    def test_reject_only_pending(self, db, context, configure, make_event):
        from remit_engine.models.domain import ErrorCode
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event, claims=1)

        assert _workflow(db, context).reject(bucket_id, "alice", "no").error_code == ErrorCode.INVALID_STATE


# =============================================================================
# TEST: BULK APPROVE
# =============================================================================

class TestBulkApprove:

    def test_independent_outcomes(self, db, context, configure, make_event, registry):
        from remit_engine.models.domain import ErrorCode
        configure(threshold=COUNT_5, criteria=MANUAL)
        registry.upsert_payee({"payee_id": "CLINIC_TWO", "payee_name": "Clinic Two"})
        first = _fill(db, context, make_event, payee="CLINIC_ONE")
        second = _fill(db, context, make_event, payee="CLINIC_TWO")

        summary = _workflow(db, context).bulk_approve([first, "missing", second], "alice")

        assert summary.total == 3
        assert summary.succeeded == 2
        assert summary.failed == 1
        assert [r.success for r in summary.results] == [True, False, True]
        assert summary.results[1].error_code == ErrorCode.NOT_FOUND


# =============================================================================
# TEST: RESET AND RECHECK
# =============================================================================

class TestReset:

    def _failed_bucket(self, db, make_context, configure, make_event):
        from dataclasses import replace
        from remit_engine.config import EngineSettings, RejectionPolicy
        context = make_context(settings=replace(EngineSettings(), rejection_policy=RejectionPolicy.FAIL))
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event)
        _workflow(db, context).reject(bucket_id, "alice", "bad batch")
        return context, bucket_id

    def test_reset_to_accumulating(self, db, make_context, configure, make_event):
        from remit_engine.models.db_models import BucketStatus, ApprovalAction
        context, bucket_id = self._failed_bucket(db, make_context, configure, make_event)

        result = _workflow(db, context).reset(bucket_id, "ops", "payer fixed")

        assert result.status == BucketStatus.ACCUMULATING
        bucket = _bucket(db, bucket_id)
        assert bucket.last_error_message is None
        overrides = [log for log in bucket.approval_log if log.action == ApprovalAction.OVERRIDE]
        assert len(overrides) == 1
        assert overrides[0].comments == "RESET: payer fixed"

    def test_reset_with_sibling_goes_to_approval(self, db, make_context, configure, make_event):
        from remit_engine.models.db_models import BucketStatus
        context, bucket_id = self._failed_bucket(db, make_context, configure, make_event)
        _fill(db, context, make_event, claims=1)

        result = _workflow(db, context).reset(bucket_id, "ops")

        assert result.status == BucketStatus.PENDING_APPROVAL
        assert _bucket(db, bucket_id).awaiting_approval_since == context.clock.now()

    def test_reset_only_failed(self, db, context, configure, make_event):
        from remit_engine.models.domain import ErrorCode
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event)

        assert _workflow(db, context).reset(bucket_id, "ops").error_code == ErrorCode.INVALID_STATE


class TestRecheckConfiguration:

    def test_recheck_after_parties_configured(self, db, context, configure, make_event, registry):
        from remit_engine.models.db_models import BucketStatus
        from remit_engine.models.domain import ErrorCode
        configure(threshold=COUNT_5, criteria=MANUAL, parties=False)
        bucket_id = _fill(db, context, make_event)
        assert _bucket(db, bucket_id).status == BucketStatus.MISSING_CONFIGURATION
        workflow = _workflow(db, context)

        still_missing = workflow.recheck_configuration(bucket_id)
        assert still_missing.error_code == ErrorCode.VALIDATION

        registry.upsert_payer({"payer_id": PAYER, "payer_name": "Acme Health", "sender_id": "ACME"})
        registry.upsert_payee({"payee_id": PAYEE, "payee_name": "Clinic One"})
        result = workflow.recheck_configuration(bucket_id, actor="ops")

        assert result.success
        assert result.status == BucketStatus.PENDING_APPROVAL
        assert _bucket(db, bucket_id).last_error_message is None

    def test_recheck_wrong_state(self, db, context, configure, make_event):
        from remit_engine.models.domain import ErrorCode
        configure(threshold=COUNT_5, criteria=MANUAL)
        bucket_id = _fill(db, context, make_event, claims=1)

        assert _workflow(db, context).recheck_configuration(bucket_id).error_code == ErrorCode.INVALID_STATE
