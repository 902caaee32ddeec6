"""
Tests for ClaimAggregator against a real SQLite database.

1. Claims accumulate into one bucket per rule and grouping key
2. Structural rejections and unmatched claims never touch a bucket
3. Duplicate claim ids are not aggregated twice
4. Threshold -> commit criteria -> configuration -> payment routing
5. End-to-end: 5 x $100 with maxClaims=5 and AUTO yields one file
6. Concurrent claims for one key produce exactly one bucket
"""
import threading
import pytest
from decimal import Decimal

from conftest import PAYER, PAYEE


COUNT_5 = {"threshold_name": "five claims", "threshold_type": "CLAIM_COUNT", "max_claims": 5}
AUTO = {"criteria_name": "auto", "commit_mode": "AUTO"}
MANUAL = {"criteria_name": "manual", "commit_mode": "MANUAL"}


def _aggregator(db, context):
    from remit_engine.services.aggregator import ClaimAggregator
    return ClaimAggregator(db, context)


# =============================================================================
# TEST: ACCUMULATION
# =============================================================================

class TestAccumulation:

    def test_claims_share_a_bucket(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB, BucketStatus, ClaimOutcome
        configure()
        aggregator = _aggregator(db, context)

        first = aggregator.apply(make_event(paid="100.00"))
        second = aggregator.apply(make_event(paid="25.50", payer="acme-health"))

        assert first.outcome == ClaimOutcome.PROCESSED
        assert second.bucket_id == first.bucket_id
        bucket = db.query(BucketDB).one()
        assert bucket.status == BucketStatus.ACCUMULATING
        assert bucket.claim_count == 2
        assert bucket.total_amount == Decimal("125.50")
        assert bucket.grouping_key == f"{PAYER}|{PAYEE}"
        assert bucket.payer_name == "Acme Health"
        assert bucket.created_at == context.clock.now()

    def test_unknown_party_gets_friendly_name(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB
        configure(parties=False)

        _aggregator(db, context).apply(make_event(payer="blue-cross"))

        assert db.query(BucketDB).one().payer_name == "Blue cross"

    def test_different_keys_get_different_buckets(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB
        configure()
        aggregator = _aggregator(db, context)

        aggregator.apply(make_event(payee="CLINIC_ONE"))
        aggregator.apply(make_event(payee="CLINIC_TWO"))

        assert db.query(BucketDB).count() == 2

    def test_custom_rule_never_mixes_payers(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB
        configure(rule={"rule_name": "by status", "rule_type": "CUSTOM", "grouping_expression": "status"})
        aggregator = _aggregator(db, context)

        first = aggregator.apply(make_event(payer="PAYER_A", payee="P1"))
        second = aggregator.apply(make_event(payer="PAYER_B", payee="P2"))

        assert first.bucket_id != second.bucket_id
        buckets = {b.payer_id: b for b in db.query(BucketDB).all()}
        assert set(buckets) == {"PAYER_A", "PAYER_B"}
        assert buckets["PAYER_A"].payee_id == "P1"
        assert buckets["PAYER_B"].payee_id == "P2"
        assert all(b.claim_count == 1 for b in buckets.values())

    def test_bin_pcn_rule_keeps_claim_without_bin(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB, ClaimOutcome
        configure(rule={"rule_name": "BIN / PCN", "rule_type": "BIN_PCN"})
        aggregator = _aggregator(db, context)

        without_bin = aggregator.apply(make_event())
        with_bin = aggregator.apply(make_event(bin_number="610014", pcn_number="ADV"))

        assert without_bin.outcome == ClaimOutcome.PROCESSED
        assert with_bin.outcome == ClaimOutcome.PROCESSED
        keys = sorted(b.grouping_key for b in db.query(BucketDB).all())
        assert keys == [f"{PAYER}|{PAYEE}", f"{PAYER}|{PAYEE}|610014|ADV"]

    def test_apply_many_keeps_going_after_rejection(self, db, context, configure, make_event):
        from remit_engine.models.db_models import ClaimOutcome
        configure()

        results = _aggregator(db, context).apply_many([
            make_event(), make_event(paid="oops"), make_event(),
        ])

        assert [r.outcome for r in results] == [
            ClaimOutcome.PROCESSED, ClaimOutcome.REJECTED, ClaimOutcome.PROCESSED,
        ]


# =============================================================================
# TEST: REJECTIONS AND DUPLICATES
# =============================================================================

class TestRejections:

    def test_invalid_event_logged_and_no_bucket(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB, ClaimOutcome, ClaimProcessingLogDB
        configure()

        result = _aggregator(db, context).apply(make_event(paid="-5.00", claim_id="BAD-1"))

        assert result.outcome == ClaimOutcome.REJECTED
        assert "negative paid amount" in result.reason
        assert db.query(BucketDB).count() == 0
        log = db.query(ClaimProcessingLogDB).one()
        assert log.claim_id == "BAD-1"
        assert log.status == ClaimOutcome.REJECTED
        assert log.bucket_id is None

    def test_no_matching_rule(self, db, context, registry, make_event):
        from remit_engine.models.db_models import BucketDB, ClaimOutcome
        from remit_engine.services.bucketing import NO_MATCHING_RULE
        registry.create_bucketing_rule({
            "rule_name": "other payer only", "rule_type": "PAYER_PAYEE", "linked_payer_id": "OTHER",
        })

        result = _aggregator(db, context).apply(make_event())

        assert result.outcome == ClaimOutcome.REJECTED
        assert result.reason == NO_MATCHING_RULE
        assert db.query(BucketDB).count() == 0

    def test_duplicate_claim_not_aggregated_twice(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB, ClaimOutcome
        from remit_engine.services.aggregator import ALREADY_AGGREGATED
        configure()
        aggregator = _aggregator(db, context)

        first = aggregator.apply(make_event(claim_id="CLM-DUP"))
        again = aggregator.apply(make_event(claim_id="CLM-DUP"))

        assert again.outcome == ClaimOutcome.ACCEPTED
        assert again.reason == ALREADY_AGGREGATED
        assert again.bucket_id == first.bucket_id
        assert db.query(BucketDB).one().claim_count == 1

    def test_dedupe_can_be_disabled(self, db, make_context, configure, make_event):
        from dataclasses import replace
        from remit_engine.config import EngineSettings
        from remit_engine.models.db_models import BucketDB
        context = make_context(settings=replace(EngineSettings(), dedupe_claims=False))
        configure()
        aggregator = _aggregator(db, context)

        aggregator.apply(make_event(claim_id="CLM-DUP"))
        aggregator.apply(make_event(claim_id="CLM-DUP"))

        assert db.query(BucketDB).one().claim_count == 2


# =============================================================================
# TEST: THRESHOLD ROUTING
# =============================================================================

class TestThresholdRouting:

    def test_end_to_end_auto_generation(self, db, context, configure, make_event):
        """maxClaims=5, AUTO: the fifth $100 claim produces one file of 5 claims / $500."""
        from remit_engine.models.db_models import (
            BucketDB, BucketStatus, BucketStatusLogDB, DeliveryStatus, FileGenerationHistoryDB,
        )
        configure(threshold=COUNT_5, criteria=AUTO)
        aggregator = _aggregator(db, context)

        results = [aggregator.apply(make_event(paid="100.00")) for _ in range(5)]

        assert all(r.bucket_status == BucketStatus.ACCUMULATING for r in results[:4])
        assert results[4].bucket_status == BucketStatus.COMPLETED
        assert results[4].triggered_threshold_id is not None

        history = db.query(FileGenerationHistoryDB).one()
        assert results[4].file_id == history.id
        assert history.claim_count == 5
        assert history.total_amount == Decimal("500.00")
        assert history.delivery_status == DeliveryStatus.PENDING
        assert history.file_name.startswith(f"REMIT_{PAYER}_{PAYEE}_")

        bucket = db.query(BucketDB).one()
        assert bucket.triggered_threshold_id == results[4].triggered_threshold_id
        transitions = {(log.from_status, log.to_status) for log in db.query(BucketStatusLogDB).all()}
        assert transitions == {
            (BucketStatus.ACCUMULATING, BucketStatus.GENERATING),
            (BucketStatus.GENERATING, BucketStatus.COMPLETED),
        }

    def test_next_claim_after_trigger_opens_new_bucket(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB, BucketStatus
        configure(threshold=COUNT_5, criteria=MANUAL)
        aggregator = _aggregator(db, context)

        for _ in range(5):
            aggregator.apply(make_event())
        sixth = aggregator.apply(make_event())

        statuses = sorted(b.status.value for b in db.query(BucketDB).all())
        assert statuses == [BucketStatus.ACCUMULATING.value, BucketStatus.PENDING_APPROVAL.value]
        assert db.query(BucketDB).filter(BucketDB.id == sixth.bucket_id).one().claim_count == 1

    def test_manual_criteria_waits_for_approval(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB, BucketStatus
        configure(threshold=COUNT_5, criteria=MANUAL)
        aggregator = _aggregator(db, context)

        for _ in range(5):
            result = aggregator.apply(make_event())

        assert result.bucket_status == BucketStatus.PENDING_APPROVAL
        bucket = db.query(BucketDB).one()
        assert bucket.awaiting_approval_since == context.clock.now()

    def test_missing_configuration(self, db, context, configure, make_event):
        from remit_engine.models.db_models import BucketDB, BucketStatus
        configure(threshold=COUNT_5, criteria=AUTO, parties=False)
        aggregator = _aggregator(db, context)

        for _ in range(5):
            result = aggregator.apply(make_event())

        assert result.bucket_status == BucketStatus.MISSING_CONFIGURATION
        bucket = db.query(BucketDB).one()
        assert "payer ACME_HEALTH not configured" in bucket.last_error_message

    def test_auto_payment_failure_falls_back_to_approval(self, db, make_context, configure, make_event):
        from remit_engine.models.db_models import BucketDB, BucketStatus, BucketStatusLogDB, PaymentStatus
        from remit_engine.services.payments import InstrumentPoolAssigner
        context = make_context(payments=InstrumentPoolAssigner([]))
        configure(threshold=COUNT_5, criteria=AUTO)
        aggregator = _aggregator(db, context)

        for _ in range(5):
            result = aggregator.apply(make_event())

        assert result.bucket_status == BucketStatus.PENDING_APPROVAL
        bucket = db.query(BucketDB).one()
        assert bucket.claim_count == 5
        assert bucket.payment_required is True
        assert bucket.payment_status == PaymentStatus.PENDING
        assert bucket.last_error_message == "No payment instrument available"
        log = db.query(BucketStatusLogDB).one()
        assert log.trigger == "payment_assignment_failed"
        assert log.detail["error_code"] == "NO_AVAILABLE_RESOURCE"

    def test_auto_payment_assigned(self, db, make_context, configure, make_event):
        from remit_engine.models.db_models import BucketDB, BucketStatus
        from remit_engine.services.payments import InstrumentPoolAssigner
        context = make_context(payments=InstrumentPoolAssigner(["CHK-1001"]))
        configure(threshold=COUNT_5, criteria=AUTO)
        aggregator = _aggregator(db, context)

        for _ in range(5):
            result = aggregator.apply(make_event())

        assert result.bucket_status == BucketStatus.COMPLETED
        assert db.query(BucketDB).one().payment_reference == "CHK-1001"

    def test_conflict_retry_returns_reserved_instrument(self, db, make_context, configure, make_event, monkeypatch):
        from sqlalchemy.orm.exc import StaleDataError
        from remit_engine.models.db_models import BucketDB, BucketStatus
        from remit_engine.services.payments import InstrumentPoolAssigner
        pool = InstrumentPoolAssigner(["CHK-1001", "CHK-1002"])
        context = make_context(payments=pool)
        configure(threshold=COUNT_5, criteria=AUTO)
        aggregator = _aggregator(db, context)
        for _ in range(4):
            aggregator.apply(make_event())

        real_commit = db.commit
        commits = {"n": 0}

        def commit_losing_first_race():
            commits["n"] += 1
            if commits["n"] == 1:
                raise StaleDataError("bucket row changed")
            real_commit()

        monkeypatch.setattr(db, "commit", commit_losing_first_race)
        result = aggregator.apply(make_event())

        assert result.bucket_status == BucketStatus.COMPLETED
        bucket = db.query(BucketDB).one()
        assert bucket.claim_count == 5
        assert bucket.payment_reference == "CHK-1001"
        assert pool.available == 1

    def test_released_instrument_is_handed_out_first(self):
        from unittest.mock import MagicMock
        from remit_engine.services.payments import InstrumentPoolAssigner
        pool = InstrumentPoolAssigner(["CHK-1", "CHK-2"])

        reference = pool.assign(MagicMock(id="b1")).reference
        pool.release("b1", reference)

        assert pool.assign(MagicMock(id="b2")).reference == "CHK-1"


# =============================================================================
# TEST: CONCURRENCY
# =============================================================================

class TestConcurrentAggregation:

    def test_same_key_yields_one_bucket(self, session_factory, context, configure, make_event):
        """N concurrent claims for one key: exactly one bucket with claim_count N."""
        from remit_engine.models.db_models import BucketDB, ClaimOutcome
        from remit_engine.services.aggregator import ClaimAggregator
        configure()
        workers = 16
        events = [make_event(paid="10.00") for _ in range(workers)]
        barrier = threading.Barrier(workers)
        outcomes = []
        errors = []

        def submit(event):
            session = session_factory()
            try:
                barrier.wait()
                outcomes.append(ClaimAggregator(session, context).apply(event).outcome)
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=submit, args=(event,)) for event in events]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        assert outcomes == [ClaimOutcome.PROCESSED] * workers

        session = session_factory()
        try:
            buckets = session.query(BucketDB).all()
            assert len(buckets) == 1
            assert buckets[0].claim_count == workers
            assert buckets[0].total_amount == Decimal("10.00") * workers
        finally:
            session.close()

    def test_key_locks_are_shared_per_key(self):
        from remit_engine.services.store import BucketKeyLocks
        locks = BucketKeyLocks()

        with locks.hold("rule", "A|B"):
            with locks.hold("rule", "A|B"):
                pass
            with locks.hold("rule", "A|C"):
                pass

        assert len(locks) == 2
