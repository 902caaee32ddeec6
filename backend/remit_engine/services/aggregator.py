"""
Claim Aggregator

Applies one change event to its bucket:

1. Structural validation (never touches a bucket on failure)
2. Rule resolution
3. Inside the key's exclusive section, as one unit of work:
   duplicate guard -> fetch-or-create ACCUMULATING bucket -> counters
   -> PROCESSED log -> threshold evaluation and transition -> commit
4. Outside the section: generation handoff if the bucket went GENERATING
"""
import logging
from decimal import Decimal
from typing import Optional, List
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..models.db_models import BucketStatus, ClaimOutcome, ClaimProcessingLogDB, PaymentStatus
from ..models.domain import (
    ChangeEvent, ValidatedClaim, AggregationResult, ConcurrentModificationError, parse_amount,
)
from ..utils.identifiers import normalize_party_id, friendly_name
from .bucketing import BucketingResolver, BucketAssignment, validate_change_event, NO_MATCHING_RULE
from .configuration import PartyDirectory
from .lifecycle import BucketLifecycleController
from .store import BucketStore

logger = logging.getLogger(__name__)

MAX_CONFLICT_RETRIES = 3
ALREADY_AGGREGATED = "already aggregated"


def _safe_amount(value) -> Optional[Decimal]:
    try:
        return parse_amount(value)
    except ValueError:
        return None


class ClaimAggregator:

    def __init__(self, db_session, context):
        self.db = db_session
        self.context = context
        self.store = BucketStore(db_session)
        self.parties = PartyDirectory(db_session)
        self.resolver = BucketingResolver(context.config)
        self.controller = BucketLifecycleController(db_session, context)

    def apply(self, event: ChangeEvent) -> AggregationResult:
        validation = validate_change_event(event)
        if not validation.valid:
            reason = "; ".join(validation.errors)
            return self._reject(event, reason)

        claim: ValidatedClaim = validation.value
        assignment = self.resolver.resolve(claim)
        if assignment is None:
            return self._reject(event, NO_MATCHING_RULE, claim)

        result = None
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            try:
                with self.context.locks.hold(assignment.rule.id, assignment.grouping_key):
                    result = self._apply_locked(claim, assignment)
                break
            except (IntegrityError, StaleDataError) as e:
                self.controller.release_uncommitted()
                self.db.rollback()
                logger.warning(
                    f"Conflict applying claim {claim.claim_id} (attempt {attempt}/{MAX_CONFLICT_RETRIES}): {e}"
                )
        if result is None:
            raise ConcurrentModificationError(
                f"Claim {claim.claim_id} could not be applied after {MAX_CONFLICT_RETRIES} attempts"
            )

        if result.bucket_status == BucketStatus.GENERATING:
            handoff = self.controller.hand_off(result.bucket_id)
            result.bucket_status = handoff.status or result.bucket_status
            result.file_id = handoff.file_id

        return result

    def apply_many(self, events: List[ChangeEvent]) -> List[AggregationResult]:
        """Apply events in order; one bad event does not stop the batch."""
        return [self.apply(event) for event in events]

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _already_processed(self, claim_id: str) -> Optional[ClaimProcessingLogDB]:
        return self.db.query(ClaimProcessingLogDB).filter(
            ClaimProcessingLogDB.claim_id == claim_id,
            ClaimProcessingLogDB.status == ClaimOutcome.PROCESSED,
        ).first()

    def _bucket_attributes(self, claim: ValidatedClaim):
        payer = self.parties.get_payer(claim.payer_id)
        payee = self.parties.get_payee(claim.payee_id)
        return {
            "payer_id": claim.payer_id,
            "payer_name": payer.payer_name if payer else friendly_name(claim.raw_payer_id, "Payer"),
            "payee_id": claim.payee_id,
            "payee_name": payee.payee_name if payee else friendly_name(claim.raw_payee_id, "Payee"),
            "bin_number": claim.bin_number,
            "pcn_number": claim.pcn_number,
        }

    def _apply_locked(self, claim: ValidatedClaim, assignment: BucketAssignment) -> AggregationResult:
        now = self.context.clock.now()

        if self.context.settings.dedupe_claims:
            previous = self._already_processed(claim.claim_id)
            if previous is not None:
                self.db.add(self._log(claim, ClaimOutcome.ACCEPTED, previous.bucket_id, ALREADY_AGGREGATED, now))
                self.db.commit()
                logger.info(f"Claim {claim.claim_id} already aggregated into bucket {previous.bucket_id}")
                return AggregationResult(
                    claim_id=claim.claim_id,
                    outcome=ClaimOutcome.ACCEPTED,
                    bucket_id=previous.bucket_id,
                    reason=ALREADY_AGGREGATED,
                )

        bucket, created = self.store.get_or_create_accumulating(
            assignment.rule.id,
            assignment.rule.rule_name,
            assignment.grouping_key,
            now,
            self._bucket_attributes(claim),
        )
        if created and self.context.payments.requires_payment(bucket):
            bucket.payment_required = True
            bucket.payment_status = PaymentStatus.PENDING

        bucket.claim_count = (bucket.claim_count or 0) + 1
        bucket.total_amount = Decimal(bucket.total_amount or 0) + claim.paid_amount
        bucket.last_updated = now

        self.db.add(self._log(claim, ClaimOutcome.PROCESSED, bucket.id, None, now))

        evaluation = self.controller.evaluate(bucket, now)
        self.controller.commit()

        logger.debug(
            f"Claim {claim.claim_id} -> bucket {bucket.id} "
            f"(count={bucket.claim_count}, total={bucket.total_amount}, status={bucket.status.value})"
        )
        return AggregationResult(
            claim_id=claim.claim_id,
            outcome=ClaimOutcome.PROCESSED,
            bucket_id=bucket.id,
            bucket_status=bucket.status,
            triggered_threshold_id=evaluation.threshold_id if evaluation.triggered else None,
        )

    def _log(self, claim: ValidatedClaim, outcome: ClaimOutcome, bucket_id: Optional[str],
             reason: Optional[str], now) -> ClaimProcessingLogDB:
        return ClaimProcessingLogDB(
            id=str(uuid4()),
            claim_id=claim.claim_id,
            bucket_id=bucket_id,
            payer_id=claim.payer_id,
            payee_id=claim.payee_id,
            claim_amount=claim.total_charge_amount,
            paid_amount=claim.paid_amount,
            claim_status=claim.status,
            status=outcome,
            rejection_reason=reason,
            processed_at=now,
        )

    def _reject(self, event: ChangeEvent, reason: str, claim: Optional[ValidatedClaim] = None) -> AggregationResult:
        """Log a REJECTED outcome; no bucket is touched."""
        claim_id = str(event.claim_id).strip() if event.claim_id is not None else ""
        if claim is not None:
            payer_id, payee_id = claim.payer_id, claim.payee_id
        else:
            payer_id = normalize_party_id(str(event.payer_id)) if event.payer_id else None
            payee_id = normalize_party_id(str(event.payee_id)) if event.payee_id else None

        log = ClaimProcessingLogDB(
            id=str(uuid4()),
            claim_id=claim_id or "UNKNOWN",
            bucket_id=None,
            payer_id=payer_id,
            payee_id=payee_id,
            claim_amount=_safe_amount(event.total_charge_amount),
            paid_amount=_safe_amount(event.paid_amount),
            claim_status=event.status,
            status=ClaimOutcome.REJECTED,
            rejection_reason=reason,
            processed_at=self.context.clock.now(),
        )
        self.db.add(log)
        self.db.commit()
        logger.warning(f"Rejected claim {claim_id or '<missing id>'}: {reason}")
        return AggregationResult(claim_id=claim_id or None, outcome=ClaimOutcome.REJECTED, reason=reason)
