"""
File Generation Handoff

Runs once per GENERATING transition:
    composer succeeds -> FileGenerationHistory(PENDING) row + COMPLETED
    composer raises   -> FAILED, no history row

One file per bucket is enforced by the unique bucket_id on the history
table, so a recovery re-run racing an in-flight generation cannot produce
a second file.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, List
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..models.db_models import (
    BucketStatus, ActorType, ClaimOutcome, ClaimProcessingLogDB, FileGenerationHistoryDB,
    DeliveryStatus,
)
from ..models.domain import OperationResult, ErrorCode
from .state_machine import BucketStateMachine
from .store import BucketStore, FileHistoryStore

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


def truncate_error(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    return message if len(message) <= MAX_ERROR_LENGTH else message[:MAX_ERROR_LENGTH]


# =============================================================================
# COMPOSERS
# =============================================================================

@dataclass
class ComposedFile:
    file_name: str
    content: bytes


class FileComposer(ABC):
    """Renders a bucket and its claims into a remittance file."""

    @abstractmethod
    def compose(self, bucket, claims: List[ClaimProcessingLogDB]) -> ComposedFile:
        pass


class ManifestComposer(FileComposer):
    """
    JSON manifest standing in for the wire encoder.

    Carries the bucket summary and the processed claim ids so a delivered
    file can be reconciled against the claim log.
    """

    def compose(self, bucket, claims: List[ClaimProcessingLogDB]) -> ComposedFile:
        stamp = bucket.generation_started_at or bucket.last_updated
        file_name = f"REMIT_{bucket.payer_id}_{bucket.payee_id}_{stamp.strftime('%Y%m%d%H%M%S')}.json"

        manifest = {
            "bucket_id": bucket.id,
            "bucketing_rule": bucket.bucketing_rule_name,
            "grouping_key": bucket.grouping_key,
            "payer": {"id": bucket.payer_id, "name": bucket.payer_name},
            "payee": {"id": bucket.payee_id, "name": bucket.payee_name},
            "claim_count": bucket.claim_count,
            "total_amount": str(Decimal(bucket.total_amount or 0).quantize(Decimal("0.01"))),
            "payment_reference": bucket.payment_reference,
            "claims": [
                {
                    "claim_id": claim.claim_id,
                    "paid_amount": str(claim.paid_amount) if claim.paid_amount is not None else None,
                    "charge_amount": str(claim.claim_amount) if claim.claim_amount is not None else None,
                }
                for claim in claims
            ],
        }
        return ComposedFile(file_name=file_name, content=json.dumps(manifest, indent=2).encode("utf-8"))


# =============================================================================
# HANDOFF
# =============================================================================

class GenerationHandoff:
    """Turns a GENERATING bucket into a file history row."""

    def __init__(self, db_session, context):
        self.db = db_session
        self.context = context
        self.store = BucketStore(db_session)
        self.files = FileHistoryStore(db_session)
        self.state_machine = BucketStateMachine(db_session)

    def _processed_claims(self, bucket_id: str) -> List[ClaimProcessingLogDB]:
        return self.db.query(ClaimProcessingLogDB).filter(
            ClaimProcessingLogDB.bucket_id == bucket_id,
            ClaimProcessingLogDB.status == ClaimOutcome.PROCESSED,
        ).order_by(ClaimProcessingLogDB.processed_at, ClaimProcessingLogDB.id).all()

    def generate(self, bucket_id: str, generated_by: str = "system") -> OperationResult:
        bucket = self.store.get(bucket_id)
        if bucket is None:
            return OperationResult.fail(ErrorCode.NOT_FOUND, f"Bucket {bucket_id} not found", bucket_id)
        if bucket.status != BucketStatus.GENERATING:
            return OperationResult.fail(
                ErrorCode.INVALID_STATE,
                f"Bucket is {bucket.status.value}, not GENERATING",
                bucket_id, bucket.status,
            )

        now = self.context.clock.now()

        # A file already exists: an earlier run died after writing it
        existing = self.files.get_for_bucket(bucket_id)
        if existing is not None:
            self.state_machine.transition(
                bucket, BucketStatus.COMPLETED, "generation_recovered", ActorType.SYSTEM,
                actor_name=generated_by, detail={"file_id": existing.id}, now=now,
            )
            self.db.commit()
            return OperationResult.ok("File already generated", bucket_id, BucketStatus.COMPLETED, file_id=existing.id)

        try:
            composed = self.context.composer.compose(bucket, self._processed_claims(bucket_id))
        except Exception as e:
            logger.error(f"File generation failed for bucket {bucket_id}: {e}", exc_info=True)
            self.db.rollback()
            bucket = self.store.get(bucket_id)
            error = truncate_error(f"{type(e).__name__}: {e}")
            bucket.last_error_message = error
            self.state_machine.transition(
                bucket, BucketStatus.FAILED, "generation_failed", ActorType.SYSTEM,
                actor_name=generated_by, detail={"error": error}, now=now,
            )
            self.db.commit()
            return OperationResult.fail(
                ErrorCode.GENERATION_FAILED, f"Generation failed: {error}", bucket_id, BucketStatus.FAILED,
            )

        history = FileGenerationHistoryDB(
            id=str(uuid4()),
            bucket_id=bucket.id,
            file_name=composed.file_name,
            file_size_bytes=len(composed.content),
            file_content=composed.content,
            claim_count=bucket.claim_count,
            total_amount=bucket.total_amount,
            generated_at=now,
            generated_by=generated_by,
            delivery_status=DeliveryStatus.PENDING,
            delivery_attempt_count=0,
        )
        try:
            self.files.add(history)
            self.state_machine.transition(
                bucket, BucketStatus.COMPLETED, "file_generated", ActorType.SYSTEM,
                actor_name=generated_by, detail={"file_id": history.id, "file_name": history.file_name}, now=now,
            )
            self.db.commit()
        except (IntegrityError, StaleDataError) as e:
            self.db.rollback()
            logger.warning(f"Concurrent generation detected for bucket {bucket_id}: {e}")
            return OperationResult.fail(ErrorCode.CONFLICT, "Bucket was generated concurrently", bucket_id)

        logger.info(
            f"Generated {history.file_name} for bucket {bucket_id}: "
            f"{history.claim_count} claims, total {history.total_amount}"
        )
        return OperationResult.ok("File generated", bucket_id, BucketStatus.COMPLETED, file_id=history.id)
