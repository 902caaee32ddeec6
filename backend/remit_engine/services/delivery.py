"""
Delivery Retry Coordinator

State machine on FileGenerationHistory.delivery_status:
    PENDING → DELIVERED
    PENDING → RETRY → ... → DELIVERED | FAILED

Backoff: attempt n (n >= 2) becomes eligible base_delay × 2^(n-2) after the
prior attempt. delivery_max_retry_attempts counts retries after the first
attempt, so with the default of 3 a failure of attempt 4 is final.

Every path (scheduled sweep, deliver-now, retry-all-failed) goes through
attempt_delivery(). An attempt is claimed with a compare-and-swap on the
row version before the upload, and no bucket lock is held while uploading.
With delivery disabled nothing is attempted and rows keep their status.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from sqlalchemy.orm.exc import StaleDataError

from ..models.db_models import DeliveryStatus, FileGenerationHistoryDB
from ..models.domain import DeliveryAttemptResult, ErrorCode, UploadResult
from .configuration import PartyDirectory
from .generation import truncate_error
from .store import BucketStore, FileHistoryStore

logger = logging.getLogger(__name__)

NO_DESTINATION = "No delivery destination configured"
DELIVERY_DISABLED = "Delivery is disabled"
ATTEMPTABLE = (DeliveryStatus.PENDING, DeliveryStatus.RETRY)


def compute_backoff_delay(attempt_number: int, base_delay_ms: int) -> int:
    """Milliseconds to wait before attempt_number, measured from the prior attempt."""
    if attempt_number < 2:
        return 0
    return base_delay_ms * (2 ** (attempt_number - 2))


class DeliveryRetryCoordinator:

    def __init__(self, db_session, context):
        self.db = db_session
        self.context = context
        self.files = FileHistoryStore(db_session)
        self.buckets = BucketStore(db_session)
        self.parties = PartyDirectory(db_session)

    @property
    def max_attempts(self) -> int:
        return 1 + self.context.settings.delivery_max_retry_attempts

    # =========================================================================
    # ATTEMPT
    # =========================================================================

    def attempt_delivery(
        self,
        file_id: str,
        respect_backoff: bool = True,
        force: bool = False,
        actor: str = "system",
    ) -> DeliveryAttemptResult:
        """
        Single entry point for delivery attempts.

        respect_backoff=False is deliver-now. force=True is operator recovery:
        it also accepts FAILED rows and ignores the attempt ceiling.
        """
        now = self.context.clock.now()
        history = self.files.get(file_id)
        if history is None:
            return DeliveryAttemptResult(
                file_id=file_id, success=False, error_code=ErrorCode.NOT_FOUND,
                error_message=f"File {file_id} not found",
            )

        if not self.context.settings.delivery_enabled:
            result = self._blocked(history, ErrorCode.INVALID_STATE, DELIVERY_DISABLED)
            result.skipped = True
            return result

        gate = self._check_gates(history, now, respect_backoff, force)
        if gate is not None:
            return gate

        attempt_number = (history.delivery_attempt_count or 0) + 1
        claimed = self.files.compare_and_swap(file_id, history.version, {
            "delivery_attempt_count": attempt_number,
            "last_attempt_at": now,
        })
        self.db.commit()
        if not claimed:
            logger.info(f"Delivery of {file_id} already claimed by another worker")
            return DeliveryAttemptResult(
                file_id=file_id, success=False, error_code=ErrorCode.CONFLICT,
                error_message="Delivery attempt already in progress", skipped=True,
            )

        history = self.files.get(file_id)
        upload = self._upload(history)
        return self._record_outcome(file_id, attempt_number, upload, now, actor)

    def _check_gates(self, history: FileGenerationHistoryDB, now: datetime,
                     respect_backoff: bool, force: bool) -> Optional[DeliveryAttemptResult]:
        status = history.delivery_status
        count = history.delivery_attempt_count or 0

        if status == DeliveryStatus.DELIVERED:
            return self._blocked(history, ErrorCode.INVALID_STATE, "File already delivered")
        if force:
            return None

        if status not in ATTEMPTABLE:
            return self._blocked(history, ErrorCode.INVALID_STATE, f"Delivery status is {status.value}")
        if count >= self.max_attempts:
            return self._blocked(
                history, ErrorCode.INVALID_STATE, f"Attempt limit reached ({count}/{self.max_attempts})",
            )
        if respect_backoff and history.next_attempt_at and now < history.next_attempt_at:
            result = self._blocked(history, None, f"Backoff until {history.next_attempt_at.isoformat()}")
            result.skipped = True
            return result
        return None

    def _blocked(self, history: FileGenerationHistoryDB, code: Optional[ErrorCode], message: str) -> DeliveryAttemptResult:
        return DeliveryAttemptResult(
            file_id=history.id,
            success=False,
            delivery_status=history.delivery_status,
            attempt_count=history.delivery_attempt_count or 0,
            error_message=message,
            error_code=code,
            next_attempt_at=history.next_attempt_at,
        )

    def _upload(self, history: FileGenerationHistoryDB) -> UploadResult:
        """Resolve the destination and call the transport. Never raises."""
        bucket = self.buckets.get(history.bucket_id)
        destination = self.parties.delivery_destination(bucket.payer_id) if bucket else None
        if destination is None:
            return UploadResult(success=False, message=NO_DESTINATION)

        try:
            result = self.context.transport.upload(history.file_content or b"", history.file_name, destination)
        except Exception as e:
            logger.warning(f"Transport error delivering {history.file_name}: {e}")
            return UploadResult(success=False, message=f"{type(e).__name__}: {e}")

        if result is None:
            return UploadResult(success=False, message="Transport returned no result")
        return result

    def _record_outcome(self, file_id: str, attempt_number: int, upload: UploadResult,
                        now: datetime, actor: str) -> DeliveryAttemptResult:
        history = self.files.get(file_id)
        try:
            if upload.success:
                history.delivery_status = DeliveryStatus.DELIVERED
                history.delivered_at = self.context.clock.now()
                history.delivered_by = actor
                history.error_message = None
                history.next_attempt_at = None
                logger.info(f"Delivered {history.file_name} on attempt {attempt_number}")
            else:
                history.error_message = truncate_error(upload.message or "Delivery failed")
                if attempt_number >= self.max_attempts:
                    history.delivery_status = DeliveryStatus.FAILED
                    history.next_attempt_at = None
                    logger.error(
                        f"Delivery of {history.file_name} failed permanently after {attempt_number} attempts: "
                        f"{history.error_message}"
                    )
                else:
                    delay_ms = compute_backoff_delay(attempt_number + 1, self.context.settings.delivery_base_delay_ms)
                    history.delivery_status = DeliveryStatus.RETRY
                    history.next_attempt_at = now + timedelta(milliseconds=delay_ms)
                    logger.warning(
                        f"Delivery of {history.file_name} failed (attempt {attempt_number}/{self.max_attempts}), "
                        f"retry after {delay_ms}ms: {history.error_message}"
                    )
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            logger.warning(f"File {file_id} changed during delivery; outcome not recorded")
            return DeliveryAttemptResult(
                file_id=file_id, success=False, error_code=ErrorCode.CONFLICT,
                error_message="File changed during delivery", attempt_count=attempt_number,
            )

        return DeliveryAttemptResult(
            file_id=file_id,
            success=upload.success,
            delivery_status=history.delivery_status,
            attempt_count=history.delivery_attempt_count,
            error_message=history.error_message,
            next_attempt_at=history.next_attempt_at,
        )

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def deliver_now(self, file_id: str, actor: str = "system") -> DeliveryAttemptResult:
        """Manual delivery: status and attempt gates apply, backoff does not."""
        return self.attempt_delivery(file_id, respect_backoff=False, actor=actor)

    def run_delivery_sweep(self) -> Dict[str, Any]:
        """Attempt every PENDING/RETRY file whose backoff has passed."""
        now = self.context.clock.now()
        if not self.context.settings.delivery_enabled:
            return {"run_date": now.isoformat(), "delivery_enabled": False, "files_due": 0,
                    "delivered": 0, "failed": 0, "errors": 0}

        file_ids = self.files.ids_due_for_delivery(now, self.context.settings.delivery_batch_size)

        delivered = []
        failed = []
        errors = []

        for file_id in file_ids:
            try:
                result = self.attempt_delivery(file_id)
                if result.success:
                    delivered.append(file_id)
                elif not result.skipped:
                    failed.append(result.to_dict())
            except Exception as e:
                self.db.rollback()
                logger.error(f"Delivery sweep failed for file {file_id}: {e}", exc_info=True)
                errors.append({"file_id": file_id, "error": str(e)})

        if file_ids:
            logger.info(
                f"Delivery sweep: {len(file_ids)} due, {len(delivered)} delivered, "
                f"{len(failed)} failed, {len(errors)} errors"
            )
        return {
            "run_date": now.isoformat(),
            "delivery_enabled": True,
            "files_due": len(file_ids),
            "delivered": len(delivered),
            "failed": len(failed),
            "errors": len(errors),
            "details": {
                "delivered": delivered,
                "failed": failed,
                "errors": errors,
            },
        }

    def retry_all_failed(self, actor: str = "system") -> Dict[str, Any]:
        """Operator override: one more attempt for every FAILED file."""
        now = self.context.clock.now()
        if not self.context.settings.delivery_enabled:
            logger.warning(f"Retry of failed deliveries requested by {actor} while delivery is disabled")
            return {"run_date": now.isoformat(), "delivery_enabled": False, "files_retried": 0,
                    "delivered": 0, "still_failed": len(self.files.ids_by_status(DeliveryStatus.FAILED)),
                    "details": []}

        file_ids = self.files.ids_by_status(DeliveryStatus.FAILED)

        results: List[Dict[str, Any]] = []
        delivered = 0
        for file_id in file_ids:
            try:
                result = self.attempt_delivery(file_id, respect_backoff=False, force=True, actor=actor)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Retry failed for file {file_id}: {e}", exc_info=True)
                results.append({"file_id": file_id, "success": False, "error_message": str(e)})
                continue
            if result.success:
                delivered += 1
            results.append(result.to_dict())

        logger.info(f"Retry of failed deliveries by {actor}: {delivered} of {len(file_ids)} delivered")
        return {
            "run_date": now.isoformat(),
            "files_retried": len(file_ids),
            "delivered": delivered,
            "still_failed": len(file_ids) - delivered,
            "details": results,
        }

    def mark_delivered(self, file_id: str, delivered_by: str) -> DeliveryAttemptResult:
        """Record a delivery made through other means. Bypasses the attempt gates."""
        if not (delivered_by or "").strip():
            return DeliveryAttemptResult(
                file_id=file_id, success=False, error_code=ErrorCode.VALIDATION,
                error_message="delivered_by is required",
            )

        history = self.files.get(file_id)
        if history is None:
            return DeliveryAttemptResult(
                file_id=file_id, success=False, error_code=ErrorCode.NOT_FOUND,
                error_message=f"File {file_id} not found",
            )
        if history.delivery_status == DeliveryStatus.DELIVERED:
            return self._blocked(history, ErrorCode.INVALID_STATE, "File already delivered")

        try:
            history.delivery_status = DeliveryStatus.DELIVERED
            history.delivered_at = self.context.clock.now()
            history.delivered_by = f"{delivered_by} (manual)"
            history.next_attempt_at = None
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            return DeliveryAttemptResult(
                file_id=file_id, success=False, error_code=ErrorCode.CONFLICT,
                error_message="File changed concurrently",
            )

        logger.info(f"File {history.file_name} marked as delivered by {delivered_by}")
        return DeliveryAttemptResult(
            file_id=file_id,
            success=True,
            delivery_status=history.delivery_status,
            attempt_count=history.delivery_attempt_count or 0,
        )

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def statistics(self) -> Dict[str, Any]:
        counts = self.files.count_by_status()
        return {
            "total": sum(counts.values()),
            "by_status": counts,
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.context.settings.delivery_base_delay_ms,
        }
