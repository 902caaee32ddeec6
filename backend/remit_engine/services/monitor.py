"""
Scheduled Monitor

Periodic safety net, independent of claim arrival:
- Threshold sweep over every ACCUMULATING bucket (time-based thresholds)
- Recheck of MISSING_CONFIGURATION buckets
- Recovery of buckets stuck in GENERATING
- Pending-approval report and stale-bucket detection (log only)

Each bucket is handled in its own session and unit of work. A failure on
one bucket is logged and recorded in the sweep summary; the sweep moves on.
"""
import logging
import threading
from datetime import timedelta
from typing import Optional, List, Dict, Any

from ..models.db_models import BucketDB, BucketStatus
from ..models.domain import OperationResult, ErrorCode
from .approval import ApprovalWorkflow
from .delivery import DeliveryRetryCoordinator
from .lifecycle import BucketLifecycleController
from .store import BucketStore

logger = logging.getLogger(__name__)


class ThresholdMonitor:
    """Sweeps, each returning a summary dict."""

    def __init__(self, context):
        self.context = context

    def _session(self):
        return self.context.session_factory()

    def _ids_in(self, status: BucketStatus) -> List[str]:
        db = self._session()
        try:
            return BucketStore(db).ids_by_status(status)
        finally:
            db.close()

    # =========================================================================
    # THRESHOLDS
    # =========================================================================

    def evaluate_bucket(self, bucket_id: str) -> OperationResult:
        """Re-run threshold evaluation for one bucket (manual trigger or sweep)."""
        db = self._session()
        try:
            store = BucketStore(db)
            bucket = store.get(bucket_id)
            if bucket is None:
                return OperationResult.fail(ErrorCode.NOT_FOUND, f"Bucket {bucket_id} not found", bucket_id)

            controller = BucketLifecycleController(db, self.context)
            rule_id, grouping_key = bucket.lock_key
            with self.context.locks.hold(rule_id, grouping_key):
                store.refresh(bucket)
                if bucket.status != BucketStatus.ACCUMULATING:
                    return OperationResult.ok(
                        f"Bucket is {bucket.status.value}; nothing to evaluate", bucket_id, bucket.status,
                    )
                evaluation = controller.evaluate(bucket)
                if not evaluation.triggered:
                    db.rollback()
                    return OperationResult.ok("No threshold met", bucket_id, bucket.status)
                controller.commit()
                status = bucket.status

            result = OperationResult.ok(f"Threshold met: {evaluation.reason}", bucket_id, status)
            if status == BucketStatus.GENERATING:
                handoff = controller.hand_off(bucket_id)
                result.status = handoff.status or status
                result.file_id = handoff.file_id
            return result
        finally:
            db.close()

    def run_threshold_sweep(self) -> Dict[str, Any]:
        """Evaluate every ACCUMULATING bucket."""
        run_date = self.context.clock.now()
        bucket_ids = self._ids_in(BucketStatus.ACCUMULATING)

        triggered = []
        errors = []

        for bucket_id in bucket_ids:
            try:
                result = self.evaluate_bucket(bucket_id)
                if result.success and result.status != BucketStatus.ACCUMULATING:
                    triggered.append({"bucket_id": bucket_id, "status": result.status.value})
            except Exception as e:
                logger.error(f"Threshold sweep failed for bucket {bucket_id}: {e}", exc_info=True)
                errors.append({"bucket_id": bucket_id, "error": str(e)})

        logger.info(
            f"Threshold sweep: {len(bucket_ids)} evaluated, {len(triggered)} triggered, {len(errors)} errors"
        )
        return {
            "run_date": run_date.isoformat(),
            "buckets_evaluated": len(bucket_ids),
            "buckets_triggered": len(triggered),
            "errors": len(errors),
            "details": {
                "triggered": triggered,
                "errors": errors,
            },
        }

    # =========================================================================
    # MISSING CONFIGURATION
    # =========================================================================

    def recheck_missing_configuration(self) -> Dict[str, Any]:
        run_date = self.context.clock.now()
        bucket_ids = self._ids_in(BucketStatus.MISSING_CONFIGURATION)

        recovered = []
        errors = []

        for bucket_id in bucket_ids:
            db = self._session()
            try:
                result = ApprovalWorkflow(db, self.context).recheck_configuration(bucket_id)
                if result.success:
                    recovered.append(bucket_id)
            except Exception as e:
                logger.error(f"Configuration recheck failed for bucket {bucket_id}: {e}", exc_info=True)
                errors.append({"bucket_id": bucket_id, "error": str(e)})
            finally:
                db.close()

        if bucket_ids:
            logger.info(f"Configuration recheck: {len(recovered)} of {len(bucket_ids)} buckets recovered")
        return {
            "run_date": run_date.isoformat(),
            "buckets_checked": len(bucket_ids),
            "buckets_recovered": len(recovered),
            "errors": len(errors),
            "details": {
                "recovered": recovered,
                "errors": errors,
            },
        }

    # =========================================================================
    # GENERATION RECOVERY
    # =========================================================================

    def recover_stalled_generation(self) -> Dict[str, Any]:
        """Re-run generation for buckets left in GENERATING past the stall limit."""
        now = self.context.clock.now()
        cutoff = now - timedelta(seconds=self.context.settings.generation_stall_seconds)

        db = self._session()
        try:
            stalled_ids = [
                row[0] for row in db.query(BucketDB.id).filter(
                    BucketDB.status == BucketStatus.GENERATING,
                    BucketDB.generation_started_at <= cutoff,
                ).all()
            ]
        finally:
            db.close()

        recovered = []
        errors = []

        for bucket_id in stalled_ids:
            db = self._session()
            try:
                logger.warning(f"Bucket {bucket_id} stuck in GENERATING since before {cutoff.isoformat()}; re-running")
                result = BucketLifecycleController(db, self.context).hand_off(bucket_id)
                recovered.append({"bucket_id": bucket_id, "status": result.status.value if result.status else None})
            except Exception as e:
                logger.error(f"Generation recovery failed for bucket {bucket_id}: {e}", exc_info=True)
                errors.append({"bucket_id": bucket_id, "error": str(e)})
            finally:
                db.close()

        return {
            "run_date": now.isoformat(),
            "stalled_found": len(stalled_ids),
            "recovered": len(recovered),
            "errors": len(errors),
            "details": {
                "recovered": recovered,
                "errors": errors,
            },
        }

    # =========================================================================
    # REPORTS (read-only)
    # =========================================================================

    def report_pending_approvals(self) -> Dict[str, Any]:
        now = self.context.clock.now()
        db = self._session()
        try:
            pending = BucketStore(db).list_by_status(BucketStatus.PENDING_APPROVAL)
            buckets = [
                {
                    "bucket_id": b.id,
                    "payer_id": b.payer_id,
                    "payee_id": b.payee_id,
                    "claim_count": b.claim_count,
                    "total_amount": str(b.total_amount),
                    "awaiting_since": b.awaiting_approval_since.isoformat() if b.awaiting_approval_since else None,
                }
                for b in pending
            ]
            waits = [b.awaiting_approval_since for b in pending if b.awaiting_approval_since]
        finally:
            db.close()

        oldest = min(waits) if waits else None
        if buckets:
            logger.info(f"{len(buckets)} buckets awaiting approval; oldest since {oldest.isoformat() if oldest else 'n/a'}")
        return {
            "run_date": now.isoformat(),
            "pending_count": len(buckets),
            "oldest_awaiting_since": oldest.isoformat() if oldest else None,
            "oldest_wait_seconds": int((now - oldest).total_seconds()) if oldest else None,
            "buckets": buckets,
        }

    def detect_stale_buckets(self) -> Dict[str, Any]:
        """ACCUMULATING buckets older than stale_bucket_days. Logged, not changed."""
        now = self.context.clock.now()
        cutoff = now - timedelta(days=self.context.settings.stale_bucket_days)
        db = self._session()
        try:
            stale = db.query(BucketDB).filter(
                BucketDB.status == BucketStatus.ACCUMULATING,
                BucketDB.created_at < cutoff,
            ).order_by(BucketDB.created_at).all()
            details = [
                {"bucket_id": b.id, "created_at": b.created_at.isoformat(), "claim_count": b.claim_count}
                for b in stale
            ]
        finally:
            db.close()

        for item in details:
            logger.warning(f"Stale bucket {item['bucket_id']} accumulating since {item['created_at']}")
        return {
            "run_date": now.isoformat(),
            "stale_found": len(details),
            "details": details,
        }

    # =========================================================================
    # FULL CYCLE
    # =========================================================================

    def run_cycle(self) -> Dict[str, Any]:
        """One ticker iteration. Each job is isolated from the others."""
        jobs = {
            "threshold_sweep": self.run_threshold_sweep,
            "configuration_recheck": self.recheck_missing_configuration,
            "generation_recovery": self.recover_stalled_generation,
            "delivery_sweep": self._run_delivery_sweep,
            "pending_approvals": self.report_pending_approvals,
            "stale_buckets": self.detect_stale_buckets,
        }
        results = {}
        for name, job in jobs.items():
            try:
                results[name] = {"success": True, "result": job()}
            except Exception as e:
                logger.error(f"Monitor job {name} failed: {e}", exc_info=True)
                results[name] = {"success": False, "error": str(e)}
        return results

    def _run_delivery_sweep(self) -> Dict[str, Any]:
        db = self._session()
        try:
            return DeliveryRetryCoordinator(db, self.context).run_delivery_sweep()
        finally:
            db.close()


# =============================================================================
# TICKER
# =============================================================================

class MonitorTicker:
    """
    Background thread running ThresholdMonitor.run_cycle on a fixed interval.

    stop() sets the cancellation event and joins the thread; a cycle in
    progress finishes first.
    """

    def __init__(self, monitor: ThresholdMonitor, interval_seconds: float, initial_delay_seconds: float = 0):
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.cycles = 0
        self.last_result: Optional[Dict[str, Any]] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="remit-monitor", daemon=True)
        self._thread.start()
        logger.info(
            f"Monitor ticker started (interval={self.interval_seconds}s, initial delay={self.initial_delay_seconds}s)"
        )

    def stop(self, timeout: float = 30):
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info(f"Monitor ticker stopped after {self.cycles} cycles")

    def _loop(self):
        if self._stop_event.wait(self.initial_delay_seconds):
            return
        while not self._stop_event.is_set():
            try:
                self.last_result = self.monitor.run_cycle()
            except Exception as e:
                logger.error(f"Monitor cycle failed: {e}", exc_info=True)
            self.cycles += 1
            if self._stop_event.wait(self.interval_seconds):
                return
