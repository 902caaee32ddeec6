"""
Bucket Store

Repository access for buckets and generated files, plus the per-key
exclusive sections that serialize every mutation of one bucket key.

Buckets are version-checked by the ORM (version_id_col), so a flush against
a stale row raises StaleDataError. File history rows are additionally
claimed with an explicit compare-and-swap on their version column.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple
from uuid import uuid4

from ..models.db_models import (
    BucketDB, BucketStatus, FileGenerationHistoryDB, DeliveryStatus, PaymentStatus,
)

logger = logging.getLogger(__name__)


# =============================================================================
# PER-KEY EXCLUSIVE SECTIONS
# =============================================================================

class BucketKeyLocks:
    """
    In-process lock per (bucketing rule id, grouping key).

    Aggregation, threshold sweeps and approval actions all enter the same
    section for a key, so claims for one key apply in order and a bucket is
    never approved and rejected at once. The database partial unique index
    on ACCUMULATING buckets backs this up across processes.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}

    def _lock_for(self, key: Tuple[str, str]) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, rule_id: str, grouping_key: str):
        lock = self._lock_for((rule_id, grouping_key))
        with lock:
            yield

    def __len__(self):
        return len(self._locks)


# =============================================================================
# BUCKET REPOSITORY
# =============================================================================

class BucketStore:
    """Read and write buckets through one session."""

    def __init__(self, db_session):
        self.db = db_session

    def get(self, bucket_id: str, for_update: bool = False) -> Optional[BucketDB]:
        query = self.db.query(BucketDB).filter(BucketDB.id == bucket_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def refresh(self, bucket: BucketDB) -> BucketDB:
        self.db.refresh(bucket)
        return bucket

    def find_accumulating(self, rule_id: str, grouping_key: str, for_update: bool = False) -> Optional[BucketDB]:
        query = self.db.query(BucketDB).filter(
            BucketDB.bucketing_rule_id == rule_id,
            BucketDB.grouping_key == grouping_key,
            BucketDB.status == BucketStatus.ACCUMULATING,
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def has_other_accumulating(self, bucket: BucketDB) -> bool:
        """True when a different bucket already accumulates for this bucket's key."""
        other = self.db.query(BucketDB.id).filter(
            BucketDB.bucketing_rule_id == bucket.bucketing_rule_id,
            BucketDB.grouping_key == bucket.grouping_key,
            BucketDB.status == BucketStatus.ACCUMULATING,
            BucketDB.id != bucket.id,
        ).first()
        return other is not None

    def get_or_create_accumulating(
        self,
        rule_id: str,
        rule_name: str,
        grouping_key: str,
        now: datetime,
        attributes: Dict[str, Any],
    ) -> Tuple[BucketDB, bool]:
        """
        Fetch the ACCUMULATING bucket for a key or create it.

        Must be called inside the key's exclusive section. Returns
        (bucket, created). A concurrent insert from another process trips
        the partial unique index and raises IntegrityError on flush; the
        caller rolls back and retries the whole unit of work.
        """
        bucket = self.find_accumulating(rule_id, grouping_key, for_update=True)
        if bucket:
            return bucket, False

        bucket = BucketDB(
            id=str(uuid4()),
            status=BucketStatus.ACCUMULATING,
            bucketing_rule_id=rule_id,
            bucketing_rule_name=rule_name,
            grouping_key=grouping_key,
            claim_count=0,
            total_amount=0,
            rejection_count=0,
            created_at=now,
            last_updated=now,
            payment_status=PaymentStatus.NOT_REQUIRED,
            **attributes,
        )
        self.db.add(bucket)
        self.db.flush()

        logger.info(f"Created bucket {bucket.id} for rule {rule_name} key {grouping_key}")
        return bucket, True

    def list_by_status(self, status: BucketStatus, limit: Optional[int] = None) -> List[BucketDB]:
        query = self.db.query(BucketDB).filter(BucketDB.status == status).order_by(BucketDB.created_at)
        if limit:
            query = query.limit(limit)
        return query.all()

    def ids_by_status(self, status: BucketStatus) -> List[str]:
        rows = self.db.query(BucketDB.id).filter(BucketDB.status == status).order_by(BucketDB.created_at).all()
        return [row[0] for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in BucketStatus}
        for bucket_status, in self.db.query(BucketDB.status).all():
            counts[bucket_status.value] += 1
        return counts


# =============================================================================
# FILE HISTORY REPOSITORY
# =============================================================================

class FileHistoryStore:
    """Read and write generated file rows."""

    def __init__(self, db_session):
        self.db = db_session

    def get(self, file_id: str) -> Optional[FileGenerationHistoryDB]:
        return self.db.query(FileGenerationHistoryDB).filter(FileGenerationHistoryDB.id == file_id).first()

    def get_for_bucket(self, bucket_id: str) -> Optional[FileGenerationHistoryDB]:
        return self.db.query(FileGenerationHistoryDB).filter(
            FileGenerationHistoryDB.bucket_id == bucket_id
        ).first()

    def add(self, history: FileGenerationHistoryDB) -> FileGenerationHistoryDB:
        self.db.add(history)
        self.db.flush()
        return history

    def compare_and_swap(self, file_id: str, expected_version: int, changes: Dict[str, Any]) -> bool:
        """
        Apply changes only if the row still carries expected_version.

        Bumps the version. Returns False when another writer got there first.
        """
        values = dict(changes)
        values["version"] = expected_version + 1
        updated = self.db.query(FileGenerationHistoryDB).filter(
            FileGenerationHistoryDB.id == file_id,
            FileGenerationHistoryDB.version == expected_version,
        ).update(values, synchronize_session=False)
        return updated == 1

    def ids_due_for_delivery(self, now: datetime, limit: int) -> List[str]:
        """PENDING/RETRY rows whose backoff window has passed, oldest first."""
        rows = self.db.query(FileGenerationHistoryDB.id).filter(
            FileGenerationHistoryDB.delivery_status.in_([DeliveryStatus.PENDING, DeliveryStatus.RETRY]),
            (FileGenerationHistoryDB.next_attempt_at.is_(None)) | (FileGenerationHistoryDB.next_attempt_at <= now),
        ).order_by(FileGenerationHistoryDB.generated_at).limit(limit).all()
        return [row[0] for row in rows]

    def ids_by_status(self, status: DeliveryStatus) -> List[str]:
        rows = self.db.query(FileGenerationHistoryDB.id).filter(
            FileGenerationHistoryDB.delivery_status == status
        ).order_by(FileGenerationHistoryDB.generated_at).all()
        return [row[0] for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in DeliveryStatus}
        for delivery_status, in self.db.query(FileGenerationHistoryDB.delivery_status).all():
            counts[delivery_status.value] += 1
        return counts
