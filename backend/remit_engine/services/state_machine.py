"""
Bucket State Machine

Single BucketStatus enum is the source of truth.
State transitions:
    ACCUMULATING → PENDING_APPROVAL | GENERATING | MISSING_CONFIGURATION
    PENDING_APPROVAL → GENERATING | ACCUMULATING (rejected) | FAILED (rejected)
                       | MISSING_CONFIGURATION
    GENERATING → COMPLETED | FAILED
    MISSING_CONFIGURATION → PENDING_APPROVAL

COMPLETED and FAILED are terminal. The only way out of FAILED is an
operator override (reset), which is logged as such.
All transitions are logged immutably.
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple
from uuid import uuid4

from ..models.db_models import BucketStatus, ActorType, BucketDB, BucketStatusLogDB
from ..models.domain import InvalidBucketTransition
from ..utils.clock import utc_now

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    BucketStatus.ACCUMULATING: {
        "description": "Collecting claims for the grouping key",
        "allowed_transitions": [
            BucketStatus.PENDING_APPROVAL,
            BucketStatus.GENERATING,
            BucketStatus.MISSING_CONFIGURATION,
        ],
        "accepts_claims": True,
        "terminal": False,
    },
    BucketStatus.PENDING_APPROVAL: {
        "description": "Threshold met, waiting for an approver",
        "allowed_transitions": [
            BucketStatus.GENERATING,
            BucketStatus.ACCUMULATING,
            BucketStatus.FAILED,
            BucketStatus.MISSING_CONFIGURATION,
        ],
        "accepts_claims": False,
        "terminal": False,
    },
    BucketStatus.MISSING_CONFIGURATION: {
        "description": "Payer or payee configuration incomplete",
        "allowed_transitions": [BucketStatus.PENDING_APPROVAL],
        "accepts_claims": False,
        "terminal": False,
    },
    BucketStatus.GENERATING: {
        "description": "File generation handed off",
        "allowed_transitions": [BucketStatus.COMPLETED, BucketStatus.FAILED],
        "accepts_claims": False,
        "terminal": False,
    },
    BucketStatus.COMPLETED: {
        "description": "File generated",
        "allowed_transitions": [],  # Terminal state
        "accepts_claims": False,
        "terminal": True,
    },
    BucketStatus.FAILED: {
        "description": "Generation failed or approval rejected",
        "allowed_transitions": [],  # Terminal state
        "accepts_claims": False,
        "terminal": True,
    },
}

# Operator recovery only (reset of a failed bucket)
OVERRIDE_TRANSITIONS = {
    BucketStatus.FAILED: [BucketStatus.ACCUMULATING, BucketStatus.PENDING_APPROVAL],
}


# =============================================================================
# STATE MACHINE
# =============================================================================

class BucketStateMachine:
    """
    Applies lifecycle transitions to bucket rows.

    A rejected transition raises InvalidBucketTransition before anything on
    the bucket is touched. Timestamps tied to a state are maintained here so
    no caller has to remember them.
    """

    def __init__(self, db_session):
        self.db = db_session

    def get_state_config(self, status: BucketStatus) -> Dict[str, Any]:
        return STATE_CONFIG.get(status, {})

    def can_transition(
        self,
        from_status: BucketStatus,
        to_status: BucketStatus,
        override: bool = False,
    ) -> Tuple[bool, str]:
        """
        Check if a transition is allowed.

        Returns (allowed, reason)
        """
        allowed = self.get_state_config(from_status).get("allowed_transitions", [])
        if to_status in allowed:
            return True, "Transition allowed"
        if override and to_status in OVERRIDE_TRANSITIONS.get(from_status, []):
            return True, "Override allowed"
        return False, f"Cannot transition from {from_status.value} to {to_status.value}"

    def transition(
        self,
        bucket: BucketDB,
        to_status: BucketStatus,
        trigger: str,
        actor: ActorType,
        actor_name: Optional[str] = None,
        threshold_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
        override: bool = False,
    ) -> BucketStatusLogDB:
        """
        Execute a transition and append its log entry.

        Raises:
            InvalidBucketTransition: if the transition is not in the table
        """
        from_status = bucket.status
        allowed, reason = self.can_transition(from_status, to_status, override=override)
        if not allowed:
            raise InvalidBucketTransition(from_status, to_status, bucket.id)

        now = now or utc_now()

        log_entry = BucketStatusLogDB(
            id=str(uuid4()),
            bucket_id=bucket.id,
            from_status=from_status,
            to_status=to_status,
            trigger=trigger,
            actor=actor,
            actor_name=actor_name,
            threshold_id=threshold_id,
            detail=detail or {},
            created_at=now,
        )
        self.db.add(log_entry)

        if from_status == BucketStatus.PENDING_APPROVAL:
            bucket.awaiting_approval_since = None
        if to_status == BucketStatus.PENDING_APPROVAL:
            bucket.awaiting_approval_since = now
        elif to_status == BucketStatus.GENERATING:
            bucket.generation_started_at = now
        elif to_status == BucketStatus.COMPLETED:
            bucket.generation_completed_at = now
        elif to_status == BucketStatus.FAILED:
            bucket.last_error_at = now

        bucket.status = to_status
        bucket.last_updated = now

        logger.info(
            f"Bucket {bucket.id} {from_status.value} -> {to_status.value} "
            f"(trigger={trigger}, actor={actor_name or actor.value})"
        )
        return log_entry

    def is_terminal(self, status: BucketStatus) -> bool:
        return self.get_state_config(status).get("terminal", False)

    def get_next_states(self, status: BucketStatus) -> List[BucketStatus]:
        return list(self.get_state_config(status).get("allowed_transitions", []))
