"""
Bucket API Routes

Read access to buckets and their transition history, manual threshold
evaluation, and operator recovery (reset, configuration recheck).
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import BucketDB, BucketStatus
from ..services.approval import ApprovalWorkflow
from ..services.context import EngineContext
from ..services.monitor import ThresholdMonitor
from ..services.store import BucketStore
from .dependencies import get_engine_context, result_or_raise


router = APIRouter(prefix="/buckets", tags=["buckets"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ResetRequest(BaseModel):
    actor: str = Field(..., description="Operator performing the reset")
    reason: Optional[str] = Field(None, description="Why the bucket is reopened")


class RecheckRequest(BaseModel):
    actor: str = Field(default="system")


def _bucket_summary(bucket: BucketDB) -> dict:
    return {
        "bucket_id": bucket.id,
        "status": bucket.status.value,
        "bucketing_rule_id": bucket.bucketing_rule_id,
        "bucketing_rule_name": bucket.bucketing_rule_name,
        "grouping_key": bucket.grouping_key,
        "payer_id": bucket.payer_id,
        "payer_name": bucket.payer_name,
        "payee_id": bucket.payee_id,
        "payee_name": bucket.payee_name,
        "claim_count": bucket.claim_count,
        "total_amount": str(bucket.total_amount),
        "rejection_count": bucket.rejection_count,
        "created_at": bucket.created_at.isoformat() if bucket.created_at else None,
        "awaiting_approval_since": (
            bucket.awaiting_approval_since.isoformat() if bucket.awaiting_approval_since else None
        ),
        "triggered_threshold_id": bucket.triggered_threshold_id,
        "payment_status": bucket.payment_status.value if bucket.payment_status else None,
        "last_error_message": bucket.last_error_message,
    }


# =============================================================================
# READ ENDPOINTS
# =============================================================================

@router.get("", response_model=dict)
def list_buckets(
    status: BucketStatus = Query(BucketStatus.ACCUMULATING),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    buckets = BucketStore(db).list_by_status(status, limit=limit)
    return {
        "status": status.value,
        "count": len(buckets),
        "buckets": [_bucket_summary(b) for b in buckets],
    }


@router.get("/statistics", response_model=dict)
def bucket_statistics(db: Session = Depends(get_db)):
    counts = BucketStore(db).count_by_status()
    return {"total": sum(counts.values()), "by_status": counts}


@router.get("/{bucket_id}", response_model=dict)
def get_bucket(bucket_id: str, db: Session = Depends(get_db)):
    """Bucket with its transition and approval history."""
    bucket = BucketStore(db).get(bucket_id)
    if not bucket:
        raise HTTPException(status_code=404, detail="Bucket not found")

    return {
        **_bucket_summary(bucket),
        "status_log": [
            {
                "from_status": entry.from_status.value if entry.from_status else None,
                "to_status": entry.to_status.value,
                "trigger": entry.trigger,
                "actor": entry.actor.value,
                "actor_name": entry.actor_name,
                "threshold_id": entry.threshold_id,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in bucket.status_log
        ],
        "approval_log": [
            {
                "action": entry.action.value,
                "actor": entry.actor,
                "comments": entry.comments,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in bucket.approval_log
        ],
    }


# =============================================================================
# THRESHOLD EVALUATION
# =============================================================================

@router.post("/evaluate", response_model=dict)
def evaluate_all(context: EngineContext = Depends(get_engine_context)):
    """Run the threshold sweep now over every ACCUMULATING bucket."""
    return ThresholdMonitor(context).run_threshold_sweep()


@router.post("/{bucket_id}/evaluate", response_model=dict)
def evaluate_bucket(bucket_id: str, context: EngineContext = Depends(get_engine_context)):
    return result_or_raise(ThresholdMonitor(context).evaluate_bucket(bucket_id))


# =============================================================================
# OPERATOR RECOVERY
# =============================================================================

@router.post("/{bucket_id}/reset", response_model=dict)
def reset_bucket(
    bucket_id: str,
    request: ResetRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    """Reopen a FAILED bucket."""
    result = ApprovalWorkflow(db, context).reset(bucket_id, request.actor, request.reason)
    return result_or_raise(result)


@router.post("/{bucket_id}/recheck-configuration", response_model=dict)
def recheck_configuration(
    bucket_id: str,
    request: RecheckRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    result = ApprovalWorkflow(db, context).recheck_configuration(bucket_id, actor=request.actor)
    return result_or_raise(result)
