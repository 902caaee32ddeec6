"""
Approval API Routes

Human-in-the-loop decisions on PENDING_APPROVAL buckets.
"""
from datetime import datetime
from typing import Optional, List
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.approval import ApprovalWorkflow
from ..services.context import EngineContext
from ..services.monitor import ThresholdMonitor
from .dependencies import get_engine_context, result_or_raise


router = APIRouter(prefix="/approvals", tags=["approvals"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ApproveRequest(BaseModel):
    actor: str = Field(..., description="Approver")
    comments: Optional[str] = None
    actor_roles: Optional[List[str]] = Field(None, description="Roles held by the approver")
    scheduled_generation_time: Optional[datetime] = None


class RejectRequest(BaseModel):
    actor: str = Field(..., description="Approver")
    reason: str = Field(..., description="Required rejection reason")


class BulkApproveRequest(BaseModel):
    bucket_ids: List[str] = Field(..., description="Buckets to approve independently")
    actor: str
    comments: Optional[str] = None
    actor_roles: Optional[List[str]] = None


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/pending", response_model=dict)
def list_pending(context: EngineContext = Depends(get_engine_context)):
    """Buckets awaiting a decision, oldest first."""
    return ThresholdMonitor(context).report_pending_approvals()


@router.post("/bulk-approve", response_model=dict)
def bulk_approve(
    request: BulkApproveRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    """Per-item outcomes; one failure never undoes another approval."""
    summary = ApprovalWorkflow(db, context).bulk_approve(
        request.bucket_ids, request.actor, request.comments, actor_roles=request.actor_roles,
    )
    return summary.to_dict()


@router.post("/{bucket_id}/approve", response_model=dict)
def approve_bucket(
    bucket_id: str,
    request: ApproveRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    result = ApprovalWorkflow(db, context).approve(
        bucket_id,
        request.actor,
        request.comments,
        actor_roles=request.actor_roles,
        scheduled_generation_time=request.scheduled_generation_time,
    )
    return result_or_raise(result)


@router.post("/{bucket_id}/reject", response_model=dict)
def reject_bucket(
    bucket_id: str,
    request: RejectRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    result = ApprovalWorkflow(db, context).reject(bucket_id, request.actor, request.reason)
    return result_or_raise(result)
