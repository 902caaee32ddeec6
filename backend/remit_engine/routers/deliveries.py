"""
Delivery API Routes

Manual delivery, operator overrides and statistics. Scheduled delivery runs
through the monitor ticker or /internal/delivery-sweep.
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.context import EngineContext
from ..services.delivery import DeliveryRetryCoordinator
from ..services.store import FileHistoryStore
from .dependencies import get_engine_context, result_or_raise


router = APIRouter(prefix="/deliveries", tags=["deliveries"])


class OperatorRequest(BaseModel):
    actor: str = Field(..., description="Operator performing the action")


@router.get("/statistics", response_model=dict)
def delivery_statistics(
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    return DeliveryRetryCoordinator(db, context).statistics()


@router.post("/retry-failed", response_model=dict)
def retry_all_failed(
    request: OperatorRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    """One more attempt for every FAILED file, ignoring the attempt ceiling."""
    return DeliveryRetryCoordinator(db, context).retry_all_failed(actor=request.actor)


@router.get("/{file_id}", response_model=dict)
def get_file(file_id: str, db: Session = Depends(get_db)):
    history = FileHistoryStore(db).get(file_id)
    if not history:
        raise HTTPException(status_code=404, detail="File not found")

    return {
        "file_id": history.id,
        "bucket_id": history.bucket_id,
        "file_name": history.file_name,
        "file_size_bytes": history.file_size_bytes,
        "claim_count": history.claim_count,
        "total_amount": str(history.total_amount),
        "generated_at": history.generated_at.isoformat() if history.generated_at else None,
        "delivery_status": history.delivery_status.value,
        "delivery_attempt_count": history.delivery_attempt_count,
        "last_attempt_at": history.last_attempt_at.isoformat() if history.last_attempt_at else None,
        "next_attempt_at": history.next_attempt_at.isoformat() if history.next_attempt_at else None,
        "error_message": history.error_message,
        "delivered_at": history.delivered_at.isoformat() if history.delivered_at else None,
        "delivered_by": history.delivered_by,
    }


@router.post("/{file_id}/deliver", response_model=dict)
def deliver_now(
    file_id: str,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    """
    Attempt delivery immediately.

    A failed upload is still a 200: the body carries the error message and
    attempt count.
    """
    return result_or_raise(DeliveryRetryCoordinator(db, context).deliver_now(file_id))


@router.post("/{file_id}/mark-delivered", response_model=dict)
def mark_delivered(
    file_id: str,
    request: OperatorRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    """Record a file as delivered through other means."""
    return result_or_raise(DeliveryRetryCoordinator(db, context).mark_delivered(file_id, request.actor))
