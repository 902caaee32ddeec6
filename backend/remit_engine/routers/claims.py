"""
Claim Change Event Routes

Entry point for the change feed. Each event is applied once, in order.
"""
from typing import Optional, List, Any
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import ClaimProcessingLogDB
from ..models.domain import ChangeEvent, ConcurrentModificationError
from ..services.aggregator import ClaimAggregator
from ..services.context import EngineContext
from .dependencies import get_engine_context


router = APIRouter(prefix="/claims", tags=["claims"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class ChangeEventRequest(BaseModel):
    """One claim insert/update. Accepts the feed's camelCase names."""
    model_config = ConfigDict(populate_by_name=True)

    claim_id: Optional[str] = Field(None, alias="claimId")
    payer_id: Optional[str] = Field(None, alias="payerId")
    payee_id: Optional[str] = Field(None, alias="payeeId")
    total_charge_amount: Optional[Any] = Field(None, alias="totalChargeAmount")
    paid_amount: Optional[Any] = Field(None, alias="paidAmount")
    status: Optional[str] = None
    bin_number: Optional[str] = Field(None, alias="binNumber")
    pcn_number: Optional[str] = Field(None, alias="pcnNumber")

    def to_event(self) -> ChangeEvent:
        return ChangeEvent(
            claim_id=self.claim_id,
            payer_id=self.payer_id,
            payee_id=self.payee_id,
            total_charge_amount=self.total_charge_amount,
            paid_amount=self.paid_amount,
            status=self.status,
            bin_number=self.bin_number,
            pcn_number=self.pcn_number,
        )


class ChangeEventBatch(BaseModel):
    events: List[ChangeEventRequest] = Field(..., description="Events in feed order")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/events", response_model=dict)
def submit_events(
    request: ChangeEventBatch,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    """
    Apply a batch of change events.

    Rejected events are reported per item; they never fail the batch.
    """
    aggregator = ClaimAggregator(db, context)
    results = []
    for item in request.events:
        try:
            results.append(aggregator.apply(item.to_event()).to_dict())
        except ConcurrentModificationError as e:
            raise HTTPException(status_code=409, detail=str(e))

    return {
        "received": len(request.events),
        "processed": sum(1 for r in results if r["outcome"] == "PROCESSED"),
        "rejected": sum(1 for r in results if r["outcome"] == "REJECTED"),
        "results": results,
    }


@router.get("/{claim_id}/log", response_model=dict)
def get_claim_log(claim_id: str, db: Session = Depends(get_db)):
    """Processing history for one claim id."""
    entries = db.query(ClaimProcessingLogDB).filter(
        ClaimProcessingLogDB.claim_id == claim_id
    ).order_by(ClaimProcessingLogDB.processed_at).all()
    if not entries:
        raise HTTPException(status_code=404, detail="Claim not found")

    return {
        "claim_id": claim_id,
        "entries": [
            {
                "id": e.id,
                "bucket_id": e.bucket_id,
                "status": e.status.value,
                "paid_amount": str(e.paid_amount) if e.paid_amount is not None else None,
                "rejection_reason": e.rejection_reason,
                "processed_at": e.processed_at.isoformat() if e.processed_at else None,
            }
            for e in entries
        ],
    }
