"""
Configuration API Routes

Validated writes for bucketing rules, generation thresholds, commit
criteria, payers and payees. Each write invalidates the engine's
configuration cache.
"""
from decimal import Decimal
from typing import Optional, List
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import RuleType, ThresholdType, TimeDuration, CommitMode
from ..models.domain import ValidationResult
from ..services.configuration import ConfigurationRegistry
from ..services.context import EngineContext
from .dependencies import get_engine_context


router = APIRouter(prefix="/config", tags=["configuration"])

# URL segment -> registry kind
KIND_SEGMENTS = {
    "rules": "bucketing_rule",
    "thresholds": "threshold",
    "commit-criteria": "commit_criteria",
    "payers": "payer",
    "payees": "payee",
}


# =============================================================================
# REQUEST MODELS
# =============================================================================

class BucketingRuleRequest(BaseModel):
    rule_name: str
    rule_type: RuleType
    priority: int = 0
    grouping_expression: Optional[str] = Field(None, description="CUSTOM: comma-separated event fields")
    linked_payer_id: Optional[str] = None
    linked_payee_id: Optional[str] = None
    description: Optional[str] = None


class ThresholdRequest(BaseModel):
    threshold_name: str
    threshold_type: ThresholdType
    max_claims: Optional[int] = None
    max_amount: Optional[Decimal] = None
    time_duration: Optional[TimeDuration] = None
    linked_bucketing_rule_id: Optional[str] = None


class CommitCriteriaRequest(BaseModel):
    criteria_name: str
    commit_mode: CommitMode
    auto_commit_amount_threshold: Optional[Decimal] = None
    manual_approval_claim_threshold: Optional[int] = None
    approval_roles: Optional[List[str]] = None
    linked_bucketing_rule_id: Optional[str] = None


class PayerRequest(BaseModel):
    payer_id: str
    payer_name: str
    sender_id: Optional[str] = None
    delivery_host: Optional[str] = None
    delivery_port: Optional[int] = None
    delivery_username: Optional[str] = None
    delivery_path: Optional[str] = None


class PayeeRequest(BaseModel):
    payee_id: str
    payee_name: str
    npi: Optional[str] = None


def _registry(db: Session, context: EngineContext) -> ConfigurationRegistry:
    return ConfigurationRegistry(db, context.config)


def _saved(result: ValidationResult) -> dict:
    if not result.valid:
        raise HTTPException(status_code=400, detail={"errors": result.errors})
    return {"id": result.value.id, "saved": True}


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/rules", response_model=dict)
def create_rule(
    request: BucketingRuleRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    return _saved(_registry(db, context).create_bucketing_rule(request.model_dump(exclude_none=True)))


@router.post("/thresholds", response_model=dict)
def create_threshold(
    request: ThresholdRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    return _saved(_registry(db, context).create_threshold(request.model_dump(exclude_none=True)))


@router.post("/commit-criteria", response_model=dict)
def create_commit_criteria(
    request: CommitCriteriaRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    return _saved(_registry(db, context).create_commit_criteria(request.model_dump(exclude_none=True)))


@router.post("/payers", response_model=dict)
def save_payer(
    request: PayerRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    return _saved(_registry(db, context).upsert_payer(request.model_dump(exclude_none=True)))


@router.post("/payees", response_model=dict)
def save_payee(
    request: PayeeRequest,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    return _saved(_registry(db, context).upsert_payee(request.model_dump(exclude_none=True)))


@router.delete("/{kind}/{row_id}", response_model=dict)
def deactivate(
    kind: str,
    row_id: str,
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
):
    registry_kind = KIND_SEGMENTS.get(kind)
    if registry_kind is None:
        raise HTTPException(status_code=404, detail=f"Unknown configuration kind: {kind}")
    result = _registry(db, context).deactivate(registry_kind, row_id)
    if not result.valid:
        raise HTTPException(status_code=404, detail={"errors": result.errors})
    return {"id": row_id, "deactivated": True}
