"""
Scheduler API Routes

Internal endpoints for system-automatic tasks. The in-process monitor
ticker runs the same jobs; these exist for external cron and for
running a job on demand.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.context import EngineContext
from ..services.delivery import DeliveryRetryCoordinator
from ..services.monitor import ThresholdMonitor
from .dependencies import get_engine_context, verify_internal_key


router = APIRouter(prefix="/internal", tags=["scheduler"])


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/threshold-sweep", response_model=dict)
def run_threshold_sweep(
    context: EngineContext = Depends(get_engine_context),
    _: bool = Depends(verify_internal_key),
):
    """
    Evaluate every ACCUMULATING bucket.

    Catches time-based thresholds on buckets that stopped receiving claims.
    """
    return ThresholdMonitor(context).run_threshold_sweep()


@router.post("/configuration-recheck", response_model=dict)
def run_configuration_recheck(
    context: EngineContext = Depends(get_engine_context),
    _: bool = Depends(verify_internal_key),
):
    return ThresholdMonitor(context).recheck_missing_configuration()


@router.post("/generation-recovery", response_model=dict)
def run_generation_recovery(
    context: EngineContext = Depends(get_engine_context),
    _: bool = Depends(verify_internal_key),
):
    return ThresholdMonitor(context).recover_stalled_generation()


@router.post("/delivery-sweep", response_model=dict)
def run_delivery_sweep(
    db: Session = Depends(get_db),
    context: EngineContext = Depends(get_engine_context),
    _: bool = Depends(verify_internal_key),
):
    return DeliveryRetryCoordinator(db, context).run_delivery_sweep()


@router.post("/cycle", response_model=dict)
def run_cycle(
    context: EngineContext = Depends(get_engine_context),
    _: bool = Depends(verify_internal_key),
):
    """Every monitor job once, each isolated from the others."""
    return ThresholdMonitor(context).run_cycle()


# =============================================================================
# SCHEDULER STATUS ENDPOINTS (READ-ONLY)
# =============================================================================

@router.get("/stale-buckets", response_model=dict)
def get_stale_buckets(
    context: EngineContext = Depends(get_engine_context),
    _: bool = Depends(verify_internal_key),
):
    return ThresholdMonitor(context).detect_stale_buckets()
