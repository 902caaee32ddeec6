"""
Remittance Engine - FastAPI Application

Main entry point for the remittance bucket lifecycle service.

Pipeline:
- Change event → BucketingResolver → ClaimAggregator → Bucket (ACCUMULATING)
- Threshold met → CommitCriteria → GENERATING or PENDING_APPROVAL
- GENERATING → FileComposer → FileGenerationHistory (PENDING) → COMPLETED
- FileGenerationHistory → DeliveryRetryCoordinator → DELIVERED | RETRY | FAILED
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import get_settings
from .database import init_db
from .routers import (
    claims_router,
    buckets_router,
    approvals_router,
    deliveries_router,
    configuration_router,
    scheduler_router,
)
from .services.context import build_context
from .services.monitor import ThresholdMonitor, MonitorTicker

logger = logging.getLogger(__name__)


def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database, build the engine context, start the monitor."""
    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()

    context = build_context(settings)
    app.state.engine_context = context

    ticker = None
    if settings.monitor_enabled:
        ticker = MonitorTicker(
            ThresholdMonitor(context),
            interval_seconds=settings.monitor_interval_seconds,
            initial_delay_seconds=settings.monitor_initial_delay_seconds,
        )
        ticker.start()
    app.state.monitor_ticker = ticker

    yield

    if ticker is not None:
        ticker.stop()
    logger.info("Remittance engine stopped")

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Remittance Engine",
    description="""
    Remittance Engine - Bucket Lifecycle Service

    Aggregates adjudicated claims into buckets and decides when each bucket
    becomes a remittance file.

    ## Lifecycle
    1. **Accumulation**: claims are grouped by bucketing rule and grouping key
    2. **Thresholds**: claim count, amount, age, or any of them (hybrid)
    3. **Commit criteria**: AUTO, MANUAL or HYBRID approval gate
    4. **Generation**: one file per bucket
    5. **Delivery**: bounded retries with exponential backoff

    ## Key Principles
    - At most one ACCUMULATING bucket per rule and grouping key
    - Every transition is recorded in an append-only status log
    - Expected business failures are returned as typed results, not raised
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(claims_router)
app.include_router(buckets_router)
app.include_router(approvals_router)
app.include_router(deliveries_router)
app.include_router(configuration_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Remittance Engine",
        "version": __version__,
        "description": "Bucket lifecycle engine for remittance files",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    ticker = getattr(app.state, "monitor_ticker", None)
    return {
        "status": "healthy",
        "version": __version__,
        "monitor_running": bool(ticker and ticker.running),
    }


# For running with: python -m remit_engine.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
