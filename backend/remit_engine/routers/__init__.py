"""Remittance Engine - API Routers"""
from .claims import router as claims_router
from .buckets import router as buckets_router
from .approvals import router as approvals_router
from .deliveries import router as deliveries_router
from .configuration import router as configuration_router
from .scheduler import router as scheduler_router

__all__ = [
    "claims_router",
    "buckets_router",
    "approvals_router",
    "deliveries_router",
    "configuration_router",
    "scheduler_router",
]
