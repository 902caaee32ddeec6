"""
Shared router dependencies.

The engine context is built once in the application lifespan and stored on
app.state; routers reach it through get_engine_context().
"""
from typing import Union

from fastapi import Header, HTTPException, Request

from ..models.domain import ErrorCode, OperationResult, DeliveryAttemptResult
from ..services.context import EngineContext


# Result error code -> HTTP status
ERROR_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.VALIDATION: 400,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.NO_AVAILABLE_RESOURCE: 409,
    ErrorCode.ASSIGNMENT_FAILED: 502,
    ErrorCode.GENERATION_FAILED: 500,
}


def get_engine_context(request: Request) -> EngineContext:
    context = getattr(request.app.state, "engine_context", None)
    if context is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return context


def verify_internal_key(request: Request, x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    context = get_engine_context(request)
    if x_internal_key != context.settings.internal_api_key:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


def result_or_raise(result: Union[OperationResult, DeliveryAttemptResult]) -> dict:
    """Return the result as a dict, or raise the HTTP error matching its code."""
    if result.error_code is not None:
        raise HTTPException(
            status_code=ERROR_STATUS.get(result.error_code, 400),
            detail=result.to_dict(),
        )
    return result.to_dict()
