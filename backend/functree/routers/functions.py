"""
Functions router.

Read-only views over the scanned function tree, plus a rescan trigger.
All endpoints are prefixed with /api/functions.

- GET  /api/functions           every scanned function
- GET  /api/functions/order     deployment order (or the cycles blocking it)
- GET  /api/functions/validate  every graph/env/namespace problem at once
- POST /api/functions/rescan    rebuild the registry from disk
- GET  /api/functions/{path}    one function, by relative path or legacy name
"""

from fastapi import APIRouter, Depends, HTTPException

from functree.dependencies import get_manager
from functree.schemas import DeploymentOrderResponse, FunctionResponse, ValidationResponse
from functree.services.function_scanner import ScanError
from functree.services.manager import FunctionsManager

router = APIRouter(prefix="/api/functions", tags=["functions"])


@router.get("", response_model=list[FunctionResponse])
async def list_functions(manager: FunctionsManager = Depends(get_manager)):
    """List every function found by the last scan, sorted by path."""
    return [
        FunctionResponse.from_metadata(fn)
        for fn in sorted(manager.registry.values(), key=lambda fn: fn.relative_path)
    ]


@router.get("/order", response_model=DeploymentOrderResponse)
async def deployment_order(manager: FunctionsManager = Depends(get_manager)):
    """
    Deployment order, dependencies first.

    A cyclic graph still answers 200: ok is false, functions is empty and
    cycles lists every cycle found.
    """
    order = manager.deployment_order()
    return DeploymentOrderResponse(
        ok=order.ok,
        functions=order.functions,
        batches=order.batches,
        cycles=order.cycles,
    )


@router.get("/validate", response_model=ValidationResponse)
async def validate(manager: FunctionsManager = Depends(get_manager)):
    result = manager.validate()
    return ValidationResponse(**result.model_dump())


@router.post("/rescan")
async def rescan(manager: FunctionsManager = Depends(get_manager)):
    """Re-read the tree. On failure the previous registry stays active."""
    try:
        registry = await manager.rescan()
    except ScanError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return {"functions": len(registry)}


@router.get("/{function_path:path}", response_model=FunctionResponse)
async def get_function(function_path: str, manager: FunctionsManager = Depends(get_manager)):
    fn = manager.get_function(function_path)
    if fn is None:
        raise HTTPException(status_code=404, detail="Function not found")
    return FunctionResponse.from_metadata(fn)
