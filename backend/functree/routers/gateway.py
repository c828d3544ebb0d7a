"""
Gateway router.

Receives HTTP requests at /api/gateway/{project_ref}/{function path} and
runs the matching function for that project. For example:

    POST /api/gateway/proj1/api/auth/login
    Body: {"user": "islam"}

runs api/auth/login in proj1's namespace. Legacy flat names work too:
POST /api/gateway/proj1/login resolves to api/auth/login if unambiguous.

Every request goes through the manager's full gate: sandboxed path
resolution, namespace access, the security manager, then the proxy.
Function failures come back with the function's failure status and a
JSON body; the gateway itself never turns them into 500s.
"""

import json

from fastapi import APIRouter, Depends, Request, Response

from functree.dependencies import get_manager
from functree.services.manager import FunctionsManager

router = APIRouter(prefix="/api/gateway", tags=["gateway"])

# Hop-by-hop and transport headers are not forwarded to functions.
DROPPED_HEADERS = {"host", "content-length", "connection", "transfer-encoding"}


@router.post("/{project_ref}/{function_path:path}")
async def gateway(
    project_ref: str,
    function_path: str,
    request: Request,
    caller: str | None = None,
    timeout: float | None = None,
    manager: FunctionsManager = Depends(get_manager),
):
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else {}
    except json.JSONDecodeError:
        return Response(
            content=json.dumps({"error": "Invalid JSON body"}),
            status_code=400,
            media_type="application/json",
        )

    headers = {k: v for k, v in request.headers.items() if k.lower() not in DROPPED_HEADERS}

    result = await manager.invoke(
        project_ref,
        function_path,
        payload,
        headers=headers,
        caller=caller,
        timeout=timeout,
    )
    return Response(
        content=result.content,
        status_code=result.status_code,
        media_type=result.headers.get("content-type", "application/json"),
    )
