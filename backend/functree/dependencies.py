"""
FastAPI dependencies shared by the routers.

The FunctionsManager is created once in the app lifespan and stored on
app.state; routers receive it through Depends(get_manager).
"""

from fastapi import Request

from functree.services.manager import FunctionsManager


def get_manager(request: Request) -> FunctionsManager:
    return request.app.state.functions_manager
