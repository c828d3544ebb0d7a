"""
FastAPI application entry point.

Run it with: uvicorn functree.main:app --reload

Key concepts:
- Lifespan: scans the function tree on startup; an unreadable tree
  aborts startup instead of serving an empty registry
- CORS middleware: allows the dashboard frontend to call this API
- Routers: functions (registry views), projects (namespaces), gateway
"""

import logging
import traceback
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from functree.config import FRONTEND_URL, FUNCTIONS_ROOT
from functree.routers import functions, gateway, projects
from functree.services.manager import FunctionsManager

logger = logging.getLogger(__name__)


def create_app(functions_root: str | Path = FUNCTIONS_ROOT) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup: build the FunctionsManager and scan the tree.
        Shutdown: drop the manager (and with it every namespace).
        """
        manager = FunctionsManager(functions_root)
        await manager.initialize()
        app.state.functions_manager = manager
        logger.info("Serving %d functions from %s", len(manager.registry), manager.root)

        yield

        app.state.functions_manager = None

    app = FastAPI(title="functree", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch unhandled exceptions so the response still gets CORS headers."""
        logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
        traceback.print_exc()
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc)},
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(functions.router)
    app.include_router(projects.router)
    app.include_router(gateway.router)

    @app.get("/api/health")
    async def health():
        """Simple health check endpoint. Returns {"status": "ok"} if the server is running."""
        return {"status": "ok"}

    return app


app = create_app()
