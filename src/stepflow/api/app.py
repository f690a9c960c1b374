"""
FastAPI application
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .. import __version__
from ..config import EngineSettings
from ..core.engine import WorkflowEngine, open_engine
from ..integrations import MockAgentRuntime
from .dependencies import app_state
from .middleware import RequestLoggingMiddleware
from .routers import workflows, runs, suspensions, monitoring


logger = logging.getLogger(__name__)


def create_app(engine: WorkflowEngine = None, settings: EngineSettings = None) -> FastAPI:
    """
    Build the API application.

    When ``engine`` is given it is served as is and left running on
    shutdown; otherwise one is built from ``settings`` (or the environment).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Stepflow API...")
        db_manager = None
        owned = engine is None

        if owned:
            served, db_manager = await open_engine(
                settings or EngineSettings.from_env(),
                agent_runtime=MockAgentRuntime(),
            )
        else:
            served = engine

        app_state.update({
            "engine": served,
            "db_manager": db_manager,
        })
        logger.info("Stepflow API started")

        yield

        logger.info("Shutting down Stepflow API...")
        if owned:
            await served.shutdown()
        if db_manager is not None:
            await db_manager.close()
        app_state.clear()
        logger.info("Stepflow API shut down")

    app = FastAPI(
        title="Stepflow API",
        description="Workflow execution engine for multi-step agent pipelines",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
    app.include_router(runs.router, prefix="/api/v1/runs", tags=["runs"])
    app.include_router(suspensions.router, prefix="/api/v1/suspensions", tags=["suspensions"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None)
            }
        )

    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": "Stepflow API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/monitoring/health"
        }

    return app
