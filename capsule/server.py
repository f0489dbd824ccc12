"""
Capsule Server

Main FastAPI application entry point. Wires the sandbox orchestrator, the chat
store and the chat sync engine together and serves them under /api.
"""

import os
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from capsule import __version__
from capsule.api import api_router
from capsule.config import Settings, get_settings
from capsule.core.backend import ContainerBackend
from capsule.core.chat_store import ChatStore
from capsule.core.chat_sync import ChatSyncEngine
from capsule.core.docker_backend import DockerBackend
from capsule.core.orchestrator import SandboxOrchestrator
from capsule.core.runtime_client import (
    AgentRuntimeClient,
    HttpRuntimeClient,
    RuntimeClientFactory,
)
from capsule.db.database import close_database, init_database
from capsule.lib.errors import CapsuleError, ErrorCode, ErrorResponse
from capsule.lib.logger import get_logger, setup_logging
from capsule.models.sandbox import Sandbox, SandboxStatus

logger = get_logger(__name__)

RuntimeClientBuilder = Callable[[Sandbox], AgentRuntimeClient]


def create_app(
    settings: Optional[Settings] = None,
    backend: Optional[ContainerBackend] = None,
    runtime_client_builder: Optional[RuntimeClientBuilder] = None,
) -> FastAPI:
    """Build the application.

    backend and runtime_client_builder default to the docker CLI and the HTTP
    runtime client; tests pass in-memory replacements.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        app_settings = settings or get_settings()

        # Set up logging
        setup_logging(level=app_settings.log_level)

        logger.info("Starting Capsule server...")
        logger.info(f"Data dir: {app_settings.data_dir}")

        app_settings.database_path.parent.mkdir(parents=True, exist_ok=True)

        # Initialize database
        db = await init_database(app_settings.database_path)
        logger.info(f"Database initialized: {app_settings.database_path}")

        container_backend = backend or DockerBackend(
            container_prefix=app_settings.container_prefix,
            docker_binary=app_settings.docker_binary,
            command_timeout=app_settings.docker_command_timeout,
        )
        orchestrator = SandboxOrchestrator(container_backend, db, app_settings)

        def build_http_client(sandbox: Sandbox) -> AgentRuntimeClient:
            return HttpRuntimeClient(
                orchestrator.resolve_runtime_url(sandbox),
                timeout=app_settings.runtime_timeout_seconds,
            )

        clients = RuntimeClientFactory(db, runtime_client_builder or build_http_client)
        sync_engine = ChatSyncEngine(orchestrator, db, clients, app_settings)

        app.state.settings = app_settings
        app.state.database = db
        app.state.orchestrator = orchestrator
        app.state.chat_store = ChatStore(db)
        app.state.runtime_clients = clients
        app.state.sync_engine = sync_engine

        # Bring the registry in line with the containers that actually exist
        await orchestrator.reconcile()

        if app_settings.live_sync_enabled:
            running = await db.list_sandboxes(statuses={SandboxStatus.RUNNING})
            for sandbox in running:
                await sync_engine.start_live_sync(sandbox.id)
            logger.info(f"Live sync started for {len(running)} running sandbox(es)")

        logger.info("Server ready")

        yield

        # Shutdown
        logger.info("Shutting down...")

        await sync_engine.stop_all()
        await clients.aclose()
        await close_database()
        app.state.orchestrator = None
        app.state.chat_store = None
        app.state.sync_engine = None
        app.state.runtime_clients = None
        app.state.database = None

    app = FastAPI(
        title="Capsule",
        description="Sandbox orchestration and agent chat history",
        version=__version__,
        lifespan=lifespan,
    )

    cors_origins = (settings or get_settings()).cors_origins_list
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins is not None else ["*"],
        allow_credentials=cors_origins is not None,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CapsuleError)
    async def capsule_error_handler(request: Request, exc: CapsuleError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response().model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        body = ErrorResponse(
            error="Invalid request",
            code=ErrorCode.VALIDATION_ERROR,
            details=jsonable_encoder(exc.errors()),
        )
        return JSONResponse(status_code=400, content=body.model_dump(mode="json", exclude_none=True))

    # Include API routes
    app.include_router(api_router)

    @app.get("/")
    async def root():
        """Root endpoint - returns server info."""
        return {
            "name": "Capsule",
            "version": __version__,
            "status": "running",
        }

    return app


app = create_app()


def main():
    """Main entry point."""
    settings = get_settings()

    # Allow CAPSULE_PORT env var to override
    port = int(os.environ.get("CAPSULE_PORT", settings.port))

    print(f"""
===============================================================
                        Capsule
===============================================================
  Server:  http://{settings.host}:{port}
  Data:    {str(settings.data_dir)[:45]}
---------------------------------------------------------------
  API Endpoints:
    GET  /api/health                              - Health check
    GET  /api/sandboxes                           - List sandboxes
    POST /api/sandboxes                           - Create sandbox
    POST /api/sandboxes/:id/{{start,stop,...}}      - Lifecycle
    GET  /api/sandboxes/:id/chat/sessions         - List chat sessions
    POST /api/sandboxes/:id/chat/sync             - Sync from runtime
===============================================================
    """)

    uvicorn.run(
        app,
        host=settings.host,
        port=port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
