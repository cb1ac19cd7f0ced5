from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Final

from fastapi import FastAPI

from execengine.api.routes import router as api_router
from execengine.core.config import Settings, get_settings
from execengine.core.logging_setup import configure_logging
from execengine.services.engine import ExecutionEngine


def create_app(settings: Settings | None = None, engine: ExecutionEngine | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    engine = engine or ExecutionEngine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine.start()
        try:
            yield
        finally:
            engine.close()

    app = FastAPI(
        title="Code Execution Engine",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.engine = engine

    @app.get("/healthz")
    def healthz() -> dict[str, str]:  # liveness only; /v1/health checks the sandbox runtime
        return {"status": "ok"}

    app.include_router(api_router, prefix="/v1")
    return app


app: Final[FastAPI] = create_app()


def run() -> None:
    """Run the API using Uvicorn.

    This is for local/dev usage. Production deployments should use a process manager,
    set SANDBOX_BACKEND=docker and size SANDBOX_SLOTS for the host.
    """
    import uvicorn

    host: str = os.environ.get("HOST", "127.0.0.1")
    port_str: str | None = os.environ.get("PORT")
    port: int = int(port_str) if port_str else 8000
    uvicorn.run("execengine.main:app", host=host, port=port, log_level=get_settings().log_level.lower())
