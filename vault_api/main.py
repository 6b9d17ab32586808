"""
WeightVault API

Compresses numeric models and stores them as versioned artifacts.
"""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from weightvault import __version__
from weightvault.coordinator import AdaptiveCoordinator
from weightvault.exceptions import (
    CorruptArtifactError,
    TopologyMismatchError,
    ValidationError,
    WeightVaultError,
)

from vault_api.config import Settings, get_settings
from vault_api.database import Database
from vault_api.routes import compression, health, models
from vault_api.services.artifact_store import create_artifact_store
from vault_api.services.model_storage import Clock, ModelStorageService, epoch_ms


logger = logging.getLogger(__name__)


def _error(request: Request, status_code: int, code: str, message: str, details=None) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


def create_app(settings: Optional[Settings] = None, clock: Clock = epoch_ms) -> FastAPI:
    """
    Build the application.

    Database, artifact store, coordinator and storage service are created in
    the lifespan and kept on `app.state`.
    """
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting WeightVault API (%s)", settings.app_env)
        database = Database(settings)
        await database.create_all()
        coordinator = AdaptiveCoordinator(settings.coordinator_config())
        caps = await asyncio.to_thread(coordinator.capabilities)
        logger.info(
            "Parallel backend %s (%s)",
            "available" if caps["parallel"] else "unavailable",
            caps["device"] if caps["parallel"] else caps["probe_error"],
        )
        store = create_artifact_store(settings)

        app.state.settings = settings
        app.state.database = database
        app.state.coordinator = coordinator
        app.state.storage = ModelStorageService(database, store, coordinator, settings, clock=clock)
        logger.info("WeightVault API ready (artifact store: %s)", settings.artifact_store)

        yield

        await database.close()
        logger.info("WeightVault API stopped")

    app = FastAPI(
        title="WeightVault API",
        description="Adaptive model compression with versioned artifact storage.",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def add_timing(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Process-Time"] = f"{time.perf_counter() - start_time:.4f}"
        return response

    # Registered last so it runs first and the id is set for every handler
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception Handlers

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"loc": [str(p) for p in err["loc"]], "msg": err["msg"], "type": err["type"]}
            for err in exc.errors()
        ]
        return _error(request, status.HTTP_422_UNPROCESSABLE_ENTITY,
                      "VALIDATION_ERROR", "Request validation failed", details)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error(request, status.HTTP_422_UNPROCESSABLE_ENTITY,
                      "VALIDATION_ERROR", str(exc), exc.details)

    @app.exception_handler(TopologyMismatchError)
    async def topology_handler(request: Request, exc: TopologyMismatchError):
        return _error(request, status.HTTP_409_CONFLICT, "TOPOLOGY_MISMATCH", str(exc))

    @app.exception_handler(CorruptArtifactError)
    async def corrupt_artifact_handler(request: Request, exc: CorruptArtifactError):
        logger.error("Corrupt artifact on %s: %s", request.url.path, exc)
        return _error(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "CORRUPT_ARTIFACT", str(exc))

    @app.exception_handler(WeightVaultError)
    async def weightvault_handler(request: Request, exc: WeightVaultError):
        logger.error("Unhandled engine error on %s: %s", request.url.path, exc)
        return _error(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "ENGINE_ERROR", str(exc))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        code = {
            status.HTTP_404_NOT_FOUND: "NOT_FOUND",
            status.HTTP_409_CONFLICT: "CONFLICT",
        }.get(exc.status_code, "HTTP_ERROR")
        return _error(request, exc.status_code, code, str(exc.detail))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("Unexpected error on %s", request.url.path)
        return _error(
            request, status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR",
            "An unexpected error occurred" if settings.is_production else str(exc),
        )

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(compression.router, prefix="/compression", tags=["Compression"])
    app.include_router(models.router, prefix="/models", tags=["Models"])

    @app.get("/", tags=["Root"])
    async def root() -> Dict[str, Any]:
        return {
            "name": "WeightVault API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "vault_api.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
