import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api import exports, storage
from src.api.deps import JobStoreDep
from src.config import get_settings
from src.exceptions import ExportError
from src.models.database import create_db_engine, create_session_factory, init_db
from src.services.export_queue import JobStore
from src.services.storage_service import StorageService, create_storage_service

settings = get_settings()
logger = logging.getLogger(__name__)


def create_app(
    job_store: JobStore | None = None,
    storage_service: StorageService | None = None,
) -> FastAPI:
    """Build the API application.

    A job store or storage client passed in is used as is and never closed by
    the app. Missing ones are built from settings at startup and disposed at
    shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        engine = None
        if job_store is None:
            engine = create_db_engine(settings.database_url, settings.database_echo)
            init_db(engine)
            app.state.job_store = JobStore(create_session_factory(engine))
        if storage_service is None:
            app.state.storage = create_storage_service(settings)
        yield
        # Shutdown
        if engine is not None:
            engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    if job_store is not None:
        app.state.job_store = job_store
    if storage_service is not None:
        app.state.storage = storage_service

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ExportError)
    async def export_error_handler(request: Request, exc: ExportError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"[API] {exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(
                {"detail": exc.message, "error": exc.to_error_info().model_dump(exclude_none=True)}
            ),
        )

    # Global exception handler to ensure errors return proper JSON
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    # Routers
    app.include_router(exports.router, prefix="/api", tags=["exports"])
    app.include_router(storage.router, prefix="/api/storage", tags=["storage"])

    @app.get("/health")
    def health_check(store: JobStoreDep) -> dict:
        return {
            "status": "healthy",
            "version": settings.app_version,
            "jobs": store.count_by_status(),
        }

    return app


app = create_app()
