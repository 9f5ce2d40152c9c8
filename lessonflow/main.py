"""Application entry point and FastAPI app factory."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
import sys
from pathlib import Path

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .config.dependencies import get_pipeline
from .config.settings import settings
from .controllers import analysis, audio, jobs, transcripts
from .database import dispose_engine, init_models
from .middleware import StructuredLoggingMiddleware, TelemetryMiddleware
from .pipelines.lesson.errors import (
    AnalysisNotFoundError,
    ExpiredResourceError,
    InsufficientDataError,
    InvalidStateError,
    PipelineError,
    TranscriptNotFoundError,
    UnsupportedLanguageError,
)
from .services.audio_store import AudioNotFoundError, AudioStoreError
from .services.lessons import LessonNotFoundError
from .views.common import ErrorResponse

logger = logging.getLogger(__name__)

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _configure_logging() -> None:
    """Stream logs to stdout and a rotating file; sweeps also get their own file."""

    logging.getLogger().handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(logging.Formatter(_FORMAT))

    log_path = Path(settings.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=1_000_000,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(_FORMAT))

    root_logger = logging.getLogger()
    root_logger.addHandler(stdout_handler)
    root_logger.addHandler(file_handler)
    root_logger.setLevel(logging.DEBUG if settings.debug else logging.INFO)

    middleware_logger = logging.getLogger("lessonflow.middleware.structured")
    middleware_logger.handlers.clear()
    middleware_stdout = logging.StreamHandler(sys.stdout)
    middleware_stdout.setFormatter(logging.Formatter("%(message)s"))
    middleware_logger.addHandler(middleware_stdout)
    middleware_logger.setLevel(logging.INFO)
    middleware_logger.propagate = False

    pipeline_log_path = Path(settings.pipeline_log_file)
    pipeline_log_path.parent.mkdir(parents=True, exist_ok=True)
    pipeline_handler = RotatingFileHandler(
        pipeline_log_path,
        maxBytes=500_000,
        backupCount=5,
        encoding="utf-8",
    )
    pipeline_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    )
    pipeline_logger = logging.getLogger("lessonflow.pipeline")
    pipeline_logger.handlers.clear()
    pipeline_logger.addHandler(pipeline_handler)
    pipeline_logger.setLevel(logging.INFO)

    noisy_loggers = [
        "botocore",
        "boto3",
        "urllib3",
        "sqlalchemy.engine",
        "openai",
        "httpx",
    ]
    for name in noisy_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


_ERROR_STATUS: tuple[tuple[type[Exception], int], ...] = (
    (TranscriptNotFoundError, status.HTTP_404_NOT_FOUND),
    (AnalysisNotFoundError, status.HTTP_404_NOT_FOUND),
    (LessonNotFoundError, status.HTTP_404_NOT_FOUND),
    (AudioNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (ExpiredResourceError, status.HTTP_410_GONE),
    (InsufficientDataError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UnsupportedLanguageError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def status_for(exc: Exception) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_502_BAD_GATEWAY


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    _configure_logging()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        description="Post-lesson audio-to-insight pipeline API",
    )

    app.add_middleware(TelemetryMiddleware)
    app.add_middleware(StructuredLoggingMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

    app.include_router(transcripts.router)
    app.include_router(analysis.router)
    app.include_router(audio.router)
    app.include_router(jobs.router)

    def _pipeline():
        return app.dependency_overrides.get(get_pipeline, get_pipeline)()

    @app.get("/", include_in_schema=False)
    async def root() -> dict[str, str]:
        """Root endpoint."""

        return {
            "message": f"Welcome to {settings.app_name}",
            "version": settings.app_version,
            "status": "operational",
        }

    @app.get("/health", include_in_schema=False)
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""

        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
        }

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Expose application metrics for Prometheus scraping."""

        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(detail=str(exc.detail)).model_dump(exclude_none=True),
        )

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        code = status_for(exc)
        if code >= 500:
            logger.error("Pipeline error on %s: %s", request.url.path, exc)
            return JSONResponse(
                status_code=code,
                content=ErrorResponse(detail="Upstream provider error", code="upstream_error").model_dump(),
            )
        return JSONResponse(
            status_code=code,
            content=ErrorResponse(detail=str(exc)).model_dump(exclude_none=True),
        )

    @app.exception_handler(AudioStoreError)
    async def audio_store_exception_handler(request: Request, exc: AudioStoreError):
        code = status_for(exc)
        if code >= 500:
            logger.error("Audio store error on %s: %s", request.url.path, exc)
            return JSONResponse(
                status_code=code,
                content=ErrorResponse(detail="Audio storage unavailable", code="storage_error").model_dump(),
            )
        return JSONResponse(
            status_code=code,
            content=ErrorResponse(detail=str(exc)).model_dump(exclude_none=True),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(detail="Internal server error").model_dump(exclude_none=True),
        )

    @app.on_event("startup")
    async def startup_event() -> None:
        await init_models()
        if settings.pipeline.scheduler_enabled:
            await _pipeline().scheduler.start()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        services = _pipeline()
        await services.scheduler.stop()
        await services.auto_complete.drain()
        await dispose_engine()

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "lessonflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
