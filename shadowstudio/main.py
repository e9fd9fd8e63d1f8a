import logging
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shadowstudio.api import render
from shadowstudio.config import Settings, get_settings
from shadowstudio.constants.error_codes import get_error_spec
from shadowstudio.exceptions import ShadowStudioError
from shadowstudio.models.database import init_db
from shadowstudio.schemas.envelope import ErrorInfo, ErrorResponse
from shadowstudio.services.clip_catalog import InMemoryClipCatalog
from shadowstudio.services.job_store import InMemoryJobStore, JobStore, SqlAlchemyJobStore
from shadowstudio.services.render_service import RenderService
from shadowstudio.utils.media_info import has_audio_track

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def build_job_store(settings: Settings) -> JobStore:
    if settings.job_store_backend == "memory":
        return InMemoryJobStore()
    init_db()
    return SqlAlchemyJobStore()


def build_clip_catalog(settings: Settings) -> InMemoryClipCatalog:
    if settings.clip_catalog_path:
        audio_lookup = (
            partial(has_audio_track, ffprobe_path=settings.ffprobe_path)
            if settings.clip_catalog_detect_audio
            else None
        )
        return InMemoryClipCatalog.from_json_file(settings.clip_catalog_path, audio_lookup)
    logger.warning("CLIP_CATALOG_PATH is not set; the clip catalog starts empty")
    return InMemoryClipCatalog()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    Path(settings.output_dir).mkdir(parents=True, exist_ok=True)
    Path(settings.temp_dir).mkdir(parents=True, exist_ok=True)
    service = RenderService.from_settings(
        settings, build_job_store(settings), build_clip_catalog(settings)
    )
    await service.recover_interrupted()
    await service.cleanup_old_jobs()
    app.state.render_service = service
    yield
    # Shutdown
    await service.shutdown()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, error: ErrorInfo) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(ErrorResponse(error=error).model_dump(exclude_none=True)),
    )


@app.exception_handler(ShadowStudioError)
async def shadowstudio_exception_handler(request: Request, exc: ShadowStudioError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path}: [{exc.code}] {exc.message}")
    return _error_response(exc.status_code, exc.to_error_info())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Request validation errors (422) in the error envelope format."""
    spec = get_error_spec("VALIDATION_ERROR")

    errors = exc.errors()
    if errors:
        first_error = errors[0]
        loc = " -> ".join(str(x) for x in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")
        message = f"{loc}: {msg}" if loc else msg
    else:
        message = "Request validation failed"

    error = ErrorInfo(
        code="VALIDATION_ERROR",
        message=message,
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return _error_response(422, error)


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    spec = get_error_spec("INTERNAL_ERROR")
    error = ErrorInfo(
        code="INTERNAL_ERROR",
        message="Internal server error",
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return _error_response(500, error)


# Routers
app.include_router(render.router, prefix="/api", tags=["render"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": settings.app_version}
