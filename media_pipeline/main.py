from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from media_pipeline.api.v1 import api_router
from media_pipeline.core.config import settings
from media_pipeline.core.logging_config import configure_logging
from media_pipeline.db.session import init_models
from media_pipeline.middleware import RequestLoggingMiddleware
from media_pipeline.schemas.error import ErrorResponse
from media_pipeline.services.errors import MediaError


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await init_models()
    yield


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    tags_metadata = [
        {"name": "media", "description": "Media assets, variants, crops and usage"},
        {"name": "health", "description": "Liveness"},
        {"name": "metrics", "description": "In-process counters"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    media_root = Path(settings.media_root)
    media_root.mkdir(parents=True, exist_ok=True)
    app.include_router(api_router, prefix="/api/v1")
    app.mount(settings.media_url_prefix, StaticFiles(directory=media_root), name="media")

    @app.exception_handler(MediaError)
    async def media_exception_handler(request: Request, exc: MediaError):
        request.state.error_code = exc.code
        payload = ErrorResponse(detail=exc.detail, code=exc.code, request_id=_request_id(request))
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(detail=exc.detail, code=None, request_id=_request_id(request))
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(payload.model_dump()))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        request.state.error_code = "validation_error"
        payload = ErrorResponse(detail=errors, code="validation_error", request_id=_request_id(request))
        return JSONResponse(status_code=422, content=payload.model_dump())

    return app


app = get_application()
