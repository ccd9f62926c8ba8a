import logging
import time
import uuid
from typing import Any, Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from media_pipeline.core.config import settings
from media_pipeline.core.logging_config import request_id_ctx_var

logger = logging.getLogger("media_pipeline.request")


def request_fields(request: Request, status_code: int, started: float) -> dict[str, Any]:
    """Fields of one `media_request` line; routing has already filled `path_params`."""
    fields: dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "status_code": status_code,
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }
    asset_id = request.path_params.get("asset_id")
    if asset_id is not None:
        fields["asset_id"] = str(asset_id)
    if request.headers.get("content-type", "").startswith("multipart/form-data"):
        length = request.headers.get("content-length")
        if length and length.isdigit():
            fields["upload_bytes"] = int(length)
    error_code = getattr(request.state, "error_code", None)
    if error_code:
        fields["error_code"] = error_code
    if request.url.path.startswith(settings.media_url_prefix.rstrip("/") + "/"):
        fields["static"] = True
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_ctx_var.set(request_id)
        request.state.request_id = request_id
        started = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            if response is not None:
                response.headers["X-Request-ID"] = request_id
                level = logging.WARNING if response.status_code >= 500 else logging.INFO
                logger.log(level, "media_request", extra=request_fields(request, response.status_code, started))
            request_id_ctx_var.reset(token)
