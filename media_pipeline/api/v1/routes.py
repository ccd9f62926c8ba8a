from fastapi import APIRouter

from media_pipeline.api.v1 import media
from media_pipeline.core.metrics import snapshot as metrics_snapshot

api_router = APIRouter()

api_router.include_router(media.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
