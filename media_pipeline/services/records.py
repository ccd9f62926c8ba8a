from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.models.media import MediaActivityEvent, MediaAsset
from media_pipeline.services.errors import AssetNotFound, UnsupportedMedia
from media_pipeline.services.transforms import is_raster


def now() -> datetime:
    return datetime.now(timezone.utc)


async def get_asset_or_404(session: AsyncSession, asset_id: UUID, *, refresh: bool = False) -> MediaAsset:
    """Load an asset; `refresh` overwrites whatever the session already holds for it."""
    stmt = select(MediaAsset).where(MediaAsset.id == asset_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    asset = await session.scalar(stmt)
    if asset is None:
        raise AssetNotFound(asset_id)
    return asset


def ensure_raster(asset: MediaAsset) -> None:
    if not is_raster(asset.mime_type, asset.original_filename):
        raise UnsupportedMedia(
            "Variants are only generated for raster images",
            detail={"message": "Variants are only generated for raster images", "mime_type": asset.mime_type},
        )


async def record_activity(
    session: AsyncSession,
    *,
    asset_id: UUID | None,
    action: str,
    meta: dict[str, Any] | None = None,
) -> None:
    session.add(
        MediaActivityEvent(
            asset_id=asset_id,
            action=(action or "").strip()[:80] or "event",
            meta_json=(json.dumps(meta, separators=(",", ":"), ensure_ascii=False, default=str) if meta else None),
        )
    )
    await session.flush()
