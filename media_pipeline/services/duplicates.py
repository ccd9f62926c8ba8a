from __future__ import annotations

import enum
import logging
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.core import metrics
from media_pipeline.models.media import MediaAsset
from media_pipeline.services import assets as asset_service
from media_pipeline.services.errors import DuplicateFound, MediaError
from media_pipeline.services.storage import UploadedFile
from media_pipeline.services.transforms import Transformer

logger = logging.getLogger(__name__)


class DuplicateResolution(str, enum.Enum):
    override = "override"
    save_as_new = "save_as_new"
    cancel = "cancel"


async def check(session: AsyncSession, original_filename: str) -> list[MediaAsset]:
    """Assets stored under exactly this client filename, newest first."""
    name = str(original_filename or "").strip()
    if not name:
        return []
    rows = (
        await session.execute(
            select(MediaAsset)
            .where(MediaAsset.original_filename == name)
            .order_by(MediaAsset.created_at.desc(), MediaAsset.id.desc())
        )
    ).scalars().all()
    return list(rows)


def candidate_summary(asset: MediaAsset) -> dict[str, Any]:
    return {
        "id": str(asset.id),
        "original_filename": asset.original_filename,
        "original_url": asset.original_url,
        "size": asset.size,
        "created_at": asset.created_at.isoformat() if asset.created_at else None,
    }


async def upload(
    session: AsyncSession,
    file: UploadedFile,
    *,
    naming: str = "original",
    append_id: bool = False,
    alt_text: str | None = None,
    title: str | None = None,
    description: str | None = None,
    categories: list[str] | None = None,
    resolution: DuplicateResolution | str | None = None,
    existing_id: UUID | None = None,
    force: bool = False,
    transformer: Transformer | None = None,
) -> MediaAsset | None:
    """Store an upload once any filename collision has been resolved.

    Returns `None` when the caller cancelled.
    """
    choice = DuplicateResolution(resolution) if resolution else None
    candidates = await check(session, file.filename)
    if candidates and choice is None:
        metrics.record_duplicate_detected()
        logger.info("media_duplicate_detected", extra={"original_filename": file.filename, "candidates": len(candidates)})
        raise DuplicateFound(file.filename, [candidate_summary(asset) for asset in candidates])

    if choice == DuplicateResolution.cancel:
        logger.info("media_upload_cancelled", extra={"original_filename": file.filename})
        return None

    if choice == DuplicateResolution.override:
        target = existing_id or (candidates[0].id if candidates else None)
        if target is None:
            raise MediaError(
                "Choose the asset to override", detail={"message": "Choose the asset to override", "resolution": "override"}
            )
        return await asset_service.override(session, target, file, "light", force=force, transformer=transformer)

    return await asset_service.create(
        session,
        file,
        naming=naming,
        append_id=append_id or choice == DuplicateResolution.save_as_new,
        alt_text=alt_text,
        title=title,
        description=description,
        categories=categories,
        transformer=transformer,
    )
