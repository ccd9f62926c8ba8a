from __future__ import annotations

import json
import logging
import mimetypes
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import String, and_, cast, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from media_pipeline.core import metrics
from media_pipeline.core.config import settings
from media_pipeline.models.media import MediaAsset
from media_pipeline.services import storage
from media_pipeline.services import variants as variant_service
from media_pipeline.services.asset_locks import asset_lock
from media_pipeline.services.errors import MediaError, RenameConflict, UsageBlocked, VariantGenerationFailure
from media_pipeline.services.records import ensure_raster, get_asset_or_404, now, record_activity
from media_pipeline.services.storage import UploadedFile
from media_pipeline.services.transforms import Transformer, get_transformer, is_raster
from media_pipeline.services.usage import clear_featured, rewrite_references, usage_for_asset
from media_pipeline.services.variant_policy import CROPPED_VARIANT, Theme, coerce_theme, mark_stale, variants_of

logger = logging.getLogger(__name__)

ORIGINALS_FOLDER = "originals"
NAMING_POLICIES = ("original", "generated")
SORT_FIELDS = ("created_at", "original_filename", "size")
AI_IMAGE_PREFIX = "Gemini_Generated_Image_"

_EXTRA_MIME_TYPES = {
    ".webp": "image/webp",
    ".avif": "image/avif",
    ".svg": "image/svg+xml",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
}


@dataclass(slots=True)
class MediaListFilters:
    category: str = ""
    sort_by: str = "created_at"
    sort_order: str = "desc"
    page: int = 1
    limit: int = 24


def sanitize_filename(filename: str | None) -> str:
    name = Path(str(filename or "")).name.lower()
    cleaned = re.sub(r"[^a-z0-9._-]", "-", name)
    cleaned = re.sub(r"-{2,}", "-", cleaned).strip("-.")
    return cleaned


def normalize_mime(filename: str | None, content_type: str | None) -> str:
    suffix = Path(str(filename or "")).suffix.lower()
    guessed = _EXTRA_MIME_TYPES.get(suffix) or mimetypes.guess_type(f"file{suffix}")[0]
    return guessed or (content_type or "").strip().lower() or "application/octet-stream"


def default_alt_text(filename: str | None, mime_type: str) -> str | None:
    if mime_type.startswith("video/"):
        return None
    stem = Path(str(filename or "")).stem
    if stem.startswith(AI_IMAGE_PREFIX):
        return "AI Generated Image"
    text = re.sub(r"\s+", " ", re.sub(r"[-_]+", " ", stem)).strip()
    return text or None


def dedupe_categories(values: list[str] | None) -> list[str]:
    out: list[str] = []
    for raw in values or []:
        value = str(raw or "").strip()
        if value and value not in out:
            out.append(value)
    return out


def _clean_text(value: str | None) -> str | None:
    return (value or "").strip() or None


def _original_key(filename: str) -> str:
    return f"{ORIGINALS_FOLDER}/{filename}"


async def _key_owner(session: AsyncSession, storage_key: str, *, exclude: UUID | None = None) -> UUID | None:
    stmt = select(MediaAsset.id).where(MediaAsset.storage_key == storage_key)
    if exclude is not None:
        stmt = stmt.where(MediaAsset.id != exclude)
    return await session.scalar(stmt)


async def _key_taken(session: AsyncSession, storage_key: str, *, exclude: UUID | None = None) -> bool:
    if await _key_owner(session, storage_key, exclude=exclude) is not None:
        return True
    return storage.exists(storage_key)


async def allocate_storage_key(
    session: AsyncSession,
    filename: str | None,
    *,
    naming: str = "original",
    append_id: bool = False,
    exclude: UUID | None = None,
) -> str:
    """Pick a free `originals/` key for an upload.

    `original` keeps the sanitized client name and resolves collisions with `-1`, `-2`,
    ... or, with `append_id`, a short random id. `generated` always uses a uuid name.
    """
    sanitized = sanitize_filename(filename)
    suffix = Path(sanitized).suffix
    if naming == "generated" or not Path(sanitized).stem:
        return _original_key(f"{uuid4().hex}{suffix}")

    stem = Path(sanitized).stem
    key = _original_key(sanitized)
    if not await _key_taken(session, key, exclude=exclude):
        return key
    if append_id:
        while True:
            key = _original_key(f"{stem}-{uuid4().hex[:8]}{suffix}")
            if not await _key_taken(session, key, exclude=exclude):
                return key
    counter = 1
    while True:
        key = _original_key(f"{stem}-{counter}{suffix}")
        if not await _key_taken(session, key, exclude=exclude):
            return key
        counter += 1


async def create(
    session: AsyncSession,
    upload: UploadedFile,
    *,
    naming: str = "original",
    append_id: bool = False,
    alt_text: str | None = None,
    title: str | None = None,
    description: str | None = None,
    categories: list[str] | None = None,
    derive: bool = True,
    transformer: Transformer | None = None,
) -> MediaAsset:
    if naming not in NAMING_POLICIES:
        raise MediaError(f"Unknown naming policy: {naming}")
    transformer = transformer or get_transformer()
    client_name = Path(upload.filename).name
    mime_type = normalize_mime(client_name, upload.content_type)
    storage_key = await allocate_storage_key(session, client_name, naming=naming, append_id=append_id)
    path = storage.write_bytes(storage_key, upload.content)

    width = height = None
    if is_raster(mime_type, client_name):
        probed = await transformer.probe(path)
        if probed:
            width, height = probed

    asset = MediaAsset(
        id=uuid4(),
        storage_key=storage_key,
        original_url=storage.url_for_key(storage_key),
        original_filename=client_name,
        mime_type=mime_type,
        size=upload.size,
        width=width,
        height=height,
        alt_text=_clean_text(alt_text) or default_alt_text(client_name, mime_type),
        title=_clean_text(title),
        description=_clean_text(description),
        categories=dedupe_categories(categories),
        meta={"variants": []},
    )
    session.add(asset)
    try:
        await session.flush()
        await record_activity(
            session,
            asset_id=asset.id,
            action="media.upload",
            meta={"filename": client_name, "storage_key": storage_key, "naming": naming},
        )
        await session.commit()
    except Exception:
        await session.rollback()
        storage.delete_key(storage_key)
        raise
    metrics.record_upload()
    logger.info("media_uploaded", extra={"asset_id": str(asset.id), "storage_key": storage_key, "size": asset.size})

    if derive and width and is_raster(mime_type, client_name):
        try:
            asset = await variant_service.derive_all(session, asset.id, "light", transformer=transformer)
        except VariantGenerationFailure as exc:
            logger.warning(
                "media_upload_variants_incomplete",
                extra={"asset_id": str(asset.id), "failed": sorted(exc.failures)},
            )
            asset = await get_asset_or_404(session, asset.id, refresh=True)
    return asset


async def override(
    session: AsyncSession,
    asset_id: UUID,
    upload: UploadedFile,
    theme: str = "light",
    *,
    force: bool = False,
    transformer: Transformer | None = None,
) -> MediaAsset:
    """Replace the base image of one theme and mark that theme's variants stale."""
    resolved: Theme = coerce_theme(theme)
    transformer = transformer or get_transformer()
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        if settings.media_override_warn_on_use and not force:
            usage = await usage_for_asset(session, asset)
            if not usage.is_empty:
                metrics.record_usage_blocked()
                raise UsageBlocked(asset.id, usage.as_dict())

        client_name = Path(upload.filename).name
        meta = dict(asset.meta or {})
        if resolved == "light":
            await _replace_original(session, asset, upload, client_name, transformer)
            meta.pop("crop_rect", None)
            meta["variants"] = variant_service.discard_variant(variants_of(meta), CROPPED_VARIANT)
        else:
            suffix = Path(sanitize_filename(client_name)).suffix or ".jpg"
            dark_key = f"{variant_service.derived_folder(asset.id)}/dark-source{suffix}"
            previous = meta.get("dark_source_key")
            storage.write_bytes(dark_key, upload.content)
            if previous and previous != dark_key:
                storage.delete_key(previous)
            storage.delete_key(meta.pop("dark_optimized_key", None))
            meta.pop("dark_optimized_url", None)
            meta.pop("dark_optimized_size", None)
            meta["dark_source_key"] = dark_key
            meta["dark_source_url"] = storage.url_for_key(dark_key)

        meta["variants"] = mark_stale(variants_of(meta), resolved)
        asset.meta = meta
        session.add(asset)
        await record_activity(
            session,
            asset_id=asset.id,
            action="media.override",
            meta={"theme": resolved, "filename": client_name, "forced": force},
        )
        await session.commit()
        logger.info("media_overridden", extra={"asset_id": str(asset.id), "theme": resolved})
        return asset


async def _replace_original(
    session: AsyncSession,
    asset: MediaAsset,
    upload: UploadedFile,
    client_name: str,
    transformer: Transformer,
) -> None:
    old_key = asset.storage_key
    old_url = asset.original_url
    sanitized = sanitize_filename(client_name)
    if not sanitized or _original_key(sanitized) == old_key:
        new_key = old_key
    else:
        new_key = await allocate_storage_key(session, client_name, exclude=asset.id)
    path = storage.write_bytes(new_key, upload.content)
    if new_key != old_key:
        storage.delete_key(old_key)

    if asset.optimized_url:
        storage.delete_key(storage.key_for_url(asset.optimized_url))
    asset.optimized_url = None
    asset.optimized_size = None
    asset.optimized_at = None

    asset.storage_key = new_key
    asset.original_url = storage.url_for_key(new_key)
    asset.original_filename = client_name
    asset.mime_type = normalize_mime(client_name, upload.content_type)
    asset.size = upload.size
    asset.width = asset.height = None
    if is_raster(asset.mime_type, client_name):
        probed = await transformer.probe(path)
        if probed:
            asset.width, asset.height = probed
    if asset.original_url != old_url:
        await rewrite_references(session, old_url, asset.original_url)


async def rename(session: AsyncSession, asset_id: UUID, new_filename: str) -> MediaAsset:
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        name = sanitize_filename(new_filename)
        if not Path(name).stem:
            raise MediaError("Filename is required", detail={"message": "Filename is required"})
        if not Path(name).suffix:
            name = f"{name}{Path(asset.storage_key).suffix}"
        new_key = _original_key(name)
        if new_key == asset.storage_key:
            return asset

        owner = await _key_owner(session, new_key, exclude=asset.id)
        if owner is not None or storage.exists(new_key):
            raise RenameConflict(name, owner)

        old_key = asset.storage_key
        old_url = asset.original_url
        storage.move(old_key, new_key)
        asset.storage_key = new_key
        asset.original_url = storage.url_for_key(new_key)
        asset.original_filename = name
        session.add(asset)
        try:
            rewritten = await rewrite_references(session, old_url, asset.original_url)
            await record_activity(
                session,
                asset_id=asset.id,
                action="media.rename",
                meta={"from": old_key, "to": new_key, "references_rewritten": rewritten},
            )
            await session.commit()
        except Exception:
            await session.rollback()
            storage.move(new_key, old_key)
            raise
        logger.info("media_renamed", extra={"asset_id": str(asset.id), "from": old_key, "to": new_key})
        return asset


async def patch_metadata(
    session: AsyncSession,
    asset_id: UUID,
    *,
    alt_text: str | None = None,
    title: str | None = None,
    description: str | None = None,
    categories: list[str] | None = None,
) -> MediaAsset:
    """Edit free-text fields; `None` leaves a field alone, an empty string clears it."""
    asset = await get_asset_or_404(session, asset_id)
    changed: list[str] = []
    if alt_text is not None:
        asset.alt_text = _clean_text(alt_text)
        changed.append("alt_text")
    if title is not None:
        asset.title = _clean_text(title)
        changed.append("title")
    if description is not None:
        asset.description = _clean_text(description)
        changed.append("description")
    if categories is not None:
        asset.categories = dedupe_categories(categories)
        changed.append("categories")
    if not changed:
        return asset
    session.add(asset)
    await record_activity(session, asset_id=asset.id, action="media.update", meta={"fields": changed})
    await session.commit()
    return asset


async def edit_categories(
    session: AsyncSession,
    asset_id: UUID,
    *,
    add: list[str] | None = None,
    remove: list[str] | None = None,
) -> MediaAsset:
    asset = await get_asset_or_404(session, asset_id, refresh=True)
    removals = set(dedupe_categories(remove))
    merged = dedupe_categories(list(asset.categories or []) + list(add or []))
    asset.categories = [value for value in merged if value not in removals]
    session.add(asset)
    await record_activity(
        session,
        asset_id=asset.id,
        action="media.categories.bulk",
        meta={"add": dedupe_categories(add), "remove": sorted(removals)},
    )
    await session.commit()
    return asset


def owned_keys(asset: MediaAsset) -> list[str]:
    meta = asset.meta or {}
    keys: list[str | None] = [asset.storage_key]
    if asset.optimized_url:
        keys.append(storage.key_for_url(asset.optimized_url))
    keys.append(meta.get("dark_source_key"))
    keys.append(meta.get("dark_optimized_key"))
    for variant in variants_of(meta):
        keys.append(variant.get("storage_key"))
        keys.append(variant.get("optimized_key"))
    return [key for key in keys if key]


async def delete(session: AsyncSession, asset_id: UUID, *, force: bool = False) -> None:
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        usage = await usage_for_asset(session, asset)
        if not usage.is_empty and not force:
            metrics.record_usage_blocked()
            logger.info("media_delete_blocked", extra={"asset_id": str(asset.id)})
            raise UsageBlocked(asset.id, usage.as_dict())

        keys = owned_keys(asset)
        if usage.in_posts:
            await clear_featured(session, asset.id)
        await session.delete(asset)
        await record_activity(
            session,
            asset_id=asset.id,
            action="media.delete",
            meta={
                "filename": asset.original_filename,
                "forced": force,
                "references": usage.total,
            },
        )
        await session.commit()

    for key in keys:
        storage.delete_key(key)
    storage.delete_tree(variant_service.derived_folder(asset.id))
    metrics.record_delete()
    logger.info("media_deleted", extra={"asset_id": str(asset.id), "forced": force})


async def optimize(session: AsyncSession, asset_id: UUID, *, transformer: Transformer | None = None) -> MediaAsset:
    """Write WebP copies of the original, every variant and the dark source.

    Variants are not re-derived; entries whose copy fails are reported together after
    the successful copies are committed.
    """
    transformer = transformer or get_transformer()
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        ensure_raster(asset)
        folder = f"{variant_service.derived_folder(asset.id)}/optimized"
        failures: dict[str, str] = {}

        async def _encode(label: str, source_key: str) -> tuple[str, int] | None:
            key = f"{folder}/{label}.webp"
            try:
                rendered = await transformer.optimize_to_webp(storage.path_for_key(source_key), storage.path_for_key(key))
            except Exception as exc:
                failures[label] = str(exc) or exc.__class__.__name__
                logger.warning("media_optimize_failed", extra={"asset_id": str(asset.id), "item": label, "error": failures[label]})
                return None
            return key, rendered.size

        result = await _encode("original", asset.storage_key)
        if result:
            asset.optimized_url = storage.url_for_key(result[0])
            asset.optimized_size = result[1]
            asset.optimized_at = now()

        meta = dict(asset.meta or {})
        updated: list[dict[str, Any]] = []
        for variant in variants_of(meta):
            source_key = variant.get("storage_key")
            result = await _encode(variant["name"], source_key) if source_key else None
            if result:
                variant = {
                    **variant,
                    "optimized_key": result[0],
                    "optimized_url": storage.url_for_key(result[0]),
                    "optimized_size": result[1],
                }
            updated.append(variant)
        meta["variants"] = updated

        dark_key = meta.get("dark_source_key")
        if dark_key:
            result = await _encode("dark-source", dark_key)
            if result:
                meta["dark_optimized_key"] = result[0]
                meta["dark_optimized_url"] = storage.url_for_key(result[0])
                meta["dark_optimized_size"] = result[1]

        asset.meta = meta
        session.add(asset)
        await record_activity(
            session, asset_id=asset.id, action="media.optimize", meta={"failed": sorted(failures)}
        )
        await session.commit()
        if failures:
            raise VariantGenerationFailure(asset.id, "all", failures, asset=asset)
        return asset


async def list_assets(session: AsyncSession, filters: MediaListFilters) -> tuple[list[MediaAsset], dict[str, int]]:
    limit = max(1, min(100, int(filters.limit or 24)))
    page = max(1, int(filters.page or 1))
    clauses: list[ColumnElement[bool]] = []
    if filters.category:
        token = json.dumps(filters.category)
        candidates = (
            await session.execute(
                select(MediaAsset.id, MediaAsset.categories).where(
                    cast(MediaAsset.categories, String).contains(token, autoescape=True)
                )
            )
        ).all()
        # LIKE is case-insensitive on some backends; membership is checked exactly here
        clauses.append(MediaAsset.id.in_([row_id for row_id, cats in candidates if filters.category in (cats or [])]))

    column = getattr(MediaAsset, filters.sort_by if filters.sort_by in SORT_FIELDS else "created_at")
    descending = str(filters.sort_order or "").lower() != "asc"
    order = [column.desc(), MediaAsset.id.desc()] if descending else [column.asc(), MediaAsset.id.asc()]

    stmt = select(MediaAsset)
    count_stmt = select(func.count()).select_from(MediaAsset)
    if clauses:
        stmt = stmt.where(and_(*clauses))
        count_stmt = count_stmt.where(and_(*clauses))
    stmt = stmt.order_by(*order).offset((page - 1) * limit).limit(limit)
    total_items = int((await session.scalar(count_stmt)) or 0)
    total_pages = max(1, (total_items + limit - 1) // limit) if total_items else 1
    rows = (await session.execute(stmt)).scalars().all()
    return list(rows), {"total_items": total_items, "total_pages": total_pages, "page": page, "limit": limit}


async def list_categories(session: AsyncSession) -> list[str]:
    values: set[str] = set()
    for (categories,) in (await session.execute(select(MediaAsset.categories))).all():
        values.update(str(value) for value in categories or [] if value)
    return sorted(values, key=lambda value: (value.casefold(), value))
