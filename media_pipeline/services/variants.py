from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.core import metrics
from media_pipeline.models.media import MediaAsset
from media_pipeline.services import storage
from media_pipeline.services.asset_locks import asset_lock
from media_pipeline.services.errors import InvalidVariantSpec, StorageWriteError, UnknownVariant, VariantGenerationFailure
from media_pipeline.services.records import ensure_raster, get_asset_or_404, record_activity
from media_pipeline.services.transforms import CropRect, FocalPoint, RenderRequest, Transformer, get_transformer
from media_pipeline.services.variant_policy import (
    CROPPED_VARIANT,
    DARK_SUFFIX,
    DerivativeSpec,
    Fit,
    Theme,
    coerce_theme,
    derivation_specs,
    expected_names,
    expected_specs,
    fresh_names,
    merge_variants,
    themed_name,
    variants_of,
)

logger = logging.getLogger(__name__)

_KEEP_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp", ".gif")
_CUSTOM_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def derived_folder(asset_id: UUID) -> str:
    return f"derived/{asset_id}"


def variant_suffix(source_key: str) -> str:
    suffix = Path(source_key).suffix.lower()
    return suffix if suffix in _KEEP_SUFFIXES else ".jpg"


def crop_rect_of(meta: dict[str, Any]) -> CropRect | None:
    raw = meta.get("crop_rect")
    if not isinstance(raw, dict):
        return None
    try:
        return CropRect(x=int(raw["x"]), y=int(raw["y"]), width=int(raw["width"]), height=int(raw["height"]))
    except (KeyError, TypeError, ValueError):
        return None


def focal_point_of(meta: dict[str, Any]) -> FocalPoint | None:
    raw = meta.get("focal_point")
    if not isinstance(raw, dict):
        return None
    try:
        return FocalPoint(x=float(raw["x"]), y=float(raw["y"]))
    except (KeyError, TypeError, ValueError):
        return None


def discard_variant(variants: list[dict[str, Any]], name: str) -> list[dict[str, Any]]:
    """Drop `name` from the list and delete its files."""
    kept: list[dict[str, Any]] = []
    for variant in variants:
        if variant["name"] == name:
            storage.delete_key(variant.get("storage_key"))
            storage.delete_key(variant.get("optimized_key"))
            continue
        kept.append(variant)
    return kept


def source_for(asset: MediaAsset, theme: Theme) -> tuple[str, bool]:
    """Storage key of the base image for `theme` and whether the dark tint applies."""
    meta = asset.meta or {}
    if theme == "dark":
        dark_key = meta.get("dark_source_key")
        if isinstance(dark_key, str) and dark_key:
            return dark_key, False
        return asset.storage_key, True
    return asset.storage_key, False


async def derive_missing(
    session: AsyncSession,
    asset_id: UUID,
    theme: str = "light",
    *,
    transformer: Transformer | None = None,
) -> MediaAsset:
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        return await derive_under_lock(session, asset, coerce_theme(theme), only_missing=True, transformer=transformer)


async def derive_all(
    session: AsyncSession,
    asset_id: UUID,
    theme: str = "light",
    *,
    transformer: Transformer | None = None,
) -> MediaAsset:
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        return await derive_under_lock(session, asset, coerce_theme(theme), only_missing=False, transformer=transformer)


async def derive_one(
    session: AsyncSession,
    asset_id: UUID,
    theme: str,
    name: str,
    *,
    transformer: Transformer | None = None,
) -> MediaAsset:
    """Rebuild a single variant, addressed by its base or themed name."""
    resolved = coerce_theme(theme)
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        wanted = name.strip()
        target = next(
            (
                (themed, spec)
                for themed, spec in derivation_specs(asset.meta, resolved)
                if wanted in (themed, spec.name)
            ),
            None,
        )
        if target is None:
            raise UnknownVariant(wanted)
        return await derive_under_lock(
            session,
            asset,
            resolved,
            only_missing=False,
            transformer=transformer,
            action="media.variants.rebuild_one",
            targets=[target],
        )


def custom_spec(name: str, width: int | None, height: int | None, fit: str = "cover") -> DerivativeSpec:
    """Validate an ad-hoc variant; it must not shadow a configured or reserved name."""
    name = (name or "").strip()
    if not _CUSTOM_NAME_RE.match(name) or name.endswith(DARK_SUFFIX):
        raise InvalidVariantSpec(
            "Variant names use lowercase letters, digits, dashes and underscores",
            detail={"message": "Invalid variant name", "name": name},
        )
    reserved = {CROPPED_VARIANT, "dark-source"} | {spec.name for _, spec in expected_specs("light")}
    if name in reserved:
        raise InvalidVariantSpec(
            "Variant name is reserved", detail={"message": "Variant name is reserved", "name": name}
        )
    if fit not in ("inside", "cover"):
        raise InvalidVariantSpec("Unknown fit", detail={"message": "Unknown fit", "fit": fit})
    sizes = [value for value in (width, height) if value is not None]
    if not sizes or any(isinstance(v, bool) or not isinstance(v, int) or v <= 0 for v in sizes):
        raise InvalidVariantSpec(
            "Give a positive width, height or both",
            detail={"message": "Give a positive width, height or both", "width": width, "height": height},
        )
    resolved_fit: Fit = "inside" if fit == "inside" else "cover"
    return DerivativeSpec(name=name, width=width, height=height, fit=resolved_fit)


async def derive_custom(
    session: AsyncSession,
    asset_id: UUID,
    theme: str,
    name: str,
    width: int | None = None,
    height: int | None = None,
    fit: str = "cover",
    *,
    transformer: Transformer | None = None,
) -> MediaAsset:
    """Render a named variant outside the configured list.

    The spec is stored on the variant entry, so later full derivations of the theme
    regenerate it alongside the configured names.
    """
    spec = custom_spec(name, width, height, fit)
    resolved = coerce_theme(theme)
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        return await derive_under_lock(
            session,
            asset,
            resolved,
            only_missing=False,
            transformer=transformer,
            action="media.variants.custom",
            targets=[(themed_name(spec.name, resolved), spec)],
        )


async def derive_under_lock(
    session: AsyncSession,
    asset: MediaAsset,
    theme: Theme,
    *,
    only_missing: bool,
    transformer: Transformer | None = None,
    action: str = "media.variants.derive",
    targets: list[tuple[str, DerivativeSpec]] | None = None,
) -> MediaAsset:
    """Render one (asset, theme) unit; the caller must hold `asset_lock(asset.id)`.

    `targets` defaults to every configured and custom name of the theme. Successful
    renders are committed even when some names fail. Failed names are then reported
    through `VariantGenerationFailure`.
    """
    ensure_raster(asset)
    meta = dict(asset.meta or {})
    configured = set(expected_names(theme))
    if targets is None:
        targets = derivation_specs(meta, theme)
    if only_missing:
        present = fresh_names(meta)
        targets = [(name, spec) for name, spec in targets if name not in present]
    if not targets:
        return asset

    transformer = transformer or get_transformer()
    source_key, tint = source_for(asset, theme)
    source_path = storage.path_for_key(source_key)
    crop_rect = crop_rect_of(meta)
    focal_point = None if crop_rect else focal_point_of(meta)
    suffix = variant_suffix(source_key)

    produced: list[dict[str, Any]] = []
    failures: dict[str, str] = {}
    for name, spec in targets:
        key = f"{derived_folder(asset.id)}/{name}{suffix}"
        request = RenderRequest(
            source=source_path,
            output=storage.path_for_key(key),
            spec=spec,
            crop_rect=crop_rect,
            focal_point=focal_point,
            tint=tint,
        )
        try:
            rendered = await transformer.render(request)
        except StorageWriteError:
            raise
        except Exception as exc:
            failures[name] = str(exc) or exc.__class__.__name__
            logger.warning(
                "media_variant_failed",
                extra={"asset_id": str(asset.id), "variant": name, "theme": theme, "error": failures[name]},
            )
            continue
        entry: dict[str, Any] = {
            "name": name,
            "url": storage.url_for_key(key),
            "storage_key": key,
            "width": rendered.width,
            "height": rendered.height,
            "size": rendered.size,
        }
        if name not in configured:
            entry["spec"] = {"width": spec.width, "height": spec.height, "fit": spec.fit}
        produced.append(entry)

    existing = variants_of(meta)
    replaced = {v["name"]: v["storage_key"] for v in produced}
    for variant in existing:
        if variant["name"] not in replaced:
            continue
        storage.delete_key(variant.get("optimized_key"))
        if variant.get("storage_key") and variant["storage_key"] != replaced[variant["name"]]:
            storage.delete_key(variant["storage_key"])
    meta["variants"] = merge_variants(existing, produced)
    asset.meta = meta
    session.add(asset)
    await record_activity(
        session,
        asset_id=asset.id,
        action=action,
        meta={
            "theme": theme,
            "mode": "missing" if only_missing else "all",
            "derived": [v["name"] for v in produced],
            "failed": sorted(failures),
        },
    )
    await session.commit()

    metrics.record_variants_derived(len(produced))
    metrics.record_variant_failures(len(failures))
    logger.info(
        "media_variants_derived",
        extra={"asset_id": str(asset.id), "theme": theme, "derived": len(produced), "failed": len(failures)},
    )
    if failures:
        raise VariantGenerationFailure(asset.id, theme, failures, asset=asset)
    return asset
