"""Crop rectangles and focal points on the original image.

Both edits are validated before anything is touched, committed on the asset's `meta`
and followed by a full re-derivation of the affected themes. `EditSession` is the
interactive counterpart used by the CLI and clients: it holds an uncommitted
selection and only reaches the store on `apply`.
"""

from __future__ import annotations

import enum
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.models.media import MediaAsset
from media_pipeline.services import storage
from media_pipeline.services.asset_locks import asset_lock
from media_pipeline.services.errors import (
    InvalidCropRegion,
    InvalidFocalPoint,
    StorageWriteError,
    UnsupportedMedia,
    VariantGenerationFailure,
    WrongTarget,
)
from media_pipeline.services.records import ensure_raster, get_asset_or_404, record_activity
from media_pipeline.services.transforms import CropRect, FocalPoint, RenderRequest, Transformer, get_transformer
from media_pipeline.services.variant_policy import CROPPED_VARIANT, Theme, merge_variants, themes_with_variants, variants_of
from media_pipeline.services.variants import derive_under_lock, derived_folder, discard_variant, variant_suffix

logger = logging.getLogger(__name__)

ORIGINAL_TARGET = "original"


def check_target(target: str | None) -> None:
    if (target or ORIGINAL_TARGET) != ORIGINAL_TARGET:
        raise WrongTarget(str(target))


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return None


def _as_unit(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value) or value < 0 or value > 1:
        return None
    return value


def validate_crop_rect(raw: CropRect | dict[str, Any], width: int, height: int) -> CropRect:
    data = raw.as_dict() if isinstance(raw, CropRect) else dict(raw or {})
    values = {key: _as_int(data.get(key)) for key in ("x", "y", "width", "height")}
    bad = sorted(key for key, value in values.items() if value is None)
    if bad:
        raise InvalidCropRegion(
            "Crop rectangle needs integer x, y, width and height",
            detail={"message": "Crop rectangle needs integer x, y, width and height", "fields": bad},
        )
    rect = CropRect(x=values["x"], y=values["y"], width=values["width"], height=values["height"])
    if rect.width <= 0 or rect.height <= 0:
        raise InvalidCropRegion(
            "Crop rectangle is empty", detail={"message": "Crop rectangle is empty", "crop_rect": rect.as_dict()}
        )
    if rect.x < 0 or rect.y < 0 or rect.x + rect.width > width or rect.y + rect.height > height:
        raise InvalidCropRegion(
            "Crop rectangle is outside the image",
            detail={
                "message": "Crop rectangle is outside the image",
                "crop_rect": rect.as_dict(),
                "image": {"width": width, "height": height},
            },
        )
    return rect


def validate_focal_point(raw: FocalPoint | dict[str, Any]) -> FocalPoint:
    data = raw.as_dict() if isinstance(raw, FocalPoint) else dict(raw or {})
    x = _as_unit(data.get("x"))
    y = _as_unit(data.get("y"))
    if x is None or y is None:
        raise InvalidFocalPoint(
            "Focal point coordinates must be between 0 and 1",
            detail={"message": "Focal point coordinates must be between 0 and 1", "focal_point": data},
        )
    return FocalPoint(x=x, y=y)


async def _dimensions(asset: MediaAsset, transformer: Transformer) -> tuple[int, int]:
    """Displayed size of the stored original, the coordinate space of crop rectangles."""
    probed = await transformer.probe(storage.path_for_key(asset.storage_key))
    if not probed:
        raise UnsupportedMedia(
            "Image dimensions could not be read",
            detail={"message": "Image dimensions could not be read", "asset_id": str(asset.id)},
        )
    return probed


async def _derive_themes(
    session: AsyncSession,
    asset: MediaAsset,
    themes: list[Theme],
    *,
    transformer: Transformer,
    action: str,
) -> MediaAsset:
    failures: dict[str, str] = {}
    failed_themes: list[str] = []
    for theme in themes:
        try:
            asset = await derive_under_lock(
                session, asset, theme, only_missing=False, transformer=transformer, action=action
            )
        except VariantGenerationFailure as exc:
            failures.update(exc.failures)
            failed_themes.append(theme)
            asset = exc.asset or asset
    if failures:
        raise VariantGenerationFailure(asset.id, ",".join(failed_themes), failures, asset=asset)
    return asset


async def apply_crop(
    session: AsyncSession,
    asset_id: UUID,
    rect: CropRect | dict[str, Any],
    target: str = ORIGINAL_TARGET,
    *,
    transformer: Transformer | None = None,
) -> MediaAsset:
    check_target(target)
    transformer = transformer or get_transformer()
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        ensure_raster(asset)
        width, height = await _dimensions(asset, transformer)
        crop = validate_crop_rect(rect, width, height)

        key = f"{derived_folder(asset.id)}/{CROPPED_VARIANT}{variant_suffix(asset.storage_key)}"
        try:
            rendered = await transformer.render(
                RenderRequest(
                    source=storage.path_for_key(asset.storage_key),
                    output=storage.path_for_key(key),
                    crop_rect=crop,
                )
            )
        except (StorageWriteError, InvalidCropRegion):
            raise
        except Exception as exc:
            logger.warning("media_crop_failed", extra={"asset_id": str(asset.id), "error": str(exc)})
            raise VariantGenerationFailure(asset.id, "light", {CROPPED_VARIANT: str(exc) or exc.__class__.__name__}) from exc

        asset.width, asset.height = width, height
        meta = dict(asset.meta or {})
        meta.pop("focal_point", None)
        meta["crop_rect"] = crop.as_dict()
        cropped = {
            "name": CROPPED_VARIANT,
            "url": storage.url_for_key(key),
            "storage_key": key,
            "width": rendered.width,
            "height": rendered.height,
            "size": rendered.size,
        }
        meta["variants"] = merge_variants(variants_of(meta), [cropped])
        asset.meta = meta
        session.add(asset)
        await record_activity(session, asset_id=asset.id, action="media.crop", meta={"crop_rect": crop.as_dict()})
        await session.commit()

        themes: list[Theme] = ["light"]
        if "dark" in themes_with_variants(meta):
            themes.append("dark")
        return await _derive_themes(session, asset, themes, transformer=transformer, action="media.crop.derive")


async def apply_focal(
    session: AsyncSession,
    asset_id: UUID,
    point: FocalPoint | dict[str, Any],
    target: str = ORIGINAL_TARGET,
    *,
    transformer: Transformer | None = None,
) -> MediaAsset:
    check_target(target)
    focal = validate_focal_point(point)
    transformer = transformer or get_transformer()
    async with asset_lock(asset_id):
        asset = await get_asset_or_404(session, asset_id, refresh=True)
        ensure_raster(asset)

        meta = dict(asset.meta or {})
        themes = themes_with_variants(meta) or ["light"]
        meta.pop("crop_rect", None)
        # the cropped rendition belongs to the crop being cleared
        meta["variants"] = discard_variant(variants_of(meta), CROPPED_VARIANT)
        meta["focal_point"] = focal.as_dict()
        asset.meta = meta
        session.add(asset)
        await record_activity(session, asset_id=asset.id, action="media.focal", meta={"focal_point": focal.as_dict()})
        await session.commit()

        return await _derive_themes(session, asset, themes, transformer=transformer, action="media.focal.derive")


class EditMode(str, enum.Enum):
    viewing = "viewing"
    cropping = "cropping"
    focal_selecting = "focal_selecting"


@dataclass(slots=True)
class EditSession:
    """Client-side editing state for one asset.

    Only one selection mode is active at a time. Nothing reaches the server until
    `apply`, and `cancel` simply discards the selection.
    """

    asset_id: UUID
    mode: EditMode = EditMode.viewing
    pending_crop: CropRect | None = None
    pending_focal: FocalPoint | None = None
    _subscribers: list[Callable[["EditSession"], None]] = field(default_factory=list)

    def subscribe(self, callback: Callable[["EditSession"], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            callback(self)

    def _reset(self, mode: EditMode) -> None:
        self.mode = mode
        self.pending_crop = None
        self.pending_focal = None
        self._notify()

    def begin_crop(self) -> None:
        self._reset(EditMode.cropping)

    def begin_focal(self) -> None:
        self._reset(EditMode.focal_selecting)

    def cancel(self) -> None:
        self._reset(EditMode.viewing)

    def select_crop(self, rect: CropRect) -> None:
        if self.mode != EditMode.cropping:
            raise ValueError("Not selecting a crop")
        self.pending_crop = rect
        self._notify()

    def select_focal(self, point: FocalPoint) -> None:
        if self.mode != EditMode.focal_selecting:
            raise ValueError("Not selecting a focal point")
        self.pending_focal = validate_focal_point(point)
        self._notify()

    async def apply(self, session: AsyncSession, *, transformer: Transformer | None = None) -> MediaAsset:
        if self.mode == EditMode.cropping:
            if self.pending_crop is None:
                raise InvalidCropRegion("No crop rectangle selected")
            asset = await apply_crop(session, self.asset_id, self.pending_crop, transformer=transformer)
        elif self.mode == EditMode.focal_selecting:
            if self.pending_focal is None:
                raise InvalidFocalPoint("No focal point selected")
            asset = await apply_focal(session, self.asset_id, self.pending_focal, transformer=transformer)
        else:
            raise ValueError("Nothing to apply")
        self._reset(EditMode.viewing)
        return asset
