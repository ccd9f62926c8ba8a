from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import anyio
from PIL import ExifTags, Image, ImageEnhance, ImageOps, UnidentifiedImageError

from media_pipeline.core.config import settings
from media_pipeline.services.errors import InvalidCropRegion
from media_pipeline.services.variant_policy import DerivativeSpec

logger = logging.getLogger(__name__)

RASTER_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".avif", ".tif", ".tiff", ".bmp")
_UNBOUNDED = 100_000
# orientations 5-8 swap width and height
_ROTATED_ORIENTATIONS = (5, 6, 7, 8)


@dataclass(slots=True, frozen=True)
class CropRect:
    x: int
    y: int
    width: int
    height: int

    def as_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    def box(self) -> tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass(slots=True, frozen=True)
class FocalPoint:
    x: float
    y: float

    def as_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass(slots=True, frozen=True)
class RenderRequest:
    source: Path
    output: Path
    spec: DerivativeSpec | None = None
    crop_rect: CropRect | None = None
    focal_point: FocalPoint | None = None
    tint: bool = False


@dataclass(slots=True, frozen=True)
class RenderedFile:
    width: int
    height: int
    size: int


class Transformer(Protocol):
    async def probe(self, path: Path) -> tuple[int, int] | None: ...

    async def render(self, request: RenderRequest) -> RenderedFile: ...

    async def optimize_to_webp(self, source: Path, output: Path) -> RenderedFile: ...


def is_raster(mime_type: str | None, filename: str | None) -> bool:
    mime = str(mime_type or "").lower()
    name = str(filename or "").lower()
    if mime == "image/svg+xml" or name.endswith(".svg"):
        return False
    return mime.startswith("image/") or name.endswith(RASTER_EXTENSIONS)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def compute_focal_crop_rect(width: int, height: int, spec: DerivativeSpec, focal: FocalPoint) -> CropRect | None:
    """Largest window of the derivative's aspect ratio centred on the focal point, clamped to the image."""
    ratio = spec.aspect_ratio
    if not ratio or width <= 0 or height <= 0:
        return None
    crop_w = min(width, round(height * ratio))
    crop_h = min(height, round(width / ratio))
    if round(crop_w / ratio) != crop_h:
        crop_h = min(height, round(crop_w / ratio))
    crop_w = max(1, crop_w)
    crop_h = max(1, crop_h)
    cx = int(_clamp(round(focal.x * width), 0, width))
    cy = int(_clamp(round(focal.y * height), 0, height))
    left = int(_clamp(round(cx - crop_w / 2), 0, width - crop_w))
    top = int(_clamp(round(cy - crop_h / 2), 0, height - crop_h))
    return CropRect(x=left, y=top, width=crop_w, height=crop_h)


def rect_fits(rect: CropRect, width: int, height: int) -> bool:
    return (
        rect.width > 0
        and rect.height > 0
        and rect.x >= 0
        and rect.y >= 0
        and rect.x + rect.width <= width
        and rect.y + rect.height <= height
    )


def oriented_size(img: Image.Image) -> tuple[int, int]:
    """Size as displayed, after the EXIF orientation is applied."""
    width, height = img.size
    if img.getexif().get(ExifTags.Base.Orientation) in _ROTATED_ORIENTATIONS:
        return height, width
    return width, height


def _dark_brightness() -> float:
    return _clamp(float(settings.media_dark_brightness), 0.1, 2.0)


def _dark_saturation() -> float:
    return _clamp(float(settings.media_dark_saturation), 0.0, 2.0)


def _webp_quality() -> int:
    return int(_clamp(int(settings.media_webp_quality), 1, 100))


def _save(image: Image.Image, output: Path) -> RenderedFile:
    output.parent.mkdir(parents=True, exist_ok=True)
    suffix = output.suffix.lower()
    if suffix in (".jpg", ".jpeg"):
        image.convert("RGB").save(output, format="JPEG", optimize=True, quality=86)
    elif suffix == ".webp":
        image.save(output, format="WEBP", quality=_webp_quality())
    else:
        image.save(output, optimize=True)
    return RenderedFile(width=image.width, height=image.height, size=output.stat().st_size)


class PillowTransformer:
    """Default pixel collaborator; all blocking work is pushed to a worker thread."""

    async def probe(self, path: Path) -> tuple[int, int] | None:
        return await anyio.to_thread.run_sync(self._probe, path)

    async def render(self, request: RenderRequest) -> RenderedFile:
        return await anyio.to_thread.run_sync(self._render, request)

    async def optimize_to_webp(self, source: Path, output: Path) -> RenderedFile:
        return await anyio.to_thread.run_sync(self._optimize, source, output)

    @staticmethod
    def _probe(path: Path) -> tuple[int, int] | None:
        try:
            with Image.open(path) as img:
                w, h = oriented_size(img)
                return int(w), int(h)
        except (UnidentifiedImageError, OSError, ValueError):
            return None

    @staticmethod
    def _render(request: RenderRequest) -> RenderedFile:
        spec = request.spec
        with Image.open(request.source) as img:
            out = ImageOps.exif_transpose(img)
            out = out.convert("RGBA" if "A" in out.getbands() else "RGB")
            if request.crop_rect is not None:
                if not rect_fits(request.crop_rect, out.width, out.height):
                    raise InvalidCropRegion(
                        "Crop rectangle is outside the image",
                        detail={
                            "message": "Crop rectangle is outside the image",
                            "crop_rect": request.crop_rect.as_dict(),
                            "image": {"width": out.width, "height": out.height},
                        },
                    )
                out = out.crop(request.crop_rect.box())
            elif request.focal_point is not None and spec is not None and spec.fit == "cover":
                rect = compute_focal_crop_rect(out.width, out.height, spec, request.focal_point)
                if rect is not None:
                    out = out.crop(rect.box())
            if spec is not None:
                if spec.fit == "cover" and spec.width and spec.height:
                    out = ImageOps.fit(out, (spec.width, spec.height), method=Image.Resampling.LANCZOS)
                else:
                    out.thumbnail((spec.width or _UNBOUNDED, spec.height or _UNBOUNDED), Image.Resampling.LANCZOS)
            if request.tint:
                out = ImageEnhance.Brightness(out).enhance(_dark_brightness())
                out = ImageEnhance.Color(out).enhance(_dark_saturation())
            return _save(out, request.output)

    @staticmethod
    def _optimize(source: Path, output: Path) -> RenderedFile:
        with Image.open(source) as img:
            out = ImageOps.exif_transpose(img)
            out = out.convert("RGBA" if "A" in out.getbands() else "RGB")
            output.parent.mkdir(parents=True, exist_ok=True)
            out.save(output, format="WEBP", quality=_webp_quality())
            return RenderedFile(width=out.width, height=out.height, size=output.stat().st_size)


_transformer: Transformer = PillowTransformer()


def get_transformer() -> Transformer:
    return _transformer


def set_transformer(transformer: Transformer) -> None:
    global _transformer
    _transformer = transformer
