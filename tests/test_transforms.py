import asyncio
from pathlib import Path

import pytest
from PIL import ExifTags, Image, ImageStat

from media_pipeline.services.errors import InvalidCropRegion
from media_pipeline.services.transforms import (
    CropRect,
    FocalPoint,
    PillowTransformer,
    RenderRequest,
    compute_focal_crop_rect,
    is_raster,
    rect_fits,
)
from media_pipeline.services.variant_policy import DerivativeSpec

SQUARE = DerivativeSpec(name="thumb", width=200, height=200, fit="cover")
WIDE = DerivativeSpec(name="small", width=400, height=None, fit="inside")


def _write_image(path: Path, size=(640, 480), color=(200, 120, 40)) -> Path:
    Image.new("RGB", size, color=color).save(path, format="JPEG")
    return path


def test_focal_crop_rect_centres_on_point() -> None:
    rect = compute_focal_crop_rect(1000, 500, SQUARE, FocalPoint(0.5, 0.5))

    assert rect == CropRect(x=250, y=0, width=500, height=500)


def test_focal_crop_rect_is_clamped_to_bounds() -> None:
    assert compute_focal_crop_rect(1000, 500, SQUARE, FocalPoint(0.0, 0.0)) == CropRect(0, 0, 500, 500)
    assert compute_focal_crop_rect(1000, 500, SQUARE, FocalPoint(1.0, 1.0)) == CropRect(500, 0, 500, 500)

    tall = compute_focal_crop_rect(400, 1000, SQUARE, FocalPoint(0.5, 0.95))
    assert tall == CropRect(0, 600, 400, 400)


def test_focal_crop_rect_needs_both_dimensions() -> None:
    assert compute_focal_crop_rect(1000, 500, WIDE, FocalPoint(0.2, 0.2)) is None


def test_rect_fits_checks_every_edge() -> None:
    assert rect_fits(CropRect(0, 0, 640, 480), 640, 480) is True
    assert rect_fits(CropRect(600, 400, 41, 80), 640, 480) is False
    assert rect_fits(CropRect(600, 400, 40, 81), 640, 480) is False
    assert rect_fits(CropRect(-1, 0, 10, 10), 640, 480) is False
    assert rect_fits(CropRect(0, 0, 0, 10), 640, 480) is False


def test_is_raster() -> None:
    assert is_raster("image/jpeg", "a.jpg") is True
    assert is_raster("", "photo.PNG") is True
    assert is_raster("image/svg+xml", "logo.svg") is False
    assert is_raster("application/octet-stream", "logo.svg") is False
    assert is_raster("video/mp4", "clip.mp4") is False


def test_render_resizes_by_fit(tmp_path: Path) -> None:
    source = _write_image(tmp_path / "source.jpg")
    transformer = PillowTransformer()

    cover = asyncio.run(transformer.render(RenderRequest(source=source, output=tmp_path / "thumb.jpg", spec=SQUARE)))
    inside = asyncio.run(transformer.render(RenderRequest(source=source, output=tmp_path / "small.jpg", spec=WIDE)))

    assert (cover.width, cover.height) == (200, 200)
    assert (inside.width, inside.height) == (400, 300)
    assert inside.size == (tmp_path / "small.jpg").stat().st_size
    with Image.open(tmp_path / "thumb.jpg") as img:
        assert img.size == (200, 200)


def test_render_extracts_crop_rect(tmp_path: Path) -> None:
    source = _write_image(tmp_path / "source.jpg")

    rendered = asyncio.run(
        PillowTransformer().render(
            RenderRequest(source=source, output=tmp_path / "cropped.jpg", crop_rect=CropRect(10, 20, 120, 60))
        )
    )

    assert (rendered.width, rendered.height) == (120, 60)


def test_render_dark_tint_darkens(tmp_path: Path) -> None:
    source = _write_image(tmp_path / "source.jpg")
    transformer = PillowTransformer()

    asyncio.run(transformer.render(RenderRequest(source=source, output=tmp_path / "light.png", spec=WIDE)))
    asyncio.run(transformer.render(RenderRequest(source=source, output=tmp_path / "dark.png", spec=WIDE, tint=True)))

    with Image.open(tmp_path / "light.png") as light, Image.open(tmp_path / "dark.png") as dark:
        light_mean = sum(ImageStat.Stat(light.convert("L")).mean)
        dark_mean = sum(ImageStat.Stat(dark.convert("L")).mean)
    assert dark_mean < light_mean * 0.7


def test_optimize_to_webp(tmp_path: Path) -> None:
    source = _write_image(tmp_path / "source.jpg")

    rendered = asyncio.run(PillowTransformer().optimize_to_webp(source, tmp_path / "out" / "source.webp"))

    assert rendered.size > 0
    with Image.open(tmp_path / "out" / "source.webp") as img:
        assert img.format == "WEBP"
        assert img.size == (640, 480)


def test_probe_returns_none_for_non_images(tmp_path: Path) -> None:
    bogus = tmp_path / "notes.txt"
    bogus.write_text("not an image")

    assert asyncio.run(PillowTransformer().probe(bogus)) is None
    assert asyncio.run(PillowTransformer().probe(_write_image(tmp_path / "ok.jpg"))) == (640, 480)


def _write_rotated(path: Path, size=(640, 480)) -> Path:
    exif = Image.Exif()
    exif[ExifTags.Base.Orientation] = 6
    Image.new("RGB", size, color=(10, 200, 30)).save(path, format="JPEG", exif=exif.tobytes())
    return path


def test_rotated_images_report_displayed_size(tmp_path: Path) -> None:
    source = _write_rotated(tmp_path / "portrait.jpg")

    assert asyncio.run(PillowTransformer().probe(source)) == (480, 640)


def test_render_crops_in_displayed_coordinates(tmp_path: Path) -> None:
    source = _write_rotated(tmp_path / "portrait.jpg")
    transformer = PillowTransformer()

    rendered = asyncio.run(
        transformer.render(RenderRequest(source=source, output=tmp_path / "cropped.jpg", crop_rect=CropRect(0, 400, 240, 200)))
    )
    assert (rendered.width, rendered.height) == (240, 200)

    with pytest.raises(InvalidCropRegion):
        asyncio.run(
            transformer.render(
                RenderRequest(source=source, output=tmp_path / "bad.jpg", crop_rect=CropRect(400, 0, 240, 200))
            )
        )
    assert not (tmp_path / "bad.jpg").exists()


def test_optimize_applies_orientation(tmp_path: Path) -> None:
    source = _write_rotated(tmp_path / "portrait.jpg")

    rendered = asyncio.run(PillowTransformer().optimize_to_webp(source, tmp_path / "portrait.webp"))

    assert (rendered.width, rendered.height) == (480, 640)
