from __future__ import annotations

from typing import Any
from uuid import UUID


class MediaError(Exception):
    """Base for every domain error raised by the media services.

    `code` is the stable machine identifier surfaced in `ErrorResponse.code`,
    `status_code` the HTTP status the API layer maps it to.
    """

    code = "media_error"
    status_code = 400

    def __init__(self, message: str, *, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail if detail is not None else message


class AssetNotFound(MediaError):
    code = "asset_not_found"
    status_code = 404

    def __init__(self, asset_id: UUID | str) -> None:
        super().__init__("Media not found", detail={"message": "Media not found", "asset_id": str(asset_id)})
        self.asset_id = asset_id


class DuplicateFound(MediaError):
    code = "duplicate_found"
    status_code = 409

    def __init__(self, original_filename: str, candidates: list[dict[str, Any]]) -> None:
        super().__init__(
            "A media asset with this filename already exists",
            detail={
                "message": "A media asset with this filename already exists",
                "original_filename": original_filename,
                "candidates": candidates,
                "resolutions": ["override", "save_as_new", "cancel"],
            },
        )
        self.original_filename = original_filename
        self.candidates = candidates


class RenameConflict(MediaError):
    code = "rename_conflict"
    status_code = 409

    def __init__(self, filename: str, conflicting_asset_id: UUID | None = None) -> None:
        super().__init__(
            "Another media asset already uses this filename",
            detail={
                "message": "Another media asset already uses this filename",
                "filename": filename,
                "conflicting_asset_id": str(conflicting_asset_id) if conflicting_asset_id else None,
            },
        )
        self.filename = filename
        self.conflicting_asset_id = conflicting_asset_id


class UsageBlocked(MediaError):
    code = "usage_blocked"
    status_code = 409

    def __init__(self, asset_id: UUID, usage: dict[str, Any]) -> None:
        super().__init__(
            "This media is currently in use",
            detail={"message": "This media is currently in use", "asset_id": str(asset_id), "usage": usage},
        )
        self.asset_id = asset_id
        self.usage = usage


class InvalidCropRegion(MediaError):
    code = "invalid_crop_region"


class InvalidFocalPoint(MediaError):
    code = "invalid_focal_point"


class WrongTarget(MediaError):
    code = "wrong_target"

    def __init__(self, target: str) -> None:
        super().__init__(
            "Crop and focal edits apply to the original only",
            detail={"message": "Crop and focal edits apply to the original only", "target": target},
        )
        self.target = target


class UnknownVariant(MediaError):
    code = "unknown_variant"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown variant: {name}", detail={"message": f"Unknown variant: {name}", "variant": name})
        self.name = name


class InvalidVariantSpec(MediaError):
    code = "invalid_variant_spec"


class UnsupportedMedia(MediaError):
    code = "unsupported_media"


class VariantGenerationFailure(MediaError):
    """Raised after the successful part of a derivation unit has been committed."""

    code = "variant_generation_failed"
    status_code = 502

    def __init__(self, asset_id: UUID, theme: str, failures: dict[str, str], asset: Any = None) -> None:
        super().__init__(
            "Some variants could not be generated",
            detail={
                "message": "Some variants could not be generated",
                "asset_id": str(asset_id),
                "theme": theme,
                "failed": sorted(failures),
                "errors": failures,
            },
        )
        self.asset_id = asset_id
        self.theme = theme
        self.failures = failures
        self.asset = asset


class StorageWriteError(MediaError):
    code = "storage_write_failed"
    status_code = 503
