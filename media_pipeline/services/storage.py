import logging
import shutil
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

from fastapi import HTTPException, UploadFile, status
from PIL import Image, UnidentifiedImageError

from media_pipeline.core.config import settings
from media_pipeline.services.errors import StorageWriteError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def ensure_media_root(root: str | Path | None = None) -> Path:
    path = Path(root or settings.media_root)
    path.mkdir(parents=True, exist_ok=True)
    return path


def read_upload(file: UploadFile, max_bytes: int | None = None) -> UploadedFile:
    limit = max_bytes if max_bytes is not None else settings.media_upload_max_bytes
    content = file.file.read(limit + 1)
    if len(content) > limit:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File too large")
    if not content or not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid file")
    return UploadedFile(filename=file.filename, content_type=file.content_type or "", content=content)


def path_for_key(storage_key: str) -> Path:
    root = ensure_media_root().resolve()
    path = (root / str(storage_key or "").lstrip("/")).resolve()
    try:
        path.relative_to(root)
    except ValueError:
        raise StorageWriteError("Invalid storage key", detail={"message": "Invalid storage key", "key": storage_key})
    return path


def url_for_key(storage_key: str) -> str:
    return f"{settings.media_url_prefix.rstrip('/')}/{storage_key.lstrip('/')}"


def key_for_url(url: str) -> str | None:
    prefix = f"{settings.media_url_prefix.rstrip('/')}/"
    if not url or not url.startswith(prefix):
        return None
    return url.removeprefix(prefix)


def exists(storage_key: str) -> bool:
    return path_for_key(storage_key).exists()


def write_bytes(storage_key: str, content: bytes) -> Path:
    destination = path_for_key(storage_key)
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(content)
    except OSError as exc:
        logger.error("media_storage_write_failed", extra={"storage_key": storage_key, "error": str(exc)})
        raise StorageWriteError(
            "Media storage is unavailable", detail={"message": "Media storage is unavailable", "key": storage_key}
        ) from exc
    return destination


def move(source_key: str, destination_key: str) -> Path:
    source = path_for_key(source_key)
    destination = path_for_key(destination_key)
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            source.replace(destination)
        except OSError:
            shutil.move(str(source), str(destination))
    except OSError as exc:
        logger.error(
            "media_storage_move_failed",
            extra={"source_key": source_key, "destination_key": destination_key, "error": str(exc)},
        )
        raise StorageWriteError(
            "Media storage is unavailable",
            detail={"message": "Media storage is unavailable", "key": destination_key},
        ) from exc
    return destination


def delete_key(storage_key: str | None) -> bool:
    """Best-effort removal; failures are logged, never raised."""
    if not storage_key:
        return False
    try:
        path = path_for_key(storage_key)
        if path.exists():
            path.unlink()
            return True
    except (OSError, StorageWriteError) as exc:
        logger.warning("media_storage_delete_failed", extra={"storage_key": storage_key, "error": str(exc)})
    return False


def delete_tree(prefix_key: str) -> None:
    try:
        path = path_for_key(prefix_key)
        if path.is_dir():
            shutil.rmtree(path)
    except (OSError, StorageWriteError) as exc:
        logger.warning("media_storage_delete_failed", extra={"storage_key": prefix_key, "error": str(exc)})


def detect_image_mime(content: bytes) -> str | None:
    try:
        with Image.open(BytesIO(content)) as img:
            image_format = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, ValueError):
        return None

    if not image_format:
        return None
    return {
        "JPEG": "image/jpeg",
        "PNG": "image/png",
        "WEBP": "image/webp",
        "GIF": "image/gif",
        "AVIF": "image/avif",
    }.get(image_format.upper())
