import logging
from pathlib import Path, PurePosixPath

from config import Settings
from errors import PayloadTooLargeError, ValidationError

logger = logging.getLogger(__name__)


def resolve_upload_path(relative_path: str, settings: Settings) -> Path:
    """Map a client-supplied relative path onto the upload root.

    Rejects absolute paths, parent-directory segments and extensions that are
    not in the allow-list.
    """
    if not relative_path or not relative_path.strip():
        raise ValidationError("No file path specified")

    cleaned = PurePosixPath(relative_path.strip().replace("\\", "/"))
    if cleaned.is_absolute() or any(part in ("..", "") for part in cleaned.parts):
        raise ValidationError("Invalid file path")

    extension = cleaned.suffix.lower().lstrip(".")
    if extension not in settings.allowed_upload_extensions:
        raise ValidationError(f"File type '.{extension}' is not allowed")

    root = Path(settings.upload_dir).resolve()
    destination = (root / Path(*cleaned.parts)).resolve()
    if root not in destination.parents:
        raise ValidationError("Invalid file path")
    return destination


def save_upload(relative_path: str, data: bytes, settings: Settings) -> Path:
    """Write an uploaded asset under the upload root, creating folders as needed."""
    destination = resolve_upload_path(relative_path, settings)
    if not data:
        raise ValidationError("Uploaded file is empty")
    if len(data) > settings.max_upload_bytes:
        raise PayloadTooLargeError(f"File exceeds the {settings.max_upload_bytes} byte limit")

    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_bytes(data)
    logger.info(f"📎 Stored upload {relative_path} ({len(data)} bytes)")
    return destination
