# backend/myopia_api/storage.py
import logging
import os
import re
import time
from typing import Optional

from fastapi import UploadFile

from . import config
from .errors import ServerError, ValidationFailed

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def input_dir() -> str:
    path = os.path.join(config.UPLOAD_DIR, "input")
    os.makedirs(path, exist_ok=True)
    return path


def upload_target_path(original_name: str) -> str:
    name = _UNSAFE_CHARS.sub("_", os.path.basename(original_name or "")) or "image"
    return os.path.join(input_dir(), f"{int(time.time() * 1000)}-{name}")


async def save_upload(file: UploadFile) -> str:
    """Write an uploaded image to the input directory and return its path."""
    data = await file.read()
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise ValidationFailed(f"Image too large (max {config.MAX_UPLOAD_BYTES // (1024 * 1024)}MB).")
    path = upload_target_path(file.filename)
    try:
        with open(path, "wb") as f:
            f.write(data)
    except OSError as exc:
        logger.error("Failed to save upload %s: %s", path, exc)
        raise ServerError("Failed to save image file.") from exc
    return path


def _inside_upload_dir(path: str) -> bool:
    root = os.path.realpath(config.UPLOAD_DIR)
    return path != root and os.path.commonpath([root, path]) == root


def local_path(ref: Optional[str]) -> Optional[str]:
    """Map a stored file reference to a real path under UPLOAD_DIR.

    Remote URLs and anything resolving outside the upload directory map to
    None. A leading slash is also tried as relative to the working directory,
    so "/uploads/output/x.png" finds "uploads/output/x.png".
    """
    if not ref:
        return None
    if ref.startswith(("http://", "https://")):
        return None
    candidates = [ref, ref.lstrip("/")] if os.path.isabs(ref) else [ref]
    for candidate in candidates:
        real = os.path.realpath(candidate)
        if _inside_upload_dir(real):
            return real
    return None


def remove_file(ref: Optional[str]) -> bool:
    """Best-effort delete of a file under UPLOAD_DIR; failures are logged and reported as False."""
    path = local_path(ref)
    if path is None:
        if ref:
            logger.warning("Not removing %s: remote or outside %s", ref, config.UPLOAD_DIR)
        return False
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        logger.warning("File already gone: %s", path)
    except OSError as exc:
        logger.warning("Error deleting file %s: %s", path, exc)
    return False
