import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from supabase import create_client

from app.core.config import get_settings

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
}


class StorageError(Exception):
    pass


def build_object_path(content_type: Optional[str], now: Optional[datetime] = None) -> str:
    """``<yyyy>/<mm>/<uuid><ext>`` inside the bet slip bucket."""
    now = now or datetime.now(timezone.utc)
    ext = _EXTENSIONS.get((content_type or "").lower(), "")
    return f"{now:%Y}/{now:%m}/{uuid.uuid4().hex}{ext}"


def build_image_ref(bucket: str, path: str) -> str:
    return f"{bucket}/{path}"


def split_image_ref(image_ref: str) -> tuple[str, str]:
    bucket, sep, path = (image_ref or "").partition("/")
    if not sep or not bucket or not path:
        raise StorageError(f"Malformed image reference: {image_ref!r}")
    return bucket, path


def get_storage_client():
    settings = get_settings()
    key = settings.supabase_service_role_key or settings.supabase_key
    if not settings.supabase_url or not key:
        raise StorageError("Supabase credentials are not configured")
    return create_client(settings.supabase_url, key)


def _result_error(result) -> Optional[object]:
    if isinstance(result, dict):
        return result.get("error")
    return getattr(result, "error", None)


def upload_bet_slip(content: bytes, content_type: Optional[str]) -> str:
    """Upload a bet slip image and return its opaque reference (``bucket/path``)."""
    bucket = get_settings().bet_slip_bucket
    path = build_object_path(content_type)
    client = get_storage_client()
    options = {"content-type": content_type} if content_type else None
    try:
        result = client.storage.from_(bucket).upload(path, content, options)
    except Exception as exc:
        raise StorageError("Bet slip upload failed") from exc

    if _result_error(result):
        raise StorageError("Bet slip upload failed")

    ref = build_image_ref(bucket, path)
    logger.info("Bet slip stored: ref=%s bytes=%d", ref, len(content))
    return ref


def download_bet_slip(image_ref: str) -> bytes:
    bucket, path = split_image_ref(image_ref)
    client = get_storage_client()
    try:
        content = client.storage.from_(bucket).download(path)
    except Exception as exc:
        raise StorageError(f"Bet slip download failed: {image_ref}") from exc
    if not content:
        raise StorageError(f"Bet slip is empty: {image_ref}")
    return content
