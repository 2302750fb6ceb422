from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import re
import time
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
import requests

from ..errors import DeleteError, UploadError, ValidationError
from ..storage import MediaStorage

logger = logging.getLogger(__name__)

DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^;,]*)*?);base64,(?P<payload>.*)$", re.DOTALL)
REMOTE_RE = re.compile(r"^https?://", re.IGNORECASE)
REQUEST_TIMEOUT = 30  # seconds
DEFAULT_FILENAME = "arquivo"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def sanitize_filename(filename: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]", "_", filename or DEFAULT_FILENAME, flags=re.IGNORECASE)


def build_public_id(
    filename: Optional[str],
    user_id: Optional[str],
    root_folder: str,
    fallback_namespace: str,
    now_ms: Optional[int] = None,
) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{root_folder}/{user_id or fallback_namespace}/{stamp}_{sanitize_filename(filename)}"


def decode_file(file: str, filename: Optional[str] = None) -> tuple[bytes, str]:
    """Decode a data URI or bare base64 string into bytes and a content type."""
    match = DATA_URI_RE.match(file)
    payload = match.group("payload") if match else file
    content_type = match.group("mime") if match and match.group("mime") else None
    try:
        # Whitespace is dropped so line-wrapped base64 decodes.
        body = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValidationError("file must be a URL, a base64 data URI or base64", [{"field": "file", "message": str(exc)}]) from exc
    if content_type is None:
        content_type = mimetypes.guess_type(filename or "")[0] or DEFAULT_CONTENT_TYPE
    return body, content_type


def fetch_remote_file(url: str, filename: Optional[str] = None) -> tuple[bytes, str]:
    """Download a remote source; network and HTTP failures raise UploadError."""
    try:
        response = requests.get(url, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.error("fetch of %s failed: %s", url, exc)
        raise UploadError(str(exc)) from exc
    content_type = response.headers.get("Content-Type", "").split(";")[0].strip()
    if not content_type:
        content_type = mimetypes.guess_type(filename or url)[0] or DEFAULT_CONTENT_TYPE
    return response.content, content_type


def read_file(file: str, filename: Optional[str] = None) -> tuple[bytes, str]:
    if REMOTE_RE.match(file):
        return fetch_remote_file(file, filename)
    return decode_file(file, filename)


class UploadService:
    def __init__(self, storage: MediaStorage, root_folder: str = "casadw", fallback_namespace: str = "geral") -> None:
        self.storage = storage
        self.root_folder = root_folder
        self.fallback_namespace = fallback_namespace

    def upload(self, file: Optional[str], filename: Optional[str], user_id: Optional[str]) -> dict[str, str]:
        if not file:
            raise ValidationError("file is required", [{"field": "file", "message": "field required"}])
        body, content_type = read_file(file, filename)
        public_id = build_public_id(filename, user_id, self.root_folder, self.fallback_namespace)
        try:
            url = self.storage.put_object(public_id, body, content_type)
        except (BotoCoreError, ClientError) as exc:
            logger.error("upload of %s failed: %s", public_id, exc)
            raise UploadError(str(exc)) from exc
        logger.info("uploaded %s (%d bytes)", public_id, len(body))
        return {"url": url, "publicId": public_id}

    def remove(self, public_id: Optional[str]) -> None:
        if not public_id:
            raise ValidationError("publicId is required", [{"field": "publicId", "message": "field required"}])
        try:
            self.storage.delete_object(public_id)
        except (BotoCoreError, ClientError) as exc:
            logger.error("delete of %s failed: %s", public_id, exc)
            raise DeleteError(str(exc)) from exc
        logger.info("deleted %s", public_id)
