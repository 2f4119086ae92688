"""
Image loading and staging.

Vision APIs that take inline images get a base64 PNG resized by its longest
edge. Cutouts keep their alpha channel since transparency is one of the scored
metrics. Source images uploaded from the browser arrive as data URLs; large
ones are staged to R2 so providers receive a short public URL instead.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from io import BytesIO
import logging
import re
from typing import Optional, Tuple
from urllib.parse import urljoin
import uuid

import boto3
from botocore.client import Config as BotoConfig
from PIL import Image
import requests

from . import config

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(?:;[^,;]+)*),(?P<data>.*)$", re.DOTALL)


@dataclass
class InlineImage:
    mime_type: str
    data: str  # base64
    size: Tuple[int, int]  # (width, height)


def is_data_url(value: str) -> bool:
    return value.startswith("data:")


def decode_data_url(value: str) -> Tuple[str, bytes]:
    """Return `(mime_type, raw_bytes)` for a base64 data URL."""
    match = _DATA_URL_RE.match(value)
    if not match or ";base64" not in (match.group("params") or ""):
        raise ValueError("Only base64 data URLs are supported")
    try:
        raw = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Invalid base64 image data") from exc
    return match.group("mime") or "application/octet-stream", raw


def fetch_image_bytes(image: str, session: Optional[requests.Session] = None, timeout: float = 30) -> bytes:
    if is_data_url(image):
        return decode_data_url(image)[1]
    http = session or requests
    resp = http.get(image, timeout=(5, timeout))
    resp.raise_for_status()
    return resp.content


def _compute_resize_dims(width: int, height: int, max_long_edge: int) -> Tuple[int, int]:
    """Preserve aspect ratio while constraining the longest edge."""
    if max_long_edge <= 0:
        return width, height
    long_edge = max(width, height)
    if long_edge <= max_long_edge:
        return width, height
    scale = max_long_edge / long_edge
    return max(1, int(width * scale)), max(1, int(height * scale))


def to_inline_png(image_bytes: bytes, max_long_edge: int) -> InlineImage:
    """
    Decode, downscale by longest edge, and re-encode as base64 PNG.

    Raises:
        ValueError: when the bytes are not a decodable image.
    """
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except Exception as exc:  # noqa: BLE001
        raise ValueError("Invalid image data") from exc

    image = image.convert("RGBA") if "A" in image.getbands() or image.mode == "P" else image.convert("RGB")
    new_size = _compute_resize_dims(image.width, image.height, max_long_edge)
    if new_size != image.size:
        image = image.resize(new_size, Image.BILINEAR)

    buf = BytesIO()
    image.save(buf, format="PNG")
    return InlineImage(
        mime_type="image/png",
        data=base64.b64encode(buf.getvalue()).decode("ascii"),
        size=image.size,
    )


def load_inline_image(
    image: str,
    max_long_edge: int,
    session: Optional[requests.Session] = None,
    timeout: float = 30,
) -> InlineImage:
    return to_inline_png(fetch_image_bytes(image, session=session, timeout=timeout), max_long_edge)


def _r2_configured(settings: config.Settings) -> bool:
    required = [
        settings.r2_endpoint,
        settings.r2_access_key_id,
        settings.r2_secret_access_key,
        settings.r2_bucket_name,
    ]
    return all(v for v in required)


def _get_s3_client(settings: config.Settings):
    if not _r2_configured(settings):
        raise RuntimeError("R2 configuration is incomplete; check env vars.")
    session = boto3.session.Session()
    return session.client(
        service_name="s3",
        aws_access_key_id=settings.r2_access_key_id,
        aws_secret_access_key=settings.r2_secret_access_key,
        endpoint_url=settings.r2_endpoint,
        config=BotoConfig(signature_version="s3v4"),
    )


def _build_public_url(client, key: str, settings: config.Settings) -> str:
    if settings.r2_public_base_url:
        return urljoin(settings.r2_public_base_url.rstrip("/") + "/", key)
    return client.generate_presigned_url(
        "get_object",
        Params={"Bucket": settings.r2_bucket_name, "Key": key},
        ExpiresIn=3600,
    )


_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


def stage_image(image: str, settings: Optional[config.Settings] = None, s3_client=None) -> str:
    """
    Return a reference that providers can accept for `image`.

    URLs pass through. Data URLs pass through unless they exceed
    `inline_image_max_bytes` and R2 is configured, in which case the decoded
    bytes are uploaded and a public (or presigned) URL is returned.
    """
    settings = settings or config.get_settings()
    if not is_data_url(image) or len(image) <= settings.inline_image_max_bytes:
        return image
    if s3_client is None and not _r2_configured(settings):
        logger.warning(
            "Inline image is %d bytes but R2 is not configured; submitting inline", len(image)
        )
        return image

    mime_type, raw = decode_data_url(image)
    key = f"sources/{uuid.uuid4()}.{_EXTENSIONS.get(mime_type, 'bin')}"
    client = s3_client or _get_s3_client(settings)
    client.put_object(
        Bucket=settings.r2_bucket_name,
        Key=key,
        Body=raw,
        ContentType=mime_type,
    )
    url = _build_public_url(client, key, settings)
    logger.info("Staged %d-byte source image to %s", len(raw), key)
    return url
