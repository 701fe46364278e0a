"""
Shrink images before they are sent upstream as references.

Re-encoding is CPU-bound; async callers go through `compress_data_uri_async`,
which runs the work in a thread so the event loop stays responsive.
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass
import io
import math
import re

from PIL import Image
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TARGET_BYTES = int(1.5 * 1024 * 1024)
MIN_SCALE = 0.3
MAX_SCALE = 1.0
MIN_SHORT_SIDE = 512
INITIAL_QUALITY = 80
QUALITY_STEP = 15
MIN_QUALITY = 20
MAX_ATTEMPTS = 5

_DATA_URI = re.compile(r"^data:(?P<mime>[^;,]+)?(?P<b64>;base64)?,(?P<data>.*)$", re.DOTALL)


@dataclass(slots=True)
class ReductionResult:
    """Outcome of one reduction."""

    data: bytes
    mime_type: str
    reduced: bool
    quality: int | None = None
    attempts: int = 0
    width: int | None = None
    height: int | None = None


def decode_data_uri(data_uri: str) -> tuple[str, bytes]:
    """
    Split a base64 data URI into (mime type, raw bytes).

    Raises:
        ValueError: If the value is not a base64 data URI
    """
    match = _DATA_URI.match(data_uri.strip())
    if not match or not match.group("b64"):
        raise ValueError("Not a base64 data URI")
    try:
        raw = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e
    return match.group("mime") or "application/octet-stream", raw


def encode_data_uri(raw: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(raw).decode('ascii')}"


def data_uri_size(data_uri: str) -> int:
    """
    Approximate decoded size of a data URI without decoding it.

    Plain URLs are measured by their own length.
    """
    if not data_uri.startswith("data:"):
        return len(data_uri)
    _, _, payload = data_uri.partition(",")
    return len(payload) * 3 // 4


def _target_dimensions(width: int, height: int, scale: float) -> tuple[int, int]:
    new_width = max(1, round(width * scale))
    new_height = max(1, round(height * scale))

    short_side = min(new_width, new_height)
    original_short = min(width, height)
    floor = min(MIN_SHORT_SIDE, original_short)
    if short_side < floor:
        # Scale back up to the floor, never past the original size
        bump = floor / short_side
        new_width = min(width, round(new_width * bump))
        new_height = min(height, round(new_height * bump))
    return new_width, new_height


def _flatten(image: Image.Image) -> Image.Image:
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def reduce_image_bytes(
    raw: bytes, target_bytes: int = DEFAULT_TARGET_BYTES, mime_type: str = "image/png"
) -> ReductionResult:
    """
    Re-encode an image as JPEG until it fits within `target_bytes`.

    The image is first downscaled by `1 / sqrt(size / target)` (clamped to
    [0.3, 1.0], short side kept at 512 px or more), then encoded at quality
    80, dropping by 15 per attempt while still over budget. Stops after five
    attempts or once quality would fall to 20 or below, returning the best
    effort. Never returns something larger than the input; on any decode or
    encode failure the input is returned unchanged.
    """
    original = ReductionResult(data=raw, mime_type=mime_type, reduced=False)
    if len(raw) <= target_bytes:
        return original

    try:
        with Image.open(io.BytesIO(raw)) as source:
            source.load()
            width, height = source.size
            scale = max(MIN_SCALE, min(MAX_SCALE, 1 / math.sqrt(len(raw) / target_bytes)))
            new_size = _target_dimensions(width, height, scale)

            image = _flatten(source)
            if new_size != (width, height):
                image = image.resize(new_size, Image.Resampling.LANCZOS)

        quality = INITIAL_QUALITY
        attempts = 0
        encoded = b""
        while True:
            attempts += 1
            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=quality, optimize=True)
            encoded = buffer.getvalue()
            if len(encoded) <= target_bytes:
                break
            if attempts >= MAX_ATTEMPTS or quality - QUALITY_STEP <= MIN_QUALITY:
                break
            quality -= QUALITY_STEP
    except Exception as e:
        logger.warning(
            "Image reduction failed, keeping original",
            error=str(e),
            original_bytes=len(raw),
        )
        return original

    if len(encoded) >= len(raw):
        logger.info(
            "Reduced image not smaller than original, keeping original",
            original_bytes=len(raw),
            reduced_bytes=len(encoded),
        )
        return original

    logger.info(
        "Image reduced",
        original_bytes=len(raw),
        reduced_bytes=len(encoded),
        target_bytes=target_bytes,
        quality=quality,
        attempts=attempts,
        width=new_size[0],
        height=new_size[1],
    )
    return ReductionResult(
        data=encoded,
        mime_type="image/jpeg",
        reduced=True,
        quality=quality,
        attempts=attempts,
        width=new_size[0],
        height=new_size[1],
    )


def compress_data_uri(data_uri: str, target_bytes: int = DEFAULT_TARGET_BYTES) -> str:
    """
    Reduce an image data URI to roughly `target_bytes`.

    Non-data URIs (plain URLs) and undecodable values are returned as is.
    """
    if not data_uri.startswith("data:"):
        return data_uri
    try:
        mime_type, raw = decode_data_uri(data_uri)
    except ValueError as e:
        logger.warning("Cannot decode image data URI, keeping original", error=str(e))
        return data_uri

    result = reduce_image_bytes(raw, target_bytes, mime_type)
    if not result.reduced:
        return data_uri
    return encode_data_uri(result.data, result.mime_type)


async def compress_data_uri_async(
    data_uri: str, target_bytes: int = DEFAULT_TARGET_BYTES
) -> str:
    return await asyncio.to_thread(compress_data_uri, data_uri, target_bytes)
