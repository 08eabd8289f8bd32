import base64
import binascii
import time
import uuid
from io import BytesIO
from typing import Any, Dict, Optional

from PIL import Image

from .errors import BackendProtocolError


def gen_job_id() -> str:
    return uuid.uuid4().hex


def get_timestamp_ms() -> int:
    return int(time.time() * 1000)


def check_image_bytes(data: bytes) -> bytes:
    """Pillow phải nhận ra được ảnh, nếu không thì coi là lỗi protocol."""
    if not data:
        raise BackendProtocolError("backend returned an empty image")
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
    except (OSError, ValueError, SyntaxError) as e:
        raise BackendProtocolError(f"backend returned undecodable image data: {e}") from e
    return data


def decode_image_b64(payload: str) -> bytes:
    # Handle data URI format (data:image/png;base64,...)
    if "," in payload:
        payload = payload.split(",", 1)[-1]
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise BackendProtocolError(f"image payload is not valid base64: {e}") from e
    return check_image_bytes(data)


def encode_image_b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def format_caption(prompt: str, seed: Optional[int], parameters: Dict[str, Any]) -> str:
    """
    Caption gửi kèm ảnh, ví dụ:
        a watercolor of a corgi
        Seed: 1234, Steps: 30, CFG: 7.0, Size: 512x512
    """
    parts = []
    if seed is not None:
        parts.append(f"Seed: {seed}")
    if parameters.get("steps") is not None:
        parts.append(f"Steps: {parameters['steps']}")
    cfg = parameters.get("cfg_scale", parameters.get("cfg"))
    if cfg is not None:
        parts.append(f"CFG: {cfg}")
    if parameters.get("width") and parameters.get("height"):
        parts.append(f"Size: {parameters['width']}x{parameters['height']}")
    denoising = parameters.get("denoising_strength", parameters.get("denoise"))
    if denoising is not None:
        parts.append(f"Denoising: {denoising}")

    caption = prompt.strip()
    if parts:
        caption += "\n" + ", ".join(parts)
    return caption
