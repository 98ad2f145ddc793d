from __future__ import annotations

from io import BytesIO
from math import gcd
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from .config import get_config


# Known ad ratios as width / height.
ASPECT_RATIOS = {
    "1:1": 1.0,
    "4:5": 0.8,
    "9:16": 0.5625,
    "16:9": 1.778,
    "1.91:1": 1.91,
}
RATIO_TOLERANCE = 0.05


def _get_upload_scale() -> float:
    """Return the configured fraction of the original upload size."""
    try:
        raw_value = get_config().upload_scale
    except RuntimeError:
        return 1.0
    try:
        return float(raw_value) if raw_value is not None else 1.0
    except (TypeError, ValueError):
        return 1.0


def detect_aspect_ratio(width: int, height: int) -> str:
    """Return the matching ad ratio key such as "4:5", or "custom"."""
    if width <= 0 or height <= 0:
        return "custom"
    ratio = width / height
    for key, value in ASPECT_RATIOS.items():
        if abs(ratio - value) < RATIO_TOLERANCE:
            return key
    return "custom"


def reduced_ratio(width: int, height: int) -> str:
    if width <= 0 or height <= 0:
        return ""
    divisor = gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


def read_image_size(data: bytes) -> Tuple[int, int]:
    try:
        with Image.open(BytesIO(data)) as image:
            return image.size
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Not a readable image: {exc}")


def scale_image_bytes(data: bytes, scale: float | None = None) -> bytes | None:
    """
    Return downsampled PNG bytes if the scale is between 0 and 1.
    None means the original bytes should be used as they are.
    """
    factor = _get_upload_scale() if scale is None else scale
    if not (0 < factor < 1):
        return None
    try:
        with Image.open(BytesIO(data)) as image:
            original_width, original_height = image.size
            target_width = max(1, int(round(original_width * factor)))
            target_height = max(1, int(round(original_height * factor)))
            if target_width == original_width and target_height == original_height:
                return None
            resized = image.resize((target_width, target_height), Image.Resampling.LANCZOS)
            buffer = BytesIO()
            resized.save(buffer, format="PNG")
            return buffer.getvalue()
    except (UnidentifiedImageError, OSError):
        return None

