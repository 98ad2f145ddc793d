from __future__ import annotations

from io import BytesIO
from pathlib import Path
import sys

import pytest
from PIL import Image

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from statickit.image_io import (  # noqa: E402
    detect_aspect_ratio,
    read_image_size,
    reduced_ratio,
    scale_image_bytes,
)


def _png(width: int, height: int) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.mark.parametrize(
    "size, expected",
    [
        ((1080, 1080), "1:1"),
        ((1080, 1350), "4:5"),
        ((1080, 1920), "9:16"),
        ((1920, 1080), "16:9"),
        ((1200, 628), "1.91:1"),
        ((1000, 700), "custom"),
        ((0, 100), "custom"),
    ],
)
def test_detect_aspect_ratio(size, expected) -> None:
    assert detect_aspect_ratio(*size) == expected


def test_reduced_ratio() -> None:
    assert reduced_ratio(1000, 700) == "10:7"
    assert reduced_ratio(1920, 1080) == "16:9"
    assert reduced_ratio(0, 5) == ""


def test_read_image_size() -> None:
    assert read_image_size(_png(40, 20)) == (40, 20)
    with pytest.raises(ValueError):
        read_image_size(b"not an image")


def test_scale_image_bytes_downsamples() -> None:
    scaled = scale_image_bytes(_png(100, 50), 0.5)
    assert scaled is not None
    with Image.open(BytesIO(scaled)) as image:
        assert image.size == (50, 25)
        assert image.format == "PNG"


def test_scale_image_bytes_leaves_originals_alone() -> None:
    data = _png(10, 10)
    assert scale_image_bytes(data, 1.0) is None
    assert scale_image_bytes(data, 0) is None
    assert scale_image_bytes(data, 0.99) is None
    assert scale_image_bytes(b"garbage", 0.5) is None
