from __future__ import annotations

from io import BytesIO
from pathlib import Path
import sys
from typing import Any, Dict, List

import pytest
from PIL import Image

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from support import PNG_DATA_URL  # noqa: E402

from statickit import op_status, or_client  # noqa: E402
from statickit.interfaces import GenerationOptions, SuggestionKind  # noqa: E402
from statickit.services import OpenRouterImageService, load_image_source  # noqa: E402


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> List[List[Dict[str, Any]]]:
    seen: List[List[Dict[str, Any]]] = []

    async def fake_generate(messages, model=None):
        seen.append(messages)
        text = messages[0]["content"][1]["text"]
        if "REFUSE" in text:
            return None, "I cannot do that"
        return PNG_DATA_URL, "done"

    async def fake_analyze(messages, model=None):
        seen.append(messages)
        return {"product": "Lamp"}

    async def fake_suggest(messages, model=None):
        seen.append(messages)
        return [{"name": "Rooftop", "prompt": "Dusk rooftop"}]

    monkeypatch.setattr(or_client, "generate_image", fake_generate)
    monkeypatch.setattr(or_client, "analyze_json", fake_analyze)
    monkeypatch.setattr(or_client, "suggest_json", fake_suggest)
    yield seen
    op_status.clear_all()


@pytest.mark.asyncio
async def test_generate_sends_image_then_prompt(captured) -> None:
    service = OpenRouterImageService()
    result = await service.generate(PNG_DATA_URL, "Add snow", GenerationOptions(aspect_ratio="1:1"), worker="w1")

    assert result.ok is True
    assert result.image_url == PNG_DATA_URL
    assert result.note == "done"
    parts = captured[0][0]["content"]
    assert parts[0]["image_url"]["url"] == PNG_DATA_URL
    assert "EDIT REQUEST:\nAdd snow" in parts[1]["text"]
    assert op_status.get_all_phases()["w1"][0] == "Generating|model"


@pytest.mark.asyncio
async def test_generate_without_image_is_reported(captured) -> None:
    result = await OpenRouterImageService().generate(PNG_DATA_URL, "REFUSE", GenerationOptions())
    assert result.ok is False
    assert result.error == "Image generation model did not return an image"
    assert result.note == "I cannot do that"


@pytest.mark.asyncio
async def test_resize_uses_reduced_ratio_when_none_given(captured) -> None:
    result = await OpenRouterImageService().resize(PNG_DATA_URL, 1000, 700, GenerationOptions(), worker="r")
    assert result.ok is True
    text = captured[0][0]["content"][1]["text"]
    assert "TARGET DIMENSIONS: 1000x700 (10:7)" in text
    assert op_status.get_all_phases()["r"][0] == "Resizing|10:7"


@pytest.mark.asyncio
async def test_analyze_passes_context(captured) -> None:
    result = await OpenRouterImageService().analyze(PNG_DATA_URL, context="Holiday promo")
    assert result == {"product": "Lamp"}
    assert "Holiday promo" in captured[0][0]["content"][1]["text"]


@pytest.mark.asyncio
async def test_load_image_source(tmp_path: Path) -> None:
    path = tmp_path / "ad.png"
    Image.new("RGB", (1080, 1350), (10, 10, 10)).save(path, format="PNG")

    source = await load_image_source(path)
    assert source.filename == "ad.png"
    assert source.mime_type == "image/png"
    assert (source.width, source.height) == (1080, 1350)
    assert source.aspect_ratio == "4:5"
    assert source.aspect_ratio_key == "4:5"
    assert source.url.startswith("data:image/png;base64,")

    odd = tmp_path / "odd.png"
    Image.new("RGB", (1000, 700)).save(odd, format="PNG")
    scaled = await load_image_source(odd, scale=0.5)
    assert scaled.aspect_ratio_key == "custom"
    assert scaled.aspect_ratio == "10:7"
    assert (scaled.width, scaled.height) == (1000, 700)
    _, raw = or_client.decode_data_url(scaled.url)
    with Image.open(BytesIO(raw)) as image:
        assert image.size == (500, 350)


@pytest.mark.asyncio
async def test_load_image_source_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        await load_image_source(tmp_path / "missing.png")
    bad = tmp_path / "bad.png"
    bad.write_bytes(b"nope")
    with pytest.raises(ValueError):
        await load_image_source(bad)


@pytest.mark.asyncio
async def test_resize_accepts_a_remote_source(captured) -> None:
    remote = "https://cdn.example.com/v2.png"
    result = await OpenRouterImageService().resize(remote, 1080, 1920, GenerationOptions(aspect_ratio="9:16"))

    assert result.ok is True
    assert captured[0][0]["content"][0]["image_url"]["url"] == remote


@pytest.mark.asyncio
async def test_background_suggestions_send_the_image(captured) -> None:
    result = await OpenRouterImageService().suggest(
        SuggestionKind.BACKGROUNDS, PNG_DATA_URL, {"product": "Lamp"}, worker="s", exclude=["Studio"]
    )

    assert result == [{"name": "Rooftop", "prompt": "Dusk rooftop"}]
    parts = captured[0][0]["content"]
    assert parts[0]["image_url"]["url"] == PNG_DATA_URL
    assert "- Studio" in parts[1]["text"]
    assert op_status.get_all_phases()["s"][0] == "Suggesting backgrounds|model"


@pytest.mark.asyncio
async def test_variation_suggestions_are_text_only(captured) -> None:
    await OpenRouterImageService().suggest("variations", PNG_DATA_URL, {"product": "Lamp"}, context="Dorm rooms")

    message = captured[0][0]
    assert isinstance(message["content"], str)
    assert "- Product/Service: Lamp" in message["content"]
    assert "Dorm rooms" in message["content"]
