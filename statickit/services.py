# statickit/services.py
from __future__ import annotations

import asyncio
import base64
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

from .interfaces import GenerationOptions, GenerationResult, ImageGenerationService, SourceImage, SuggestionKind
from .image_io import detect_aspect_ratio, read_image_size, reduced_ratio, scale_image_bytes
from . import op_status
from .prompt_builder import (
    build_analyze_prompt,
    build_generation_prompt,
    build_image_payload,
    build_resize_prompt,
    build_suggest_prompt,
    build_text_payload,
)


class OpenRouterImageService(ImageGenerationService):
    """Default collaborator: Gemini image models reached through OpenRouter."""

    async def generate(
        self,
        source_image: str,
        instruction: str,
        options: GenerationOptions,
        worker: str = "main",
    ) -> GenerationResult:
        # Defer import to avoid requiring env when using stubs/tests
        from . import or_client

        prompt = build_generation_prompt(instruction, options)
        payload = build_image_payload(prompt, or_client.encode_image_to_data_url(source_image))
        op_status.set_phase(worker, "Generating|model")
        image_url, text = await or_client.generate_image(payload.messages)
        if not image_url:
            return GenerationResult(ok=False, error="Image generation model did not return an image", note=text)
        return GenerationResult(image_url=image_url, note=text)

    async def resize(
        self,
        source_image: str,
        width: int,
        height: int,
        options: GenerationOptions,
        worker: str = "main",
    ) -> GenerationResult:
        from . import or_client

        ratio = options.aspect_ratio or reduced_ratio(width, height)
        prompt = build_resize_prompt(width, height, ratio, options.analysis)
        payload = build_image_payload(prompt, or_client.encode_image_to_data_url(source_image))
        op_status.set_phase(worker, f"Resizing|{ratio}")
        image_url, text = await or_client.generate_image(payload.messages)
        if not image_url:
            return GenerationResult(ok=False, error="Failed to resize image - no image returned", note=text)
        return GenerationResult(image_url=image_url, note=text)

    async def analyze(
        self,
        image: str,
        worker: str = "analyze",
        *,
        context: str = "",
    ) -> Dict[str, Any]:
        from . import or_client

        payload = build_image_payload(build_analyze_prompt(context), or_client.encode_image_to_data_url(image))
        op_status.set_phase(worker, "Analyzing|model")
        return await or_client.analyze_json(payload.messages)

    async def suggest(
        self,
        kind: SuggestionKind,
        image: str,
        analysis: Dict[str, Any],
        worker: str = "suggest",
        *,
        context: str = "",
        exclude: Sequence[str] = (),
    ) -> List[Dict[str, Any]]:
        from . import or_client

        kind = SuggestionKind(kind)
        prompt = build_suggest_prompt(kind, analysis, context=context, exclude=exclude)
        # Variation ideas are written from the analysis alone; the others look at the image.
        if kind is SuggestionKind.VARIATIONS:
            payload = build_text_payload(prompt)
        else:
            payload = build_image_payload(prompt, or_client.encode_image_to_data_url(image))
        op_status.set_phase(worker, f"Suggesting {kind.value}|model")
        return await or_client.suggest_json(payload.messages)


def detect_mime_type(filename: str, default: str = "application/octet-stream") -> str:
    guessed, _ = mimetypes.guess_type(filename or "")
    return guessed or default


def encode_file_to_data_url(file_bytes: bytes, mime_type: str | None = None) -> str:
    safe_mime = (mime_type or "").strip() or "application/octet-stream"
    payload = base64.b64encode(file_bytes or b"").decode("ascii") if file_bytes else ""
    return f"data:{safe_mime};base64,{payload}"


def _read_source(path: Path, scale: float | None) -> SourceImage:
    raw = path.read_bytes()
    width, height = read_image_size(raw)
    mime = detect_mime_type(path.name, default="image/png")
    scaled = scale_image_bytes(raw, scale)
    if scaled is not None:
        raw, mime = scaled, "image/png"
    key = detect_aspect_ratio(width, height)
    return SourceImage(
        url=encode_file_to_data_url(raw, mime),
        filename=path.name,
        mime_type=mime,
        width=width,
        height=height,
        aspect_ratio=key if key != "custom" else reduced_ratio(width, height),
        aspect_ratio_key=key,
    )


async def load_image_source(path: Union[str, Path], scale: float | None = None) -> SourceImage:
    """Read an upload from disk in a worker thread; width/height are those of the original file."""
    candidate = Path(str(path)).expanduser()
    if not candidate.is_file():
        raise FileNotFoundError(f"Image not found: {candidate}")
    return await asyncio.to_thread(_read_source, candidate, scale)
