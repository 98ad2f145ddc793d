from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from statickit.interfaces import (  # noqa: E402
    GenerationOptions,
    GenerationResult,
    ResizedVariant,
    SuggestionKind,
    VersionNode,
)


PNG_BYTES = bytes.fromhex(
    "89504E470D0A1A0A0000000D49484452000000010000000108060000001F15C4890000000A"
    "49444154789C6360000002000100FFFF03000006000557FE0000000049454E44AE426082"
)
PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")
ROOT_URL = "data:image/png;base64,cm9vdA=="


def image_url(tag: str) -> str:
    return "data:image/png;base64," + base64.b64encode(tag.encode("utf-8")).decode("ascii")


@dataclass
class StubCall:
    kind: str
    source_image: str
    instruction: str
    options: GenerationOptions
    future: "asyncio.Future[GenerationResult]"
    size: Tuple[int, int] = (0, 0)

    def succeed(self, url: Optional[str] = None) -> None:
        self.future.set_result(GenerationResult(image_url=url or image_url(self.instruction)))

    def fail(self, error: str = "provider error") -> None:
        self.future.set_result(GenerationResult(ok=False, error=error))

    def raise_(self, exc: BaseException) -> None:
        self.future.set_exception(exc)


class ControlledImageService:
    """Every call parks on a future; tests decide when and how it settles."""

    def __init__(
        self,
        analysis: Optional[Dict[str, Any]] = None,
        suggestions: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    ) -> None:
        self.calls: List[StubCall] = []
        self.analysis = analysis
        self.analyze_calls: List[Tuple[str, str]] = []
        self.suggestions = suggestions or {}
        self.suggest_calls: List[Dict[str, Any]] = []

    async def generate(
        self,
        source_image: str,
        instruction: str,
        options: GenerationOptions,
        worker: str = "main",
    ) -> GenerationResult:
        future: asyncio.Future[GenerationResult] = asyncio.get_running_loop().create_future()
        self.calls.append(StubCall("generate", source_image, instruction, options, future))
        return await future

    async def resize(
        self,
        source_image: str,
        width: int,
        height: int,
        options: GenerationOptions,
        worker: str = "main",
    ) -> GenerationResult:
        future: asyncio.Future[GenerationResult] = asyncio.get_running_loop().create_future()
        self.calls.append(StubCall("resize", source_image, options.aspect_ratio, options, future, (width, height)))
        return await future

    async def analyze(self, image: str, worker: str = "analyze", *, context: str = "") -> Dict[str, Any]:
        self.analyze_calls.append((image, context))
        if self.analysis is None:
            raise RuntimeError("analysis unavailable")
        return dict(self.analysis)

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
        kind = SuggestionKind(kind)
        self.suggest_calls.append(
            {"kind": kind, "image": image, "analysis": dict(analysis), "context": context, "exclude": list(exclude)}
        )
        if kind.value not in self.suggestions:
            raise RuntimeError("suggestions unavailable")
        return [dict(item) for item in self.suggestions[kind.value]]


class InstantImageService:
    """Answers immediately with a real PNG, so exports can decode the result."""

    def __init__(self, fail_on: str = "") -> None:
        self.fail_on = fail_on
        self.instructions: List[str] = []

    async def generate(
        self,
        source_image: str,
        instruction: str,
        options: GenerationOptions,
        worker: str = "main",
    ) -> GenerationResult:
        self.instructions.append(instruction)
        if self.fail_on and self.fail_on in instruction:
            return GenerationResult(ok=False, error="refused")
        return GenerationResult(image_url=PNG_DATA_URL)

    async def resize(
        self,
        source_image: str,
        width: int,
        height: int,
        options: GenerationOptions,
        worker: str = "main",
    ) -> GenerationResult:
        return GenerationResult(image_url=PNG_DATA_URL)

    async def analyze(self, image: str, worker: str = "analyze", *, context: str = "") -> Dict[str, Any]:
        return {"product": "Sneaker", "colors": ["red", "white"]}

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
        if SuggestionKind(kind) is SuggestionKind.VARIATIONS:
            return [{"title": "Beach Day", "description": "The sneaker on a sunny beach boardwalk."}]
        return [{"name": "Rooftop", "prompt": "A city rooftop at dusk with warm string lights."}]


@dataclass
class RecordingListener:
    events: List[Tuple[str, str, Any]] = field(default_factory=list)

    async def on_node_created(self, branch_id: str, index: int, node: VersionNode) -> None:
        self.events.append(("created", branch_id, index))

    async def on_node_settled(self, branch_id: str, index: int, node: VersionNode) -> None:
        self.events.append(("settled", branch_id, (index, node.status.value)))

    async def on_variant_settled(self, branch_id: str, variant: ResizedVariant) -> None:
        self.events.append(("variant", branch_id, (variant.size, variant.status.value)))


async def wait_for_calls(service: ControlledImageService, count: int) -> None:
    for _ in range(200):
        if len(service.calls) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} service calls, saw {len(service.calls)}")


class FailingListener(RecordingListener):
    """Raises from the named callbacks after recording them."""

    def __init__(self, *failing: str) -> None:
        super().__init__()
        self.failing = set(failing)

    async def on_node_created(self, branch_id: str, index: int, node: VersionNode) -> None:
        await super().on_node_created(branch_id, index, node)
        if "created" in self.failing:
            raise RuntimeError("ui glitch")

    async def on_node_settled(self, branch_id: str, index: int, node: VersionNode) -> None:
        await super().on_node_settled(branch_id, index, node)
        if "settled" in self.failing:
            raise RuntimeError("ui glitch")

    async def on_variant_settled(self, branch_id: str, variant: ResizedVariant) -> None:
        await super().on_variant_settled(branch_id, variant)
        if "variant" in self.failing:
            raise RuntimeError("ui glitch")
