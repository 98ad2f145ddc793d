# statickit/interfaces.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import time
import uuid
from typing import Any, ClassVar, Dict, List, Optional, Protocol, Sequence, Tuple, Union


class NodeStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class VariantStatus(str, Enum):
    IDLE = "idle"
    RESIZING = "resizing"
    COMPLETED = "completed"
    ERROR = "error"


class VariationStatus(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"



class SuggestionKind(str, Enum):
    VARIATIONS = "variations"
    BACKGROUNDS = "backgrounds"
    MODELS = "models"


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class VersionNode:
    """One image state in a branch. Settles exactly once: pending -> completed | failed."""

    image_url: Optional[str]
    prompt: Optional[str]
    parent_index: int
    status: NodeStatus
    error: Optional[str] = None
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=time.time)

    @classmethod
    def root(cls, image_url: str) -> "VersionNode":
        return cls(image_url=image_url, prompt=None, parent_index=-1, status=NodeStatus.COMPLETED)

    @classmethod
    def pending(cls, prompt: str, parent_index: int) -> "VersionNode":
        return cls(image_url=None, prompt=prompt, parent_index=parent_index, status=NodeStatus.PENDING)

    @property
    def is_settled(self) -> bool:
        return self.status is not NodeStatus.PENDING

    def completed(self, image_url: str) -> "VersionNode":
        if self.is_settled:
            raise ValueError(f"Node {self.id} already settled as {self.status.value}")
        if not image_url:
            raise ValueError("A completed node requires an image url")
        return replace(self, image_url=image_url, status=NodeStatus.COMPLETED)

    def failed(self, error: str) -> "VersionNode":
        if self.is_settled:
            raise ValueError(f"Node {self.id} already settled as {self.status.value}")
        return replace(self, image_url=None, status=NodeStatus.FAILED, error=error or "unknown error")


@dataclass
class ResizedVariant:
    size: str
    status: VariantStatus = VariantStatus.IDLE
    image_url: Optional[str] = None
    width: int = 0
    height: int = 0
    source_node_id: str = ""
    error: Optional[str] = None


@dataclass
class Branch:
    id: str
    name: str
    root_image_url: str
    nodes: List[VersionNode]
    cursor: int = 0
    resized_variants: Dict[str, ResizedVariant] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def node(self, index: int) -> VersionNode:
        if index < 0 or index >= len(self.nodes):
            raise IndexError(f"Branch {self.id} has no node at index {index}")
        return self.nodes[index]

    def index_of(self, node_id: str) -> Optional[int]:
        for idx, node in enumerate(self.nodes):
            if node.id == node_id:
                return idx
        return None

    @property
    def current_node(self) -> VersionNode:
        return self.nodes[self.cursor]

    def completed_indices(self) -> List[int]:
        return [idx for idx, node in enumerate(self.nodes) if node.status is NodeStatus.COMPLETED]

    def pending_count(self) -> int:
        return sum(1 for node in self.nodes if node.status is NodeStatus.PENDING)


@dataclass
class Variation:
    """An A/B alternative generated from the source image, tracked beside the branches."""

    title: str
    description: str
    id: str = field(default_factory=_new_id)
    status: VariationStatus = VariationStatus.IDLE
    image_url: Optional[str] = None
    archived: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class Suggestion:
    """A ready-made prompt offered to the user: a variation idea, a background or a model."""

    kind: SuggestionKind
    name: str
    prompt: str
    description: str = ""
    audience: str = ""
    id: str = field(default_factory=_new_id)


@dataclass
class CompareSession:
    branch_id: str
    left_index: int
    right_index: int


@dataclass(frozen=True)
class SourceImage:
    """Metadata of the uploaded image that seeds the root branch."""

    url: str
    filename: str = ""
    mime_type: str = "image/png"
    width: int = 0
    height: int = 0
    aspect_ratio: str = ""
    aspect_ratio_key: str = "custom"


# ---- Generation requests (one variant per kind) ----

@dataclass(frozen=True)
class EditRequest:
    kind: ClassVar[str] = "edit"
    branch_id: str
    source_index: int
    instruction: str


@dataclass(frozen=True)
class PresetApply:
    kind: ClassVar[str] = "preset"
    branch_id: str
    source_index: int
    preset_ids: Tuple[str, ...]


@dataclass(frozen=True)
class BackgroundChange:
    kind: ClassVar[str] = "background"
    branch_id: str
    source_index: int
    prompt: str
    label: str


@dataclass(frozen=True)
class ModelChange:
    kind: ClassVar[str] = "model"
    branch_id: str
    source_index: int
    prompt: str
    label: str
    keep_clothing: bool = True


@dataclass(frozen=True)
class ResizeRequest:
    kind: ClassVar[str] = "resize"
    branch_id: str
    size_label: str
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class VariationRequest:
    kind: ClassVar[str] = "variation"
    variation_id: str


GenerationRequest = Union[EditRequest, PresetApply, BackgroundChange, ModelChange, ResizeRequest, VariationRequest]


@dataclass(frozen=True)
class GenerationOptions:
    aspect_ratio: str = ""
    is_edit: bool = True
    background_only: bool = False
    model_only: bool = False
    keep_clothing: bool = True
    analysis: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResult:
    image_url: Optional[str] = None
    ok: bool = True
    error: str = ""
    note: str = ""


# ---- External collaborator ----

class ImageGenerationService(Protocol):
    async def generate(
        self,
        source_image: str,
        instruction: str,
        options: GenerationOptions,
        worker: str = "main",
    ) -> GenerationResult: ...

    async def analyze(
        self,
        image: str,
        worker: str = "analyze",
        *,
        context: str = "",
    ) -> Dict[str, Any]: ...

    async def resize(
        self,
        source_image: str,
        width: int,
        height: int,
        options: GenerationOptions,
        worker: str = "main",
    ) -> GenerationResult: ...

    async def suggest(
        self,
        kind: SuggestionKind,
        image: str,
        analysis: Dict[str, Any],
        worker: str = "suggest",
        *,
        context: str = "",
        exclude: Sequence[str] = (),
    ) -> List[Dict[str, Any]]: ...


# ---- Engine event listener for UI ----

class EngineEventListener(Protocol):
    async def on_node_created(self, branch_id: str, index: int, node: VersionNode) -> None: ...

    async def on_node_settled(self, branch_id: str, index: int, node: VersionNode) -> None: ...

    async def on_variant_settled(self, branch_id: str, variant: ResizedVariant) -> None: ...
