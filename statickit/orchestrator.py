# statickit/orchestrator.py
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union
import uuid

from .config import AdSize, DEFAULT_AD_SIZES, get_config
from .errors import GENERATION_FAILED, RESIZE_FAILED, SourceNotReadyError
from .interfaces import (
    BackgroundChange,
    EditRequest,
    EngineEventListener,
    GenerationOptions,
    GenerationRequest,
    GenerationResult,
    ImageGenerationService,
    ModelChange,
    NodeStatus,
    PresetApply,
    ResizedVariant,
    ResizeRequest,
    Suggestion,
    SuggestionKind,
    VariantStatus,
    Variation,
    VariationRequest,
    VariationStatus,
    VersionNode,
)
from .logging import log_event
from .presets import PresetCatalog, combine_presets
from .prompt_builder import DEFAULT_ANALYSIS, fallback_variations, node_label
from .registry import BranchRegistry, node_is_ready
from . import op_status
from . import task_registry


T = TypeVar("T")

_PHASES = {
    "edit": "Editing",
    "preset": "Applying presets",
    "background": "Changing background",
    "model": "Changing model",
}


def _variation_title(description: str) -> str:
    words = description.split()
    title = " ".join(words[:3])
    return title + "..." if len(words) > 3 else title


def _error_text(exc: BaseException) -> str:
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def _result_error(result: GenerationResult) -> str:
    return result.error or result.note or "no image returned"


class GenerationOrchestrator:
    """Turns generation requests into pending slots and settles them from background tasks.

    Every request allocates its slot synchronously (a pending node, a resizing
    variant or a generating variation) before the first await, so concurrent
    requests never share a slot and no lock is needed. Results are written back
    by branch id and node id; a slot that disappeared in the meantime is dropped.
    """

    def __init__(
        self,
        registry: BranchRegistry,
        service: ImageGenerationService,
        *,
        timeout_seconds: Optional[float] = None,
        ad_sizes: Optional[Mapping[str, AdSize]] = None,
        catalog: Optional[PresetCatalog] = None,
    ) -> None:
        self._registry = registry
        self._service = service
        self._listeners: List[EngineEventListener] = []
        self._catalog = catalog
        if timeout_seconds is None or ad_sizes is None:
            try:
                cfg = get_config()
                cfg_timeout: float = cfg.generation_timeout
                cfg_sizes: Mapping[str, AdSize] = cfg.ad_sizes
            except RuntimeError:
                cfg_timeout, cfg_sizes = 180.0, DEFAULT_AD_SIZES
            if timeout_seconds is None:
                timeout_seconds = cfg_timeout
            if ad_sizes is None:
                ad_sizes = cfg_sizes
        # <= 0 disables the deadline entirely
        self._timeout: Optional[float] = timeout_seconds if timeout_seconds > 0 else None
        self._ad_sizes: Dict[str, AdSize] = dict(ad_sizes)
        self._job_prefix = f"gen-{uuid.uuid4().hex[:8]}"
        self._tasks: Dict[str, asyncio.Task[None]] = {}

    def add_listener(self, listener: EngineEventListener) -> None:
        self._listeners.append(listener)

    @property
    def ad_sizes(self) -> Dict[str, AdSize]:
        return dict(self._ad_sizes)

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    # Request entry points

    def dispatch(self, request: GenerationRequest) -> Union[int, bool]:
        """Start the job for one tagged request.

        Node-producing kinds return the new node index; resize and variation
        requests return False when the slot is already busy.
        """
        if isinstance(request, EditRequest):
            text = (request.instruction or "").strip()
            if not text:
                raise ValueError("Edit instruction cannot be empty")
            return self._start_node(request.kind, request.branch_id, request.source_index, text, text, self._options())
        if isinstance(request, PresetApply):
            instruction, label = combine_presets(request.preset_ids, self._catalog)
            return self._start_node(request.kind, request.branch_id, request.source_index, label, instruction, self._options())
        if isinstance(request, BackgroundChange):
            text = (request.prompt or "").strip()
            if not text:
                raise ValueError("Background prompt cannot be empty")
            label = node_label("background", (request.label or text).strip())
            return self._start_node(
                request.kind, request.branch_id, request.source_index, label, text,
                self._options(background_only=True),
            )
        if isinstance(request, ModelChange):
            text = (request.prompt or "").strip()
            if not text:
                raise ValueError("Model description cannot be empty")
            label = node_label("model", (request.label or text).strip())
            return self._start_node(
                request.kind, request.branch_id, request.source_index, label, f"Change the model to: {text}",
                self._options(model_only=True, keep_clothing=request.keep_clothing),
            )
        if isinstance(request, ResizeRequest):
            return self._start_resize(request)
        if isinstance(request, VariationRequest):
            return self._start_variation(request.variation_id)
        raise TypeError(f"Unsupported request type: {type(request).__name__}")

    def request_edit(self, branch_id: str, source_index: int, instruction: str) -> int:
        return int(self.dispatch(EditRequest(branch_id, source_index, instruction)))

    def apply_presets(self, branch_id: str, source_index: int, preset_ids: Sequence[str]) -> int:
        return int(self.dispatch(PresetApply(branch_id, source_index, tuple(preset_ids))))

    def change_background(self, branch_id: str, source_index: int, prompt: str, label: str = "") -> int:
        return int(self.dispatch(BackgroundChange(branch_id, source_index, prompt, label)))

    def change_model(
        self,
        branch_id: str,
        source_index: int,
        prompt: str,
        label: str = "",
        keep_clothing: bool = True,
    ) -> int:
        return int(self.dispatch(ModelChange(branch_id, source_index, prompt, label, keep_clothing)))

    def request_resize(
        self,
        branch_id: str,
        size_label: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> bool:
        return bool(self.dispatch(ResizeRequest(branch_id, size_label, width, height)))

    def generate_variation(self, variation_id: str) -> bool:
        return bool(self.dispatch(VariationRequest(variation_id)))

    # Variations bookkeeping

    def add_variation(self, title: str, description: str) -> Variation:
        text = (description or "").strip()
        if not text:
            raise ValueError("Variation description cannot be empty")
        variation = Variation(title=(title or "").strip() or _variation_title(text), description=text)
        self._registry.variations[variation.id] = variation
        log_event("variation.added", variation_id=variation.id, title=variation.title)
        return variation

    def add_custom_variation(self, description: str) -> Variation:
        text = (description or "").strip()
        if not text:
            raise ValueError("Variation description cannot be empty")
        return self.add_variation(_variation_title(text), text)

    def archive_variation(self, variation_id: str) -> None:
        self._require_variation(variation_id).archived = True

    def restore_variation(self, variation_id: str) -> None:
        self._require_variation(variation_id).archived = False

    def delete_variation(self, variation_id: str) -> None:
        self._require_variation(variation_id)
        self._registry.variations.pop(variation_id, None)
        task_registry.cancel_task(self._job_key("variation", variation_id))
        log_event("variation.deleted", variation_id=variation_id)

    def _require_variation(self, variation_id: str) -> Variation:
        variation = self._registry.variations.get(variation_id)
        if variation is None:
            raise ValueError(f"Variation {variation_id} not found")
        return variation

    # Source analysis

    async def analyze_source(self, context: str = "") -> Dict[str, Any]:
        """Describe the uploaded image; failures fall back to the default analysis."""
        image_url = self._source_url()
        generation = self._registry.generation
        job = self._job_key("analyze", "source")
        op_status.set_phase(job, "Analyzing")
        try:
            try:
                raw = await self._bounded(self._service.analyze(image_url, worker=job, context=context))
            except asyncio.TimeoutError:
                log_event("analysis.failed", error="timeout")
                raw = {}
            except Exception as exc:
                log_event("analysis.failed", error=_error_text(exc))
                raw = {}
        finally:
            op_status.clear_phase(job)
        analysis = dict(DEFAULT_ANALYSIS)
        if isinstance(raw, dict):
            analysis.update({k: v for k, v in raw.items() if v not in (None, "")})
        if generation == self._registry.generation:
            self._registry.analysis = analysis
        return analysis

    # Suggestions

    async def suggest_variations(self, context: str = "", count: int = 4) -> List[Variation]:
        """Ask for variation ideas based on the source analysis and add them as idle variations.

        A failed call falls back to a fixed set of lifestyle variations. Ideas that
        arrive after a session reset are discarded.
        """
        image_url = self._source_url()
        analysis = dict(self._registry.analysis) or dict(DEFAULT_ANALYSIS)
        generation = self._registry.generation
        existing = [v.title for v in self._registry.variations.values()]
        raw = await self._suggest(SuggestionKind.VARIATIONS, image_url, analysis, context=context, exclude=existing)
        if generation != self._registry.generation:
            log_event("suggestions.dropped", kind=SuggestionKind.VARIATIONS, reason="session-reset")
            return []
        ideas: List[Tuple[str, str]] = []
        for item in raw or []:
            description = str(item.get("description") or item.get("prompt") or "").strip()
            if description:
                ideas.append((str(item.get("title") or item.get("name") or "").strip(), description))
        if not ideas:
            ideas = fallback_variations(analysis)
        return [self.add_variation(title, description) for title, description in ideas[:max(0, count)]]

    async def suggest_backgrounds(self, branch_id: Optional[str] = None) -> List[Suggestion]:
        return await self._suggest_for_branch(SuggestionKind.BACKGROUNDS, branch_id)

    async def suggest_models(self, branch_id: Optional[str] = None) -> List[Suggestion]:
        return await self._suggest_for_branch(SuggestionKind.MODELS, branch_id)

    def apply_suggestion(self, branch_id: str, source_index: int, suggestion_id: str) -> int:
        """Start a background or model change from an offered suggestion; returns the new node index."""
        suggestion = self._registry.find_suggestion(suggestion_id)
        if suggestion is None:
            raise ValueError(f"Suggestion {suggestion_id} not found")
        if suggestion.kind is SuggestionKind.BACKGROUNDS:
            return self.change_background(branch_id, source_index, suggestion.prompt, suggestion.name)
        if suggestion.kind is SuggestionKind.MODELS:
            return self.change_model(branch_id, source_index, suggestion.prompt, suggestion.name)
        raise ValueError(f"Suggestions of kind '{suggestion.kind.value}' cannot be applied to a branch")

    async def _suggest_for_branch(self, kind: SuggestionKind, branch_id: Optional[str]) -> List[Suggestion]:
        # Suggestions look at the version under the cursor, like the edit they feed.
        branch = self._registry.require_branch(branch_id) if branch_id else self._registry.get_active_branch()
        node = branch.current_node
        image_url = node.image_url if node.status is NodeStatus.COMPLETED and node.image_url else self._source_url()
        offered = list(self._registry.suggestions.get(kind, []))
        generation = self._registry.generation
        raw = await self._suggest(kind, image_url, dict(self._registry.analysis), exclude=[s.name for s in offered])
        if raw is None:
            return []
        if generation != self._registry.generation:
            log_event("suggestions.dropped", kind=kind, reason="session-reset")
            return []
        seen = {s.name.lower() for s in offered}
        fresh: List[Suggestion] = []
        for item in raw:
            name = str(item.get("name") or "").strip() or f"Suggestion {len(offered) + len(fresh) + 1}"
            prompt = str(item.get("prompt") or "").strip()
            if kind is SuggestionKind.MODELS and not prompt:
                prompt = name
            if not prompt or name.lower() in seen:
                continue
            seen.add(name.lower())
            fresh.append(
                Suggestion(
                    kind=kind,
                    name=name,
                    prompt=prompt,
                    description=str(item.get("description") or "").strip(),
                    audience=str(item.get("audience") or "").strip(),
                )
            )
        self._registry.suggestions[kind] = offered + fresh
        log_event("suggestions.added", kind=kind, branch_id=branch.id, count=len(fresh))
        return fresh

    async def _suggest(
        self,
        kind: SuggestionKind,
        image_url: str,
        analysis: Dict[str, Any],
        *,
        context: str = "",
        exclude: Sequence[str] = (),
    ) -> Optional[List[Dict[str, Any]]]:
        job = self._job_key("suggest", kind.value)
        op_status.set_phase(job, f"Suggesting {kind.value}")
        try:
            raw = await self._bounded(
                self._service.suggest(kind, image_url, analysis, worker=job, context=context, exclude=list(exclude))
            )
        except asyncio.TimeoutError:
            log_event("suggestions.failed", kind=kind, error="timeout")
            return None
        except Exception as exc:
            log_event("suggestions.failed", kind=kind, error=_error_text(exc))
            return None
        finally:
            op_status.clear_phase(job)
        if not isinstance(raw, list):
            log_event("suggestions.failed", kind=kind, error="reply is not a list")
            return None
        return [item for item in raw if isinstance(item, dict)]

    # Lifecycle

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> int:
        """Cancel every in-flight job; their slots settle as failed with "cancelled"."""
        cancelled = task_registry.clear_all_tasks(self._job_prefix)
        await self.wait_idle()
        op_status.clear_all(self._job_prefix)
        return cancelled

    # Node jobs

    def _start_node(
        self,
        kind: str,
        branch_id: str,
        source_index: int,
        prompt: str,
        instruction: str,
        options: GenerationOptions,
    ) -> int:
        asyncio.get_running_loop()
        branch = self._registry.require_branch(branch_id)
        if not node_is_ready(branch, source_index):
            raise SourceNotReadyError(f"Version {source_index} of branch {branch_id} is not ready")
        source_url = branch.nodes[source_index].image_url or ""
        node = VersionNode.pending(prompt, source_index)
        index = self._registry.append_node(branch_id, node)
        log_event("node.allocated", branch_id=branch_id, index=index, kind=kind, parent_index=source_index)
        job = self._job_key("node", node.id)
        generation = self._registry.generation

        def _cancelled() -> None:
            current = self._registry.get_branch(branch_id)
            pos = current.index_of(node.id) if current is not None else None
            if current is not None and pos is not None and not current.nodes[pos].is_settled:
                self._settle_node(branch_id, node.id, generation, error="cancelled")

        self._spawn(job, self._run_node_job(job, kind, branch_id, node.id, source_url, instruction, options), _cancelled)
        return index

    async def _run_node_job(
        self,
        job: str,
        kind: str,
        branch_id: str,
        node_id: str,
        source_url: str,
        instruction: str,
        options: GenerationOptions,
    ) -> None:
        generation = self._registry.generation
        op_status.set_phase(job, f"{_PHASES.get(kind, 'Generating')}|{branch_id}")
        await self._notify_node_created(branch_id, node_id)
        try:
            try:
                result = await self._bounded(self._service.generate(source_url, instruction, options, worker=job))
            except asyncio.TimeoutError:
                self._settle_node(branch_id, node_id, generation, error="timeout")
            except Exception as exc:
                self._settle_node(branch_id, node_id, generation, error=_error_text(exc))
            else:
                if result.ok and result.image_url:
                    self._settle_node(branch_id, node_id, generation, image_url=result.image_url)
                else:
                    self._settle_node(branch_id, node_id, generation, error=_result_error(result))
        finally:
            op_status.clear_phase(job)
        await self._notify_node_settled(branch_id, node_id)

    def _settle_node(
        self,
        branch_id: str,
        node_id: str,
        generation: int,
        *,
        image_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        if generation != self._registry.generation:
            log_event("node.dropped", branch_id=branch_id, node_id=node_id, reason="session-reset")
            return
        index = self._registry.settle_node(branch_id, node_id, image_url=image_url, error=error)
        if index is None:
            log_event("node.dropped", branch_id=branch_id, node_id=node_id, reason="slot-removed")
            return
        status = NodeStatus.COMPLETED if image_url else NodeStatus.FAILED
        log_event("node.settled", branch_id=branch_id, index=index, status=status, error=error)
        if status is NodeStatus.FAILED:
            op_status.enqueue_notification(
                f"Generation failed: {error}",
                code=GENERATION_FAILED,
                kind="node",
                entity_id=node_id,
                branch_id=branch_id,
            )

    # Resize jobs

    def _start_resize(self, request: ResizeRequest) -> bool:
        asyncio.get_running_loop()
        branch = self._registry.require_branch(request.branch_id)
        size = request.size_label
        existing = branch.resized_variants.get(size)
        if existing is not None and existing.status is VariantStatus.RESIZING:
            log_event("resize.ignored", branch_id=branch.id, size=size)
            return False
        width, height = request.width, request.height
        if not width or not height:
            known = self._ad_sizes.get(size)
            if known is None:
                raise ValueError(f"Unknown ad size '{size}'")
            width, height = known.width, known.height
        source = branch.current_node
        if source.status is not NodeStatus.COMPLETED or not source.image_url:
            raise SourceNotReadyError(f"Version {branch.cursor} of branch {branch.id} is not ready")
        variant = ResizedVariant(
            size=size,
            status=VariantStatus.RESIZING,
            width=int(width),
            height=int(height),
            source_node_id=source.id,
        )
        branch.resized_variants[size] = variant
        log_event("resize.started", branch_id=branch.id, size=size, width=width, height=height)
        job = self._job_key("resize", f"{branch.id}:{size}")
        branch_id = branch.id

        def _cancelled() -> None:
            if variant.status is VariantStatus.RESIZING:
                self._settle_variant(branch_id, variant, error="cancelled")

        self._spawn(job, self._run_resize_job(job, branch_id, variant, source.image_url), _cancelled)
        return True

    async def _run_resize_job(self, job: str, branch_id: str, variant: ResizedVariant, source_url: str) -> None:
        op_status.set_phase(job, f"Resizing {variant.size}|{branch_id}")
        options = self._options(aspect_ratio=variant.size, is_edit=False)
        try:
            try:
                result = await self._bounded(
                    self._service.resize(source_url, variant.width, variant.height, options, worker=job)
                )
            except asyncio.TimeoutError:
                self._settle_variant(branch_id, variant, error="timeout")
            except Exception as exc:
                self._settle_variant(branch_id, variant, error=_error_text(exc))
            else:
                if result.ok and result.image_url:
                    self._settle_variant(branch_id, variant, image_url=result.image_url)
                else:
                    self._settle_variant(branch_id, variant, error=_result_error(result))
        finally:
            op_status.clear_phase(job)
        await self._notify_variant_settled(branch_id, variant)

    def _settle_variant(
        self,
        branch_id: str,
        variant: ResizedVariant,
        *,
        image_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        branch = self._registry.get_branch(branch_id)
        if branch is None or branch.resized_variants.get(variant.size) is not variant:
            log_event("resize.dropped", branch_id=branch_id, size=variant.size)
            return
        if image_url:
            variant.status = VariantStatus.COMPLETED
            variant.image_url = image_url
            variant.error = None
        else:
            variant.status = VariantStatus.ERROR
            variant.image_url = None
            variant.error = error or "no image returned"
            op_status.enqueue_notification(
                f"Resize to {variant.size} failed: {variant.error}",
                code=RESIZE_FAILED,
                kind="variant",
                entity_id=variant.size,
                branch_id=branch_id,
            )
        log_event("resize.settled", branch_id=branch_id, size=variant.size, status=variant.status, error=variant.error)

    # Variation jobs

    def _start_variation(self, variation_id: str) -> bool:
        asyncio.get_running_loop()
        variation = self._require_variation(variation_id)
        if variation.status is VariationStatus.GENERATING:
            return False
        source_url = self._source_url()
        variation.status = VariationStatus.GENERATING
        variation.error = None
        job = self._job_key("variation", variation_id)

        def _cancelled() -> None:
            if variation.status is VariationStatus.GENERATING:
                self._settle_variation(variation, error="cancelled")

        self._spawn(job, self._run_variation_job(job, variation, source_url), _cancelled)
        return True

    async def _run_variation_job(self, job: str, variation: Variation, source_url: str) -> None:
        op_status.set_phase(job, f"Generating variation|{variation.title}")
        options = self._options(is_edit=False)
        image_url: Optional[str] = None
        error: Optional[str] = None
        try:
            try:
                result = await self._bounded(
                    self._service.generate(source_url, variation.description, options, worker=job)
                )
            except asyncio.TimeoutError:
                error = "timeout"
            except Exception as exc:
                error = _error_text(exc)
            else:
                if result.ok and result.image_url:
                    image_url = result.image_url
                else:
                    error = _result_error(result)
            self._settle_variation(variation, image_url=image_url, error=error)
        finally:
            op_status.clear_phase(job)

    def _settle_variation(self, variation: Variation, *, image_url: Optional[str] = None, error: Optional[str] = None) -> None:
        if self._registry.variations.get(variation.id) is not variation:
            log_event("variation.dropped", variation_id=variation.id)
            return
        if image_url:
            variation.status = VariationStatus.COMPLETED
            variation.image_url = image_url
        else:
            variation.status = VariationStatus.ERROR
            variation.error = error or "no image returned"
            op_status.enqueue_notification(
                f"Variation '{variation.title}' failed: {variation.error}",
                code=GENERATION_FAILED,
                kind="variation",
                entity_id=variation.id,
            )
        log_event("variation.settled", variation_id=variation.id, status=variation.status, error=variation.error)

    # Helpers

    def _source_url(self) -> str:
        source = self._registry.source
        if source is not None and source.url:
            return source.url
        root = self._registry.root_branch()
        if root is None:
            raise SourceNotReadyError("Upload an image first")
        return root.root_image_url

    def _options(self, **overrides: Any) -> GenerationOptions:
        source = self._registry.source
        aspect = ""
        if source is not None:
            aspect = source.aspect_ratio or source.aspect_ratio_key
        options = GenerationOptions(aspect_ratio=aspect, analysis=dict(self._registry.analysis))
        return replace(options, **overrides) if overrides else options

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        if self._timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    def _job_key(self, kind: str, ident: str) -> str:
        return f"{self._job_prefix}:{kind}:{ident}"

    def _spawn(self, job: str, coro: Coroutine[Any, Any, None], on_cancel: Callable[[], None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks[job] = task
        task_registry.register_task(job, task)

        def _done(finished: asyncio.Task[None]) -> None:
            if self._tasks.get(job) is finished:
                self._tasks.pop(job, None)
            if task_registry.get_task(job) is finished:
                task_registry.remove_task(job)
            # A task cancelled before its first step never reaches its own handlers.
            if finished.cancelled():
                op_status.clear_phase(job)
                on_cancel()

        task.add_done_callback(_done)

    # Listener notifications

    async def _emit(self, event: str, call: Callable[[EngineEventListener], Awaitable[None]], **fields: Any) -> None:
        # Listener errors are logged and skipped; job state never depends on them.
        for listener in list(self._listeners):
            try:
                await call(listener)
            except Exception as exc:
                log_event(
                    "listener.failed",
                    listener_event=event,
                    listener=type(listener).__name__,
                    error=_error_text(exc),
                    **fields,
                )

    async def _notify_node_created(self, branch_id: str, node_id: str) -> None:
        branch = self._registry.get_branch(branch_id)
        index = branch.index_of(node_id) if branch is not None else None
        if branch is None or index is None:
            return
        node = branch.nodes[index]
        await self._emit(
            "node_created",
            lambda listener: listener.on_node_created(branch_id, index, node),
            branch_id=branch_id,
            node_id=node_id,
        )

    async def _notify_node_settled(self, branch_id: str, node_id: str) -> None:
        branch = self._registry.get_branch(branch_id)
        index = branch.index_of(node_id) if branch is not None else None
        if branch is None or index is None:
            return
        node = branch.nodes[index]
        await self._emit(
            "node_settled",
            lambda listener: listener.on_node_settled(branch_id, index, node),
            branch_id=branch_id,
            node_id=node_id,
        )

    async def _notify_variant_settled(self, branch_id: str, variant: ResizedVariant) -> None:
        branch = self._registry.get_branch(branch_id)
        if branch is None or branch.resized_variants.get(variant.size) is not variant:
            return
        await self._emit(
            "variant_settled",
            lambda listener: listener.on_variant_settled(branch_id, variant),
            branch_id=branch_id,
            size=variant.size,
        )
