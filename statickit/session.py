# statickit/session.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import CannotDeleteError
from .export import export_branch, export_session
from .interfaces import ImageGenerationService, SourceImage
from .logging import log_event
from .navigation import NavigationController
from .orchestrator import GenerationOrchestrator
from .registry import ROOT_BRANCH_ID, BranchRegistry, can_delete_root, has_pending_work
from .services import OpenRouterImageService, load_image_source
from . import op_status


class EditorSession:
    """One editing session: the registry plus the two controllers that mutate it."""

    def __init__(
        self,
        service: Optional[ImageGenerationService] = None,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.registry = BranchRegistry()
        self.service: ImageGenerationService = service or OpenRouterImageService()
        self.orchestrator = GenerationOrchestrator(self.registry, self.service, timeout_seconds=timeout_seconds)
        self.navigation = NavigationController(self.registry)

    async def upload(
        self,
        path: Union[str, Path],
        *,
        analyze: bool = False,
        context: str = "",
    ) -> str:
        source = await load_image_source(path)
        return await self.start(source, analyze=analyze, context=context)

    async def start(self, source: SourceImage, *, analyze: bool = False, context: str = "") -> str:
        """Replace whatever is open with a fresh root branch for this source image."""
        if self.registry.has_branches():
            await self.reset()
        self.registry.source = source
        branch_id = self.registry.create_branch(source.url, "Original")
        log_event("session.started", filename=source.filename, aspect_ratio=source.aspect_ratio_key)
        if analyze:
            await self.orchestrator.analyze_source(context)
        return branch_id

    async def reset(self) -> None:
        await self.orchestrator.shutdown()
        self.registry.reset()
        op_status.clear_all()

    async def delete_node(self, branch_id: str, index: int) -> None:
        """Delete one version. Removing a deletable original resets the whole session."""
        self.registry.require_branch(branch_id)
        if branch_id == ROOT_BRANCH_ID and index == 0:
            if not can_delete_root(self.registry):
                raise CannotDeleteError("The original cannot be deleted while other work depends on it")
            await self.reset()
            return
        self.navigation.delete_node(branch_id, index)

    def is_busy(self) -> bool:
        return any(has_pending_work(branch) for branch in self.registry.branches)

    @property
    def analysis(self) -> Dict[str, Any]:
        return dict(self.registry.analysis)

    def export(self, out_dir: Union[str, Path], title: str = "statickit", branch_id: str = "") -> List[Path]:
        if branch_id:
            return export_branch(self.registry.require_branch(branch_id), out_dir, title)
        return export_session(self.registry, out_dir, title)
