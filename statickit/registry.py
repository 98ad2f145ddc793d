# statickit/registry.py
from __future__ import annotations

from dataclasses import replace
import uuid
from typing import Any, Dict, List, Optional

from .errors import CannotDeleteError
from .interfaces import (
    Branch,
    CompareSession,
    NodeStatus,
    ResizedVariant,
    SourceImage,
    Suggestion,
    SuggestionKind,
    VariantStatus,
    Variation,
    VersionNode,
)
from .logging import log_event


ROOT_BRANCH_ID = "original"

# Variant states that count as "existing" output for deletion guards.
_LIVE_VARIANT_STATES = {VariantStatus.RESIZING, VariantStatus.COMPLETED}


class BranchRegistry:
    """Single source of truth for branches, their version nodes and the active selection.

    Every mutation goes through a method here so the invariants hold between
    event-loop turns: each branch has at least its completed root node, the
    cursor is a valid index, and the root branch exists while the session does.
    """

    def __init__(self) -> None:
        self._branches: Dict[str, Branch] = {}
        self._active_branch_id: Optional[str] = None
        self.variations: Dict[str, Variation] = {}
        self.source: Optional[SourceImage] = None
        self.analysis: Dict[str, Any] = {}
        self.suggestions: Dict[SuggestionKind, List[Suggestion]] = {}
        self.compare: Optional[CompareSession] = None
        self.generation = 0  # bumped on reset so stale jobs can tell

    # Queries

    @property
    def branches(self) -> List[Branch]:
        return list(self._branches.values())

    @property
    def active_branch_id(self) -> Optional[str]:
        return self._active_branch_id

    def has_branches(self) -> bool:
        return bool(self._branches)

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        return self._branches.get(branch_id)

    def find_suggestion(self, suggestion_id: str) -> Optional[Suggestion]:
        for offered in self.suggestions.values():
            for suggestion in offered:
                if suggestion.id == suggestion_id:
                    return suggestion
        return None

    def require_branch(self, branch_id: str) -> Branch:
        branch = self._branches.get(branch_id)
        if branch is None:
            raise ValueError(f"Branch {branch_id} not found")
        return branch

    def root_branch(self) -> Optional[Branch]:
        return self._branches.get(ROOT_BRANCH_ID)

    def get_active_branch(self) -> Branch:
        branch = self._branches.get(self._active_branch_id or "")
        if branch is not None:
            return branch
        # Stale id: fall back to the first branch rather than failing.
        for first in self._branches.values():
            return first
        raise LookupError("No branches exist; upload an image first")

    # Branch lifecycle

    def create_branch(self, source_image_url: str, source_label: str = "") -> str:
        if not source_image_url:
            raise ValueError("A branch needs a source image url")
        if ROOT_BRANCH_ID not in self._branches:
            branch_id = ROOT_BRANCH_ID
            name = source_label or "Original"
        else:
            branch_id = uuid.uuid4().hex[:12]
            name = source_label or f"Version {len(self._branches) + 1}"
        branch = Branch(
            id=branch_id,
            name=name,
            root_image_url=source_image_url,
            nodes=[VersionNode.root(source_image_url)],
        )
        self._branches[branch_id] = branch
        self._active_branch_id = branch_id
        self.compare = None
        log_event("branch.created", branch_id=branch_id, name=name)
        return branch_id

    def set_active_branch(self, branch_id: str) -> None:
        self.require_branch(branch_id)
        if self._active_branch_id != branch_id:
            self.compare = None
        self._active_branch_id = branch_id

    def delete_branch(self, branch_id: str) -> None:
        self.require_branch(branch_id)
        if branch_id == ROOT_BRANCH_ID:
            if not can_delete_root(self):
                raise CannotDeleteError("The original cannot be deleted while other work depends on it")
            self.reset()
            return
        self._branches.pop(branch_id)
        if self.compare is not None and self.compare.branch_id == branch_id:
            self.compare = None
        if self._active_branch_id == branch_id:
            self._active_branch_id = ROOT_BRANCH_ID if ROOT_BRANCH_ID in self._branches else next(iter(self._branches), None)
        log_event("branch.deleted", branch_id=branch_id)

    def reset(self) -> None:
        self._branches.clear()
        self._active_branch_id = None
        self.variations.clear()
        self.source = None
        self.analysis = {}
        self.suggestions = {}
        self.compare = None
        self.generation += 1
        log_event("session.reset", generation=self.generation)

    # Node slots

    def append_node(self, branch_id: str, node: VersionNode) -> int:
        branch = self.require_branch(branch_id)
        branch.nodes.append(node)
        return len(branch.nodes) - 1

    def settle_node(
        self,
        branch_id: str,
        node_id: str,
        *,
        image_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[int]:
        """Settle a pending node by id; returns its current index, or None if it is gone."""
        branch = self._branches.get(branch_id)
        if branch is None:
            return None
        index = branch.index_of(node_id)
        if index is None:
            return None
        node = branch.nodes[index]
        if node.is_settled:
            return None
        if image_url:
            branch.nodes[index] = node.completed(image_url)
        else:
            branch.nodes[index] = node.failed(error or "no image returned")
        return index

    def remove_node(self, branch_id: str, index: int) -> VersionNode:
        """Splice a non-root node out and re-point references so none dangle.

        Children of the removed node inherit its parent; any reference past the
        removed slot shifts down by one. Node ids are kept, so in-flight jobs
        still find their slot.
        """
        branch = self.require_branch(branch_id)
        if index <= 0 or index >= len(branch.nodes):
            raise IndexError(f"Branch {branch_id} has no removable node at index {index}")
        removed = branch.nodes.pop(index)
        for pos in range(1, len(branch.nodes)):
            node = branch.nodes[pos]
            parent = node.parent_index
            if parent == index:
                branch.nodes[pos] = replace(node, parent_index=removed.parent_index)
            elif parent > index:
                branch.nodes[pos] = replace(node, parent_index=parent - 1)
        return removed

    def set_cursor(self, branch_id: str, index: int) -> None:
        branch = self.require_branch(branch_id)
        branch.cursor = max(0, min(index, len(branch.nodes) - 1))

    # Resized variants

    def live_variants(self, branch: Branch) -> List[ResizedVariant]:
        return [v for v in branch.resized_variants.values() if v.status in _LIVE_VARIANT_STATES]


def can_delete_root(registry: BranchRegistry) -> bool:
    """True when removing the original would lose nothing but the upload itself.

    Shared by the delete paths and by any UI affordance that greys out a delete button.
    """
    root = registry.root_branch()
    if root is None:
        return False
    if len(root.nodes) != 1:
        return False
    if registry.live_variants(root):
        return False
    if len(registry.branches) != 1:
        return False
    if registry.variations:
        return False
    return True


def can_delete_branch_root(registry: BranchRegistry, branch: Branch) -> bool:
    if branch.id == ROOT_BRANCH_ID:
        return can_delete_root(registry)
    if len(branch.nodes) != 1:
        return False
    return not registry.live_variants(branch)


def has_pending_work(branch: Branch) -> bool:
    if branch.pending_count():
        return True
    return any(v.status is VariantStatus.RESIZING for v in branch.resized_variants.values())


def node_is_ready(branch: Branch, index: int) -> bool:
    return 0 <= index < len(branch.nodes) and branch.nodes[index].status is NodeStatus.COMPLETED
