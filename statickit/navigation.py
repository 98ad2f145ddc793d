# statickit/navigation.py
from __future__ import annotations

from typing import Optional

from .errors import CannotDeleteError, NodeInFlightError, SourceNotReadyError
from .interfaces import Branch, CompareSession, NodeStatus, VariantStatus, VariationStatus, VersionNode
from .logging import log_event
from .registry import BranchRegistry, can_delete_branch_root, node_is_ready
from . import op_status


class NavigationController:
    """Cursor movement, deletion and the two-sided compare session.

    All operations finish within one event-loop turn; none of them await.
    """

    def __init__(self, registry: BranchRegistry) -> None:
        self._registry = registry

    # Cursor

    def move_cursor(self, branch_id: str, direction: str) -> bool:
        branch = self._registry.require_branch(branch_id)
        if direction == "prev":
            target = branch.cursor - 1
        elif direction == "next":
            target = branch.cursor + 1
        else:
            raise ValueError(f"Unknown direction '{direction}'")
        if target < 0 or target >= len(branch.nodes):
            return False
        branch.cursor = target
        return True

    def view_latest(self, branch_id: str) -> int:
        branch = self._registry.require_branch(branch_id)
        branch.cursor = len(branch.nodes) - 1
        return branch.cursor

    def set_active_branch(self, branch_id: str) -> None:
        self._registry.set_active_branch(branch_id)

    # Deletion

    def delete_node(self, branch_id: str, index: int) -> None:
        branch = self._registry.require_branch(branch_id)
        node = branch.node(index)
        if index == 0:
            self._delete_branch_root(branch)
            return
        if node.status is NodeStatus.PENDING:
            raise NodeInFlightError(f"Version {index} of branch {branch_id} is still generating")
        self._splice(branch, index)
        self._registry.set_cursor(branch_id, max(0, index - 1))

    def dismiss_failed(self, branch_id: str, index: int) -> int:
        """Discard a failed version and return the cursor to its parent."""
        branch = self._registry.require_branch(branch_id)
        node = branch.node(index)
        if node.status is not NodeStatus.FAILED:
            raise ValueError(f"Version {index} of branch {branch_id} has not failed")
        self._splice(branch, index)
        # Parents always precede their children, so the splice does not move it.
        self._registry.set_cursor(branch_id, max(0, node.parent_index))
        return branch.cursor

    def _delete_branch_root(self, branch: Branch) -> None:
        if not can_delete_branch_root(self._registry, branch):
            raise CannotDeleteError(f"The root of branch {branch.id} is still in use")
        self._registry.delete_branch(branch.id)
        if not self._registry.has_branches():
            # Deleting the original ends the session.
            op_status.clear_all()

    def _splice(self, branch: Branch, index: int) -> VersionNode:
        compare = self._registry.compare
        if compare is not None and compare.branch_id == branch.id:
            if index in (compare.left_index, compare.right_index):
                self._registry.compare = None
            else:
                if compare.left_index > index:
                    compare.left_index -= 1
                if compare.right_index > index:
                    compare.right_index -= 1
        removed = self._registry.remove_node(branch.id, index)
        log_event("node.deleted", branch_id=branch.id, index=index, status=removed.status)
        return removed

    # Comparison

    @property
    def compare(self) -> Optional[CompareSession]:
        return self._registry.compare

    def enter_compare(self, branch_id: Optional[str] = None) -> Optional[CompareSession]:
        branch = self._registry.require_branch(branch_id) if branch_id else self._registry.get_active_branch()
        completed = branch.completed_indices()
        left = branch.cursor
        if len(completed) < 2 or not node_is_ready(branch, left):
            return None
        if node_is_ready(branch, left + 1):
            right = left + 1
        else:
            earlier = [idx for idx in completed if idx < left]
            right = earlier[-1] if earlier else next(idx for idx in completed if idx != left)
        self._registry.set_active_branch(branch.id)
        session = CompareSession(branch_id=branch.id, left_index=left, right_index=right)
        self._registry.compare = session
        return session

    def select_compare_right(self, index: int) -> bool:
        session = self._registry.compare
        if session is None:
            return False
        branch = self._registry.get_branch(session.branch_id)
        if branch is None or index == session.left_index or not node_is_ready(branch, index):
            return False
        session.right_index = index
        return True

    def exit_compare(self) -> None:
        self._registry.compare = None

    # Snapshots

    def promote(self, branch_id: str, index: int, label: str = "") -> str:
        """Start a new branch whose root is a completed version of another branch."""
        branch = self._registry.require_branch(branch_id)
        if not node_is_ready(branch, index):
            raise SourceNotReadyError(f"Version {index} of branch {branch_id} is not ready")
        node = branch.nodes[index]
        name = label or (f"{branch.name} v{index + 1}" if index else branch.name)
        new_id = self._registry.create_branch(node.image_url or "", name)
        log_event("branch.promoted", source_branch_id=branch_id, index=index, branch_id=new_id)
        return new_id

    def promote_variation(self, variation_id: str) -> str:
        variation = self._registry.variations.get(variation_id)
        if variation is None:
            raise ValueError(f"Variation {variation_id} not found")
        if variation.status is not VariationStatus.COMPLETED or not variation.image_url:
            raise SourceNotReadyError(f"Variation {variation_id} has no image yet")
        return self._registry.create_branch(variation.image_url, variation.title)

    # Derived views

    def current_image_url(self, branch_id: Optional[str] = None) -> Optional[str]:
        if not self._registry.has_branches():
            return None
        branch = self._registry.require_branch(branch_id) if branch_id else self._registry.get_active_branch()
        return branch.current_node.image_url

    def can_delete(self, branch_id: Optional[str] = None) -> bool:
        """Whether the version under the cursor may be deleted right now."""
        if not self._registry.has_branches():
            return False
        branch = self._registry.require_branch(branch_id) if branch_id else self._registry.get_active_branch()
        if branch.cursor == 0:
            return can_delete_branch_root(self._registry, branch)
        return branch.current_node.status is not NodeStatus.PENDING

    def file_count(self, branch_id: str) -> int:
        branch = self._registry.require_branch(branch_id)
        versions = sum(1 for node in branch.nodes if node.image_url)
        resizes = sum(1 for v in branch.resized_variants.values() if v.status is VariantStatus.COMPLETED)
        return versions + resizes

    def total_file_count(self) -> int:
        # The upload itself is node 0 of the root branch.
        total = sum(self.file_count(branch.id) for branch in self._registry.branches)
        total += sum(
            1 for v in self._registry.variations.values()
            if v.status is VariationStatus.COMPLETED and v.image_url
        )
        return total
