from __future__ import annotations

from pathlib import Path
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from support import ROOT_URL, image_url  # noqa: E402

from statickit import op_status  # noqa: E402
from statickit.errors import CannotDeleteError, NodeInFlightError, SourceNotReadyError  # noqa: E402
from statickit.interfaces import (  # noqa: E402
    NodeStatus,
    ResizedVariant,
    VariantStatus,
    Variation,
    VariationStatus,
    VersionNode,
)
from statickit.navigation import NavigationController  # noqa: E402
from statickit.registry import ROOT_BRANCH_ID, BranchRegistry  # noqa: E402


def _setup(completed: int = 0):
    registry = BranchRegistry()
    registry.create_branch(ROOT_URL)
    for i in range(completed):
        node = VersionNode.pending(f"edit {i + 1}", i).completed(image_url(f"v{i + 1}"))
        registry.append_node(ROOT_BRANCH_ID, node)
    return registry, NavigationController(registry)


def _branch(registry: BranchRegistry):
    return registry.require_branch(ROOT_BRANCH_ID)


def test_move_cursor_clamps_at_both_ends() -> None:
    registry, nav = _setup(completed=2)

    assert nav.move_cursor(ROOT_BRANCH_ID, "prev") is False
    assert nav.move_cursor(ROOT_BRANCH_ID, "next") is True
    assert nav.move_cursor(ROOT_BRANCH_ID, "next") is True
    assert nav.move_cursor(ROOT_BRANCH_ID, "next") is False
    assert _branch(registry).cursor == 2
    with pytest.raises(ValueError):
        nav.move_cursor(ROOT_BRANCH_ID, "sideways")


def test_view_latest_and_current_image() -> None:
    registry, nav = _setup(completed=2)
    assert nav.current_image_url() == ROOT_URL
    assert nav.view_latest(ROOT_BRANCH_ID) == 2
    assert nav.current_image_url(ROOT_BRANCH_ID) == image_url("v2")


def test_edit_navigate_delete_scenario() -> None:
    registry, nav = _setup()
    pending = VersionNode.pending("make it brighter", 0)
    index = registry.append_node(ROOT_BRANCH_ID, pending)
    assert index == 1
    assert _branch(registry).nodes[1].status is NodeStatus.PENDING

    registry.settle_node(ROOT_BRANCH_ID, pending.id, image_url="data:image/png;base64,Qg==")
    assert _branch(registry).nodes[1].status is NodeStatus.COMPLETED

    assert nav.move_cursor(ROOT_BRANCH_ID, "next") is True
    assert _branch(registry).cursor == 1

    nav.delete_node(ROOT_BRANCH_ID, 1)
    assert len(_branch(registry).nodes) == 1
    assert _branch(registry).cursor == 0


def test_pending_node_cannot_be_deleted() -> None:
    registry, nav = _setup()
    registry.append_node(ROOT_BRANCH_ID, VersionNode.pending("in flight", 0))

    with pytest.raises(NodeInFlightError) as excinfo:
        nav.delete_node(ROOT_BRANCH_ID, 1)
    assert excinfo.value.code == "node-in-flight"
    assert len(_branch(registry).nodes) == 2
    registry.set_cursor(ROOT_BRANCH_ID, 1)
    assert nav.can_delete() is False


def test_delete_out_of_range_raises_index_error() -> None:
    _, nav = _setup()
    with pytest.raises(IndexError):
        nav.delete_node(ROOT_BRANCH_ID, 4)


def test_delete_reparents_descendants() -> None:
    registry, nav = _setup(completed=3)
    nav.delete_node(ROOT_BRANCH_ID, 2)

    nodes = _branch(registry).nodes
    assert [n.prompt for n in nodes] == [None, "edit 1", "edit 3"]
    assert nodes[2].parent_index == 1
    assert _branch(registry).cursor == 1


def test_dismiss_failed_returns_cursor_to_parent() -> None:
    registry, nav = _setup(completed=2)
    failed = VersionNode.pending("broken", 1).failed("generation-failed")
    registry.append_node(ROOT_BRANCH_ID, failed)
    registry.set_cursor(ROOT_BRANCH_ID, 3)

    assert nav.dismiss_failed(ROOT_BRANCH_ID, 3) == 1
    assert len(_branch(registry).nodes) == 3
    with pytest.raises(ValueError):
        nav.dismiss_failed(ROOT_BRANCH_ID, 2)


def test_root_delete_rules() -> None:
    registry, nav = _setup()
    assert nav.can_delete() is True

    variation = Variation(title="Beach", description="On a beach")
    registry.variations[variation.id] = variation
    with pytest.raises(CannotDeleteError):
        nav.delete_node(ROOT_BRANCH_ID, 0)
    assert nav.can_delete() is False

    registry.variations.clear()
    op_status.set_phase("gen-x:analyze:source", "Analyzing")
    op_status.enqueue_notification("Generation failed: boom", code="generation-failed", kind="node")
    nav.delete_node(ROOT_BRANCH_ID, 0)
    assert registry.has_branches() is False
    assert nav.current_image_url() is None
    assert op_status.get_all_phases() == {}
    assert op_status.drain_notifications() == []


def test_root_with_history_or_resizes_is_protected() -> None:
    registry, nav = _setup(completed=1)
    with pytest.raises(CannotDeleteError):
        nav.delete_node(ROOT_BRANCH_ID, 0)

    registry2, nav2 = _setup()
    _branch(registry2).resized_variants["1:1"] = ResizedVariant("1:1", VariantStatus.RESIZING)
    with pytest.raises(CannotDeleteError):
        nav2.delete_node(ROOT_BRANCH_ID, 0)


def test_deleting_a_promoted_branch_root_removes_the_branch() -> None:
    registry, nav = _setup(completed=1)
    promoted = nav.promote(ROOT_BRANCH_ID, 1, "Bright base")

    branch = registry.require_branch(promoted)
    assert branch.name == "Bright base"
    assert branch.root_image_url == image_url("v1")
    assert registry.active_branch_id == promoted

    nav.delete_node(promoted, 0)
    assert registry.get_branch(promoted) is None
    assert registry.active_branch_id == ROOT_BRANCH_ID


def test_promote_requires_completed_node() -> None:
    registry, nav = _setup()
    registry.append_node(ROOT_BRANCH_ID, VersionNode.pending("wip", 0))
    with pytest.raises(SourceNotReadyError):
        nav.promote(ROOT_BRANCH_ID, 1)


def test_compare_scenario() -> None:
    registry, nav = _setup(completed=2)
    registry.set_cursor(ROOT_BRANCH_ID, 1)

    session = nav.enter_compare(ROOT_BRANCH_ID)
    assert session is not None
    assert (session.left_index, session.right_index) == (1, 2)

    assert nav.select_compare_right(1) is False
    assert nav.compare is not None and nav.compare.right_index == 2

    nav.delete_node(ROOT_BRANCH_ID, 2)
    assert nav.compare is None


def test_compare_picks_previous_when_next_missing() -> None:
    registry, nav = _setup(completed=2)
    registry.set_cursor(ROOT_BRANCH_ID, 2)

    session = nav.enter_compare()
    assert session is not None
    assert (session.left_index, session.right_index) == (2, 1)
    assert nav.select_compare_right(0) is True
    assert nav.select_compare_right(9) is False
    assert session.right_index == 0


def test_compare_requires_two_completed_nodes() -> None:
    registry, nav = _setup()
    registry.append_node(ROOT_BRANCH_ID, VersionNode.pending("wip", 0))
    assert nav.enter_compare(ROOT_BRANCH_ID) is None
    assert nav.compare is None
    assert nav.select_compare_right(1) is False


def test_compare_indices_shift_when_unrelated_node_deleted() -> None:
    registry, nav = _setup(completed=3)
    registry.set_cursor(ROOT_BRANCH_ID, 2)
    session = nav.enter_compare(ROOT_BRANCH_ID)
    assert session is not None and (session.left_index, session.right_index) == (2, 3)

    nav.delete_node(ROOT_BRANCH_ID, 1)
    assert nav.compare is session
    assert (session.left_index, session.right_index) == (1, 2)

    nav.exit_compare()
    assert nav.compare is None


def test_switching_branch_exits_compare() -> None:
    registry, nav = _setup(completed=1)
    other = registry.create_branch(image_url("other"), "Other")
    nav.set_active_branch(ROOT_BRANCH_ID)
    assert nav.enter_compare(ROOT_BRANCH_ID) is not None

    nav.set_active_branch(other)
    assert nav.compare is None


def test_file_counts() -> None:
    registry, nav = _setup(completed=2)
    registry.append_node(ROOT_BRANCH_ID, VersionNode.pending("wip", 0))
    branch = _branch(registry)
    branch.resized_variants["9:16"] = ResizedVariant("9:16", VariantStatus.COMPLETED, image_url("tall"))
    branch.resized_variants["1:1"] = ResizedVariant("1:1", VariantStatus.ERROR, error="boom")
    assert nav.file_count(ROOT_BRANCH_ID) == 4

    nav.promote(ROOT_BRANCH_ID, 2)
    done = Variation(title="Beach", description="beach", status=VariationStatus.COMPLETED, image_url=image_url("b"))
    idle = Variation(title="Snow", description="snow")
    registry.variations[done.id] = done
    registry.variations[idle.id] = idle
    assert nav.total_file_count() == 6


def test_promote_variation_creates_branch() -> None:
    registry, nav = _setup()
    done = Variation(title="Beach", description="beach", status=VariationStatus.COMPLETED, image_url=image_url("b"))
    idle = Variation(title="Snow", description="snow")
    registry.variations[done.id] = done
    registry.variations[idle.id] = idle

    branch_id = nav.promote_variation(done.id)
    assert registry.require_branch(branch_id).name == "Beach"
    with pytest.raises(SourceNotReadyError):
        nav.promote_variation(idle.id)
    with pytest.raises(ValueError):
        nav.promote_variation("missing")
