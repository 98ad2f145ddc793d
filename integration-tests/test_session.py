from __future__ import annotations

from pathlib import Path
import sys
from unittest.mock import patch

import pytest
from PIL import Image

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from support import InstantImageService  # noqa: E402

from statickit import op_status  # noqa: E402
from statickit.__main__ import main  # noqa: E402
from statickit.errors import CannotDeleteError  # noqa: E402
from statickit.interfaces import NodeStatus, VariantStatus  # noqa: E402
from statickit.registry import ROOT_BRANCH_ID  # noqa: E402
from statickit.session import EditorSession  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_status():
    op_status.drain_notifications()
    yield
    op_status.drain_notifications()
    op_status.clear_all()


@pytest.fixture
def ad_image(tmp_path: Path) -> Path:
    path = tmp_path / "spring-ad.png"
    Image.new("RGB", (1080, 1080), (240, 200, 40)).save(path, format="PNG")
    return path


@pytest.mark.asyncio
async def test_upload_edit_resize_export(ad_image: Path, tmp_path: Path) -> None:
    session = EditorSession(InstantImageService(fail_on="REFUSE"), timeout_seconds=0)
    branch_id = await session.upload(ad_image, analyze=True, context="Spring promo")

    assert session.analysis["product"] == "Sneaker"
    assert session.analysis["mood"] == "Not specified"
    assert session.registry.source is not None
    assert session.registry.source.aspect_ratio_key == "1:1"

    orchestrator = session.orchestrator
    assert orchestrator.request_edit(branch_id, 0, "brighter") == 1
    assert orchestrator.request_edit(branch_id, 0, "REFUSE this") == 2
    assert session.is_busy() is True
    await orchestrator.wait_idle()
    assert session.is_busy() is False

    nodes = session.registry.require_branch(branch_id).nodes
    assert nodes[1].status is NodeStatus.COMPLETED
    assert nodes[2].status is NodeStatus.FAILED
    assert nodes[2].error == "refused"

    assert session.navigation.move_cursor(branch_id, "next") is True
    assert orchestrator.request_resize(branch_id, "9:16") is True
    await orchestrator.wait_idle()
    variant = session.registry.require_branch(branch_id).resized_variants["9:16"]
    assert variant.status is VariantStatus.COMPLETED
    assert (variant.width, variant.height) == (1080, 1920)

    written = session.export(tmp_path / "out", "Spring Ad")
    assert sorted(p.name for p in written) == ["Spring_Ad_9x16.png", "Spring_Ad_v1.png", "Spring_Ad_v2.png"]
    for path in written:
        with Image.open(path) as image:
            assert image.format == "PNG"


@pytest.mark.asyncio
async def test_new_upload_resets_session(ad_image: Path) -> None:
    session = EditorSession(InstantImageService(), timeout_seconds=0)
    first = await session.upload(ad_image)
    session.orchestrator.add_variation("Beach", "On a beach")
    generation = session.registry.generation

    second = await session.upload(ad_image)

    assert first == second
    assert session.registry.generation > generation
    assert session.registry.variations == {}
    assert len(session.registry.branches) == 1


@pytest.mark.asyncio
async def test_reset_clears_everything(ad_image: Path) -> None:
    session = EditorSession(InstantImageService(), timeout_seconds=0)
    await session.upload(ad_image)

    await session.reset()

    assert session.registry.has_branches() is False
    assert session.registry.source is None
    assert op_status.get_all_phases() == {}


@pytest.mark.asyncio
async def test_deleting_the_original_resets_the_session(ad_image: Path) -> None:
    session = EditorSession(InstantImageService(), timeout_seconds=0)
    await session.upload(ad_image)
    op_status.set_phase("stale-job", "Editing|original")
    op_status.enqueue_notification("Generation failed: boom", code="generation-failed", kind="node")
    generation = session.registry.generation

    await session.delete_node(ROOT_BRANCH_ID, 0)

    assert session.registry.has_branches() is False
    assert session.registry.source is None
    assert session.registry.generation == generation + 1
    assert op_status.get_all_phases() == {}
    assert op_status.drain_notifications() == []


@pytest.mark.asyncio
async def test_session_delete_node_keeps_guards(ad_image: Path) -> None:
    session = EditorSession(InstantImageService(), timeout_seconds=0)
    branch_id = await session.upload(ad_image)
    session.orchestrator.request_edit(branch_id, 0, "brighter")
    await session.orchestrator.wait_idle()

    with pytest.raises(CannotDeleteError):
        await session.delete_node(ROOT_BRANCH_ID, 0)
    assert len(session.registry.require_branch(branch_id).nodes) == 2

    await session.delete_node(branch_id, 1)
    assert len(session.registry.require_branch(branch_id).nodes) == 1
    with pytest.raises(ValueError):
        await session.delete_node("missing", 0)


@pytest.mark.asyncio
async def test_export_single_branch(ad_image: Path, tmp_path: Path) -> None:
    session = EditorSession(InstantImageService(), timeout_seconds=0)
    branch_id = await session.upload(ad_image)

    written = session.export(tmp_path / "one", "", branch_id=branch_id)
    assert [p.name for p in written] == ["Original_v1.png"]


def test_cli_runs_edits_and_reports_failures(
    ad_image: Path,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    out = tmp_path / "exports"
    argv = [
        str(ad_image),
        "--edit", "brighter",
        "--edit", "REFUSE",
        "--resize", "9:16",
        "--timeout", "0",
        "--out", str(out),
        "--title", "ad",
    ]

    with patch("statickit.session.OpenRouterImageService", lambda: InstantImageService(fail_on="REFUSE")):
        code = main(argv)

    printed = capsys.readouterr().out
    assert code == 1
    assert "v2 completed: brighter" in printed
    assert "v3 failed: REFUSE (refused)" in printed
    assert "9:16 completed" in printed
    assert "[generation-failed]" in printed
    assert sorted(p.name for p in out.iterdir()) == ["ad_9x16.png", "ad_v1.png", "ad_v2.png"]


def test_cli_generates_suggested_variations(
    ad_image: Path,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    out = tmp_path / "exports"
    argv = [str(ad_image), "--variations", "2", "--timeout", "0", "--out", str(out), "--title", "ad"]

    with patch("statickit.session.OpenRouterImageService", lambda: InstantImageService()):
        code = main(argv)

    printed = capsys.readouterr().out
    assert code == 0
    assert "variation 'Beach Day' completed" in printed
    assert sorted(p.name for p in out.iterdir()) == ["ad_Beach_Day.png", "ad_v1.png"]
