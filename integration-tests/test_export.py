from __future__ import annotations

import base64
from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from support import PNG_BYTES, PNG_DATA_URL  # noqa: E402

from statickit.export import export_branch, export_session, extension_for, safe_name  # noqa: E402
from statickit.interfaces import ResizedVariant, VariantStatus, Variation, VariationStatus, VersionNode  # noqa: E402
from statickit.navigation import NavigationController  # noqa: E402
from statickit.registry import ROOT_BRANCH_ID, BranchRegistry  # noqa: E402


def test_safe_name() -> None:
    assert safe_name("Beach v2 / 9:16") == "Beach_v2_9x16"
    assert safe_name("Beach...") == "Beach"
    assert safe_name("///", "fallback") == "fallback"
    assert safe_name("") == "image"


def test_export_branch_writes_versions_and_resizes(tmp_path: Path) -> None:
    registry = BranchRegistry()
    registry.create_branch(PNG_DATA_URL)
    registry.append_node(ROOT_BRANCH_ID, VersionNode.pending("a", 0).completed(PNG_DATA_URL))
    registry.append_node(ROOT_BRANCH_ID, VersionNode.pending("b", 0))
    branch = registry.require_branch(ROOT_BRANCH_ID)
    branch.resized_variants["9:16"] = ResizedVariant("9:16", VariantStatus.COMPLETED, PNG_DATA_URL)
    branch.resized_variants["1:1"] = ResizedVariant("1:1", VariantStatus.RESIZING)

    written = export_branch(branch, tmp_path, "Launch")

    assert [p.name for p in written] == ["Launch_v1.png", "Launch_v2.png", "Launch_9x16.png"]
    assert (tmp_path / "Launch_v2.png").read_bytes() == PNG_BYTES


def test_remote_urls_are_listed_not_fetched(tmp_path: Path) -> None:
    registry = BranchRegistry()
    registry.create_branch(PNG_DATA_URL)
    registry.append_node(
        ROOT_BRANCH_ID,
        VersionNode.pending("a", 0).completed("https://cdn.example.com/result.png"),
    )

    written = export_session(registry, tmp_path / "out", "promo")

    assert [p.name for p in written] == ["promo_v1.png", "promo_remote.txt"]
    manifest = (tmp_path / "out" / "promo_remote.txt").read_text(encoding="utf-8")
    assert manifest == "promo_v2.png\thttps://cdn.example.com/result.png\n"
    assert not (tmp_path / "out" / "promo_v2.png").exists()


def test_export_session_covers_branches_and_variations(tmp_path: Path) -> None:
    registry = BranchRegistry()
    registry.create_branch(PNG_DATA_URL)
    registry.append_node(ROOT_BRANCH_ID, VersionNode.pending("a", 0).completed(PNG_DATA_URL))
    NavigationController(registry).promote(ROOT_BRANCH_ID, 1, "Bright base")
    done = Variation(title="Beach...", description="beach", status=VariationStatus.COMPLETED, image_url=PNG_DATA_URL)
    failed = Variation(title="Snow", description="snow", status=VariationStatus.ERROR, error="boom")
    registry.variations[done.id] = done
    registry.variations[failed.id] = failed

    written = export_session(registry, tmp_path)

    assert sorted(p.name for p in written) == [
        "statickit_Beach.png",
        "statickit_Bright_base_v1.png",
        "statickit_v1.png",
        "statickit_v2.png",
    ]


def test_branches_with_the_same_name_get_distinct_files(tmp_path: Path) -> None:
    registry = BranchRegistry()
    registry.create_branch(PNG_DATA_URL)
    nav = NavigationController(registry)
    nav.promote(ROOT_BRANCH_ID, 0)
    nav.promote(ROOT_BRANCH_ID, 0)
    for title in ("Beach", "Beach"):
        variation = Variation(title=title, description="beach", status=VariationStatus.COMPLETED, image_url=PNG_DATA_URL)
        registry.variations[variation.id] = variation

    written = export_session(registry, tmp_path, "ad")

    names = [p.name for p in written]
    assert names == [
        "ad_v1.png",
        "ad_Original_v1.png",
        "ad_Original_2_v1.png",
        "ad_Beach.png",
        "ad_Beach_2.png",
    ]
    assert len(set(names)) == len(names)
    assert all(p.exists() for p in written)


def test_extension_follows_the_image_type(tmp_path: Path) -> None:
    jpeg_url = "data:image/jpeg;base64," + base64.b64encode(b"\xff\xd8\xff\xe0jpeg").decode("ascii")
    registry = BranchRegistry()
    registry.create_branch(PNG_DATA_URL)
    registry.append_node(ROOT_BRANCH_ID, VersionNode.pending("a", 0).completed(jpeg_url))
    registry.append_node(ROOT_BRANCH_ID, VersionNode.pending("b", 0).completed("https://cdn.example.com/out.webp"))

    written = export_branch(registry.require_branch(ROOT_BRANCH_ID), tmp_path, "Launch")

    assert [p.name for p in written] == ["Launch_v1.png", "Launch_v2.jpg", "Launch_remote.txt"]
    assert (tmp_path / "Launch_v2.jpg").read_bytes() == b"\xff\xd8\xff\xe0jpeg"
    assert (tmp_path / "Launch_remote.txt").read_text(encoding="utf-8") == (
        "Launch_v3.webp\thttps://cdn.example.com/out.webp\n"
    )


def test_extension_for() -> None:
    assert extension_for("data:image/webp;base64,AAAA") == ".webp"
    assert extension_for("data:application/octet-stream;base64,AAAA") == ".png"
    assert extension_for("https://cdn.example.com/a/photo.JPEG?sig=1") == ".jpg"
    assert extension_for("https://cdn.example.com/render") == ".png"
