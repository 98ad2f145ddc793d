# statickit/export.py
from __future__ import annotations

from pathlib import Path, PurePosixPath
import re
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

from .interfaces import Branch, VariantStatus, VariationStatus
from .logging import log_event
from .or_client import decode_data_url
from .registry import ROOT_BRANCH_ID, BranchRegistry


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")

_EXTENSIONS: Dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/webp": ".webp",
    "image/gif": ".gif",
}
DEFAULT_EXTENSION = ".png"


def safe_name(text: str, fallback: str = "image") -> str:
    """Filesystem-safe stem: "Beach v2 / 9:16" -> "Beach_v2_9x16"."""
    cleaned = _UNSAFE.sub("_", (text or "").replace(":", "x")).strip("._")
    return cleaned or fallback


def extension_for(url: str) -> str:
    """File extension for an image url: from the data-URL mime type, else the remote path suffix."""
    if url.startswith("data:"):
        mime = url[5:].split(",", 1)[0].split(";", 1)[0].strip().lower()
        return _EXTENSIONS.get(mime, DEFAULT_EXTENSION)
    suffix = PurePosixPath(urlparse(url).path).suffix.lower()
    if suffix == ".jpeg":
        return ".jpg"
    return suffix if suffix in _EXTENSIONS.values() else DEFAULT_EXTENSION


def unique_stem(stem: str, used: Set[str]) -> str:
    """Return stem, or stem_2, stem_3, ... whichever is not yet in used; records the result."""
    candidate = stem
    counter = 2
    while candidate in used:
        candidate = f"{stem}_{counter}"
        counter += 1
    used.add(candidate)
    return candidate


def _write_image(url: str, target: Path, remote: List[str]) -> Optional[Path]:
    if not url.startswith("data:"):
        remote.append(f"{target.name}\t{url}")
        return None
    _, raw = decode_data_url(url)
    target.write_bytes(raw)
    return target


def _branch_files(branch: Branch, title: str) -> List[Tuple[str, str]]:
    files: List[Tuple[str, str]] = []
    for idx, node in enumerate(branch.nodes):
        if node.image_url:
            files.append((f"{title}_v{idx + 1}", node.image_url))
    for size, variant in branch.resized_variants.items():
        if variant.status is VariantStatus.COMPLETED and variant.image_url:
            files.append((f"{title}_{safe_name(size)}", variant.image_url))
    return files


def _write_all(files: List[Tuple[str, str]], out_dir: Path, manifest_stem: str) -> List[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    remote: List[str] = []
    names: Set[str] = {f"{manifest_stem}_remote"}
    for stem, url in files:
        name = unique_stem(stem, names) + extension_for(url)
        path = _write_image(url, out_dir / name, remote)
        if path is not None:
            written.append(path)
    # Remote URLs are listed, not fetched.
    if remote:
        manifest = out_dir / f"{manifest_stem}_remote.txt"
        manifest.write_text("\n".join(remote) + "\n", encoding="utf-8")
        written.append(manifest)
    return written


def export_branch(branch: Branch, out_dir: Path | str, title: str = "") -> List[Path]:
    """Write every version as {title}_v{n} and every finished resize as {title}_{size}.

    The extension follows the image's mime type (.png when unknown).
    """
    stem = safe_name(title or branch.name)
    written = _write_all(_branch_files(branch, stem), Path(out_dir), stem)
    log_event("export.branch", branch_id=branch.id, files=len(written))
    return written


def export_session(registry: BranchRegistry, out_dir: Path | str, title: str = "statickit") -> List[Path]:
    stem = safe_name(title)
    files: List[Tuple[str, str]] = []
    branch_stems: Set[str] = {stem}
    for branch in registry.branches:
        if branch.id == ROOT_BRANCH_ID:
            branch_title = stem
        else:
            # Branches promoted from the same version share a default name.
            branch_title = unique_stem(f"{stem}_{safe_name(branch.name, branch.id)}", branch_stems)
        files.extend(_branch_files(branch, branch_title))
    variation_stems: Set[str] = set()
    for variation in registry.variations.values():
        if variation.status is VariationStatus.COMPLETED and variation.image_url:
            name = unique_stem(f"{stem}_{safe_name(variation.title, variation.id)}", variation_stems)
            files.append((name, variation.image_url))
    written = _write_all(files, Path(out_dir), stem)
    log_event("export.session", branches=len(registry.branches), files=len(written))
    return written
