"""
Headless driver for the version engine.

Uploads one image, runs the requested edits against the original concurrently,
resizes the newest finished version, optionally generates suggested A/B
variations of the original, and exports everything.

Prerequisites (run from project root):
  - .env with OPENROUTER_API_KEY (and optionally OPENROUTER_BASE_URL)
  - config.yaml with models.generate and models.analyze

Usage:
  python -m statickit photo.png --edit "make it brighter" --resize 9:16 --out exports/
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import List, Optional, Sequence

from dotenv import load_dotenv

from .interfaces import NodeStatus
from .session import EditorSession
from . import op_status


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='statickit', description='Run edits and resizes on an ad image')
    parser.add_argument('image', type=Path, help='Image file to upload as the original')
    parser.add_argument('--edit', action='append', default=[], help='Edit instruction (repeatable; runs concurrently)')
    parser.add_argument('--preset', action='append', default=[], help='Preset id to apply together (one per category)')
    parser.add_argument('--background', default='', help='Background change prompt')
    parser.add_argument('--resize', action='append', default=[], help='Ad size label such as 9:16 (repeatable)')
    parser.add_argument('--variations', type=int, default=0, help='Suggest and generate this many A/B variations')
    parser.add_argument('--analyze', action='store_true', help='Analyze the image first and use it as context')
    parser.add_argument('--context', default='', help='Extra advertiser context for the analysis')
    parser.add_argument('--timeout', type=float, default=None, help='Per-request timeout in seconds (0 disables)')
    parser.add_argument('--out', type=Path, default=Path('exports'), help='Directory for exported images')
    parser.add_argument('--title', default='', help='File name prefix (defaults to the image name)')
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    session = EditorSession(timeout_seconds=args.timeout)
    branch_id = await session.upload(args.image, analyze=args.analyze, context=args.context)
    orchestrator = session.orchestrator

    for instruction in args.edit:
        orchestrator.request_edit(branch_id, 0, instruction)
    if args.preset:
        orchestrator.apply_presets(branch_id, 0, args.preset)
    if args.background:
        orchestrator.change_background(branch_id, 0, args.background)
    await orchestrator.wait_idle()

    branch = session.registry.require_branch(branch_id)
    if args.resize:
        completed = branch.completed_indices()
        session.registry.set_cursor(branch_id, completed[-1])
        for size in args.resize:
            orchestrator.request_resize(branch_id, size)
        await orchestrator.wait_idle()

    if args.variations > 0:
        for variation in await orchestrator.suggest_variations(args.context, count=args.variations):
            orchestrator.generate_variation(variation.id)
        await orchestrator.wait_idle()

    failed = 0
    for idx, node in enumerate(branch.nodes):
        if idx == 0:
            continue
        status = node.status.value
        detail = f" ({node.error})" if node.status is NodeStatus.FAILED else ""
        print(f"v{idx + 1} {status}: {node.prompt}{detail}")
        failed += node.status is NodeStatus.FAILED
    for size, variant in branch.resized_variants.items():
        detail = f" ({variant.error})" if variant.error else ""
        print(f"{size} {variant.status.value}{detail}")
        failed += variant.error is not None
    for variation in session.registry.variations.values():
        detail = f" ({variation.error})" if variation.error else ""
        print(f"variation '{variation.title}' {variation.status.value}{detail}")
        failed += variation.error is not None

    title = args.title or args.image.stem
    written: List[Path] = session.export(args.out, title)
    for path in written:
        print(f"wrote {path}")
    for note in op_status.drain_notifications():
        print(f"[{note.code or 'notice'}] {note.message}")
    return 1 if failed else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = _parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == '__main__':
    raise SystemExit(main())
