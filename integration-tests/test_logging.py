from __future__ import annotations

from pathlib import Path
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from statickit import logging as app_logging  # noqa: E402
from statickit.interfaces import NodeStatus  # noqa: E402


def test_json_safe_shortens_images_and_redacts_secrets() -> None:
    payload = {
        "image": "data:image/png;base64," + "A" * 4000,
        "api_key": "sk-or-secret",
        "status": NodeStatus.FAILED,
        "sizes": list(range(40)),
    }
    safe = app_logging._json_safe(payload)

    assert safe["image"] == "data:image/png;base64,...(4000 chars)"
    assert safe["api_key"] == "***redacted***"
    assert safe["status"] == "failed"
    assert len(safe["sizes"]) == 26
    assert safe["sizes"][-1] == "...(15 more)"


def test_jsonl_logger_writes_lines(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    logger = app_logging.JsonlLogger(path, max_bytes=1024, trim_ratio=0.25, sync_writes=True)
    logger.write({"event": "node.settled", "index": 1})
    logger.close()

    assert path.read_text(encoding="utf-8").strip() == '{"event": "node.settled", "index": 1}'


def test_log_call_wraps_once_and_propagates() -> None:
    @app_logging.log_call
    def divide(a: int, b: int) -> float:
        return a / b

    assert app_logging.log_call(divide) is divide
    assert divide(6, 3) == 2
    with pytest.raises(ZeroDivisionError):
        divide(1, 0)


@pytest.mark.asyncio
async def test_log_call_supports_coroutines() -> None:
    @app_logging.log_call
    async def fetch(x: int) -> int:
        return x * 2

    assert await fetch(4) == 8
