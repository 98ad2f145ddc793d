"""Structured JSONL logging for engine lifecycle events and selective call tracing."""
from __future__ import annotations

import atexit
import functools
import inspect
import json
import os
import queue
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping
from uuid import uuid4

__all__ = [
    "JsonlLogger",
    "log_event",
    "log_call",
    "logging_enabled",
]

# ---- Paths & limits --------------------------------------------------------

_LOG_DIR = Path(os.getenv("APP_LOG_DIR", "logs"))
_EVENT_LOG_PATH = Path(os.getenv("ENGINE_EVENT_LOG", _LOG_DIR / "engine_events.jsonl"))
_CALL_LOG_PATH = Path(os.getenv("CALL_LOG_FILE", _LOG_DIR / "calls.jsonl"))
_LOGGING_ENABLED = os.getenv("APP_ENABLE_JSONL_LOGS", "").strip().lower() in {"1", "true", "yes", "on"}

_EVENT_LOG_MAX_BYTES = 10 * 1024 * 1024
_CALL_LOG_MAX_BYTES = 50 * 1024 * 1024
_TRIM_RATIO = 0.25  # remove oldest 25% when limit is reached


# ---- JSON helpers ---------------------------------------------------------

_SENSITIVE_KEYS = {"apikey", "api_key", "token", "secret", "password", "authorization"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_default(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    return repr(value)


def _truncate_string(text: str, limit: int = 512) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _json_safe(payload: Any, *, depth: int = 0) -> Any:
    if depth > 3:
        return "...(depth-limit)"

    if isinstance(payload, str):
        # Image payloads are data URLs; keep only the header.
        if payload.startswith("data:") and "," in payload:
            header, body = payload.split(",", 1)
            return f"{header},...({len(body)} chars)"
        return _truncate_string(payload)

    if isinstance(payload, (int, float, bool)) or payload is None:
        return payload

    if hasattr(payload, "value") and isinstance(getattr(payload, "value"), str):
        return payload.value

    if isinstance(payload, Mapping):
        result: Dict[str, Any] = {}
        for key, value in payload.items():
            key_str = str(key)
            if key_str.lower() in _SENSITIVE_KEYS:
                result[key_str] = "***redacted***"
            else:
                result[_truncate_string(key_str)] = _json_safe(value, depth=depth + 1)
        return result

    if isinstance(payload, (list, tuple, set)):
        limited = list(payload)[:25]
        rendered = [_json_safe(item, depth=depth + 1) for item in limited]
        if len(payload) > 25:
            rendered.append(f"...({len(payload) - 25} more)")
        return rendered

    return _truncate_string(repr(payload))


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# ---- Generic JSONL logger -------------------------------------------------


class _NullLogger:
    def write(self, payload: Mapping[str, Any]) -> None:
        return


class JsonlLogger:
    """JSONL writer that offloads disk IO to a background thread."""

    def __init__(
        self,
        path: Path,
        *,
        max_bytes: int,
        trim_ratio: float,
        sync_writes: bool = False,
        queue_capacity: int = 5000,
        truncate_interval: int = 200,
    ) -> None:
        self.path = path
        self.max_bytes = max_bytes
        self.trim_ratio = max(0.05, min(0.5, trim_ratio))
        self._sync_writes = sync_writes
        self._queue: "queue.Queue[str]" = queue.Queue(maxsize=queue_capacity)
        self._stop_event = threading.Event()
        self._writes_since_check = 0
        self._truncate_interval = max(10, truncate_interval)
        self._closed = False
        self._fh = None
        self._writer = threading.Thread(
            target=self._writer_loop,
            name=f"jsonl-writer-{path.name}",
            daemon=True,
        )
        self._writer.start()
        atexit.register(self.close)

    def write(self, payload: Mapping[str, Any]) -> None:
        """Serialize payload and enqueue it; the oldest line is dropped when the queue is full."""
        line = self._serialize(payload)
        try:
            self._queue.put_nowait(line)
        except queue.Full:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                self._queue.put_nowait(line)
            except queue.Full:
                pass

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_event.set()
        self._writer.join(timeout=1.0)
        self._reset_handle()

    def _serialize(self, payload: Mapping[str, Any]) -> str:
        try:
            return json.dumps(payload, ensure_ascii=False, default=_json_default)
        except (TypeError, ValueError):
            return json.dumps(
                {"timestamp": _now_iso(), "event": "log.serialization_error", "error": repr(payload)},
                ensure_ascii=False,
            )

    def _writer_loop(self) -> None:
        while not self._stop_event.is_set() or not self._queue.empty():
            try:
                line = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                self._append_line(line)
            finally:
                self._queue.task_done()

    def _append_line(self, line: str) -> None:
        try:
            if self._fh is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._fh = self.path.open("a", encoding="utf-8")
            self._fh.write(line + "\n")
            self._fh.flush()
            if self._sync_writes:
                os.fsync(self._fh.fileno())
        except OSError:
            self._reset_handle()
            return

        self._writes_since_check += 1
        if self._writes_since_check >= self._truncate_interval:
            self._writes_since_check = 0
            self._truncate_if_needed()

    def _truncate_if_needed(self) -> None:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size <= self.max_bytes:
            return

        keep_bytes = max(1, int(size * (1 - self.trim_ratio)))
        tmp_path = self.path.with_suffix(".tmp")
        self._reset_handle()
        try:
            with self.path.open("rb") as src:
                src.seek(max(0, size - keep_bytes))
                src.readline()  # align to next newline to avoid partial JSON
                data = src.read()
            with tmp_path.open("wb") as dst:
                dst.write(data)
            os.replace(tmp_path, self.path)
        except OSError:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    def _reset_handle(self) -> None:
        fh = self._fh
        self._fh = None
        if fh is None:
            return
        try:
            fh.close()
        except OSError:
            pass


if _LOGGING_ENABLED:
    _EVENT_LOGGER: JsonlLogger | _NullLogger = JsonlLogger(
        _EVENT_LOG_PATH,
        max_bytes=_EVENT_LOG_MAX_BYTES,
        trim_ratio=_TRIM_RATIO,
        sync_writes=_env_flag("ENGINE_EVENT_LOG_SYNC", False),
        queue_capacity=2048,
        truncate_interval=100,
    )
    _CALL_LOGGER: JsonlLogger | _NullLogger = JsonlLogger(
        _CALL_LOG_PATH,
        max_bytes=_CALL_LOG_MAX_BYTES,
        trim_ratio=_TRIM_RATIO,
        queue_capacity=5000,
        truncate_interval=500,
    )
else:
    _EVENT_LOGGER = _NullLogger()
    _CALL_LOGGER = _NullLogger()


def logging_enabled() -> bool:
    return _LOGGING_ENABLED


# ---- Engine events ---------------------------------------------------------


def log_event(event: str, **fields: Any) -> None:
    """Record one lifecycle event, e.g. ``log_event("node.settled", branch_id=..., status=...)``."""
    entry: Dict[str, Any] = {"timestamp": _now_iso(), "event": event}
    for key, value in fields.items():
        if key.lower() in _SENSITIVE_KEYS:
            entry[key] = "***redacted***"
        else:
            entry[key] = _json_safe(value)
    _EVENT_LOGGER.write(entry)


# ---- opt-in decorator instrumentation --------------------------------------


def _bind_arguments(func, *args, **kwargs) -> MutableMapping[str, Any]:
    signature = inspect.signature(func)
    try:
        bound = signature.bind_partial(*args, **kwargs)
    except TypeError:
        bound = signature.bind_partial()
    data: MutableMapping[str, Any] = {}
    for name, value in bound.arguments.items():
        if name in {"self", "cls"}:
            continue
        data[name] = _json_safe(value)
    return data


def _call_record(event: str, call_id: str, func, start_ns: int, **extra: Any) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "timestamp": _now_iso(),
        "event": event,
        "call_id": call_id,
        "module": func.__module__,
        "function": func.__qualname__,
        "duration_ms": round((time.perf_counter_ns() - start_ns) / 1_000_000, 3),
    }
    record.update(extra)
    return record


def log_call(func):
    """Trace start, result and exceptions of a sync or async callable to the call log."""

    if getattr(func, "__log_wrapped__", False):
        return func

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            call_id = uuid4().hex[:12]
            start_ns = time.perf_counter_ns()
            _CALL_LOGGER.write(_call_record("call.start", call_id, func, start_ns,
                                            parameters=_bind_arguments(func, *args, **kwargs)))
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                _CALL_LOGGER.write(_call_record("call.exception", call_id, func, start_ns, exception={
                    "type": type(exc).__name__,
                    "message": _truncate_string(str(exc)),
                }))
                raise
            _CALL_LOGGER.write(_call_record("call.success", call_id, func, start_ns, result=_json_safe(result)))
            return result

        setattr(async_wrapper, "__log_wrapped__", True)
        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        call_id = uuid4().hex[:12]
        start_ns = time.perf_counter_ns()
        _CALL_LOGGER.write(_call_record("call.start", call_id, func, start_ns,
                                        parameters=_bind_arguments(func, *args, **kwargs)))
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            _CALL_LOGGER.write(_call_record("call.exception", call_id, func, start_ns, exception={
                "type": type(exc).__name__,
                "message": _truncate_string(str(exc)),
            }))
            raise
        _CALL_LOGGER.write(_call_record("call.success", call_id, func, start_ns, result=_json_safe(result)))
        return result

    setattr(wrapper, "__log_wrapped__", True)
    return wrapper
