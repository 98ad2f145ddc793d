# statickit/task_registry.py
from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, List


_tasks: Dict[str, asyncio.Task[Any]] = {}
_lock = threading.Lock()


def register_task(job: str, task: asyncio.Task[Any]) -> None:
    name = job or "default"
    with _lock:
        _tasks[name] = task


def get_task(job: str) -> asyncio.Task[Any] | None:
    with _lock:
        return _tasks.get(job or "default")


def cancel_task(job: str) -> bool:
    name = job or "default"
    with _lock:
        task = _tasks.pop(name, None)
    if task is None or task.done():
        return False
    task.cancel()
    return True


def remove_task(job: str) -> None:
    name = job or "default"
    with _lock:
        _tasks.pop(name, None)


def active_jobs(prefix: str = "") -> List[str]:
    with _lock:
        return [name for name, task in _tasks.items() if name.startswith(prefix) and not task.done()]


def clear_all_tasks(prefix: str = "") -> int:
    """Cancel every tracked task whose key starts with prefix; return how many were cancelled."""
    with _lock:
        selected = [(name, task) for name, task in _tasks.items() if name.startswith(prefix)]
        for name, _ in selected:
            _tasks.pop(name, None)
    cancelled = 0
    for _, task in selected:
        if not task.done():
            task.cancel()
            cancelled += 1
    return cancelled
