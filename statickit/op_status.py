# statickit/op_status.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

# Map of job key -> (phase, started_at)
_phases: Dict[str, Tuple[str, float]] = {}
_lock = threading.Lock()
_notifications: List["Notification"] = []


@dataclass(frozen=True)
class Notification:
    """A background failure (or notice) waiting for the UI.

    ``kind`` names the slot that settled ("node", "variant", "variation") and
    ``entity_id`` identifies it: the node id, the size label, or the variation
    id. ``branch_id`` is empty for variations.
    """

    code: str
    message: str
    kind: str = ""
    entity_id: str = ""
    branch_id: str = ""
    level: str = "negative"
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def set_phase(job: str, phase: str) -> None:
    """Set current phase text (e.g. "Editing|original") for a running job."""
    key = job or "default"
    with _lock:
        if phase:
            _phases[key] = (phase, time.monotonic())
        else:
            _phases.pop(key, None)


def clear_phase(job: str) -> None:
    set_phase(job, "")


def clear_all(prefix: str = "") -> None:
    """Forget phases and queued notifications.

    With a job-key prefix only that orchestrator's phases go; notifications
    carry no job key and are kept.
    """
    with _lock:
        if prefix:
            for key in [k for k in _phases if k.startswith(prefix)]:
                del _phases[key]
            return
        _phases.clear()
        _notifications.clear()


def get_all_phases(prefix: str = "") -> Dict[str, Tuple[str, float]]:
    """Return mapping of job -> (phase, elapsed_seconds)."""
    with _lock:
        now = time.monotonic()
        return {k: (p, max(0.0, now - ts)) for k, (p, ts) in _phases.items() if k.startswith(prefix)}


# --- UI notification queue ---
def enqueue_notification(
    message: str,
    *,
    code: str,
    kind: str = "",
    entity_id: str = "",
    branch_id: str = "",
    level: str = "negative",
) -> Notification:
    """Queue a notification for the UI layer.

    Generation jobs run in background tasks and never talk to the UI directly;
    failures land here and the UI drains them on its own schedule.
    """
    item = Notification(
        code=str(code),
        message=str(message),
        kind=kind,
        entity_id=entity_id,
        branch_id=branch_id,
        level=level,
    )
    with _lock:
        _notifications.append(item)
    return item


def drain_notifications(kind: Optional[str] = None) -> List[Notification]:
    """Return and clear queued notifications, optionally only those of one kind."""
    with _lock:
        if kind is None:
            items = list(_notifications)
            _notifications.clear()
            return items
        items = [n for n in _notifications if n.kind == kind]
        _notifications[:] = [n for n in _notifications if n.kind != kind]
        return items
