# statickit/errors.py
from __future__ import annotations

# Failure codes attached to entities instead of raised.
GENERATION_FAILED = "generation-failed"
RESIZE_FAILED = "resize-failed"


class EngineError(ValueError):
    """Synchronous rejection of an engine operation; no state was changed."""

    code = "engine-error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)


class SourceNotReadyError(EngineError):
    code = "source-not-ready"


class CannotDeleteError(EngineError):
    code = "cannot-delete"


class NodeInFlightError(EngineError):
    code = "node-in-flight"
