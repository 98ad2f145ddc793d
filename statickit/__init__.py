from __future__ import annotations

# Importing statickit.logging sets up the JSONL writers once per process.
from . import logging as _app_logging  # noqa: F401

__all__: list[str] = []
