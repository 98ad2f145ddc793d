# statickit/config.py
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
import os
from typing import Dict

import yaml

"""
Engine configuration loaded from YAML (single source of truth).
Location: project_root/config.yaml, or the file named by STATICKIT_CONFIG.
Required keys: models.generate, models.analyze
"""


@dataclass(frozen=True)
class AdSize:
    name: str
    width: int
    height: int
    label: str = ""


DEFAULT_AD_SIZES: Dict[str, AdSize] = {
    "1:1": AdSize("1:1", 1080, 1080, "Square"),
    "9:16": AdSize("9:16", 1080, 1920, "Story"),
    "16:9": AdSize("16:9", 1920, 1080, "Landscape"),
    "4:5": AdSize("4:5", 1080, 1350, "Portrait"),
    "2:3": AdSize("2:3", 1080, 1620, "Pinterest"),
}


@dataclass(frozen=True)
class AppConfig:
    generate_model: str
    analyze_model: str
    generation_timeout: float = 180.0
    upload_scale: float = 1.0
    presets_file: str = "presets.yaml"
    ad_sizes: Dict[str, AdSize] = field(default_factory=lambda: dict(DEFAULT_AD_SIZES))


def project_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _find_config_file() -> Path | None:
    override = os.getenv("STATICKIT_CONFIG")
    if override:
        p = Path(override).expanduser()
        return p if p.exists() else None
    p = project_root() / 'config.yaml'
    return p if p.exists() else None


def _parse_ad_sizes(raw: object) -> Dict[str, AdSize]:
    if not isinstance(raw, dict) or not raw:
        return dict(DEFAULT_AD_SIZES)
    sizes: Dict[str, AdSize] = {}
    for name, entry in raw.items():
        if not isinstance(entry, dict):
            continue
        try:
            width = int(entry.get('width'))
            height = int(entry.get('height'))
        except (TypeError, ValueError):
            continue
        if width <= 0 or height <= 0:
            continue
        key = str(name)
        sizes[key] = AdSize(key, width, height, str(entry.get('label') or ''))
    return sizes or dict(DEFAULT_AD_SIZES)


@lru_cache
def get_config() -> AppConfig:
    data: dict = {}
    cfg_path = _find_config_file()
    if cfg_path is None:
        raise RuntimeError('config.yaml not found; create it at project root or set STATICKIT_CONFIG')
    try:
        loaded = yaml.safe_load(cfg_path.read_text(encoding='utf-8'))
    except Exception as exc:
        raise RuntimeError(f'Failed to read YAML config: {exc}')
    if not isinstance(loaded, dict):
        raise RuntimeError('config.yaml must contain a YAML mapping (dict)')
    data = loaded

    models = data.get('models', {})
    missing: list[str] = []
    if not isinstance(models, dict) or not models.get('generate'):
        missing.append('models.generate')
    if not isinstance(models, dict) or not models.get('analyze'):
        missing.append('models.analyze')
    if missing:
        raise RuntimeError('Missing required config keys: ' + ', '.join(missing))

    generation_cfg = data.get('generation')
    if not isinstance(generation_cfg, dict):
        generation_cfg = {}
    try:
        timeout = float(generation_cfg.get('timeout_seconds', 180))
    except (TypeError, ValueError):
        timeout = 180.0

    upload_cfg = data.get('upload')
    if not isinstance(upload_cfg, dict):
        upload_cfg = {}
    try:
        scale = float(upload_cfg.get('scale', 1.0))
    except (TypeError, ValueError):
        scale = 1.0

    return AppConfig(
        generate_model=str(models.get('generate')),
        analyze_model=str(models.get('analyze')),
        generation_timeout=timeout,
        upload_scale=scale,
        presets_file=str(data.get('presets_file') or 'presets.yaml'),
        ad_sizes=_parse_ad_sizes(data.get('ad_sizes')),
    )
