from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
import os

import yaml

from .config import get_config, project_root


@dataclass(frozen=True)
class EditPreset:
    id: str
    name: str
    prompt: str
    category: str


@dataclass(frozen=True)
class ModelOption:
    id: str
    label: str


@dataclass(frozen=True)
class PresetCatalog:
    categories: Dict[str, Tuple[EditPreset, ...]] = field(default_factory=dict)
    model_options: Dict[str, Tuple[ModelOption, ...]] = field(default_factory=dict)

    def get_preset(self, preset_id: str) -> Optional[EditPreset]:
        for presets in self.categories.values():
            for preset in presets:
                if preset.id == preset_id:
                    return preset
        return None

    def model_label(self, group: str, option_id: str) -> str:
        for option in self.model_options.get(group, ()):
            if option.id == option_id:
                return option.label
        return ""


_CACHE_KEY: Tuple[str | None, float | None] | None = None
_CACHE_VALUE: PresetCatalog | None = None


def reset_presets_cache() -> None:
    global _CACHE_KEY, _CACHE_VALUE
    _CACHE_KEY = None
    _CACHE_VALUE = None


def get_preset_catalog() -> PresetCatalog:
    global _CACHE_KEY, _CACHE_VALUE
    path = _resolve_presets_path()
    stat_key: Tuple[str | None, float | None]
    if path is None:
        stat_key = (None, None)
    else:
        try:
            stat_key = (str(path), float(path.stat().st_mtime))
        except FileNotFoundError:
            stat_key = (str(path), None)
    if _CACHE_KEY == stat_key and _CACHE_VALUE is not None:
        return _CACHE_VALUE
    catalog = _load_catalog(path)
    _CACHE_KEY = stat_key
    _CACHE_VALUE = catalog
    return catalog


def combine_presets(preset_ids: Sequence[str], catalog: PresetCatalog | None = None) -> Tuple[str, str]:
    """Return (instruction, history label) for a set of presets, at most one per category."""
    cat = catalog or get_preset_catalog()
    ids = [pid for pid in preset_ids if pid]
    if not ids:
        raise ValueError("Select at least one preset")
    seen_categories: Dict[str, str] = {}
    prompts: List[str] = []
    names: List[str] = []
    for pid in ids:
        preset = cat.get_preset(pid)
        if preset is None:
            raise ValueError(f"Unknown preset '{pid}'")
        if preset.category in seen_categories:
            raise ValueError(
                f"Presets '{seen_categories[preset.category]}' and '{pid}' are both {preset.category}; pick one"
            )
        seen_categories[preset.category] = pid
        prompts.append(preset.prompt)
        names.append(preset.name)
    return ". ".join(prompts), " + ".join(names) + " [preset]"


# Builder groups in the order their phrases appear in the prompt.
_MODEL_GROUPS = ("gender", "age_range", "ethnicity", "body_type", "hair", "expression", "vibe")


def build_model_prompt(selections: Mapping[str, str], catalog: PresetCatalog | None = None) -> str:
    """Assemble a model description such as "Female, Adult (26-35), Athletic build, Brown wavy hair"."""
    cat = catalog or get_preset_catalog()
    parts: List[str] = []
    for group in _MODEL_GROUPS:
        if group == "hair":
            color = cat.model_label("hair_color", selections.get("hair_color", ""))
            kind = cat.model_label("hair_type", selections.get("hair_type", "")).lower()
            hair = " ".join(p for p in (color, kind) if p)
            if hair:
                parts.append(f"{hair} hair")
            continue
        value = selections.get(group, "")
        if not value or (group == "gender" and value == "any"):
            continue
        label = cat.model_label(group, value)
        if not label:
            continue
        if group == "body_type":
            label = f"{label} build"
        elif group == "expression":
            label = f"{label} expression"
        elif group == "vibe":
            label = f"{label} vibe"
        parts.append(label)
    return ", ".join(parts)


def _resolve_presets_path() -> Optional[Path]:
    override = os.getenv("STATICKIT_PRESETS_PATH")
    if override:
        path = Path(override).expanduser()
        return path if path.exists() else None
    try:
        name = get_config().presets_file
    except RuntimeError:
        name = "presets.yaml"
    candidate = Path(name)
    if not candidate.is_absolute():
        candidate = project_root() / candidate
    return candidate if candidate.exists() else None


def _load_catalog(path: Optional[Path]) -> PresetCatalog:
    if path is None:
        return PresetCatalog()
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return PresetCatalog()
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise RuntimeError(f"Failed to parse presets: {exc}")
    if not isinstance(raw, dict):
        return PresetCatalog()

    categories: Dict[str, Tuple[EditPreset, ...]] = {}
    raw_categories = raw.get("categories", {})
    if isinstance(raw_categories, dict):
        for category, entries in raw_categories.items():
            parsed = [_parse_preset(str(category), entry) for entry in entries or []]
            presets = tuple(p for p in parsed if p is not None)
            if presets:
                categories[str(category)] = presets

    model_options: Dict[str, Tuple[ModelOption, ...]] = {}
    raw_options = raw.get("model_options", {})
    if isinstance(raw_options, dict):
        for group, entries in raw_options.items():
            options = []
            for entry in entries or []:
                if isinstance(entry, dict) and entry.get("id") is not None and entry.get("label"):
                    options.append(ModelOption(id=str(entry["id"]), label=str(entry["label"])))
            model_options[str(group)] = tuple(options)

    return PresetCatalog(categories=categories, model_options=model_options)


def _parse_preset(category: str, entry: object) -> Optional[EditPreset]:
    if not isinstance(entry, dict):
        return None
    preset_id = str(entry.get("id") or "").strip()
    prompt = " ".join(str(entry.get("prompt") or "").split())
    if not preset_id or not prompt:
        return None
    name = str(entry.get("name") or preset_id).strip()
    return EditPreset(id=preset_id, name=name, prompt=prompt, category=category)
