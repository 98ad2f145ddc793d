# statickit/or_client.py
"""
Tiny OpenRouter client for image generation, image analysis and creative suggestions.

- Async-only (no streaming)
- Backoff on 408/429/5xx/timeout/network; never on 402 (insufficient credits)
- Images: accept local bytes/paths and encode to base64 data: URLs
- Generated images come back in the assistant message's `images` field

Env (from .env or process):
  OPENROUTER_API_KEY   - required
  OPENROUTER_BASE_URL  - optional; defaults to the public OpenRouter endpoint

Docs: OpenRouter is OpenAI-compatible; image output is requested with modalities ["image", "text"].
"""

from __future__ import annotations
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple, Union
from pathlib import Path
import asyncio
import base64
import json
import mimetypes
import os
import random
import re

from openai import (
    AsyncOpenAI,
    APIStatusError,
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
)
from dotenv import load_dotenv
from dataclasses import dataclass

from .config import get_config
from .logging import log_call

# ---------------- Settings & client ---------------- #

TIMEOUT_SECONDS: float = 120.0
DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


load_dotenv()


@dataclass(frozen=True)
class _Settings:
    api_key: str
    generate_model: str
    analyze_model: str
    base_url: str


@lru_cache
def _settings() -> _Settings:
    # Models are sourced from YAML config (single source of truth)
    api_key = os.getenv("OPENROUTER_API_KEY")
    base_url = os.getenv("OPENROUTER_BASE_URL") or DEFAULT_BASE_URL

    cfg = get_config()

    if not api_key:
        raise RuntimeError(
            "Missing required environment variables: OPENROUTER_API_KEY. Configure them in .env."
        )

    return _Settings(
        api_key=api_key,
        generate_model=cfg.generate_model,
        analyze_model=cfg.analyze_model,
        base_url=base_url,
    )


@lru_cache
def _client() -> AsyncOpenAI:
    s = _settings()
    headers: Dict[str, str] = {
        "X-Title": "statickit",
        "HTTP-Referer": "https://statickit.local",
    }
    return AsyncOpenAI(
        api_key=s.api_key,
        base_url=s.base_url,
        timeout=TIMEOUT_SECONDS,
        default_headers=headers,
    )


# -------------- Encoding -------------- #

def _guess_mime(path: Union[str, Path]) -> str:
    mt, _ = mimetypes.guess_type(str(path))
    return mt or "image/png"


def encode_image_to_data_url(
    data: Union[bytes, str, Path],
    mime: Optional[str] = None,
) -> str:
    """
    Accepts raw bytes, a data: URL, an http(s) URL or a filesystem path; returns
    a URL suitable for OpenAI/OpenRouter Chat Completions image input.
    """
    if isinstance(data, str) and data.startswith(("data:", "http://", "https://")):
        # already a URL the provider can read; pass through
        return data
    if isinstance(data, (str, Path)) and Path(str(data)).exists():
        p = Path(str(data))
        raw = p.read_bytes()
        mime = mime or _guess_mime(p)
    elif isinstance(data, (bytes, bytearray)):
        raw = bytes(data)
        mime = mime or "image/png"
    else:
        raise ValueError("encode_image_to_data_url expects bytes, a data: or http(s) URL, or an existing file path")

    b64 = base64.b64encode(raw).decode("ascii")
    return f"data:{mime};base64,{b64}"


def decode_data_url(data_url: str) -> Tuple[str, bytes]:
    """Split a base64 data: URL into (mime type, raw bytes)."""
    if not data_url.startswith("data:") or "," not in data_url:
        raise ValueError("Not a data: URL")
    header, payload = data_url.split(",", 1)
    mime = header[5:].split(";", 1)[0] or "application/octet-stream"
    if ";base64" not in header:
        raise ValueError("Only base64 data: URLs are supported")
    return mime, base64.b64decode(payload)


# -------------- Retry -------------- #

async def _retry(coro_fn, max_tries: int = 5, base: float = 0.5, retry_on=None):
    """
    Exponential backoff for transient conditions:
      - 429 (rate limit), 408 (timeout), 5xx, network/timeout errors.
    Never retries 402 (insufficient credits).
    """
    disable_retry = os.getenv("OPENROUTER_DISABLE_RETRY", "").strip() != ""
    attempts = 1 if disable_retry else max_tries
    for i in range(attempts):
        try:
            return await coro_fn()
        except (RateLimitError, APITimeoutError, APIConnectionError):
            # always back off for these
            if i == attempts - 1:
                raise
            await asyncio.sleep(base * (2 ** i) + random.random() * 0.1)
        except APIStatusError as e:
            code = getattr(e, "status_code", None)
            if code == 402:
                # no credits: surface immediately
                raise
            if code in (408, 429, 500, 502, 503, 504):
                if i == attempts - 1:
                    raise
                await asyncio.sleep(base * (2 ** i) + random.random() * 0.1)
            else:
                raise
        except Exception as e:
            # Optional predicate for non-OpenAI failures
            should_retry = bool(retry_on(e)) if callable(retry_on) else False
            if not should_retry:
                raise
            if i == attempts - 1:
                raise
            await asyncio.sleep(base * (2 ** i) + random.random() * 0.1)


# -------------- Response parsing -------------- #

def _as_dict(message: Any) -> Dict[str, Any]:
    if isinstance(message, dict):
        return message
    dump = getattr(message, "model_dump", None)
    data: Dict[str, Any] = dict(dump()) if callable(dump) else {}
    # Provider-specific fields (e.g. "images") land in model_extra on the SDK objects.
    extra = getattr(message, "model_extra", None)
    if isinstance(extra, dict):
        for key, value in extra.items():
            data.setdefault(key, value)
    return data


def extract_image_urls(message: Any) -> List[str]:
    data = _as_dict(message)
    urls: List[str] = []
    for item in data.get("images") or []:
        if not isinstance(item, dict):
            continue
        image_url = item.get("image_url")
        url = image_url.get("url") if isinstance(image_url, dict) else image_url
        if isinstance(url, str) and url:
            urls.append(url)
    content = data.get("content")
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "image_url":
                image_url = part.get("image_url")
                url = image_url.get("url") if isinstance(image_url, dict) else image_url
                if isinstance(url, str) and url:
                    urls.append(url)
    return urls


def extract_text(message: Any) -> str:
    content = _as_dict(message).get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts: List[str] = []
        for part in content:
            if isinstance(part, dict):
                t = part.get("text")
                if isinstance(t, str):
                    texts.append(t)
        return "".join(texts)
    return ""


_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def parse_json_object(text: str) -> Dict[str, Any]:
    """Pull the first JSON object out of a model reply (tolerates ```json fences)."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise ValueError("No JSON object in model reply")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("Model reply JSON is not an object")
    return parsed



_JSON_ARRAY = re.compile(r"\[.*\]", re.DOTALL)


def parse_json_array(text: str) -> List[Dict[str, Any]]:
    """Pull the first JSON array out of a model reply; non-object entries are dropped."""
    match = _JSON_ARRAY.search(text or "")
    if not match:
        raise ValueError("No JSON array in model reply")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, list):
        raise ValueError("Model reply JSON is not an array")
    return [item for item in parsed if isinstance(item, dict)]


# -------------- Public stateless helpers -------------- #

@log_call
async def generate_image(
    messages: List[Dict[str, Any]],
    model: Optional[str] = None,
) -> Tuple[Optional[str], str]:
    """
    Ask an image-output model for one image.
    Returns (first image URL or None, any text the model sent alongside).
    """
    s = _settings()
    slug = model or s.generate_model

    async def call():
        return await _client().chat.completions.create(
            model=slug,
            messages=messages,
            stream=False,
            extra_body={"modalities": ["image", "text"]},
        )

    res = await _retry(call)
    if not getattr(res, "choices", None):
        raise RuntimeError("Failed to obtain response from OpenRouter")
    msg = res.choices[0].message
    urls = extract_image_urls(msg)
    return (urls[0] if urls else None), extract_text(msg)


@log_call
async def analyze_json(
    messages: List[Dict[str, Any]],
    model: Optional[str] = None,
) -> Dict[str, Any]:
    s = _settings()
    slug = model or s.analyze_model

    async def call():
        return await _client().chat.completions.create(
            model=slug,
            messages=messages,
            stream=False,
            temperature=0,
        )

    res = await _retry(call)
    if not getattr(res, "choices", None):
        raise RuntimeError("Failed to obtain response from OpenRouter")
    return parse_json_object(extract_text(res.choices[0].message))


@log_call
async def suggest_json(
    messages: List[Dict[str, Any]],
    model: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Ask the analysis model for a JSON array of suggestions."""
    s = _settings()
    slug = model or s.analyze_model

    async def call():
        return await _client().chat.completions.create(
            model=slug,
            messages=messages,
            stream=False,
        )

    res = await _retry(call)
    if not getattr(res, "choices", None):
        raise RuntimeError("Failed to obtain response from OpenRouter")
    return parse_json_array(extract_text(res.choices[0].message))
