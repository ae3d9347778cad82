"""Environment-driven settings.

Settings are read fresh on every request, so key lists and store credentials
can change without restarting the process.

    GEMINI_API_KEYS=key1,key2,key3
    KV_REST_API_URL=https://...upstash.io
    KV_REST_API_TOKEN=...
"""

import logging
import math
import os
from dataclasses import dataclass
from typing import Mapping

log = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-pro"
DEFAULT_INDEX_KEY = "current_gemini_key_index"

_TRUTHY = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    api_keys: str | None = None
    kv_url: str | None = None
    kv_token: str | None = None
    index_key: str = DEFAULT_INDEX_KEY
    index_dir: str | None = None
    store_required: bool = False
    model: str = DEFAULT_MODEL
    timeout: float = 45.0
    store_timeout: float = 5.0
    temperature: float = 1.0
    top_p: float = 0.9
    max_output_tokens: int = 4096
    safety_threshold: str | None = None

    @property
    def kv_configured(self) -> bool:
        return bool(self.kv_url and self.kv_token)

    @property
    def store_configured(self) -> bool:
        return self.kv_configured or bool(self.index_dir)


def _get(env: Mapping[str, str], name: str) -> str | None:
    val = env.get(name)
    if val is None:
        return None
    val = val.strip()
    return val or None


def _number(env: Mapping[str, str], name: str, default, cast=float):
    raw = _get(env, name)
    if raw is None:
        return default
    try:
        val = cast(raw)
    except ValueError:
        log.warning("Ignoring %s=%r (not a number), using %s", name, raw, default)
        return default
    if not math.isfinite(val):
        log.warning("Ignoring %s=%r (not finite), using %s", name, raw, default)
        return default
    if val <= 0 and name.endswith("TIMEOUT"):
        log.warning("Ignoring %s=%r (must be positive), using %s", name, raw, default)
        return default
    return val


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from the environment. Never raises; validation happens per request."""
    env = os.environ if environ is None else environ
    return Settings(
        api_keys=env.get("GEMINI_API_KEYS"),
        kv_url=_get(env, "KV_REST_API_URL"),
        kv_token=_get(env, "KV_REST_API_TOKEN"),
        index_key=_get(env, "ROTATION_INDEX_KEY") or DEFAULT_INDEX_KEY,
        index_dir=_get(env, "ROTATION_INDEX_DIR"),
        store_required=(_get(env, "ROTATION_STORE_REQUIRED") or "").lower() in _TRUTHY,
        model=_get(env, "GEMINI_MODEL") or DEFAULT_MODEL,
        timeout=_number(env, "GEMINI_TIMEOUT", 45.0),
        store_timeout=_number(env, "KV_TIMEOUT", 5.0),
        temperature=_number(env, "GEMINI_TEMPERATURE", 1.0),
        top_p=_number(env, "GEMINI_TOP_P", 0.9),
        max_output_tokens=_number(env, "GEMINI_MAX_OUTPUT_TOKENS", 4096, cast=int),
        safety_threshold=_get(env, "GEMINI_SAFETY_THRESHOLD"),
    )
