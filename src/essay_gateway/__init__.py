"""Essay generation proxy with Gemini API key rotation.

A single POST endpoint builds a prompt and forwards it to Gemini, trying each
key in the pool at most once. Where to start is remembered across requests
in a shared key-value store, so consecutive requests spread over the pool:

  - 429 / 5xx / timeouts / blocked or empty output: rotate to the next key
  - other 4xx: returned to the caller as-is (another key would not help)
  - every key failed: 429 "all keys exhausted"

Usage:
    GEMINI_API_KEYS=key1,key2,key3 \\
    KV_REST_API_URL=https://... KV_REST_API_TOKEN=... \\
    uv run python -m essay_gateway --port 8000

    curl -X POST localhost:8000/api/generate-essay \\
      -H 'Content-Type: application/json' \\
      -d '{"topic": "等待", "wordCount": 1200, "structure": "classic"}'

Notes:
  - The store has no compare-and-swap; concurrent requests may start on the
    same key. Each request still judges its own attempts, so results are
    correct, only the spread is approximate.
  - Without KV_REST_API_URL/KV_REST_API_TOKEN (or ROTATION_INDEX_DIR) every
    request starts at the first key.
"""

from essay_gateway.engine import GenerationResult, RotationEngine
from essay_gateway.providers._pool import CredentialPool
from essay_gateway.providers.gemini import GeminiClient, Outcome, classify_response
from essay_gateway.store import DiskIndexStore, NullIndexStore, UpstashIndexStore, create_store

__all__ = [
    "CredentialPool",
    "DiskIndexStore",
    "GeminiClient",
    "GenerationResult",
    "NullIndexStore",
    "Outcome",
    "RotationEngine",
    "UpstashIndexStore",
    "classify_response",
    "create_store",
]
