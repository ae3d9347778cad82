"""Gemini provider via the generateContent REST endpoint.

One call, one credential, one outcome. Everything the engine needs to know
about the upstream's response schema lives in classify_response(); the rest
of the package only sees an Outcome tag.
"""

import enum
import json
import logging
from dataclasses import dataclass

import httpx

from essay_gateway.config import DEFAULT_MODEL

log = logging.getLogger(__name__)

# httpx logs request URLs at INFO, and the key travels in the query string
for name in ("httpx", "httpcore"):
    logging.getLogger(name).setLevel(logging.WARNING)

_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

_HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class Outcome(enum.Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    CLIENT_ERROR = "client_error"
    NETWORK_FAILURE = "network_failure"

    @property
    def retryable(self) -> bool:
        """Could a different credential plausibly change the result?"""
        return self not in (Outcome.SUCCESS, Outcome.CLIENT_ERROR)


@dataclass(frozen=True)
class UpstreamOutcome:
    kind: Outcome
    text: str = ""
    status_code: int | None = None
    message: str = ""


def model_id(model: str) -> str:
    """'gemini/gemini-2.5-pro' -> 'gemini-2.5-pro'"""
    return model.removeprefix("gemini/")


def build_payload(
    prompt: str,
    temperature: float = 1.0,
    top_p: float = 0.9,
    max_output_tokens: int = 4096,
    safety_threshold: str | None = None,
) -> dict:
    """Request body for generateContent."""
    payload = {
        "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        "generationConfig": {
            "temperature": temperature,
            "topP": top_p,
            "maxOutputTokens": max_output_tokens,
        },
    }
    if safety_threshold:
        payload["safetySettings"] = [
            {"category": c, "threshold": safety_threshold} for c in _HARM_CATEGORIES
        ]
    return payload


def _error_message(body: str) -> str:
    """Pull error.message out of a Google API error body, else return the body."""
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip()
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return body.strip()


class _ShapeError(ValueError):
    pass


def _expect(value, kind, what: str):
    """value if it is None or of the given type, else _ShapeError."""
    if value is not None and not isinstance(value, kind):
        raise _ShapeError(f"{what} is {type(value).__name__}")
    return value


def _candidate_text(data: dict) -> tuple[str, str | None]:
    """(joined text of the first candidate, its finishReason).

    Raises _ShapeError when a field has the wrong JSON type.
    """
    candidates = _expect(data.get("candidates"), list, "candidates") or []
    if not candidates:
        return "", None
    first = _expect(candidates[0], dict, "candidates[0]") or {}
    content = _expect(first.get("content"), dict, "content") or {}
    parts = _expect(content.get("parts"), list, "parts") or []
    chunks = []
    for part in parts:
        _expect(part, dict, "part")
        # Skip thought summaries; only the answer counts as content
        if not part or part.get("thought"):
            continue
        chunks.append(_expect(part.get("text"), str, "part text") or "")
    return "".join(chunks), first.get("finishReason")


def classify_response(status_code: int, body: str) -> UpstreamOutcome:
    """Map a raw generateContent response onto an Outcome."""
    if status_code == 429:
        return UpstreamOutcome(Outcome.RATE_LIMITED, status_code=429, message=_error_message(body))
    if 400 <= status_code < 500:
        return UpstreamOutcome(
            Outcome.CLIENT_ERROR, status_code=status_code, message=_error_message(body)
        )
    if not 200 <= status_code < 300:
        return UpstreamOutcome(
            Outcome.SERVER_ERROR, status_code=status_code, message=_error_message(body)
        )

    try:
        data = json.loads(body)
    except ValueError:
        return UpstreamOutcome(
            Outcome.NETWORK_FAILURE, status_code=status_code, message="unparseable response body"
        )
    if not isinstance(data, dict):
        return UpstreamOutcome(
            Outcome.NETWORK_FAILURE, status_code=status_code, message="unexpected response shape"
        )

    try:
        feedback = _expect(data.get("promptFeedback"), dict, "promptFeedback") or {}
        block_reason = feedback.get("blockReason")
        text, finish_reason = _candidate_text(data)
    except _ShapeError as e:
        log.warning("Unexpected generateContent response shape: %s", e)
        return UpstreamOutcome(
            Outcome.NETWORK_FAILURE, status_code=status_code, message="unexpected response shape"
        )
    if block_reason:
        return UpstreamOutcome(
            Outcome.BLOCKED, status_code=status_code, message=f"prompt blocked: {block_reason}"
        )

    if not text.strip():
        reason = f" (finishReason={finish_reason})" if finish_reason else ""
        return UpstreamOutcome(
            Outcome.BLOCKED, status_code=status_code, message=f"empty content{reason}"
        )
    return UpstreamOutcome(Outcome.SUCCESS, text=text, status_code=status_code)


class GeminiClient:
    """Performs single generateContent calls with a bounded timeout.

    Use as an async context manager to share one connection pool across the
    attempts of a request; generate() also works standalone.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        timeout: float = 45.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model_id(model)
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def url(self) -> str:
        return f"{_BASE_URL}/models/{self.model}:generateContent"

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(http2=True, timeout=self.timeout, transport=self._transport)

    async def __aenter__(self):
        self._client = self._new_client()
        return self

    async def __aexit__(self, *exc):
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def generate(self, credential: str, payload: dict) -> UpstreamOutcome:
        if self._client is None:
            async with self:
                return await self.generate(credential, payload)
        try:
            resp = await self._client.post(self.url, params={"key": credential}, json=payload)
        except httpx.TimeoutException:
            return UpstreamOutcome(
                Outcome.NETWORK_FAILURE, message=f"timed out after {self.timeout:g}s"
            )
        except httpx.RequestError as e:
            return UpstreamOutcome(
                Outcome.NETWORK_FAILURE, message=f"{type(e).__name__}: {e}"
            )
        return classify_response(resp.status_code, resp.text)
