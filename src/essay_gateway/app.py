"""HTTP endpoint: POST /api/generate-essay.

Each request is independent: settings, credential pool, store and upstream
client are all built per request. Every response, including unexpected
internal faults, is a JSON object.
"""

import logging

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from essay_gateway.adapter import MISSING_FIELDS, error_body, parse_request, response_body
from essay_gateway.config import load_settings
from essay_gateway.engine import RotationEngine
from essay_gateway.errors import ConfigError, GatewayError, ValidationError
from essay_gateway.prompts import build_prompt
from essay_gateway.providers._pool import CredentialPool
from essay_gateway.providers.gemini import GeminiClient, build_payload
from essay_gateway.store import create_store

log = logging.getLogger(__name__)

ENDPOINT = "/api/generate-essay"

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def create_app(settings_loader=load_settings, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Build the app.

    settings_loader is called on every request. transport, when given, is
    used for both the upstream and the store HTTP clients.
    """
    app = FastAPI(title="essay-gateway")

    async def _generate(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError(f"Request body must be valid JSON. {MISSING_FIELDS}")
        essay_request = parse_request(body)

        settings = settings_loader()
        if not settings.api_keys or (settings.store_required and not settings.store_configured):
            log.error("GEMINI_API_KEYS or the rotation store is not configured")
            raise ConfigError("service misconfigured")
        pool = CredentialPool.parse(settings.api_keys)

        prompt = build_prompt(
            essay_request.topic,
            essay_request.word_count,
            essay_request.structure,
            essay_request.guidelines,
        )
        payload = build_payload(
            prompt,
            temperature=settings.temperature,
            top_p=settings.top_p,
            max_output_tokens=settings.max_output_tokens,
            safety_threshold=settings.safety_threshold,
        )

        store = create_store(settings, transport=transport)
        try:
            async with GeminiClient(settings.model, settings.timeout, transport) as upstream:
                result = await RotationEngine(store, upstream).run(
                    pool, payload, should_abort=request.is_disconnected
                )
        finally:
            await store.aclose()

        status, content = response_body(result)
        return JSONResponse(content, status_code=status)

    @app.api_route(ENDPOINT, methods=_ALL_METHODS)
    async def generate_essay(request: Request):
        if request.method != "POST":
            return JSONResponse(
                error_body("Method Not Allowed"), status_code=405, headers={"Allow": "POST"}
            )
        try:
            return await _generate(request)
        except GatewayError as e:
            if e.status_code >= 500:
                log.error("Request failed: %s", e.message)
            return JSONResponse(error_body(e.message), status_code=e.status_code)
        except Exception:
            log.exception("Unhandled error while generating essay")
            return JSONResponse(error_body("internal server error"), status_code=500)

    return app


app = create_app()
