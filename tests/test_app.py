"""End-to-end tests for the HTTP endpoint with mocked Gemini and KV services."""

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from essay_gateway.app import ENDPOINT, create_app
from essay_gateway.config import load_settings

KV_URL = "https://kv.example.upstash.io"
BODY = {"topic": "等待", "wordCount": 1200, "structure": "classic"}


class FakeUpstream:
    """Routes Gemini and KV REST calls. Gemini replies are scripted per key."""

    def __init__(self, replies=None, index=None):
        self.replies = replies or {}
        self.index = index
        self.keys_tried = []
        self.kv_writes = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "generativelanguage.googleapis.com":
            key = request.url.params["key"]
            self.keys_tried.append(key)
            status, data = self.replies.get(key, (200, _essay(f"essay from {key}")))
            if isinstance(data, Exception):
                raise data
            return httpx.Response(status, json=data)
        if request.url.path.startswith("/get/"):
            result = None if self.index is None else json.dumps(str(self.index))
            return httpx.Response(200, json={"result": result})
        if request.url.path.startswith("/set/"):
            self.index = int(request.content)
            self.kv_writes.append(self.index)
            return httpx.Response(200, json={"result": "OK"})
        return httpx.Response(404)


def _essay(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}]}


def _client(fake: FakeUpstream, env: dict) -> TestClient:
    app = create_app(
        settings_loader=lambda: load_settings(env),
        transport=httpx.MockTransport(fake.handler),
    )
    return TestClient(app)


ENV = {
    "GEMINI_API_KEYS": "key-a,key-b,key-c",
    "KV_REST_API_URL": KV_URL,
    "KV_REST_API_TOKEN": "kv-token",
}


# --- Method and input validation ---


class TestRequestValidation:
    @pytest.mark.parametrize("method", ["get", "put", "delete"])
    def test_non_post_is_405(self, method):
        fake = FakeUpstream()
        resp = getattr(_client(fake, ENV), method)(ENDPOINT)
        assert resp.status_code == 405
        assert resp.json() == {"error": "Method Not Allowed"}
        assert fake.keys_tried == []

    def test_missing_field_is_400(self):
        resp = _client(FakeUpstream(), ENV).post(ENDPOINT, json={"topic": "等待"})
        assert resp.status_code == 400
        assert "topic, wordCount, structure" in resp.json()["error"]

    def test_invalid_json_is_400(self):
        resp = _client(FakeUpstream(), ENV).post(
            ENDPOINT, content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400
        assert "error" in resp.json()


# --- Configuration ---


class TestConfiguration:
    def test_missing_keys_is_500(self):
        env = {k: v for k, v in ENV.items() if k != "GEMINI_API_KEYS"}
        resp = _client(FakeUpstream(), env).post(ENDPOINT, json=BODY)
        assert resp.status_code == 500
        assert resp.json() == {"error": "service misconfigured"}

    def test_blank_keys_is_500(self):
        resp = _client(FakeUpstream(), {**ENV, "GEMINI_API_KEYS": " , ,"}).post(ENDPOINT, json=BODY)
        assert resp.status_code == 500
        assert resp.json() == {"error": "no valid credentials"}

    def test_required_store_missing_is_500(self):
        env = {"GEMINI_API_KEYS": "k", "ROTATION_STORE_REQUIRED": "1"}
        resp = _client(FakeUpstream(), env).post(ENDPOINT, json=BODY)
        assert resp.status_code == 500
        assert resp.json() == {"error": "service misconfigured"}

    def test_scenario_d_no_kv_always_starts_at_first_key(self):
        fake = FakeUpstream(index=2)
        env = {"GEMINI_API_KEYS": "key-a,key-b"}
        client = _client(fake, env)
        for _ in range(2):
            resp = client.post(ENDPOINT, json=BODY)
            assert resp.status_code == 200
        assert fake.keys_tried == ["key-a", "key-a"]
        assert fake.kv_writes == []

    def test_scenario_d_failures_still_rotate_within_request(self):
        fake = FakeUpstream(replies={"key-a": (429, {"error": {"message": "quota"}})})
        resp = _client(fake, {"GEMINI_API_KEYS": "key-a,key-b"}).post(ENDPOINT, json=BODY)
        assert resp.status_code == 200
        assert resp.json() == {"essay": "essay from key-b"}


# --- Rotation through the endpoint ---


class TestGenerate:
    def test_success_returns_essay(self):
        fake = FakeUpstream(index=1)
        resp = _client(fake, ENV).post(ENDPOINT, json=BODY)
        assert resp.status_code == 200
        assert resp.json() == {"essay": "essay from key-b"}
        assert fake.kv_writes == []

    def test_rotates_and_persists(self):
        fake = FakeUpstream(
            index=1,
            replies={
                "key-b": (429, {"error": {"message": "quota"}}),
                "key-c": (500, {"error": {"message": "internal"}}),
            },
        )
        resp = _client(fake, ENV).post(ENDPOINT, json=BODY)
        assert resp.status_code == 200
        assert resp.json() == {"essay": "essay from key-a"}
        assert fake.keys_tried == ["key-b", "key-c", "key-a"]
        assert fake.kv_writes == [2, 0]

    def test_malformed_success_body_rotates(self):
        fake = FakeUpstream(index=0, replies={"key-a": (200, {"candidates": {"a": 1}})})
        resp = _client(fake, ENV).post(ENDPOINT, json=BODY)
        assert resp.status_code == 200
        assert resp.json() == {"essay": "essay from key-b"}
        assert fake.keys_tried == ["key-a", "key-b"]
        assert fake.kv_writes == [1]

    def test_next_request_starts_where_previous_left_off(self):
        fake = FakeUpstream(index=0, replies={"key-a": (429, {"error": {"message": "quota"}})})
        client = _client(fake, ENV)
        client.post(ENDPOINT, json=BODY)
        fake.replies.clear()
        client.post(ENDPOINT, json=BODY)
        assert fake.keys_tried == ["key-a", "key-b", "key-b"]

    def test_client_error_passes_through(self):
        fake = FakeUpstream(replies={"key-a": (400, {"error": {"code": 400, "message": "invalid topic"}})})
        resp = _client(fake, ENV).post(ENDPOINT, json=BODY)
        assert resp.status_code == 400
        assert resp.json() == {"error": "invalid topic"}
        assert fake.keys_tried == ["key-a"]
        assert fake.kv_writes == []

    def test_exhaustion_is_429(self):
        blocked = (200, {"promptFeedback": {"blockReason": "SAFETY"}})
        fake = FakeUpstream(
            index=0,
            replies={
                "key-a": blocked,
                "key-b": (503, {"error": {"message": "overloaded"}}),
                "key-c": (200, httpx.ConnectError("refused")),
            },
        )
        resp = _client(fake, ENV).post(ENDPOINT, json=BODY)
        assert resp.status_code == 429
        assert "all 3 keys" in resp.json()["error"]
        assert fake.kv_writes == [1, 2, 0]

    def test_payload_carries_prompt_and_settings(self):
        seen = []
        fake = FakeUpstream()

        def handler(request):
            if request.url.host == "generativelanguage.googleapis.com":
                seen.append(json.loads(request.content))
            return fake.handler(request)

        env = {**ENV, "GEMINI_TEMPERATURE": "0.7", "GEMINI_SAFETY_THRESHOLD": "BLOCK_ONLY_HIGH"}
        app = create_app(settings_loader=lambda: load_settings(env), transport=httpx.MockTransport(handler))
        TestClient(app).post(ENDPOINT, json={**BODY, "structure": "threeline", "guidelines": "寫母親"})

        payload = seen[0]
        prompt = payload["contents"][0]["parts"][0]["text"]
        assert "三線散敘" in prompt
        assert "寫母親" in prompt
        assert payload["generationConfig"]["temperature"] == 0.7
        assert payload["safetySettings"][0]["threshold"] == "BLOCK_ONLY_HIGH"


# --- Client disconnect ---


class TestDisconnect:
    def test_disconnect_during_upstream_call_is_499(self):
        fake = FakeUpstream(index=0)

        async def handler(request):
            if request.url.host == "generativelanguage.googleapis.com":
                fake.keys_tried.append(request.url.params["key"])
                await asyncio.sleep(30)
            return fake.handler(request)

        checks = []

        async def disconnected(self):
            checks.append(1)
            return len(checks) > 1

        app = create_app(settings_loader=lambda: load_settings(ENV), transport=httpx.MockTransport(handler))
        with patch.object(Request, "is_disconnected", disconnected):
            resp = TestClient(app).post(ENDPOINT, json=BODY)
        assert resp.status_code == 499
        assert resp.json() == {"error": "request cancelled"}
        assert fake.keys_tried == ["key-a"]
        assert fake.kv_writes == []

    def test_disconnect_before_first_attempt_is_499(self):
        fake = FakeUpstream()

        async def disconnected(self):
            return True

        with patch.object(Request, "is_disconnected", disconnected):
            resp = _client(fake, ENV).post(ENDPOINT, json=BODY)
        assert resp.status_code == 499
        assert fake.keys_tried == []


# --- Catch-all ---


class TestUnexpectedErrors:
    def test_internal_fault_is_json_500(self):
        def broken_loader():
            raise RuntimeError("boom")

        app = create_app(settings_loader=broken_loader)
        resp = TestClient(app).post(ENDPOINT, json=BODY)
        assert resp.status_code == 500
        assert resp.json() == {"error": "internal server error"}
