"""Shared test fixtures."""

from __future__ import annotations

import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer


def sse(*payloads) -> bytes:
    """Encode payloads as an SSE body, one data line per payload."""
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def gemini_chunk(*parts, wrapped: bool = True) -> dict:
    response = {"candidates": [{"content": {"role": "model", "parts": list(parts)}}]}
    return {"response": response} if wrapped else response


class FakeGoogle:
    """In-process stand-in for the Google token endpoint and Code Assist API."""

    def __init__(self):
        self.url = ""
        self.refresh_calls = 0
        self.token_requests: list[dict] = []
        self.token_status = 200
        self.code_status = 200
        self.code_payload: dict = {"access_token": "code-access", "refresh_token": "code-refresh", "expires_in": 3599}
        self.project_id = "proj-123"
        self.load_status = 200
        self.stream_status = 200
        self.stream_body = sse(gemini_chunk({"text": "Hello"}), gemini_chunk({"text": " world"}))
        self.stream_breaks = False
        self.models_status = 200
        self.models_payload: dict = {"models": {}}
        self.openai_body = sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            "[DONE]",
        )
        self.last_stream: dict = {}
        self.last_openai: dict = {}
        self.last_models: dict = {}

        self.app = web.Application()
        self.app.router.add_post("/token", self.handle_token)
        self.app.router.add_post("/v1internal:loadCodeAssist", self.handle_load)
        self.app.router.add_post("/v1internal:streamGenerateContent", self.handle_stream)
        self.app.router.add_post("/v1internal:fetchAvailableModels", self.handle_models)
        self.app.router.add_post("/v1/chat/completions", self.handle_openai)

    @property
    def token_url(self) -> str:
        return f"{self.url}/token"

    async def handle_token(self, request: web.Request) -> web.Response:
        form = dict(await request.post())
        self.token_requests.append(form)

        if form.get("grant_type") == "refresh_token":
            self.refresh_calls += 1
            if self.token_status != 200:
                return web.Response(status=self.token_status, text='{"error": "invalid_grant"}')
            return web.json_response({
                "access_token": f"access-{self.refresh_calls}",
                "expires_in": 3600,
                "token_type": "Bearer",
            })

        return web.json_response(self.code_payload, status=self.code_status)

    async def handle_load(self, request: web.Request) -> web.Response:
        if self.load_status != 200:
            return web.Response(status=self.load_status, text="unavailable")
        return web.json_response({"cloudaicompanionProject": self.project_id})

    async def handle_stream(self, request: web.Request) -> web.Response:
        self.last_stream = {
            "headers": dict(request.headers),
            "query": dict(request.query),
            "json": await request.json(),
        }
        if self.stream_status != 200:
            return web.Response(status=self.stream_status, text="upstream exploded")
        if self.stream_breaks:
            # First event, then the connection drops mid-body
            response = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await response.prepare(request)
            await response.write(sse(gemini_chunk({"text": "Hello"})))
            request.transport.close()
            return response
        return web.Response(body=self.stream_body, content_type="text/event-stream")

    async def handle_models(self, request: web.Request) -> web.Response:
        self.last_models = {"headers": dict(request.headers), "json": await request.json()}
        if self.models_status != 200:
            return web.Response(status=self.models_status, text="quota service down")
        return web.json_response(self.models_payload)

    async def handle_openai(self, request: web.Request) -> web.Response:
        self.last_openai = {"headers": dict(request.headers), "json": await request.json()}
        return web.Response(body=self.openai_body, content_type="text/event-stream")


@pytest.fixture(autouse=True)
def _env_setup(monkeypatch):
    """Set OAuth client credentials and clear anything the host may define."""
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "gemini-client-id")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "gemini-client-secret")
    monkeypatch.setenv("ANTIGRAVITY_CLIENT_ID", "antigravity-client-id")
    monkeypatch.setenv("ANTIGRAVITY_CLIENT_SECRET", "antigravity-client-secret")
    for name in (
        "GEMINI_REFRESH_TOKEN",
        "ANTIGRAVITY_REFRESH_TOKEN",
        "CHATFLOW_ENV",
        "R2_ENDPOINT",
        "R2_ACCESS_KEY_ID",
        "R2_SECRET_ACCESS_KEY",
        "R2_BUCKET",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
async def fake_google():
    upstream = FakeGoogle()
    server = TestServer(upstream.app)
    await server.start_server()
    upstream.url = f"http://{server.host}:{server.port}"
    yield upstream
    await server.close()


@pytest.fixture
def gemini_manager(fake_google, tmp_path):
    from chatflow.proxy.token_manager import GeminiTokenManager

    return GeminiTokenManager(token_path=tmp_path / "gemini" / "tokens.json", token_url=fake_google.token_url)


@pytest.fixture
def antigravity_manager(fake_google, tmp_path):
    from chatflow.proxy.token_manager import AntigravityTokenManager

    return AntigravityTokenManager(token_path=tmp_path / "antigravity" / "tokens.json", token_url=fake_google.token_url)
