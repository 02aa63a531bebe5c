"""Unit tests for ChatRunner against an in-process gateway."""

from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from chatflow.chat import GATEWAY_TIMEOUT, ChatRunner, reference_prompt
from chatflow.store import ROOT_NODE_ID, ChatFlowStore, Message


class FakeGateway:
    """Stand-in for /api/chat that streams configurable text chunks."""

    def __init__(self):
        self.status = 200
        self.error_text = "API key is required"
        self.chunks = ["Hel".encode(), "lo ".encode(), "wörld".encode()]
        self.hold = False
        self.release = asyncio.Event()
        self.requests: list = []
        self.app = web.Application()
        self.app.router.add_post("/api/chat", self.handle_chat)

    async def handle_chat(self, request: web.Request) -> web.StreamResponse:
        self.requests.append({"headers": dict(request.headers), "json": await request.json()})
        if self.status != 200:
            return web.Response(status=self.status, text=self.error_text)

        response = web.StreamResponse(headers={"Content-Type": "text/plain; charset=utf-8"})
        await response.prepare(request)
        for chunk in self.chunks:
            await response.write(chunk)
        if self.hold:
            await self.release.wait()
        await response.write_eof()
        return response


@pytest.fixture
async def gateway():
    fake = FakeGateway()
    server = TestServer(fake.app)
    await server.start_server()
    fake.url = f"http://{server.host}:{server.port}"
    yield fake
    fake.release.set()
    await server.close()


@pytest.fixture
async def runner(gateway):
    async with aiohttp.ClientSession() as session:
        yield ChatRunner(session, gateway.url)


@pytest.fixture
def store():
    store = ChatFlowStore()
    store.set_active_provider("openai")
    store.update_provider_config("openai", api_key="sk-test", base_url="https://api.openai.com/v1",
                                 selected_model_id="gpt-4o-mini")
    return store


@pytest.mark.asyncio
async def test_reply_is_streamed_into_the_node(runner, gateway, store):
    messages = [Message("user", "Hi", id="u1")]
    store.update_node_data(ROOT_NODE_ID, messages=messages)

    reply = await runner.send(store, ROOT_NODE_ID, messages)

    assert reply == "Hello wörld"
    root = store.find_node(ROOT_NODE_ID)
    assert [(m.role, m.text) for m in root.messages] == [("user", "Hi"), ("assistant", "Hello wörld")]
    assert root.messages[-1].id.endswith("-ai")
    assert root.is_loading is False

    sent = gateway.requests[0]
    assert sent["json"] == {"messages": [{"role": "user", "content": "Hi"}]}
    assert sent["headers"]["x-api-key"] == "sk-test"
    assert sent["headers"]["x-base-url"] == "https://api.openai.com/v1"
    assert sent["headers"]["x-model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_multibyte_text_split_across_chunks(runner, gateway, store):
    encoded = "naïve".encode()
    split = encoded.index("ï".encode()) + 1
    gateway.chunks = [encoded[:split], encoded[split:]]

    assert await runner.send(store, ROOT_NODE_ID, [Message("user", "Hi")]) == "naïve"


@pytest.mark.asyncio
async def test_branch_reference_becomes_system_prompt(runner, gateway, store):
    child_id = store.create_branch(ROOT_NODE_ID, "entanglement", initial_prompt="What is it?")

    await runner.run_pending(store, child_id)

    sent = gateway.requests[0]["json"]["messages"]
    assert sent[0] == {"role": "system", "content": reference_prompt("entanglement")}
    assert sent[1] == {"role": "user", "content": "What is it?"}
    child = store.find_node(child_id)
    assert child.pending_ai_request is False
    assert child.messages[-1].text == "Hello wörld"


@pytest.mark.asyncio
async def test_run_pending_only_fires_once(runner, gateway, store):
    child_id = store.create_branch(ROOT_NODE_ID, "entanglement", initial_prompt="What is it?")

    await runner.run_pending(store, child_id)
    assert await runner.run_pending(store, child_id) is None

    assert len(gateway.requests) == 1


@pytest.mark.asyncio
async def test_gateway_rejection_is_recorded_as_error_message(runner, gateway, store):
    gateway.status = 401
    messages = [Message("user", "Hi")]

    assert await runner.send(store, ROOT_NODE_ID, messages) is None

    root = store.find_node(ROOT_NODE_ID)
    error = root.messages[-1]
    assert error.role == "assistant"
    assert error.text == "Error: API key is required"
    assert error.id.endswith("-error")
    assert root.is_loading is False


@pytest.mark.asyncio
async def test_unreachable_gateway_is_recorded_as_error_message(store):
    async with aiohttp.ClientSession() as session:
        runner = ChatRunner(session, "http://127.0.0.1:1")
        assert await runner.send(store, ROOT_NODE_ID, [Message("user", "Hi")]) is None

    assert store.find_node(ROOT_NODE_ID).messages[-1].text.startswith("Error: ")


@pytest.mark.asyncio
async def test_empty_message_list_is_not_sent(runner, gateway, store):
    assert await runner.send(store, ROOT_NODE_ID, []) is None
    assert gateway.requests == []


@pytest.mark.asyncio
async def test_cancel_keeps_partial_reply(runner, gateway, store):
    gateway.chunks = [b"Partial"]
    gateway.hold = True
    messages = [Message("user", "Tell me a long story")]

    task = asyncio.create_task(runner.send(store, ROOT_NODE_ID, messages))
    for _ in range(200):
        root = store.find_node(ROOT_NODE_ID)
        if root.messages and root.messages[-1].text == "Partial":
            break
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    root = store.find_node(ROOT_NODE_ID)
    assert [m.text for m in root.messages] == ["Tell me a long story", "Partial"]
    assert root.is_loading is False


@pytest.mark.asyncio
async def test_reply_lands_in_its_own_session_after_switch(runner, gateway, store):
    first_id = store.active_session_id
    gateway.hold = True
    messages = [Message("user", "Hi")]

    task = asyncio.create_task(runner.send(store, ROOT_NODE_ID, messages))
    for _ in range(200):
        if gateway.requests:
            break
        await asyncio.sleep(0.01)

    store.create_session()
    gateway.release.set()
    await task

    assert store.find_node(ROOT_NODE_ID).messages == []
    first_root = store.find_session(first_id).find_node(ROOT_NODE_ID)
    assert first_root.messages[-1].text == "Hello wörld"
    assert first_root.is_loading is False


@pytest.mark.asyncio
async def test_stalled_reply_past_client_timeout_is_recorded_as_error(gateway, store):
    gateway.chunks = [b"partial"]
    gateway.hold = True
    messages = [Message("user", "hi", id="u1")]
    store.update_node_data(ROOT_NODE_ID, messages=messages)

    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=0.5)) as session:
        reply = await ChatRunner(session, gateway.url).send(store, ROOT_NODE_ID, messages)

    assert reply is None
    root = store.find_node(ROOT_NODE_ID)
    assert [m.role for m in root.messages] == ["user", "assistant"]
    assert root.messages[-1].text.startswith("Error:")
    assert root.is_loading is False


def test_gateway_timeout_has_no_total_limit():
    assert GATEWAY_TIMEOUT.total is None
    assert GATEWAY_TIMEOUT.sock_connect == 30
