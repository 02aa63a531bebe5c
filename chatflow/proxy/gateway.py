"""
Chat gateway: routes a chat request to the right upstream backend.

The provider is resolved once from the request's base URL and model id:

1. gemini-cli     - Gemini CLI Code Assist quota (OAuth)
2. antigravity    - Antigravity quota (OAuth)
3. openai         - any OpenAI-compatible chat completions API

Every backend ends up as an async iterator of plain text chunks.
"""

import logging
from enum import Enum
from urllib.parse import urlparse
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import aiohttp

from chatflow.proxy.adapters import (
    Adapter,
    AntigravityAdapter,
    GeminiCLIAdapter,
    iter_sse_events,
)
from chatflow.proxy.errors import InvalidRequestError, MissingAPIKeyError, UpstreamError
from chatflow.proxy.oauth import CODE_ASSIST_ENDPOINT, discover_project_id
from chatflow.proxy.token_manager import (
    TokenManager,
    antigravity_token_manager,
    gemini_token_manager,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o"

# Replies run until upstream closes the stream
UPSTREAM_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=30)

OPENROUTER_HOST = "openrouter.ai"
OPENROUTER_HEADERS = {
    "HTTP-Referer": "https://chatflow.app",
    "X-Title": "ChatFlow",
}


class Provider(Enum):
    """Backend selected for a chat request."""

    GEMINI_CLI = "gemini-cli"
    ANTIGRAVITY = "antigravity"
    OPENAI_COMPATIBLE = "openai"


def resolve_provider(base_url: str, model: str) -> Provider:
    """First match wins: Gemini CLI, then Antigravity, then OpenAI-compatible."""
    base_url = (base_url or "").rstrip("/")
    model = model or ""

    if base_url == "gemini-cli" or base_url.endswith("/api/gemini") or model.startswith("gemini-cli"):
        return Provider.GEMINI_CLI
    if base_url.endswith("/api/antigravity") or model.startswith("antigravity/"):
        return Provider.ANTIGRAVITY
    return Provider.OPENAI_COMPATIBLE


def is_openrouter(base_url: str) -> bool:
    host = urlparse(base_url).hostname or ""
    return host == OPENROUTER_HOST or host.endswith("." + OPENROUTER_HOST)


def upstream_model_name(provider: Provider, model: str) -> str:
    """Strip the sub-backend prefix from a model id."""
    prefix = f"{provider.value}/"
    if provider is not Provider.OPENAI_COMPATIBLE and model.startswith(prefix):
        return model[len(prefix):]
    return model


class ChatRequest:
    """A chat request as received by /api/chat."""

    def __init__(self, messages: List[Dict[str, Any]], api_key: Optional[str] = None,
                 base_url: Optional[str] = None, model: Optional[str] = None):
        self.messages = messages
        self.api_key = api_key or None
        self.base_url = base_url or DEFAULT_BASE_URL
        self.model = model or DEFAULT_MODEL

    @classmethod
    def from_http(cls, body: Dict[str, Any], headers: Mapping[str, str]) -> "ChatRequest":
        messages = body.get("messages") or []
        if not isinstance(messages, list) or not all(isinstance(m, dict) for m in messages):
            raise InvalidRequestError("messages must be a list of {role, content} objects")
        return cls(
            messages=messages,
            api_key=headers.get("x-api-key"),
            base_url=headers.get("x-base-url"),
            model=headers.get("x-model"),
        )

    @property
    def provider(self) -> Provider:
        return resolve_provider(self.base_url, self.model)


class Backend:
    """An OAuth-backed upstream: its adapter plus its token manager."""

    def __init__(self, adapter: Adapter, token_manager: TokenManager):
        self.adapter = adapter
        self.token_manager = token_manager


def default_backends() -> Dict[Provider, Backend]:
    return {
        Provider.GEMINI_CLI: Backend(GeminiCLIAdapter(), gemini_token_manager),
        Provider.ANTIGRAVITY: Backend(AntigravityAdapter(), antigravity_token_manager),
    }


class UpstreamStream:
    """
    An accepted upstream response, iterated as plain text chunks.

    Single pass. aclose() releases the upstream connection.
    """

    def __init__(self, response: aiohttp.ClientResponse, chunks: AsyncIterator[str]):
        self.response = response
        self._chunks = chunks

    def __aiter__(self) -> AsyncIterator[str]:
        return self._chunks

    async def aclose(self) -> None:
        aclose = getattr(self._chunks, "aclose", None)
        if aclose is not None:
            await aclose()
        self.response.release()


async def _gemini_text(adapter: Adapter, response: aiohttp.ClientResponse) -> AsyncIterator[str]:
    async for delta in adapter.stream_deltas(response):
        yield delta["content"]


async def _openai_text(response: aiohttp.ClientResponse) -> AsyncIterator[str]:
    async for payload in iter_sse_events(response.content.iter_any()):
        if not isinstance(payload, dict):
            continue
        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            continue
        content = (choices[0].get("delta") or {}).get("content")
        if content:
            yield content


async def _raise_for_status(response: aiohttp.ClientResponse) -> None:
    if 200 <= response.status < 300:
        return
    error_text = await response.text()
    response.release()
    logger.error("Upstream error %s: %s", response.status, error_text[:200])
    raise UpstreamError(response.status, error_text)


class ChatGateway:
    """
    Per-request router from a ChatRequest to an upstream text stream.

    Holds no conversation state. Discovered Code Assist project ids are
    remembered per access token.
    """

    def __init__(self, session: aiohttp.ClientSession,
                 backends: Optional[Dict[Provider, Backend]] = None,
                 code_assist_endpoint: str = CODE_ASSIST_ENDPOINT):
        self.session = session
        self.backends = backends if backends is not None else default_backends()
        self.code_assist_endpoint = code_assist_endpoint
        self._project_ids: Dict[str, str] = {}

    async def open_stream(self, chat_request: ChatRequest) -> UpstreamStream:
        """
        Connect to the upstream backend for a request.

        Raises:
            MissingAPIKeyError: If the OpenAI-compatible path has no API key
            NoRefreshTokenError, TokenRefreshError: If OAuth fails
            UpstreamError: If the upstream answers with a non-2xx status
        """
        provider = chat_request.provider
        backend = self.backends.get(provider)
        logger.info("Chat request: provider=%s model=%s", provider.value, chat_request.model)

        if backend is not None:
            return await self._open_code_assist(provider, backend, chat_request)
        return await self._open_openai_compatible(chat_request)

    async def resolve_project_id(self, access_token: str) -> str:
        """Code Assist project for an access token, discovered once per token."""
        project_id = self._project_ids.get(access_token)
        if project_id is None:
            project_id = await discover_project_id(self.session, access_token, self.code_assist_endpoint)
            self._project_ids[access_token] = project_id
        return project_id

    async def _open_code_assist(self, provider: Provider, backend: Backend,
                                chat_request: ChatRequest) -> UpstreamStream:
        # For OAuth backends the api key header carries the refresh token
        access_token = await backend.token_manager.get_access_token(chat_request.api_key, session=self.session)
        project_id = await self.resolve_project_id(access_token)

        envelope = backend.adapter.build_request(
            chat_request.messages,
            upstream_model_name(provider, chat_request.model),
            project_id=project_id,
        )

        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        headers.update(backend.adapter.headers)

        url = f"{self.code_assist_endpoint}/v1internal:streamGenerateContent?alt=sse"
        response = await self.session.post(url, json=envelope, headers=headers)
        await _raise_for_status(response)

        return UpstreamStream(response, _gemini_text(backend.adapter, response))

    async def _open_openai_compatible(self, chat_request: ChatRequest) -> UpstreamStream:
        if not chat_request.api_key:
            raise MissingAPIKeyError()

        headers = {
            "Authorization": f"Bearer {chat_request.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if is_openrouter(chat_request.base_url):
            headers.update(OPENROUTER_HEADERS)

        body = {
            "model": chat_request.model,
            "messages": chat_request.messages,
            "stream": True,
        }

        # The base URL is passed through verbatim
        url = f"{chat_request.base_url.rstrip('/')}/chat/completions"
        response = await self.session.post(url, json=body, headers=headers)
        await _raise_for_status(response)

        return UpstreamStream(response, _openai_text(response))
