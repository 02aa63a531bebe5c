"""
chatflow gateway HTTP server.

Run with: python -m chatflow.proxy.server

Endpoints:
    POST /api/chat                 - stream assistant text for a message list
    POST /api/gemini/auth          - exchange a Gemini CLI OAuth code
    POST /api/antigravity/auth     - exchange an Antigravity OAuth code
    GET  /api/gemini/models        - Gemini CLI model list
    GET  /api/antigravity/models   - Antigravity model list with quota
    GET  /api/storage/sync         - download synced sessions
    POST /api/storage/sync         - upload sessions
    GET  /health                   - health check
"""

import os
import sys
import json
import time
import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import web
from botocore.exceptions import BotoCoreError, ClientError

from chatflow import __version__
from chatflow.proxy.errors import (
    ChatFlowError,
    ConfigurationError,
    InvalidRequestError,
    MissingAPIKeyError,
    UpstreamError,
)
from chatflow.proxy.gateway import (
    UPSTREAM_TIMEOUT,
    Backend,
    ChatGateway,
    ChatRequest,
    Provider,
    default_backends,
)
from chatflow.proxy.models import fetch_available_models, gemini_cli_model_list
from chatflow.proxy.oauth import CODE_ASSIST_ENDPOINT, exchange_code_for_tokens
from chatflow.proxy.storage import SessionStorage, StorageCredentials
from chatflow.utils import get_fallback_antigravity_models

logger = logging.getLogger(__name__)

STORAGE_NOT_CONFIGURED = (
    "R2 storage not configured. Set credentials in Settings > Storage "
    "or use environment variables."
)


async def _read_json(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class GatewayServer:
    """Request handlers for the gateway. Owns the shared upstream session."""

    def __init__(self, backends: Optional[Dict[Provider, Backend]] = None,
                 code_assist_endpoint: str = CODE_ASSIST_ENDPOINT,
                 storage_factory=SessionStorage):
        self.backends = backends if backends is not None else default_backends()
        self.code_assist_endpoint = code_assist_endpoint
        self.storage_factory = storage_factory
        self.session: Optional[aiohttp.ClientSession] = None
        self.gateway: Optional[ChatGateway] = None

    async def client_session_ctx(self, app: web.Application):
        self.session = aiohttp.ClientSession(timeout=UPSTREAM_TIMEOUT)
        self.gateway = ChatGateway(self.session, self.backends, self.code_assist_endpoint)
        yield
        await self.session.close()

    async def _safe_write(self, response: web.StreamResponse, data: bytes) -> bool:
        """Write to the client, return False if it disconnected."""
        try:
            await response.write(data)
            return True
        except (ConnectionResetError, BrokenPipeError, ConnectionAbortedError):
            logger.debug("[Stream] Client disconnected")
            return False

    # Chat

    async def handle_chat(self, request: web.Request) -> web.StreamResponse:
        """Relay one chat request as a raw text stream."""
        try:
            chat_request = ChatRequest.from_http(await _read_json(request), request.headers)
            upstream = await self.gateway.open_stream(chat_request)
        except MissingAPIKeyError as e:
            return web.Response(text=str(e), status=401)
        except InvalidRequestError as e:
            return web.Response(text=str(e), status=400)
        except (ChatFlowError, aiohttp.ClientError) as e:
            logger.error("Chat API error: %s", e)
            return web.Response(text=f"Error: {e}", status=500)
        except Exception as e:
            logger.exception("Chat setup failed")
            return web.Response(text=f"Error: {str(e) or type(e).__name__}", status=500)

        response = web.StreamResponse(status=200, headers={
            "Content-Type": "text/plain; charset=utf-8",
            "Cache-Control": "no-cache",
        })
        await response.prepare(request)

        try:
            async for text in upstream:
                if not await self._safe_write(response, text.encode("utf-8")):
                    break
        except Exception as e:
            # The stream is only closed, no error text goes to the client
            logger.error("Stream error: %r", e)
        finally:
            await upstream.aclose()

        try:
            await response.write_eof()
        except (ConnectionResetError, BrokenPipeError, ConnectionAbortedError):
            pass
        return response

    # OAuth code exchange

    async def handle_gemini_auth(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        code = body.get("code")
        if not code:
            return web.json_response({"error": "Code is required"}, status=400)

        token_manager = self.backends[Provider.GEMINI_CLI].token_manager
        try:
            status, data = await exchange_code_for_tokens(
                self.session, code,
                token_manager.client_id, token_manager.client_secret,
                redirect_uri=body.get("redirect_uri"),
                token_url=token_manager.token_url,
            )
        except (ConfigurationError, aiohttp.ClientError) as e:
            logger.error("Token Exchange Error: %s", e)
            return web.json_response({"error": str(e)}, status=500)

        if not isinstance(data, dict):
            logger.error("Token Exchange Error: %s %s", status, data)
            return web.json_response({"error": f"Token exchange failed: {data}"}, status=500)

        if data.get("error"):
            message = data.get("error_description") or data["error"]
            logger.error("Token Exchange Error: %s", message)
            return web.json_response({"error": message}, status=500)

        if not data.get("refresh_token"):
            return web.json_response({
                "error": "No refresh token returned. Please try revoking access and authorizing again.",
            }, status=500)

        return web.json_response({"refresh_token": data["refresh_token"]})

    async def handle_antigravity_auth(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        code = body.get("code")
        if not code:
            return web.json_response({"error": "Authorization code is required"}, status=400)

        token_manager = self.backends[Provider.ANTIGRAVITY].token_manager
        try:
            status, data = await exchange_code_for_tokens(
                self.session, code,
                token_manager.client_id, token_manager.client_secret,
                redirect_uri=body.get("redirect_uri"),
                token_url=token_manager.token_url,
            )
        except (ConfigurationError, aiohttp.ClientError) as e:
            logger.error("Antigravity auth error: %s", e)
            return web.json_response({"error": str(e)}, status=500)

        if not 200 <= status < 300:
            error_text = data if isinstance(data, str) else json.dumps(data)
            logger.error("Antigravity token exchange failed: %s", error_text)
            return web.json_response({"error": f"Token exchange failed: {error_text}"}, status=status)

        if not isinstance(data, dict):
            return web.json_response({"error": f"Token exchange failed: {data}"}, status=500)

        if not data.get("refresh_token"):
            return web.json_response({
                "error": (
                    "No refresh token received. This may happen if you have previously "
                    "authorized this app. Please revoke access in Google Account settings "
                    "and try again."
                ),
                "access_token": data.get("access_token"),
            }, status=400)

        token_manager.save_refresh_token(data["refresh_token"])

        return web.json_response({
            "refresh_token": data["refresh_token"],
            "access_token": data.get("access_token"),
            "expires_in": data.get("expires_in"),
        })

    # Models

    async def handle_gemini_models(self, request: web.Request) -> web.Response:
        """Fixed Gemini CLI list. A bearer token, if present, is checked best-effort."""
        api_key = request.headers.get("Authorization", "").replace("Bearer ", "", 1).strip()
        if api_key:
            token_manager = self.backends[Provider.GEMINI_CLI].token_manager
            try:
                await token_manager.get_access_token(api_key, session=self.session)
            except (ChatFlowError, aiohttp.ClientError) as e:
                logger.warning("Gemini token validation failed, but returning hardcoded list: %s", e)

        return web.json_response({"data": gemini_cli_model_list()})

    async def handle_antigravity_models(self, request: web.Request) -> web.Response:
        """Live Antigravity model list. Always 200, with a fallback list on failure."""
        token_manager = self.backends[Provider.ANTIGRAVITY].token_manager
        try:
            access_token = await token_manager.get_access_token(
                request.headers.get("x-api-key"), session=self.session
            )
            project_id = await self.gateway.resolve_project_id(access_token)
        except (ChatFlowError, aiohttp.ClientError) as e:
            logger.error("Antigravity models error: %s", e)
            return web.json_response({
                "error": str(e),
                "models": get_fallback_antigravity_models()[:1],
            })

        try:
            models = await fetch_available_models(
                self.session, access_token, project_id, endpoint=self.code_assist_endpoint
            )
        except (UpstreamError, aiohttp.ClientError, ValueError) as e:
            return web.json_response({
                "models": get_fallback_antigravity_models(),
                "projectId": project_id,
                "error": str(e),
            })

        return web.json_response({"models": models, "projectId": project_id})

    # Storage sync

    async def handle_storage_get(self, request: web.Request) -> web.Response:
        credentials = StorageCredentials.from_query_param(request.query.get("creds"))
        storage = self.storage_factory(credentials)
        if not storage.is_configured:
            return web.json_response({"error": STORAGE_NOT_CONFIGURED}, status=503)

        try:
            data = await asyncio.to_thread(storage.fetch)
        except (ClientError, BotoCoreError, ValueError) as e:
            logger.error("R2 GET error: %s", e)
            return web.json_response({"error": "Failed to fetch sessions"}, status=500)

        return web.json_response(data)

    async def handle_storage_post(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        credentials = StorageCredentials.from_dict(body.get("storageConfig"))
        storage = self.storage_factory(credentials)
        if not storage.is_configured:
            return web.json_response({"error": STORAGE_NOT_CONFIGURED}, status=503)

        try:
            await asyncio.to_thread(storage.upload, body.get("sessions") or [])
        except (ClientError, BotoCoreError, ValueError) as e:
            logger.error("R2 POST error: %s", e)
            return web.json_response({"error": "Failed to upload sessions"}, status=500)

        return web.json_response({"success": True, "timestamp": int(time.time() * 1000)})

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "version": __version__})


def create_app(server: Optional[GatewayServer] = None) -> web.Application:
    """Create the gateway application."""
    server = server or GatewayServer()

    app = web.Application()
    app.cleanup_ctx.append(server.client_session_ctx)

    app.router.add_post("/api/chat", server.handle_chat)
    app.router.add_post("/api/gemini/auth", server.handle_gemini_auth)
    app.router.add_post("/api/antigravity/auth", server.handle_antigravity_auth)
    app.router.add_get("/api/gemini/models", server.handle_gemini_models)
    app.router.add_get("/api/antigravity/models", server.handle_antigravity_models)
    app.router.add_get("/api/storage/sync", server.handle_storage_get)
    app.router.add_post("/api/storage/sync", server.handle_storage_post)
    app.router.add_get("/health", server.handle_health)

    return app


def configure_logging(level: Optional[str] = None) -> None:
    """Log to stdout; the background launcher redirects it to the log file."""
    logging.basicConfig(
        level=(level or os.environ.get("LOG_LEVEL", "INFO")).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )


def main(host: Optional[str] = None, port: Optional[int] = None) -> None:
    configure_logging()

    host = host or os.environ.get("HOST", "127.0.0.1")
    port = port or int(os.environ.get("PORT", "3210"))

    logger.info("Starting chatflow gateway v%s on http://%s:%s", __version__, host, port)
    web.run_app(create_app(), host=host, port=port, print=None)


if __name__ == "__main__":
    main()
