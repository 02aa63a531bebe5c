"""
OAuth access-token managers for the Gemini CLI and Antigravity backends.

Both managers turn a long-lived refresh token into a short-lived bearer
token and cache it until it is within five minutes of expiring.

Refresh token sources, in priority order:
1. the token supplied by the caller (the x-api-key header)
2. the provider's environment variable
3. the provider's token file under the user's home directory

Token storage:
    Gemini CLI:  ~/.gemini/tokens.json
    Antigravity: ~/.antigravity/tokens.json
"""

import os
import json
import time
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from chatflow.proxy.errors import NoRefreshTokenError, OAuthConfigError, TokenRefreshError
from chatflow.proxy.oauth import GOOGLE_TOKEN_ENDPOINT

logger = logging.getLogger(__name__)

# Refresh when the cached token expires in less than 5 minutes
SAFETY_WINDOW_MS = 300_000
DEFAULT_EXPIRES_IN = 3600

GEMINI_TOKEN_PATH = Path.home() / ".gemini" / "tokens.json"
ANTIGRAVITY_TOKEN_PATH = Path.home() / ".antigravity" / "tokens.json"


def now_ms() -> int:
    return int(time.time() * 1000)


def is_development() -> bool:
    return os.environ.get("CHATFLOW_ENV", "").lower() == "development"


class CachedToken:
    """An access token and its expiry in epoch milliseconds."""

    def __init__(self, access_token: str, expires_at: int):
        self.access_token = access_token
        self.expires_at = expires_at

    @property
    def is_fresh(self) -> bool:
        return bool(self.access_token) and self.expires_at - now_ms() > SAFETY_WINDOW_MS


class TokenManager:
    """
    Shared refresh-token resolution and refresh logic.

    Subclasses decide how access tokens are cached.
    """

    provider = ""
    refresh_token_env = ""
    client_id_env = ""
    client_secret_env = ""

    def __init__(self, token_path: Path, token_url: str = GOOGLE_TOKEN_ENDPOINT):
        self.token_path = token_path
        self.token_url = token_url

    @property
    def client_id(self) -> str:
        value = os.environ.get(self.client_id_env)
        if not value:
            raise OAuthConfigError(self.client_id_env)
        return value

    @property
    def client_secret(self) -> str:
        value = os.environ.get(self.client_secret_env)
        if not value:
            raise OAuthConfigError(self.client_secret_env)
        return value

    def load_token_file(self) -> Optional[Dict[str, Any]]:
        """Read the token file, or None when it is missing or unreadable."""
        if not self.token_path.exists():
            return None

        try:
            with open(self.token_path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to read %s token file: %s", self.provider, e)
            return None

        return data if isinstance(data, dict) else None

    def write_token_file(self, data: Dict[str, Any]) -> None:
        """Write the token file, creating parent directories. Failures are logged."""
        try:
            self.token_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.token_path, "w") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.error("Failed to save %s tokens to file: %s", self.provider, e)

    def resolve_refresh_token(self, user_provided: Optional[str] = None) -> str:
        """
        Pick the refresh token to use.

        Raises:
            NoRefreshTokenError: If no source provides one
        """
        if user_provided and user_provided.strip():
            return user_provided.strip()

        env_token = os.environ.get(self.refresh_token_env)
        if env_token:
            return env_token

        file_data = self.load_token_file()
        if file_data and file_data.get("refresh_token"):
            return file_data["refresh_token"]

        raise NoRefreshTokenError(self.provider)

    async def refresh_access_token(self, refresh_token: str,
                                   session: Optional[aiohttp.ClientSession] = None) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new access token.

        Returns:
            dict: access_token, refresh_token, expiry_date (epoch ms),
            token_type and scope

        Raises:
            TokenRefreshError: If the token endpoint answers with a non-2xx status
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        if session is None:
            async with aiohttp.ClientSession() as own_session:
                tokens = await self._post_refresh(own_session, data)
        else:
            tokens = await self._post_refresh(session, data)

        expires_in = tokens.get("expires_in") or DEFAULT_EXPIRES_IN
        return {
            "access_token": tokens.get("access_token", ""),
            # Google does not always hand back a new refresh token
            "refresh_token": tokens.get("refresh_token") or refresh_token,
            "expiry_date": now_ms() + int(expires_in) * 1000,
            "token_type": tokens.get("token_type", "Bearer"),
            "scope": tokens.get("scope"),
        }

    async def _post_refresh(self, session: aiohttp.ClientSession, data: Dict[str, str]) -> Dict[str, Any]:
        logger.info("[%s] Refreshing access token...", self.provider)
        async with session.post(self.token_url, data=data) as response:
            if not 200 <= response.status < 300:
                error_text = await response.text()
                logger.error("[%s] Token refresh failed: %s", self.provider, response.status)
                raise TokenRefreshError(self.provider, response.status, error_text)
            return await response.json(content_type=None)

    async def get_access_token(self, user_provided_refresh_token: Optional[str] = None,
                               session: Optional[aiohttp.ClientSession] = None) -> str:
        raise NotImplementedError

    def clear_cache(self) -> None:
        raise NotImplementedError


class GeminiTokenManager(TokenManager):
    """
    Token manager for the Gemini CLI Code Assist quota.

    Caches access tokens per refresh token so several identities can share
    one gateway process.
    """

    provider = "Gemini"
    refresh_token_env = "GEMINI_REFRESH_TOKEN"
    client_id_env = "GOOGLE_CLIENT_ID"
    client_secret_env = "GOOGLE_CLIENT_SECRET"

    def __init__(self, token_path: Path = GEMINI_TOKEN_PATH, token_url: str = GOOGLE_TOKEN_ENDPOINT):
        super().__init__(token_path, token_url)
        self._cache: Dict[str, CachedToken] = {}

    async def get_access_token(self, user_provided_refresh_token: Optional[str] = None,
                               session: Optional[aiohttp.ClientSession] = None) -> str:
        refresh_token = self.resolve_refresh_token(user_provided_refresh_token)
        caller_supplied = bool(user_provided_refresh_token and user_provided_refresh_token.strip())

        cached = self._cache.get(refresh_token)

        # The token file only seeds the cache for the env/file workflow
        if cached is None and not caller_supplied:
            file_data = self.load_token_file()
            if file_data and file_data.get("refresh_token") == refresh_token:
                cached = CachedToken(file_data.get("access_token", ""), int(file_data.get("expiry_date") or 0))
                self._cache[refresh_token] = cached

        if cached is not None and cached.is_fresh:
            return cached.access_token

        token_data = await self.refresh_access_token(refresh_token, session=session)
        self._cache[refresh_token] = CachedToken(token_data["access_token"], token_data["expiry_date"])

        if not caller_supplied and is_development():
            self.write_token_file(token_data)

        return token_data["access_token"]

    def clear_cache(self) -> None:
        self._cache.clear()


class AntigravityTokenManager(TokenManager):
    """
    Token manager for the Antigravity quota.

    Single identity: one access token is cached for the whole process.
    """

    provider = "Antigravity"
    refresh_token_env = "ANTIGRAVITY_REFRESH_TOKEN"
    client_id_env = "ANTIGRAVITY_CLIENT_ID"
    client_secret_env = "ANTIGRAVITY_CLIENT_SECRET"

    def __init__(self, token_path: Path = ANTIGRAVITY_TOKEN_PATH, token_url: str = GOOGLE_TOKEN_ENDPOINT):
        super().__init__(token_path, token_url)
        self._cache: Optional[CachedToken] = None

    async def get_access_token(self, user_provided_refresh_token: Optional[str] = None,
                               session: Optional[aiohttp.ClientSession] = None) -> str:
        refresh_token = self.resolve_refresh_token(user_provided_refresh_token)

        if self._cache is not None and self._cache.is_fresh:
            return self._cache.access_token

        token_data = await self.refresh_access_token(refresh_token, session=session)
        self._cache = CachedToken(token_data["access_token"], token_data["expiry_date"])
        return token_data["access_token"]

    def save_refresh_token(self, refresh_token: str) -> None:
        """Persist the refresh token, replacing any existing token file."""
        self.write_token_file({"refresh_token": refresh_token})

    def clear_cache(self) -> None:
        self._cache = None


gemini_token_manager = GeminiTokenManager()
antigravity_token_manager = AntigravityTokenManager()
