"""
Google OAuth helpers shared by the Gemini CLI and Antigravity backends.

Covers the consent URL, authorization-code exchange and Code Assist
project discovery. Access-token refresh lives in token_manager.
"""

import json
import os
import random
import string
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

logger = logging.getLogger(__name__)

# Google OAuth configuration
GOOGLE_OAUTH_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
DEFAULT_REDIRECT_URI = "http://localhost"

# Code Assist internal API (serves both Gemini CLI and Antigravity quotas)
CODE_ASSIST_ENDPOINT = os.environ.get("CODE_ASSIST_ENDPOINT", "https://cloudcode-pa.googleapis.com")

GEMINI_SCOPES = [
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

# OAuth scopes required for Antigravity
ANTIGRAVITY_SCOPES = [
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/cclog",
    "https://www.googleapis.com/auth/experimentsandconfigs",
]

MODELS_USER_AGENT = "antigravity/1.11.3 Darwin/arm64"


def build_authorization_url(client_id: str, scopes: list[str],
                            redirect_uri: str = DEFAULT_REDIRECT_URI,
                            state: Optional[str] = None) -> str:
    """
    Build the Google OAuth consent URL.

    prompt=consent forces Google to hand out a refresh token even when the
    user authorized the client before.
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "access_type": "offline",
        "prompt": "consent",
    }
    if state:
        params["state"] = state

    return f"{GOOGLE_OAUTH_ENDPOINT}?{urlencode(params)}"


async def exchange_code_for_tokens(session: aiohttp.ClientSession, code: str,
                                   client_id: str, client_secret: str,
                                   redirect_uri: Optional[str] = None,
                                   token_url: str = GOOGLE_TOKEN_ENDPOINT) -> tuple[int, Any]:
    """
    Exchange an authorization code for tokens.

    Returns:
        tuple: (status, payload) where payload is the decoded JSON body, or
        the raw text when the body is not JSON.
    """
    data = {
        "client_id": client_id,
        "client_secret": client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": redirect_uri or DEFAULT_REDIRECT_URI,
    }

    async with session.post(token_url, data=data) as response:
        text = await response.text()
        try:
            return response.status, json.loads(text)
        except ValueError:
            return response.status, text


def generate_mock_project_id() -> str:
    """Project id used when loadCodeAssist does not return one."""
    chars = string.ascii_lowercase + string.digits
    return "ag-" + "".join(random.choice(chars) for _ in range(16))


def _extract_managed_project_id(payload: Dict[str, Any]) -> Optional[str]:
    """Extract managed project ID from loadCodeAssist responses."""
    companion = payload.get("cloudaicompanionProject")
    if isinstance(companion, str) and companion:
        return companion
    if isinstance(companion, dict):
        for key in ("id", "projectId"):
            value = companion.get(key)
            if isinstance(value, str) and value:
                return value
    return None


async def discover_project_id(session: aiohttp.ClientSession, access_token: str,
                              endpoint: str = CODE_ASSIST_ENDPOINT) -> str:
    """
    Discover the Code Assist project for an access token.

    Falls back to a random ag- project id when discovery fails.
    """
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
        "User-Agent": MODELS_USER_AGENT,
    }
    body = {"metadata": {"ideType": "ANTIGRAVITY"}}

    try:
        async with session.post(f"{endpoint}/v1internal:loadCodeAssist",
                                json=body, headers=headers) as response:
            if response.status == 200:
                project_id = _extract_managed_project_id(await response.json())
                if project_id:
                    return project_id
    except (aiohttp.ClientError, ValueError) as e:
        logger.warning("Failed to get project ID from loadCodeAssist: %s", e)

    return generate_mock_project_id()
