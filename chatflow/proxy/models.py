"""
Model discovery for the Code Assist backends.

Gemini CLI serves a fixed model list. Antigravity reports its models, with
remaining quota, through fetchAvailableModels.
"""

import time
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from chatflow.proxy.errors import UpstreamError
from chatflow.proxy.oauth import CODE_ASSIST_ENDPOINT, MODELS_USER_AGENT
from chatflow.utils import get_gemini_cli_models

logger = logging.getLogger(__name__)


def format_model_name(model_id: str) -> str:
    """
    Display name for a model id.

    gemini-2.5-flash -> Gemini 2.5 Flash
    """
    model_id = model_id.replace("models/", "", 1)
    return " ".join(word[:1].upper() + word[1:] for word in model_id.split("-"))


def model_sort_key(model_id: str) -> int:
    """Gemini 2.5 first, then Gemini 3, then Claude, then anything else."""
    if "gemini-2.5" in model_id:
        return 0
    if "gemini-3" in model_id:
        return 1
    if "claude" in model_id:
        return 2
    return 3


def gemini_cli_model_list() -> List[Dict[str, Any]]:
    """The Gemini CLI list in OpenAI /models format."""
    created = int(time.time() * 1000)
    return [
        dict(model, object="model", created=created, owned_by="google")
        for model in get_gemini_cli_models()
    ]


def parse_available_models(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Turn a fetchAvailableModels response into a sorted model list.

    Response format:
        {"models": {"<id>": {"quotaInfo": {"remainingFraction", "resetTime"}}}}
    """
    models: List[Dict[str, Any]] = []

    for model_id, info in (payload.get("models") or {}).items():
        if "gemini" not in model_id and "claude" not in model_id:
            continue

        quota = (info or {}).get("quotaInfo") or {}
        remaining = quota.get("remainingFraction")

        model: Dict[str, Any] = {
            "id": model_id,
            "name": format_model_name(model_id),
            "isMultimodal": True,
        }
        # A fraction of 0 means no quota info, not an exhausted quota
        if remaining:
            model["quotaPercent"] = round(remaining * 100)
        if quota.get("resetTime"):
            model["resetTime"] = quota["resetTime"]
        models.append(model)

    # Stable sort keeps upstream order inside each group
    models.sort(key=lambda m: model_sort_key(m["id"]))
    return models


async def fetch_available_models(session: aiohttp.ClientSession, access_token: str,
                                 project_id: str,
                                 endpoint: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Fetch the Antigravity model list for a project.

    Raises:
        UpstreamError: If fetchAvailableModels answers with a non-2xx status
    """
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
        "User-Agent": MODELS_USER_AGENT,
    }
    url = f"{endpoint or CODE_ASSIST_ENDPOINT}/v1internal:fetchAvailableModels"

    async with session.post(url, json={"project": project_id}, headers=headers) as response:
        if not 200 <= response.status < 300:
            error_text = await response.text()
            logger.error("Antigravity fetchAvailableModels failed: %s %s", response.status, error_text[:200])
            raise UpstreamError(response.status, error_text, message=f"API Error: {response.status}")
        payload = await response.json(content_type=None)

    return parse_available_models(payload if isinstance(payload, dict) else {})
