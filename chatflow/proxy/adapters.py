"""
Protocol adapters for the Code Assist internal API.

Both the Gemini CLI and the Antigravity quota speak the Gemini
`contents` format wrapped in an internal envelope, and both answer with a
Server-Sent-Events stream of Gemini responses. The adapters differ only in
how the envelope is built.
"""

import codecs
import json
import uuid
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp

from chatflow.proxy.oauth import generate_mock_project_id

logger = logging.getLogger(__name__)

# Placeholder the UI stores for messages that have no text
PLACEHOLDER_TEXT = "(no content)"

ANTIGRAVITY_USER_AGENT = "antigravity/1.11.9 windows/amd64"
ANTIGRAVITY_MAX_OUTPUT_TOKENS = 64000

ANTIGRAVITY_SAFETY_SETTINGS = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "OFF"},
    {"category": "HARM_CATEGORY_CIVIC_INTEGRITY", "threshold": "OFF"},
]

# Request headers per quota type
ANTIGRAVITY_HEADERS = {
    "User-Agent": ANTIGRAVITY_USER_AGENT,
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "Client-Metadata": '{"ideType":"IDE_UNSPECIFIED","platform":"PLATFORM_UNSPECIFIED","pluginType":"GEMINI"}',
}

GEMINI_CLI_HEADERS = {
    "User-Agent": "google-api-nodejs-client/9.15.1",
    "X-Goog-Api-Client": "gl-node/22.17.0",
    "Client-Metadata": "ideType=IDE_UNSPECIFIED,platform=PLATFORM_UNSPECIFIED,pluginType=GEMINI",
}


def _is_blank(text: Any) -> bool:
    return not isinstance(text, str) or text == PLACEHOLDER_TEXT or not text.strip()


def parse_data_url(url: str) -> Optional[Tuple[str, str]]:
    """Split a data:<mime>;base64,<data> URL into (mime_type, data)."""
    if not isinstance(url, str) or not url.startswith("data:"):
        return None
    header, sep, data = url.partition(";base64,")
    mime_type = header[len("data:"):]
    if not sep or not mime_type or not data:
        return None
    return mime_type, data


def _convert_parts(content: List[Any]) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text":
            text = item.get("text")
            if text:
                parts.append({"text": text})
        elif item.get("type") == "image_url":
            # Remote image URLs are not supported upstream
            inline = parse_data_url((item.get("image_url") or {}).get("url", ""))
            if inline:
                parts.append({"inlineData": {"mimeType": inline[0], "data": inline[1]}})
    return parts


def convert_messages(messages: List[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """
    Convert chat messages into Gemini contents plus a system instruction.

    Args:
        messages: List of {"role", "content"} dictionaries

    Returns:
        tuple: (contents, system_instruction or None)
    """
    contents: List[Dict[str, Any]] = []
    system_texts: List[str] = []

    for msg in messages:
        role = msg.get("role")
        content = msg.get("content", "")

        if role == "system":
            if isinstance(content, str):
                system_texts.append(content)
            continue

        if role == "user":
            gemini_role = "user"
        elif role == "assistant":
            gemini_role = "model"
        else:
            continue

        if isinstance(content, str):
            if _is_blank(content):
                continue
            contents.append({"role": gemini_role, "parts": [{"text": content.strip()}]})
        elif isinstance(content, list):
            parts = _convert_parts(content)
            if parts:
                contents.append({"role": gemini_role, "parts": parts})

    system_text = "\n\n".join(t for t in system_texts if t).strip()
    system_instruction = {"role": "user", "parts": [{"text": system_text}]} if system_text else None

    return contents, system_instruction


def extract_delta_text(payload: Any) -> str:
    """
    Pull the visible text out of one Gemini stream event.

    Thought parts are reasoning tokens and are never returned.
    """
    if not isinstance(payload, dict):
        return ""
    data = payload.get("response", payload)
    if not isinstance(data, dict):
        return ""

    candidates = data.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return ""

    parts = (candidates[0].get("content") or {}).get("parts") or []
    texts: List[str] = []
    for part in parts:
        if not isinstance(part, dict) or part.get("thought"):
            continue
        text = part.get("text")
        if isinstance(text, str):
            texts.append(text)
    return "".join(texts)


def _parse_line(line: str) -> Any:
    if not line.strip():
        return None
    data_str = line[6:] if line.startswith("data: ") else line
    if data_str.strip() == "[DONE]":
        return None
    try:
        return json.loads(data_str)
    except json.JSONDecodeError:
        # Keep-alives and malformed lines are no-ops
        logger.debug("Skipping unparseable SSE line: %s", data_str[:100])
        return None


async def iter_sse_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[Any]:
    """
    Decode raw SSE bytes into JSON payloads, one per complete line.

    A partial trailing line is carried over to the next read. Single pass;
    ends when the byte stream ends.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for chunk in chunks:
        if not chunk:
            continue
        buffer += decoder.decode(chunk)
        lines = buffer.split("\n")
        buffer = lines.pop()

        for line in lines:
            payload = _parse_line(line.rstrip("\r"))
            if payload is not None:
                yield payload

    buffer += decoder.decode(b"", final=True)
    payload = _parse_line(buffer.rstrip("\r"))
    if payload is not None:
        yield payload


async def iter_sse_deltas(chunks: AsyncIterable[bytes]) -> AsyncIterator[Dict[str, str]]:
    """Turn a Gemini SSE byte stream into {"content": text} deltas."""
    async for payload in iter_sse_events(chunks):
        content = extract_delta_text(payload)
        if content:
            yield {"content": content}


class Adapter:
    """Base adapter: subclasses build the request envelope."""

    name = ""
    headers: Dict[str, str] = {}

    def build_request(self, messages: List[Dict[str, Any]], model: str, **options) -> Dict[str, Any]:
        raise NotImplementedError

    def stream_deltas(self, response: aiohttp.ClientResponse) -> AsyncIterator[Dict[str, str]]:
        """Normalize an upstream streamGenerateContent response."""
        return iter_sse_deltas(response.content.iter_any())


class GeminiCLIAdapter(Adapter):
    """Envelope for the Gemini CLI quota: request nested with a sessionId."""

    name = "gemini-cli"
    headers = GEMINI_CLI_HEADERS

    def build_request(self, messages: List[Dict[str, Any]], model: str,
                      project_id: Optional[str] = None,
                      session_id: Optional[str] = None,
                      request_id: Optional[str] = None,
                      temperature: Optional[float] = None,
                      max_tokens: Optional[int] = None) -> Dict[str, Any]:
        contents, system_instruction = convert_messages(messages)

        request: Dict[str, Any] = {"contents": contents}
        if system_instruction:
            request["systemInstruction"] = system_instruction

        config: Dict[str, Any] = {}
        if temperature is not None:
            config["temperature"] = temperature
        if max_tokens is not None:
            config["maxOutputTokens"] = max_tokens
        if config:
            request["generationConfig"] = config

        request["sessionId"] = session_id or f"sess-{uuid.uuid4().hex}"

        return {
            "project": project_id or generate_mock_project_id(),
            "requestId": request_id or f"req-{uuid.uuid4().hex}",
            "model": model if model.startswith("models/") else f"models/{model}",
            "userAgent": "antigravity",
            "request": request,
        }


class AntigravityAdapter(Adapter):
    """Envelope for the Antigravity quota: safety settings and generation config."""

    name = "antigravity"
    headers = ANTIGRAVITY_HEADERS

    def build_request(self, messages: List[Dict[str, Any]], model: str,
                      project_id: Optional[str] = None,
                      request_id: Optional[str] = None,
                      temperature: Optional[float] = None,
                      max_tokens: Optional[int] = None) -> Dict[str, Any]:
        contents, system_instruction = convert_messages(messages)

        generation_config: Dict[str, Any] = {"maxOutputTokens": max_tokens or ANTIGRAVITY_MAX_OUTPUT_TOKENS}
        if temperature is not None:
            generation_config["temperature"] = temperature

        inner_request: Dict[str, Any] = {
            "contents": contents,
            "safetySettings": [dict(s) for s in ANTIGRAVITY_SAFETY_SETTINGS],
            "generationConfig": generation_config,
        }
        if system_instruction:
            inner_request["systemInstruction"] = system_instruction

        return {
            "project": project_id or generate_mock_project_id(),
            "requestId": request_id or f"agent-{uuid.uuid4()}",
            "request": inner_request,
            "model": model,
            "userAgent": ANTIGRAVITY_USER_AGENT,
            "requestType": "GENERATE_CONTENT",
        }
