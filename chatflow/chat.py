"""
Chat runner: sends a node's conversation to the gateway and streams the
reply back into the store.
"""

import codecs
import logging
from typing import Dict, List, Optional

import aiohttp

from chatflow.store import ChatFlowStore, Message, now_ms

logger = logging.getLogger(__name__)

# No total limit, a reply streams for as long as the gateway keeps it open
GATEWAY_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=30)


def reference_prompt(reference: str) -> str:
    return (
        f'The user is asking about this specific text excerpt: "{reference}". '
        "Answer their question about this text."
    )


class ChatRequestError(Exception):
    """Raised when the gateway rejects a chat request."""

    def __init__(self, status: int, text: str):
        super().__init__(text or f"HTTP error! status: {status}")
        self.status = status


class ChatRunner:
    """
    Streams replies from the gateway into ChatFlowStore nodes.

    Cancelling the task running send() aborts the request and leaves the
    conversation as it was streamed so far.
    """

    def __init__(self, session: aiohttp.ClientSession, gateway_url: str):
        self.session = session
        self.gateway_url = gateway_url.rstrip("/")

    def _headers(self, store: ChatFlowStore) -> Dict[str, str]:
        connection = store.connection()
        return {
            "Content-Type": "application/json",
            "x-api-key": connection["api_key"],
            "x-base-url": connection["base_url"],
            "x-model": connection["model"],
        }

    async def send(self, store: ChatFlowStore, node_id: str, messages: List[Message]) -> Optional[str]:
        """
        Request a reply to `messages` for a node.

        The node's messages become `messages` plus the assistant reply, which
        is rewritten as every chunk arrives. Failures are recorded as an
        "Error: ..." assistant message.

        Returns:
            str: the full reply, or None if the request failed
        """
        if not messages:
            return None

        session = store.session_of(node_id)
        if session is None:
            return None
        session_id = session.id
        node = store.find_node(node_id) if session_id == store.active_session_id else session.find_node(node_id)

        chat_messages = [m.to_chat() for m in messages]
        if node.reference:
            chat_messages.insert(0, {"role": "system", "content": reference_prompt(node.reference)})

        store.update_node_data(node_id, session_id, is_loading=True)
        try:
            return await self._stream_reply(store, node_id, session_id, messages, chat_messages)
        except Exception as e:
            logger.error("Chat error: %s", e)
            error_message = Message("assistant", f"Error: {e}", id=f"{now_ms()}-error")
            store.update_node_data(node_id, session_id, messages=list(messages) + [error_message])
            return None
        finally:
            store.update_node_data(node_id, session_id, is_loading=False)

    async def _stream_reply(self, store: ChatFlowStore, node_id: str, session_id: str,
                            messages: List[Message], chat_messages: List[dict]) -> str:
        async with self.session.post(f"{self.gateway_url}/api/chat",
                                     json={"messages": chat_messages},
                                     headers=self._headers(store)) as response:
            if not 200 <= response.status < 300:
                raise ChatRequestError(response.status, await response.text())

            reply = Message("assistant", "", id=f"{now_ms()}-ai")
            store.update_node_data(node_id, session_id, messages=list(messages) + [reply])

            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            content = ""
            async for chunk in response.content.iter_any():
                content += decoder.decode(chunk)
                reply = Message("assistant", content, id=reply.id)
                store.update_node_data(node_id, session_id, messages=list(messages) + [reply])

            return content

    async def run_pending(self, store: ChatFlowStore, node_id: str) -> Optional[str]:
        """Fire the first reply of a freshly seeded branch."""
        node = store.find_node(node_id)
        if node is None or not node.pending_ai_request or not node.messages:
            return None

        store.update_node_data(node_id, pending_ai_request=False)
        return await self.send(store, node_id, list(node.messages))
