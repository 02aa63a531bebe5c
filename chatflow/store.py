"""
Conversation tree store.

A session is one conversation tree: a root node plus branch nodes linked by
parent -> child edges. The active session's nodes and edges are checked out
into a working set (ChatFlowStore.nodes / .edges) and written back to the
session on every mutation and on every session switch.
"""

import json
import time
import uuid
import logging
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
ROOT_NODE_ID = "root"
TITLE_MAX_LENGTH = 40
EDGE_LABEL_MAX_LENGTH = 20

# Branch placement on the canvas
BRANCH_X_OFFSET = 450
BRANCH_Y_OFFSET = 280
SIBLING_BAND = 150

# Key the persisted state is stored under
STORAGE_NAMESPACE = "chatflow-storage"

# Message content is either plain text or a list of
# {"type": "text", "text"} / {"type": "image_url", "image_url": {"url"}} parts
MessageContent = Union[str, List[Dict[str, Any]]]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


def as_text(content: MessageContent) -> str:
    """Text of a message content, concatenating text parts and skipping images."""
    if isinstance(content, str):
        return content
    return "".join(
        part.get("text", "")
        for part in content
        if isinstance(part, dict) and part.get("type") == "text"
    )


def truncate(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def new_message_id() -> str:
    """Millisecond timestamp plus a random suffix, unique within a burst."""
    return f"{now_ms()}-{uuid.uuid4().hex[:6]}"


class Message:
    """One chat message."""

    def __init__(self, role: str, content: MessageContent, id: Optional[str] = None):
        self.id = id or new_message_id()
        self.role = role
        self.content = content

    @property
    def text(self) -> str:
        return as_text(self.content)

    def to_chat(self) -> Dict[str, Any]:
        """The {role, content} form sent to the gateway."""
        return {"role": self.role, "content": self.content}

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(role=data.get("role", "user"), content=data.get("content", ""), id=data.get("id"))


class BranchHighlight:
    """A span of a parent's message that was branched into a child node."""

    def __init__(self, text: str, branch_node_id: str, message_id: str = ""):
        self.text = text
        self.branch_node_id = branch_node_id
        self.message_id = message_id

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "branchNodeId": self.branch_node_id, "messageId": self.message_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BranchHighlight":
        return cls(
            text=data.get("text", ""),
            branch_node_id=data.get("branchNodeId", ""),
            message_id=data.get("messageId", ""),
        )


class ChatNode:
    """
    One branch's turn history.

    Unknown data keys passed to update() are kept in `extra` so they
    survive a save/load round trip.
    """

    FIELDS = ("messages", "reference", "highlights", "pending_ai_request", "is_loading")

    def __init__(self, id: str, position: Optional[Dict[str, float]] = None,
                 messages: Optional[List[Message]] = None,
                 reference: Optional[str] = None,
                 highlights: Optional[List[BranchHighlight]] = None,
                 pending_ai_request: bool = False,
                 is_loading: bool = False,
                 extra: Optional[Dict[str, Any]] = None):
        self.id = id
        self.position = position or {"x": 0, "y": 0}
        self.messages = messages if messages is not None else []
        self.reference = reference
        self.highlights = highlights if highlights is not None else []
        self.pending_ai_request = pending_ai_request
        self.is_loading = is_loading
        self.extra = extra or {}

    def update(self, **changes: Any) -> None:
        """Shallow-merge data fields."""
        for key, value in changes.items():
            if key in self.FIELDS:
                setattr(self, key, value)
            else:
                self.extra[key] = value

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.extra)
        data["messages"] = [m.to_dict() for m in self.messages]
        data["highlights"] = [h.to_dict() for h in self.highlights]
        if self.reference is not None:
            data["reference"] = self.reference
        if self.pending_ai_request:
            data["pendingAiRequest"] = True
        return {
            "id": self.id,
            "type": "chatNode",
            "position": dict(self.position),
            "data": data,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatNode":
        node_data = dict(data.get("data") or {})
        messages = [Message.from_dict(m) for m in node_data.pop("messages", None) or []]
        highlights = [BranchHighlight.from_dict(h) for h in node_data.pop("highlights", None) or []]
        reference = node_data.pop("reference", None)
        pending = bool(node_data.pop("pendingAiRequest", False))
        # Loading state does not survive a restart
        node_data.pop("isLoading", None)
        return cls(
            id=data["id"],
            position=data.get("position"),
            messages=messages,
            reference=reference,
            highlights=highlights,
            pending_ai_request=pending,
            extra=node_data,
        )


class Edge:
    """Directed parent -> child link."""

    def __init__(self, source: str, target: str, id: Optional[str] = None, label: Optional[str] = None):
        self.id = id or f"e-{source}-{target}"
        self.source = source
        self.target = target
        self.label = label

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": "smoothstep",
            "animated": True,
        }
        if self.label is not None:
            data["label"] = self.label
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Edge":
        return cls(source=data["source"], target=data["target"], id=data.get("id"), label=data.get("label"))


def create_root_node() -> ChatNode:
    return ChatNode(id=ROOT_NODE_ID, position={"x": 100, "y": 100})


class Session:
    """One complete conversation tree."""

    def __init__(self, id: Optional[str] = None, title: str = DEFAULT_TITLE,
                 created_at: Optional[int] = None, updated_at: Optional[int] = None,
                 nodes: Optional[List[ChatNode]] = None,
                 edges: Optional[List[Edge]] = None,
                 root_node_id: str = ROOT_NODE_ID):
        self.id = id or new_id()
        self.title = title
        self.created_at = created_at or now_ms()
        self.updated_at = updated_at or self.created_at
        self.nodes = nodes if nodes is not None else [create_root_node()]
        self.edges = edges if edges is not None else []
        self.root_node_id = root_node_id

    def find_node(self, node_id: str) -> Optional[ChatNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def touch(self) -> None:
        self.updated_at = now_ms()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "rootNodeId": self.root_node_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data.get("id"),
            title=data.get("title", DEFAULT_TITLE),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            nodes=[ChatNode.from_dict(n) for n in data.get("nodes") or []] or None,
            edges=[Edge.from_dict(e) for e in data.get("edges") or []],
            root_node_id=data.get("rootNodeId", ROOT_NODE_ID),
        )


def generate_session_title(nodes: List[ChatNode]) -> str:
    """Title from the first user message of the root (or first non-empty) node."""
    node = next((n for n in nodes if n.id == ROOT_NODE_ID or n.messages), None)
    if node is not None:
        first_user = next((m for m in node.messages if m.role == "user"), None)
        if first_user is not None:
            return truncate(first_user.text, TITLE_MAX_LENGTH)
    return DEFAULT_TITLE


class ProviderConfig:
    """Per-provider settings. models entries are {"id", "nickname", "isMultimodal"?}."""

    def __init__(self, api_key: str = "", base_url: str = "",
                 models: Optional[List[Dict[str, Any]]] = None,
                 selected_model_id: Optional[str] = None):
        self.api_key = api_key
        self.base_url = base_url
        self.models = models if models is not None else []
        self.selected_model_id = selected_model_id

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"apiKey": self.api_key, "baseUrl": self.base_url, "models": self.models}
        if self.selected_model_id is not None:
            data["selectedModelId"] = self.selected_model_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        return cls(
            api_key=data.get("apiKey", ""),
            base_url=data.get("baseUrl", ""),
            models=data.get("models"),
            selected_model_id=data.get("selectedModelId"),
        )


class ChatFlowStore:
    """
    State owner for sessions, the checked-out working set and settings.

    All operations are synchronous. There is always at least one session.
    """

    def __init__(self):
        # Settings
        self.api_key = ""
        self.base_url = "https://openrouter.ai/api/v1"
        self.model_id = ""
        self.provider_configs: Dict[str, ProviderConfig] = {}
        self.active_provider_id = "openrouter"
        self.theme = "system"
        self.view_mode = "focus"
        self.storage_config = {"endpoint": "", "bucket": "", "accessKeyId": "", "secretAccessKey": ""}
        self.last_synced_at: Optional[int] = None

        session = Session()
        self.sessions: List[Session] = [session]
        self.active_session_id = session.id

        # Working set of the active session
        self.nodes: List[ChatNode] = session.nodes
        self.edges: List[Edge] = session.edges
        self.active_node_id = session.root_node_id

    # Sessions

    @property
    def active_session(self) -> Optional[Session]:
        return self.find_session(self.active_session_id)

    def find_session(self, session_id: str) -> Optional[Session]:
        return next((s for s in self.sessions if s.id == session_id), None)

    def _snapshot(self, touch: bool = True) -> None:
        """Write the working set back into the active session."""
        session = self.active_session
        if session is not None:
            session.nodes = self.nodes
            session.edges = self.edges
            if touch:
                session.touch()

    def _check_out(self, session: Session) -> None:
        self.active_session_id = session.id
        self.nodes = session.nodes
        self.edges = session.edges
        self.active_node_id = session.root_node_id

    def create_session(self) -> str:
        """Start a new session with a single root node and make it active."""
        self._snapshot()
        session = Session()
        self.sessions.append(session)
        self._check_out(session)
        self.view_mode = "focus"
        logger.debug("Created session %s", session.id)
        return session.id

    def switch_session(self, session_id: str) -> None:
        """Make another session active. Unknown ids are ignored."""
        target = self.find_session(session_id)
        if target is None:
            return
        self._snapshot()
        self._check_out(target)

    def delete_session(self, session_id: str) -> None:
        """
        Delete a session.

        If it was active, the most recently updated remaining session becomes
        active. Deleting the only session replaces it with a fresh one.
        """
        if self.find_session(session_id) is None:
            return

        was_active = session_id == self.active_session_id
        if not was_active:
            self._snapshot()

        self.sessions = [s for s in self.sessions if s.id != session_id]

        if not self.sessions:
            self.sessions.append(Session())
            self._check_out(self.sessions[0])
        elif was_active:
            self._check_out(max(self.sessions, key=lambda s: s.updated_at))

    def update_session_title(self, session_id: str, title: str) -> None:
        session = self.find_session(session_id)
        if session is not None:
            session.title = title
            session.touch()

    def session_title(self, session: Session) -> str:
        """Explicit title, or one derived from the first user message."""
        if session.title != DEFAULT_TITLE:
            return session.title
        return generate_session_title(session.nodes)

    def reset_canvas(self) -> None:
        self.create_session()

    def replace_sessions(self, sessions: List[Session]) -> None:
        """
        Replace every session, e.g. with a pulled sync copy.

        The active session stays active if the new list still has it.
        """
        if not sessions:
            return
        self.sessions = list(sessions)
        self._check_out(self.find_session(self.active_session_id) or self.sessions[0])

    # Nodes and edges

    def find_node(self, node_id: str) -> Optional[ChatNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def add_node(self, node: ChatNode) -> None:
        self.nodes = self.nodes + [node]
        self._snapshot()

    def set_nodes(self, nodes: List[ChatNode]) -> None:
        self.nodes = list(nodes)
        self._snapshot()

    def add_edge(self, edge: Edge) -> None:
        self.edges = self.edges + [edge]
        self._snapshot()

    def set_edges(self, edges: List[Edge]) -> None:
        self.edges = list(edges)
        self._snapshot()

    def descendants(self, node_id: str) -> List[str]:
        """Ids of every node reachable from node_id, breadth first."""
        children: Dict[str, List[str]] = {}
        for edge in self.edges:
            children.setdefault(edge.source, []).append(edge.target)

        found: List[str] = []
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            for child in children.get(queue.popleft(), []):
                if child not in seen:
                    seen.add(child)
                    found.append(child)
                    queue.append(child)
        return found

    def remove_node(self, node_id: str) -> None:
        """
        Remove a node with its whole subtree and every edge touching it.

        Highlights on the parent that point at the node are dropped too.
        The root is not guarded here.
        """
        parent_edge = next((e for e in self.edges if e.target == node_id), None)
        removed = {node_id, *self.descendants(node_id)}

        if parent_edge is not None:
            parent = self.find_node(parent_edge.source)
            if parent is not None:
                parent.highlights = [h for h in parent.highlights if h.branch_node_id != node_id]

        self.nodes = [n for n in self.nodes if n.id not in removed]
        self.edges = [e for e in self.edges if e.source not in removed and e.target not in removed]
        self._snapshot()

        if self.active_node_id in removed:
            self.active_node_id = parent_edge.source if parent_edge is not None else self.active_session.root_node_id

    def session_of(self, node_id: str) -> Optional[Session]:
        """The session holding node_id, preferring the active one."""
        if self.find_node(node_id) is not None:
            return self.active_session
        return next((s for s in self.sessions if s.find_node(node_id) is not None), None)

    def update_node_data(self, node_id: str, session_id: Optional[str] = None, **changes: Any) -> None:
        """
        Shallow-merge data into a node.

        Nodes of inactive sessions are updated in place, so a reply can keep
        streaming into a session that is no longer displayed. Every session
        has a node called "root", so pass session_id to pin the update to the
        session the node was read from. A session still titled "New Chat"
        takes its title from the first user message.
        """
        session = self.find_session(session_id) if session_id else self.session_of(node_id)
        if session is None:
            logger.debug("update_node_data: node %s not found", node_id)
            return

        if session.id == self.active_session_id:
            node = self.find_node(node_id)
            if node is None:
                return
            node.update(**changes)
            self._snapshot()
        else:
            node = session.find_node(node_id)
            if node is None:
                return
            node.update(**changes)
            session.touch()

        if session.title == DEFAULT_TITLE and any(n.messages for n in session.nodes):
            session.title = generate_session_title(session.nodes)

    def set_active_node(self, node_id: str) -> None:
        self.active_node_id = node_id

    def create_branch(self, parent_id: str, selected_text: str,
                      message_id: Optional[str] = None,
                      initial_prompt: Optional[str] = None) -> str:
        """
        Branch a child node off parent_id for a selected span of text.

        The child is placed right of every node in the parent's vertical band
        and stacked below earlier branches of the same parent. With an
        initial prompt the child is seeded with it and flagged so the first
        reply is requested automatically.

        Returns:
            str: the new node id, or "" if the parent does not exist
        """
        parent = self.find_node(parent_id)
        if parent is None:
            return ""

        parent_y = parent.position["y"]
        siblings = [n for n in self.nodes if abs(n.position["y"] - parent_y) < SIBLING_BAND]
        max_x = max([n.position["x"] for n in siblings] + [parent.position["x"]])
        existing_branches = sum(1 for e in self.edges if e.source == parent_id)

        new_node_id = new_id()
        messages = [Message("user", initial_prompt)] if initial_prompt else []

        node = ChatNode(
            id=new_node_id,
            position={"x": max_x + BRANCH_X_OFFSET, "y": parent_y + existing_branches * BRANCH_Y_OFFSET},
            messages=messages,
            reference=selected_text,
            pending_ai_request=bool(initial_prompt),
        )
        edge = Edge(parent_id, new_node_id, label=truncate(selected_text, EDGE_LABEL_MAX_LENGTH))

        parent.highlights = parent.highlights + [BranchHighlight(selected_text, new_node_id, message_id or "")]
        self.nodes = self.nodes + [node]
        self.edges = self.edges + [edge]
        self.active_node_id = new_node_id
        self._snapshot()

        return new_node_id

    # Settings

    def set_api_key(self, api_key: str) -> None:
        self.api_key = api_key

    def set_base_url(self, base_url: str) -> None:
        self.base_url = base_url

    def set_model_id(self, model_id: str) -> None:
        self.model_id = model_id

    def set_view_mode(self, mode: str) -> None:
        self.view_mode = mode

    def set_active_provider(self, provider_id: str) -> None:
        self.active_provider_id = provider_id

    def set_theme(self, theme: str) -> None:
        self.theme = theme

    def update_provider_config(self, provider_id: str, **changes: Any) -> ProviderConfig:
        """Merge changes (api_key, base_url, models, selected_model_id) into a provider's config."""
        config = self.provider_configs.setdefault(provider_id, ProviderConfig())
        for key, value in changes.items():
            if not hasattr(config, key):
                raise AttributeError(f"Unknown provider config field: {key}")
            setattr(config, key, value)
        return config

    def set_storage_config(self, **changes: str) -> None:
        self.storage_config = {**self.storage_config, **changes}

    def connection(self) -> Dict[str, str]:
        """
        Api key, base URL and model for the active provider.

        Blank provider fields fall back to the top-level settings.
        """
        config = self.provider_configs.get(self.active_provider_id)
        if config is None:
            return {"api_key": self.api_key, "base_url": self.base_url, "model": self.model_id}
        return {
            "api_key": config.api_key or self.api_key,
            "base_url": config.base_url or self.base_url,
            "model": config.selected_model_id or self.model_id,
        }

    # Persistence

    def to_dict(self) -> Dict[str, Any]:
        """The persisted subset of the store."""
        self._snapshot(touch=False)
        return {
            "apiKey": self.api_key,
            "baseUrl": self.base_url,
            "modelId": self.model_id,
            "providerConfigs": {k: v.to_dict() for k, v in self.provider_configs.items()},
            "activeProviderId": self.active_provider_id,
            "sessions": [s.to_dict() for s in self.sessions],
            "activeSessionId": self.active_session_id,
            "theme": self.theme,
            "storageConfig": dict(self.storage_config),
            "lastSyncedAt": self.last_synced_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatFlowStore":
        store = cls()
        store.api_key = data.get("apiKey", store.api_key)
        store.base_url = data.get("baseUrl", store.base_url)
        store.model_id = data.get("modelId", store.model_id)
        store.provider_configs = {
            k: ProviderConfig.from_dict(v) for k, v in (data.get("providerConfigs") or {}).items()
        }
        store.active_provider_id = data.get("activeProviderId", store.active_provider_id)
        store.theme = data.get("theme", store.theme)
        store.storage_config = {**store.storage_config, **(data.get("storageConfig") or {})}
        store.last_synced_at = data.get("lastSyncedAt")

        sessions = [Session.from_dict(s) for s in data.get("sessions") or []]
        if sessions:
            store.sessions = sessions
            active = store.find_session(data.get("activeSessionId", "")) or sessions[0]
            store._check_out(active)

        return store


def save_state(store: ChatFlowStore, path: Path) -> None:
    """Persist the store under the chatflow-storage key."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump({STORAGE_NAMESPACE: store.to_dict()}, f, indent=2)


def load_state(path: Path) -> ChatFlowStore:
    """Load a persisted store, or a fresh one if the file is missing or unreadable."""
    if not path.exists():
        return ChatFlowStore()

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning("Failed to read state file %s: %s", path, e)
        return ChatFlowStore()

    return ChatFlowStore.from_dict(data.get(STORAGE_NAMESPACE) or {})
