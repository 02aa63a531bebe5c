"""Unit tests for the conversation tree store."""

from __future__ import annotations

import json

import pytest

from chatflow.store import (
    DEFAULT_TITLE,
    ROOT_NODE_ID,
    STORAGE_NAMESPACE,
    ChatFlowStore,
    ChatNode,
    Edge,
    Message,
    ProviderConfig,
    Session,
    generate_session_title,
    load_state,
    save_state,
)
from chatflow.tree import validate_tree


@pytest.fixture
def store():
    return ChatFlowStore()


def test_fresh_store_has_one_session_with_root(store):
    assert len(store.sessions) == 1
    assert store.active_session_id == store.sessions[0].id
    assert [n.id for n in store.nodes] == [ROOT_NODE_ID]
    assert store.nodes[0].position == {"x": 100, "y": 100}
    assert store.edges == []
    assert store.active_node_id == ROOT_NODE_ID


def test_first_branch_is_placed_right_of_parent(store):
    store.update_node_data(ROOT_NODE_ID, messages=[
        Message("user", "Explain physics", id="m1"),
        Message("assistant", "Quantum entanglement is ...", id="m2"),
    ])

    child_id = store.create_branch(ROOT_NODE_ID, "Quantum entanglement", "m2", "What does this mean?")

    child = store.find_node(child_id)
    assert child.position == {"x": 550, "y": 100}
    assert child.reference == "Quantum entanglement"
    assert child.pending_ai_request is True
    assert [(m.role, m.text) for m in child.messages] == [("user", "What does this mean?")]

    edge = store.edges[0]
    assert (edge.source, edge.target) == (ROOT_NODE_ID, child_id)
    assert edge.id == f"e-{ROOT_NODE_ID}-{child_id}"
    assert edge.label == "Quantum entanglement"

    highlight = store.find_node(ROOT_NODE_ID).highlights[0]
    assert (highlight.text, highlight.branch_node_id, highlight.message_id) == ("Quantum entanglement", child_id, "m2")
    assert store.active_node_id == child_id


def test_sibling_branches_stack_downwards(store):
    store.create_branch(ROOT_NODE_ID, "one")
    second_id = store.create_branch(ROOT_NODE_ID, "two")

    second = store.find_node(second_id)
    # The first branch sits in the root's band, so the second clears it
    assert second.position == {"x": 1000, "y": 380}


def test_branch_without_prompt_is_empty(store):
    child_id = store.create_branch(ROOT_NODE_ID, "short")

    child = store.find_node(child_id)
    assert child.messages == []
    assert child.pending_ai_request is False
    assert store.edges[0].label == "short"


def test_branch_of_missing_parent_is_a_no_op(store):
    assert store.create_branch("nope", "text") == ""
    assert len(store.nodes) == 1
    assert store.edges == []


def test_remove_node_removes_subtree_edges_and_highlight(store):
    child_id = store.create_branch(ROOT_NODE_ID, "a")
    grandchild_id = store.create_branch(child_id, "b")
    sibling_id = store.create_branch(ROOT_NODE_ID, "c")

    store.remove_node(child_id)

    assert {n.id for n in store.nodes} == {ROOT_NODE_ID, sibling_id}
    assert [(e.source, e.target) for e in store.edges] == [(ROOT_NODE_ID, sibling_id)]
    assert [h.branch_node_id for h in store.find_node(ROOT_NODE_ID).highlights] == [sibling_id]
    assert grandchild_id not in {n.id for n in store.active_session.nodes}
    assert validate_tree(store.active_session) == []


def test_remove_active_node_focuses_parent(store):
    child_id = store.create_branch(ROOT_NODE_ID, "a")
    grandchild_id = store.create_branch(child_id, "b")
    assert store.active_node_id == grandchild_id

    store.remove_node(grandchild_id)

    assert store.active_node_id == child_id


def test_descendants_breadth_first(store):
    a = store.create_branch(ROOT_NODE_ID, "a")
    b = store.create_branch(ROOT_NODE_ID, "b")
    a1 = store.create_branch(a, "a1")

    assert store.descendants(ROOT_NODE_ID) == [a, b, a1]
    assert store.descendants(a1) == []


def test_title_is_derived_from_first_user_message(store):
    store.update_node_data(ROOT_NODE_ID, messages=[
        Message("user", "Explain quantum entanglement in simple terms please"),
    ])

    assert store.active_session.title == "Explain quantum entanglement in simple t..."


def test_explicit_title_is_kept(store):
    store.update_session_title(store.active_session_id, "Physics")
    store.update_node_data(ROOT_NODE_ID, messages=[Message("user", "Hello")])

    assert store.active_session.title == "Physics"


def test_generate_session_title_falls_back_to_default():
    assert generate_session_title([ChatNode("root")]) == DEFAULT_TITLE
    assert generate_session_title([ChatNode("root", messages=[Message("assistant", "Hi")])]) == DEFAULT_TITLE


def test_generate_session_title_skips_image_parts():
    content = [
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
        {"type": "text", "text": "What is in this picture?"},
    ]

    assert generate_session_title([ChatNode("root", messages=[Message("user", content)])]) == "What is in this picture?"


def test_update_node_data_merges_and_keeps_unknown_keys(store):
    store.update_node_data(ROOT_NODE_ID, is_loading=True, color="blue")
    store.update_node_data(ROOT_NODE_ID, is_loading=False)

    root = store.find_node(ROOT_NODE_ID)
    assert root.is_loading is False
    assert root.extra == {"color": "blue"}
    assert root.to_dict()["data"]["color"] == "blue"


def test_update_reaches_an_inactive_session(store):
    first_id = store.active_session_id
    child_id = store.create_branch(ROOT_NODE_ID, "a")
    store.create_session()

    store.update_node_data(child_id, messages=[Message("user", "still streaming")])

    first = store.find_session(first_id)
    assert first.find_node(child_id).messages[0].text == "still streaming"
    assert store.find_node(child_id) is None


def test_session_id_pins_root_updates(store):
    first_id = store.active_session_id
    store.create_session()

    store.update_node_data(ROOT_NODE_ID, first_id, messages=[Message("user", "for the first session")])

    assert store.find_node(ROOT_NODE_ID).messages == []
    assert store.find_session(first_id).find_node(ROOT_NODE_ID).messages[0].text == "for the first session"
    assert store.find_session(first_id).title == "for the first session"


def test_update_of_unknown_node_is_ignored(store):
    store.update_node_data("ghost", messages=[Message("user", "boo")])

    assert store.find_node(ROOT_NODE_ID).messages == []


def test_create_and_switch_sessions_keep_working_sets(store):
    first_id = store.active_session_id
    child_id = store.create_branch(ROOT_NODE_ID, "a")
    store.set_view_mode("canvas")

    second_id = store.create_session()
    assert store.view_mode == "focus"
    assert [n.id for n in store.nodes] == [ROOT_NODE_ID]
    assert store.active_node_id == ROOT_NODE_ID

    store.switch_session(first_id)
    assert store.active_session_id == first_id
    assert {n.id for n in store.nodes} == {ROOT_NODE_ID, child_id}
    assert store.active_node_id == ROOT_NODE_ID

    store.switch_session("missing")
    assert store.active_session_id == first_id
    assert second_id in {s.id for s in store.sessions}


def test_delete_active_session_activates_most_recent(store):
    first_id = store.active_session_id
    second_id = store.create_session()
    third_id = store.create_session()
    store.find_session(first_id).updated_at = 3_000
    store.find_session(second_id).updated_at = 2_000

    store.delete_session(third_id)

    assert store.active_session_id == first_id
    assert [s.id for s in store.sessions] == [first_id, second_id]


def test_delete_inactive_session_keeps_active(store):
    first_id = store.active_session_id
    second_id = store.create_session()

    store.delete_session(first_id)

    assert store.active_session_id == second_id
    assert [s.id for s in store.sessions] == [second_id]


def test_deleting_only_session_creates_a_fresh_one(store):
    only_id = store.active_session_id
    store.create_branch(ROOT_NODE_ID, "a")

    store.delete_session(only_id)

    assert len(store.sessions) == 1
    assert store.active_session_id != only_id
    assert [n.id for n in store.nodes] == [ROOT_NODE_ID]
    assert store.edges == []


def test_reset_canvas_starts_a_new_session(store):
    store.reset_canvas()

    assert len(store.sessions) == 2
    assert store.active_session_id == store.sessions[-1].id


def test_connection_prefers_active_provider_config(store):
    store.set_api_key("top-key")
    store.set_model_id("top-model")
    assert store.connection() == {"api_key": "top-key", "base_url": "https://openrouter.ai/api/v1", "model": "top-model"}

    store.set_active_provider("gemini")
    store.update_provider_config("gemini", base_url="gemini-cli", selected_model_id="gemini-2.5-flash")

    assert store.connection() == {"api_key": "top-key", "base_url": "gemini-cli", "model": "gemini-2.5-flash"}


def test_update_provider_config_rejects_unknown_fields(store):
    with pytest.raises(AttributeError):
        store.update_provider_config("openai", colour="red")


def test_set_storage_config_merges(store):
    store.set_storage_config(endpoint="https://r2", bucket="b")
    store.set_storage_config(bucket="c")

    assert store.storage_config == {"endpoint": "https://r2", "bucket": "c", "accessKeyId": "", "secretAccessKey": ""}


def test_save_and_load_round_trip(store, tmp_path):
    store.set_theme("dark")
    store.update_provider_config("openrouter", api_key="sk-or", models=[{"id": "openai/gpt-4o", "nickname": "4o"}])
    store.update_node_data(ROOT_NODE_ID, messages=[Message("user", "Hi", id="m1")], is_loading=True)
    child_id = store.create_branch(ROOT_NODE_ID, "Hi", "m1", "Why?")
    second_id = store.create_session()
    path = tmp_path / "state.json"

    save_state(store, path)
    loaded = load_state(path)

    raw = json.loads(path.read_text())
    assert list(raw) == [STORAGE_NAMESPACE]
    assert loaded.theme == "dark"
    assert loaded.provider_configs["openrouter"].api_key == "sk-or"
    assert loaded.active_session_id == second_id
    assert len(loaded.sessions) == 2

    first = loaded.sessions[0]
    root = first.find_node(ROOT_NODE_ID)
    assert root.messages[0].text == "Hi"
    assert root.is_loading is False
    assert root.highlights[0].branch_node_id == child_id
    assert first.find_node(child_id).pending_ai_request is True
    assert first.edges[0].label == "Hi"
    assert validate_tree(first) == []


def test_load_state_missing_or_corrupt_file(tmp_path):
    assert len(load_state(tmp_path / "missing.json").sessions) == 1

    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{nope")
    assert len(load_state(corrupt).sessions) == 1


def test_session_from_dict_without_nodes_gets_a_root():
    session = Session.from_dict({"id": "s1", "title": "Old"})

    assert [n.id for n in session.nodes] == [ROOT_NODE_ID]
    assert session.edges == []


def test_edge_and_provider_config_dicts():
    assert Edge("a", "b").to_dict() == {"id": "e-a-b", "source": "a", "target": "b", "type": "smoothstep", "animated": True}
    assert ProviderConfig.from_dict({"apiKey": "k"}).to_dict() == {"apiKey": "k", "baseUrl": "", "models": []}


def test_replace_sessions_keeps_active_when_present(store):
    active_id = store.active_session_id
    pulled = [Session(id="remote"), Session(id=active_id, title="Synced")]

    store.replace_sessions(pulled)

    assert [s.id for s in store.sessions] == ["remote", active_id]
    assert store.active_session.title == "Synced"
    assert store.nodes is store.active_session.nodes


def test_replace_sessions_falls_back_to_first(store):
    store.replace_sessions([Session(id="remote")])

    assert store.active_session_id == "remote"
    store.replace_sessions([])
    assert store.active_session_id == "remote"


def test_messages_created_together_get_distinct_ids(monkeypatch):
    monkeypatch.setattr("chatflow.store.now_ms", lambda: 1700000000000)

    first, second = Message("user", "a"), Message("user", "b")

    assert first.id != second.id
    assert first.id.startswith("1700000000000-")
