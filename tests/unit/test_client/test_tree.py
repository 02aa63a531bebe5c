"""Unit tests for tree views over sessions."""

from __future__ import annotations

from chatflow.store import ROOT_NODE_ID, BranchHighlight, ChatFlowStore, ChatNode, Edge, Session
from chatflow.tree import build_tree, validate_tree


def _session(*edges, extra_nodes=()) -> Session:
    ids = {ROOT_NODE_ID, *extra_nodes}
    for source, target in edges:
        ids.update((source, target))
    return Session(nodes=[ChatNode(node_id) for node_id in sorted(ids)],
                   edges=[Edge(source, target) for source, target in edges])


def test_build_tree_nests_children_in_edge_order():
    store = ChatFlowStore()
    a = store.create_branch(ROOT_NODE_ID, "a")
    b = store.create_branch(ROOT_NODE_ID, "b")
    a1 = store.create_branch(a, "a1")

    root = build_tree(store.nodes, store.edges, ROOT_NODE_ID, a1)

    walked = [(depth, tree_node.node.id, tree_node.is_active) for depth, tree_node in root.walk()]
    assert walked == [(0, ROOT_NODE_ID, False), (1, a, False), (2, a1, True), (1, b, False)]


def test_build_tree_skips_dangling_edges_and_cycles():
    nodes = [ChatNode(ROOT_NODE_ID), ChatNode("a")]
    edges = [Edge(ROOT_NODE_ID, "a"), Edge("a", ROOT_NODE_ID), Edge("a", "ghost")]

    root = build_tree(nodes, edges, ROOT_NODE_ID, ROOT_NODE_ID)

    assert [tree_node.node.id for _, tree_node in root.walk()] == [ROOT_NODE_ID, "a"]


def test_build_tree_without_root():
    assert build_tree([ChatNode("a")], [], ROOT_NODE_ID, "a") is None


def test_valid_tree_has_no_problems():
    assert validate_tree(_session((ROOT_NODE_ID, "a"), ("a", "b"), (ROOT_NODE_ID, "c"))) == []


def test_orphan_node():
    problems = validate_tree(_session((ROOT_NODE_ID, "a"), extra_nodes=("orphan",)))

    assert problems == ["node orphan has no parent"]


def test_two_parents():
    problems = validate_tree(_session((ROOT_NODE_ID, "a"), (ROOT_NODE_ID, "b"), ("a", "b")))

    assert "node b has more than one parent" in problems


def test_cycle_is_reported():
    problems = validate_tree(_session((ROOT_NODE_ID, "a"), ("b", "c"), ("c", "b")))

    assert "node b is in a cycle" in problems
    assert "node c is in a cycle" in problems


def test_missing_root_and_dangling_edge():
    session = Session(nodes=[ChatNode("a")], edges=[Edge("a", "ghost")])

    problems = validate_tree(session)

    assert f"root node {ROOT_NODE_ID} is missing" in problems
    assert "edge e-a-ghost references a missing node" in problems


def test_highlight_to_missing_node():
    session = _session((ROOT_NODE_ID, "a"))
    session.find_node(ROOT_NODE_ID).highlights.append(BranchHighlight("text", "gone"))

    assert validate_tree(session) == [f"highlight on {ROOT_NODE_ID} points at missing node gone"]


def test_store_operations_keep_the_tree_valid():
    store = ChatFlowStore()
    a = store.create_branch(ROOT_NODE_ID, "a selection long enough to be truncated")
    b = store.create_branch(a, "b")
    store.create_branch(b, "c")
    store.create_branch(ROOT_NODE_ID, "d")
    store.remove_node(b)

    assert validate_tree(store.active_session) == []
    assert store.edges[0].label == "a selection long eno..."
