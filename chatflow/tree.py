"""
Tree views over a session's flat node and edge lists.
"""

from typing import Dict, List, Optional

from chatflow.store import ChatNode, Edge, Session


class TreeNode:
    """A node with its nested children."""

    def __init__(self, node: ChatNode, children: List["TreeNode"], is_active: bool):
        self.node = node
        self.children = children
        self.is_active = is_active

    def walk(self, depth: int = 0):
        """Yield (depth, tree_node) in pre-order."""
        yield depth, self
        for child in self.children:
            yield from child.walk(depth + 1)


def build_tree(nodes: List[ChatNode], edges: List[Edge],
               root_node_id: str, active_node_id: str) -> Optional[TreeNode]:
    """
    Build the nested tree rooted at root_node_id.

    Edges pointing at missing nodes are skipped. Returns None if the root
    does not exist.
    """
    node_map = {node.id: node for node in nodes}
    children_map: Dict[str, List[str]] = {}
    for edge in edges:
        children_map.setdefault(edge.source, []).append(edge.target)

    def build_subtree(node_id: str, path: frozenset) -> Optional[TreeNode]:
        node = node_map.get(node_id)
        if node is None or node_id in path:
            return None
        path = path | {node_id}
        children = [
            child for child in (build_subtree(c, path) for c in children_map.get(node_id, []))
            if child is not None
        ]
        return TreeNode(node, children, node_id == active_node_id)

    return build_subtree(root_node_id, frozenset())


def validate_tree(session: Session) -> List[str]:
    """
    Check a session's tree shape.

    Returns a list of problems: a missing root, a node with no parent other
    than the root, a node with two parents, an edge to a missing node, a
    cycle, or a highlight pointing at a missing node. Empty when valid.
    """
    problems: List[str] = []
    node_ids = {node.id for node in session.nodes}

    if session.root_node_id not in node_ids:
        problems.append(f"root node {session.root_node_id} is missing")

    parents: Dict[str, str] = {}
    for edge in session.edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            problems.append(f"edge {edge.id} references a missing node")
            continue
        if edge.target in parents:
            problems.append(f"node {edge.target} has more than one parent")
            continue
        parents[edge.target] = edge.source

    if session.root_node_id in parents:
        problems.append(f"root node {session.root_node_id} has a parent")

    for node_id in node_ids:
        if node_id != session.root_node_id and node_id not in parents:
            problems.append(f"node {node_id} has no parent")

        # Follow parent links up; revisiting a node means a cycle
        seen = {node_id}
        current = parents.get(node_id)
        while current is not None:
            if current in seen:
                problems.append(f"node {node_id} is in a cycle")
                break
            seen.add(current)
            current = parents.get(current)

    for node in session.nodes:
        for highlight in node.highlights:
            if highlight.branch_node_id not in node_ids:
                problems.append(f"highlight on {node.id} points at missing node {highlight.branch_node_id}")

    return problems
