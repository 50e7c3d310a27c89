#
# src/pesterbridge/tree.py
#
"""
The hierarchical test tree: files at the root, blocks and tests beneath.

Nodes are kept in a flat id index. Each node owns an ordered list of child
ids, and every traversal uses an explicit worklist so deep suites cannot
exhaust the call stack.
"""

from collections.abc import Iterator
from enum import Enum, auto
from pathlib import Path

import structlog
from attrs import field, mutable

from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("tree")


class NodeKind(Enum):
    FILE = auto()
    BLOCK = auto()
    TEST = auto()


class DiscoveryStatus(Enum):
    UNDISCOVERED = auto()
    DISCOVERING = auto()
    DISCOVERED = auto()


@mutable(slots=True)
class TestNode:
    """One discoverable and runnable item."""

    __test__ = False  # not a pytest class

    id: str = field()
    label: str = field()
    kind: NodeKind = field(default=NodeKind.TEST)
    file: str | None = field(default=None)
    start_line: int | None = field(default=None)
    end_line: int | None = field(default=None)
    parent_id: str | None = field(default=None)
    tags: tuple[str, ...] = field(default=())
    description: str | None = field(default=None)
    error: str | None = field(default=None)
    # Only files are discovered; blocks and tests arrive already discovered.
    discovery_status: DiscoveryStatus = field(default=DiscoveryStatus.DISCOVERED)
    busy: bool = field(default=False)
    children: list[str] = field(factory=list)

    @property
    def is_file(self) -> bool:
        return self.kind is NodeKind.FILE


class TestTree:
    """Index of every node known to one controller."""

    __test__ = False

    def __init__(self) -> None:
        self._nodes: dict[str, TestNode] = {}
        self._roots: list[str] = []

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def get(self, node_id: str | None) -> TestNode | None:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def roots(self) -> list[TestNode]:
        return [self._nodes[node_id] for node_id in self._roots]

    def files(self) -> list[TestNode]:
        return [node for node in self.roots() if node.is_file]

    def children(self, node_id: str) -> list[TestNode]:
        node = self._nodes.get(node_id)
        if node is None:
            return []
        return [self._nodes[child_id] for child_id in node.children]

    def add_file(self, path: str | Path) -> TestNode:
        """Returns the file node for path, creating it as an undiscovered root."""
        file_id = str(path)
        node = self._nodes.get(file_id)
        if node is not None:
            return node
        node = TestNode(
            id=file_id,
            label=Path(file_id).name,
            kind=NodeKind.FILE,
            file=file_id,
            discovery_status=DiscoveryStatus.UNDISCOVERED,
        )
        self.add(node)
        log.debug("Test file added", file=file_id)
        return node

    def add(self, node: TestNode, parent_id: str | None = None) -> TestNode:
        """
        Registers node under parent_id, or as a root when parent_id is None.

        Registering the same id under the same parent twice keeps one entry.
        A node moving to a different parent is detached from the old one.
        """
        if parent_id is not None and parent_id not in self._nodes:
            raise KeyError(parent_id)
        if parent_id is not None and self.is_ancestor_or_self(node.id, parent_id):
            raise ValueError(f"Adding '{node.id}' under '{parent_id}' would make it its own ancestor")
        existing = self._nodes.get(node.id)
        if existing is not None and existing.parent_id != parent_id:
            self._detach(existing)
        self._nodes[node.id] = node
        node.parent_id = parent_id
        siblings = self._nodes[parent_id].children if parent_id is not None else self._roots
        if node.id not in siblings:
            siblings.append(node.id)
        return node

    def remove(self, node_id: str) -> TestNode | None:
        """Removes a node and all of its descendants."""
        node = self._nodes.get(node_id)
        if node is None:
            return None
        self._detach(node)
        for descendant in list(self.iter_descendants(node_id)):
            del self._nodes[descendant.id]
        del self._nodes[node_id]
        return node

    def clear_children(self, node_id: str) -> int:
        """Removes every descendant of a node, keeping the node. Returns the count removed."""
        node = self._nodes.get(node_id)
        if node is None:
            return 0
        removed = list(self.iter_descendants(node_id))
        for descendant in removed:
            del self._nodes[descendant.id]
        node.children.clear()
        return len(removed)

    def _detach(self, node: TestNode) -> None:
        parent = self._nodes.get(node.parent_id) if node.parent_id is not None else None
        siblings = parent.children if parent is not None else self._roots
        if node.id in siblings:
            siblings.remove(node.id)

    def iter_descendants(self, node_id: str) -> Iterator[TestNode]:
        """Depth-first, pre-order, excluding the node itself."""
        node = self._nodes.get(node_id)
        if node is None:
            return
        stack = list(reversed(node.children))
        while stack:
            current = self._nodes.get(stack.pop())
            if current is None:
                continue
            yield current
            stack.extend(reversed(current.children))

    def walk(self) -> Iterator[TestNode]:
        """Every node, roots first, depth-first in insertion order."""
        for root in self.roots():
            yield root
            yield from self.iter_descendants(root.id)

    def is_ancestor_or_self(self, candidate_id: str, node_id: str) -> bool:
        """Whether candidate_id is node_id or appears on its parent chain."""
        current = node_id
        seen: set[str] = set()
        while current is not None and current not in seen:
            if current == candidate_id:
                return True
            seen.add(current)
            node = self._nodes.get(current)
            current = node.parent_id if node is not None else None
        return False

    def file_of(self, node_id: str) -> TestNode | None:
        """The root file node that contains node_id."""
        node = self._nodes.get(node_id)
        while node is not None and node.parent_id is not None:
            node = self._nodes.get(node.parent_id)
        return node if node is not None and node.is_file else None


# 🔼⚙️
