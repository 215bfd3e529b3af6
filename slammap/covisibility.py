"""Covisibility graph, spanning tree and loop edges shared by keyframes."""

from __future__ import annotations

import threading
from typing import Iterable


class CovisibilityNode:
    """A node of the covisibility graph.

    Connections carry a weight: the number of map points two nodes both see.
    The node also keeps its place in the spanning tree and its loop edges.
    """

    def __init__(self) -> None:
        self._connection_lock = threading.RLock()
        self._connected_weights: dict[CovisibilityNode, int] = {}
        self._ordered_connected: list[CovisibilityNode] = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: CovisibilityNode | None = None
        self._children: dict[CovisibilityNode, None] = {}
        self._loop_edges: dict[CovisibilityNode, None] = {}
        self._not_erase = False

    @staticmethod
    def _order(
        weights: Iterable[tuple[CovisibilityNode, int]],
    ) -> tuple[list[CovisibilityNode], list[int]]:
        """Split (node, weight) pairs into nodes and weights, heaviest first."""
        ranked = sorted(weights, key=lambda item: item[1], reverse=True)
        return [node for node, _ in ranked], [weight for _, weight in ranked]

    def add_connection(self, other: CovisibilityNode, weight: int) -> None:
        """Connect to ``other`` with ``weight``; reorder only if something changed."""
        with self._connection_lock:
            if self._connected_weights.get(other) == weight:
                return
            self._connected_weights[other] = weight
        self.update_best_covisibles()

    def erase_connection(self, other: CovisibilityNode) -> None:
        with self._connection_lock:
            if other not in self._connected_weights:
                return
            del self._connected_weights[other]
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        """Rebuild the list of connected nodes ordered by decreasing weight."""
        with self._connection_lock:
            nodes, weights = self._order(self._connected_weights.items())
            self._ordered_connected = nodes
            self._ordered_weights = weights

    def connected_keyframes(self) -> set[CovisibilityNode]:
        with self._connection_lock:
            return set(self._connected_weights)

    def covisible_keyframes(self) -> list[CovisibilityNode]:
        """Connected nodes, heaviest connection first."""
        with self._connection_lock:
            return list(self._ordered_connected)

    def best_covisibility_keyframes(self, n: int) -> list[CovisibilityNode]:
        """The ``n`` most strongly connected nodes (all of them if fewer)."""
        with self._connection_lock:
            return list(self._ordered_connected[: max(n, 0)])

    def covisibles_by_weight(self, weight: int) -> list[CovisibilityNode]:
        """Nodes connected with at least ``weight``.

        When every connection reaches ``weight`` the result is empty, as the
        search for the first lighter connection then finds none.
        """
        with self._connection_lock:
            for position, current in enumerate(self._ordered_weights):
                if current < weight:
                    return list(self._ordered_connected[:position])
            return []

    def weight(self, other: CovisibilityNode) -> int:
        with self._connection_lock:
            return self._connected_weights.get(other, 0)

    def add_child(self, other: CovisibilityNode) -> None:
        with self._connection_lock:
            self._children[other] = None

    def erase_child(self, other: CovisibilityNode) -> None:
        with self._connection_lock:
            self._children.pop(other, None)

    def change_parent(self, other: CovisibilityNode) -> None:
        """Make ``other`` the parent of this node in the spanning tree."""
        with self._connection_lock:
            self._parent = other
            other.add_child(self)

    def children(self) -> set[CovisibilityNode]:
        with self._connection_lock:
            return set(self._children)

    def parent(self) -> CovisibilityNode | None:
        with self._connection_lock:
            return self._parent

    def has_child(self, other: CovisibilityNode) -> bool:
        with self._connection_lock:
            return other in self._children

    def add_loop_edge(self, other: CovisibilityNode) -> None:
        """Record a loop closure with ``other``; such a node is never erased."""
        with self._connection_lock:
            self._not_erase = True
            self._loop_edges[other] = None

    def loop_edges(self) -> set[CovisibilityNode]:
        with self._connection_lock:
            return set(self._loop_edges)