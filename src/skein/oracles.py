"""Bulk graph oracles: weak components and shortest paths.

The forest logic never decides structure from an oracle. Weak component
labels only plan batch grouping, and shortest-path lengths only feed the
diameter metric. Oracles are injected so correctness tests can run on the
brute-force implementation while production uses NetworkX.

Graphs are passed as a node list plus an undirected edge list. Nodes may
be any hashable value.
"""

from __future__ import annotations

import abc
from collections import deque
from collections.abc import Hashable, Iterable
from typing import Annotated, Literal, Union

import networkx as nx
import pydantic as pdt

import skein.errors as errors

Node = Hashable
Edge = tuple[Hashable, Hashable]


class BaseOracle(abc.ABC, pdt.BaseModel, strict=True, frozen=True, extra="forbid"):
    """Interface for bulk WCC and shortest-path computation."""

    kind: str

    @abc.abstractmethod
    def weak_components(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> dict[Node, int]:
        """Label every node with its weak component.

        Labels are dense integers; two nodes share a label if and only if
        they are connected ignoring edge direction.
        """
        ...

    @abc.abstractmethod
    def shortest_path_lengths(
        self, nodes: Iterable[Node], edges: Iterable[Edge], source: Node
    ) -> dict[Node, int]:
        """Unweighted hop counts from ``source`` to every reachable node."""
        ...


class NetworkxOracle(BaseOracle):
    """Oracle backed by NetworkX graph algorithms."""

    kind: Literal["networkx"] = "networkx"

    def _graph(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> nx.Graph:
        G = nx.Graph()
        G.add_nodes_from(nodes)
        G.add_edges_from(edges)
        return G

    def weak_components(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> dict[Node, int]:
        G = self._graph(nodes, edges)
        labels: dict[Node, int] = {}
        for label, component in enumerate(nx.connected_components(G)):
            for node in component:
                labels[node] = label
        return labels

    def shortest_path_lengths(
        self, nodes: Iterable[Node], edges: Iterable[Edge], source: Node
    ) -> dict[Node, int]:
        G = self._graph(nodes, edges)
        try:
            return dict(nx.single_source_shortest_path_length(G, source))
        except nx.NodeNotFound as exc:
            raise errors.OracleUnavailableError(
                oracle=self.kind,
                operation="shortest_path_lengths",
                details=f"Source node {source!r} is not part of the projection",
            ) from exc


class BruteForceOracle(BaseOracle):
    """Plain breadth-first oracle with no third-party dependencies.

    Also serves as the direct-traversal fallback when the configured
    oracle is unavailable during batch planning.
    """

    kind: Literal["bruteforce"] = "bruteforce"

    @staticmethod
    def _adjacency(nodes: Iterable[Node], edges: Iterable[Edge]) -> dict[Node, set[Node]]:
        adj: dict[Node, set[Node]] = {node: set() for node in nodes}
        for u, v in edges:
            adj.setdefault(u, set()).add(v)
            adj.setdefault(v, set()).add(u)
        return adj

    def weak_components(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> dict[Node, int]:
        adj = self._adjacency(nodes, edges)
        labels: dict[Node, int] = {}
        label = 0
        for start in adj:
            if start in labels:
                continue
            labels[start] = label
            queue = deque([start])
            while queue:
                node = queue.popleft()
                for nbr in adj[node]:
                    if nbr not in labels:
                        labels[nbr] = label
                        queue.append(nbr)
            label += 1
        return labels

    def shortest_path_lengths(
        self, nodes: Iterable[Node], edges: Iterable[Edge], source: Node
    ) -> dict[Node, int]:
        adj = self._adjacency(nodes, edges)
        if source not in adj:
            raise errors.OracleUnavailableError(
                oracle=self.kind,
                operation="shortest_path_lengths",
                details=f"Source node {source!r} is not part of the projection",
            )
        dist = {source: 0}
        queue = deque([source])
        while queue:
            node = queue.popleft()
            for nbr in adj[node]:
                if nbr not in dist:
                    dist[nbr] = dist[node] + 1
                    queue.append(nbr)
        return dist


OracleKind = Annotated[
    Union[NetworkxOracle, BruteForceOracle],
    pdt.Field(discriminator="kind"),
]
