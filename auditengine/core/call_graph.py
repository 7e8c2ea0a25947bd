"""Intra-project function call graph.

Nodes are function names resolved against the functions extracted from the
project; calls to names that are not defined locally (library calls, macros,
methods on foreign types) are dropped. Supports:
  - Recursion detection (cycles through a function)
  - Privilege escalation edges (public caller → private callee)
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field

from auditengine.core.types import FunctionInfo, Visibility


# ── Data Structures ──────────────────────────────────────────────────────────


@dataclass
class CallEdge:
    """A directed edge in the call graph."""
    caller: str
    callee: str
    file: str = ""
    line: int = 0


@dataclass
class CallGraph:
    """Directed graph of function calls keyed by function name."""
    nodes: dict[str, FunctionInfo] = field(default_factory=dict)
    edges: list[CallEdge] = field(default_factory=list)
    _outgoing: dict[str, list[str]] = field(default_factory=lambda: defaultdict(list))

    @classmethod
    def build(cls, functions: list[FunctionInfo]) -> "CallGraph":
        graph = cls()
        for fn in functions:
            # First definition wins when names collide across files
            graph.nodes.setdefault(fn.name, fn)
        for fn in functions:
            for callee in fn.calls:
                if callee in graph.nodes:
                    graph.add_edge(CallEdge(fn.name, callee, fn.file, fn.start_line))
        return graph

    def add_edge(self, edge: CallEdge) -> None:
        if edge.callee in self._outgoing[edge.caller]:
            return
        self.edges.append(edge)
        self._outgoing[edge.caller].append(edge.callee)

    def callees_of(self, name: str) -> list[str]:
        return self._outgoing.get(name, [])

    def find_path(self, start: str, target: str, max_depth: int = 32) -> list[str] | None:
        """BFS shortest path between two nodes."""
        if start == target:
            return [start]

        visited: set[str] = set()
        queue: deque[list[str]] = deque([[start]])
        while queue:
            path = queue.popleft()
            if len(path) > max_depth:
                continue
            current = path[-1]
            if current in visited:
                continue
            visited.add(current)
            for callee in self.callees_of(current):
                if callee == target:
                    return path + [callee]
                if callee not in visited:
                    queue.append(path + [callee])
        return None

    def find_cycle(self, name: str) -> list[str] | None:
        """Return a call cycle through `name` (e.g. [a, b, a]) if one exists."""
        for callee in self.callees_of(name):
            back = self.find_path(callee, name)
            if back is not None:
                return [name] + back
        return None

    def escalation_edges(self) -> list[CallEdge]:
        """Edges where a public function calls a private one."""
        return [
            e for e in self.edges
            if self.nodes[e.caller].visibility is Visibility.PUBLIC
            and self.nodes[e.callee].visibility is Visibility.PRIVATE
        ]
