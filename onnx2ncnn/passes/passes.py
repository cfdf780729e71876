"""Rewrite pass plumbing.

A pass is any callable with signature (Graph, Classification) -> bool,
where the return value indicates whether the pass modified the graph.
Passes mutate the graph and the classification maps in-place; both are
owned by a single conversion call.
"""

from dataclasses import dataclass
from typing import Callable

from ..ir import Graph
from .classify import Classification
from .fusion import fuse

# A pass takes the graph and its classification, mutates them, and
# returns True if it made changes.
Pass = Callable[[Graph, Classification], bool]


@dataclass
class PassResult:
    """Record of a single rewrite pass execution."""
    name: str
    changed: bool
    nodes_before: int
    nodes_after: int

    def __str__(self) -> str:
        if self.changed:
            delta = self.nodes_after - self.nodes_before
            sign = "+" if delta >= 0 else ""
            return (f"[pass] {self.name}: {self.nodes_before} -> "
                    f"{self.nodes_after} nodes ({sign}{delta})")
        return f"[pass] {self.name}: no changes"


def run_pipeline(graph: Graph, cls: Classification,
                 pipeline: list[Pass] | None = None,
                 log: list[PassResult] | None = None) -> None:
    """Run a list of passes on the graph, once each in order.

    If log is provided, appends a PassResult for each pass.
    """
    for p in (DEFAULT_PIPELINE if pipeline is None else pipeline):
        n_before = len(graph.live_nodes())
        changed = p(graph, cls)
        if log is not None:
            log.append(PassResult(
                name=getattr(p, '__name__', str(p)),
                changed=changed,
                nodes_before=n_before,
                nodes_after=len(graph.live_nodes()),
            ))


# Single hop peephole fusion; anything beyond it is out of scope.
DEFAULT_PIPELINE: list[Pass] = [fuse]
