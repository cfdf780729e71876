"""Fusion pass: peephole rewriting over adjacent source nodes.

Patterns describe a run of consecutive nodes (by source position) to
match, a validator for the structural checks beyond op types, and an
apply callback that performs the rewrite. Matching never cascades: once
a run is rewritten, scanning resumes after its last node.

Rewrites don't delete nodes. They set `collapsed` on nodes that should no
longer produce a layer, which keeps node indices stable for the emitter.
"""

from dataclasses import dataclass
from typing import Callable

import numpy as np

from ..ir import Graph, Node
from .classify import Classification


# ---------------------------------------------------------------------------
# Fusion pattern definition
# ---------------------------------------------------------------------------

@dataclass
class FusionPattern:
    """A run of adjacent ops that can be rewritten in place.

    `pattern` lists op types from first to last node of the run. The
    validator sees the matched run plus the classification maps and
    returns True if the rewrite is valid. `apply` mutates the run and the
    maps; it must collapse at least one node.
    """
    name: str
    pattern: list[str]
    validator: Callable[[list[Node], Graph, Classification], bool]
    apply: Callable[[list[Node], Graph, Classification], None]


# ---------------------------------------------------------------------------
# Pattern registry
# ---------------------------------------------------------------------------

FUSION_PATTERNS: list[FusionPattern] = []


def register_fusion(pattern: FusionPattern) -> None:
    """Add a fusion pattern to the registry."""
    FUSION_PATTERNS.append(pattern)


# ---------------------------------------------------------------------------
# Matching and rewriting engine
# ---------------------------------------------------------------------------

def fuse(graph: Graph, cls: Classification,
         patterns: list[FusionPattern] | None = None) -> bool:
    """Apply fusion patterns to the graph in source order.

    At each position, patterns are tried longest-first. A successful match
    advances the scan past the whole run, so a node takes part in at most
    one rewrite.
    """
    all_patterns = patterns if patterns is not None else FUSION_PATTERNS
    if not all_patterns:
        return False

    ordered = sorted(all_patterns, key=lambda p: len(p.pattern), reverse=True)
    changed = False
    i = 0
    while i < len(graph.nodes):
        step = 1
        for pattern in ordered:
            chain = _try_match(i, pattern, graph, cls)
            if chain is not None:
                pattern.apply(chain, graph, cls)
                step = len(chain)
                changed = True
                break
        i += step
    return changed


def _try_match(start: int, pattern: FusionPattern, graph: Graph,
               cls: Classification) -> list[Node] | None:
    """Try to match a pattern on the nodes starting at `start`."""
    end = start + len(pattern.pattern)
    if end > len(graph.nodes):
        return None

    chain = graph.nodes[start:end]
    for node, op in zip(chain, pattern.pattern):
        if node.collapsed or node.op != op:
            return None

    if not pattern.validator(chain, graph, cls):
        return None
    return chain


# ---------------------------------------------------------------------------
# Registered fusion patterns
# ---------------------------------------------------------------------------

def _validate_transpose_matmul(chain: list[Node], graph: Graph, cls: Classification) -> bool:
    """Transpose must swap a 2-D weight and feed only the next MatMul's B input."""
    transpose, matmul = chain
    if not transpose.inputs or not transpose.outputs:
        return False

    weight = cls.weights.get(transpose.inputs[0])
    if weight is None or len(weight.shape) != 2:
        return False

    out = transpose.outputs[0]
    if cls.fan_out.get(out, 0) != 1:
        return False
    if transpose.attr_ints("perm") != [1, 0]:
        return False
    return len(matmul.inputs) >= 2 and matmul.inputs[1] == out


def _apply_transpose_matmul(chain: list[Node], graph: Graph, cls: Classification) -> None:
    """Transpose the weight buffer and point the MatMul straight at it."""
    transpose, matmul = chain
    weight = cls.weights[transpose.inputs[0]]

    # dst[j, k] = src[k, j]
    weight.buffer = np.ascontiguousarray(weight.buffer.T)
    weight.shape = tuple(weight.buffer.shape)

    matmul.inputs[1] = transpose.inputs[0]
    transpose.collapsed = True

    out = transpose.outputs[0]
    cls.fan_out.pop(out, None)
    cls.blob_names.discard(out)
    cls.collapsed_count += 1


register_fusion(FusionPattern(
    name="transpose_matmul",
    pattern=["Transpose", "MatMul"],
    validator=_validate_transpose_matmul,
    apply=_apply_transpose_matmul,
))
