"""Source graph IR for the lowering engine.

A Graph is a thin, owned view over an ONNX GraphProto: nodes in their
original (topological) order, initializers by name, and the ordered list
of graph inputs. The importer builds a fresh Graph for every conversion,
so passes can flip per-node bits and rewrite input names without touching
the caller's ModelProto.

Weights are tensors whose value is known at conversion time. Their payload
lives in a numpy buffer regardless of how the source encoded it (packed
raw bytes or typed repeated fields).
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterator

import numpy as np


class ConversionError(Exception):
    """A conversion failed. The message is meant for the end user."""


@dataclass
class TensorInfo:
    """A named tensor with a known value.

    `buffer` always holds the payload. Float tensors are float32, shape
    vectors stay int64. `shape` mirrors `buffer.shape` but is kept as a
    plain tuple so passes can read it without touching numpy.
    """
    name: str
    shape: tuple[int, ...]
    dtype: str = "float32"
    buffer: np.ndarray | None = None

    @property
    def size(self) -> int:
        """Number of elements in the payload."""
        if self.buffer is None:
            return 0
        return int(self.buffer.size)

    def flat(self) -> np.ndarray:
        """Payload as a flat float32 array (the only element type ncnn stores)."""
        if self.buffer is None:
            return np.zeros(0, dtype=np.float32)
        return np.ascontiguousarray(self.buffer, dtype=np.float32).reshape(-1)

    def reshaped(self, name: str, shape: tuple[int, ...]) -> "TensorInfo":
        """Copy of this tensor under a new name with a new shape."""
        buf = self.buffer.reshape(shape) if self.buffer is not None else None
        return TensorInfo(name=name, shape=tuple(shape), dtype=self.dtype, buffer=buf)


@dataclass
class Node:
    """A single source operator.

    `op` is the ONNX op_type string. `attrs` holds decoded attribute values
    (int, float, str, numpy array, list of ints/floats/strs). `collapsed`
    is set by the rewriter for nodes that no longer produce a layer.
    """
    index: int
    op: str
    name: str
    inputs: list[str]
    outputs: list[str]
    attrs: dict[str, Any] = field(default_factory=dict)
    collapsed: bool = False

    @property
    def display_name(self) -> str:
        """Layer name: the source name, or the first output when unnamed."""
        if self.name:
            return self.name
        return self.outputs[0] if self.outputs else f"node_{self.index}"

    def has_input(self, index: int) -> bool:
        """True if optional input `index` is present (ONNX marks absent ones with "")."""
        return index < len(self.inputs) and bool(self.inputs[index])

    def attr(self, key: str, default: Any = None) -> Any:
        """Attribute value, or `default` when the node doesn't carry it."""
        return self.attrs.get(key, default)

    def attr_ints(self, key: str) -> list[int]:
        return [int(v) for v in self.attrs.get(key, [])]

    def attr_floats(self, key: str) -> list[float]:
        return [float(v) for v in self.attrs.get(key, [])]


class Graph:
    """Nodes, initializers and graph inputs of one source model.

    Unlike a general-purpose IR this one keeps the source node order:
    ONNX guarantees it is topological, and the emitter writes layers in
    exactly that order.
    """

    def __init__(self) -> None:
        self.nodes: list[Node] = []
        self.initializers: dict[str, TensorInfo] = {}
        self.inputs: list[str] = []     # graph.input names, in order
        self.outputs: list[str] = []    # graph.output names, in order

    # --- Builder methods ---

    def add_initializer(self, info: TensorInfo) -> TensorInfo:
        self.initializers[info.name] = info
        return info

    def add_node(self, op: str, inputs: list[str], outputs: list[str],
                 attrs: dict[str, Any] | None = None, name: str = "") -> Node:
        """Append a node in source order. Returns the created Node."""
        node = Node(
            index=len(self.nodes),
            op=op,
            name=name,
            inputs=list(inputs),
            outputs=list(outputs),
            attrs=attrs or {},
        )
        self.nodes.append(node)
        return node

    # --- Lookups ---

    def __iter__(self) -> Iterator[Node]:
        """Iterate over nodes in source order."""
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def live_nodes(self) -> list[Node]:
        """Nodes not collapsed by a rewrite."""
        return [n for n in self.nodes if not n.collapsed]

    # --- Summary ---

    def summary(self) -> str:
        """Human-readable summary of the graph structure."""
        live = self.live_nodes()
        header = (f"Graph: {len(live)} nodes ({len(self.nodes) - len(live)} collapsed), "
                  f"{len(self.inputs)} inputs, {len(self.initializers)} initializers, "
                  f"{len(self.outputs)} outputs")

        op_counts = Counter(node.op for node in live)
        ops_str = ", ".join(f"{name}: {cnt}" for name, cnt in op_counts.most_common())

        lines = [header]
        if ops_str:
            lines.append(f"  Ops:     {ops_str}")
        if self.inputs:
            lines.append(f"  Inputs:  {', '.join(self.inputs)}")
        if self.outputs:
            lines.append(f"  Outputs: {', '.join(self.outputs)}")
        return "\n".join(lines)

    def dump(self) -> str:
        """Full node-by-node listing in source order."""
        lines = [self.summary(), ""]
        for node in self.nodes:
            mark = " (collapsed)" if node.collapsed else ""
            attrs_str = ""
            if node.attrs:
                parts = [f"{k}={_short(v)}" for k, v in node.attrs.items()]
                attrs_str = "  " + ", ".join(parts)
            lines.append(
                f"  [{node.index:>3}] {node.op:<20} "
                f"{', '.join(node.inputs)} -> {', '.join(node.outputs)}{mark}{attrs_str}"
            )
        return "\n".join(lines)


def _short(value: Any) -> str:
    if isinstance(value, np.ndarray):
        return f"tensor{list(value.shape)}"
    return str(value)
