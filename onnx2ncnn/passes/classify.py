"""Classifier / constant-folder.

One scan over the source node list that decides, for every value name,
whether it is a weight (known at conversion time) or a runtime blob.
Weights propagate across Constant and across Reshape-of-weight; weights
feeding Add/Mul are moved to a separate bucket because ncnn needs them as
explicit MemoryData layers rather than folded parameters.

The resulting maps are owned by one conversion call and are what the
rewriter and the emitter consume.
"""

from collections import Counter
from dataclasses import dataclass, field

import numpy as np

from ..ir import Graph, Node, TensorInfo

# Element-wise binary ops whose weight operands become MemoryData layers
BINARY_WEIGHT_OPS = ("Add", "Mul")


@dataclass
class Classification:
    """Derived maps for one conversion.

    weights:           value name -> tensor, for every conversion-time value
    binary_op_weights: weights that feed Add/Mul, promoted back to blobs
    fan_out:           runtime value name -> number of runtime uses
    blob_names:        every runtime value name
    input_count:       graph inputs that become Input layers
    collapsed_count:   nodes removed by rewrites
    """
    weights: dict[str, TensorInfo] = field(default_factory=dict)
    binary_op_weights: dict[str, TensorInfo] = field(default_factory=dict)
    fan_out: Counter = field(default_factory=Counter)
    blob_names: set[str] = field(default_factory=set)
    input_count: int = 0
    collapsed_count: int = 0

    def is_weight(self, name: str) -> bool:
        return name in self.weights

    def split_counts(self) -> dict[str, int]:
        """Values that need a Split layer, with their consumer counts."""
        return {name: n for name, n in self.fan_out.items() if n > 1}


def classify(graph: Graph) -> Classification:
    """Partition every value of the graph into weights and runtime blobs."""
    cls = Classification()

    for name, info in graph.initializers.items():
        cls.weights[name] = info

    for node in graph:
        if node.op == "Constant":
            _fold_constant(node, cls)
            continue

        if node.op == "Reshape" and _fold_reshape(node, cls):
            continue

        if node.op in BINARY_WEIGHT_OPS:
            for inp in node.inputs:
                info = cls.weights.pop(inp, None)
                if info is not None:
                    cls.binary_op_weights[inp] = info

        for inp in node.inputs:
            if not inp or inp in cls.weights:
                continue
            cls.blob_names.add(inp)
            cls.fan_out[inp] += 1

        if node.op == "Dropout":
            # Only the data output survives; the mask output is dropped
            if node.outputs:
                cls.blob_names.add(node.outputs[0])
            continue

        cls.blob_names.update(out for out in node.outputs if out)

    for name in graph.inputs:
        if name in cls.weights or name in cls.binary_op_weights:
            continue
        cls.blob_names.add(name)
        cls.input_count += 1

    return cls


def _fold_constant(node: Node, cls: Classification) -> None:
    """Store a Constant's `value` tensor as a weight under its output."""
    if not node.outputs:
        return
    value = node.attr("value")
    if value is None:
        value = np.zeros(0, dtype=np.float32)
    arr = np.asarray(value)
    if arr.dtype.kind == "f":
        arr = arr.astype(np.float32, copy=False)
    out = node.outputs[0]
    cls.weights[out] = TensorInfo(name=out, shape=tuple(arr.shape),
                                  dtype=str(arr.dtype), buffer=arr)


def _fold_reshape(node: Node, cls: Classification) -> bool:
    """Fold Reshape(weight) into a new weight. Returns True if folded.

    Handles the attribute form (1 input) and the opset-5 form (2 inputs,
    shape given as an int64 tensor). In the attribute form the weight keeps
    its shape; only the name changes.
    """
    if len(node.inputs) not in (1, 2) or not node.outputs:
        return False
    data = cls.weights.get(node.inputs[0])
    if data is None:
        return False

    out = node.outputs[0]
    shape = data.shape
    if len(node.inputs) == 2 and node.inputs[1] in cls.weights:
        target = cls.weights[node.inputs[1]]
        if target.buffer is not None:
            shape = _resolve_shape(data.shape, [int(v) for v in target.buffer.reshape(-1)])

    cls.weights[out] = data.reshaped(out, shape)
    return True


def _resolve_shape(src: tuple[int, ...], target: list[int]) -> tuple[int, ...]:
    """Apply ONNX Reshape rules: 0 copies the source dim, -1 is inferred.

    Falls back to the source shape when the target can't describe the
    same number of elements.
    """
    dims = [src[i] if d == 0 and i < len(src) else d for i, d in enumerate(target)]
    total = int(np.prod(src)) if src else 1

    if dims.count(-1) == 1:
        known = int(np.prod([d for d in dims if d != -1]))
        if known == 0 or total % known:
            return src
        dims[dims.index(-1)] = total // known

    if any(d < 0 for d in dims) or (int(np.prod(dims)) if dims else 1) != total:
        return src
    return tuple(dims)
