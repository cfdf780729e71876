"""Mutable state of one emission: layers written so far, the weight blob,
the remaining split fan-out per value and the internal split counter.

Nothing here outlives a conversion call.
"""

import struct

import numpy as np

from .ir import ConversionError, Node, TensorInfo
from .model import Layer
from .passes.classify import Classification


class EmitContext:
    """Everything the per-op writers need while a graph is being emitted."""

    def __init__(self, cls: Classification) -> None:
        self.cls = cls
        self.layers: list[Layer] = []
        self.blob = bytearray()
        # Remaining uses of every value that needs a Split; consumers count down
        self.refs: dict[str, int] = cls.split_counts()
        self.internal_split = 0

    # --- Weight lookups ---

    def is_weight(self, name: str) -> bool:
        return self.cls.is_weight(name)

    def weight(self, node: Node, index: int) -> TensorInfo:
        """The weight feeding input `index` of `node`; fails if it isn't one."""
        name = node.inputs[index] if index < len(node.inputs) else ""
        info = self.cls.weights.get(name) if name else None
        if info is None or info.buffer is None:
            raise ConversionError(
                f"{node.op} expects weight input {index} ({name or 'missing'})"
            )
        return info

    def optional_weight(self, node: Node, index: int) -> TensorInfo | None:
        """Like weight(), but None when the optional input is absent."""
        if not node.has_input(index):
            return None
        return self.weight(node, index)

    # --- Blob writers ---

    def write_tensor(self, info: TensorInfo) -> None:
        """Append a weight payload as raw little-endian float32."""
        self.write_floats(info.flat())

    def write_floats(self, data) -> None:
        arr = np.ascontiguousarray(np.asarray(data, dtype="<f4").reshape(-1))
        self.blob += arr.tobytes()

    def write_tag(self) -> None:
        """Zero quantisation tag: the following payload is plain float32."""
        self.blob += struct.pack("<i", 0)

    # --- Blob names and splits ---

    def consume(self, name: str) -> str:
        """Name a consumer reads: the next split output when `name` fans out.

        The first consumer takes the highest-indexed split output.
        """
        if name not in self.refs:
            return name
        self.refs[name] -= 1
        return f"{name}_splitncnn_{self.refs[name]}"

    def add_layer(self, layer: Layer) -> Layer:
        self.layers.append(layer)
        return layer

    def split_after(self, name: str, split_name: str | None = None) -> Layer | None:
        """Emit a Split for `name` if it has more than one consumer.

        Without an explicit name the split is numbered by the internal
        split counter.
        """
        count = self.refs.get(name, 0)
        if count <= 1:
            return None
        if split_name is None:
            split_name = f"splitncnn_{self.internal_split}"
            self.internal_split += 1
        return self.add_layer(Layer(
            kind="Split",
            name=split_name,
            inputs=[name],
            outputs=[f"{name}_splitncnn_{k}" for k in range(count)],
        ))
