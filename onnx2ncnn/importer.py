"""ONNX importer: serialized ModelProto -> our source Graph.

Only the subset of the ONNX schema the lowering engine reads is carried
over: model -> graph -> {initializer, input, output, node}; node ->
{op_type, name, input, output, attribute}; tensor -> {dims, data_type,
raw_data | float_data | int64_data}.

Tensor payloads are decoded with onnx.numpy_helper, which understands
both the packed raw_data encoding and the typed repeated fields.
"""

import numpy as np
import onnx
from google.protobuf.message import DecodeError
from onnx import AttributeProto, numpy_helper

from .ir import ConversionError, Graph, TensorInfo


def parse_model(data: bytes) -> onnx.ModelProto:
    """Decode a serialized ModelProto."""
    model = onnx.ModelProto()
    try:
        model.ParseFromString(data)
    except (DecodeError, TypeError) as e:
        raise ConversionError("read_proto_from_binary failed") from e
    return model


def import_graph(model: onnx.ModelProto) -> Graph:
    """Build a fresh Graph from a parsed model.

    The ModelProto is only read; everything the passes mutate lives on
    the returned Graph.
    """
    g = model.graph
    graph = Graph()

    for init in g.initializer:
        graph.add_initializer(tensor_to_info(init))

    graph.inputs = [vi.name for vi in g.input]
    graph.outputs = [vo.name for vo in g.output]

    for n in g.node:
        attrs = {a.name: decode_attr(a) for a in n.attribute}
        if n.op_type == "Constant" and "value" not in attrs:
            value = _constant_value(attrs)
            if value is not None:
                attrs["value"] = value
        graph.add_node(
            n.op_type,
            list(n.input),   # "" marks an omitted optional input
            list(n.output),
            attrs,
            name=n.name,
        )

    return graph


def tensor_to_info(tp: onnx.TensorProto, name: str | None = None) -> TensorInfo:
    """Decode a TensorProto into a TensorInfo with a numpy buffer."""
    arr = numpy_helper.to_array(tp)
    if arr.dtype.kind == "f":
        arr = arr.astype(np.float32, copy=False)
    return TensorInfo(
        name=name if name is not None else tp.name,
        shape=tuple(int(d) for d in arr.shape),
        dtype=str(arr.dtype),
        buffer=arr,
    )


def decode_attr(a: AttributeProto):
    """Decode one attribute into a plain Python / numpy value."""
    if a.type == AttributeProto.FLOAT:
        return float(a.f)
    if a.type == AttributeProto.INT:
        return int(a.i)
    if a.type == AttributeProto.STRING:
        return a.s.decode() if isinstance(a.s, bytes) else str(a.s)
    if a.type == AttributeProto.TENSOR:
        return tensor_to_info(a.t).buffer
    if a.type == AttributeProto.FLOATS:
        return [float(v) for v in a.floats]
    if a.type == AttributeProto.INTS:
        return [int(v) for v in a.ints]
    if a.type == AttributeProto.STRINGS:
        return [s.decode() if isinstance(s, bytes) else str(s) for s in a.strings]
    # Graph/sparse attributes: nothing in the supported vocabulary reads them
    return None


def _constant_value(attrs: dict) -> np.ndarray | None:
    """Normalize the scalar/list forms of Constant into a tensor value."""
    if "value_float" in attrs:
        return np.array(attrs["value_float"], dtype=np.float32)
    if "value_floats" in attrs:
        return np.array(attrs["value_floats"], dtype=np.float32)
    if "value_int" in attrs:
        return np.array(attrs["value_int"], dtype=np.int64)
    if "value_ints" in attrs:
        return np.array(attrs["value_ints"], dtype=np.int64)
    return None
