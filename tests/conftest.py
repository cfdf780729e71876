"""Shared fixtures and helpers for the test suite.

pytest discovers conftest.py automatically; fixtures defined here are
available to all test files in this directory without explicit imports.
Plain helpers are imported with `from conftest import ...`.
"""

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper, numpy_helper

from onnx2ncnn import convert
from onnx2ncnn.importer import import_graph
from onnx2ncnn.model import Layer, NcnnModel


# ---------------------------------------------------------------------------
# Model builders
# ---------------------------------------------------------------------------

def tensor(name: str, value, dtype=np.float32) -> onnx.TensorProto:
    """Initializer / Constant payload from a Python or numpy value."""
    return numpy_helper.from_array(np.asarray(value, dtype=dtype), name)


def make_model(nodes, inputs=("x",), outputs=("y",), initializers=(),
               opset: int = 13) -> onnx.ModelProto:
    """Wrap nodes in a ModelProto. Inputs/outputs are float tensors of unknown shape."""
    graph = helper.make_graph(
        list(nodes),
        "test",
        [helper.make_tensor_value_info(n, TensorProto.FLOAT, None) for n in inputs],
        [helper.make_tensor_value_info(n, TensorProto.FLOAT, None) for n in outputs],
        initializer=list(initializers),
    )
    return helper.make_model(graph, opset_imports=[helper.make_operatorsetid("", opset)])


def convert_nodes(nodes, **kwargs) -> NcnnModel:
    """Build a model from nodes and run the full byte-level conversion."""
    options = {k: kwargs.pop(k) for k in ("fuse", "verbose", "validation", "pass_log")
               if k in kwargs}
    return convert(make_model(nodes, **kwargs).SerializeToString(), **options)


def graph_of(nodes, **kwargs):
    return import_graph(make_model(nodes, **kwargs))


# ---------------------------------------------------------------------------
# Output inspection
# ---------------------------------------------------------------------------

def body(model: NcnnModel) -> list[str]:
    """Layer lines of the param text (magic and header stripped)."""
    return model.param.splitlines()[2:]


def header(model: NcnnModel) -> tuple[int, int]:
    layers, blobs = model.param.splitlines()[1].split()
    return int(layers), int(blobs)


def layers_of(model: NcnnModel, kind: str) -> list[Layer]:
    return [layer for layer in model.layers if layer.kind == kind]


def only(model: NcnnModel, kind: str) -> Layer:
    """The single layer of a kind, reparsed from the rendered text."""
    found = [Layer.parse(ln) for ln in body(model) if ln.split()[0] == kind]
    assert len(found) == 1, f"expected one {kind}, got {len(found)}"
    return found[0]


def blob_floats(model: NcnnModel) -> np.ndarray:
    return np.frombuffer(model.blob, dtype="<f4")


@pytest.fixture
def rng():
    return np.random.default_rng(0)
