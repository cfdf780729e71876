"""ONNX to ncnn converter.

    from onnx2ncnn import convert
    model = convert(open("model.onnx", "rb").read())
    model.write("ncnn.param", "ncnn.bin")
"""

from .converter import convert, convert_model, lower  # noqa: F401
from .emitter import emit  # noqa: F401
from .importer import import_graph, parse_model  # noqa: F401
from .ir import ConversionError, Graph, Node, TensorInfo  # noqa: F401
from .model import MAGIC, Layer, NcnnModel  # noqa: F401
from .validation import Severity, ValidationError, ValidationResult  # noqa: F401
