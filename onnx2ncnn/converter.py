"""Conversion entry points: ONNX bytes or ModelProto in, NcnnModel out.

Usage:
    model = convert(Path("model.onnx").read_bytes(), verbose=True)
    model.write("ncnn.param", "ncnn.bin")

Every call builds its own Graph and classification maps, so concurrent
conversions of different models need no coordination.
"""

import onnx

from .emitter import emit, formula_counts
from .importer import import_graph, parse_model
from .ir import Graph
from .model import NcnnModel
from .passes import PassResult, classify, run_pipeline
from .validation import Severity, run_validators


def convert(data: bytes, **options) -> NcnnModel:
    """Convert a serialized ONNX model. See lower() for options."""
    return convert_model(parse_model(data), **options)


def convert_model(model: onnx.ModelProto, **options) -> NcnnModel:
    """Convert a parsed ONNX model. The ModelProto is left untouched."""
    return lower(import_graph(model), **options)


def lower(graph: Graph, *, fuse: bool = True, verbose: bool = False,
          validation: str = "normal",
          pass_log: list[PassResult] | None = None) -> NcnnModel:
    """Classify, rewrite and emit a source graph.

    Args:
        graph: Freshly imported graph; it is mutated by the rewrite passes.
        fuse: Run the Transpose->MatMul rewrite.
        verbose: Print the graph summary, pass activity and the emitted
            model summary.
        validation: How strictly to check the emitted model.
            "strict"  - Fail on warnings and errors.
            "normal"  - Fail on errors only (default).
            "none"    - Skip validation entirely.
        pass_log: If given, a PassResult is appended for each pass run.

    Raises:
        ConversionError: The graph uses something ncnn can't express.
        ValidationError: The emitted model failed validation.
    """
    fail_on = _validation_severity(validation)

    if verbose:
        print(graph.summary())
        print()

    cls = classify(graph)

    log = pass_log if pass_log is not None else ([] if verbose else None)
    run_pipeline(graph, cls, None if fuse else [], log=log)
    if verbose:
        for entry in log:
            print(entry)
        print()
        print(graph.dump())
        print()

    model = emit(graph, cls)

    if verbose:
        print(model.summary())
        layers, blobs = formula_counts(graph, cls)
        if (layers, blobs) != (model.layer_count, model.blob_count):
            print(f"  note: counted header {model.layer_count} {model.blob_count}, "
                  f"formula gives {layers} {blobs}")
        print()

    if fail_on is not None:
        results = run_validators(model, fail_on=fail_on)
        if verbose:
            for r in results:
                print(r)

    return model


def _validation_severity(validation: str) -> Severity | None:
    """Map validation preference string to fail_on severity."""
    if validation == "strict":
        return Severity.WARNING
    if validation == "normal":
        return Severity.ERROR
    if validation == "none":
        return None
    raise ValueError(
        f"Unknown validation '{validation}' "
        f"(expected 'strict', 'normal', or 'none')"
    )
