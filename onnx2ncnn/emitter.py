"""Emitter: walk the classified graph and produce the ncnn layer list + blob.

Emission order:
  1. One Input layer per runtime graph input (+ its Split).
  2. One MemoryData layer per initializer-style binary-op weight (+ Split).
  3. Every live node in source order, each followed by a Split for every
     output with more than one consumer.

Layer construction is table driven: OP_REGISTRY says which kind a node
becomes and how its params and weight payloads are written.
"""

from .context import EmitContext
from .ir import ConversionError, Graph, Node
from .model import Layer, NcnnModel
from .ops import OP_REGISTRY, memory_data_layer
from .passes.classify import Classification


def emit(graph: Graph, cls: Classification) -> NcnnModel:
    """Lower a classified (and rewritten) graph to an NcnnModel."""
    ctx = EmitContext(cls)

    _emit_inputs(graph, ctx)
    _emit_binary_weights(graph, ctx)

    for node in graph:
        if node.collapsed:
            continue
        _emit_node(node, ctx)

    return NcnnModel(ctx.layers, ctx.blob)


def _emit_inputs(graph: Graph, ctx: EmitContext) -> None:
    for j, name in enumerate(graph.inputs):
        if ctx.is_weight(name) or name in ctx.cls.binary_op_weights:
            continue
        ctx.add_layer(Layer("Input", name, [], [name]))
        ctx.split_after(name, split_name=f"splitncnn_input{j}")


def _emit_binary_weights(graph: Graph, ctx: EmitContext) -> None:
    """MemoryData for binary-op weights; Constant-produced ones emit in place."""
    constant_outputs = {
        node.outputs[0] for node in graph
        if node.op == "Constant" and node.outputs
    }
    for name, info in ctx.cls.binary_op_weights.items():
        if name in constant_outputs:
            continue
        ctx.add_layer(memory_data_layer(info))
        ctx.write_tensor(info)
        ctx.split_after(name)


def _emit_node(node: Node, ctx: EmitContext) -> None:
    op_def = OP_REGISTRY.get(node.op)
    if op_def is None:
        raise ConversionError(f"{node.op} not supported yet!")

    if op_def.skip is not None and op_def.skip(node, ctx):
        return

    if op_def.single_output:
        outputs = node.outputs[:1]
    else:
        outputs = [out for out in node.outputs if out]
    inputs = [ctx.consume(name) for name in node.inputs
              if name and not ctx.is_weight(name)]

    layer = Layer(op_def.layer_kind(node), node.display_name, inputs, outputs)
    if op_def.params is not None:
        op_def.params(node, layer, ctx)
    ctx.add_layer(layer)

    for out in outputs:
        ctx.split_after(out)


def formula_counts(graph: Graph, cls: Classification) -> tuple[int, int]:
    """Header counts as derived from the classification maps alone.

    layer_count = live nodes + inputs + split layers + initializers - weights
    blob_count  = runtime names + split outputs

    Matches the directly counted header for well-formed graphs; Constant
    and Reshape-of-weight entries in the weight map can make it drift.
    """
    splits = cls.split_counts()
    layers = (len(graph.nodes) - cls.collapsed_count + cls.input_count
              + len(splits) + len(graph.initializers) - len(cls.weights))
    blobs = len(cls.blob_names) + sum(splits.values())
    return layers, blobs
