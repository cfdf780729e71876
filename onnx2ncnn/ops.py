"""Op definitions: how each ONNX operator lowers to an ncnn layer.

Each OpDef says which ncnn layer kind a source op becomes, how to write
its numerically keyed parameters (streaming any weight payloads to the
blob in the order the ncnn layer loads them), and when the node
produces no layer at all.

Key conventions shared by the writers:
  - Paired spatial params put width on the primary key and height on
    primary + 10 (kernel 1/11, dilation 2/12, stride 3/13, pad 4/14).
  - Shapes expressed as trailing source axes map to keys in reverse:
    axis r-1 -> key 0, axis r-2 -> key 1, axis r-3 -> key 2.
  - Conv-style weights are preceded by a 4-byte zero quantisation tag.

Adding a new op: define a writer and add an OpDef to OP_REGISTRY.
"""

from dataclasses import dataclass
from typing import Callable

import numpy as np

from .context import EmitContext
from .ir import ConversionError, Node, TensorInfo
from .model import Layer

# Param writer: (node, layer, ctx) -> None. Fills layer.params, writes the blob.
ParamWriter = Callable[[Node, Layer, EmitContext], None]

# Skip predicate: True if the node emits no layer.
SkipPredicate = Callable[[Node, EmitContext], bool]

FLT_MAX = float(np.finfo(np.float32).max)
INT32_MAX = 2**31 - 1

# Sentinels understood by ncnn's Convolution / Crop layers
PAD_SAME = -233
CROP_UNSET = -233
CROP_TO_END = -234

SAME_PADS = ("SAME_LOWER", "SAME_UPPER")


@dataclass
class OpDef:
    """Lowering rule for one source op.

    Fields:
        kind: ncnn layer type, or a callable (node) -> str when the type
            depends on attributes (Conv group selects the DepthWise variant).
        params: Writes numerically keyed params and weight payloads.
            None = the layer has no params.
        skip: Predicate for nodes that emit nothing (folded weights).
            None = always emitted.
        single_output: Only the first output is kept (Dropout's mask is
            dropped).
    """
    kind: str | Callable[[Node], str]
    params: ParamWriter | None = None
    skip: SkipPredicate | None = None
    single_output: bool = False

    def layer_kind(self, node: Node) -> str:
        if callable(self.kind):
            return self.kind(node)
        return self.kind


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _f32(value) -> float:
    """Round through float32, matching what the param reader parses back."""
    return float(np.float32(value))


def _put_pair(layer: Layer, key: int, values: list[int]) -> None:
    """Write a width/height pair: width on `key`, height on `key + 10`."""
    if len(values) == 1:
        layer.params[key] = values[0]
    elif len(values) == 2:
        layer.params[key] = values[1]
        layer.params[key + 10] = values[0]


def _put_dims(layer: Layer, dims: list[int], batch: bool) -> None:
    """Write trailing dims in target axis order (w=0, h=1, c=2).

    With `batch`, the leading axis is the batch axis and is dropped.
    """
    if batch and len(dims) > 1:
        dims = dims[1:]
    for key, d in enumerate(reversed(dims[-3:])):
        layer.params[key] = int(d)


def _tensor_ints(info: TensorInfo) -> list[int]:
    return [int(v) for v in info.buffer.reshape(-1)]


def _tensor_floats(info: TensorInfo) -> list[float]:
    return [float(v) for v in np.asarray(info.buffer, dtype=np.float32).reshape(-1)]


# ---------------------------------------------------------------------------
# Element-wise ops
# ---------------------------------------------------------------------------

def _make_op_type_writer(op_type: int) -> ParamWriter:
    """Create a writer for UnaryOp/BinaryOp/Eltwise: just `0=op_type`."""
    def writer(node: Node, layer: Layer, ctx: EmitContext) -> None:
        layer.params[0] = op_type
    return writer


UNARY_OP_TYPES = {
    "Abs": 0, "Neg": 1, "Floor": 2, "Ceil": 3, "Sqrt": 5, "Exp": 7,
    "Log": 8, "Sin": 9, "Cos": 10, "Tan": 11, "Asin": 12, "Acos": 13,
    "Atan": 14, "Reciprocal": 15,
}

BINARY_OP_TYPES = {
    "Add": 0, "Sub": 1, "Mul": 2, "Div": 3, "Max": 4, "Min": 5, "Pow": 6,
}


# ---------------------------------------------------------------------------
# Pooling
# ---------------------------------------------------------------------------

def _pooling_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    kernel = node.attr_ints("kernel_shape")
    strides = node.attr_ints("strides")
    pads = node.attr_ints("pads")

    layer.params[0] = 1 if node.op == "AveragePool" else 0
    _put_pair(layer, 1, kernel)
    _put_pair(layer, 2, strides)

    if len(pads) == 1:
        layer.params[3] = pads[0]
    elif len(pads) == 2:
        layer.params[3] = pads[1]
        layer.params[13] = pads[0]
    elif len(pads) == 4:
        layer.params[3] = pads[1]
        layer.params[13] = pads[0]
        layer.params[14] = pads[3]
        layer.params[15] = pads[2]

    layer.params[5] = 2 if node.attr("auto_pad", "") in SAME_PADS else 1


def _make_global_pool_writer(pool: int) -> ParamWriter:
    def writer(node: Node, layer: Layer, ctx: EmitContext) -> None:
        layer.params[0] = pool
        layer.params[4] = 1
    return writer


# ---------------------------------------------------------------------------
# Convolution
# ---------------------------------------------------------------------------

def _conv_kind(base: str) -> Callable[[Node], str]:
    def kind(node: Node) -> str:
        return f"{base}DepthWise" if node.attr("group", 1) > 1 else base
    return kind


def _conv_spatial(node: Node, layer: Layer, weight: TensorInfo) -> None:
    """Kernel, dilation, stride and pad params shared by Conv and ConvTranspose."""
    kernel = node.attr_ints("kernel_shape") or list(weight.shape[2:])
    pads = node.attr_ints("pads")

    _put_pair(layer, 1, kernel)
    _put_pair(layer, 2, node.attr_ints("dilations"))
    _put_pair(layer, 3, node.attr_ints("strides"))

    if node.attr("auto_pad", "") in SAME_PADS:
        layer.params[4] = PAD_SAME
    elif len(pads) == 1:
        layer.params[4] = pads[0]
    elif len(pads) == 2:
        layer.params[4] = pads[1]
        layer.params[14] = pads[0]
    elif len(pads) == 4:
        layer.params[4] = pads[1]
        layer.params[14] = pads[0]
        if pads[2:] != pads[:2]:
            layer.params[15] = pads[3]
            layer.params[16] = pads[2]


def _conv_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    weight = ctx.weight(node, 1)
    bias = ctx.optional_weight(node, 2)
    group = node.attr("group", 1)

    layer.params[0] = weight.shape[0]
    _conv_spatial(node, layer, weight)
    layer.params[5] = 1 if bias is not None else 0
    layer.params[6] = weight.size
    if group > 1:
        layer.params[7] = group

    ctx.write_tag()
    ctx.write_tensor(weight)
    if bias is not None:
        ctx.write_tensor(bias)


def _deconv_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    """ConvTranspose: weight is reordered from inch-outch to outch-inch per group."""
    weight = ctx.weight(node, 1)
    bias = ctx.optional_weight(node, 2)
    group = node.attr("group", 1)
    num_filter = weight.shape[1] * group

    layer.params[0] = num_filter
    _conv_spatial(node, layer, weight)
    layer.params[5] = 1 if bias is not None else 0
    layer.params[6] = weight.size
    if group > 1:
        layer.params[7] = group

    ctx.write_tag()

    maxk = int(np.prod(weight.shape[2:])) if len(weight.shape) > 2 else 1
    num_filter_g = num_filter // group
    num_input = weight.size // maxk // num_filter_g // group
    data = weight.flat().reshape(group, num_input, num_filter_g, maxk)
    ctx.write_floats(data.transpose(0, 2, 1, 3))

    if bias is not None:
        ctx.write_tensor(bias)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _batchnorm_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    scale = ctx.weight(node, 1)
    bias = ctx.weight(node, 2)
    mean = ctx.weight(node, 3)
    var = ctx.weight(node, 4)
    epsilon = node.attr("epsilon", 1e-5)

    channels = scale.size
    layer.params[0] = channels

    ctx.write_tensor(scale)
    ctx.write_tensor(mean)
    ctx.write_floats(var.flat()[:channels] + np.float32(epsilon))
    ctx.write_tensor(bias)


def _instancenorm_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    scale = ctx.weight(node, 1)
    bias = ctx.weight(node, 2)

    layer.params[0] = scale.size
    layer.params[1] = _f32(node.attr("epsilon", 1e-5))

    ctx.write_tensor(scale)
    ctx.write_tensor(bias)


def _lrn_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    layer.params[0] = 0  # norm_region: across channels
    layer.params[1] = int(node.attr("size", 1))
    layer.params[2] = _f32(node.attr("alpha", 1.0))
    layer.params[3] = _f32(node.attr("beta", 0.5))
    layer.params[4] = _f32(node.attr("bias", 1.0))


def _image_scaler_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    bias = node.attr_floats("bias")
    scale = node.attr("scale", 1.0)
    channels = len(bias)

    layer.params[0] = channels
    layer.params[1] = 1  # bias_term

    ctx.write_floats(np.full(channels, scale, dtype=np.float32))
    ctx.write_floats(bias)


# ---------------------------------------------------------------------------
# Activations
# ---------------------------------------------------------------------------

def _clip_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    """Clip bounds come from attrs (opset < 11) or from weight inputs."""
    lo = node.attr("min", -FLT_MAX)
    hi = node.attr("max", FLT_MAX)

    lo_w = ctx.optional_weight(node, 1)
    hi_w = ctx.optional_weight(node, 2)
    if lo_w is not None:
        lo = _tensor_floats(lo_w)[0]
    if hi_w is not None:
        hi = _tensor_floats(hi_w)[0]

    layer.params[0] = _f32(lo)
    layer.params[1] = _f32(hi)


def _make_alpha_writer(default: float) -> ParamWriter:
    """ELU and LeakyRelu: `0=alpha`."""
    def writer(node: Node, layer: Layer, ctx: EmitContext) -> None:
        layer.params[0] = _f32(node.attr("alpha", default))
    return writer


def _prelu_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    slope = ctx.weight(node, 1)
    layer.params[0] = slope.size
    ctx.write_tensor(slope)


# ---------------------------------------------------------------------------
# Inner product
# ---------------------------------------------------------------------------

def _matmul_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    """MatMul against a weight: reorder (num_input, num_output) to output-major."""
    weight = ctx.weight(node, 1)
    size = weight.size
    num_output = weight.shape[-1] if weight.shape else 1
    num_input = size // num_output

    layer.params[0] = num_output
    layer.params[1] = 0  # bias_term
    layer.params[2] = size

    ctx.write_tag()
    ctx.write_floats(weight.flat().reshape(num_input, num_output).T)


def _gemm_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    """Gemm lowers only in its InnerProduct form: A * B^T + C."""
    alpha = node.attr("alpha", 1.0)
    beta = node.attr("beta", 1.0)
    trans_a = node.attr("transA", 0)
    trans_b = node.attr("transB", 0)

    if not (alpha == 1.0 and beta == 1.0 and trans_a == 0 and trans_b == 1):
        raise ConversionError(
            f"Unsupported Gemm form alpha={alpha:g} beta={beta:g} "
            f"transA={trans_a} transB={trans_b}!"
        )

    weight = ctx.weight(node, 1)
    bias = ctx.optional_weight(node, 2)

    layer.params[0] = bias.size if bias is not None else weight.shape[0]
    layer.params[1] = 1 if bias is not None else 0
    layer.params[2] = weight.size

    ctx.write_tag()
    ctx.write_tensor(weight)
    if bias is not None:
        ctx.write_tensor(bias)


# ---------------------------------------------------------------------------
# Shape / data movement
# ---------------------------------------------------------------------------

def _make_axis_writer(extra: dict[int, int] | None = None) -> ParamWriter:
    """Concat / Softmax: the target drops the batch axis, so `0=axis-1`."""
    def writer(node: Node, layer: Layer, ctx: EmitContext) -> None:
        layer.params[0] = int(node.attr("axis", 1)) - 1
        if extra:
            layer.params.update(extra)
    return writer


def _flatten_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    axis = node.attr("axis", 1)
    if axis != 1:
        raise ConversionError(f"Unsupported Flatten axis {axis}!")


def _reshape_skip(node: Node, ctx: EmitContext) -> bool:
    """Reshape of a weight was folded by the classifier."""
    return len(node.inputs) in (1, 2) and ctx.is_weight(node.inputs[0])


def _reshape_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    if len(node.inputs) >= 2:
        shape = _tensor_ints(ctx.weight(node, 1))
    else:
        shape = node.attr_ints("shape")

    if len(shape) == 1:
        layer.params[0] = shape[0]
    elif len(shape) == 5:
        layer.params[0] = shape[4] * shape[3]
        layer.params[1] = shape[2]
        layer.params[2] = shape[1]
    elif shape:
        _put_dims(layer, shape, batch=True)


def _pad_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    """Pad: pads/value from attrs (opset < 11) or from weight inputs."""
    mode = node.attr("mode", "constant")
    pads = node.attr_ints("pads")
    value = node.attr("value", 0.0)

    pads_w = ctx.optional_weight(node, 1)
    value_w = ctx.optional_weight(node, 2)
    if pads_w is not None:
        pads = _tensor_ints(pads_w)
    if value_w is not None:
        value = _tensor_floats(value_w)[0]

    if mode == "constant":
        pad_type = 0
    elif mode == "edge":
        pad_type = 1
    else:
        raise ConversionError(f"Unsupported Pad mode {mode}!")

    if len(pads) < 4 or len(pads) % 2:
        raise ConversionError(f"Unsupported Pad pads {pads}!")

    # pads = [x1_begin, x2_begin, ..., x1_end, x2_end, ...]; ncnn pads h and w
    rank = len(pads) // 2
    top, left = pads[rank - 2], pads[rank - 1]
    bottom, right = pads[2 * rank - 2], pads[2 * rank - 1]

    layer.params[0] = top
    layer.params[1] = bottom
    layer.params[2] = left
    layer.params[3] = right
    layer.params[4] = pad_type
    layer.params[5] = _f32(value)


def _slice_inputs(node: Node, ctx: EmitContext) -> tuple[list[int], list[int], list[int], list[int]]:
    """starts/ends/axes/steps from attrs (opset < 10) or from weight inputs."""
    if len(node.inputs) > 1:
        starts = _tensor_ints(ctx.weight(node, 1))
        ends = _tensor_ints(ctx.weight(node, 2))
        axes_w = ctx.optional_weight(node, 3)
        steps_w = ctx.optional_weight(node, 4)
        axes = _tensor_ints(axes_w) if axes_w is not None else []
        steps = _tensor_ints(steps_w) if steps_w is not None else []
    else:
        starts = node.attr_ints("starts")
        ends = node.attr_ints("ends")
        axes = node.attr_ints("axes")
        steps = node.attr_ints("steps")
    return starts, ends, axes, steps


def _slice_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    starts, ends, axes, steps = _slice_inputs(node, ctx)

    if any(s != 1 for s in steps):
        raise ConversionError(f"Unsupported Slice step {steps}!")

    woffset = hoffset = coffset = 0
    outw = outh = outc = CROP_UNSET

    def extent(start: int, end: int) -> int:
        if end == -1 or end >= INT32_MAX:
            return CROP_TO_END
        return end - start

    if axes:
        # Explicit axes address an NCHW blob; each lands in its own slot
        for axis, start, end in zip(axes, starts, ends):
            if axis < 0:
                axis += 4
            if axis == 0 and start == 0 and extent(start, end) == CROP_TO_END:
                continue
            if axis == 1:
                coffset, outc = start, extent(start, end)
            elif axis == 2:
                hoffset, outh = start, extent(start, end)
            elif axis == 3:
                woffset, outw = start, extent(start, end)
            else:
                raise ConversionError(f"Unsupported Slice axes {axes}!")
    else:
        if len(starts) >= 2:
            woffset = starts[-1]
            outw = extent(starts[-1], ends[-1])
        if len(starts) >= 3:
            hoffset = starts[-2]
            outh = extent(starts[-2], ends[-2])
        if len(starts) == 4:
            coffset = starts[-3]
            outc = extent(starts[-3], ends[-3])

    layer.params[0] = woffset
    layer.params[1] = hoffset
    layer.params[2] = coffset
    layer.params[3] = outw
    layer.params[4] = outh
    layer.params[5] = outc


# Permute order_type by perm[1:], for rank 4 (c h w) and rank 5 (c d h w)
PERMUTE_ORDERS_4 = {
    (1, 2, 3): 0, (1, 3, 2): 1, (2, 1, 3): 2,
    (2, 3, 1): 3, (3, 1, 2): 4, (3, 2, 1): 5,
}
PERMUTE_ORDERS_5 = {
    (1, 2, 3, 4): 0, (1, 3, 4, 2): 1, (2, 1, 3, 4): 2,
    (2, 3, 4, 1): 3, (3, 4, 1, 2): 4, (3, 4, 2, 1): 5,
}


def _transpose_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    perm = node.attr_ints("perm")

    if len(perm) == 4:
        order = PERMUTE_ORDERS_4.get(tuple(perm[1:]))
        if order is not None:
            layer.params[0] = order
    elif len(perm) == 5:
        order = PERMUTE_ORDERS_5.get(tuple(perm[1:]))
        if order is None:
            raise ConversionError(f"Unsupported Transpose perm {perm}!")
        layer.params[0] = order


def _interp_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    """Upsample / Resize: scales from attrs or from the scales weight input."""
    mode = node.attr("mode", "")

    if len(node.inputs) == 1:
        scales = node.attr_floats("scales")
    else:
        # Resize >= 11 is (X, roi, scales, sizes); Upsample / Resize-10 is (X, scales)
        index = 2 if len(node.inputs) >= 3 else 1
        scales = _tensor_floats(ctx.weight(node, index))

    if mode == "trilinear":
        raise ConversionError("Unsupported Upsample/Resize mode trilinear!")
    resize_type = 2 if mode in ("bilinear", "linear") else 1

    h_scale = w_scale = 1.0
    if len(scales) == 2:
        w_scale = scales[1]
    elif len(scales) == 3:
        h_scale, w_scale = scales[1], scales[2]
    elif len(scales) == 4:
        if scales[1] != 1.0:
            raise ConversionError(f"Unsupported Upsample/Resize scales {scales}!")
        h_scale, w_scale = scales[2], scales[3]
    else:
        raise ConversionError(f"Unsupported Upsample/Resize scales {scales}!")

    layer.params[0] = resize_type
    layer.params[1] = _f32(h_scale)
    layer.params[2] = _f32(w_scale)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

def _constant_skip(node: Node, ctx: EmitContext) -> bool:
    """Constants only become layers when they feed Add/Mul."""
    return not node.outputs or node.outputs[0] not in ctx.cls.binary_op_weights


def _constant_params(node: Node, layer: Layer, ctx: EmitContext) -> None:
    data = ctx.cls.binary_op_weights[node.outputs[0]]
    _put_dims(layer, list(data.shape), batch=True)
    ctx.write_tensor(data)


def memory_data_layer(info: TensorInfo) -> Layer:
    """MemoryData layer for an initializer-style binary-op weight (no batch axis)."""
    layer = Layer("MemoryData", info.name, [], [info.name])
    if info.shape:
        _put_dims(layer, list(info.shape), batch=False)
    else:
        layer.params[0] = 1
    return layer


# ---------------------------------------------------------------------------
# OP_REGISTRY: the single source of truth for supported ops
# ---------------------------------------------------------------------------

OP_REGISTRY: dict[str, OpDef] = {
    # --- Element-wise unary ---
    **{op: OpDef("UnaryOp", _make_op_type_writer(t)) for op, t in UNARY_OP_TYPES.items()},

    # --- Element-wise binary ---
    **{op: OpDef("BinaryOp", _make_op_type_writer(t)) for op, t in BINARY_OP_TYPES.items()},
    "Sum": OpDef("Eltwise", _make_op_type_writer(1)),

    # --- Pooling ---
    "AveragePool":       OpDef("Pooling", _pooling_params),
    "MaxPool":           OpDef("Pooling", _pooling_params),
    "GlobalAveragePool": OpDef("Pooling", _make_global_pool_writer(1)),
    "GlobalMaxPool":     OpDef("Pooling", _make_global_pool_writer(0)),

    # --- Convolution / inner product ---
    "Conv":          OpDef(_conv_kind("Convolution"), _conv_params),
    "ConvTranspose": OpDef(_conv_kind("Deconvolution"), _deconv_params),
    "MatMul":        OpDef("InnerProduct", _matmul_params),
    "Gemm":          OpDef("InnerProduct", _gemm_params),

    # --- Normalization ---
    "BatchNormalization":    OpDef("BatchNorm", _batchnorm_params),
    "InstanceNormalization": OpDef("InstanceNorm", _instancenorm_params),
    "LRN":                   OpDef("LRN", _lrn_params),
    "ImageScaler":           OpDef("Scale", _image_scaler_params),

    # --- Activations ---
    "Relu":      OpDef("ReLU"),
    "LeakyRelu": OpDef("ReLU", _make_alpha_writer(0.01)),
    "Elu":       OpDef("ELU", _make_alpha_writer(1.0)),
    "PRelu":     OpDef("PReLU", _prelu_params),
    "Sigmoid":   OpDef("Sigmoid"),
    "Clip":      OpDef("Clip", _clip_params),
    "Softmax":   OpDef("Softmax", _make_axis_writer({1: 1})),

    # --- Shape / data movement ---
    "Concat":    OpDef("Concat", _make_axis_writer()),
    "Flatten":   OpDef("Flatten", _flatten_params),
    "Reshape":   OpDef("Reshape", _reshape_params, skip=_reshape_skip),
    "Pad":       OpDef("Padding", _pad_params),
    "Slice":     OpDef("Crop", _slice_params),
    "Transpose": OpDef("Permute", _transpose_params),
    "Upsample":  OpDef("Interp", _interp_params),
    "Resize":    OpDef("Interp", _interp_params),
    "Dropout":   OpDef("Dropout", single_output=True),

    # --- Constants ---
    "Constant":  OpDef("MemoryData", _constant_params, skip=_constant_skip),
}
