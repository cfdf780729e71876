"""Per-op lowering tests: layer kind, numbered params and blob payloads.

Each test converts a one- or two-node model and inspects the single
emitted layer of interest, reparsed from the rendered param text.
"""

import numpy as np
import pytest
from onnx import helper

from onnx2ncnn import ConversionError
from onnx2ncnn.ops import FLT_MAX, OP_REGISTRY

from conftest import blob_floats, body, convert_nodes, layers_of, only, tensor


def _f32(v):
    return pytest.approx(float(np.float32(v)), rel=1e-6, abs=1e-6)


# ---------------------------------------------------------------------------
# Element-wise
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("op,code", [
    ("Abs", 0), ("Neg", 1), ("Floor", 2), ("Ceil", 3), ("Sqrt", 5), ("Exp", 7),
    ("Log", 8), ("Sin", 9), ("Cos", 10), ("Tan", 11), ("Asin", 12),
    ("Acos", 13), ("Atan", 14), ("Reciprocal", 15),
])
def test_unary_op_types(op, code):
    model = convert_nodes([helper.make_node(op, ["x"], ["y"])])
    assert only(model, "UnaryOp").params == {0: code}


@pytest.mark.parametrize("op,code", [
    ("Add", 0), ("Sub", 1), ("Mul", 2), ("Div", 3), ("Max", 4), ("Min", 5), ("Pow", 6),
])
def test_binary_op_types(op, code):
    model = convert_nodes([helper.make_node(op, ["a", "b"], ["y"])], inputs=("a", "b"))
    layer = only(model, "BinaryOp")
    assert layer.inputs == ["a", "b"]
    assert layer.params == {0: code}


def test_sum_is_eltwise():
    model = convert_nodes([helper.make_node("Sum", ["a", "b"], ["y"])], inputs=("a", "b"))
    assert only(model, "Eltwise").params == {0: 1}


# ---------------------------------------------------------------------------
# Pooling
# ---------------------------------------------------------------------------

def test_max_pool():
    node = helper.make_node("MaxPool", ["x"], ["y"], kernel_shape=[2, 2], strides=[2, 2])
    layer = only(convert_nodes([node]), "Pooling")
    assert layer.params == {0: 0, 1: 2, 11: 2, 2: 2, 12: 2, 5: 1}


def test_average_pool_pads_and_same():
    node = helper.make_node("AveragePool", ["x"], ["y"], kernel_shape=[3, 3],
                            pads=[0, 1, 2, 3], auto_pad="NOTSET")
    layer = only(convert_nodes([node]), "Pooling")
    assert layer.params[0] == 1
    assert (layer.params[3], layer.params[13]) == (1, 0)
    assert (layer.params[14], layer.params[15]) == (3, 2)
    assert layer.params[5] == 1

    node = helper.make_node("AveragePool", ["x"], ["y"], kernel_shape=[3, 3],
                            auto_pad="SAME_UPPER")
    assert only(convert_nodes([node]), "Pooling").params[5] == 2


@pytest.mark.parametrize("op,pool", [("GlobalAveragePool", 1), ("GlobalMaxPool", 0)])
def test_global_pool(op, pool):
    layer = only(convert_nodes([helper.make_node(op, ["x"], ["y"])]), "Pooling")
    assert layer.params == {0: pool, 4: 1}


# ---------------------------------------------------------------------------
# Convolution
# ---------------------------------------------------------------------------

def test_conv(rng):
    w = rng.standard_normal((4, 2, 3, 3)).astype(np.float32)
    b = rng.standard_normal(4).astype(np.float32)
    node = helper.make_node("Conv", ["x", "W", "B"], ["y"], kernel_shape=[3, 3],
                            strides=[2, 2], pads=[1, 1, 1, 1], name="conv")
    model = convert_nodes([node], initializers=[tensor("W", w), tensor("B", b)])

    layer = only(model, "Convolution")
    assert layer.name == "conv"
    assert layer.inputs == ["x"]
    assert layer.params == {0: 4, 1: 3, 11: 3, 3: 2, 13: 2, 4: 1, 14: 1, 5: 1, 6: 72}

    assert len(model.blob) == 4 + 72 * 4 + 4 * 4
    assert model.blob[:4] == b"\x00\x00\x00\x00"
    data = blob_floats(model)
    np.testing.assert_array_equal(data[1:73], w.ravel())
    np.testing.assert_array_equal(data[73:], b)


def test_conv_depthwise_and_same():
    node = helper.make_node("Conv", ["x", "W"], ["y"], kernel_shape=[3, 3], group=2,
                            auto_pad="SAME_LOWER", dilations=[2, 2])
    model = convert_nodes([node], initializers=[tensor("W", np.ones((2, 1, 3, 3)))])

    layer = only(model, "ConvolutionDepthWise")
    assert layer.params[2] == 2 and layer.params[12] == 2
    assert layer.params[4] == -233
    assert layer.params[5] == 0
    assert layer.params[7] == 2


def test_conv_asymmetric_pads_and_kernel_from_weight():
    node = helper.make_node("Conv", ["x", "W"], ["y"], pads=[0, 0, 1, 2])
    model = convert_nodes([node], initializers=[tensor("W", np.ones((1, 1, 2, 3)))])

    layer = only(model, "Convolution")
    assert (layer.params[1], layer.params[11]) == (3, 2)
    assert (layer.params[4], layer.params[14]) == (0, 0)
    assert (layer.params[15], layer.params[16]) == (2, 1)


def test_conv_transpose_reorders_weight(rng):
    # (num_input, num_filter_per_group, kh, kw)
    w = rng.standard_normal((2, 3, 1, 2)).astype(np.float32)
    node = helper.make_node("ConvTranspose", ["x", "W"], ["y"], kernel_shape=[1, 2])
    model = convert_nodes([node], initializers=[tensor("W", w)])

    layer = only(model, "Deconvolution")
    assert layer.params[0] == 3
    assert layer.params[6] == 12

    data = blob_floats(model)[1:]
    np.testing.assert_array_equal(data, w.transpose(1, 0, 2, 3).ravel())


def test_conv_transpose_grouped(rng):
    w = rng.standard_normal((4, 1, 2, 2)).astype(np.float32)
    node = helper.make_node("ConvTranspose", ["x", "W"], ["y"], group=2)
    model = convert_nodes([node], initializers=[tensor("W", w)])

    layer = only(model, "DeconvolutionDepthWise")
    assert layer.params[0] == 2
    assert layer.params[7] == 2

    expected = w.reshape(2, 2, 1, 4).transpose(0, 2, 1, 3).ravel()
    np.testing.assert_array_equal(blob_floats(model)[1:], expected)


def test_conv_needs_weight():
    node = helper.make_node("Conv", ["x", "w"], ["y"])
    with pytest.raises(ConversionError, match="Conv expects weight input 1"):
        convert_nodes([node], inputs=("x", "w"))


# ---------------------------------------------------------------------------
# Inner product
# ---------------------------------------------------------------------------

def test_matmul_reorders_weight():
    w = np.arange(12, dtype=np.float32).reshape(3, 4)
    model = convert_nodes([helper.make_node("MatMul", ["x", "W"], ["y"])],
                          initializers=[tensor("W", w)])

    layer = only(model, "InnerProduct")
    assert layer.params == {0: 4, 1: 0, 2: 12}
    np.testing.assert_array_equal(blob_floats(model)[1:], w.T.ravel())


def test_matmul_runtime_operand_fails():
    node = helper.make_node("MatMul", ["x", "z"], ["y"])
    with pytest.raises(ConversionError, match=r"MatMul expects weight input 1 \(z\)"):
        convert_nodes([node], inputs=("x", "z"))


def test_gemm_inner_product_form(rng):
    b = rng.standard_normal((4, 3)).astype(np.float32)
    c = rng.standard_normal(4).astype(np.float32)
    node = helper.make_node("Gemm", ["x", "B", "C"], ["y"], transB=1)
    model = convert_nodes([node], initializers=[tensor("B", b), tensor("C", c)])

    assert only(model, "InnerProduct").params == {0: 4, 1: 1, 2: 12}
    data = blob_floats(model)
    np.testing.assert_array_equal(data[1:13], b.ravel())
    np.testing.assert_array_equal(data[13:], c)


@pytest.mark.parametrize("attrs", [
    {"transB": 0},
    {"transB": 1, "alpha": 2.0},
    {"transB": 1, "beta": 0.5},
    {"transB": 1, "transA": 1},
])
def test_gemm_other_forms_fail(attrs):
    node = helper.make_node("Gemm", ["x", "B", "C"], ["y"], **attrs)
    with pytest.raises(ConversionError, match="Unsupported Gemm form"):
        convert_nodes([node], initializers=[tensor("B", np.ones((2, 2))),
                                            tensor("C", np.ones(2))])


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def test_batchnorm_blob_order():
    scale, bias = [1.0, 2.0], [3.0, 4.0]
    mean, var = [5.0, 6.0], [7.0, 8.0]
    node = helper.make_node("BatchNormalization", ["x", "s", "b", "m", "v"], ["y"],
                            epsilon=0.5)
    model = convert_nodes([node], initializers=[
        tensor("s", scale), tensor("b", bias), tensor("m", mean), tensor("v", var),
    ])

    assert only(model, "BatchNorm").params == {0: 2}
    np.testing.assert_array_equal(blob_floats(model),
                                  [1.0, 2.0, 5.0, 6.0, 7.5, 8.5, 3.0, 4.0])


def test_instance_norm():
    node = helper.make_node("InstanceNormalization", ["x", "s", "b"], ["y"])
    model = convert_nodes([node], initializers=[tensor("s", [1.0, 1.0, 1.0]),
                                                tensor("b", [0.0, 0.0, 0.0])])
    layer = only(model, "InstanceNorm")
    assert layer.params[0] == 3
    assert layer.params[1] == _f32(1e-5)
    assert len(model.blob) == 24


def test_lrn():
    node = helper.make_node("LRN", ["x"], ["y"], size=5, alpha=1e-4, beta=0.75, bias=2.0)
    layer = only(convert_nodes([node]), "LRN")
    assert layer.params[0] == 0
    assert layer.params[1] == 5
    assert layer.params[2] == _f32(1e-4)
    assert layer.params[3] == _f32(0.75)
    assert layer.params[4] == _f32(2.0)


def test_image_scaler():
    node = helper.make_node("ImageScaler", ["x"], ["y"], bias=[1.0, 2.0, 3.0], scale=0.5)
    model = convert_nodes([node])
    assert only(model, "Scale").params == {0: 3, 1: 1}
    np.testing.assert_array_equal(blob_floats(model), [0.5, 0.5, 0.5, 1.0, 2.0, 3.0])


# ---------------------------------------------------------------------------
# Activations
# ---------------------------------------------------------------------------

def test_relu_has_no_params():
    model = convert_nodes([helper.make_node("Relu", ["x"], ["y"], name="r")])
    assert body(model)[-1].split()[-1] == "y"


def test_leaky_relu_default_alpha():
    layer = only(convert_nodes([helper.make_node("LeakyRelu", ["x"], ["y"])]), "ReLU")
    assert layer.params[0] == _f32(0.01)


def test_elu():
    node = helper.make_node("Elu", ["x"], ["y"], alpha=0.5)
    assert only(convert_nodes([node]), "ELU").params == {0: 0.5}


def test_prelu():
    model = convert_nodes([helper.make_node("PRelu", ["x", "s"], ["y"])],
                          initializers=[tensor("s", [0.1, 0.2, 0.3])])
    assert only(model, "PReLU").params == {0: 3}
    assert len(model.blob) == 12


def test_clip_attributes_and_defaults():
    node = helper.make_node("Clip", ["x"], ["y"], min=0.0, max=6.0)
    model = convert_nodes([node], opset=6)
    assert "0=0.000000 1=6.000000" in body(model)[-1]

    layer = only(convert_nodes([helper.make_node("Clip", ["x"], ["y"])]), "Clip")
    assert layer.params[0] == -FLT_MAX
    assert layer.params[1] == FLT_MAX


def test_clip_bounds_from_inputs():
    node = helper.make_node("Clip", ["x", "", "hi"], ["y"])
    layer = only(convert_nodes([node], initializers=[tensor("hi", 6.0)]), "Clip")
    assert layer.inputs == ["x"]
    assert layer.params[0] == -FLT_MAX
    assert layer.params[1] == 6.0


def test_softmax_axis():
    node = helper.make_node("Softmax", ["x"], ["y"], axis=2)
    assert only(convert_nodes([node]), "Softmax").params == {0: 1, 1: 1}


# ---------------------------------------------------------------------------
# Shape / data movement
# ---------------------------------------------------------------------------

def test_concat_axis():
    node = helper.make_node("Concat", ["a", "b"], ["y"], axis=1)
    layer = only(convert_nodes([node], inputs=("a", "b")), "Concat")
    assert layer.params == {0: 0}


def test_flatten():
    assert only(convert_nodes([helper.make_node("Flatten", ["x"], ["y"])]), "Flatten").params == {}

    with pytest.raises(ConversionError, match="Unsupported Flatten axis 2!"):
        convert_nodes([helper.make_node("Flatten", ["x"], ["y"], axis=2)])


@pytest.mark.parametrize("shape,params", [
    ([-1], {0: -1}),
    ([1, -1], {0: -1}),
    ([1, 6, 8], {0: 8, 1: 6}),
    ([1, 3, 4, 5], {0: 5, 1: 4, 2: 3}),
    ([1, 2, 3, 4, 5], {0: 20, 1: 3, 2: 2}),
])
def test_reshape_runtime(shape, params):
    node = helper.make_node("Reshape", ["x", "shape"], ["y"])
    model = convert_nodes([node], initializers=[tensor("shape", shape, np.int64)])
    layer = only(model, "Reshape")
    assert layer.inputs == ["x"]
    assert layer.params == params


def test_reshape_of_weight_is_folded():
    nodes = [
        helper.make_node("Reshape", ["W", "shape"], ["W2"]),
        helper.make_node("MatMul", ["x", "W2"], ["y"]),
    ]
    model = convert_nodes(nodes, initializers=[tensor("W", np.ones(6)),
                                               tensor("shape", [2, 3], np.int64)])
    assert not layers_of(model, "Reshape")
    assert only(model, "InnerProduct").params == {0: 3, 1: 0, 2: 6}


def test_pad_attributes():
    node = helper.make_node("Pad", ["x"], ["y"], pads=[0, 0, 1, 2, 0, 0, 3, 4], value=0.5)
    layer = only(convert_nodes([node], opset=2), "Padding")
    assert layer.params == {0: 1, 1: 3, 2: 2, 3: 4, 4: 0, 5: 0.5}


def test_pad_inputs_and_edge():
    node = helper.make_node("Pad", ["x", "pads"], ["y"], mode="edge")
    model = convert_nodes([node], initializers=[tensor("pads", [0, 0, 1, 1, 0, 0, 1, 1], np.int64)])
    layer = only(model, "Padding")
    assert layer.inputs == ["x"]
    assert layer.params[4] == 1
    assert [layer.params[k] for k in range(4)] == [1, 1, 1, 1]


def test_pad_reflect_fails():
    node = helper.make_node("Pad", ["x"], ["y"], pads=[0, 0, 1, 1, 0, 0, 1, 1], mode="reflect")
    with pytest.raises(ConversionError, match="Unsupported Pad mode reflect!"):
        convert_nodes([node], opset=2)


def test_slice_attributes():
    node = helper.make_node("Slice", ["x"], ["y"], starts=[0, 1, 2], ends=[-1, 5, 6])
    layer = only(convert_nodes([node], opset=9), "Crop")
    assert layer.params == {0: 2, 1: 1, 2: 0, 3: 4, 4: 4, 5: -233}


def test_slice_inputs_with_axes_and_open_end():
    node = helper.make_node("Slice", ["x", "starts", "ends", "axes"], ["y"])
    model = convert_nodes([node], initializers=[
        tensor("starts", [1], np.int64),
        tensor("ends", [np.iinfo(np.int64).max], np.int64),
        tensor("axes", [3], np.int64),
    ])
    layer = only(model, "Crop")
    assert layer.inputs == ["x"]
    assert layer.params == {0: 1, 1: 0, 2: 0, 3: -234, 4: -233, 5: -233}


def _slice_on_axes(starts, ends, axes):
    node = helper.make_node("Slice", ["x", "starts", "ends", "axes"], ["y"])
    model = convert_nodes([node], initializers=[
        tensor("starts", starts, np.int64),
        tensor("ends", ends, np.int64),
        tensor("axes", axes, np.int64),
    ])
    return only(model, "Crop").params


def test_slice_channel_axis():
    params = _slice_on_axes([0], [2], [1])
    assert params == {0: 0, 1: 0, 2: 0, 3: -233, 4: -233, 5: 2}


def test_slice_height_axis():
    params = _slice_on_axes([1], [3], [2])
    assert params == {0: 0, 1: 1, 2: 0, 3: -233, 4: 2, 5: -233}


def test_slice_several_axes_out_of_order():
    params = _slice_on_axes([2, 1], [6, 4], [3, 1])
    assert params == {0: 2, 1: 0, 2: 1, 3: 4, 4: -233, 5: 3}


def test_slice_negative_axes():
    params = _slice_on_axes([4, 1], [8, -1], [-3, -1])
    assert params == {0: 1, 1: 0, 2: 4, 3: -234, 4: -233, 5: 4}


def test_slice_whole_batch_axis_is_ignored():
    params = _slice_on_axes([0, 1], [np.iinfo(np.int64).max, 3], [0, 2])
    assert params == {0: 0, 1: 1, 2: 0, 3: -233, 4: 2, 5: -233}


def test_slice_batch_axis_fails():
    with pytest.raises(ConversionError, match="Unsupported Slice axes"):
        _slice_on_axes([1], [2], [0])


def test_slice_step_fails():
    node = helper.make_node("Slice", ["x", "starts", "ends", "axes", "steps"], ["y"])
    with pytest.raises(ConversionError, match="Unsupported Slice step"):
        convert_nodes([node], initializers=[
            tensor("starts", [0], np.int64), tensor("ends", [4], np.int64),
            tensor("axes", [1], np.int64), tensor("steps", [2], np.int64),
        ])


@pytest.mark.parametrize("perm,order", [
    ([0, 1, 2, 3], 0), ([0, 1, 3, 2], 1), ([0, 2, 1, 3], 2),
    ([0, 2, 3, 1], 3), ([0, 3, 1, 2], 4), ([0, 3, 2, 1], 5),
    ([0, 1, 3, 4, 2], 1), ([0, 3, 4, 2, 1], 5),
])
def test_transpose_orders(perm, order):
    node = helper.make_node("Transpose", ["x"], ["y"], perm=perm)
    assert only(convert_nodes([node]), "Permute").params == {0: order}


def test_transpose_rank5_unknown_perm_fails():
    node = helper.make_node("Transpose", ["x"], ["y"], perm=[0, 1, 2, 4, 3])
    with pytest.raises(ConversionError, match=r"Unsupported Transpose perm"):
        convert_nodes([node])


def test_upsample_nearest():
    node = helper.make_node("Upsample", ["x", "scales"], ["y"], mode="nearest")
    model = convert_nodes([node], initializers=[tensor("scales", [1.0, 1.0, 2.0, 3.0])])
    layer = only(model, "Interp")
    assert layer.inputs == ["x"]
    assert layer.params == {0: 1, 1: 2.0, 2: 3.0}


def test_resize_linear_scales_input():
    node = helper.make_node("Resize", ["x", "roi", "scales"], ["y"], mode="linear")
    model = convert_nodes([node], initializers=[
        tensor("roi", []), tensor("scales", [1.0, 1.0, 2.0, 2.0]),
    ])
    assert only(model, "Interp").params == {0: 2, 1: 2.0, 2: 2.0}


@pytest.mark.parametrize("mode,scales,msg", [
    ("trilinear", [1.0, 1.0, 2.0, 2.0], "trilinear"),
    ("nearest", [1.0, 2.0, 2.0, 2.0], "scales"),
    ("nearest", [1.0, 1.0, 2.0, 2.0, 2.0], "scales"),
])
def test_upsample_unsupported(mode, scales, msg):
    node = helper.make_node("Upsample", ["x", "scales"], ["y"], mode=mode)
    with pytest.raises(ConversionError, match=msg):
        convert_nodes([node], initializers=[tensor("scales", scales)])


def test_dropout_single_output():
    model = convert_nodes([helper.make_node("Dropout", ["x"], ["y", "mask"])])
    layer = only(model, "Dropout")
    assert layer.outputs == ["y"]


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

def test_constant_feeding_add_is_memory_data():
    value = np.arange(3, dtype=np.float32).reshape(1, 3, 1, 1)
    nodes = [
        helper.make_node("Constant", [], ["k"], value=tensor("k", value)),
        helper.make_node("Add", ["x", "k"], ["y"]),
    ]
    model = convert_nodes(nodes)

    md = only(model, "MemoryData")
    assert md.name == "k"
    assert md.outputs == ["k"]
    assert md.params == {0: 1, 1: 1, 2: 3}
    np.testing.assert_array_equal(blob_floats(model), [0.0, 1.0, 2.0])


def test_registry_covers_vocabulary():
    vocabulary = {
        "Abs", "Acos", "Asin", "Atan", "Ceil", "Cos", "Exp", "Floor", "Log", "Neg",
        "Reciprocal", "Sin", "Sqrt", "Tan", "Add", "Sub", "Mul", "Div", "Max", "Min",
        "Pow", "Sum", "AveragePool", "MaxPool", "GlobalAveragePool", "GlobalMaxPool",
        "BatchNormalization", "Clip", "Concat", "Constant", "Conv", "ConvTranspose",
        "Dropout", "Elu", "Flatten", "Gemm", "ImageScaler", "InstanceNormalization",
        "LeakyRelu", "LRN", "MatMul", "Pad", "PRelu", "Relu", "Reshape", "Sigmoid",
        "Softmax", "Slice", "Transpose", "Upsample", "Resize",
    }
    assert vocabulary == set(OP_REGISTRY)
