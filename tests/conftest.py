from typing import Any, Callable, Dict, List

import numpy as np
import pytest

from layoutinfer.ir import GraphIR, OperatorIR
from layoutinfer.utils.logging import log_level_scope


@pytest.fixture(autouse=True)
def _quiet_logging():
    with log_level_scope('error'):
        yield


def _channel_first(x: np.ndarray, op: OperatorIR) -> np.ndarray:
    if op.attrs.get("layout", "NCHW") == "NHWC":
        return np.moveaxis(x, -1, 1)
    return x


def _channel_restore(x: np.ndarray, op: OperatorIR) -> np.ndarray:
    if op.attrs.get("layout", "NCHW") == "NHWC":
        return np.moveaxis(x, 1, -1)
    return x


def _conv(op: OperatorIR, inputs: List[np.ndarray]) -> List[np.ndarray]:
    # 2-D, stride 1, no padding, group 1.
    x = _channel_first(inputs[0], op)
    w = _channel_first(inputs[1], op)
    _, _, kh, kw = w.shape
    n, _, h, wd = x.shape
    out = np.zeros((n, w.shape[0], h - kh + 1, wd - kw + 1), dtype=x.dtype)
    for i in range(out.shape[2]):
        for j in range(out.shape[3]):
            out[:, :, i, j] = np.einsum('nchw,ochw->no', x[:, :, i:i + kh, j:j + kw], w)
    if len(inputs) > 2:
        out = out + inputs[2].reshape(1, -1, 1, 1)
    return [_channel_restore(out, op)]


def _global_average_pool(op: OperatorIR, inputs: List[np.ndarray]) -> List[np.ndarray]:
    x = _channel_first(inputs[0], op)
    out = np.mean(x, axis=tuple(range(2, x.ndim)), keepdims=True)
    return [_channel_restore(out, op)]


def _batch_norm(op: OperatorIR, inputs: List[np.ndarray]) -> List[np.ndarray]:
    x, scale, bias, mean, var = inputs
    axis = int(op.attrs.get("axis", 1))
    shape = [1] * x.ndim
    shape[axis] = -1
    eps = float(op.attrs.get("epsilon", 1e-5))
    out = (x - mean.reshape(shape)) / np.sqrt(var.reshape(shape) + eps) * scale.reshape(shape) \
        + bias.reshape(shape)
    return [out.astype(x.dtype)]


def _softmax(op: OperatorIR, inputs: List[np.ndarray]) -> List[np.ndarray]:
    axis = int(op.attrs.get("axis", -1))
    x = inputs[0]
    e = np.exp(x - np.max(x, axis=axis, keepdims=True))
    return [e / np.sum(e, axis=axis, keepdims=True)]


def _reduce(func: Callable) -> Callable:
    def _run(op: OperatorIR, inputs: List[np.ndarray]) -> List[np.ndarray]:
        x = inputs[0]
        axes = op.attrs.get("axes", None)
        axes = tuple(range(x.ndim)) if not axes else tuple(int(a) for a in axes)
        keepdims = bool(int(op.attrs.get("keepdims", 1)))
        return [func(x, axis=axes, keepdims=keepdims)]
    return _run


def _matmul(op: OperatorIR, inputs: List[np.ndarray]) -> List[np.ndarray]:
    a, b = inputs[0], inputs[1]
    if int(op.attrs.get("transpose_a", 0)):
        a = np.swapaxes(a, -1, -2)
    if int(op.attrs.get("transpose_b", 0)):
        b = np.swapaxes(b, -1, -2)
    return [np.matmul(a, b)]


def _split(op: OperatorIR, inputs: List[np.ndarray]) -> List[np.ndarray]:
    axis = int(op.attrs.get("axis", 0))
    split = op.attrs.get("split", None)
    if split is None:
        return list(np.split(inputs[0], len(op.outputs), axis=axis))
    return list(np.split(inputs[0], np.cumsum(split)[:-1], axis=axis))


def _unsqueeze(op: OperatorIR, inputs: List[np.ndarray]) -> List[np.ndarray]:
    x = inputs[0]
    for axis in sorted(int(a) for a in op.attrs["axes"]):
        x = np.expand_dims(x, axis)
    return [x]


def _slice(op: OperatorIR, inputs: List[np.ndarray]) -> List[np.ndarray]:
    slices = tuple(
        slice(int(b), int(e), int(s))
        for b, e, s in zip(op.attrs["begin"], op.attrs["end"], op.attrs["strides"])
    )
    return [inputs[0][slices]]


_KERNELS: Dict[str, Callable[[OperatorIR, List[np.ndarray]], List[np.ndarray]]] = {
    "Identity": lambda op, i: [i[0]],
    "Relu": lambda op, i: [np.maximum(i[0], 0)],
    "Sigmoid": lambda op, i: [1.0 / (1.0 + np.exp(-i[0]))],
    "Neg": lambda op, i: [-i[0]],
    "Add": lambda op, i: [i[0] + i[1]],
    "Sub": lambda op, i: [i[0] - i[1]],
    "Mul": lambda op, i: [i[0] * i[1]],
    "Transpose": lambda op, i: [
        np.transpose(i[0], op.attrs.get("perm", list(reversed(range(i[0].ndim)))))
    ],
    "Reshape": lambda op, i: [np.reshape(i[0], [int(d) for d in op.attrs["shape"]])],
    "Concat": lambda op, i: [np.concatenate(i, axis=int(op.attrs["axis"]))],
    "Pad": lambda op, i: [
        np.pad(
            i[0],
            list(zip(op.attrs["front_size"], op.attrs["back_size"])),
            mode="constant",
            constant_values=op.attrs.get("const_val", 0.0),
        )
    ],
    "Squeeze": lambda op, i: [np.squeeze(i[0], axis=tuple(int(a) for a in op.attrs["axes"]))],
    "Unsqueeze": _unsqueeze,
    "Slice": _slice,
    "Tile": lambda op, i: [np.tile(i[0], [int(r) for r in op.attrs["repeats"]])],
    "Gather": lambda op, i: [np.take(i[0], i[1], axis=int(op.attrs.get("axis", 0)))],
    "Split": _split,
    "Softmax": _softmax,
    "ReduceSum": _reduce(np.sum),
    "ReduceMean": _reduce(np.mean),
    "ReduceMax": _reduce(np.max),
    "MatMul": _matmul,
    "Conv": _conv,
    "GlobalAveragePool": _global_average_pool,
    "BatchNormalization": _batch_norm,
}


def run_graph(graph: GraphIR, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
    """Evaluate ``graph`` with numpy, honoring the ``layout`` attribute of channel kinds."""
    values: Dict[int, Any] = {}
    for tensor in graph.tensors:
        if tensor.is_constant:
            values[tensor.id] = tensor.data
    for tensor_id in graph.inputs:
        values[tensor_id] = feeds[graph.tensors[tensor_id].name]
    for op_id in graph.topological_order():
        op = graph.operators[op_id]
        outputs = _KERNELS[op.op_type](op, [values[t] for t in op.inputs])
        for tensor_id, value in zip(op.outputs, outputs):
            assert list(value.shape) == graph.tensors[tensor_id].shape, \
                f'{op.name}: {graph.tensors[tensor_id].name} {list(value.shape)}'
            values[tensor_id] = value
    return {graph.tensors[t].name: values[t] for t in graph.outputs}


@pytest.fixture
def evaluate():
    return run_graph


@pytest.fixture
def assert_equivalent():
    """Check the rewritten graph computes what the source graph computes."""
    def _check(src: GraphIR, infer: GraphIR, seed: int = 0) -> Dict[str, np.ndarray]:
        rng = np.random.default_rng(seed)
        feeds = {
            src.tensors[t].name: rng.standard_normal(src.tensors[t].shape).astype(np.float32)
            for t in src.inputs
        }
        expected = run_graph(src, feeds)
        actual = run_graph(infer, feeds)
        assert list(actual.keys()) == list(expected.keys())
        for name, value in expected.items():
            np.testing.assert_allclose(actual[name], value, rtol=1e-5, atol=1e-5)
        return actual
    return _check
