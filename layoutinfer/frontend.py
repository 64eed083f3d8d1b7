from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import onnx
from onnx import helper, numpy_helper

from layoutinfer.errors import DimensionMismatchError
from layoutinfer.ir import GraphIR
from layoutinfer.utils.common_functions import normalize_axes
from layoutinfer.utils.enums import (
    NUMPY_DTYPES_TO_DTYPE_NAMES,
    ONNX_DTYPES_TO_DTYPE_NAMES,
)
from layoutinfer.utils.logging import *

INT64_MAX = np.iinfo(np.int64).max

_REDUCE_OPS = (
    "ReduceMean",
    "ReduceSum",
    "ReduceMax",
    "ReduceMin",
    "ReduceProd",
    "ReduceL1",
    "ReduceL2",
    "ReduceLogSumExp",
    "ReduceSumSquare",
)

# Operand inputs folded into attributes when they are constant:
# op_type -> [(input index, attribute name), ...]
_PARAM_INPUTS: Dict[str, List[Tuple[int, str]]] = {
    "Reshape": [(1, "shape")],
    "Expand": [(1, "shape")],
    "Squeeze": [(1, "axes")],
    "Unsqueeze": [(1, "axes")],
    "Split": [(1, "split")],
    "Tile": [(1, "repeats")],
    "Clip": [(1, "min"), (2, "max")],
    "Resize": [(1, "roi"), (2, "scales"), (3, "sizes")],
    "Pad": [(1, "pads"), (2, "constant_value"), (3, "pad_axes")],
    "Slice": [(1, "starts"), (2, "ends"), (3, "slice_axes"), (4, "steps")],
}
for _op_type in _REDUCE_OPS:
    _PARAM_INPUTS[_op_type] = [(1, "axes")]

# Before opset 13 these coerce the input to 2-D at `axis` (default 1).
_LEGACY_AXIS_OPS = (
    "Softmax",
    "LogSoftmax",
    "Hardmax",
)


def _dtype_from_onnx_elem_type(elem_type: Optional[int]) -> str:
    if elem_type is None:
        return "FLOAT32"
    return ONNX_DTYPES_TO_DTYPE_NAMES.get(int(elem_type), "FLOAT32")


def _dtype_from_numpy(dtype: np.dtype) -> str:
    return NUMPY_DTYPES_TO_DTYPE_NAMES.get(np.dtype(dtype), "FLOAT32")


def _extract_tensor_info(
    onnx_graph: onnx.ModelProto,
) -> Tuple[Dict[str, List[int]], Dict[str, str]]:
    shape_map: Dict[str, List[int]] = {}
    dtype_map: Dict[str, str] = {}

    def _fill_value_info(value_info):
        if not value_info.type.HasField("tensor_type"):
            return
        name = value_info.name
        tensor_type = value_info.type.tensor_type
        dtype_map[name] = _dtype_from_onnx_elem_type(tensor_type.elem_type)
        if not tensor_type.HasField("shape"):
            return
        dims: List[int] = []
        for d in tensor_type.shape.dim:
            if d.HasField("dim_value") and d.dim_value >= 0:
                dims.append(int(d.dim_value))
            else:
                dims.append(-1)
        shape_map[name] = dims

    for vi in onnx_graph.graph.input:
        _fill_value_info(vi)
    for vi in onnx_graph.graph.value_info:
        _fill_value_info(vi)
    for vi in onnx_graph.graph.output:
        _fill_value_info(vi)

    return shape_map, dtype_map


def _default_opset(onnx_graph: onnx.ModelProto) -> Optional[int]:
    versions = [
        int(opset.version) for opset in onnx_graph.opset_import
        if opset.domain in ("", "ai.onnx")
    ]
    return max(versions) if versions else None


def _infer_shapes(onnx_graph: onnx.ModelProto) -> onnx.ModelProto:
    try:
        return onnx.shape_inference.infer_shapes(onnx_graph)
    except Exception as ex:
        warn(
            f'Shape inference failed, declared value_info is used as is. {type(ex).__name__}: {ex}'
        )
        return onnx_graph


def _decode_attribute(attr: onnx.AttributeProto) -> Any:
    if attr.type in (onnx.AttributeProto.GRAPH, onnx.AttributeProto.GRAPHS):
        return None
    value = helper.get_attribute_value(attr)
    if isinstance(value, bytes):
        return value.decode('utf-8')
    if isinstance(value, onnx.TensorProto):
        return numpy_helper.to_array(value)
    if isinstance(value, (list, tuple)):
        return [v.decode('utf-8') if isinstance(v, bytes) else v for v in value]
    return value


def _constant_node_value(node: onnx.NodeProto) -> np.ndarray:
    for attr in node.attribute:
        if attr.name == 'value':
            return numpy_helper.to_array(attr.t)
        if attr.name == 'value_float':
            return np.asarray(attr.f, dtype=np.float32)
        if attr.name == 'value_floats':
            return np.asarray(list(attr.floats), dtype=np.float32)
        if attr.name == 'value_int':
            return np.asarray(attr.i, dtype=np.int64)
        if attr.name == 'value_ints':
            return np.asarray(list(attr.ints), dtype=np.int64)
    raise ValueError(f'Unsupported Constant node: {node.name}')


def _int_list(value: Any) -> List[int]:
    return [int(v) for v in np.asarray(value).reshape(-1).tolist()]


def _normalize_pad(attrs: Dict[str, Any], rank: int) -> None:
    pads = attrs.pop("pads", None)
    if pads is None:
        return
    pads = _int_list(pads)
    pad_axes = attrs.pop("pad_axes", None)
    if pad_axes is None:
        pad_axes = list(range(rank))
    pad_axes = [a + rank if a < 0 else a for a in _int_list(pad_axes)]
    front_size = [0] * rank
    back_size = [0] * rank
    for idx, axis in enumerate(pad_axes):
        front_size[axis] = pads[idx]
        back_size[axis] = pads[idx + len(pad_axes)]
    attrs["front_size"] = front_size
    attrs["back_size"] = back_size
    const_val = attrs.pop("constant_value", None)
    if const_val is None:
        # Pad-2 keeps the fill value in the "value" attribute.
        const_val = attrs.pop("value", 0.0)
    attrs["const_val"] = np.asarray(const_val).reshape(-1)[0].item() \
        if np.asarray(const_val).size > 0 else 0.0
    attrs.setdefault("mode", "constant")


def _normalize_slice(attrs: Dict[str, Any], shape: List[int]) -> None:
    # Slice-1 carries starts/ends/axes as attributes.
    if "axes" in attrs and "slice_axes" not in attrs:
        attrs["slice_axes"] = attrs.pop("axes")
    starts = attrs.pop("starts", None)
    ends = attrs.pop("ends", None)
    if starts is None or ends is None:
        return
    rank = len(shape)
    starts = _int_list(starts)
    ends = _int_list(ends)
    slice_axes = attrs.pop("slice_axes", None)
    slice_axes = list(range(len(starts))) if slice_axes is None else _int_list(slice_axes)
    steps = attrs.pop("steps", None)
    steps = [1] * len(starts) if steps is None else _int_list(steps)

    begin = [0] * rank
    end = [dim if dim >= 0 else INT64_MAX for dim in shape]
    strides = [1] * rank
    for idx, axis in enumerate(slice_axes):
        axis = axis + rank if axis < 0 else axis
        begin[axis] = starts[idx]
        end[axis] = ends[idx]
        strides[axis] = steps[idx]
    attrs["begin"] = begin
    attrs["end"] = end
    attrs["strides"] = strides


def _normalize_attrs(op_type: str, attrs: Dict[str, Any], input_shape: Optional[List[int]]) -> None:
    rank = len(input_shape) if input_shape is not None else 0
    if op_type == "Pad":
        _normalize_pad(attrs, rank)
    elif op_type == "Slice":
        _normalize_slice(attrs, input_shape if input_shape is not None else [])
    elif op_type == "Resize":
        for name in ("roi", "scales", "sizes"):
            if name in attrs:
                values = np.asarray(attrs[name]).reshape(-1).tolist()
                attrs[name] = values if len(values) > 0 else None
        if attrs.get("sizes") is not None:
            attrs["sizes"] = [int(v) for v in attrs["sizes"]]
        if attrs.get("axes") is not None:
            attrs["axes"] = normalize_axes(attrs["axes"], rank) if rank > 0 else _int_list(attrs["axes"])
    elif op_type == "Clip":
        for name in ("min", "max"):
            if name in attrs:
                attrs[name] = np.asarray(attrs[name]).reshape(-1)[0].item()
    elif op_type in ("Reshape", "Expand", "Squeeze", "Unsqueeze", "Split", "Tile") + _REDUCE_OPS:
        for name in ("shape", "axes", "split", "repeats"):
            if name in attrs and attrs[name] is not None:
                attrs[name] = _int_list(attrs[name])


def import_onnx(
    onnx_graph: onnx.ModelProto,
    *,
    infer_shapes: Optional[bool] = True,
) -> GraphIR:
    """Convert an ONNX model into a GraphIR.

    Parameters
    ----------
    onnx_graph: onnx.ModelProto
        Model to import.

    infer_shapes: Optional[bool]
        Run onnx shape inference first.\n
        Default: True

    Returns
    ----------
    graph: GraphIR
        Graph with initializers and Constant nodes as constant tensors and
        constant operand inputs folded into attributes.
    """
    if infer_shapes:
        onnx_graph = _infer_shapes(onnx_graph)
    shape_map, dtype_map = _extract_tensor_info(onnx_graph)
    opset = _default_opset(onnx_graph)

    constants: Dict[str, np.ndarray] = {}
    for ini in onnx_graph.graph.initializer:
        constants[ini.name] = np.asarray(numpy_helper.to_array(ini))
    for node in onnx_graph.graph.node:
        if node.op_type == "Constant" and len(node.output) == 1:
            constants[node.output[0]] = _constant_node_value(node)

    graph = GraphIR(name=onnx_graph.graph.name if onnx_graph.graph.name else "graph")
    tensor_ids: Dict[str, int] = {}

    def _tensor(name: str) -> int:
        if name in tensor_ids:
            return tensor_ids[name]
        if name in constants:
            data = constants[name]
            tensor_id = graph.create_tensor(name, list(data.shape), _dtype_from_numpy(data.dtype), data=data)
        else:
            if name not in shape_map:
                raise DimensionMismatchError(
                    'Tensor rank is unknown after shape inference',
                    reason_code='unknown_rank',
                    tensor_name=name,
                )
            tensor_id = graph.create_tensor(name, shape_map[name], dtype_map.get(name, "FLOAT32"))
        tensor_ids[name] = tensor_id
        return tensor_id

    for vi in onnx_graph.graph.input:
        if vi.name in constants:
            continue
        graph.add_input(_tensor(vi.name))

    for idx, node in enumerate(onnx_graph.graph.node):
        if node.op_type == "Constant":
            continue
        attrs: Dict[str, Any] = {}
        for attr in node.attribute:
            value = _decode_attribute(attr)
            if value is None:
                warn(
                    f'Subgraph attribute is not imported. ' +
                    f'op_type: {node.op_type} attribute: {attr.name}'
                )
                continue
            attrs[attr.name] = value

        if node.op_type in _LEGACY_AXIS_OPS and node.domain in ("", "ai.onnx") \
            and opset is not None and opset < 13:
            attrs.setdefault("axis", 1)
            attrs["opset"] = opset

        input_names = list(node.input)
        params = _PARAM_INPUTS.get(node.op_type, [])
        if node.op_type == "Resize" and len(input_names) == 2:
            # Resize-10: (X, scales)
            params = [(1, "scales")]
        param_names = [input_names[i] for i, _ in params if i < len(input_names) and input_names[i] != ""]
        if params and all(name in constants for name in param_names):
            for input_idx, attr_name in params:
                if input_idx < len(input_names) and input_names[input_idx] != "":
                    attrs[attr_name] = constants[input_names[input_idx]]
            input_names = input_names[:params[0][0]]
            input_shape = shape_map.get(input_names[0], None) if input_names else None
            if input_shape is None and input_names and input_names[0] in constants:
                input_shape = list(constants[input_names[0]].shape)
            _normalize_attrs(node.op_type, attrs, input_shape)
        elif params:
            debug(
                f'Dynamic operand inputs are kept. ' +
                f'op_type: {node.op_type} op_name: {node.name}'
            )

        op_id = graph.create_operation(
            node.op_type,
            attrs,
            name=node.name if node.name else f'{node.op_type}_{idx}',
        )
        for name in input_names:
            # Omitted optional inputs.
            if name == "":
                continue
            graph.bind_input(op_id, _tensor(name))
        for name in node.output:
            if name == "":
                continue
            graph.bind_output(op_id, _tensor(name))

    for vi in onnx_graph.graph.output:
        graph.add_output(_tensor(vi.name))

    return graph


def load_onnx(
    input_onnx_file_path: str,
    *,
    infer_shapes: Optional[bool] = True,
) -> GraphIR:
    """Load an ONNX file and import it with :func:`import_onnx`."""
    info(Color.GREEN(f'Loading ONNX model:') + f' {input_onnx_file_path}')
    onnx_graph = onnx.load(input_onnx_file_path)
    return import_onnx(onnx_graph, infer_shapes=infer_shapes)
