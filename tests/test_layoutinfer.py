import json
import sys
from typing import Any, Dict, List, Optional

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper, numpy_helper

import layoutinfer
from layoutinfer import infer_layout
from layoutinfer.errors import (
    AlreadyBoundError,
    UnresolvedTensorError,
    UnsupportedOperatorKindError,
)
from layoutinfer.ir import GraphIR
from layoutinfer.layoutinfer import LayoutInferencePass
from layoutinfer.permute_vector import PermuteVector


def _op(
    graph: GraphIR,
    op_type: str,
    inputs: List[int],
    outputs: List[int],
    attrs: Optional[Dict[str, Any]] = None,
    name: Optional[str] = None,
) -> int:
    op_id = graph.create_operation(op_type, attrs, name=name)
    graph.bind_inputs(op_id, inputs)
    graph.bind_outputs(op_id, outputs)
    return op_id


def _make_pool_pad_chain() -> GraphIR:
    """GlobalAveragePool -> Pad -> Add -> Relu -> ReduceSum over an NCHW input."""
    graph = GraphIR(name="chain")
    x = graph.create_tensor("x", [1, 3, 4, 5])
    g = graph.create_tensor("g", [1, 3, 1, 1])
    p = graph.create_tensor("p", [1, 3, 3, 3])
    c = graph.create_tensor("c", [], data=np.asarray([1.0, -2.0, 3.0], dtype=np.float32).reshape(1, 3, 1, 1))
    a = graph.create_tensor("a", [1, 3, 3, 3])
    r = graph.create_tensor("r", [1, 3, 3, 3])
    s = graph.create_tensor("s", [1, 3, 3])
    graph.add_input(x)
    _op(graph, "GlobalAveragePool", [x], [g], name="pool")
    _op(graph, "Pad", [g], [p], {"front_size": [0, 0, 1, 1], "back_size": [0, 0, 1, 1], "const_val": 0.0}, name="pad")
    _op(graph, "Add", [p, c], [a], name="add")
    _op(graph, "Relu", [a], [r], name="relu")
    _op(graph, "ReduceSum", [r], [s], {"axes": [1], "keepdims": 0}, name="reduce")
    graph.add_output(s)
    return graph


def _make_fallback_graph(op_type: str = "CustomOp") -> GraphIR:
    graph = GraphIR(name="fallback")
    x = graph.create_tensor("x", [1, 3, 4, 5])
    g = graph.create_tensor("g", [1, 3, 1, 1])
    y = graph.create_tensor("y", [1, 3, 1, 1])
    graph.add_input(x)
    _op(graph, "GlobalAveragePool", [x], [g], name="pool")
    _op(graph, op_type, [g], [y], name="custom")
    graph.add_output(y)
    return graph


def _make_nhwc_graph() -> GraphIR:
    rng = np.random.default_rng(3)
    graph = GraphIR(name="nhwc")
    x = graph.create_tensor("x", [1, 4, 5, 3])
    w = graph.create_tensor("w", [], data=rng.standard_normal([2, 1, 1, 3]).astype(np.float32))
    y = graph.create_tensor("y", [1, 4, 5, 2])
    z = graph.create_tensor("z", [1, 4, 5, 2])
    graph.add_input(x)
    _op(graph, "Conv", [x, w], [y], {"layout": "NHWC"}, name="conv")
    _op(graph, "Relu", [y], [z], name="relu")
    graph.add_output(z)
    return graph


def test_pool_pad_chain_propagates_layout(assert_equivalent) -> None:
    graph = _make_pool_pad_chain()
    layout_pass = LayoutInferencePass(graph)
    infer = layout_pass.run()

    assert infer.op_types() == ["Transpose", "GlobalAveragePool", "Pad", "Add", "Relu", "ReduceSum"]
    assert layout_pass.context.inserted_transposes == 1
    context = layout_pass.context
    for name in ("g", "p", "a", "r"):
        assert context.get_permute_vector(graph.tensor_by_name(name).id) == [0, 3, 1, 2]
    assert context.get_permute_vector(graph.tensor_by_name("s").id).is_aligned()
    pad = [op for op in infer.operators if op.op_type == "Pad"][0]
    assert pad.attrs["front_size"] == [0, 1, 1, 0]
    assert_equivalent(graph, infer)


def test_every_tensor_is_resolved_exactly_once() -> None:
    graph = _make_pool_pad_chain()
    layout_pass = LayoutInferencePass(graph)
    layout_pass.run()
    context = layout_pass.context
    for tensor in graph.tensors:
        assert context.is_resolved(tensor.id)
        with pytest.raises(AlreadyBoundError):
            context.set_permute_vector(tensor.id, PermuteVector.identity(tensor.rank))


def test_every_operator_is_dispatched_once(monkeypatch) -> None:
    from layoutinfer import layoutinfer as driver

    dispatched: List[str] = []
    original = driver._dispatch_operator.__wrapped__

    def _record(**kwargs):
        dispatched.append(kwargs['graph_node'].name)
        return original(**kwargs)

    monkeypatch.setattr(driver, "_dispatch_operator", _record)
    graph = GraphIR(name="diamond")
    x = graph.create_tensor("x", [1, 3, 4, 5])
    a = graph.create_tensor("a", [1, 3, 4, 5])
    b = graph.create_tensor("b", [1, 3, 4, 5])
    y = graph.create_tensor("y", [1, 3, 4, 5])
    graph.add_input(x)
    _op(graph, "Add", [a, b], [y], name="join")
    _op(graph, "Relu", [x], [a], name="left")
    _op(graph, "Neg", [x], [b], name="right")
    graph.add_output(y)

    infer_layout(graph)
    assert sorted(dispatched) == ["join", "left", "right"]
    assert dispatched[-1] == "join"


def test_outputs_are_delivered_in_declared_layout(assert_equivalent) -> None:
    graph = GraphIR(name="outputs")
    x = graph.create_tensor("x", [1, 3, 4, 5])
    g = graph.create_tensor("g", [1, 3, 1, 1])
    r = graph.create_tensor("r", [1, 3, 1, 1])
    graph.add_input(x)
    _op(graph, "GlobalAveragePool", [x], [g])
    _op(graph, "Relu", [g], [r])
    graph.add_output(g)
    graph.add_output(r)

    infer = infer_layout(graph)
    assert [infer.tensors[t].name for t in infer.outputs] == ["g", "r"]
    for t in infer.outputs:
        assert infer.tensors[t].shape == [1, 3, 1, 1]
        assert infer.operators[infer.producer(t)].op_type == "Transpose"
    assert infer.count_ops("Transpose") == 3
    assert_equivalent(graph, infer)


def test_graph_input_as_output() -> None:
    graph = GraphIR(name="passthrough")
    x = graph.create_tensor("x", [1, 3])
    graph.add_input(x)
    graph.add_output(x)
    infer = infer_layout(graph)
    assert infer.operators == []
    assert infer.inputs == infer.outputs


def test_transposed_graph_input_keeps_input_name(assert_equivalent) -> None:
    graph = GraphIR(name="input_transpose")
    x = graph.create_tensor("x", [1, 3, 4, 5])
    y = graph.create_tensor("y", [1, 4, 5, 3])
    z = graph.create_tensor("z", [1, 4, 5, 3])
    graph.add_input(x)
    _op(graph, "Transpose", [x], [y], {"perm": [0, 2, 3, 1]}, name="transpose_y")
    _op(graph, "Transpose", [x], [z], {"perm": [0, 2, 3, 1]}, name="transpose_z")
    graph.add_output(y)
    graph.add_output(z)

    infer = infer_layout(graph)
    assert [infer.tensors[t].name for t in infer.inputs] == ["x"]
    assert infer.tensors[infer.inputs[0]].shape == [1, 3, 4, 5]
    assert [infer.tensors[t].name for t in infer.outputs] == ["y", "z"]
    for t in infer.outputs:
        assert infer.tensors[t].shape == [1, 4, 5, 3]
        assert infer.operators[infer.producer(t)].inputs == infer.inputs
    assert infer.op_types() == ["Transpose", "Transpose"]
    assert_equivalent(graph, infer)


def test_fallback_transposes_back_to_declared_layout() -> None:
    graph = _make_fallback_graph()
    layout_pass = LayoutInferencePass(graph)
    infer = layout_pass.run()

    assert layout_pass.fallback_ops == ["custom"]
    custom = [op for op in infer.operators if op.op_type == "CustomOp"][0]
    producer = infer.operators[infer.producer(custom.inputs[0])]
    assert producer.op_type == "Transpose"
    assert producer.attrs["perm"] == [0, 3, 1, 2]
    assert infer.count_ops("Transpose") == 2
    assert layout_pass.context.get_permute_vector(graph.tensor_by_name("y").id).is_aligned()


def test_disable_fallback_rejects_unknown_kinds() -> None:
    with pytest.raises(UnsupportedOperatorKindError) as ex:
        infer_layout(_make_fallback_graph(), disable_fallback=True)
    assert ex.value.op_name == "custom"
    assert ex.value.reason_code == "unsupported_operator_kind"


def test_disable_fallback_rejects_dynamic_parameters() -> None:
    graph = GraphIR(name="dynamic_pad")
    x = graph.create_tensor("x", [1, 3, 4, 5])
    pads = graph.create_tensor("pads", [8])
    y = graph.create_tensor("y", [-1, -1, -1, -1])
    graph.add_input(x)
    graph.add_input(pads)
    _op(graph, "Pad", [x, pads], [y], name="pad")
    graph.add_output(y)

    infer = infer_layout(graph)
    assert infer.op_types() == ["Pad"]
    with pytest.raises(UnsupportedOperatorKindError) as ex:
        infer_layout(graph, disable_fallback=True)
    assert ex.value.reason_code == "dynamic_parameters"


def test_cyclic_graph_is_reported() -> None:
    graph = GraphIR(name="cyclic")
    x = graph.create_tensor("x", [1, 3])
    a = graph.create_tensor("a", [1, 3])
    b = graph.create_tensor("b", [1, 3])
    graph.add_input(x)
    _op(graph, "Add", [x, b], [a], name="add")
    _op(graph, "Relu", [a], [b], name="relu")
    graph.add_output(b)
    with pytest.raises(UnresolvedTensorError) as ex:
        infer_layout(graph)
    assert ex.value.reason_code == "graph_cycle"
    assert ex.value.op_name == "add"


def test_unreachable_operator_is_reported() -> None:
    graph = GraphIR(name="orphan")
    x = graph.create_tensor("x", [1, 3])
    orphan = graph.create_tensor("orphan", [1, 3])
    y = graph.create_tensor("y", [1, 3])
    graph.add_input(x)
    _op(graph, "Add", [x, orphan], [y], name="add")
    graph.add_output(y)
    with pytest.raises(UnresolvedTensorError) as ex:
        infer_layout(graph)
    assert ex.value.op_name == "add"
    assert ex.value.tensor_name == "orphan"


def test_operators_fed_only_by_constants_are_dispatched(assert_equivalent) -> None:
    graph = GraphIR(name="const_only")
    x = graph.create_tensor("x", [2, 3])
    c = graph.create_tensor("c", [], data=np.full([2, 3], -1.0, dtype=np.float32))
    n = graph.create_tensor("n", [2, 3])
    y = graph.create_tensor("y", [2, 3])
    graph.add_input(x)
    _op(graph, "Neg", [c], [n])
    _op(graph, "Add", [x, n], [y])
    graph.add_output(y)
    infer = infer_layout(graph)
    assert infer.op_types() == ["Neg", "Add"]
    assert_equivalent(graph, infer)


def test_channels_last_graph_is_a_fixed_point(assert_equivalent) -> None:
    graph = _make_nhwc_graph()
    first = infer_layout(graph)
    assert first.count_ops("Transpose") == 0
    assert first.op_types() == ["Conv", "Relu"]
    second = infer_layout(first)
    assert second.op_types() == first.op_types()
    assert second.count_ops("Transpose") == 0
    assert second.to_dict() == first.to_dict()
    assert_equivalent(graph, second)


def test_passes_share_no_state() -> None:
    first = LayoutInferencePass(_make_pool_pad_chain())
    second = LayoutInferencePass(_make_pool_pad_chain())
    first.run()
    second.run()
    assert first.context is not second.context
    assert first.context.inserted_transposes == second.context.inserted_transposes == 1


def test_verbosity_debug_prints_dispatch(capsys) -> None:
    infer_layout(_make_pool_pad_chain(), verbosity="debug")
    captured = capsys.readouterr().out
    assert "op_type" in captured
    assert "GlobalAveragePool" in captured
    assert "transpose inserted" in captured


def test_non_verbose_is_silent(capsys) -> None:
    infer_layout(_make_fallback_graph(), non_verbose=True)
    assert capsys.readouterr().out == ""


def _save_conv_model(path) -> str:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 3, 4, 5])
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, [1, 2, 4, 5])
    w = numpy_helper.from_array(np.ones([2, 3, 1, 1], dtype=np.float32), name="w")
    conv = helper.make_node("Conv", ["x", "w"], ["c"], name="conv")
    relu = helper.make_node("Relu", ["c"], ["y"], name="relu")
    graph = helper.make_graph([conv, relu], "cli_graph", [x], [y], initializer=[w])
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    file_path = str(path / "model.onnx")
    onnx.save(model, file_path)
    return file_path


def test_cli_writes_json(tmp_path, monkeypatch) -> None:
    model_path = _save_conv_model(tmp_path)
    json_path = tmp_path / "out" / "graph.json"
    monkeypatch.setattr(
        sys, "argv",
        ["layoutinfer", "-i", model_path, "-oj", str(json_path), "-n"],
    )
    layoutinfer.main()
    dumped = json.loads(json_path.read_text())
    assert dumped["inputs"] == ["x"]
    assert dumped["outputs"] == ["y"]
    assert [op["op_type"] for op in dumped["operators"]] == ["Transpose", "Conv", "Relu", "Transpose"]
    conv = [op for op in dumped["operators"] if op["op_type"] == "Conv"][0]
    assert conv["attrs"]["layout"] == "NHWC"


def test_cli_native_nchw(tmp_path, monkeypatch) -> None:
    model_path = _save_conv_model(tmp_path)
    json_path = tmp_path / "graph.json"
    monkeypatch.setattr(
        sys, "argv",
        ["layoutinfer", "-i", model_path, "-oj", str(json_path), "-nl", "NCHW", "-v", "error"],
    )
    layoutinfer.main()
    dumped = json.loads(json_path.read_text())
    assert [op["op_type"] for op in dumped["operators"]] == ["Conv", "Relu"]


def test_cli_version(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["layoutinfer", "-V"])
    with pytest.raises(SystemExit) as ex:
        layoutinfer.main()
    assert ex.value.code == 0
    assert capsys.readouterr().out.strip() == layoutinfer.__version__


def test_cli_reports_errors(tmp_path, monkeypatch, capsys) -> None:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 3])
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, [1, 3])
    node = helper.make_node("Celu", ["x"], ["y"], name="celu")
    graph = helper.make_graph([node], "celu_graph", [x], [y])
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model_path = str(tmp_path / "celu.onnx")
    onnx.save(model, model_path)

    monkeypatch.setattr(sys, "argv", ["layoutinfer", "-i", model_path, "-df", "-v", "error"])
    with pytest.raises(SystemExit) as ex:
        layoutinfer.main()
    assert ex.value.code == 1
    assert "UnsupportedOperatorKindError" in capsys.readouterr().out


def test_cli_reports_invalid_layout(tmp_path, monkeypatch, capsys) -> None:
    x = helper.make_tensor_value_info("x", TensorProto.FLOAT, [1, 3, 4, 5])
    y = helper.make_tensor_value_info("y", TensorProto.FLOAT, [1, 3, 1, 1])
    node = helper.make_node("GlobalAveragePool", ["x"], ["y"], name="pool", layout="HWCN")
    graph = helper.make_graph([node], "pool_graph", [x], [y])
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model_path = str(tmp_path / "pool.onnx")
    onnx.save(model, model_path)

    monkeypatch.setattr(sys, "argv", ["layoutinfer", "-i", model_path, "-v", "error"])
    with pytest.raises(SystemExit) as ex:
        layoutinfer.main()
    assert ex.value.code == 1
    assert "LayoutConflictError" in capsys.readouterr().out
