from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Type

from layoutinfer.errors import LayoutConflictError, UnsupportedOperatorKindError
from layoutinfer.ir import GraphIR, OperatorIR
from layoutinfer.ops import (
    ActivationLayoutInfer,
    BatchNormLayoutInfer,
    ChannelLayoutInfer,
    ConcatLayoutInfer,
    ConvLayoutInfer,
    DefaultLayoutInfer,
    ElementwiseLayoutInfer,
    GatherLayoutInfer,
    LayerNormLayoutInfer,
    MatMulLayoutInfer,
    OpLayoutInfer,
    PadLayoutInfer,
    ReduceLayoutInfer,
    ReshapeLayoutInfer,
    ResizeLayoutInfer,
    SliceLayoutInfer,
    SoftmaxLayoutInfer,
    SplitLayoutInfer,
    SqueezeLayoutInfer,
    TileLayoutInfer,
    TransposeLayoutInfer,
    UnsqueezeLayoutInfer,
)


@dataclass(frozen=True)
class ValidationSpec:
    min_inputs: int = 1
    max_inputs: Optional[int] = None
    min_outputs: int = 1
    max_outputs: Optional[int] = 1
    required_attrs: Tuple[str, ...] = ()
    input_rank: Dict[int, List[int]] = field(default_factory=dict)
    # Parameters the handler remaps. When they are still operand tensors
    # (not folded by the frontend) the operator is handled by the fallback.
    param_attrs: Tuple[str, ...] = ()
    max_static_inputs: Optional[int] = None


@dataclass(frozen=True)
class HandlerEntry:
    op_type: str
    handler: Type[OpLayoutInfer]
    validation: ValidationSpec = field(default_factory=ValidationSpec)
    fallback_check: Optional[Callable[[OperatorIR, GraphIR], Optional[str]]] = None


@dataclass(frozen=True)
class HandlerResolution:
    entry: HandlerEntry
    dispatch_mode: str
    reason_code: Optional[str] = None
    message: Optional[str] = None


_HANDLERS: Tuple[Type[OpLayoutInfer], ...] = (
    ActivationLayoutInfer,
    ElementwiseLayoutInfer,
    SoftmaxLayoutInfer,
    PadLayoutInfer,
    ConcatLayoutInfer,
    SplitLayoutInfer,
    SliceLayoutInfer,
    TransposeLayoutInfer,
    ReshapeLayoutInfer,
    SqueezeLayoutInfer,
    UnsqueezeLayoutInfer,
    TileLayoutInfer,
    ResizeLayoutInfer,
    ReduceLayoutInfer,
    GatherLayoutInfer,
    BatchNormLayoutInfer,
    LayerNormLayoutInfer,
    ChannelLayoutInfer,
    ConvLayoutInfer,
    MatMulLayoutInfer,
)

_SPATIAL_RANKS = [3, 4, 5]

_VALIDATION_SPECS: Dict[str, ValidationSpec] = {
    "Dropout": ValidationSpec(max_inputs=3, max_outputs=2),
    "Clip": ValidationSpec(max_inputs=3),
    "Where": ValidationSpec(min_inputs=3, max_inputs=3),
    "PRelu": ValidationSpec(min_inputs=2, max_inputs=2),
    "Pad": ValidationSpec(
        param_attrs=("front_size", "back_size"),
        max_static_inputs=1,
    ),
    "Concat": ValidationSpec(required_attrs=("axis",)),
    "Split": ValidationSpec(max_inputs=2, max_outputs=None),
    "Slice": ValidationSpec(param_attrs=("begin", "end"), max_static_inputs=1),
    "StridedSlice": ValidationSpec(param_attrs=("begin", "end"), max_static_inputs=1),
    "Transpose": ValidationSpec(max_inputs=1),
    "Squeeze": ValidationSpec(max_static_inputs=1),
    "Unsqueeze": ValidationSpec(param_attrs=("axes",), max_static_inputs=1),
    "Tile": ValidationSpec(param_attrs=("repeats",), max_static_inputs=1),
    "Resize": ValidationSpec(max_static_inputs=1),
    "Gather": ValidationSpec(min_inputs=2, max_inputs=2),
    "BatchNormalization": ValidationSpec(min_inputs=5, max_inputs=5, max_outputs=3),
    "LayerNormalization": ValidationSpec(min_inputs=2, max_inputs=3, max_outputs=3),
    "Conv": ValidationSpec(min_inputs=2, max_inputs=3, input_rank={0: _SPATIAL_RANKS}),
    "ConvTranspose": ValidationSpec(min_inputs=2, max_inputs=3, input_rank={0: _SPATIAL_RANKS}),
    "MaxPool": ValidationSpec(max_inputs=1, max_outputs=2, input_rank={0: _SPATIAL_RANKS}),
    "AveragePool": ValidationSpec(max_inputs=1, input_rank={0: _SPATIAL_RANKS}),
    "LpPool": ValidationSpec(max_inputs=1, input_rank={0: _SPATIAL_RANKS}),
    "GlobalAveragePool": ValidationSpec(max_inputs=1, input_rank={0: _SPATIAL_RANKS}),
    "GlobalMaxPool": ValidationSpec(max_inputs=1, input_rank={0: _SPATIAL_RANKS}),
    "DepthToSpace": ValidationSpec(max_inputs=1, required_attrs=("blocksize",), input_rank={0: [4]}),
    "SpaceToDepth": ValidationSpec(max_inputs=1, required_attrs=("blocksize",), input_rank={0: [4]}),
    "InstanceNormalization": ValidationSpec(min_inputs=3, max_inputs=3),
    "MatMul": ValidationSpec(min_inputs=2, max_inputs=2),
    "Gemm": ValidationSpec(min_inputs=2, max_inputs=3, input_rank={0: [2], 1: [2]}),
}

for _op_type in ElementwiseLayoutInfer.op_types:
    _VALIDATION_SPECS.setdefault(_op_type, ValidationSpec(min_inputs=1))
for _op_type in ReduceLayoutInfer.op_types:
    _VALIDATION_SPECS.setdefault(_op_type, ValidationSpec(max_static_inputs=1))


def _maxpool_indices(op: OperatorIR, graph: GraphIR) -> Optional[str]:
    # Flattened argmax indices are computed in declared element order.
    if len(op.outputs) > 1:
        return "layout_dependent_output"
    return None


def _legacy_softmax_axis(op: OperatorIR, graph: GraphIR) -> Optional[str]:
    # Before opset 13 everything from `axis` on is flattened into one axis.
    if int(op.attrs.get("opset", 13)) >= 13:
        return None
    rank = graph.tensors[op.inputs[0]].rank
    axis = int(op.attrs.get("axis", 1))
    if (axis + rank if axis < 0 else axis) != rank - 1:
        return "layout_dependent_axis"
    return None


_FALLBACK_CHECKS: Dict[str, Callable[[OperatorIR, GraphIR], Optional[str]]] = {
    "MaxPool": _maxpool_indices,
    "Softmax": _legacy_softmax_axis,
    "LogSoftmax": _legacy_softmax_axis,
    "Hardmax": _legacy_softmax_axis,
}


def _build_registry() -> Mapping[str, HandlerEntry]:
    registry: Dict[str, HandlerEntry] = {}
    for handler in _HANDLERS:
        for op_type in handler.op_types:
            if op_type in registry:
                raise ValueError(f"Duplicate layout rule for {op_type}")
            registry[op_type] = HandlerEntry(
                op_type=op_type,
                handler=handler,
                validation=_VALIDATION_SPECS.get(op_type, ValidationSpec()),
                fallback_check=_FALLBACK_CHECKS.get(op_type, None),
            )
    return MappingProxyType(registry)


# Populated once at import, never mutated afterwards.
_LAYOUT_INFER_REGISTRY: Mapping[str, HandlerEntry] = _build_registry()

DEFAULT_ENTRY = HandlerEntry(
    op_type="*",
    handler=DefaultLayoutInfer,
    validation=ValidationSpec(min_inputs=0, min_outputs=0, max_outputs=None),
)


def _validate_counts(op: OperatorIR, spec: ValidationSpec) -> None:
    input_count = len(op.inputs)
    output_count = len(op.outputs)
    if input_count < int(spec.min_inputs):
        raise LayoutConflictError(
            f"input_count={input_count} is smaller than min_inputs={spec.min_inputs}",
            reason_code="invalid_input_count",
            op_name=op.name,
        )
    if spec.max_inputs is not None and input_count > int(spec.max_inputs):
        raise LayoutConflictError(
            f"input_count={input_count} exceeds max_inputs={spec.max_inputs}",
            reason_code="invalid_input_count",
            op_name=op.name,
        )
    if output_count < int(spec.min_outputs):
        raise LayoutConflictError(
            f"output_count={output_count} is smaller than min_outputs={spec.min_outputs}",
            reason_code="invalid_output_count",
            op_name=op.name,
        )
    if spec.max_outputs is not None and output_count > int(spec.max_outputs):
        raise LayoutConflictError(
            f"output_count={output_count} exceeds max_outputs={spec.max_outputs}",
            reason_code="invalid_output_count",
            op_name=op.name,
        )


def _validate_attrs(op: OperatorIR, spec: ValidationSpec) -> None:
    for attr in spec.required_attrs:
        if op.attrs.get(attr, None) is None:
            raise LayoutConflictError(
                f"required attribute '{attr}' is missing",
                reason_code="missing_required_attribute",
                op_name=op.name,
            )


def _validate_rank_constraints(op: OperatorIR, graph: GraphIR, spec: ValidationSpec) -> None:
    for input_index, allowed_ranks in spec.input_rank.items():
        if input_index >= len(op.inputs):
            continue
        tensor = graph.tensors[op.inputs[input_index]]
        if tensor.rank not in allowed_ranks:
            raise LayoutConflictError(
                f"input[{input_index}] rank={tensor.rank} is not in supported ranks={allowed_ranks}",
                reason_code="unsupported_input_rank",
                op_name=op.name,
                tensor_name=tensor.name,
            )


def _fallback_reason(op: OperatorIR, graph: GraphIR, entry: HandlerEntry) -> Optional[str]:
    spec = entry.validation
    for attr in spec.param_attrs:
        if op.attrs.get(attr, None) is None:
            return "dynamic_parameters"
    if spec.max_static_inputs is not None and len(op.inputs) > spec.max_static_inputs:
        return "dynamic_parameters"
    if entry.fallback_check is not None:
        return entry.fallback_check(op, graph)
    return None


def get_registry() -> Mapping[str, HandlerEntry]:
    return _LAYOUT_INFER_REGISTRY


def get_supported_op_types() -> List[str]:
    return sorted(_LAYOUT_INFER_REGISTRY.keys())


def get_handler_entry(op_type: str) -> Optional[HandlerEntry]:
    return _LAYOUT_INFER_REGISTRY.get(str(op_type), None)


def resolve_handler(
    op: OperatorIR,
    graph: GraphIR,
    *,
    allow_fallback: bool = True,
) -> HandlerResolution:
    entry = get_handler_entry(op.op_type)
    if entry is None:
        if not allow_fallback:
            raise UnsupportedOperatorKindError(
                f"No layout rule registered for {op.op_type}",
                op_name=op.name,
            )
        return HandlerResolution(
            entry=DEFAULT_ENTRY,
            dispatch_mode="fallback",
            reason_code="unregistered_op_type",
            message=f"No layout rule registered for {op.op_type}",
        )
    _validate_counts(op, entry.validation)
    _validate_attrs(op, entry.validation)
    _validate_rank_constraints(op, graph, entry.validation)
    reason_code = _fallback_reason(op, graph, entry)
    if reason_code is not None:
        if not allow_fallback:
            raise UnsupportedOperatorKindError(
                f"{op.op_type} cannot be handled by its layout rule: {reason_code}",
                reason_code=reason_code,
                op_name=op.name,
            )
        return HandlerResolution(
            entry=DEFAULT_ENTRY,
            dispatch_mode="fallback",
            reason_code=reason_code,
            message=f"{op.op_type} falls back to layout-opaque handling: {reason_code}",
        )
    return HandlerResolution(
        entry=entry,
        dispatch_mode="builtin",
    )
