from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from layoutinfer.context import LayoutInferContext
from layoutinfer.errors import LayoutConflictError
from layoutinfer.ir import GraphIR, TensorIR
from layoutinfer.permute_vector import PermuteVector


class OpLayoutInfer:
    """Layout inference for one operator of the source graph.

    Subclasses implement :meth:`on_inputs`. When it is called every input of
    ``op`` already has a permute vector in ``context``. The handler builds the
    equivalent operator(s) in ``context.infer_graph``, binds a permute vector
    to every output and appends the outputs to ``next_tensors``.
    """

    op_types: Tuple[str, ...] = ()

    def __init__(self, op_id: int, context: LayoutInferContext):
        self.context = context
        self.op = context.src_graph.operators[op_id]

    def on_inputs(self, next_tensors: List[int]) -> None:
        raise NotImplementedError

    @property
    def src_graph(self) -> GraphIR:
        return self.context.src_graph

    @property
    def infer_graph(self) -> GraphIR:
        return self.context.infer_graph

    def attr(self, name: str, default: Any = None) -> Any:
        value = self.op.attrs.get(name, None)
        return default if value is None else value

    def input_tensor(self, idx: int) -> TensorIR:
        return self.src_graph.tensors[self.op.inputs[idx]]

    def output_tensor(self, idx: int) -> TensorIR:
        return self.src_graph.tensors[self.op.outputs[idx]]

    def input_permute_vector(self, idx: int) -> PermuteVector:
        return self.context.get_permute_vector(self.op.inputs[idx])

    def mapped_input(self, idx: int) -> int:
        return self.context.get_mapped_tensor(self.op.inputs[idx])

    def mapped_input_as(self, idx: int, target: PermuteVector) -> int:
        """Inferred counterpart of input ``idx`` stored in layout ``target``."""
        tensor = self.input_tensor(idx)
        if len(target) != tensor.rank:
            raise LayoutConflictError(
                f"Layout {target} cannot be applied to a rank {tensor.rank} input",
                op_name=self.op.name,
                tensor_name=tensor.name,
            )
        if tensor.is_constant:
            return self.context.get_permuted_constant(tensor.id, target)
        pv = self.context.get_permute_vector(tensor.id)
        mapped = self.context.get_mapped_tensor(tensor.id)
        if pv == target:
            return mapped
        return self.context.insert_transpose(
            mapped,
            pv.transpose_to(target),
            name=f"{self.op.name}_input{idx}_transpose",
        )

    def aligned_input(self, idx: int) -> int:
        return self.mapped_input_as(idx, PermuteVector.identity(self.input_tensor(idx).rank))

    def create_outputs_tensor(
        self,
        pvs: Union[PermuteVector, Sequence[PermuteVector]],
    ) -> List[int]:
        return self.context.create_outputs_tensor(self.op.id, pvs)

    def emit(
        self,
        inputs: Sequence[int],
        outputs: Sequence[int],
        attrs: Optional[Dict[str, Any]] = None,
        op_type: Optional[str] = None,
    ) -> int:
        op_id = self.infer_graph.create_operation(
            op_type if op_type else self.op.op_type,
            attrs if attrs is not None else self.op.attrs,
            name=self.op.name,
        )
        self.infer_graph.bind_inputs(op_id, list(inputs))
        self.infer_graph.bind_outputs(op_id, list(outputs))
        return op_id

    def finish(
        self,
        pvs: Union[PermuteVector, Sequence[PermuteVector]],
        next_tensors: List[int],
    ) -> None:
        if isinstance(pvs, PermuteVector):
            pvs = [pvs] * len(self.op.outputs)
        for tensor_id, pv in zip(self.op.outputs, pvs):
            self.context.set_permute_vector(tensor_id, pv)
            next_tensors.append(tensor_id)

    def build(
        self,
        inputs: Sequence[int],
        pvs: Union[PermuteVector, Sequence[PermuteVector]],
        next_tensors: List[int],
        attrs: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Emit ``op`` unchanged except for ``attrs`` with outputs laid out as ``pvs``."""
        outputs = self.create_outputs_tensor(pvs)
        op_id = self.emit(inputs, outputs, attrs)
        self.finish(pvs, next_tensors)
        return op_id

    def identity_outputs(self) -> List[PermuteVector]:
        return [
            PermuteVector.identity(self.src_graph.tensors[t].rank) for t in self.op.outputs
        ]
