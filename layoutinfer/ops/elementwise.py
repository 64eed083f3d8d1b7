from __future__ import annotations

from collections import Counter
from typing import List

from layoutinfer.errors import LayoutConflictError
from layoutinfer.ops.base import OpLayoutInfer
from layoutinfer.permute_vector import PermuteVector


class ActivationLayoutInfer(OpLayoutInfer):
    """Single-input elementwise kinds, layout-transparent."""

    op_types = (
        "Relu",
        "Sigmoid",
        "Tanh",
        "Abs",
        "Neg",
        "Exp",
        "Log",
        "Sqrt",
        "Reciprocal",
        "Floor",
        "Ceil",
        "Round",
        "Sign",
        "Erf",
        "Sin",
        "Cos",
        "Not",
        "Softplus",
        "Softsign",
        "Elu",
        "Selu",
        "LeakyRelu",
        "HardSigmoid",
        "HardSwish",
        "Gelu",
        "Mish",
        "Clip",
        "Cast",
        "Identity",
        "Dropout",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        input_pv = self.input_permute_vector(0)
        # Scalar operands such as dynamic Clip bounds are layout free.
        inputs = [self.mapped_input(0)] + [
            self.aligned_input(idx) for idx in range(1, len(self.op.inputs))
        ]
        self.build(inputs, input_pv, next_tensors)


class ElementwiseLayoutInfer(OpLayoutInfer):
    """Broadcasting multi-input elementwise kinds.

    The layout carried by most full-rank variable inputs is kept. Every other
    input is brought to it: constants are permuted statically, variables get
    a transpose, lower-rank variables are reshaped to full rank first.
    """

    op_types = (
        "Add",
        "Sub",
        "Mul",
        "Div",
        "Pow",
        "Max",
        "Min",
        "Mean",
        "Sum",
        "Mod",
        "Equal",
        "Less",
        "Greater",
        "LessOrEqual",
        "GreaterOrEqual",
        "And",
        "Or",
        "Xor",
        "Where",
        "PRelu",
    )

    def required_permute_vector(self, out_rank: int) -> PermuteVector:
        votes = Counter()
        for idx in range(len(self.op.inputs)):
            tensor = self.input_tensor(idx)
            if tensor.is_constant:
                continue
            if tensor.rank < out_rank and any(dim < 0 for dim in tensor.shape):
                # Not reshapeable to full rank, everything stays declared.
                return PermuteVector.identity(out_rank)
            if tensor.rank != out_rank:
                continue
            votes[self.input_permute_vector(idx)] += 1
        if not votes:
            return PermuteVector.identity(out_rank)
        return votes.most_common(1)[0][0]

    def on_inputs(self, next_tensors: List[int]) -> None:
        out_rank = self.output_tensor(0).rank
        required = self.required_permute_vector(out_rank)

        inputs = []
        for idx in range(len(self.op.inputs)):
            tensor = self.input_tensor(idx)
            if tensor.rank == out_rank:
                inputs.append(self.mapped_input_as(idx, required))
            elif tensor.rank > out_rank:
                raise LayoutConflictError(
                    f"Input rank {tensor.rank} exceeds output rank {out_rank}",
                    op_name=self.op.name,
                    tensor_name=tensor.name,
                )
            elif required.is_aligned():
                inputs.append(self.aligned_input(idx))
            elif tensor.is_constant:
                inputs.append(self.context.get_permuted_constant(tensor.id, required))
            else:
                expanded = self.context.insert_reshape(
                    self.aligned_input(idx),
                    [1] * (out_rank - tensor.rank) + list(tensor.shape),
                    name=f"{self.op.name}_input{idx}_reshape",
                )
                inputs.append(
                    self.context.insert_transpose(
                        expanded,
                        PermuteVector.identity(out_rank).transpose_to(required),
                        name=f"{self.op.name}_input{idx}_transpose",
                    )
                )
        self.build(inputs, required, next_tensors)


class SoftmaxLayoutInfer(OpLayoutInfer):
    """Kinds parameterized by a single axis of their only data input."""

    op_types = (
        "Softmax",
        "LogSoftmax",
        "Hardmax",
        "LpNormalization",
        "ShuffleChannel",
    )

    default_axes = {
        "ShuffleChannel": 1,
    }

    def on_inputs(self, next_tensors: List[int]) -> None:
        input_pv = self.input_permute_vector(0)
        attrs = dict(self.op.attrs)
        # Legacy opsets only reach here with `axis` on the last axis, where
        # the 2-D coercion is a no-op.
        legacy = attrs.pop("opset", None) is not None
        axis = self.attr("axis", 1 if legacy else self.default_axes.get(self.op.op_type, -1))
        attrs["axis"] = input_pv.map_axis(axis)
        self.build([self.mapped_input(0)], input_pv, next_tensors, attrs)
