from __future__ import annotations

from typing import List

from layoutinfer.ops.base import OpLayoutInfer
from layoutinfer.permute_vector import PermuteVector


def _is_inner_swap(pv: PermuteVector) -> bool:
    rank = len(pv)
    if rank < 2:
        return False
    return pv.as_list() == list(range(rank - 2)) + [rank - 1, rank - 2]


class MatMulLayoutInfer(OpLayoutInfer):
    """MatMul / Gemm

    An operand whose two innermost axes are swapped is consumed through the
    kind's transpose flag instead of a transpose operator. Any other
    non-identity layout is transposed back. The result is in declared layout.
    """

    op_types = (
        "MatMul",
        "Gemm",
    )

    transpose_attrs = {
        "MatMul": ("transpose_a", "transpose_b"),
        "Gemm": ("transA", "transB"),
    }

    def on_inputs(self, next_tensors: List[int]) -> None:
        attrs = dict(self.op.attrs)
        inputs = []
        for idx, attr_name in enumerate(self.transpose_attrs[self.op.op_type]):
            tensor = self.input_tensor(idx)
            if tensor.is_constant:
                inputs.append(self.aligned_input(idx))
                continue
            pv = self.input_permute_vector(idx)
            if _is_inner_swap(pv):
                inputs.append(self.mapped_input(idx))
                attrs[attr_name] = 0 if int(attrs.get(attr_name, 0)) else 1
            else:
                inputs.append(self.aligned_input(idx))
        inputs += [self.aligned_input(idx) for idx in range(2, len(self.op.inputs))]
        self.build(inputs, self.identity_outputs(), next_tensors, attrs)
