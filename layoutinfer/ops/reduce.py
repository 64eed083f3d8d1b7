from __future__ import annotations

from typing import List

from layoutinfer.ops.base import OpLayoutInfer
from layoutinfer.utils.common_functions import flag, normalize_axes


class ReduceLayoutInfer(OpLayoutInfer):
    """Reductions and Arg{Max,Min}.

    Reduced axes are remapped to their physical positions. With ``keepdims``
    the input layout survives, otherwise the reduced axes are squeezed out.
    """

    op_types = (
        "ReduceMean",
        "ReduceSum",
        "ReduceMax",
        "ReduceMin",
        "ReduceProd",
        "ReduceL1",
        "ReduceL2",
        "ReduceLogSumExp",
        "ReduceSumSquare",
        "ArgMax",
        "ArgMin",
    )

    single_axis_types = (
        "ArgMax",
        "ArgMin",
    )

    def reduced_axes(self, rank: int) -> List[int]:
        if self.op.op_type in self.single_axis_types:
            return normalize_axes([self.attr("axis", 0)], rank)
        axes = self.attr("axes")
        if axes is None or len(axes) == 0:
            if flag(self.attr("noop_with_empty_axes"), False):
                return []
            return list(range(rank))
        return normalize_axes(axes, rank)

    def on_inputs(self, next_tensors: List[int]) -> None:
        input_pv = self.input_permute_vector(0)
        axes = self.reduced_axes(len(input_pv))
        keepdims = flag(self.attr("keepdims"), True)

        physical_axes = sorted(input_pv.map_axis(axis) for axis in axes)
        attrs = dict(self.op.attrs)
        if self.op.op_type in self.single_axis_types:
            attrs["axis"] = physical_axes[0]
        else:
            attrs["axes"] = physical_axes

        output_pv = input_pv if keepdims else input_pv.squeeze(axes)
        self.build([self.mapped_input(0)], output_pv, next_tensors, attrs)
