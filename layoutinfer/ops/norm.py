from __future__ import annotations

from typing import List

from layoutinfer.ops.base import OpLayoutInfer
from layoutinfer.permute_vector import PermuteVector


class BatchNormLayoutInfer(OpLayoutInfer):
    """BatchNormalization normalizes along one channel axis given by ``axis`` (default 1)."""

    op_types = (
        "BatchNormalization",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        input_pv = self.input_permute_vector(0)
        attrs = dict(self.op.attrs)
        attrs["axis"] = input_pv.map_axis(self.attr("axis", 1))

        inputs = [self.mapped_input(0)] + [
            self.aligned_input(idx) for idx in range(1, len(self.op.inputs))
        ]
        # Running statistics outputs are per-channel vectors.
        output_pvs = [input_pv] + self.identity_outputs()[1:]
        self.build(inputs, output_pvs, next_tensors, attrs)


class LayerNormLayoutInfer(OpLayoutInfer):
    """LayerNormalization normalizes the trailing block of axes starting at ``axis``.

    The layout is kept only when that block is already stored in place,
    otherwise the input is transposed back to declared layout.
    """

    op_types = (
        "LayerNormalization",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        input_pv = self.input_permute_vector(0)
        axis = input_pv.normalize_axis(self.attr("axis", -1))
        trailing_in_place = all(input_pv[i] == i for i in range(axis, len(input_pv)))

        if trailing_in_place:
            data = self.mapped_input(0)
            layout = input_pv
        else:
            data = self.aligned_input(0)
            layout = PermuteVector.identity(len(input_pv))

        inputs = [data] + [self.aligned_input(idx) for idx in range(1, len(self.op.inputs))]
        # Mean / InvStdDev keep the input rank with the normalized axes set to 1.
        self.build(inputs, layout, next_tensors)
