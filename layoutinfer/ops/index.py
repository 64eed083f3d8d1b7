from __future__ import annotations

from typing import List

from layoutinfer.ops.base import OpLayoutInfer


class GatherLayoutInfer(OpLayoutInfer):
    """Gather

    Scalar or 1-D indices keep every other axis of ``data`` in place, so the
    gather axis is remapped. Higher-rank indices splice new axes into the
    output and need ``data`` in declared layout.
    """

    op_types = (
        "Gather",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        data_pv = self.input_permute_vector(0)
        indices = self.input_tensor(1)
        axis = data_pv.normalize_axis(self.attr("axis", 0))

        if indices.rank > 1:
            inputs = [self.aligned_input(0), self.aligned_input(1)]
            self.build(inputs, self.identity_outputs(), next_tensors)
            return

        attrs = dict(self.op.attrs)
        attrs["axis"] = data_pv.map_axis(axis)
        output_pv = data_pv if indices.rank == 1 else data_pv.squeeze([axis])
        inputs = [self.mapped_input(0), self.aligned_input(1)]
        self.build(inputs, output_pv, next_tensors, attrs)
