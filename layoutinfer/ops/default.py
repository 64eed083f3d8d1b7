from __future__ import annotations

from typing import List

from layoutinfer.ops.base import OpLayoutInfer


class DefaultLayoutInfer(OpLayoutInfer):
    """Layout-opaque fallback.

    Every input is transposed back to its declared layout and the operator is
    rebuilt unchanged, so any kind without a dedicated rule stays correct.
    """

    def on_inputs(self, next_tensors: List[int]) -> None:
        inputs = [self.aligned_input(idx) for idx in range(len(self.op.inputs))]
        self.build(inputs, self.identity_outputs(), next_tensors)


class ReshapeLayoutInfer(DefaultLayoutInfer):
    """Reshape-like kinds regroup elements in declared order and need aligned input."""

    op_types = (
        "Reshape",
        "Flatten",
        "Expand",
    )
