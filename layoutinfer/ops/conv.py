from __future__ import annotations

from typing import List

from layoutinfer.errors import LayoutConflictError
from layoutinfer.ops.base import OpLayoutInfer
from layoutinfer.permute_vector import PermuteVector
from layoutinfer.utils.enums import DataLayout


class ChannelLayoutInfer(OpLayoutInfer):
    """Kinds whose kernels fix the physical position of the channel axis.

    The data input is converted to the native channel layout whatever it
    carries. The output keeps the declared axis meaning, so its permute
    vector is the declared -> native channel permutation. The rebuilt
    operator is tagged with the native ``layout``.
    """

    op_types = (
        "MaxPool",
        "AveragePool",
        "LpPool",
        "GlobalAveragePool",
        "GlobalMaxPool",
        "DepthToSpace",
        "SpaceToDepth",
        "InstanceNormalization",
        "LRN",
    )

    def declared_layout(self) -> DataLayout:
        try:
            return DataLayout.parse(self.attr("layout", DataLayout.NCHW))
        except ValueError as ex:
            raise LayoutConflictError(
                str(ex),
                reason_code="invalid_layout",
                op_name=self.op.name,
            ) from ex

    def channel_permute_vector(self, rank: int) -> PermuteVector:
        return PermuteVector.channel_layout(
            rank,
            self.declared_layout(),
            self.context.native_layout,
        )

    def convert_operand(self, idx: int) -> int:
        return self.aligned_input(idx)

    def on_inputs(self, next_tensors: List[int]) -> None:
        required = self.channel_permute_vector(self.input_tensor(0).rank)
        inputs = [self.mapped_input_as(0, required)] + [
            self.convert_operand(idx) for idx in range(1, len(self.op.inputs))
        ]
        attrs = dict(self.op.attrs)
        attrs["layout"] = self.context.native_layout.value
        output_pvs = [
            self.channel_permute_vector(self.src_graph.tensors[t].rank) for t in self.op.outputs
        ]
        self.build(inputs, output_pvs, next_tensors, attrs)


class ConvLayoutInfer(ChannelLayoutInfer):
    """Conv / ConvTranspose

    The kernel follows the data layout convention: its axis 1 is moved the
    way the data channel axis is. For Conv that is OIHW -> OHWI. For
    ConvTranspose the ONNX kernel is (C_in, C_out/group, kH, kW), so the
    native kernel is (C_in, kH, kW, C_out/group), not OHWI. Constant kernels
    are permuted offline, so only variable kernels cost a transpose.
    """

    op_types = (
        "Conv",
        "ConvTranspose",
    )

    def convert_operand(self, idx: int) -> int:
        if idx == 1:
            return self.mapped_input_as(1, self.channel_permute_vector(self.input_tensor(1).rank))
        return super().convert_operand(idx)
