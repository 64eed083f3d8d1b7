from __future__ import annotations

from typing import List

import numpy as np

from layoutinfer.errors import LayoutConflictError
from layoutinfer.ops.base import OpLayoutInfer
from layoutinfer.permute_vector import PermuteVector
from layoutinfer.utils.common_functions import normalize_axes, remap_axis_mask


class PadLayoutInfer(OpLayoutInfer):
    """Pad

    Padding never changes what an axis means, so the per-axis pad amounts
    are reindexed into physical order and the input layout is kept.
    """

    op_types = (
        "Pad",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        i_src = self.op.inputs[0]
        input_pv = self.context.get_permute_vector(i_src)

        front_size = list(self.attr("front_size"))
        back_size = list(self.attr("back_size"))
        if not input_pv.is_aligned():
            front_size = input_pv.map_axis_list(front_size)
            back_size = input_pv.map_axis_list(back_size)

        attrs = dict(self.op.attrs)
        attrs["front_size"] = front_size
        attrs["back_size"] = back_size

        out_infer = self.create_outputs_tensor(input_pv)
        self.emit([self.context.get_mapped_tensor(i_src)], out_infer, attrs)
        self.context.set_permute_vector(self.op.outputs[0], input_pv)
        next_tensors.append(self.op.outputs[0])


class ConcatLayoutInfer(OpLayoutInfer):
    op_types = (
        "Concat",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        rank = self.output_tensor(0).rank
        required = PermuteVector.identity(rank)
        for idx in range(len(self.op.inputs)):
            if not self.input_tensor(idx).is_constant:
                required = self.input_permute_vector(idx)
                break

        inputs = [self.mapped_input_as(idx, required) for idx in range(len(self.op.inputs))]
        attrs = dict(self.op.attrs)
        attrs["axis"] = required.map_axis(self.attr("axis"))
        self.build(inputs, required, next_tensors, attrs)


class SplitLayoutInfer(OpLayoutInfer):
    """Split sizes run along the split axis and stay valid once the axis is remapped."""

    op_types = (
        "Split",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        input_pv = self.input_permute_vector(0)
        inputs = [self.mapped_input(0)] + [
            self.aligned_input(idx) for idx in range(1, len(self.op.inputs))
        ]
        attrs = dict(self.op.attrs)
        attrs["axis"] = input_pv.map_axis(self.attr("axis", 0))
        self.build(inputs, input_pv, next_tensors, attrs)


class SliceLayoutInfer(OpLayoutInfer):
    """Slice / StridedSlice with full-rank ``begin``, ``end`` and ``strides``.

    Per-axis bit masks are moved along with the axes. Axes dropped through
    ``shrink_axis_mask`` are squeezed out of the output layout.
    """

    op_types = (
        "Slice",
        "StridedSlice",
    )

    mask_attrs = (
        "begin_mask",
        "end_mask",
        "shrink_axis_mask",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        input_pv = self.input_permute_vector(0)
        attrs = dict(self.op.attrs)
        for name in ("begin", "end", "strides"):
            if self.attr(name) is not None:
                attrs[name] = input_pv.map_axis_list(self.attr(name))
        for name in self.mask_attrs:
            if self.attr(name):
                attrs[name] = remap_axis_mask(self.attr(name), input_pv)

        shrink_mask = int(self.attr("shrink_axis_mask", 0))
        shrunk = [axis for axis in range(len(input_pv)) if (shrink_mask >> axis) & 1]
        output_pv = input_pv.squeeze(shrunk) if shrunk else input_pv
        self.build([self.mapped_input(0)], output_pv, next_tensors, attrs)


class TransposeLayoutInfer(OpLayoutInfer):
    """Transpose is absorbed into the permute vector of its output.

    No operator is emitted: the output shares the inferred tensor of the
    input and records where each of its logical axes physically lives.
    Consumers that need another layout materialize a single transpose.
    """

    op_types = (
        "Transpose",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        src = self.input_tensor(0)
        perm = self.attr("perm", list(reversed(range(src.rank))))
        if len(perm) != src.rank:
            raise LayoutConflictError(
                f"perm={list(perm)} does not match input rank {src.rank}",
                op_name=self.op.name,
                tensor_name=src.name,
            )
        try:
            transpose_pv = PermuteVector(perm)
        except LayoutConflictError as ex:
            ex.op_name = self.op.name
            raise

        out_id = self.op.outputs[0]
        if src.is_constant:
            # Folded: the permuted data is stored directly in declared layout.
            out_tensor = self.output_tensor(0)
            data = np.ascontiguousarray(np.transpose(src.data, transpose_pv.as_list()))
            folded = self.infer_graph.create_tensor(
                out_tensor.name,
                list(data.shape),
                out_tensor.dtype,
                data=data,
            )
            self.context.update_tensor_map(out_id, folded)
            self.finish(PermuteVector.identity(out_tensor.rank), next_tensors)
            return

        output_pv = self.input_permute_vector(0).compose(transpose_pv)
        self.context.update_tensor_map(out_id, self.mapped_input(0))
        self.finish(output_pv, next_tensors)


class SqueezeLayoutInfer(OpLayoutInfer):
    op_types = (
        "Squeeze",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        src = self.input_tensor(0)
        input_pv = self.input_permute_vector(0)
        axes = self.attr("axes")
        if axes is None or len(axes) == 0:
            axes = [axis for axis, dim in enumerate(src.shape) if dim == 1]
        axes = normalize_axes(axes, src.rank)

        attrs = dict(self.op.attrs)
        attrs["axes"] = sorted(input_pv.map_axis(axis) for axis in axes)
        self.build([self.mapped_input(0)], input_pv.squeeze(axes), next_tensors, attrs)


class UnsqueezeLayoutInfer(OpLayoutInfer):
    """New size-1 axes are inserted at their logical index in physical order too."""

    op_types = (
        "Unsqueeze",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        out_rank = self.output_tensor(0).rank
        input_pv = self.input_permute_vector(0)
        axes = sorted(normalize_axes(self.attr("axes"), out_rank))

        attrs = dict(self.op.attrs)
        attrs["axes"] = axes
        self.build([self.mapped_input(0)], input_pv.unsqueeze(axes), next_tensors, attrs)


class TileLayoutInfer(OpLayoutInfer):
    op_types = (
        "Tile",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        input_pv = self.input_permute_vector(0)
        attrs = dict(self.op.attrs)
        attrs["repeats"] = input_pv.map_axis_list(self.attr("repeats"))
        self.build([self.mapped_input(0)], input_pv, next_tensors, attrs)


class ResizeLayoutInfer(OpLayoutInfer):
    """Resize interpolates every axis independently.

    Full-rank ``scales``/``sizes``/``roi`` are remapped. With ``axes`` the
    per-axis values stay in ``axes`` order and only ``axes`` is remapped.
    """

    op_types = (
        "Resize",
    )

    def on_inputs(self, next_tensors: List[int]) -> None:
        input_pv = self.input_permute_vector(0)
        rank = len(input_pv)
        attrs = dict(self.op.attrs)
        if self.attr("axes") is not None:
            attrs["axes"] = [input_pv.map_axis(axis) for axis in self.attr("axes")]
            self.build([self.mapped_input(0)], input_pv, next_tensors, attrs)
            return
        for name in ("scales", "sizes"):
            if self.attr(name) is not None and len(self.attr(name)) > 0:
                attrs[name] = input_pv.map_axis_list(self.attr(name))
        roi = self.attr("roi")
        if roi is not None and len(roi) == 2 * rank:
            roi = list(roi)
            attrs["roi"] = \
                input_pv.map_axis_list(roi[:rank]) + input_pv.map_axis_list(roi[rank:])
        self.build([self.mapped_input(0)], input_pv, next_tensors, attrs)
