from __future__ import annotations

from collections import deque
from typing import Deque, Dict, List, Optional, Sequence, Set, Tuple, Union

import numpy as np

from layoutinfer.errors import (
    AlreadyBoundError,
    DimensionMismatchError,
    UnresolvedTensorError,
)
from layoutinfer.ir import GraphIR
from layoutinfer.permute_vector import PermuteVector
from layoutinfer.utils.enums import DataLayout
from layoutinfer.utils.logging import Color, debug


class LayoutInferContext:
    """State of one layout inference run.

    Maps every tensor of ``src_graph`` to its counterpart in ``infer_graph``
    together with the permute vector describing how the counterpart is laid
    out. Both entries are written exactly once per tensor.
    """

    def __init__(
        self,
        src_graph: GraphIR,
        *,
        native_layout: Union[str, DataLayout] = DataLayout.NHWC,
    ):
        self.src_graph = src_graph
        self.infer_graph = GraphIR(name=src_graph.name)
        self.native_layout = DataLayout.parse(native_layout)
        self.pending: Deque[int] = deque()
        self.inserted_transposes = 0
        self._permute_vectors: Dict[int, PermuteVector] = {}
        self._tensor_map: Dict[int, int] = {}
        self._permuted_constants: Dict[Tuple[int, Tuple[int, ...]], int] = {}
        self._visited_ops: Set[int] = set()

    def _name(self, tensor_id: int) -> str:
        return self.src_graph.tensors[tensor_id].name

    def is_resolved(self, tensor_id: int) -> bool:
        return tensor_id in self._permute_vectors

    def get_permute_vector(self, tensor_id: int) -> PermuteVector:
        if tensor_id not in self._permute_vectors:
            raise UnresolvedTensorError(
                "Permute vector requested before the tensor was resolved",
                tensor_name=self._name(tensor_id),
            )
        return self._permute_vectors[tensor_id]

    def set_permute_vector(self, tensor_id: int, pv: PermuteVector) -> None:
        if tensor_id in self._permute_vectors:
            raise AlreadyBoundError(
                f"Permute vector already bound to {self._permute_vectors[tensor_id]}",
                tensor_name=self._name(tensor_id),
            )
        rank = self.src_graph.tensors[tensor_id].rank
        if len(pv) != rank:
            raise DimensionMismatchError(
                f"Permute vector {pv} does not match tensor rank {rank}",
                tensor_name=self._name(tensor_id),
            )
        self._permute_vectors[tensor_id] = pv

    def get_mapped_tensor(self, tensor_id: int) -> int:
        if tensor_id in self._tensor_map:
            return self._tensor_map[tensor_id]
        src_tensor = self.src_graph.tensors[tensor_id]
        if not src_tensor.is_constant:
            raise UnresolvedTensorError(
                "Tensor has no counterpart in the inferred graph yet",
                tensor_name=src_tensor.name,
            )
        # Constants are copied on first use so unused ones never reach the new graph.
        infer_id = self.infer_graph.create_tensor(
            src_tensor.name,
            list(src_tensor.shape),
            src_tensor.dtype,
            data=src_tensor.data,
        )
        self._tensor_map[tensor_id] = infer_id
        return infer_id

    def update_tensor_map(self, tensor_id: int, infer_id: int) -> None:
        if tensor_id in self._tensor_map:
            raise AlreadyBoundError(
                "Tensor already mapped into the inferred graph",
                tensor_name=self._name(tensor_id),
            )
        self._tensor_map[tensor_id] = infer_id

    def get_permuted_constant(self, tensor_id: int, pv: PermuteVector) -> int:
        """Constant counterpart whose data is stored in layout ``pv``.

        A constant of lower rank than ``pv`` is first broadcast-expanded by
        prepending size-1 axes.
        """
        src_tensor = self.src_graph.tensors[tensor_id]
        if len(pv) < src_tensor.rank:
            raise DimensionMismatchError(
                f"Permute vector {pv} does not match constant rank {src_tensor.rank}",
                tensor_name=src_tensor.name,
            )
        if pv.is_aligned() and len(pv) == src_tensor.rank:
            return self.get_mapped_tensor(tensor_id)
        key = (tensor_id, tuple(pv))
        if key not in self._permuted_constants:
            data = np.reshape(
                src_tensor.data,
                [1] * (len(pv) - src_tensor.rank) + list(src_tensor.data.shape),
            )
            data = np.transpose(data, pv.inverse().as_list())
            self._permuted_constants[key] = self.infer_graph.create_tensor(
                f"{src_tensor.name}_permuted",
                list(data.shape),
                src_tensor.dtype,
                data=np.ascontiguousarray(data),
            )
        return self._permuted_constants[key]

    def create_outputs_tensor(
        self,
        op_id: int,
        pvs: Union[PermuteVector, Sequence[PermuteVector]],
    ) -> List[int]:
        """Allocate the inferred counterparts of every output of ``op_id``."""
        op = self.src_graph.operators[op_id]
        if isinstance(pvs, PermuteVector):
            pvs = [pvs] * len(op.outputs)
        if len(pvs) != len(op.outputs):
            raise DimensionMismatchError(
                f"{len(pvs)} permute vectors for {len(op.outputs)} outputs",
                op_name=op.name,
            )
        infer_ids: List[int] = []
        for tensor_id, pv in zip(op.outputs, pvs):
            src_tensor = self.src_graph.tensors[tensor_id]
            infer_id = self.infer_graph.create_tensor(
                src_tensor.name,
                pv.map_axis_list(src_tensor.shape),
                src_tensor.dtype,
            )
            self.update_tensor_map(tensor_id, infer_id)
            infer_ids.append(infer_id)
        return infer_ids

    def insert_transpose(self, infer_id: int, perm: Sequence[int], name: Optional[str] = None) -> int:
        perm = [int(p) for p in perm]
        if perm == list(range(len(perm))):
            return infer_id
        src = self.infer_graph.tensors[infer_id]
        out_id = self.infer_graph.create_tensor(
            f"{src.name}_transposed",
            [src.shape[p] for p in perm],
            src.dtype,
        )
        op_id = self.infer_graph.create_operation(
            "Transpose",
            {"perm": perm},
            name=name if name else f"{src.name}_transpose",
        )
        self.infer_graph.bind_input(op_id, infer_id)
        self.infer_graph.bind_output(op_id, out_id)
        self.inserted_transposes += 1
        debug(
            f'{Color.CYAN}transpose inserted{Color.RESET}: '
            f'{src.name} perm={perm}'
        )
        return out_id

    def insert_reshape(self, infer_id: int, shape: Sequence[int], name: Optional[str] = None) -> int:
        src = self.infer_graph.tensors[infer_id]
        out_id = self.infer_graph.create_tensor(
            f"{src.name}_reshaped",
            [int(d) for d in shape],
            src.dtype,
        )
        op_id = self.infer_graph.create_operation(
            "Reshape",
            {"shape": [int(d) for d in shape]},
            name=name if name else f"{src.name}_reshape",
        )
        self.infer_graph.bind_input(op_id, infer_id)
        self.infer_graph.bind_output(op_id, out_id)
        return out_id

    def mark_visited(self, op_id: int) -> None:
        self._visited_ops.add(op_id)

    def is_visited(self, op_id: int) -> bool:
        return op_id in self._visited_ops
