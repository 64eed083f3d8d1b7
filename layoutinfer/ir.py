from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from layoutinfer.errors import UnresolvedTensorError


@dataclass
class TensorIR:
    id: int
    name: str
    dtype: str
    shape: List[int]
    data: Optional[np.ndarray] = None

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def is_constant(self) -> bool:
        return self.data is not None


@dataclass
class OperatorIR:
    id: int
    op_type: str
    name: str
    inputs: List[int] = field(default_factory=list)
    outputs: List[int] = field(default_factory=list)
    attrs: Dict[str, Any] = field(default_factory=dict)


class GraphIR:
    """Index-based operator graph.

    Tensors and operators live in flat lists and refer to each other by
    position, so rewriting passes never hold owning references into
    another graph.
    """

    def __init__(self, name: str = "graph"):
        self.name = name
        self.tensors: List[TensorIR] = []
        self.operators: List[OperatorIR] = []
        self.inputs: List[int] = []
        self.outputs: List[int] = []
        self._producers: Dict[int, int] = {}
        self._consumers: Dict[int, List[int]] = {}
        self._names: Dict[str, int] = {}

    def _unique_name(self, base: str) -> str:
        if base not in self._names:
            return base
        serial = 1
        while f"{base}_{serial}" in self._names:
            serial += 1
        return f"{base}_{serial}"

    def create_tensor(
        self,
        name: str,
        shape: List[int],
        dtype: str = "FLOAT32",
        data: Optional[np.ndarray] = None,
    ) -> int:
        if name == "":
            raise ValueError("Tensor name must not be empty.")
        name = self._unique_name(name)
        tensor_id = len(self.tensors)
        if data is not None:
            data = np.asarray(data)
            shape = list(data.shape)
        self.tensors.append(
            TensorIR(
                id=tensor_id,
                name=name,
                dtype=dtype,
                shape=[int(d) for d in shape],
                data=data,
            )
        )
        self._names[name] = tensor_id
        self._consumers[tensor_id] = []
        return tensor_id

    def create_operation(
        self,
        op_type: str,
        attrs: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
    ) -> int:
        op_id = len(self.operators)
        self.operators.append(
            OperatorIR(
                id=op_id,
                op_type=op_type,
                name=name if name else f"{op_type}_{op_id}",
                attrs=dict(attrs) if attrs is not None else {},
            )
        )
        return op_id

    def bind_input(self, op_id: int, tensor_id: int) -> None:
        self._check_tensor(tensor_id)
        self.operators[op_id].inputs.append(tensor_id)
        self._consumers[tensor_id].append(op_id)

    def bind_output(self, op_id: int, tensor_id: int) -> None:
        self._check_tensor(tensor_id)
        if tensor_id in self._producers:
            raise ValueError(
                f"Tensor {self.tensors[tensor_id].name} is already produced by "
                f"{self.operators[self._producers[tensor_id]].name}"
            )
        if self.tensors[tensor_id].is_constant:
            raise ValueError(f"Constant tensor {self.tensors[tensor_id].name} cannot be an operator output")
        self.operators[op_id].outputs.append(tensor_id)
        self._producers[tensor_id] = op_id

    def bind_inputs(self, op_id: int, tensor_ids: List[int]) -> None:
        for tensor_id in tensor_ids:
            self.bind_input(op_id, tensor_id)

    def bind_outputs(self, op_id: int, tensor_ids: List[int]) -> None:
        for tensor_id in tensor_ids:
            self.bind_output(op_id, tensor_id)

    def add_input(self, tensor_id: int) -> None:
        self._check_tensor(tensor_id)
        self.inputs.append(tensor_id)

    def add_output(self, tensor_id: int) -> None:
        self._check_tensor(tensor_id)
        self.outputs.append(tensor_id)

    def _check_tensor(self, tensor_id: int) -> None:
        if not 0 <= tensor_id < len(self.tensors):
            raise IndexError(f"Unknown tensor id: {tensor_id}")

    def tensor(self, tensor_id: int) -> TensorIR:
        return self.tensors[tensor_id]

    def tensor_by_name(self, name: str) -> TensorIR:
        return self.tensors[self._names[name]]

    def rename_tensor(self, tensor_id: int, name: str) -> str:
        tensor = self.tensors[tensor_id]
        del self._names[tensor.name]
        tensor.name = self._unique_name(name)
        self._names[tensor.name] = tensor_id
        return tensor.name

    def producer(self, tensor_id: int) -> Optional[int]:
        return self._producers.get(tensor_id, None)

    def consumers(self, tensor_id: int) -> List[int]:
        return list(self._consumers.get(tensor_id, []))

    def topological_order(self) -> List[int]:
        pending = {}
        for op in self.operators:
            pending[op.id] = len({t for t in op.inputs if t in self._producers})
        ready = deque(op.id for op in self.operators if pending[op.id] == 0)
        order: List[int] = []
        while ready:
            op_id = ready.popleft()
            order.append(op_id)
            for tensor_id in self.operators[op_id].outputs:
                for consumer in dict.fromkeys(self._consumers[tensor_id]):
                    pending[consumer] -= 1
                    if pending[consumer] == 0:
                        ready.append(consumer)
        if len(order) != len(self.operators):
            stuck = next(op for op in self.operators if pending[op.id] > 0)
            raise UnresolvedTensorError(
                f"Graph {self.name} contains a cycle",
                reason_code="graph_cycle",
                op_name=stuck.name,
            )
        return order

    def op_types(self) -> List[str]:
        return [self.operators[op_id].op_type for op_id in self.topological_order()]

    def count_ops(self, op_type: str) -> int:
        return sum(1 for op in self.operators if op.op_type == op_type)

    def to_dict(self) -> Dict[str, Any]:
        def _attr(value: Any) -> Any:
            if isinstance(value, np.ndarray):
                return value.tolist()
            if isinstance(value, (np.integer, np.floating)):
                return value.item()
            if isinstance(value, (list, tuple)):
                return [_attr(v) for v in value]
            return value

        return {
            "name": self.name,
            "inputs": [self.tensors[t].name for t in self.inputs],
            "outputs": [self.tensors[t].name for t in self.outputs],
            "tensors": [
                {
                    "name": t.name,
                    "dtype": t.dtype,
                    "shape": list(t.shape),
                    "constant": t.is_constant,
                } for t in self.tensors
            ],
            "operators": [
                {
                    "name": self.operators[op_id].name,
                    "op_type": self.operators[op_id].op_type,
                    "inputs": [self.tensors[t].name for t in self.operators[op_id].inputs],
                    "outputs": [self.tensors[t].name for t in self.operators[op_id].outputs],
                    "attrs": {k: _attr(v) for k, v in self.operators[op_id].attrs.items()},
                } for op_id in self.topological_order()
            ],
        }
