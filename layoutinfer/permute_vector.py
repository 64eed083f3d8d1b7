from __future__ import annotations

from typing import Any, Iterable, Iterator, List, Sequence, Union

from layoutinfer.errors import DimensionMismatchError, LayoutConflictError
from layoutinfer.utils.enums import DataLayout


class PermuteVector:
    """Immutable permutation of the axes of one tensor.

    Logical axis ``i`` of a tensor is stored at physical axis ``perm[i]``.
    The identity vector therefore means the tensor is laid out exactly as
    declared in the source graph.

    Parameters
    ----------
    perm: Sequence[int]
        Distinct axis indices covering ``0 .. len(perm) - 1``.
    """

    __slots__ = ("_perm",)

    def __init__(self, perm: Iterable[int]):
        values = tuple(int(v) for v in perm)
        if sorted(values) != list(range(len(values))):
            raise LayoutConflictError(
                f"{list(values)} is not a permutation of 0..{len(values) - 1}",
                reason_code="invalid_permutation",
            )
        self._perm = values

    @classmethod
    def identity(cls, rank: int) -> "PermuteVector":
        return cls(range(rank))

    @classmethod
    def channel_layout(
        cls,
        rank: int,
        src_layout: Union[str, DataLayout],
        dst_layout: Union[str, DataLayout],
    ) -> "PermuteVector":
        """Vector that stores a ``src_layout`` tensor physically as ``dst_layout``.

        For rank 4, NCHW -> NHWC is ``[0, 3, 1, 2]``: C moves to the last
        physical axis, H and W shift one position to the front.
        """
        src_layout = DataLayout.parse(src_layout)
        dst_layout = DataLayout.parse(dst_layout)
        if rank < 3 or src_layout == dst_layout:
            return cls.identity(rank)
        if src_layout == DataLayout.NCHW:
            return cls([0, rank - 1] + list(range(1, rank - 1)))
        return cls([0] + list(range(2, rank)) + [1])

    @property
    def rank(self) -> int:
        return len(self._perm)

    def __len__(self) -> int:
        return len(self._perm)

    def __iter__(self) -> Iterator[int]:
        return iter(self._perm)

    def __getitem__(self, idx: int) -> int:
        return self._perm[idx]

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, PermuteVector):
            return self._perm == other._perm
        if isinstance(other, (list, tuple)):
            return list(self._perm) == [int(v) for v in other]
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._perm)

    def __repr__(self) -> str:
        return f"PermuteVector({list(self._perm)})"

    def as_list(self) -> List[int]:
        return list(self._perm)

    def is_aligned(self) -> bool:
        return all(axis == idx for idx, axis in enumerate(self._perm))

    def compose(self, other: "PermuteVector") -> "PermuteVector":
        """Permutation equivalent to applying ``self`` after ``other``."""
        if len(other) != len(self):
            raise DimensionMismatchError(
                f"Cannot compose permutations of rank {len(self)} and {len(other)}"
            )
        return PermuteVector(self._perm[axis] for axis in other)

    def inverse(self) -> "PermuteVector":
        reverse = [0] * len(self._perm)
        for idx, axis in enumerate(self._perm):
            reverse[axis] = idx
        return PermuteVector(reverse)

    def normalize_axis(self, axis: int) -> int:
        rank = len(self._perm)
        axis = int(axis)
        if rank == 0 or axis < -rank or axis >= rank:
            raise DimensionMismatchError(
                f"axis={axis} is out of range for rank {rank}"
            )
        return axis + rank if axis < 0 else axis

    def map_axis(self, axis: int) -> int:
        """Physical position of logical ``axis``."""
        return self._perm[self.normalize_axis(axis)]

    def map_axis_list(self, values: Sequence[Any]) -> List[Any]:
        """Reorder per-axis values from logical to physical order."""
        values = list(values)
        if len(values) != len(self._perm):
            raise DimensionMismatchError(
                f"Expected {len(self._perm)} per-axis values, got {len(values)}"
            )
        mapped: List[Any] = [None] * len(values)
        for idx, axis in enumerate(self._perm):
            mapped[axis] = values[idx]
        return mapped

    def transpose_to(self, target: "PermuteVector") -> List[int]:
        """``perm`` attribute of the Transpose turning layout ``self`` into ``target``."""
        return self.compose(target.inverse()).as_list()

    def squeeze(self, axes: Iterable[int]) -> "PermuteVector":
        """Layout left after removing logical ``axes``."""
        removed = {self.normalize_axis(a) for a in axes}
        kept = [self._perm[i] for i in range(len(self._perm)) if i not in removed]
        order = sorted(kept)
        return PermuteVector(order.index(axis) for axis in kept)

    def unsqueeze(self, axes: Iterable[int]) -> "PermuteVector":
        """Layout after inserting size-1 logical ``axes`` (output-rank indices).

        The inserted axes land at the same physical positions as their
        logical ones, the existing axes keep their relative physical order.
        """
        axes = [int(a) for a in axes]
        out_rank = len(self._perm) + len(axes)
        inserted = sorted({a + out_rank if a < 0 else a for a in axes})
        if len(inserted) != len(axes) or any(a < 0 or a >= out_rank for a in inserted):
            raise DimensionMismatchError(
                f"Invalid unsqueeze axes {axes} for output rank {out_rank}"
            )
        kept = [axis for axis in range(out_rank) if axis not in inserted]
        reverse = self.inverse()
        physical_order = [kept[reverse[pos]] for pos in range(len(self._perm))]
        for axis in inserted:
            physical_order.insert(axis, axis)
        return PermuteVector(physical_order.index(axis) for axis in range(out_rank))
