from __future__ import annotations

from typing import Any, Dict, Optional


class LayoutInferenceError(ValueError):
    """Base class of every error that aborts a layout inference pass."""

    default_reason_code = "layout_inference_error"

    def __init__(
        self,
        message: str,
        *,
        reason_code: Optional[str] = None,
        op_name: Optional[str] = None,
        tensor_name: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.reason_code = str(reason_code or self.default_reason_code)
        self.message = str(message)
        self.op_name = op_name
        self.tensor_name = tensor_name

    def __str__(self) -> str:
        location = []
        if self.op_name is not None:
            location.append(f"op={self.op_name}")
        if self.tensor_name is not None:
            location.append(f"tensor={self.tensor_name}")
        if not location:
            return self.message
        return f"{self.message} ({', '.join(location)})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "reason_code": self.reason_code,
            "message": self.message,
            "op_name": self.op_name,
            "tensor_name": self.tensor_name,
        }


class UnresolvedTensorError(LayoutInferenceError):
    default_reason_code = "unresolved_tensor"


class AlreadyBoundError(LayoutInferenceError):
    default_reason_code = "already_bound"


class DimensionMismatchError(LayoutInferenceError):
    default_reason_code = "dimension_mismatch"


class LayoutConflictError(LayoutInferenceError):
    default_reason_code = "layout_conflict"


class UnsupportedOperatorKindError(LayoutInferenceError):
    default_reason_code = "unsupported_operator_kind"
