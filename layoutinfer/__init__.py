from layoutinfer.layoutinfer import infer_layout, main, LayoutInferencePass
from layoutinfer.frontend import import_onnx, load_onnx
from layoutinfer.ir import GraphIR, OperatorIR, TensorIR
from layoutinfer.context import LayoutInferContext
from layoutinfer.permute_vector import PermuteVector
from layoutinfer.errors import (
    LayoutInferenceError,
    UnresolvedTensorError,
    AlreadyBoundError,
    DimensionMismatchError,
    LayoutConflictError,
    UnsupportedOperatorKindError,
)

__version__ = '0.1.0'
