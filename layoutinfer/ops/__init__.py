from layoutinfer.ops.base import (
    OpLayoutInfer,
)
from layoutinfer.ops.default import (
    DefaultLayoutInfer,
    ReshapeLayoutInfer,
)
from layoutinfer.ops.elementwise import (
    ActivationLayoutInfer,
    ElementwiseLayoutInfer,
    SoftmaxLayoutInfer,
)
from layoutinfer.ops.shape import (
    ConcatLayoutInfer,
    PadLayoutInfer,
    ResizeLayoutInfer,
    SliceLayoutInfer,
    SplitLayoutInfer,
    SqueezeLayoutInfer,
    TileLayoutInfer,
    TransposeLayoutInfer,
    UnsqueezeLayoutInfer,
)
from layoutinfer.ops.reduce import (
    ReduceLayoutInfer,
)
from layoutinfer.ops.index import (
    GatherLayoutInfer,
)
from layoutinfer.ops.norm import (
    BatchNormLayoutInfer,
    LayerNormLayoutInfer,
)
from layoutinfer.ops.conv import (
    ChannelLayoutInfer,
    ConvLayoutInfer,
)
from layoutinfer.ops.fc import (
    MatMulLayoutInfer,
)

__all__ = [
    "OpLayoutInfer",
    "DefaultLayoutInfer",
    "ReshapeLayoutInfer",
    "ActivationLayoutInfer",
    "ElementwiseLayoutInfer",
    "SoftmaxLayoutInfer",
    "ConcatLayoutInfer",
    "PadLayoutInfer",
    "ResizeLayoutInfer",
    "SliceLayoutInfer",
    "SplitLayoutInfer",
    "SqueezeLayoutInfer",
    "TileLayoutInfer",
    "TransposeLayoutInfer",
    "UnsqueezeLayoutInfer",
    "ReduceLayoutInfer",
    "GatherLayoutInfer",
    "BatchNormLayoutInfer",
    "LayerNormLayoutInfer",
    "ChannelLayoutInfer",
    "ConvLayoutInfer",
    "MatMulLayoutInfer",
]
