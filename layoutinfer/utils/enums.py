from enum import Enum

import numpy as np
from onnx import TensorProto


class DataLayout(str, Enum):
    """Channel placement of an activation tensor.

    The names follow the 4-D spelling, but every rank >= 2 is covered:
    NCHW means "channel right after batch", NHWC means "channel last".
    """
    NCHW = 'NCHW'
    NHWC = 'NHWC'

    @classmethod
    def parse(cls, value) -> 'DataLayout':
        if isinstance(value, DataLayout):
            return value
        text = str(value).upper()
        if text in ('NCW', 'NCHW', 'NCDHW', 'CHANNELS_FIRST'):
            return cls.NCHW
        if text in ('NWC', 'NHWC', 'NDHWC', 'CHANNELS_LAST'):
            return cls.NHWC
        raise ValueError(f'Unknown data layout: {value}')


ONNX_DTYPES_TO_DTYPE_NAMES = {
    TensorProto.FLOAT16: 'FLOAT16',
    TensorProto.FLOAT: 'FLOAT32',
    TensorProto.DOUBLE: 'FLOAT64',

    TensorProto.UINT8: 'UINT8',
    TensorProto.UINT16: 'UINT16',
    TensorProto.UINT32: 'UINT32',
    TensorProto.UINT64: 'UINT64',

    TensorProto.INT8: 'INT8',
    TensorProto.INT16: 'INT16',
    TensorProto.INT32: 'INT32',
    TensorProto.INT64: 'INT64',

    TensorProto.BOOL: 'BOOL',

    TensorProto.STRING: 'STRING',
}

NUMPY_DTYPES_TO_DTYPE_NAMES = {
    np.dtype('float16'): 'FLOAT16',
    np.dtype('float32'): 'FLOAT32',
    np.dtype('float64'): 'FLOAT64',

    np.dtype('uint8'): 'UINT8',
    np.dtype('uint16'): 'UINT16',
    np.dtype('uint32'): 'UINT32',
    np.dtype('uint64'): 'UINT64',

    np.dtype('int8'): 'INT8',
    np.dtype('int16'): 'INT16',
    np.dtype('int32'): 'INT32',
    np.dtype('int64'): 'INT64',

    np.dtype('bool_'): 'BOOL',
}
