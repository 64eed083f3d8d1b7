import traceback
from functools import wraps
from typing import Any, List, Optional, Sequence

from layoutinfer.errors import LayoutInferenceError
from layoutinfer.utils.logging import Color, LOG_LEVELS, get_log_level


def _tensor_info(context: Any, tensor_id: int) -> str:
    tensor = context.src_graph.tensors[tensor_id]
    pv = context.get_permute_vector(tensor_id).as_list() \
        if context.is_resolved(tensor_id) else None
    return \
        f'{tensor.name} ' + \
        f'{Color.CYAN}shape{Color.RESET}: {tensor.shape} ' + \
        f'{Color.CYAN}dtype{Color.RESET}: {tensor.dtype} ' + \
        f'{Color.CYAN}permute{Color.RESET}: {pv}'


def print_node_info(func):
    """Log the operator handled by ``func`` together with the layout of its tensors.

    ``func`` must be called with ``graph_node`` and ``context`` keyword
    arguments. Errors are reported with the offending operator and re-raised.
    """
    @wraps(func)
    def print_wrapper_func(*args, **kwargs):
        graph_node = kwargs.get('graph_node', None)
        context = kwargs.get('context', None)
        verbose = get_log_level() <= LOG_LEVELS['debug']
        if verbose and graph_node is not None and context is not None:
            print('')
            print(
                f'{Color.GREEN}INFO:{Color.RESET} {Color.MAGENTA}op_type{Color.RESET}: '+
                f'{graph_node.op_type} {Color.MAGENTA}op_name{Color.RESET}: {graph_node.name}'
            )
            for idx, tensor_id in enumerate(graph_node.inputs):
                print(
                    f'{Color.GREEN}INFO:{Color.RESET} '+
                    f'{Color.CYAN} input_name.{idx+1}{Color.RESET}: {_tensor_info(context, tensor_id)}'
                )
        try:
            result = func(*args, **kwargs)
        except LayoutInferenceError as ex:
            if ex.op_name is None and graph_node is not None:
                ex.op_name = graph_node.name
            if get_log_level() <= LOG_LEVELS['error']:
                print(f'{Color.RED}ERROR:{Color.RESET} The trace log is below.')
                traceback.print_exc()
                if graph_node is not None:
                    print(
                        f'{Color.RED}ERROR:{Color.RESET} ' +
                        f'op_type: {graph_node.op_type} op_name: {graph_node.name}'
                    )
            raise
        if verbose and graph_node is not None and context is not None:
            for idx, tensor_id in enumerate(graph_node.outputs):
                print(
                    f'{Color.GREEN}INFO:{Color.RESET} '+
                    f'{Color.CYAN} output_name.{idx+1}{Color.RESET}: {_tensor_info(context, tensor_id)}'
                )
        return result
    return print_wrapper_func


def normalize_axes(axes: Sequence[int], rank: int) -> List[int]:
    normalized = []
    for axis in axes:
        axis = int(axis)
        normalized.append(axis + rank if axis < 0 else axis)
    return normalized


def remap_axis_mask(mask: int, perm: Sequence[int]) -> int:
    """Move bit ``i`` of a per-axis bit mask to bit ``perm[i]``."""
    remapped = 0
    for idx, axis in enumerate(perm):
        if (int(mask) >> idx) & 1:
            remapped |= 1 << int(axis)
    return remapped


def flag(value: Optional[Any], default: bool = False) -> bool:
    if value is None:
        return default
    return bool(int(value))
