#! /usr/bin/env python

import os
import sys
import json
from argparse import ArgumentParser
from typing import List, Optional, Union

from layoutinfer.context import LayoutInferContext
from layoutinfer.errors import LayoutInferenceError, UnresolvedTensorError
from layoutinfer.ir import GraphIR, OperatorIR
from layoutinfer.op_registry import resolve_handler
from layoutinfer.permute_vector import PermuteVector
from layoutinfer.utils.common_functions import print_node_info
from layoutinfer.utils.enums import DataLayout
from layoutinfer.utils.logging import *


@print_node_info
def _dispatch_operator(
    *,
    graph_node: OperatorIR,
    context: LayoutInferContext,
    next_tensors: List[int],
    allow_fallback: bool,
) -> str:
    resolution = resolve_handler(
        graph_node,
        context.src_graph,
        allow_fallback=allow_fallback,
    )
    if resolution.dispatch_mode == 'fallback':
        warn(
            f'{resolution.message}. ' +
            f'op_name: {graph_node.name} reason_code: {resolution.reason_code}'
        )
    handler = resolution.entry.handler(graph_node.id, context)
    handler.on_inputs(next_tensors)
    return resolution.dispatch_mode


class LayoutInferencePass:
    """Rewrite ``graph`` so every operator sees the layout its kernels expect.

    Parameters
    ----------
    graph: GraphIR
        Source graph. It is only read.

    native_layout: Union[str, DataLayout]
        Channel layout required by the target kernels.\n
        Default: NHWC

    allow_fallback: bool
        Handle kinds without a dedicated rule with the layout-opaque
        fallback. When False such kinds raise UnsupportedOperatorKindError.
    """

    def __init__(
        self,
        graph: GraphIR,
        *,
        native_layout: Union[str, DataLayout] = DataLayout.NHWC,
        allow_fallback: bool = True,
    ):
        self.graph = graph
        self.allow_fallback = allow_fallback
        self.context = LayoutInferContext(graph, native_layout=native_layout)
        self.fallback_ops: List[str] = []

    def _seed(self) -> None:
        context = self.context
        for tensor in self.graph.tensors:
            if tensor.is_constant:
                context.set_permute_vector(tensor.id, PermuteVector.identity(tensor.rank))
        for tensor_id in self.graph.inputs:
            if context.is_resolved(tensor_id):
                continue
            src = self.graph.tensors[tensor_id]
            infer_id = context.infer_graph.create_tensor(src.name, list(src.shape), src.dtype)
            context.infer_graph.add_input(infer_id)
            context.update_tensor_map(tensor_id, infer_id)
            context.set_permute_vector(tensor_id, PermuteVector.identity(src.rank))
            context.pending.append(tensor_id)

    def _ready(self, op: OperatorIR) -> bool:
        return not self.context.is_visited(op.id) \
            and all(self.context.is_resolved(t) for t in op.inputs)

    def _visit(self, op: OperatorIR) -> None:
        next_tensors: List[int] = []
        self.context.mark_visited(op.id)
        dispatch_mode = _dispatch_operator(
            graph_node=op,
            context=self.context,
            next_tensors=next_tensors,
            allow_fallback=self.allow_fallback,
        )
        if dispatch_mode == 'fallback':
            self.fallback_ops.append(op.name)
        self.context.pending.extend(next_tensors)

    def _check_all_visited(self) -> None:
        for op in self.graph.operators:
            if self.context.is_visited(op.id):
                continue
            unresolved = [t for t in op.inputs if not self.context.is_resolved(t)]
            raise UnresolvedTensorError(
                'Operator was never reached: its inputs are not produced by the graph',
                op_name=op.name,
                tensor_name=self.graph.tensors[unresolved[0]].name if unresolved else None,
            )

    def _publish_outputs(self) -> None:
        context = self.context
        for tensor_id in self.graph.outputs:
            src = self.graph.tensors[tensor_id]
            pv = context.get_permute_vector(tensor_id)
            infer_id = context.get_mapped_tensor(tensor_id)
            if not pv.is_aligned():
                # Public outputs are always delivered in declared layout.
                # Only the tensor created for this output may give up its
                # name; graph inputs and absorbed-Transpose aliases keep theirs.
                produced = context.infer_graph.tensors[infer_id]
                if produced.name == src.name and infer_id not in context.infer_graph.inputs:
                    context.infer_graph.rename_tensor(infer_id, f'{src.name}_{context.native_layout.value}')
                infer_id = context.insert_transpose(
                    infer_id,
                    pv.transpose_to(PermuteVector.identity(len(pv))),
                    name=f'{src.name}_output_transpose',
                )
                context.infer_graph.rename_tensor(infer_id, src.name)
            elif context.infer_graph.tensors[infer_id].name != src.name:
                # Absorbed transposes leave the output aliasing another tensor.
                alias = context.infer_graph.tensors[infer_id]
                out_id = context.infer_graph.create_tensor(src.name, list(alias.shape), alias.dtype)
                op_id = context.infer_graph.create_operation(
                    'Identity',
                    {},
                    name=f'{src.name}_output_identity',
                )
                context.infer_graph.bind_input(op_id, infer_id)
                context.infer_graph.bind_output(op_id, out_id)
                infer_id = out_id
            context.infer_graph.add_output(infer_id)

    def run(self) -> GraphIR:
        self._seed()
        context = self.context
        ops = self.graph.operators

        # Kinds fed only by constants (or nothing) are ready from the start.
        for op_id in self.graph.topological_order():
            if self._ready(ops[op_id]):
                self._visit(ops[op_id])

        while context.pending:
            tensor_id = context.pending.popleft()
            for op_id in self.graph.consumers(tensor_id):
                if self._ready(ops[op_id]):
                    self._visit(ops[op_id])

        self._check_all_visited()
        self._publish_outputs()
        return context.infer_graph


def infer_layout(
    graph: GraphIR,
    native_layout: Optional[Union[str, DataLayout]] = DataLayout.NHWC,
    disable_fallback: Optional[bool] = False,
    non_verbose: Optional[bool] = False,
    verbosity: Optional[str] = None,
) -> GraphIR:
    """Run layout inference on a graph.

    Parameters
    ----------
    graph: GraphIR
        Source graph.

    native_layout: Optional[Union[str, DataLayout]]
        Channel layout the target kernels expect. "NHWC" or "NCHW".\n
        Default: "NHWC"

    disable_fallback: Optional[bool]
        Raise UnsupportedOperatorKindError for kinds without a dedicated
        layout rule instead of transposing their inputs back.\n
        Default: False

    non_verbose: Optional[bool]
        Shorthand to specify a verbosity of "error".\n
        Default: False

    verbosity: Optional[str]
        Change the level of information printed. "debug" | "info" | "warn" | "error".\n
        Default: keep the current level

    Returns
    ----------
    infer_graph: GraphIR
        New graph whose inputs and outputs keep the declared layouts of the
        source graph.
    """
    if non_verbose:
        set_log_level('error')
    elif verbosity is not None:
        set_log_level(verbosity)

    layout_pass = LayoutInferencePass(
        graph,
        native_layout=native_layout if native_layout is not None else DataLayout.NHWC,
        allow_fallback=not disable_fallback,
    )
    infer_graph = layout_pass.run()

    info(
        Color.GREEN(f'layout inference complete!') + ' ' +
        f'ops: {len(graph.operators)} -> {len(infer_graph.operators)} ' +
        f'transposes inserted: {layout_pass.context.inserted_transposes} ' +
        f'fallbacks: {len(layout_pass.fallback_ops)}'
    )
    return infer_graph


def main():
    from layoutinfer import __version__
    from layoutinfer.frontend import load_onnx

    parser = ArgumentParser()
    iV_group = parser.add_mutually_exclusive_group(required=True)
    iV_group.add_argument(
        '-i',
        '--input_onnx_file_path',
        type=str,
        help='Input onnx file path.'
    )
    iV_group.add_argument(
        '-V',
        '--version',
        action='store_true',
        help='Show version and exit.'
    )
    parser.add_argument(
        '-nl',
        '--native_layout',
        type=str,
        choices=[layout.value for layout in DataLayout],
        default=DataLayout.NHWC.value,
        help=\
            'Channel layout the target kernels expect. \n' +
            'Default: "NHWC"'
    )
    parser.add_argument(
        '-df',
        '--disable_fallback',
        action='store_true',
        help=\
            'Fail on operators without a dedicated layout rule instead of ' +
            'transposing their inputs back to the declared layout.'
    )
    parser.add_argument(
        '-oj',
        '--output_json_path',
        type=str,
        help='Write the rewritten graph to this path as JSON.'
    )
    parser.add_argument(
        '-n',
        '--non_verbose',
        action='store_true',
        help='Shorthand to specify a verbosity of "error".'
    )
    parser.add_argument(
        '-v',
        '--verbosity',
        type=str,
        choices=list(LOG_LEVELS.keys()),
        default='info',
        help=\
            'Change the level of information printed. \n' +
            'Default: "info"'
    )
    args = parser.parse_args()

    if args.version:
        print(__version__)
        sys.exit(0)

    set_log_level('error' if args.non_verbose else args.verbosity)

    try:
        graph = load_onnx(args.input_onnx_file_path)
        infer_graph = infer_layout(
            graph,
            native_layout=args.native_layout,
            disable_fallback=args.disable_fallback,
        )
    except LayoutInferenceError as ex:
        error(f'{type(ex).__name__}: {ex}')
        sys.exit(1)

    if args.output_json_path:
        output_dir = os.path.dirname(args.output_json_path)
        if output_dir:
            os.makedirs(output_dir, exist_ok=True)
        with open(args.output_json_path, 'w') as f:
            json.dump(infer_graph.to_dict(), f, indent=2)
        info(Color.GREEN(f'JSON output complete!') + f' {args.output_json_path}')


if __name__ == '__main__':
    main()
