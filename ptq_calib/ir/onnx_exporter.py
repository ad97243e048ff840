from __future__ import annotations
import json
from typing import List

import numpy as np
import onnx
from onnx import helper, numpy_helper, TensorProto

from .model_ir import Graph, Tensor
from .opcode import CUSTOM_DOMAIN, INSTRUMENTATION_OPS
from .onnx_importer import SIGNATURES_METADATA_KEY, TAGS_METADATA_KEY

DEFAULT_OPSET = 17


def _numpy_to_onnx_dtype(dtype) -> int:
    try:
        return helper.np_dtype_to_tensor_dtype(np.dtype(dtype))
    except (KeyError, TypeError):
        return TensorProto.FLOAT


def _value_info(name: str, tensor: Tensor | None) -> onnx.ValueInfoProto:
    if tensor is None:
        return helper.make_tensor_value_info(name, TensorProto.FLOAT, None)
    shape = [d if d is not None and d > 0 else None for d in tensor.shape] if tensor.shape else None
    return helper.make_tensor_value_info(name, _numpy_to_onnx_dtype(tensor.dtype), shape)


def model_ir_to_model_proto(g: Graph, graph_name: str = "ptq_calib_graph") -> onnx.ModelProto:
    """Serializes a Model IR Graph (including signatures and tags) to an ONNX model."""
    onnx_nodes: List[onnx.NodeProto] = []
    for n in g.nodes:
        attrs = {k: v for k, v in n.attrs.items() if v is not None and v != []}
        domain = CUSTOM_DOMAIN if n.op_type in INSTRUMENTATION_OPS else ""
        onnx_nodes.append(helper.make_node(n.op_type, n.inputs, n.outputs, name=n.name, domain=domain, **attrs))

    initializers = []
    for name in g.initializers:
        if name not in g.constants:
            raise ValueError(f"Initializer '{name}' has no constant value in the graph.")
        initializers.append(numpy_helper.from_array(np.asarray(g.constants[name]), name=name))

    boundary = set(g.inputs) | set(g.outputs) | set(g.initializers)
    value_info = [_value_info(name, t) for name, t in g.tensors.items() if name not in boundary]

    graph_def = helper.make_graph(
        nodes=onnx_nodes,
        name=graph_name,
        inputs=[_value_info(name, g.tensors.get(name)) for name in g.inputs],
        outputs=[_value_info(name, g.tensors.get(name)) for name in g.outputs],
        initializer=initializers,
        value_info=value_info,
    )
    model = helper.make_model(
        graph_def,
        producer_name="ptq-calib",
        opset_imports=[helper.make_opsetid("", DEFAULT_OPSET), helper.make_opsetid(CUSTOM_DOMAIN, 1)],
    )
    helper.set_model_props(model, {
        SIGNATURES_METADATA_KEY: json.dumps({k: s.to_dict() for k, s in g.signatures.items()}, sort_keys=True),
        TAGS_METADATA_KEY: json.dumps(sorted(g.tags)),
    })
    return model


def save_model_ir_as_onnx(g: Graph, path: str):
    onnx.save(model_ir_to_model_proto(g), path)
