from __future__ import annotations
from .model_ir import Graph, Node, Tensor, SignatureDef, DEFAULT_SIGNATURE_KEY, DEFAULT_TAGS
from typing import Any, Dict
import json
import numpy as np

import onnx
from onnx import numpy_helper

# metadata_props keys used to round-trip signatures and tags through ONNX
SIGNATURES_METADATA_KEY = "ptq_calib.signatures"
TAGS_METADATA_KEY = "ptq_calib.tags"


def _onnx_dtype_to_numpy(onnx_dtype: int) -> np.dtype:
    try:
        return np.dtype(onnx.helper.tensor_dtype_to_np_dtype(onnx_dtype))
    except KeyError:
        return np.dtype(np.float32)


def _decode_attr(value: Any) -> Any:
    # ONNX hands string attributes back as bytes
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, list):
        return [_decode_attr(v) for v in value]
    return value


def _dim_value(d) -> int | None:
    return d.dim_value if d.HasField("dim_value") else None


def load_onnx_as_model_ir(path: str) -> Graph:
    """Loads an ONNX model into the Model IR, including signatures and tags if present."""
    return model_proto_to_model_ir(onnx.load(path))


def model_proto_to_model_ir(model: onnx.ModelProto) -> Graph:
    g = model.graph

    tensors: Dict[str, Tensor] = {}
    constants: Dict[str, np.ndarray] = {}

    # Extract tensor info and values from initializers (weights, biases)
    for t in g.initializer:
        tensors[t.name] = Tensor(
            name=t.name,
            shape=tuple(t.dims),
            dtype=_onnx_dtype_to_numpy(t.data_type)
        )
        constants[t.name] = numpy_helper.to_array(t)

    # Extract tensor info from inputs and value_info (activations)
    for t_list in [g.input, g.value_info, g.output]:
        for t in t_list:
            if t.name not in tensors:
                ttype = t.type.tensor_type
                if ttype.elem_type == 0: continue # Skip tensors with no type info
                tensors[t.name] = Tensor(
                    name=t.name,
                    shape=tuple(_dim_value(d) for d in ttype.shape.dim),
                    dtype=_onnx_dtype_to_numpy(ttype.elem_type)
                )

    nodes = []
    for n in g.node:
        nodes.append(Node(
            name=n.name or f"{n.op_type}_{n.output[0] if n.output else len(nodes)}",
            op_type=n.op_type,
            inputs=list(n.input),
            outputs=list(n.output),
            attrs={a.name: _decode_attr(onnx.helper.get_attribute_value(a)) for a in n.attribute}
        ))

    initializer_names = [t.name for t in g.initializer]
    inputs = [i.name for i in g.input if i.name not in set(initializer_names)]
    outputs = [o.name for o in g.output]

    graph = Graph(
        nodes=nodes,
        inputs=inputs,
        outputs=outputs,
        initializers=initializer_names,
        tensors=tensors,
        constants=constants,
    )

    metadata = {p.key: p.value for p in model.metadata_props}
    if SIGNATURES_METADATA_KEY in metadata:
        raw = json.loads(metadata[SIGNATURES_METADATA_KEY])
        graph.signatures = {k: SignatureDef.from_dict(v) for k, v in raw.items()}
    else:
        graph.signatures = {DEFAULT_SIGNATURE_KEY: graph.default_signature()}
    if TAGS_METADATA_KEY in metadata:
        graph.tags = set(json.loads(metadata[TAGS_METADATA_KEY]))
    else:
        graph.tags = set(DEFAULT_TAGS)

    return graph
