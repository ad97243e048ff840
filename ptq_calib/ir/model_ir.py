from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Dict, Any, Tuple, Set, Optional

# ONNX uses numpy-like dtypes
import numpy as np

from ..errors import PreconditionViolation
from .opcode import OpType

DEFAULT_SIGNATURE_KEY = "serving_default"
DEFAULT_TAGS = ("serve",)


@dataclass
class Tensor:
    name: str
    shape: Tuple[Optional[int], ...]
    dtype: np.dtype

    def is_compatible(self, shape: Tuple[int, ...]) -> bool:
        """Checks a concrete shape against this tensor's declared shape.

        Dimensions declared as 0, None or negative are dynamic and match anything.
        An empty declared shape means the shape is unknown.
        """
        if not self.shape:
            return True
        if len(shape) != len(self.shape):
            return False
        return all(d is None or d <= 0 or d == s for d, s in zip(self.shape, shape))


@dataclass
class Node:
    name: str
    op_type: str
    inputs: List[str]
    outputs: List[str]
    attrs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SignatureDef:
    """Maps signature keys to tensor names in the graph."""
    inputs: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"inputs": dict(self.inputs), "outputs": dict(self.outputs)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SignatureDef:
        return cls(inputs=dict(d.get("inputs", {})), outputs=dict(d.get("outputs", {})))


@dataclass
class Graph:
    nodes: List[Node]
    inputs: List[str]
    outputs: List[str]
    initializers: List[str] = field(default_factory=list)
    tensors: Dict[str, Tensor] = field(default_factory=dict)
    constants: Dict[str, np.ndarray] = field(default_factory=dict)
    signatures: Dict[str, SignatureDef] = field(default_factory=dict)
    tags: Set[str] = field(default_factory=set)

    def node_map(self) -> Dict[str, Node]:
        return {n.name: n for n in self.nodes}

    def nodes_of_type(self, op_type: str) -> List[Node]:
        return [n for n in self.nodes if n.op_type == op_type]

    def aggregator_nodes(self) -> List[Node]:
        return self.nodes_of_type(OpType.CUSTOM_AGGREGATOR)

    def dump_nodes(self) -> List[Node]:
        return self.nodes_of_type(OpType.DUMP_TENSOR)

    def producer_map(self) -> Dict[str, Node]:
        """Maps each tensor name to the node producing it."""
        producers: Dict[str, Node] = {}
        for n in self.nodes:
            for t in n.outputs:
                producers[t] = n
        return producers

    def default_signature(self) -> SignatureDef:
        return SignatureDef(
            inputs={name: name for name in self.inputs},
            outputs={name: name for name in self.outputs},
        )

    def validate(self):
        """Raises PreconditionViolation if node names are not unique."""
        seen = set()
        for n in self.nodes:
            if n.name in seen:
                raise PreconditionViolation(f"Duplicate node name '{n.name}' in graph.")
            seen.add(n.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputs": self.inputs,
            "outputs": self.outputs,
            "initializers": self.initializers,
            "nodes": [vars(n) for n in self.nodes],
            "tensors": {k: dict(name=v.name, shape=v.shape, dtype=str(v.dtype)) for k, v in self.tensors.items()},
            "signatures": {k: s.to_dict() for k, s in self.signatures.items()},
            "tags": sorted(self.tags),
        }
