from __future__ import annotations
import logging
import os
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Mapping, Sequence

import numpy as np

from ..ir.model_ir import Graph, Node, SignatureDef
from ..compiler.passes.dump import UNQUANTIZED_DUMP_FILE_NAME
from .kernels import KERNELS

logger = logging.getLogger(__name__)

Feed = Mapping[str, np.ndarray]
PreparedRun = Callable[[Feed], Dict[str, np.ndarray]]


class GraphExecutor(ABC):
    """Runs one feed through a graph and reads back tensor values."""

    @abstractmethod
    def run(self, graph: Graph, signature_key: str, feed: Feed,
            fetches: Sequence[str]) -> Dict[str, np.ndarray]:
        """
        Executes `graph` for `signature_key` with `feed` bound to the signature inputs.

        Returns the values of the requested `fetches` (tensor names) that were computed
        while producing the signature outputs; tensors outside the executed subgraph are
        simply absent from the result.
        """

    def prepare(self, graph: Graph, signature_key: str, fetches: Sequence[str]) -> PreparedRun:
        """
        Binds graph, signature and fetches once and returns a callable that runs
        one feed. Engines that can build an execution plan ahead of time override
        this; the default simply defers to `run` for every feed.
        """
        return lambda feed: self.run(graph, signature_key, feed, fetches)


class NumpyGraphExecutor(GraphExecutor):
    """A small reference interpreter that evaluates graphs with numpy kernels."""

    def run(self, graph: Graph, signature_key: str, feed: Feed,
            fetches: Sequence[str]) -> Dict[str, np.ndarray]:
        signature = self._signature(graph, signature_key)
        plan = self._plan(graph, signature)
        return self._execute(graph, signature_key, signature, plan, feed, fetches)

    def prepare(self, graph: Graph, signature_key: str, fetches: Sequence[str]) -> PreparedRun:
        signature = self._signature(graph, signature_key)
        plan = self._plan(graph, signature)
        fetches = list(fetches)
        logger.debug(f"Prepared '{signature_key}': {len(plan)} of {len(graph.nodes)} node(s) in the plan")
        return lambda feed: self._execute(graph, signature_key, signature, plan, feed, fetches)

    @staticmethod
    def _signature(graph: Graph, signature_key: str) -> SignatureDef:
        try:
            return graph.signatures[signature_key]
        except KeyError as e:
            raise ValueError(f"Signature '{signature_key}' not found in graph.") from e

    def _plan(self, graph: Graph, signature: SignatureDef) -> List[Node]:
        """Nodes needed for the signature outputs, in graph order."""
        required = self._required_nodes(graph, signature.outputs.values())
        return [n for n in graph.nodes if n.name in required]

    def _execute(self, graph: Graph, signature_key: str, signature: SignatureDef, plan: List[Node],
                 feed: Feed, fetches: Sequence[str]) -> Dict[str, np.ndarray]:
        values: Dict[str, np.ndarray] = {k: np.asarray(v) for k, v in graph.constants.items()}
        for key, tensor_name in signature.inputs.items():
            if key not in feed:
                raise ValueError(f"Missing input '{key}' for signature '{signature_key}'.")
            arr = np.asarray(feed[key])
            declared = graph.tensors.get(tensor_name)
            if declared is not None:
                if not declared.is_compatible(arr.shape):
                    raise ValueError(
                        f"Input '{key}' has shape {arr.shape}, incompatible with declared shape {declared.shape}."
                    )
                arr = arr.astype(declared.dtype, copy=False)
            values[tensor_name] = arr

        for node in plan:
            self._execute_node(node, values)

        for node in graph.dump_nodes():
            if node.inputs and node.inputs[0] in values:
                self._dump(node, values[node.inputs[0]])

        return {name: values[name] for name in fetches if name in values}

    @staticmethod
    def _required_nodes(graph: Graph, targets: Iterable[str]) -> set:
        """Collects the names of all nodes needed to produce `targets`."""
        producers = graph.producer_map()
        required = set()
        stack: List[str] = list(targets)
        while stack:
            producer = producers.get(stack.pop())
            if producer is None or producer.name in required:
                continue
            required.add(producer.name)
            stack.extend(producer.inputs)
        return required

    @staticmethod
    def _execute_node(node: Node, values: Dict[str, np.ndarray]):
        kernel = KERNELS.get(str(node.op_type))
        if kernel is None:
            raise ValueError(f"Unsupported op_type '{node.op_type}' in node '{node.name}'.")
        try:
            inputs = [values[t] for t in node.inputs]
        except KeyError as e:
            raise ValueError(f"Error executing node {node.name}: Tensor {e} was not computed.") from e
        for name, value in zip(node.outputs, kernel(inputs, node.attrs)):
            values[name] = value

    @staticmethod
    def _dump(node: Node, value: np.ndarray):
        if not node.attrs.get("enabled", False):
            return
        log_dir = node.attrs.get("log_dir_path") or "."
        file_name = node.attrs.get("file_name") or UNQUANTIZED_DUMP_FILE_NAME
        os.makedirs(log_dir, exist_ok=True)
        path = os.path.join(log_dir, file_name)
        np.save(path, value)
        logger.debug(f"Dumped tensor '{node.inputs[0]}' from node '{node.name}' to {path}")
