"""
The five public operations of the calibration stage.

`QuantizationFunctionLibrary` is the narrow interface seen by callers (a CLI, a
bridge from another runtime, tests). `DefaultFunctionLibrary` implements it on
top of the graph passes and the calibration session, with the execution engine
and the bundle writer injected as collaborators.
"""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Mapping, Sequence

from .errors import MissingStatistics, PreconditionViolation
from .ir.model_ir import Graph, SignatureDef
from .compiler.passes.assign_ids import apply_assign_ids_pass, collect_aggregator_ids, get_aggregator_id
from .compiler.passes.dump import apply_enable_dump_pass, apply_redirect_dump_pass
from .calibration.session import CalibrationSession, run_calibration
from .calibration.statistics import CalibrationOptions
from .runtime.executor import GraphExecutor, NumpyGraphExecutor
from .export.bundle import BundleWriter, DirectoryBundleWriter, ModelBundle, collect_asset_paths

logger = logging.getLogger(__name__)


class QuantizationFunctionLibrary(ABC):

    @abstractmethod
    def assign_ids_to_aggregator_ops(self, graph: Graph) -> Graph:
        ...

    @abstractmethod
    def run_calibration(self, model_path: str, signature_keys: Sequence[str], tags: Iterable[str],
                        graph: Graph, calibration_options: CalibrationOptions,
                        force_graph_mode: bool, dataset) -> Graph:
        ...

    @abstractmethod
    def enable_dump_instrumentation(self, graph: Graph) -> Graph:
        ...

    @abstractmethod
    def redirect_dump_output(self, graph: Graph) -> Graph:
        ...

    @abstractmethod
    def export_model(self, dst_path: str, graph: Graph, src_path: str, tags: Iterable[str],
                     signature_map: Mapping[str, SignatureDef]) -> ModelBundle:
        ...


def check_export_preconditions(g: Graph, tags: Iterable[str], signature_map: Mapping[str, SignatureDef]):
    if not tags:
        raise PreconditionViolation("At least one tag is required to export a model bundle.")
    if not signature_map:
        raise PreconditionViolation("At least one signature is required to export a model bundle.")
    g.validate()
    collect_aggregator_ids(g)
    unassigned = [n.name for n in g.aggregator_nodes() if not get_aggregator_id(n)]
    if unassigned:
        raise PreconditionViolation(f"Aggregator node(s) {unassigned} have no id.")

    known = set(g.tensors) | set(g.inputs) | set(g.outputs) | set(g.producer_map())
    for key, signature in signature_map.items():
        for tensor_name in list(signature.inputs.values()) + list(signature.outputs.values()):
            if tensor_name not in known:
                raise PreconditionViolation(f"Signature '{key}' references unknown tensor '{tensor_name}'.")


class DefaultFunctionLibrary(QuantizationFunctionLibrary):

    def __init__(self, executor: GraphExecutor | None = None, writer: BundleWriter | None = None):
        self.executor = executor or NumpyGraphExecutor()
        self.writer = writer or DirectoryBundleWriter()
        self.last_session: CalibrationSession | None = None

    @property
    def last_diagnostics(self) -> List[MissingStatistics]:
        return self.last_session.diagnostics if self.last_session is not None else []

    def assign_ids_to_aggregator_ops(self, graph: Graph) -> Graph:
        return apply_assign_ids_pass(graph)

    def run_calibration(self, model_path: str, signature_keys: Sequence[str], tags: Iterable[str],
                        graph: Graph, calibration_options: CalibrationOptions | None = None,
                        force_graph_mode: bool = False, dataset=()) -> Graph:
        logger.info(f"Calibrating {model_path or '<in-memory graph>'} for signature(s) {list(signature_keys)}")
        self.last_session = None
        self.last_session = run_calibration(
            graph, self.executor, signature_keys, tags, dataset,
            options=calibration_options, force_graph_mode=force_graph_mode,
        )
        return self.last_session.graph

    def enable_dump_instrumentation(self, graph: Graph) -> Graph:
        return apply_enable_dump_pass(graph)

    def redirect_dump_output(self, graph: Graph) -> Graph:
        return apply_redirect_dump_pass(graph)

    def export_model(self, dst_path: str, graph: Graph, src_path: str, tags: Iterable[str],
                     signature_map: Mapping[str, SignatureDef]) -> ModelBundle:
        tags = frozenset(tags)
        check_export_preconditions(graph, tags, signature_map)
        bundle = ModelBundle(
            graph=graph,
            signatures=dict(signature_map),
            tags=tags,
            source_path=src_path or "",
            asset_paths=collect_asset_paths(src_path),
        )
        self.writer.write(bundle, dst_path)
        return bundle
