from __future__ import annotations
import logging
from enum import Enum
from typing import Dict, Iterable, List, Sequence

from ..errors import MissingStatistics, PreconditionViolation
from ..ir.model_ir import Graph
from ..compiler.passes.assign_ids import get_aggregator_id
from ..compiler.passes.write_back import apply_write_back_pass
from ..runtime.executor import GraphExecutor
from .executor import CalibrationExecutor
from .statistics import CalibrationOptions, CalibrationStatistics, StatisticsAccumulator

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    ANNOTATED = "ANNOTATED"
    EXECUTING = "EXECUTING"
    ACCUMULATING = "ACCUMULATING"
    FINALIZED = "FINALIZED"
    FAILED = "FAILED"

    def __str__(self) -> str:
        return self.value


class CalibrationSession:
    """One calibration run over an id-assigned graph.

    Statistics always start empty: a session never extends ranges left in the
    graph by an earlier run. A session runs once; if any batch fails, all
    accumulated statistics are discarded and the graph is left untouched.
    """

    def __init__(self, graph: Graph, executor: GraphExecutor, options: CalibrationOptions | None = None):
        self.graph = graph
        self.options = options or CalibrationOptions()
        self.accumulator = StatisticsAccumulator(self.options)
        self.state = SessionState.ANNOTATED
        self.statistics: Dict[str, CalibrationStatistics] = {}
        self.diagnostics: List[MissingStatistics] = []
        self.num_batches = 0
        self._calibration_executor = CalibrationExecutor(executor)

    def run(self, signature_keys: Sequence[str], tags: Iterable[str], dataset,
            force_graph_mode: bool = False) -> Graph:
        if self.state != SessionState.ANNOTATED:
            raise PreconditionViolation(f"Calibration session already ran (state {self.state}); start a new session.")

        completed = False
        try:
            batches = self._calibration_executor.run(self.graph, signature_keys, tags, dataset, force_graph_mode)
            self.state = SessionState.EXECUTING
            for observations in batches:
                self.state = SessionState.ACCUMULATING
                for aggregator_id, value in observations:
                    self.accumulator.update(aggregator_id, value)
                self.num_batches += 1
                self.state = SessionState.EXECUTING
            completed = True
        finally:
            if not completed:
                self.accumulator.reset()
                self.state = SessionState.FAILED
                logger.error(f"Calibration aborted after {self.num_batches} batch(es); statistics discarded.")

        self._finalize()
        apply_write_back_pass(self.graph, self.statistics)
        self.state = SessionState.FINALIZED
        logger.info(
            f"Calibration finished: {self.num_batches} batch(es), {len(self.statistics)} aggregator(s) "
            f"calibrated, {len(self.diagnostics)} without statistics."
        )
        return self.graph

    def _finalize(self):
        for node in self.graph.aggregator_nodes():
            aggregator_id = get_aggregator_id(node)
            try:
                self.statistics[aggregator_id] = self.accumulator.finalize(aggregator_id)
            except MissingStatistics:
                diagnostic = MissingStatistics(aggregator_id, node.name)
                self.diagnostics.append(diagnostic)
                logger.warning(f"{diagnostic} Leaving the node unannotated.")


def run_calibration(g: Graph, executor: GraphExecutor, signature_keys: Sequence[str], tags: Iterable[str],
                    dataset, options: CalibrationOptions | None = None,
                    force_graph_mode: bool = False) -> CalibrationSession:
    """Runs a fresh calibration session and returns it (graph, statistics and diagnostics)."""
    session = CalibrationSession(g, executor, options)
    session.run(signature_keys, tags, dataset, force_graph_mode)
    return session
