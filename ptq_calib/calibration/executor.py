from __future__ import annotations
import logging
from typing import Callable, Dict, Iterable, Iterator, List, Sequence, Tuple

import numpy as np

from ..errors import ExecutionFailure, PreconditionViolation
from ..ir.model_ir import Graph
from ..compiler.passes.assign_ids import collect_aggregator_ids, get_aggregator_id
from ..runtime.executor import Feed, GraphExecutor
from .dataset import datasets_by_signature, iter_batches

logger = logging.getLogger(__name__)

Observation = Tuple[str, np.ndarray]


def check_calibration_preconditions(g: Graph, signature_keys: Sequence[str], tags: Iterable[str]):
    """Validates the graph and the requested signatures/tags before any batch runs."""
    if not signature_keys:
        raise PreconditionViolation("At least one signature key is required for calibration.")
    unknown = [k for k in signature_keys if k not in g.signatures]
    if unknown:
        raise PreconditionViolation(f"Signature key(s) {unknown} not found; available: {sorted(g.signatures)}.")
    missing_tags = set(tags) - g.tags
    if missing_tags:
        raise PreconditionViolation(f"Graph tagged {sorted(g.tags)} does not carry tag(s) {sorted(missing_tags)}.")

    g.validate()
    collect_aggregator_ids(g)
    unassigned = [n.name for n in g.aggregator_nodes() if not get_aggregator_id(n)]
    if unassigned:
        raise PreconditionViolation(f"Aggregator node(s) {unassigned} have no id; assign ids first.")


class CalibrationExecutor:
    """Drives representative batches through a graph and reads back what each executed aggregator saw."""

    def __init__(self, executor: GraphExecutor):
        self.executor = executor

    def run(self, g: Graph, signature_keys: Sequence[str], tags: Iterable[str], dataset,
            force_graph_mode: bool = False) -> Iterator[List[Observation]]:
        """
        Returns a lazy iterator over executed batches; each item lists the
        (aggregator id, observed value) pairs read back for that batch.

        Preconditions are checked eagerly. Batches are processed in the order the
        dataset yields them. Any failure in the execution engine is raised
        as ExecutionFailure and ends the run.
        """
        signature_keys = list(signature_keys)
        check_calibration_preconditions(g, signature_keys, tags)
        datasets = datasets_by_signature(dataset, signature_keys)
        return self._iter_observations(g, datasets, force_graph_mode)

    def _iter_observations(self, g: Graph, datasets, force_graph_mode: bool) -> Iterator[List[Observation]]:
        # aggregator id -> tensor produced by the aggregator; it only has a value
        # when the aggregator itself ran in the executed subgraph
        watched: Dict[str, str] = {
            get_aggregator_id(n): n.outputs[0] for n in g.aggregator_nodes() if n.outputs
        }
        fetches = sorted(set(watched.values()))

        for signature_key, dataset_for_signature in datasets.items():
            num_batches = 0
            run_one = self._driver(g, signature_key, fetches, force_graph_mode)
            for feed in iter_batches(dataset_for_signature):
                try:
                    fetched = run_one(feed)
                except Exception as e:
                    raise ExecutionFailure(
                        f"Calibration batch {num_batches} for signature '{signature_key}' failed: {e}"
                    ) from e
                num_batches += 1
                observations = [(agg_id, fetched[t]) for agg_id, t in watched.items() if t in fetched]
                logger.debug(f"[{signature_key}] batch {num_batches}: {len(observations)} observation(s)")
                yield observations
            logger.info(f"Ran {num_batches} calibration batch(es) for signature '{signature_key}'.")

    def _driver(self, g: Graph, signature_key: str, fetches: List[str],
                force_graph_mode: bool) -> Callable[[Feed], Dict[str, np.ndarray]]:
        """
        Graph mode prepares the engine once per signature and reuses the plan for
        every batch. The default mode hands each batch to `run` on its own.
        Both modes feed the same samples unchanged.
        """
        if not force_graph_mode:
            return lambda feed: self.executor.run(g, signature_key, feed, fetches)
        try:
            return self.executor.prepare(g, signature_key, fetches)
        except Exception as e:
            raise ExecutionFailure(f"Preparing signature '{signature_key}' for graph-mode calibration failed: {e}") from e
