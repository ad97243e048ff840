from __future__ import annotations
import logging
from typing import Mapping

from ...ir.model_ir import Graph
from ...calibration.statistics import CalibrationStatistics
from .assign_ids import get_aggregator_id

logger = logging.getLogger(__name__)


def apply_write_back_pass(g: Graph, statistics: Mapping[str, CalibrationStatistics]) -> Graph:
    """Writes finalized min/max ranges into the matching CustomAggregator nodes.

    Nodes without a record (or without an id) are left exactly as they were.
    """
    annotated = 0
    for node in g.aggregator_nodes():
        record = statistics.get(get_aggregator_id(node))
        if record is None:
            continue
        node.attrs["min"] = float(record.min)
        node.attrs["max"] = float(record.max)
        annotated += 1

    logger.info(f"Annotated {annotated} aggregator node(s) with calibration ranges.")
    return g
