from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, List, Mapping
from ..config import CalibConfig
from ..calibration.statistics import CalibrationStatistics
from ..errors import MissingStatistics
from ..ir.model_ir import Graph
from ..compiler.passes.assign_ids import get_aggregator_id
from . import viz


def _node_names_by_id(graph: Graph) -> Dict[str, str]:
    return {get_aggregator_id(n): n.name for n in graph.aggregator_nodes()}


def generate_report_json(graph: Graph, statistics: Mapping[str, CalibrationStatistics],
                         diagnostics: List[MissingStatistics], config: CalibConfig,
                         num_batches: int = 0) -> Dict[str, Any]:
    """Generates a JSON-compatible dictionary describing a calibration run."""
    names = _node_names_by_id(graph)
    ranges = []
    for agg_id, stats in sorted(statistics.items()):
        entry = stats.to_dict()
        entry["node"] = names.get(agg_id, agg_id)
        ranges.append(entry)

    return {
        "model": config.model,
        "calibration_method": str(config.calibration_options().calibration_method),
        "signature_keys": list(config.signature_keys),
        "tags": list(config.tags),
        "num_batches": num_batches,
        "num_aggregators": len(names),
        "ranges": ranges,
        "missing_statistics": [
            {"id": d.aggregator_id, "node": d.node_name} for d in diagnostics
        ],
        "config": config.__dict__,
    }


def generate_report(graph: Graph, statistics: Mapping[str, CalibrationStatistics],
                    diagnostics: List[MissingStatistics], config: CalibConfig, num_batches: int = 0):
    """Generates all report artifacts."""
    report_data = generate_report_json(graph, statistics, diagnostics, config, num_batches)
    output_dir = Path(config.report_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    with open(output_dir / "report.json", "w") as f:
        json.dump(report_data, f, indent=4)

    viz.export_range_chart(report_data['ranges'], str(output_dir / "ranges.html"))

    print(viz.export_range_ascii(report_data['ranges']))

    print(f"\nReports generated in {output_dir.absolute()}")
    print(f"Batches run: {report_data['num_batches']}")
    print(f"Aggregators calibrated: {len(report_data['ranges'])}/{report_data['num_aggregators']}")
    if report_data['missing_statistics']:
        print("\nAggregators without statistics:")
        for item in report_data['missing_statistics']:
            print(f"  {item['node']} (id {item['id']})")
