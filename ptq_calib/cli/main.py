from __future__ import annotations
import argparse
import os
import sys
from ..ir.onnx_importer import load_onnx_as_model_ir
from ..ir.onnx_exporter import save_model_ir_as_onnx
from ..calibration.dataset import load_npz_dataset
from ..calibration.statistics import SUPPORTED_METHODS
from ..config import CalibConfig
from ..errors import CalibrationError
from ..library import DefaultFunctionLibrary
from ..utils.logging import get_logger
from ..utils.reporting import generate_report

logger = get_logger("ptq-calib")


def _save(graph, path: str):
    if os.path.dirname(path):
        os.makedirs(os.path.dirname(path), exist_ok=True)
    save_model_ir_as_onnx(graph, path)


def cmd_assign_ids(args):
    """Handles the 'assign-ids' command."""
    library = DefaultFunctionLibrary()
    graph = library.assign_ids_to_aggregator_ops(load_onnx_as_model_ir(args.model))
    _save(graph, args.output)
    print(f"[OK] Aggregator ids assigned, written to {args.output}")


def cmd_calibrate(args):
    """Handles the 'calibrate' command."""
    config = CalibConfig.from_args(args)

    print("--- Calibration Configuration ---")
    print(config)
    print("---------------------------------")

    if not config.model:
        raise CalibrationError("No model given on the command line or in the config file.")

    library = DefaultFunctionLibrary()
    graph = load_onnx_as_model_ir(config.model)
    graph = library.assign_ids_to_aggregator_ops(graph)

    dataset = load_npz_dataset(config.dataset) if config.dataset else ()
    graph = library.run_calibration(
        config.model,
        config.signature_keys,
        config.tags,
        graph,
        config.calibration_options(),
        config.force_graph_mode,
        dataset,
    )

    if config.enable_dump:
        graph = library.enable_dump_instrumentation(graph)
    if config.redirect_dump:
        graph = library.redirect_dump_output(graph)

    _save(graph, config.output)

    session = library.last_session
    generate_report(graph, session.statistics, session.diagnostics, config, session.num_batches)

    if config.export_dir:
        library.export_model(config.export_dir, graph, config.source_dir,
                             config.tags, graph.signatures)

    print(f"[OK] Calibrated model written to {config.output}")


def cmd_export(args):
    """Handles the 'export' command."""
    library = DefaultFunctionLibrary()
    graph = load_onnx_as_model_ir(args.model)
    tags = args.tags or sorted(graph.tags)
    library.export_model(args.destination, graph, args.src, tags, graph.signatures)
    print(f"[OK] Model bundle exported to {args.destination}")


def build_parser():
    p = argparse.ArgumentParser(
        prog="ptq-calib",
        description="Post-training quantization calibration and export",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    # --- Assign IDs Command ---
    pa = sub.add_parser("assign-ids", help="Assign unique ids to CustomAggregator nodes",
                        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    pa.add_argument("model", help="Path to instrumented ONNX model")
    pa.add_argument("-o", "--output", default="out/with_ids.onnx",
                    help="Output path for the ONNX model")
    pa.set_defaults(func=cmd_assign_ids)

    # --- Calibrate Command ---
    pc = sub.add_parser("calibrate", help="Run calibration and write ranges into the graph",
                        formatter_class=argparse.ArgumentDefaultsHelpFormatter)

    # Config file
    pc.add_argument("-c", "--config", type=str, default=None,
                    help="Path to YAML config file to override defaults")

    # Core args (set default=None to allow override from YAML)
    pc.add_argument("model", nargs='?', default=None,
                    help="Path to instrumented ONNX model (optional if specified in config)")
    pc.add_argument("-o", "--output", type=str, default=None,
                    help="Output path for the calibrated ONNX model")
    pc.add_argument("--dataset", type=str, default=None,
                    help="Representative dataset (.npz, one array per input key)")
    pc.add_argument("--signature-keys", type=str, nargs='+', default=None, dest="signature_keys",
                    help="Signatures to calibrate")
    pc.add_argument("--tags", type=str, nargs='+', default=None,
                    help="Tags identifying the graph variant")
    pc.add_argument("--report", type=str, default=None, dest="report_dir",
                    help="Directory to save calibration reports")

    method_group = pc.add_argument_group('Calibration Method Arguments')
    method_group.add_argument("--method", type=str, default=None, dest="calibration_method",
                              choices=[str(m) for m in SUPPORTED_METHODS],
                              help="Calibration method")
    method_group.add_argument("--num-bins", type=int, default=None, dest="initial_num_bins",
                              help="Histogram resolution for percentile calibration")
    method_group.add_argument("--min-percentile", type=float, default=None, dest="min_percentile")
    method_group.add_argument("--max-percentile", type=float, default=None, dest="max_percentile")
    method_group.add_argument("--force-graph-mode", action="store_true", default=None, dest="force_graph_mode",
                              help="Prepare the execution plan once per signature and reuse it for every batch")

    dump_group = pc.add_argument_group('Dump Instrumentation Arguments')
    dump_group.add_argument("--enable-dump", action="store_true", default=None, dest="enable_dump",
                            help="Enable DumpTensor nodes in the calibrated graph")
    dump_group.add_argument("--redirect-dump", action="store_true", default=None, dest="redirect_dump",
                            help="Point DumpTensor nodes at the quantized dump file")

    export_group = pc.add_argument_group('Export Arguments')
    export_group.add_argument("--export-dir", type=str, default=None, dest="export_dir",
                              help="Also export a model bundle to this directory")
    export_group.add_argument("--source-dir", type=str, default=None, dest="source_dir",
                              help="Source model directory holding assets/")

    pc.set_defaults(func=cmd_calibrate)

    # --- Export Command ---
    pe = sub.add_parser("export", help="Export a calibrated ONNX model as a model bundle",
                        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    pe.add_argument("model", help="Path to calibrated ONNX model")
    pe.add_argument("destination", help="Bundle output directory")
    pe.add_argument("--src", type=str, default="", help="Source model directory holding assets/")
    pe.add_argument("--tags", type=str, nargs='+', default=None,
                    help="Tags for the bundle (defaults to the model's tags)")
    pe.set_defaults(func=cmd_export)

    return p


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except CalibrationError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
