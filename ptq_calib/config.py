from __future__ import annotations
from dataclasses import dataclass, field
from typing import List
import logging
import yaml
from pathlib import Path

from .calibration.statistics import CalibrationOptions
from .ir.model_ir import DEFAULT_SIGNATURE_KEY, DEFAULT_TAGS

logger = logging.getLogger(__name__)


@dataclass
class CalibConfig:
    """Calibration run configuration: defaults, then YAML, then command-line overrides."""
    # Model and outputs
    model: str = ""
    output: str = "out/calibrated.onnx"

    # Config file
    config_file: str = ""

    # Reporting
    report_dir: str = "out/default_run"

    # Representative dataset (.npz, arrays stacked along axis 0)
    dataset: str = ""

    # Graph variant and signatures to calibrate
    signature_keys: List[str] = field(default_factory=lambda: [DEFAULT_SIGNATURE_KEY])
    tags: List[str] = field(default_factory=lambda: list(DEFAULT_TAGS))

    # Calibration method and its parameters
    calibration_method: str = "MIN_MAX"
    initial_num_bins: int = 256
    min_percentile: float = 0.001
    max_percentile: float = 99.999

    # Execution mode: prepare the engine once per signature instead of per batch
    force_graph_mode: bool = False

    # Debug dump instrumentation
    enable_dump: bool = False
    redirect_dump: bool = False

    # Export
    export_dir: str = ""
    source_dir: str = ""

    def calibration_options(self) -> CalibrationOptions:
        return CalibrationOptions(
            calibration_method=self.calibration_method,
            initial_num_bins=self.initial_num_bins,
            min_percentile=self.min_percentile,
            max_percentile=self.max_percentile,
        )

    def update_from_yaml(self, yaml_path: str):
        """Updates config fields from a YAML file."""
        with open(yaml_path, 'r') as f:
            yaml_config = yaml.safe_load(f) or {}
        for key, value in yaml_config.items():
            if hasattr(self, key):
                setattr(self, key, value)
            else:
                logger.warning(f"Ignoring unknown config key '{key}' in {yaml_path}.")

    @classmethod
    def from_args(cls, args) -> CalibConfig:
        """Factory method to create a CalibConfig from parsed argparse arguments."""
        config = cls()

        # 1. Load from YAML config file if provided
        if hasattr(args, 'config') and args.config:
            config.config_file = args.config
            if Path(config.config_file).exists():
                config.update_from_yaml(config.config_file)
            else:
                logger.warning(f"Config file {config.config_file} not found.")

        # 2. Override with command-line arguments
        arg_dict = vars(args)
        for key, value in arg_dict.items():
            if value is not None and hasattr(config, key):
                setattr(config, key, value)

        return config
