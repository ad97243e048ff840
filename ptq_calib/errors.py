from __future__ import annotations


class CalibrationError(Exception):
    """Base class for every error raised by the calibration stage."""


class PreconditionViolation(CalibrationError, ValueError):
    """Malformed graph or missing required input. Fatal, never retried."""


class ExecutionFailure(CalibrationError, RuntimeError):
    """The execution engine failed while running a calibration batch."""


class MissingStatistics(CalibrationError):
    """An aggregator id never received an observation.

    This is a soft condition: the node is left unannotated and the error is
    recorded as a diagnostic instead of aborting the run.
    """

    def __init__(self, aggregator_id: str, node_name: str | None = None):
        self.aggregator_id = aggregator_id
        self.node_name = node_name
        where = f" (node '{node_name}')" if node_name else ""
        super().__init__(f"No calibration statistics collected for aggregator id '{aggregator_id}'{where}.")


class ExportFailure(CalibrationError, OSError):
    """The bundle writer could not persist the model bundle."""
