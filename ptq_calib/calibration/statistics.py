"""
Calibration statistics: per-aggregator running summaries and their merge rules.

Every summary kind obeys the same contract:
    - ``update(values)`` folds one observation (a flat, finite float64 array)
      into the running state.
    - ``merge(other)`` folds another summary of the same kind in. Merging is
      commutative and associative, so batches can be split across workers and
      the shard-local accumulators merged at the end without changing the
      final result.
    - ``calibrated_range()`` returns the (min, max) range that is written back
      into the graph.

Supported methods:
    MIN_MAX                 global min / max over all observations.
    AVERAGE_MIN_MAX         mean of per-observation min and max.
    HISTOGRAM_PERCENTILE    fixed-resolution histogram; range is taken at
                            [min_percentile, max_percentile] of the counts.

The histogram uses power-of-two bin widths on a grid anchored at zero, so
widening the histogram only ever merges whole bins. Counts are therefore exact
and independent of the order in which observations arrive.
"""

from __future__ import annotations

import copy
import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..errors import MissingStatistics, PreconditionViolation


class CalibrationMethod(str, Enum):
    MIN_MAX = "MIN_MAX"
    AVERAGE_MIN_MAX = "AVERAGE_MIN_MAX"
    HISTOGRAM_PERCENTILE = "HISTOGRAM_PERCENTILE"
    HISTOGRAM_MSE_BRUTEFORCE = "HISTOGRAM_MSE_BRUTEFORCE"
    HISTOGRAM_MSE_MAX_FREQUENCY = "HISTOGRAM_MSE_MAX_FREQUENCY"
    HISTOGRAM_MSE_SYMMETRIC = "HISTOGRAM_MSE_SYMMETRIC"

    def __str__(self) -> str:
        return self.value


SUPPORTED_METHODS = (
    CalibrationMethod.MIN_MAX,
    CalibrationMethod.AVERAGE_MIN_MAX,
    CalibrationMethod.HISTOGRAM_PERCENTILE,
)

# Bin width never drops below this fraction of the largest magnitude seen,
# which keeps bin indices well inside int64.
_MIN_RELATIVE_BIN_WIDTH = 2.0 ** -40
_MIN_ABSOLUTE_BIN_WIDTH = 2.0 ** -64


@dataclass
class CalibrationOptions:
    calibration_method: CalibrationMethod = CalibrationMethod.MIN_MAX
    initial_num_bins: int = 256
    min_percentile: float = 0.001
    max_percentile: float = 99.999

    def __post_init__(self):
        try:
            self.calibration_method = CalibrationMethod(str(self.calibration_method).upper())
        except ValueError as e:
            raise PreconditionViolation(f"Unknown calibration method '{self.calibration_method}'.") from e
        if self.calibration_method not in SUPPORTED_METHODS:
            raise PreconditionViolation(
                f"Calibration method '{self.calibration_method}' is not supported; "
                f"choose one of {[str(m) for m in SUPPORTED_METHODS]}."
            )
        if self.initial_num_bins < 1:
            raise PreconditionViolation(f"initial_num_bins must be positive, got {self.initial_num_bins}.")
        if not 0.0 <= self.min_percentile < self.max_percentile <= 100.0:
            raise PreconditionViolation(
                f"Percentiles must satisfy 0 <= min < max <= 100, got "
                f"min={self.min_percentile}, max={self.max_percentile}."
            )


@dataclass
class HistogramStatistics:
    bin_width: float
    lower_bound: float
    counts: np.ndarray


@dataclass
class CalibrationStatistics:
    """Finalized statistics for one aggregator id."""
    id: str
    method: CalibrationMethod
    min: float
    max: float
    observed_min: float
    observed_max: float
    num_samples: int
    histogram: Optional[HistogramStatistics] = None

    def to_dict(self) -> Dict:
        d = {
            "id": self.id,
            "method": str(self.method),
            "min": self.min,
            "max": self.max,
            "observed_min": self.observed_min,
            "observed_max": self.observed_max,
            "num_samples": self.num_samples,
        }
        if self.histogram is not None:
            d["histogram"] = {
                "bin_width": self.histogram.bin_width,
                "lower_bound": self.histogram.lower_bound,
                "num_bins": int(self.histogram.counts.size),
            }
        return d


class _CompensatedSum:
    """Neumaier summation, keeps long sums of similar magnitudes accurate."""

    def __init__(self):
        self.total = 0.0
        self.compensation = 0.0

    def add(self, value: float):
        t = self.total + value
        if abs(self.total) >= abs(value):
            self.compensation += (self.total - t) + value
        else:
            self.compensation += (value - t) + self.total
        self.total = t

    def merge(self, other: _CompensatedSum):
        self.add(other.total)
        self.add(other.compensation)

    @property
    def value(self) -> float:
        return self.total + self.compensation


class _MinMaxSummary:
    method = CalibrationMethod.MIN_MAX

    def __init__(self, options: CalibrationOptions):
        self.options = options
        self.min = math.inf
        self.max = -math.inf
        self.num_samples = 0

    @property
    def is_empty(self) -> bool:
        return self.num_samples == 0

    def update(self, values: np.ndarray):
        self.min = min(self.min, float(values.min()))
        self.max = max(self.max, float(values.max()))
        self.num_samples += 1

    def merge(self, other: _MinMaxSummary):
        self.min = min(self.min, other.min)
        self.max = max(self.max, other.max)
        self.num_samples += other.num_samples

    def calibrated_range(self) -> Tuple[float, float]:
        return self.min, self.max

    def histogram(self) -> Optional[HistogramStatistics]:
        return None


class _AverageMinMaxSummary(_MinMaxSummary):
    method = CalibrationMethod.AVERAGE_MIN_MAX

    def __init__(self, options: CalibrationOptions):
        super().__init__(options)
        self.min_sum = _CompensatedSum()
        self.max_sum = _CompensatedSum()

    def update(self, values: np.ndarray):
        super().update(values)
        self.min_sum.add(float(values.min()))
        self.max_sum.add(float(values.max()))

    def merge(self, other: _AverageMinMaxSummary):
        super().merge(other)
        self.min_sum.merge(other.min_sum)
        self.max_sum.merge(other.max_sum)

    def calibrated_range(self) -> Tuple[float, float]:
        return self.min_sum.value / self.num_samples, self.max_sum.value / self.num_samples


def _next_power_of_two(x: float) -> float:
    """Smallest power of two >= x, for x > 0."""
    mantissa, exponent = math.frexp(x)
    if mantissa == 0.5:
        return x
    return math.ldexp(1.0, exponent)


def _bins_needed(lo: float, hi: float, width: float) -> int:
    return math.floor(hi / width) - math.floor(lo / width) + 1


def _bin_width_for(lo: float, hi: float, num_bins: int, floor_width: float = 0.0) -> float:
    """Smallest power-of-two width >= floor_width that covers [lo, hi] in num_bins bins."""
    lower = max(floor_width, max(abs(lo), abs(hi)) * _MIN_RELATIVE_BIN_WIDTH, _MIN_ABSOLUTE_BIN_WIDTH)
    if hi > lo:
        lower = max(lower, (hi - lo) / num_bins)
    width = _next_power_of_two(lower)
    while _bins_needed(lo, hi, width) > num_bins:
        width *= 2.0
    return width


class _HistogramSummary(_MinMaxSummary):
    method = CalibrationMethod.HISTOGRAM_PERCENTILE

    def __init__(self, options: CalibrationOptions):
        super().__init__(options)
        self.bin_width: Optional[float] = None
        self.lower_index = 0
        self.counts = np.zeros(0, dtype=np.int64)

    def _rebin(self, width: float):
        """Coarsens the histogram to a wider power-of-two width."""
        if self.bin_width is None or width == self.bin_width:
            self.bin_width = width
            return
        factor = int(round(width / self.bin_width))
        old_indices = self.lower_index + np.arange(self.counts.size, dtype=np.int64)
        new_lower = self.lower_index // factor
        new_counts = np.zeros((old_indices[-1] // factor) - new_lower + 1, dtype=np.int64)
        np.add.at(new_counts, old_indices // factor - new_lower, self.counts)
        self.bin_width = width
        self.lower_index = new_lower
        self.counts = new_counts

    def _add_counts(self, lower_index: int, counts: np.ndarray):
        if self.counts.size == 0:
            self.lower_index, self.counts = lower_index, counts.copy()
            return
        new_lower = min(self.lower_index, lower_index)
        new_upper = max(self.lower_index + self.counts.size, lower_index + counts.size)
        combined = np.zeros(new_upper - new_lower, dtype=np.int64)
        offset = self.lower_index - new_lower
        combined[offset:offset + self.counts.size] += self.counts
        offset = lower_index - new_lower
        combined[offset:offset + counts.size] += counts
        self.lower_index, self.counts = new_lower, combined

    def update(self, values: np.ndarray):
        super().update(values)
        width = _bin_width_for(self.min, self.max, self.options.initial_num_bins, self.bin_width or 0.0)
        self._rebin(width)
        indices = np.floor(values / width).astype(np.int64)
        lower = int(indices.min())
        self._add_counts(lower, np.bincount(indices - lower).astype(np.int64))

    def merge(self, other: _HistogramSummary):
        if other.is_empty:
            return
        super().merge(other)
        floor_width = max(self.bin_width or 0.0, other.bin_width)
        width = _bin_width_for(self.min, self.max, self.options.initial_num_bins, floor_width)
        self._rebin(width)
        incoming = copy.deepcopy(other)
        incoming._rebin(width)
        self._add_counts(incoming.lower_index, incoming.counts)

    def _percentile(self, q: float) -> float:
        cdf = np.cumsum(self.counts)
        target = q / 100.0 * float(cdf[-1])
        i = min(int(np.searchsorted(cdf, target, side="left")), self.counts.size - 1)
        before = float(cdf[i - 1]) if i > 0 else 0.0
        in_bin = float(self.counts[i])
        frac = (target - before) / in_bin if in_bin > 0 else 0.0
        return (self.lower_index + i + frac) * self.bin_width

    def calibrated_range(self) -> Tuple[float, float]:
        lo = self._percentile(self.options.min_percentile)
        hi = self._percentile(self.options.max_percentile)
        # interpolation can overshoot the observed extremes by up to one bin
        lo = min(max(lo, self.min), self.max)
        hi = max(min(hi, self.max), self.min)
        return lo, hi

    def histogram(self) -> Optional[HistogramStatistics]:
        return HistogramStatistics(
            bin_width=self.bin_width,
            lower_bound=self.lower_index * self.bin_width,
            counts=self.counts.copy(),
        )


_SUMMARY_TYPES = {
    CalibrationMethod.MIN_MAX: _MinMaxSummary,
    CalibrationMethod.AVERAGE_MIN_MAX: _AverageMinMaxSummary,
    CalibrationMethod.HISTOGRAM_PERCENTILE: _HistogramSummary,
}


def _prepare_observation(observation) -> np.ndarray:
    values = np.asarray(observation, dtype=np.float64).reshape(-1)
    return values[np.isfinite(values)]


class StatisticsAccumulator:
    """Keeps one running summary per aggregator id.

    Summaries are created lazily on the first non-empty observation for an id.
    All mutation goes through one lock, so several workers may feed the same
    accumulator; alternatively each worker can own an accumulator and the
    shards can be combined with ``merge``.
    """

    def __init__(self, options: CalibrationOptions | None = None):
        self.options = options or CalibrationOptions()
        self._summaries: Dict[str, _MinMaxSummary] = {}
        self._lock = threading.Lock()

    def __contains__(self, aggregator_id: str) -> bool:
        return aggregator_id in self._summaries

    def __len__(self) -> int:
        return len(self._summaries)

    def ids(self) -> List[str]:
        return sorted(self._summaries)

    def update(self, aggregator_id: str, observation):
        values = _prepare_observation(observation)
        if values.size == 0:
            return
        with self._lock:
            summary = self._summaries.get(aggregator_id)
            if summary is None:
                summary = _SUMMARY_TYPES[self.options.calibration_method](self.options)
                self._summaries[aggregator_id] = summary
            summary.update(values)

    def merge(self, other: StatisticsAccumulator):
        """Folds a shard-local accumulator into this one."""
        if other.options != self.options:
            raise PreconditionViolation("Cannot merge accumulators configured with different calibration options.")
        with other._lock:
            incoming = copy.deepcopy(other._summaries)
        with self._lock:
            for aggregator_id, summary in incoming.items():
                if aggregator_id in self._summaries:
                    self._summaries[aggregator_id].merge(summary)
                else:
                    self._summaries[aggregator_id] = summary

    def finalize(self, aggregator_id: str) -> CalibrationStatistics:
        with self._lock:
            summary = self._summaries.get(aggregator_id)
            if summary is None or summary.is_empty:
                raise MissingStatistics(aggregator_id)
            lo, hi = summary.calibrated_range()
            return CalibrationStatistics(
                id=aggregator_id,
                method=summary.method,
                min=float(lo),
                max=float(hi),
                observed_min=summary.min,
                observed_max=summary.max,
                num_samples=summary.num_samples,
                histogram=summary.histogram(),
            )

    def reset(self):
        with self._lock:
            self._summaries.clear()

    # the lock cannot be deep-copied or pickled
    def __deepcopy__(self, memo):
        clone = StatisticsAccumulator(copy.deepcopy(self.options, memo))
        with self._lock:
            clone._summaries = copy.deepcopy(self._summaries, memo)
        return clone
