from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, Iterator, Mapping, Sequence

import numpy as np

from ..errors import PreconditionViolation

logger = logging.getLogger(__name__)

Sample = Mapping[str, Any]
RepresentativeDataset = Iterable[Sample]


def _is_per_signature_mapping(dataset: Any, signature_keys: Sequence[str]) -> bool:
    return isinstance(dataset, Mapping) and all(k in dataset for k in signature_keys)


def datasets_by_signature(dataset, signature_keys: Sequence[str]) -> Dict[str, RepresentativeDataset]:
    """
    Normalizes a representative dataset into one dataset per signature key.

    A mapping keyed by signature key supplies a dataset per signature. A plain
    iterable is only accepted when exactly one signature key is calibrated.
    """
    if not signature_keys:
        raise PreconditionViolation("At least one signature key is required for calibration.")

    if isinstance(dataset, Mapping):
        if not _is_per_signature_mapping(dataset, signature_keys):
            missing = [k for k in signature_keys if k not in dataset]
            raise PreconditionViolation(f"Representative dataset has no entry for signature(s) {missing}.")
        return {k: dataset[k] for k in signature_keys}

    if len(signature_keys) > 1:
        raise PreconditionViolation(
            "A single representative dataset was given for multiple signatures "
            f"{list(signature_keys)}; provide a mapping from signature key to dataset instead."
        )
    return {signature_keys[0]: dataset}


def _as_arrays(sample: Sample) -> Dict[str, np.ndarray]:
    if not isinstance(sample, Mapping):
        raise PreconditionViolation(
            f"Representative samples must map input keys to values, got {type(sample).__name__}."
        )
    return {k: np.asarray(v) for k, v in sample.items()}


def iter_batches(dataset: RepresentativeDataset) -> Iterator[Dict[str, np.ndarray]]:
    """Lazily turns samples into feeds. Every sample is fed as-is, as one batch."""
    for sample in dataset:
        yield _as_arrays(sample)


def load_npz_dataset(path: str) -> Iterator[Dict[str, np.ndarray]]:
    """Reads a representative dataset from an .npz file.

    Every array in the file is keyed by a signature input key and stacks the
    samples along axis 0.
    """
    with np.load(path) as data:
        arrays = {k: data[k] for k in data.files}
    if not arrays:
        logger.warning(f"Representative dataset {path} is empty.")
        return
    num_samples = {a.shape[0] for a in arrays.values()}
    if len(num_samples) != 1:
        raise PreconditionViolation(f"Arrays in {path} disagree on the number of samples: {sorted(num_samples)}.")
    for i in range(num_samples.pop()):
        yield {k: a[i] for k, a in arrays.items()}
