from pathlib import Path

import numpy as np
import pytest

from ptq_calib.calibration.dataset import (
    datasets_by_signature,
    iter_batches,
    load_npz_dataset,
)
from ptq_calib.errors import PreconditionViolation


def test_plain_dataset_for_single_signature():
    samples = [{"x": [1.0]}]

    assert datasets_by_signature(samples, ["serving_default"]) == {"serving_default": samples}


def test_plain_dataset_for_multiple_signatures_is_rejected():
    with pytest.raises(PreconditionViolation, match="multiple signatures"):
        datasets_by_signature([{"x": [1.0]}], ["a", "b"])


def test_mapping_dataset_per_signature():
    per_sig = {"a": [{"x": [1.0]}], "b": [{"x": [2.0]}], "unused": []}

    result = datasets_by_signature(per_sig, ["a", "b"])

    assert list(result) == ["a", "b"]


def test_mapping_dataset_missing_signature():
    with pytest.raises(PreconditionViolation, match="no entry"):
        datasets_by_signature({"a": []}, ["a", "b"])


def test_no_signature_keys():
    with pytest.raises(PreconditionViolation):
        datasets_by_signature([], [])


def test_batches_are_fed_unchanged():
    feeds = list(iter_batches([{"x": [[1.0, 2.0], [3.0, 4.0]]}]))

    assert len(feeds) == 1
    assert feeds[0]["x"].shape == (2, 2)


def test_multi_row_samples_are_not_split():
    feeds = list(iter_batches([{"x": np.arange(6).reshape(3, 2), "m": np.ones((3, 1))}]))

    assert len(feeds) == 1
    assert feeds[0]["x"].shape == (3, 2)
    assert feeds[0]["m"].shape == (3, 1)


def test_scalar_samples_are_fed_as_is():
    feeds = list(iter_batches([{"x": 3.0}]))

    assert len(feeds) == 1
    assert feeds[0]["x"].shape == ()


def test_feeds_are_lazy():
    def generator():
        yield {"x": [1.0]}
        raise AssertionError("dataset consumed past the first sample")

    feeds = iter_batches(generator())

    assert next(feeds)["x"].tolist() == [1.0]


def test_samples_must_be_mappings():
    with pytest.raises(PreconditionViolation, match="must map input keys"):
        list(iter_batches([[1.0, 2.0]]))


def test_load_npz_dataset(tmp_path: Path):
    path = tmp_path / "data.npz"
    np.savez(path, x=np.zeros((4, 2, 3)), y=np.ones((4, 5)))

    samples = list(load_npz_dataset(str(path)))

    assert len(samples) == 4
    assert samples[0]["x"].shape == (2, 3)
    assert samples[0]["y"].shape == (5,)


def test_load_npz_dataset_sample_count_mismatch(tmp_path: Path):
    path = tmp_path / "data.npz"
    np.savez(path, x=np.zeros((4, 2)), y=np.ones((3, 2)))

    with pytest.raises(PreconditionViolation, match="disagree"):
        list(load_npz_dataset(str(path)))
