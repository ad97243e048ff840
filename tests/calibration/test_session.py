import copy
import logging

import numpy as np
import pytest

from ptq_calib.calibration.session import CalibrationSession, SessionState, run_calibration
from ptq_calib.calibration.statistics import CalibrationOptions
from ptq_calib.compiler.passes.assign_ids import apply_assign_ids_pass, get_aggregator_id
from ptq_calib.errors import ExecutionFailure, PreconditionViolation
from ptq_calib.ir.model_ir import Graph, Node, SignatureDef, Tensor
from ptq_calib.runtime.executor import NumpyGraphExecutor

from conftest import make_two_aggregator_graph

A_BATCHES = [
    {"x": np.array([1.0, 5.0])},
    {"x": np.array([-2.0, 3.0])},
    {"x": np.array([0.0, 0.0])},
]


@pytest.fixture
def graph():
    return apply_assign_ids_pass(make_two_aggregator_graph())


def test_end_to_end_min_max(graph, caplog):
    # given
    agg_a, agg_b = graph.node_map()["agg_a"], graph.node_map()["agg_b"]

    # when
    with caplog.at_level(logging.WARNING):
        session = run_calibration(graph, NumpyGraphExecutor(), ["serving_default"], ["serve"], A_BATCHES)

    # then
    assert session.state == SessionState.FINALIZED
    assert session.num_batches == 3
    assert agg_a.attrs["min"] == -2.0
    assert agg_a.attrs["max"] == 5.0
    assert "min" not in agg_b.attrs and "max" not in agg_b.attrs

    assert [d.aggregator_id for d in session.diagnostics] == [get_aggregator_id(agg_b)]
    assert session.diagnostics[0].node_name == "agg_b"
    assert "agg_b" in caplog.text


def test_end_to_end_graph_mode(graph):
    session = run_calibration(graph, NumpyGraphExecutor(), ["serving_default"], ["serve"], A_BATCHES,
                              force_graph_mode=True)

    a_id = get_aggregator_id(graph.node_map()["agg_a"])
    assert session.num_batches == 3
    assert session.statistics[a_id].num_samples == 3
    assert (session.statistics[a_id].min, session.statistics[a_id].max) == (-2.0, 5.0)


def test_empty_dataset_completes_and_leaves_graph_unchanged(graph):
    before = copy.deepcopy(graph.to_dict())

    session = run_calibration(graph, NumpyGraphExecutor(), ["serving_default"], ["serve"], [])

    assert session.state == SessionState.FINALIZED
    assert graph.to_dict() == before
    assert len(session.diagnostics) == 2


def test_failed_batch_discards_statistics_and_leaves_graph_untouched():
    graph = apply_assign_ids_pass(make_two_aggregator_graph(input_shape=(2,)))
    graph.node_map()["agg_a"].attrs.update({"min": -9.0, "max": 9.0})
    before = copy.deepcopy([dict(n.attrs) for n in graph.aggregator_nodes()])
    dataset = [{"x": np.array([1.0, 5.0])}, {"x": np.array([1.0, 2.0, 3.0])}]

    session = CalibrationSession(graph, NumpyGraphExecutor())
    with pytest.raises(ExecutionFailure, match="incompatible"):
        session.run(["serving_default"], ["serve"], dataset, force_graph_mode=True)

    assert session.state == SessionState.FAILED
    assert len(session.accumulator) == 0
    assert session.statistics == {}
    assert [dict(n.attrs) for n in graph.aggregator_nodes()] == before


def test_session_runs_only_once(graph):
    session = CalibrationSession(graph, NumpyGraphExecutor())
    session.run(["serving_default"], ["serve"], [])

    with pytest.raises(PreconditionViolation, match="already ran"):
        session.run(["serving_default"], ["serve"], [])


def test_recalibration_starts_from_fresh_statistics(graph):
    run_calibration(graph, NumpyGraphExecutor(), ["serving_default"], ["serve"], A_BATCHES)

    run_calibration(graph, NumpyGraphExecutor(), ["serving_default"], ["serve"], [{"x": np.array([0.5, 1.5])}])

    agg_a = graph.node_map()["agg_a"]
    assert (agg_a.attrs["min"], agg_a.attrs["max"]) == (0.5, 1.5)


def test_percentile_method_annotates_ranges(graph):
    options = CalibrationOptions(calibration_method="HISTOGRAM_PERCENTILE", min_percentile=0.0,
                                 max_percentile=100.0)

    session = run_calibration(graph, NumpyGraphExecutor(), ["serving_default"], ["serve"], A_BATCHES, options)

    a_id = get_aggregator_id(graph.node_map()["agg_a"])
    assert session.statistics[a_id].histogram is not None
    assert graph.node_map()["agg_a"].attrs["min"] == pytest.approx(-2.0)
    assert graph.node_map()["agg_a"].attrs["max"] == pytest.approx(5.0)


def test_fixed_batch_input_runs_in_default_mode():
    # given
    graph = apply_assign_ids_pass(make_two_aggregator_graph(input_shape=(2,)))

    # when
    session = run_calibration(graph, NumpyGraphExecutor(), ["serving_default"], ["serve"],
                              [{"x": np.array([1.0, 5.0])}])

    # then
    assert session.state == SessionState.FINALIZED
    assert session.num_batches == 1
    agg_a = graph.node_map()["agg_a"]
    assert (agg_a.attrs["min"], agg_a.attrs["max"]) == (1.0, 5.0)


def test_average_min_max_does_not_depend_on_mode():
    options = CalibrationOptions(calibration_method="AVERAGE_MIN_MAX")
    ranges = []
    for force_graph_mode in (False, True):
        graph = apply_assign_ids_pass(make_two_aggregator_graph())
        run_calibration(graph, NumpyGraphExecutor(), ["serving_default"], ["serve"], A_BATCHES, options,
                        force_graph_mode=force_graph_mode)
        agg_a = graph.node_map()["agg_a"]
        ranges.append((agg_a.attrs["min"], agg_a.attrs["max"]))

    assert ranges[0] == ranges[1]
    assert ranges[0] == pytest.approx((-1.0 / 3.0, 8.0 / 3.0))


def make_side_branch_graph():
    """
    x -> agg_x -> identity -> y          (signature output)
    w -> agg_w -> add(w_agg, x) -> z     (w is a constant, z is not a signature output)
    x -> agg_dangling -> x_unused        (output never consumed)
    """
    nodes = [
        Node(name="agg_x", op_type="CustomAggregator", inputs=["x"], outputs=["x_agg"]),
        Node(name="identity", op_type="Identity", inputs=["x_agg"], outputs=["y"]),
        Node(name="agg_w", op_type="CustomAggregator", inputs=["w"], outputs=["w_agg"]),
        Node(name="add", op_type="Add", inputs=["w_agg", "x"], outputs=["z"]),
        Node(name="agg_dangling", op_type="CustomAggregator", inputs=["x"], outputs=["x_unused"]),
    ]
    return Graph(
        nodes=nodes,
        inputs=["x"],
        outputs=["y", "z"],
        initializers=["w"],
        tensors={
            "x": Tensor(name="x", shape=(None,), dtype=np.dtype(np.float32)),
            "w": Tensor(name="w", shape=(2,), dtype=np.dtype(np.float32)),
        },
        constants={"w": np.array([-100.0, 100.0], dtype=np.float32)},
        signatures={"serving_default": SignatureDef(inputs={"x": "x"}, outputs={"y": "y"})},
        tags={"serve"},
    )


@pytest.mark.parametrize("force_graph_mode", [False, True])
def test_aggregators_outside_executed_subgraph_stay_unannotated(force_graph_mode):
    # given
    graph = apply_assign_ids_pass(make_side_branch_graph())

    # when
    session = run_calibration(graph, NumpyGraphExecutor(), ["serving_default"], ["serve"],
                              [{"x": np.array([1.0, 1.0])}], force_graph_mode=force_graph_mode)

    # then
    nodes = graph.node_map()
    assert (nodes["agg_x"].attrs["min"], nodes["agg_x"].attrs["max"]) == (1.0, 1.0)
    for name in ("agg_w", "agg_dangling"):
        assert "min" not in nodes[name].attrs and "max" not in nodes[name].attrs
    assert sorted(d.node_name for d in session.diagnostics) == ["agg_dangling", "agg_w"]
