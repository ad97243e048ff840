import pytest
import numpy as np

import onnx
from onnx import helper
from onnx import TensorProto, numpy_helper

from ptq_calib.ir.onnx_importer import load_onnx_as_model_ir
from ptq_calib.ir.onnx_exporter import model_ir_to_model_proto, save_model_ir_as_onnx
from ptq_calib.ir.model_ir import Graph, SignatureDef


@pytest.fixture
def mock_onnx_model():
    """Creates an instrumented ONNX model object for testing."""
    nodes = [
        helper.make_node('CustomAggregator', ['X'], ['X_agg'], name='agg_x', domain='ptq_calib',
                         id='abc', calibration_method='MIN_MAX'),
        helper.make_node('MatMul', ['X_agg', 'W'], ['Y'], name='test_node'),
        helper.make_node('DumpTensor', ['Y'], [], name='dump_y', domain='ptq_calib',
                         enabled=0, file_name='unquantized_tensor_data.npy'),
    ]
    graph_def = helper.make_graph(
        nodes,
        'test-graph',
        [helper.make_tensor_value_info('X', TensorProto.FLOAT, [None, 2])],
        [helper.make_tensor_value_info('Y', TensorProto.FLOAT, [None, 4])],
        [numpy_helper.from_array(np.arange(8, dtype=np.float32).reshape(2, 4), name='W')]
    )
    return helper.make_model(graph_def, producer_name='pytest')


def test_load_onnx_model(monkeypatch, mock_onnx_model):
    """
    Tests that an ONNX model can be loaded into a Graph representation,
    using an in-memory ONNX model to avoid depending on a model file.
    """
    monkeypatch.setattr(onnx, "load", lambda path: mock_onnx_model)

    graph = load_onnx_as_model_ir("examples/instrumented.onnx")

    assert isinstance(graph, Graph)
    assert [n.name for n in graph.nodes] == ['agg_x', 'test_node', 'dump_y']
    assert graph.inputs == ['X']
    assert graph.outputs == ['Y']
    assert graph.initializers == ['W']
    assert graph.tensors['X'].shape == (None, 2)
    assert graph.tensors['W'].shape == (2, 4)
    np.testing.assert_array_equal(graph.constants['W'], np.arange(8).reshape(2, 4))


def test_string_attributes_are_decoded(monkeypatch, mock_onnx_model):
    monkeypatch.setattr(onnx, "load", lambda path: mock_onnx_model)

    graph = load_onnx_as_model_ir("model.onnx")

    agg = graph.node_map()['agg_x']
    assert agg.attrs['id'] == 'abc'
    assert agg.attrs['calibration_method'] == 'MIN_MAX'
    assert graph.node_map()['dump_y'].attrs['file_name'] == 'unquantized_tensor_data.npy'


def test_default_signature_and_tags(monkeypatch, mock_onnx_model):
    monkeypatch.setattr(onnx, "load", lambda path: mock_onnx_model)

    graph = load_onnx_as_model_ir("model.onnx")

    assert graph.signatures == {"serving_default": SignatureDef(inputs={"X": "X"}, outputs={"Y": "Y"})}
    assert graph.tags == {"serve"}


def test_exported_model_keeps_calibration_attributes(tmp_path, monkeypatch, mock_onnx_model):
    monkeypatch.setattr(onnx, "load", lambda path: mock_onnx_model)
    graph = load_onnx_as_model_ir("model.onnx")
    graph.node_map()['agg_x'].attrs.update({'min': -1.5, 'max': 2.5})
    graph.signatures = {"predict": SignatureDef(inputs={"features": "X"}, outputs={"scores": "Y"})}
    graph.tags = {"serve", "cpu"}
    monkeypatch.undo()

    path = tmp_path / "calibrated.onnx"
    save_model_ir_as_onnx(graph, str(path))
    reloaded = load_onnx_as_model_ir(str(path))

    agg = reloaded.node_map()['agg_x']
    assert agg.attrs['min'] == pytest.approx(-1.5)
    assert agg.attrs['max'] == pytest.approx(2.5)
    assert agg.attrs['id'] == 'abc'
    assert reloaded.signatures == graph.signatures
    assert reloaded.tags == {"serve", "cpu"}


def test_instrumentation_ops_use_custom_domain(mlp_graph):
    model = model_ir_to_model_proto(mlp_graph)

    domains = {n.op_type: n.domain for n in model.graph.node}
    assert domains['CustomAggregator'] == 'ptq_calib'
    assert domains['DumpTensor'] == 'ptq_calib'
    assert domains['MatMul'] == ''
