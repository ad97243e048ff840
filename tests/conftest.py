import numpy as np
import pytest

from ptq_calib.ir.model_ir import Graph, Node, Tensor, SignatureDef


def make_two_aggregator_graph(input_shape=(None,)):
    """
    x -> agg_a -> identity -> y   (signature output)
    x -> relu_b -> agg_b          (dangling, never executed)
    """
    nodes = [
        Node(name="agg_a", op_type="CustomAggregator", inputs=["x"], outputs=["x_agg"],
             attrs={"calibration_method": "MIN_MAX"}),
        Node(name="identity", op_type="Identity", inputs=["x_agg"], outputs=["y"]),
        Node(name="relu_b", op_type="Relu", inputs=["x"], outputs=["z"]),
        Node(name="agg_b", op_type="CustomAggregator", inputs=["z"], outputs=["z_agg"],
             attrs={"calibration_method": "MIN_MAX"}),
    ]
    tensors = {
        "x": Tensor(name="x", shape=tuple(input_shape), dtype=np.dtype(np.float32)),
        "y": Tensor(name="y", shape=tuple(input_shape), dtype=np.dtype(np.float32)),
    }
    return Graph(
        nodes=nodes,
        inputs=["x"],
        outputs=["y"],
        tensors=tensors,
        signatures={"serving_default": SignatureDef(inputs={"x": "x"}, outputs={"y": "y"})},
        tags={"serve"},
    )


@pytest.fixture
def two_aggregator_graph():
    return make_two_aggregator_graph()


@pytest.fixture
def mlp_graph():
    """A small MatMul -> Relu -> MatMul -> Softmax graph with aggregators and a dump node."""
    w1 = np.array([[1.0, -1.0], [2.0, 0.5]], dtype=np.float32)
    w2 = np.array([[1.0, 0.0], [0.0, 1.0]], dtype=np.float32)
    nodes = [
        Node(name="agg_in", op_type="CustomAggregator", inputs=["x"], outputs=["x_agg"]),
        Node(name="matmul1", op_type="MatMul", inputs=["x_agg", "w1"], outputs=["h1"]),
        Node(name="agg_h1", op_type="CustomAggregator", inputs=["h1"], outputs=["h1_agg"]),
        Node(name="relu1", op_type="Relu", inputs=["h1_agg"], outputs=["h2"]),
        Node(name="dump_h2", op_type="DumpTensor", inputs=["h2"], outputs=[],
             attrs={"enabled": False, "file_name": "unquantized_tensor_data.npy",
                    "log_dir_path": "", "node_name": "relu1"}),
        Node(name="matmul2", op_type="MatMul", inputs=["h2", "w2"], outputs=["h3"]),
        Node(name="softmax", op_type="Softmax", inputs=["h3"], outputs=["y"], attrs={"axis": -1}),
    ]
    tensors = {
        "x": Tensor(name="x", shape=(None, 2), dtype=np.dtype(np.float32)),
        "w1": Tensor(name="w1", shape=(2, 2), dtype=np.dtype(np.float32)),
        "w2": Tensor(name="w2", shape=(2, 2), dtype=np.dtype(np.float32)),
        "y": Tensor(name="y", shape=(None, 2), dtype=np.dtype(np.float32)),
    }
    return Graph(
        nodes=nodes,
        inputs=["x"],
        outputs=["y"],
        initializers=["w1", "w2"],
        tensors=tensors,
        constants={"w1": w1, "w2": w2},
        signatures={"serving_default": SignatureDef(inputs={"x": "x"}, outputs={"y": "y"})},
        tags={"serve"},
    )
