import numpy as np
import onnx
from onnx import helper
from onnx import TensorProto

def create_model(path: str = 'test_model.onnx', dataset_path: str = 'test_dataset.npz'):
    """Creates an instrumented ONNX model (MatMul -> Relu -> MatMul -> Softmax) and a matching dataset."""
    nodes = [
        helper.make_node('CustomAggregator', ['X'], ['X_agg'], name='agg_input', domain='ptq_calib',
                         calibration_method='MIN_MAX'),
        helper.make_node('MatMul', ['X_agg', 'W1'], ['Y1'], name='matmul1'),
        helper.make_node('CustomAggregator', ['Y1'], ['Y1_agg'], name='agg_matmul1', domain='ptq_calib',
                         calibration_method='MIN_MAX'),
        helper.make_node('Relu', ['Y1_agg'], ['Y2'], name='relu1'),
        helper.make_node('DumpTensor', ['Y2'], [], name='dump_relu1', domain='ptq_calib',
                         enabled=0, file_name='unquantized_tensor_data.npy', log_dir_path='out/dumps/relu1',
                         node_name='relu1'),
        helper.make_node('MatMul', ['Y2', 'W2'], ['Y3'], name='matmul2'),
        helper.make_node('CustomAggregator', ['Y3'], ['Y3_agg'], name='agg_matmul2', domain='ptq_calib',
                         calibration_method='MIN_MAX'),
        helper.make_node('Softmax', ['Y3_agg'], ['Y'], name='softmax1', axis=-1),
    ]
    rng = np.random.default_rng(0)
    graph_def = helper.make_graph(
        nodes,
        'calibration-test-graph',
        [helper.make_tensor_value_info('X', TensorProto.FLOAT, [None, 16])],
        [helper.make_tensor_value_info('Y', TensorProto.FLOAT, [None, 16])],
        [
            helper.make_tensor('W1', TensorProto.FLOAT, [16, 16], rng.standard_normal(256).astype(np.float32)),
            helper.make_tensor('W2', TensorProto.FLOAT, [16, 16], rng.standard_normal(256).astype(np.float32)),
        ],
    )
    model = helper.make_model(
        graph_def,
        producer_name='ptq-calib-test',
        opset_imports=[helper.make_opsetid('', 17), helper.make_opsetid('ptq_calib', 1)],
    )
    onnx.save(model, path)

    # 8 samples, each a batch of 4 rows
    np.savez(dataset_path, X=rng.standard_normal((8, 4, 16)).astype(np.float32))

if __name__ == '__main__':
    create_model()
