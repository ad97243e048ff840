from enum import Enum

# Domain used for the instrumentation ops when a graph is serialized to ONNX.
CUSTOM_DOMAIN = "ptq_calib"


class OpType(str, Enum):
    """Defines the node kinds understood by the calibration stage."""

    # Element-wise / activation
    IDENTITY = "Identity"
    ADD = "Add"
    SUB = "Sub"
    MUL = "Mul"
    RELU = "Relu"
    SIGMOID = "Sigmoid"
    TANH = "Tanh"
    SOFTMAX = "Softmax"
    LOG_SOFTMAX = "LogSoftmax"

    # Tensor ops
    MATMUL = "MatMul"

    # Instrumentation
    CUSTOM_AGGREGATOR = "CustomAggregator"
    DUMP_TENSOR = "DumpTensor"

    def __str__(self) -> str:
        return self.value


INSTRUMENTATION_OPS = (OpType.CUSTOM_AGGREGATOR, OpType.DUMP_TENSOR)
