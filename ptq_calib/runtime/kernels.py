from __future__ import annotations
from typing import Callable, Dict, List
import numpy as np

from ..ir.opcode import OpType


def softmax(x: np.ndarray, axis: int = -1) -> np.ndarray:
    """Numerically stable softmax: exp(x - max) / sum(exp(x - max))."""
    shifted = x - np.max(x, axis=axis, keepdims=True)
    e = np.exp(shifted)
    return e / np.sum(e, axis=axis, keepdims=True)


def log_softmax(x: np.ndarray, axis: int = -1) -> np.ndarray:
    """log(softmax(x)) computed as (x - max) - log(sum(exp(x - max)))."""
    shifted = x - np.max(x, axis=axis, keepdims=True)
    return shifted - np.log(np.sum(np.exp(shifted), axis=axis, keepdims=True))


def _unary(fn: Callable[[np.ndarray], np.ndarray]):
    return lambda inputs, attrs: [fn(inputs[0])]


def _binary(fn: Callable[[np.ndarray, np.ndarray], np.ndarray]):
    return lambda inputs, attrs: [fn(inputs[0], inputs[1])]


KernelFn = Callable[[List[np.ndarray], Dict], List[np.ndarray]]

KERNELS: Dict[str, KernelFn] = {
    OpType.IDENTITY.value: _unary(lambda x: x),
    OpType.ADD.value: _binary(np.add),
    OpType.SUB.value: _binary(np.subtract),
    OpType.MUL.value: _binary(np.multiply),
    OpType.MATMUL.value: _binary(np.matmul),
    OpType.RELU.value: _unary(lambda x: np.maximum(x, 0)),
    OpType.SIGMOID.value: _unary(lambda x: 1.0 / (1.0 + np.exp(-x))),
    OpType.TANH.value: _unary(np.tanh),
    OpType.SOFTMAX.value: lambda inputs, attrs: [softmax(inputs[0], int(attrs.get("axis", -1)))],
    OpType.LOG_SOFTMAX.value: lambda inputs, attrs: [log_softmax(inputs[0], int(attrs.get("axis", -1)))],
    # Aggregators are transparent at run time; their input is read back by the caller.
    OpType.CUSTOM_AGGREGATOR.value: _unary(lambda x: x),
}
