from __future__ import annotations
import logging

from ...ir.model_ir import Graph

logger = logging.getLogger(__name__)

UNQUANTIZED_DUMP_FILE_NAME = "unquantized_tensor_data.npy"
QUANTIZED_DUMP_FILE_NAME = "quantized_tensor_data.npy"


def apply_enable_dump_pass(g: Graph) -> Graph:
    """Turns on every DumpTensor node."""
    dump_nodes = g.dump_nodes()
    for node in dump_nodes:
        node.attrs["enabled"] = True
    logger.info(f"Enabled {len(dump_nodes)} DumpTensor node(s).")
    return g


def apply_redirect_dump_pass(g: Graph) -> Graph:
    """Points every DumpTensor node at the quantized-model dump file."""
    dump_nodes = g.dump_nodes()
    for node in dump_nodes:
        node.attrs["file_name"] = QUANTIZED_DUMP_FILE_NAME
    logger.info(f"Redirected {len(dump_nodes)} DumpTensor node(s) to '{QUANTIZED_DUMP_FILE_NAME}'.")
    return g
