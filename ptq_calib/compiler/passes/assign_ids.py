from __future__ import annotations
import hashlib
import logging
from typing import Dict

from ...errors import PreconditionViolation
from ...ir.model_ir import Graph, Node

logger = logging.getLogger(__name__)

ID_ATTR = "id"
_ID_HEX_CHARS = 16


def get_aggregator_id(node: Node) -> str:
    """Returns the node's aggregator id, or an empty string if unassigned."""
    value = node.attrs.get(ID_ATTR, "")
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return value or ""


def _derive_id(node_name: str) -> str:
    return hashlib.sha1(node_name.encode("utf-8")).hexdigest()[:_ID_HEX_CHARS]


def collect_aggregator_ids(g: Graph) -> Dict[str, Node]:
    """Maps existing aggregator ids to their nodes.

    Raises PreconditionViolation when two aggregator nodes share an id.
    """
    id_to_node: Dict[str, Node] = {}
    for node in g.aggregator_nodes():
        agg_id = get_aggregator_id(node)
        if not agg_id:
            continue
        if agg_id in id_to_node:
            raise PreconditionViolation(
                f"Aggregator id '{agg_id}' is shared by nodes '{id_to_node[agg_id].name}' and '{node.name}'."
            )
        id_to_node[agg_id] = node
    return id_to_node


def apply_assign_ids_pass(g: Graph) -> Graph:
    """Assigns a unique id to every CustomAggregator node that does not have one yet.

    Ids are derived from the node name, so the same graph structure always gets the
    same ids. Existing ids are kept as they are, which makes the pass safe to re-run.
    """
    g.validate()
    taken = collect_aggregator_ids(g)

    assigned = 0
    for node in g.aggregator_nodes():
        if get_aggregator_id(node):
            continue

        candidate = _derive_id(node.name)
        suffix = 0
        while candidate in taken:
            suffix += 1
            candidate = f"{_derive_id(node.name)}_{suffix}"

        node.attrs[ID_ATTR] = candidate
        taken[candidate] = node
        assigned += 1

    logger.info(f"Assigned {assigned} aggregator id(s); {len(taken)} aggregator node(s) in graph.")
    return g
