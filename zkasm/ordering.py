"""
Deterministic Traversal Order

A single stable topological order over the op graph, shared by the address
allocator and the instruction emitter so that both commit addresses and
instructions in exactly the same sequence. Ties between ready operations
always break on the smallest node id.
"""

import heapq

from .errors import GraphMalformed
from .graph import OpGraph, Operation


def topological_order(graph: OpGraph) -> list[Operation]:
    """Return operations in dependency order, smallest node id first among ready ops.

    Raises GraphMalformed naming the nodes on a cycle.
    """
    producers = {op.output: op.id for op in graph.operations.values()}

    # Edge producer -> consumer, counted once per distinct producer.
    indegree: dict[int, int] = {}
    users: dict[int, list[int]] = {node_id: [] for node_id in graph.operations}
    for op in graph.operations.values():
        deps = {producers[t] for t in op.inputs if t in producers}
        indegree[op.id] = len(deps)
        for dep in deps:
            users[dep].append(op.id)

    ready = [node_id for node_id, deg in indegree.items() if deg == 0]
    heapq.heapify(ready)

    order: list[Operation] = []
    while ready:
        node_id = heapq.heappop(ready)
        order.append(graph.operations[node_id])
        for user in users[node_id]:
            indegree[user] -= 1
            if indegree[user] == 0:
                heapq.heappush(ready, user)

    if len(order) != len(graph.operations):
        stuck = sorted(node_id for node_id, deg in indegree.items() if deg > 0)
        raise GraphMalformed(
            f"op graph contains a cycle through nodes {stuck}",
            entity=f"node {stuck[0]}",
        )
    return order
