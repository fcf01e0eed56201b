"""
Graph Loader

Deserializes the compiled circuit and the witness, validating structural
well-formedness of the graph and completeness of the witness.
"""

import json
import logging
from pathlib import Path
from typing import Any

import numpy as np

from .errors import GraphMalformed, WitnessIncomplete
from .field import DEFAULT_MODULUS, fits_field, parse_value
from .graph import LoadedCircuit, OpGraph, Operation, TensorInfo, Visibility
from .ordering import topological_order

logger = logging.getLogger(__name__)


def load_graph(circuit_path, witness_path, modulus: int = DEFAULT_MODULUS) -> LoadedCircuit:
    """Read both inputs and return the validated graph with its witness."""
    circuit_data = _read_json(circuit_path)
    witness_data = _read_json(witness_path)
    graph = parse_circuit(circuit_data)
    witness = parse_witness(witness_data, graph, modulus)
    logger.info("loaded %s: %d tensors, %d operations",
                circuit_path, len(graph.tensors), len(graph.operations))
    return LoadedCircuit(graph=graph, witness=witness, name=Path(circuit_path).stem)


def _read_json(path) -> Any:
    with open(path) as f:
        return json.load(f)


def parse_circuit(data: Any) -> OpGraph:
    """Build an OpGraph from the decoded circuit description."""
    if not isinstance(data, dict):
        raise GraphMalformed("circuit description must be a JSON object")
    for section in ("tensors", "operations"):
        if not isinstance(data.get(section), list):
            raise GraphMalformed(f"circuit description has no '{section}' list")

    graph = OpGraph()
    for entry in data["tensors"]:
        tensor = _parse_tensor(entry)
        if tensor.id in graph.tensors:
            raise GraphMalformed(f"tensor '{tensor.id}' declared twice", entity=tensor.id)
        graph.tensors[tensor.id] = tensor

    for entry in data["operations"]:
        op = _parse_operation(entry, graph.tensors)
        if op.id in graph.operations:
            raise GraphMalformed(f"node {op.id} declared twice", entity=f"node {op.id}")
        graph.operations[op.id] = op

    graph.inputs = _parse_id_list(data, "inputs")
    graph.outputs = _parse_id_list(data, "outputs")

    _validate_structure(graph)
    # Cycle check; the order itself is recomputed by the consumers.
    topological_order(graph)
    return graph


def _parse_tensor(entry: Any) -> TensorInfo:
    if not isinstance(entry, dict) or "id" not in entry:
        raise GraphMalformed(f"tensor entry without an id: {entry!r}")
    tensor_id = str(entry["id"])
    shape = entry.get("shape", [])
    if not isinstance(shape, list) or not all(_is_int(d) and d >= 0 for d in shape):
        raise GraphMalformed(f"tensor '{tensor_id}' has invalid shape {shape!r}", entity=tensor_id)
    scale = entry.get("scale", 0)
    if not _is_int(scale):
        raise GraphMalformed(f"tensor '{tensor_id}' has non-integer scale {scale!r}", entity=tensor_id)
    try:
        visibility = Visibility(entry.get("visibility", "private"))
    except ValueError:
        raise GraphMalformed(
            f"tensor '{tensor_id}' has unknown visibility {entry.get('visibility')!r}",
            entity=tensor_id,
        ) from None
    return TensorInfo(id=tensor_id, shape=tuple(shape), scale=scale, visibility=visibility)


def _parse_operation(entry: Any, tensors: dict[str, TensorInfo]) -> Operation:
    if not isinstance(entry, dict) or not _is_int(entry.get("id")):
        raise GraphMalformed(f"operation entry without an integer id: {entry!r}")
    node_id = entry["id"]
    kind = entry.get("kind")
    if not isinstance(kind, str):
        raise GraphMalformed(f"node {node_id} has no kind", entity=f"node {node_id}")
    inputs = entry.get("inputs", [])
    if not isinstance(inputs, list):
        raise GraphMalformed(f"node {node_id} inputs must be a list", entity=f"node {node_id}")
    if "output" not in entry:
        raise GraphMalformed(f"node {node_id} has no output tensor", entity=f"node {node_id}")
    output = str(entry["output"])
    scale = entry.get("scale")
    if scale is None:
        # Defaults to the output tensor's scale; an undefined output is reported later.
        scale = tensors[output].scale if output in tensors else 0
    elif not _is_int(scale):
        raise GraphMalformed(f"node {node_id} has non-integer scale {scale!r}", entity=f"node {node_id}")
    params = entry.get("params", {})
    if not isinstance(params, dict):
        raise GraphMalformed(f"node {node_id} params must be an object", entity=f"node {node_id}")
    return Operation(
        id=node_id,
        kind=kind,
        inputs=tuple(str(t) for t in inputs),
        output=output,
        scale=scale,
        params=params,
    )


def _parse_id_list(data: dict, key: str) -> list[str]:
    ids = data.get(key, [])
    if not isinstance(ids, list):
        raise GraphMalformed(f"circuit '{key}' must be a list")
    return [str(t) for t in ids]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_structure(graph: OpGraph):
    """Check references, the single-producer rule and scale agreement."""
    producers: dict[str, int] = {}
    for node_id in sorted(graph.operations):
        op = graph.operations[node_id]
        for tensor_id in op.inputs + (op.output,):
            if tensor_id not in graph.tensors:
                raise GraphMalformed(
                    f"node {node_id} references undefined tensor '{tensor_id}'",
                    entity=tensor_id,
                )
        if op.output in producers:
            raise GraphMalformed(
                f"tensor '{op.output}' is produced by both node {producers[op.output]} "
                f"and node {node_id}",
                entity=op.output,
            )
        producers[op.output] = node_id

        out_scale = graph.tensors[op.output].scale
        if op.scale != out_scale:
            raise GraphMalformed(
                f"node {node_id} declares scale {op.scale} but its output "
                f"'{op.output}' has scale {out_scale}",
                entity=f"node {node_id}",
            )

    declared_inputs = set(graph.inputs)
    for tensor_id in graph.inputs + graph.outputs:
        if tensor_id not in graph.tensors:
            raise GraphMalformed(f"declared graph tensor '{tensor_id}' is undefined", entity=tensor_id)
    for tensor_id in graph.inputs:
        if tensor_id in producers:
            raise GraphMalformed(
                f"graph input '{tensor_id}' is produced by node {producers[tensor_id]}",
                entity=tensor_id,
            )

    for tensor_id in graph.required_tensors():
        if tensor_id in producers or tensor_id in declared_inputs:
            continue
        if graph.tensors[tensor_id].visibility is Visibility.FIXED:
            continue
        raise GraphMalformed(
            f"tensor '{tensor_id}' has no producer and is neither a graph input nor a constant",
            entity=tensor_id,
        )


def parse_witness(data: Any, graph: OpGraph, modulus: int = DEFAULT_MODULUS) -> dict[str, np.ndarray]:
    """Decode witness values for every tensor the graph needs.

    Values are kept as exact Python ints in object arrays shaped like the
    tensor. Entries for tensors the graph never touches are ignored.
    """
    if isinstance(data, dict) and isinstance(data.get("values"), dict):
        values = data["values"]
    elif isinstance(data, dict):
        values = data
    else:
        raise WitnessIncomplete("witness must be a JSON object")

    witness: dict[str, np.ndarray] = {}
    for tensor_id in graph.required_tensors():
        tensor = graph.tensors[tensor_id]
        if tensor_id not in values:
            raise WitnessIncomplete(f"witness has no value for tensor '{tensor_id}'", entity=tensor_id)
        flat = _flatten(values[tensor_id])
        if len(flat) != tensor.size:
            raise WitnessIncomplete(
                f"witness for tensor '{tensor_id}' has {len(flat)} values, "
                f"shape {tensor.shape} needs {tensor.size}",
                entity=tensor_id,
            )
        ints = []
        for raw in flat:
            try:
                value = parse_value(raw, modulus)
            except ValueError as e:
                raise WitnessIncomplete(f"tensor '{tensor_id}': {e}", entity=tensor_id) from None
            if not fits_field(value, modulus):
                raise WitnessIncomplete(
                    f"witness value for tensor '{tensor_id}' does not fit the field",
                    entity=tensor_id,
                )
            ints.append(value)
        arr = np.empty(len(ints), dtype=object)
        arr[:] = ints
        witness[tensor_id] = arr.reshape(tensor.shape)
    return witness


def _flatten(raw: Any) -> list:
    if isinstance(raw, list):
        out = []
        for item in raw:
            out.extend(_flatten(item))
        return out
    return [raw]
