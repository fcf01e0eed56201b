"""End-to-end tests: compile a small network, replay the text program, compare with numpy."""

import os
import sys
import inspect

currentdir = os.path.dirname(os.path.abspath(inspect.getfile(inspect.currentframe())))
parentdir = os.path.dirname(currentdir)
sys.path.insert(0, parentdir)

import json
import tempfile
import unittest

import numpy as np

from zkasm import compile_circuit, compile_files, parse_circuit, parse_witness
from zkasm.field import rescale_int
from zkasm.graph import LoadedCircuit
from zkasm.memory import parse_memory_csv
from zkasm.vm import Machine, parse_program

SCALE = 4
TOLERANCE = 0.15

X = np.array([0.5, -1.25, 2.0, 0.75])
W1 = np.array([
    [0.25, -0.5, 1.0],
    [0.75, 0.125, -0.25],
    [-0.5, 0.5, 0.375],
    [1.0, -0.75, 0.0625],
])
B1 = np.array([0.0625, -0.5, 0.25])
W2 = np.array([
    [1.0, -0.5],
    [0.5, 0.25],
    [-0.75, 1.0],
])


def quantize(values, scale):
    return np.round(np.asarray(values) * 2 ** scale).astype(np.int64)


def fc_network():
    """x -> matmul -> +b -> rescale -> relu -> matmul -> rescale -> y."""
    def t(tensor_id, shape, scale, visibility="private"):
        return {"id": tensor_id, "shape": list(shape), "scale": scale, "visibility": visibility}

    data = {
        "tensors": [
            t("x", (4,), SCALE, "public"),
            t("w1", (4, 3), SCALE, "fixed"),
            t("b1", (3,), 2 * SCALE, "fixed"),
            t("h", (3,), 2 * SCALE),
            t("hb", (3,), 2 * SCALE),
            t("r", (3,), SCALE),
            t("a", (3,), SCALE),
            t("w2", (3, 2), SCALE, "fixed"),
            t("o", (2,), 2 * SCALE),
            t("y", (2,), SCALE, "public"),
        ],
        "operations": [
            {"id": 0, "kind": "matmul", "inputs": ["x", "w1"], "output": "h"},
            {"id": 1, "kind": "add", "inputs": ["h", "b1"], "output": "hb"},
            {"id": 2, "kind": "rescale", "inputs": ["hb"], "output": "r"},
            {"id": 3, "kind": "relu", "inputs": ["r"], "output": "a", "params": {"bits": 12}},
            {"id": 4, "kind": "matmul", "inputs": ["a", "w2"], "output": "o"},
            {"id": 5, "kind": "rescale", "inputs": ["o"], "output": "y"},
        ],
        "inputs": ["x"],
        "outputs": ["y"],
    }

    # Quantized witness, computed with the same integer rules as the target.
    xq, w1q, b1q, w2q = quantize(X, SCALE), quantize(W1, SCALE), quantize(B1, 2 * SCALE), quantize(W2, SCALE)
    h = xq @ w1q
    hb = h + b1q
    r = np.array([rescale_int(int(v), SCALE) for v in hb])
    a = np.maximum(r, 0)
    o = a @ w2q
    y = np.array([rescale_int(int(v), SCALE) for v in o])
    values = {name: arr.tolist() for name, arr in
              [("x", xq), ("w1", w1q), ("b1", b1q), ("h", h), ("hb", hb), ("r", r),
               ("a", a), ("w2", w2q), ("o", o), ("y", y)]}
    return data, {"values": values}


def float_reference():
    return np.maximum(X @ W1 + B1, 0.0) @ W2


def load(data, witness, name="fc"):
    graph = parse_circuit(data)
    return LoadedCircuit(graph=graph, witness=parse_witness(witness, graph), name=name)


class TestEndToEnd(unittest.TestCase):

    def setUp(self):
        self.data, self.witness = fc_network()
        self.artifact = compile_circuit(load(self.data, self.witness))
        self.parsed = parse_program(self.artifact.program_text)
        self.memory = parse_memory_csv(self.artifact.memory_csv)

    def _outputs(self, machine):
        out = self.parsed.outputs[0]
        self.assertEqual((out.name, out.length, out.scale), ("y", 2, SCALE))
        return np.array(machine.read_signed(out.base, out.length)) / 2 ** out.scale

    def test_strict_replay_matches_float_reference(self):
        machine = Machine(self.memory, self.parsed.instructions, strict=True)
        machine.run()
        self.assertTrue(machine.halted)
        result = self._outputs(machine)
        np.testing.assert_allclose(result, float_reference(), atol=TOLERANCE)

    def test_replay_from_inputs_only(self):
        """Intermediate and output cells are all written before they are read."""
        kept = set()
        for name in ("control", "input", "fixed"):
            base, _, used = self.parsed.namespaces[name]
            kept.update(range(base, base + used))
        memory = {addr: value for addr, value in self.memory.items() if addr in kept}
        machine = Machine(memory, self.parsed.instructions)
        machine.run()
        expected = np.array(self.witness["values"]["y"]) / 2 ** SCALE
        np.testing.assert_array_equal(self._outputs(machine), expected)

    def test_program_shape(self):
        text = self.artifact.program_text
        self.assertIn(".public", text)
        self.assertIn(".table", text)
        # 12 + 3 + 3 + 3 + 6 + 2 instructions, then halt.
        self.assertEqual(self.artifact.num_instructions, 29)
        self.assertEqual(len(self.parsed.instructions), 30)

    def test_memory_covers_every_operand(self):
        written = {inst.dest for inst in self.parsed.instructions if inst.dest is not None}
        for inst in self.parsed.instructions:
            for addr in inst.operands:
                self.assertTrue(addr in self.memory or addr in written)


class TestCompileFiles(unittest.TestCase):

    def test_files_round_trip_through_disk(self):
        data, witness = fc_network()
        with tempfile.TemporaryDirectory() as tmp:
            circuit_path = os.path.join(tmp, "fc.json")
            witness_path = os.path.join(tmp, "fc.witness.json")
            with open(circuit_path, "w") as f:
                json.dump(data, f)
            with open(witness_path, "w") as f:
                json.dump(witness, f)

            artifact = compile_files(circuit_path, witness_path)

            with open(os.path.join(tmp, "fc.zasm")) as f:
                self.assertEqual(f.read(), artifact.program_text)
            with open(os.path.join(tmp, "fc.memory.csv")) as f:
                self.assertEqual(f.read(), artifact.memory_csv)

            from tools.replay import replay_files
            outputs = replay_files(os.path.join(tmp, "fc.zasm"), os.path.join(tmp, "fc.memory.csv"),
                                   strict=True)

        self.assertEqual(outputs["y"], witness["values"]["y"])


if __name__ == "__main__":
    unittest.main()
