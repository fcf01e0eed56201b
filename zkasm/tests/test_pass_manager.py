"""Tests for the pass pipeline and the individual passes."""

import io
import os
import tempfile
import unittest
from contextlib import redirect_stdout

from zkasm.compile import build_pipeline, compile_circuit, load_config
from zkasm.errors import TemplateMalformed, WitnessInconsistent
from zkasm.pass_manager import CompiledArtifact, CompilerPipeline, PassConfig
from zkasm.passes import AssemblePass, GraphToProgramPass, MemoryLayoutPass, ReplayCheckPass
from zkasm.tables import MAX_LOOKUP_BITS
from zkasm.tests.conftest import _cfg, build, circuit, node, tensor


def _add(c=8):
    data = circuit(
        [tensor("a", visibility="public"), tensor("b"), tensor("c", visibility="public")],
        [node(0, "add", ["a", "b"], "c")],
        ["a", "b"], ["c"],
    )
    return build(data, {"a": 3, "b": 5, "c": c}, name="add")


class TestCompilerPipeline(unittest.TestCase):

    def test_full_pipeline(self):
        artifact = compile_circuit(_add())
        self.assertIsInstance(artifact, CompiledArtifact)
        self.assertEqual(artifact.name, "add")
        self.assertEqual(artifact.num_instructions, 1)
        self.assertIn(".program add", artifact.program_text)
        self.assertTrue(artifact.memory_csv.startswith("address,value\n"))

    def test_type_mismatch(self):
        pipeline = CompilerPipeline()
        pipeline.add_pass(AssemblePass())
        with self.assertRaises(TypeError):
            pipeline.run(_add())

    def test_must_end_with_artifact(self):
        pipeline = CompilerPipeline()
        pipeline.add_pass(GraphToProgramPass())
        pipeline.add_pass(MemoryLayoutPass())
        with self.assertRaises(RuntimeError):
            pipeline.run(_add())

    def test_set_config(self):
        pipeline = CompilerPipeline()
        pipeline.set_config({"passes": {"replay-check": {"enabled": False, "options": {"tolerance": 2}}}})
        cfg = pipeline.config["replay-check"]
        self.assertFalse(cfg.enabled)
        self.assertEqual(cfg.options, {"tolerance": 2})
        with self.assertRaises(ValueError):
            pipeline.set_config({"passes": []})

    def test_rejects_unknown_ir_type(self):
        class Dump(MemoryLayoutPass):
            @property
            def output_type(self) -> str:
                return "text"

        with self.assertRaises(ValueError):
            CompilerPipeline().add_pass(Dump())

    def test_override_keeps_other_options(self):
        pipeline = build_pipeline(load_config())
        pipeline.override_option("replay-check", "tolerance", 1.5)
        options = pipeline.config["replay-check"].options
        self.assertEqual(options["tolerance"], 1.5)
        self.assertEqual(options["check_mode"], "safe")

    def test_disabled_pass_is_skipped(self):
        config = load_config()
        config["passes"]["replay-check"]["enabled"] = False
        # Inconsistent witness goes unnoticed without the replay check.
        artifact = compile_circuit(_add(c=9), config)
        self.assertEqual(artifact.num_instructions, 1)

    def test_print_metrics(self):
        out = io.StringIO()
        with redirect_stdout(out):
            compile_circuit(_add(), print_metrics=True)
        text = out.getvalue()
        self.assertIn("=== Pass: lowering (graph → program) ===", text)
        self.assertIn("=== Pass: assemble (program → artifact) ===", text)
        self.assertIn("Custom metrics:", text)

    def test_print_after_all(self):
        out = io.StringIO()
        with redirect_stdout(out):
            compile_circuit(_add(), print_after_all=True)
        text = out.getvalue()
        self.assertIn("COMPILATION START", text)
        self.assertIn("After lowering:", text)
        self.assertIn("=== Program: add", text)
        self.assertIn("COMPILATION END", text)


class TestPasses(unittest.TestCase):

    def _program(self, loaded):
        program = GraphToProgramPass().run(loaded, _cfg("lowering"))
        return MemoryLayoutPass().run(program, _cfg("memory-layout"))

    def test_memory_layout_pass(self):
        p = MemoryLayoutPass()
        program = GraphToProgramPass().run(_add(), _cfg("lowering"))
        program = p.run(program, _cfg("memory-layout"))
        self.assertEqual(len(program.memory), program.allocator.total_used())
        self.assertEqual(p.get_metrics().custom["cells"], len(program.memory))

    def test_lowering_lookup_bits_option(self):
        data = circuit([tensor("x", (1,)), tensor("y", (1,))],
                       [node(0, "relu", ["x"], "y")], ["x"], ["y"])
        loaded = build(data, {"x": [3], "y": [3]})
        program = GraphToProgramPass().run(loaded, _cfg("lowering", lookup_bits=5))
        self.assertEqual(program.tables[0].spec.rows, 32)

    def test_lowering_rejects_bad_lookup_bits(self):
        for bits in (0, MAX_LOOKUP_BITS + 1, "8"):
            with self.assertRaises(ValueError):
                GraphToProgramPass().run(_add(), _cfg("lowering", lookup_bits=bits))

    def test_replay_check_safe(self):
        p = ReplayCheckPass()
        p.run(self._program(_add()), _cfg("replay-check", check_mode="safe"))
        self.assertEqual(p.get_metrics().custom["replayed"], 1)

    def test_replay_check_detects_inconsistency(self):
        with self.assertRaises(WitnessInconsistent):
            ReplayCheckPass().run(self._program(_add(c=9)), _cfg("replay-check"))

    def test_replay_check_unsafe_skips(self):
        p = ReplayCheckPass()
        p.run(self._program(_add(c=9)), _cfg("replay-check", check_mode="UNSAFE"))
        self.assertIn("check mode unsafe: replay skipped", p.get_metrics().messages)

    def test_replay_check_tolerance_on_outputs(self):
        program = self._program(_add(c=9))
        ReplayCheckPass().run(program, _cfg("replay-check", tolerance=20.0))
        with self.assertRaises(WitnessInconsistent):
            ReplayCheckPass().run(program, _cfg("replay-check", tolerance=5.0))

    def test_replay_check_bad_options(self):
        with self.assertRaises(ValueError):
            ReplayCheckPass().run(self._program(_add()), _cfg("replay-check", check_mode="maybe"))
        with self.assertRaises(ValueError):
            ReplayCheckPass().run(self._program(_add()), _cfg("replay-check", tolerance=-1))

    def test_assemble_custom_skeleton(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".zasm", delete=False) as f:
            f.write(";@slot LAYOUT\n;@slot PUBLIC\n;@slot TABLES\n;@slot OUTPUTS\n;@slot BODY\n")
        try:
            artifact = AssemblePass().run(self._program(_add()), _cfg("assemble", skeleton=f.name))
        finally:
            os.unlink(f.name)
        self.assertTrue(artifact.program_text.startswith(".program add\n"))
        self.assertNotIn("halt", artifact.program_text)

    def test_assemble_rejects_bad_skeleton(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".zasm", delete=False) as f:
            f.write(";@slot LAYOUT\n;@slot BODY\n")
        try:
            with self.assertRaises(TemplateMalformed):
                AssemblePass().run(self._program(_add()), _cfg("assemble", skeleton=f.name))
        finally:
            os.unlink(f.name)

    def test_pass_config_defaults(self):
        cfg = PassConfig(name="lowering")
        self.assertTrue(cfg.enabled)
        self.assertEqual(cfg.options, {})


if __name__ == "__main__":
    unittest.main()
