"""Tests for grouped atomic publishing of the output files."""

import os
import tempfile
import unittest

from zkasm.output import publish


class TestPublish(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def path(self, name):
        return os.path.join(self.dir, name)

    def read(self, name):
        with open(self.path(name)) as f:
            return f.read()

    def test_writes_all_files(self):
        publish({self.path("a.zasm"): "program\n", self.path("a.csv"): "address,value\n"})
        self.assertEqual(sorted(os.listdir(self.dir)), ["a.csv", "a.zasm"])
        self.assertEqual(self.read("a.zasm"), "program\n")

    def test_replaces_existing_files(self):
        with open(self.path("a.zasm"), "w") as f:
            f.write("old")
        publish({self.path("a.zasm"): "new"})
        self.assertEqual(self.read("a.zasm"), "new")
        self.assertEqual(os.listdir(self.dir), ["a.zasm"])

    def test_failure_restores_previous_contents(self):
        with open(self.path("a.zasm"), "w") as f:
            f.write("old")
        os.mkdir(self.path("b.csv"))
        with open(self.path("b.csv/keep"), "w") as f:
            f.write("x")

        with self.assertRaises(OSError):
            publish({self.path("a.zasm"): "new", self.path("b.csv"): "rows"})

        self.assertEqual(self.read("a.zasm"), "old")
        self.assertEqual(sorted(os.listdir(self.dir)), ["a.zasm", "b.csv"])

    def test_missing_directory_leaves_nothing(self):
        with self.assertRaises(OSError):
            publish({self.path("a.zasm"): "x", self.path("missing/b.csv"): "y"})
        self.assertEqual(os.listdir(self.dir), [])


if __name__ == "__main__":
    unittest.main()
