"""Tests for CLI argument handling that does not need a live supervisor."""

import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from typer.testing import CliRunner

from cmdsman import cli


class DirectoryDefaultTests(unittest.TestCase):
    def setUp(self) -> None:
        self.runner = CliRunner()
        self._cwd = os.getcwd()
        self._tmpdir = tempfile.TemporaryDirectory()

    def tearDown(self) -> None:
        os.chdir(self._cwd)
        self._tmpdir.cleanup()

    def test_add_uses_directory_current_at_invocation(self) -> None:
        os.chdir(self._tmpdir.name)
        with mock.patch.object(cli, "_request", return_value={"data": {"id": "abc"}}) as request:
            result = self.runner.invoke(cli.app, ["add", "echo hi"])
        self.assertEqual(result.exit_code, 0, result.output)
        body = request.call_args.kwargs["json"]
        self.assertEqual(body["directory"], str(Path(self._tmpdir.name).resolve()))
        self.assertIn("abc", result.output)

    def test_edit_uses_directory_current_at_invocation(self) -> None:
        os.chdir(self._tmpdir.name)
        with mock.patch.object(cli, "_request", return_value={"success": True}) as request:
            result = self.runner.invoke(cli.app, ["edit", "build", "make all"])
        self.assertEqual(result.exit_code, 0, result.output)
        body = request.call_args.kwargs["json"]
        self.assertEqual(body["id"], "build")
        self.assertEqual(body["directory"], str(Path(self._tmpdir.name).resolve()))

    def test_explicit_directory_wins(self) -> None:
        target = Path(self._tmpdir.name) / "sub"
        target.mkdir()
        with mock.patch.object(cli, "_request", return_value={"data": {"id": "abc"}}) as request:
            result = self.runner.invoke(cli.app, ["add", "ls", "--dir", str(target)])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertEqual(request.call_args.kwargs["json"]["directory"], str(target.resolve()))


if __name__ == "__main__":
    unittest.main()
