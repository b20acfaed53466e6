"""Integration tests for CLI commands."""

import json
from pathlib import Path

from typer.testing import CliRunner

from relaygraph import __version__
from relaygraph.cli import app

runner = CliRunner()

PLAYER_ERROR = "player.cpp:16:15: error: use of undeclared identifier 'undefined_thing'\n"


def _build_args(temp_dir: Path, project: Path, *extra: str):
    return ["build", "--build-dir", str(temp_dir), "--project-root", str(project), *extra]


class TestVersion:
    def test_version_flag(self):
        """--version prints the package version."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"relay v{__version__}" in result.stdout


class TestBuildCommand:
    """Tests for 'relay build'."""

    def test_json_output_to_file(self, temp_dir: Path, game_project_path: Path):
        """Diagnostics from stdin become a JSON graph on disk."""
        out = temp_dir / "graph.json"

        result = runner.invoke(
            app,
            _build_args(temp_dir, game_project_path, "--no-cache", "--format", "json", "--output", str(out)),
            input=PLAYER_ERROR,
        )

        assert result.exit_code == 0
        assert "Wrote json graph" in result.stdout
        doc = json.loads(out.read_text(encoding="utf-8"))
        origin = doc["nodes"][0]
        assert origin["is_error_origin"] is True
        assert origin["line"] == 16
        assert origin["file_path"].endswith("player.cpp")
        assert doc["layout"] in ("trivial", "layered", "force-directed")

    def test_table_output(self, temp_dir: Path, game_project_path: Path):
        result = runner.invoke(app, _build_args(temp_dir, game_project_path, "--no-cache"), input=PLAYER_ERROR)

        assert result.exit_code == 0
        assert "Relay graph" in result.stdout

    def test_log_file_argument(self, temp_dir: Path, game_project_path: Path):
        log = temp_dir / "build.log"
        log.write_text("[2/2] Linking\n" + PLAYER_ERROR, encoding="utf-8")
        out = temp_dir / "graph.dot"

        result = runner.invoke(
            app,
            _build_args(temp_dir, game_project_path, str(log), "--no-cache", "--format", "dot", "-o", str(out)),
        )

        assert result.exit_code == 0
        assert out.read_text(encoding="utf-8").startswith("digraph RelayGraph {")

    def test_no_diagnostics(self, temp_dir: Path, game_project_path: Path):
        result = runner.invoke(
            app,
            _build_args(temp_dir, game_project_path, "--no-cache"),
            input="ninja: no work to do.\n",
        )

        assert result.exit_code == 1
        assert "No diagnostics found" in result.stdout

    def test_unknown_format(self, temp_dir: Path, game_project_path: Path):
        result = runner.invoke(
            app,
            _build_args(temp_dir, game_project_path, "--format", "xml"),
            input=PLAYER_ERROR,
        )

        assert result.exit_code != 0

    def test_missing_log_file(self, temp_dir: Path, game_project_path: Path):
        result = runner.invoke(app, _build_args(temp_dir, game_project_path, str(temp_dir / "nope.log")))

        assert result.exit_code != 0


class TestCacheCommands:
    """Tests for 'relay cache stats' and 'relay cache clear'."""

    def test_stats_without_cache(self, temp_dir: Path):
        result = runner.invoke(app, ["cache", "stats", "--build-dir", str(temp_dir)])

        assert result.exit_code == 0
        assert "No cache at" in result.stdout

    def test_clear_after_build(self, temp_dir: Path, game_project_path: Path):
        """A cached build leaves records that 'cache clear' removes."""
        build = runner.invoke(
            app,
            _build_args(temp_dir, game_project_path, "--format", "json", "-o", str(temp_dir / "g.json")),
            input=PLAYER_ERROR,
        )
        assert build.exit_code == 0
        assert (temp_dir / ".relay-cache.db").exists()

        stats = runner.invoke(app, ["cache", "stats", "--build-dir", str(temp_dir)])
        assert stats.exit_code == 0
        assert "layout" in stats.stdout

        result = runner.invoke(app, ["cache", "clear", "--build-dir", str(temp_dir)])
        assert result.exit_code == 0
        assert "Removed" in result.stdout

    def test_clear_unknown_kind(self, temp_dir: Path):
        result = runner.invoke(app, ["cache", "clear", "--build-dir", str(temp_dir), "--kind", "bogus"])

        assert result.exit_code != 0


class TestAsmCommand:
    def test_missing_disassembler(self, temp_dir: Path, monkeypatch):
        """Without llvm-objdump the command reports and exits with 1."""
        obj = temp_dir / "player.o"
        obj.write_bytes(b"\x7fELF")
        monkeypatch.setattr(
            "relaygraph.cli.load_analysis_settings",
            lambda: {"extra_flags": [], "include_warnings": False, "objdump": "no-such-objdump-xyz"},
        )

        result = runner.invoke(
            app,
            ["asm", str(obj), "--source", "player.cpp", "--line", "12", "--build-dir", str(temp_dir), "--no-cache"],
        )

        assert result.exit_code == 1

    def test_missing_object_file(self, temp_dir: Path):
        result = runner.invoke(app, ["asm", str(temp_dir / "gone.o"), "--source", "a.cpp", "--line", "1"])

        assert result.exit_code != 0
