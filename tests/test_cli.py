from __future__ import annotations

import hashlib
import json
import signal
from pathlib import Path

import pytest

import safex
import safex_extract
from safex_config import ConfigError
from safex_copy import CancelToken
from safex_errors import ExtractionCancelledError, SizeLimitExceededError

MEMBERS = [
    ("pkg/README", "file", b"hello\n", None),
    ("pkg/bin/run", "file", b"#!/bin/sh\n", 0o755),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in (
        "SAFEX_CONFIG",
        "SAFEX_LOG_LEVEL",
        "SAFEX_LOG_FORMAT",
        "SAFEX_MAX_BYTES",
        "SAFEX_STRIP_COMPONENTS",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def archive(make_tar) -> Path:
    return make_tar(MEMBERS, name="pkg.tar.gz", mode="w:gz")


def _sha256(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


class TestExtractCLI:
    def test_text_summary(self, archive: Path, dest: Path, capsys):
        assert safex_extract.main([str(archive), "-C", str(dest)]) == 0
        out = capsys.readouterr().out
        assert out.startswith("Extracted 2 entries")
        assert (dest / "pkg" / "README").read_bytes() == b"hello\n"

    def test_json_output(self, archive: Path, dest: Path, capsys):
        code = safex_extract.main(
            [str(archive), "-C", str(dest), "--strip-components", "1", "--json", "--quiet"]
        )
        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["format"] == "gzip"
        assert output["entries"] == 2
        assert output["bytes_written"] == len(b"hello\n") + len(b"#!/bin/sh\n")
        assert sorted(Path(p).name for p in output["created"]) == ["README", "run"]
        assert "digest" not in output

    def test_quiet_prints_nothing(self, archive: Path, dest: Path, capsys):
        assert safex_extract.main([str(archive), "-C", str(dest), "--quiet"]) == 0
        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == ""

    def test_missing_destination_fails(self, archive: Path, tmp_path: Path, capsys):
        assert safex_extract.main([str(archive), "-C", str(tmp_path / "new")]) == 1
        assert "Destination does not exist" in capsys.readouterr().err

    def test_create_directory(self, archive: Path, tmp_path: Path):
        target = tmp_path / "new" / "nested"
        assert safex_extract.main([str(archive), "-C", str(target), "--create-directory"]) == 0
        assert (target / "pkg" / "bin" / "run").exists()

    def test_hash_verified(self, archive: Path, dest: Path, capsys):
        expected = f"sha256:{_sha256(archive)}"
        code = safex_extract.main([str(archive), "-C", str(dest), "--hash", expected, "--json"])
        assert code == 0
        assert json.loads(capsys.readouterr().out)["digest"] == expected

    def test_hash_mismatch_extracts_nothing(self, archive: Path, dest: Path, capsys):
        code = safex_extract.main([str(archive), "-C", str(dest), "--hash", "sha256:" + "0" * 64])
        assert code == 1
        assert "mismatch" in capsys.readouterr().err
        assert list(dest.iterdir()) == []

    def test_malformed_hash_is_usage_error(self, archive: Path, dest: Path):
        assert safex_extract.main([str(archive), "-C", str(dest), "--hash", "sha256:xyz"]) == 2

    def test_budget_failure_keeps_only_confirmed_files(self, archive: Path, dest: Path, capsys):
        code = safex_extract.main([str(archive), "-C", str(dest), "--max-bytes", "8B"])
        assert code == 1
        assert "maximum size limit" in capsys.readouterr().err
        assert (dest / "pkg" / "README").exists()
        assert not (dest / "pkg" / "bin" / "run").exists()

    @pytest.mark.parametrize(
        "extra",
        [
            ["--max-bytes", "lots"],
            ["--max-time", "soon"],
            ["--strip-components", "-1"],
        ],
    )
    def test_bad_option_values_are_usage_errors(self, archive: Path, dest: Path, extra, capsys):
        assert safex_extract.main([str(archive), "-C", str(dest), *extra]) == 2
        assert capsys.readouterr().err.startswith("Error:")

    def test_remove_archive_after_success(self, archive: Path, dest: Path):
        assert safex_extract.main([str(archive), "-C", str(dest), "--remove-archive"]) == 0
        assert not archive.exists()

    def test_archive_kept_after_failure(self, archive: Path, dest: Path):
        code = safex_extract.main(
            [str(archive), "-C", str(dest), "--remove-archive", "--max-bytes", "1"]
        )
        assert code == 1
        assert archive.exists()

    def test_explicit_wrong_format_fails(self, archive: Path, dest: Path):
        assert safex_extract.main([str(archive), "-C", str(dest), "--format", "zip"]) == 1

    def test_config_file_and_flag_precedence(self, archive: Path, dest: Path, tmp_path: Path):
        config = tmp_path / "safex.yaml"
        config.write_text("strip_components: 1\n", encoding="utf-8")

        assert safex_extract.main([str(archive), "-C", str(dest), "--config", str(config)]) == 0
        assert (dest / "README").exists()

        other = tmp_path / "other"
        other.mkdir()
        code = safex_extract.main(
            [str(archive), "-C", str(other), "--config", str(config), "--strip-components", "0"]
        )
        assert code == 0
        assert (other / "pkg" / "README").exists()

    def test_env_budget_applies(self, archive: Path, dest: Path, monkeypatch):
        monkeypatch.setenv("SAFEX_MAX_BYTES", "4")
        assert safex_extract.main([str(archive), "-C", str(dest)]) == 1

    def test_invalid_config_is_usage_error(self, archive: Path, dest: Path, tmp_path: Path):
        config = tmp_path / "bad.yaml"
        config.write_text("colour: blue\n", encoding="utf-8")
        assert safex_extract.main([str(archive), "-C", str(dest), "--config", str(config)]) == 2

    def test_cancelled_exit_code(self, archive: Path, dest: Path, monkeypatch, capsys):
        class _AlreadyCancelled(CancelToken):
            def __init__(self) -> None:
                super().__init__()
                self.cancel()

        monkeypatch.setattr(safex_extract, "CancelToken", _AlreadyCancelled)
        assert safex_extract.main([str(archive), "-C", str(dest)]) == 130
        assert "cancelled" in capsys.readouterr().err
        assert list(dest.iterdir()) == []

    def test_json_logs(self, archive: Path, dest: Path, capsys):
        code = safex_extract.main(
            [str(archive), "-C", str(dest), "--max-bytes", "1", "--log-format", "json"]
        )
        assert code == 1
        records = [json.loads(line) for line in capsys.readouterr().err.splitlines() if line]
        errors = [r for r in records if r["level"] == "ERROR"]
        assert errors and errors[-1]["logger"] == "safex.extract"


class TestCancellationSources:
    def test_deadline_cancels_token(self):
        token = CancelToken()
        timer = safex_extract._start_deadline(token, 0.01)
        assert timer is not None
        timer.join(5)
        assert token.cancelled

    def test_no_deadline_when_unlimited(self):
        assert safex_extract._start_deadline(CancelToken(), 0) is None

    def test_signal_handler_cancels_token(self):
        token = CancelToken()
        previous = safex_extract._install_signal_handlers(token)
        try:
            handler = signal.getsignal(signal.SIGTERM)
            handler(signal.SIGTERM, None)
        finally:
            safex_extract._restore_signal_handlers(previous)
        assert token.cancelled
        assert signal.getsignal(signal.SIGTERM) == previous[signal.SIGTERM]


class TestDispatcher:
    def test_help(self, capsys):
        assert safex.main(["--help"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("usage: safex <command>")
        for command in ("extract", "detect", "digest"):
            assert command in out
        assert "130  cancelled" in out

    def test_unknown_command(self, capsys):
        assert safex.main(["nope"]) == 2
        captured = capsys.readouterr()
        assert "Unknown command" in captured.err
        assert "usage:" in captured.out

    def test_subcommand_help_uses_safex_prog(self, capsys):
        assert safex.main(["extract", "--help"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("usage: safex extract")
        assert "Safely extract" in out

    def test_bad_arguments_are_usage_errors(self):
        assert safex.main(["detect"]) == 2

    def test_dispatch_detect(self, archive: Path, capsys):
        assert safex.main(["detect", str(archive)]) == 0
        assert capsys.readouterr().out.strip() == "gzip"

    def test_dispatch_extract(self, archive: Path, dest: Path):
        assert safex.main(["extract", str(archive), "-C", str(dest), "--quiet"]) == 0
        assert (dest / "pkg" / "README").exists()

    def test_dispatch_propagates_failure_status(self, archive: Path, dest: Path):
        assert safex.main(["extract", str(archive), "-C", str(dest), "--max-bytes", "1"]) == 1

    @pytest.mark.parametrize(
        "raised,expected",
        [
            (SizeLimitExceededError("too big"), 1),
            (ExtractionCancelledError(), 130),
            (ConfigError("bad key"), 2),
            (KeyboardInterrupt(), 130),
            (RuntimeError("boom"), 2),
        ],
    )
    def test_uncaught_errors_map_to_exit_status(self, monkeypatch, capsys, raised, expected):
        def failing_main(argv, prog=None):
            raise raised

        monkeypatch.setattr(safex, "_load", lambda name: failing_main)
        assert safex.main(["extract", "x"]) == expected
        assert capsys.readouterr().err

    def test_none_result_is_success(self, monkeypatch):
        monkeypatch.setattr(safex, "_load", lambda name: lambda argv, prog=None: None)
        assert safex.main(["digest", "x"]) == 0
