"""Tests for the vaultmirror and vaultmirror-seal commands."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from vaultmirror.cli import main, seal_main
from vaultmirror.config import sealed_ref
from vaultmirror.credentials import CredentialVault
from vaultmirror.exceptions import AuthError
from vaultmirror.models import (
    Category,
    CategoryReport,
    PurgeReport,
    RunStatus,
    SyncRun,
)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    home = tmp_path / ".vaultmirror"
    home.mkdir()
    return home


@pytest.fixture
def mock_orchestrator():
    """Patch the orchestrator and logging setup used by the CLI."""
    with patch("vaultmirror.cli.SyncOrchestrator") as mock_cls, patch(
        "vaultmirror.cli.configure_logging", return_value=None
    ):
        yield mock_cls


def _finished(status: RunStatus, dry_run: bool = False, failed: int = 0) -> SyncRun:
    report = PurgeReport(dry_run=dry_run)
    report.categories[Category.FOLDER] = CategoryReport(
        category=Category.FOLDER, attempted=2, succeeded=2 - failed, failed=failed
    )
    return SyncRun(status=status, dry_run=dry_run, purge=report)


class TestMain:
    """The sync command."""

    def test_success(self, runner: CliRunner, home: Path, mock_orchestrator) -> None:
        mock_orchestrator.return_value.run.return_value = _finished(RunStatus.SUCCEEDED)

        result = runner.invoke(main, ["--home", str(home)])

        assert result.exit_code == 0, result.output
        assert "Sync Summary" in result.output
        assert "SUCCEEDED" in result.output

    def test_dry_run_and_overrides(self, runner: CliRunner, home: Path, mock_orchestrator) -> None:
        mock_orchestrator.return_value.run.return_value = _finished(RunStatus.SUCCEEDED, dry_run=True)

        result = runner.invoke(main, [
            "--home", str(home),
            "--dry-run",
            "--delay", "0.5",
            "--source-account", "src@example.org",
            "--dest-server", "https://mirror.example.org",
            "--verify-archive",
        ])

        assert result.exit_code == 0, result.output
        settings = mock_orchestrator.call_args.args[0]
        assert settings.dry_run is True
        assert settings.rate_limit_delay == 0.5
        assert settings.source.account_id == "src@example.org"
        assert settings.destination.server_url == "https://mirror.example.org"
        assert settings.verify_archive_before_purge is True
        assert "Dry-Run Summary" in result.output

    def test_config_file_values(self, runner: CliRunner, home: Path, mock_orchestrator) -> None:
        (home / "config.yaml").write_text("rate_limit_delay: 0.7\n")
        mock_orchestrator.return_value.run.return_value = _finished(RunStatus.SUCCEEDED)

        runner.invoke(main, ["--home", str(home)])

        assert mock_orchestrator.call_args.args[0].rate_limit_delay == 0.7

    def test_partial_exits_one(self, runner: CliRunner, home: Path, mock_orchestrator) -> None:
        mock_orchestrator.return_value.run.return_value = _finished(RunStatus.PARTIAL, failed=1)

        result = runner.invoke(main, ["--home", str(home), "--apply"])

        assert result.exit_code == 1
        assert "PARTIAL" in result.output

    def test_fatal_error_exit_code(self, runner: CliRunner, home: Path, mock_orchestrator) -> None:
        instance = mock_orchestrator.return_value
        instance.run.side_effect = AuthError("Login rejected", target="destination")
        instance.last_run = SyncRun(status=RunStatus.FAILED, error="Login rejected", error_type="AuthError")

        result = runner.invoke(main, ["--home", str(home)])

        assert result.exit_code == AuthError.exit_code
        assert "FAILED" in result.output
        assert "Login rejected" in result.output

    def test_keyboard_interrupt(self, runner: CliRunner, home: Path, mock_orchestrator) -> None:
        instance = mock_orchestrator.return_value
        instance.run.side_effect = KeyboardInterrupt
        instance.last_run = SyncRun(status=RunStatus.INTERRUPTED)

        result = runner.invoke(main, ["--home", str(home)])

        assert result.exit_code == 130

    def test_bad_config_exits_two(self, runner: CliRunner, home: Path, mock_orchestrator) -> None:
        (home / "config.yaml").write_text("source: [unclosed\n")

        result = runner.invoke(main, ["--home", str(home)])

        assert result.exit_code == 2
        mock_orchestrator.assert_not_called()

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "vaultmirror" in result.output


class TestSeal:
    """The credential sealing command."""

    def test_seal_with_new_key(self, runner: CliRunner, home: Path) -> None:
        result = runner.invoke(
            seal_main,
            ["source_master_passphrase", "--home", str(home), "--generate-key"],
            input="hunter2\n",
        )

        assert result.exit_code == 0, result.output
        assert "Sealed" in result.output
        ref = sealed_ref(home, "source_master_passphrase")
        assert CredentialVault().unseal_ref(ref) == "hunter2"

    def test_seal_custom_paths(self, runner: CliRunner, tmp_path: Path, home: Path) -> None:
        key = tmp_path / "k.key"
        out = tmp_path / "out.enc"
        result = runner.invoke(
            seal_main,
            ["archive_passphrase", "--home", str(home), "--key-file", str(key), "-o", str(out), "--generate-key"],
            input="pass phrase",
        )

        assert result.exit_code == 0, result.output
        assert CredentialVault().unseal(out, key.read_bytes()) == "pass phrase"

    def test_empty_secret(self, runner: CliRunner, home: Path) -> None:
        result = runner.invoke(
            seal_main, ["archive_passphrase", "--home", str(home), "--generate-key"], input="\n"
        )
        assert result.exit_code == 2
        assert not sealed_ref(home, "archive_passphrase").sealed_file.exists()

    def test_missing_key_file(self, runner: CliRunner, home: Path) -> None:
        result = runner.invoke(seal_main, ["archive_passphrase", "--home", str(home)], input="x")
        assert result.exit_code == 2
        assert "Cannot read key file" in result.output

    def test_unknown_name(self, runner: CliRunner, home: Path) -> None:
        result = runner.invoke(seal_main, ["root_password", "--home", str(home)], input="x")
        assert result.exit_code == 2
