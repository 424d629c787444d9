"""Tests for the click-based CLI."""

import json
import logging
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from dialog_migrator.cli.commands import cli, handle_exception
from dialog_migrator.core.progress import (
    initialize_dialog,
    load_progress,
    save_progress,
    update_dialog_progress,
)
from dialog_migrator.core.state import create_empty_progress
from dialog_migrator.exceptions import ConfigError, MigrationAbortedError, RateExceededError
from dialog_migrator.types import DialogStatus, DialogType


@pytest.fixture()
def config_file(tmp_path):
    """A config file pointing the progress file into tmp_path."""
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.dump(
            {
                "source_account": "alice",
                "target_recipient": "bob",
                "progress_path": str(tmp_path / "progress.json"),
                "rate_limit": {
                    "batch_delay": 0.0,
                    "min_batch_delay": 0.0,
                    "max_requests_per_minute": 0,
                },
            },
            f,
        )
    return path


@pytest.fixture()
def progress_file(tmp_path):
    return tmp_path / "progress.json"


@pytest.fixture()
def populated(client, conversation_factory, messages_factory):
    client.add_conversation(
        conversation_factory("c1", name="Family", message_count=20), messages_factory(20)
    )
    client.add_conversation(
        conversation_factory("c2", name="Work", dialog_type=DialogType.GROUP, message_count=5),
        messages_factory(5),
    )
    return client


@pytest.fixture()
def saved_progress(progress_file, conversation_factory):
    p = create_empty_progress("alice", "bob")
    p = initialize_dialog(p, conversation_factory("c1", name="Family", message_count=20))
    p = update_dialog_progress(p, "c1", 10, 10)
    save_progress(progress_file, p)
    return p


class TestCLIGroup:
    """Tests for the CLI group structure."""

    def test_cli_has_all_subcommands(self):
        expected = {"migrate", "list", "status", "export", "import", "clean", "reset", "init"}
        assert set(cli.commands.keys()) == expected

    def test_version_flag(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "dialog-migrator" in result.output

    def test_help_output(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("migrate", "list", "status", "export", "import", "clean", "reset"):
            assert command in result.output

    def test_short_help_flag(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["-h"])
        assert result.exit_code == 0
        assert "migrate" in result.output

    def test_leading_flag_defaults_to_migrate(self, config_file, populated, progress_file):
        runner = CliRunner()
        with patch("dialog_migrator.cli.migrate_cmd.build_client", return_value=populated):
            result = runner.invoke(cli, ["--config", str(config_file), "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "DRY RUN SUMMARY" in result.output


class TestMigrateCommand:
    """Tests for the migrate subcommand."""

    def test_help_shows_all_options(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["migrate", "--help"])
        assert result.exit_code == 0
        for opt in [
            "--config",
            "--progress",
            "--verbose",
            "--quiet",
            "--dry-run",
            "--conversation",
            "--from",
            "--to",
            "--report",
        ]:
            assert opt in result.output


    def test_to_help_explains_paging_cutoff(self):
        runner = CliRunner()
        result = runner.invoke(cli, ["migrate", "--help"])
        text = " ".join(result.output.split())
        assert "newer messages ends paging" in text

    def test_dry_run(self, config_file, populated, progress_file):
        runner = CliRunner()
        with patch("dialog_migrator.cli.migrate_cmd.build_client", return_value=populated):
            result = runner.invoke(cli, ["migrate", "--config", str(config_file), "--dry-run"])

        assert result.exit_code == 0, result.output
        assert "Conversations that would be migrated: 2" in result.output
        assert "Estimated messages: 25" in result.output
        assert not progress_file.exists()
        assert populated.calls_to("forward_batch") == []

    def test_full_run_writes_progress_and_report(
        self, config_file, populated, progress_file, tmp_path
    ):
        report_path = tmp_path / "report.yaml"
        runner = CliRunner()
        with patch("dialog_migrator.cli.migrate_cmd.build_client", return_value=populated):
            result = runner.invoke(
                cli,
                ["migrate", "--config", str(config_file), "--quiet", "--report", str(report_path)],
            )

        assert result.exit_code == 0, result.output
        assert "MIGRATION REPORT" in result.output
        progress = load_progress(progress_file).value
        assert progress.stats.completed_dialogs == 2
        assert yaml.safe_load(report_path.read_text())["migration_summary"]["migrated_messages"] == 25
        assert populated.connected is False

    def test_single_conversation(self, config_file, populated, progress_file):
        runner = CliRunner()
        with patch("dialog_migrator.cli.migrate_cmd.build_client", return_value=populated):
            result = runner.invoke(
                cli, ["migrate", "--config", str(config_file), "--conversation", "c2", "-q"]
            )

        assert result.exit_code == 0, result.output
        assert set(load_progress(progress_file).value.dialogs) == {"c2"}

    def test_inverted_date_window_rejected(self, config_file):
        runner = CliRunner()
        result = runner.invoke(
            cli,
            ["migrate", "--config", str(config_file), "--from", "2024-02-01", "--to", "2024-01-01"],
        )
        assert result.exit_code == 2

    def test_malformed_date_rejected(self, config_file):
        runner = CliRunner()
        result = runner.invoke(cli, ["migrate", "--config", str(config_file), "--from", "yesterday"])
        assert result.exit_code == 2
        assert "YYYY-MM-DD" in result.output

    def test_unreadable_progress_exits_with_error(self, config_file, populated, progress_file):
        progress_file.write_text("{broken")
        runner = CliRunner()
        with patch("dialog_migrator.cli.migrate_cmd.build_client", return_value=populated):
            result = runner.invoke(cli, ["migrate", "--config", str(config_file)])

        assert result.exit_code == 1
        assert progress_file.read_text() == "{broken"

    def test_missing_client_factory_exits_with_error(self, config_file):
        runner = CliRunner()
        result = runner.invoke(cli, ["migrate", "--config", str(config_file)])
        assert result.exit_code == 1


class TestListCommand:
    """Tests for the list subcommand."""

    def test_lists_conversations(self, config_file, populated, saved_progress):
        runner = CliRunner()
        with patch("dialog_migrator.cli.list_cmd.build_client", return_value=populated):
            result = runner.invoke(cli, ["list", "--config", str(config_file), "-q"])

        assert result.exit_code == 0, result.output
        assert "Family" in result.output
        assert "Work" in result.output
        assert "in_progress" in result.output
        assert "2 conversations" in result.output

    def test_type_filter(self, config_file, populated):
        runner = CliRunner()
        with patch("dialog_migrator.cli.list_cmd.build_client", return_value=populated):
            result = runner.invoke(cli, ["list", "--config", str(config_file), "--type", "group"])

        assert result.exit_code == 0, result.output
        assert "Work" in result.output
        assert "Family" not in result.output
        assert "1 conversations" in result.output


class TestProgressCommands:
    """Tests for status / export / import / clean / reset."""

    def test_status_without_progress(self, config_file):
        runner = CliRunner()
        result = runner.invoke(cli, ["status", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "No migration progress found" in result.output

    def test_status_with_progress(self, config_file, saved_progress):
        runner = CliRunner()
        result = runner.invoke(cli, ["status", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Family" in result.output
        assert "10/20" in result.output

    def test_export_and_import(self, config_file, saved_progress, tmp_path):
        export_path = tmp_path / "export.json"
        other_progress = tmp_path / "other.json"
        runner = CliRunner()

        exported = runner.invoke(cli, ["export", "--config", str(config_file), str(export_path)])
        assert exported.exit_code == 0, exported.output
        assert json.loads(export_path.read_text())["progress"]["sourceAccount"] == "alice"

        imported = runner.invoke(
            cli,
            [
                "import",
                "--config",
                str(config_file),
                "--progress",
                str(other_progress),
                "--strategy",
                "merge_progress",
                str(export_path),
            ],
        )
        assert imported.exit_code == 0, imported.output
        merged = load_progress(other_progress).value
        assert merged.get_dialog("c1").last_message_id == 10

    def test_import_rejects_bad_file(self, config_file, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"version": "9.9", "startedAt": "x", "dialogs": {}}))
        runner = CliRunner()

        result = runner.invoke(cli, ["import", "--config", str(config_file), str(bad)])

        assert result.exit_code == 1

    def test_clean_force(self, config_file, saved_progress, progress_file):
        runner = CliRunner()
        result = runner.invoke(cli, ["clean", "--config", str(config_file), "--force"])
        assert result.exit_code == 0
        assert not progress_file.exists()

    def test_clean_cancelled(self, config_file, saved_progress, progress_file):
        runner = CliRunner()
        result = runner.invoke(cli, ["clean", "--config", str(config_file)], input="n\n")
        assert result.exit_code == 0
        assert "cancelled" in result.output
        assert progress_file.exists()

    def test_reset_keeps_accounts(self, config_file, saved_progress, progress_file):
        runner = CliRunner()
        result = runner.invoke(cli, ["reset", "--config", str(config_file), "-f"])

        assert result.exit_code == 0
        progress = load_progress(progress_file).value
        assert progress.dialogs == {}
        assert progress.source_account == "alice"
        assert progress.target_account == "bob"


class TestInitCommand:
    """Tests for the init subcommand."""

    def test_creates_config(self, tmp_path):
        path = tmp_path / "new.yaml"
        runner = CliRunner()

        result = runner.invoke(cli, ["init", "--config", str(path)])

        assert result.exit_code == 0
        assert path.exists()

    def test_refuses_to_overwrite(self, config_file):
        runner = CliRunner()
        result = runner.invoke(cli, ["init", "--config", str(config_file)])
        assert result.exit_code == 1


class TestHandleException:
    """Tests for handle_exception()."""

    def test_rate_exceeded(self, caplog):
        with caplog.at_level(logging.INFO, logger="dialog_migrator"):
            handle_exception(RateExceededError(60, "forward_batch"))
        assert "Rate limit exceeded" in caplog.text
        assert "resume" in caplog.text

    def test_migrator_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="dialog_migrator"):
            handle_exception(MigrationAbortedError("Migration aborted: offline"))
        assert "Migration aborted: offline" in caplog.text

    def test_config_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="dialog_migrator"):
            handle_exception(ConfigError("bad batch_size"))
        assert "bad batch_size" in caplog.text

    def test_file_not_found(self, caplog):
        with caplog.at_level(logging.INFO, logger="dialog_migrator"):
            handle_exception(FileNotFoundError("config.yaml"))
        assert "File not found" in caplog.text

    def test_keyboard_interrupt(self, caplog):
        with caplog.at_level(logging.INFO, logger="dialog_migrator"):
            handle_exception(KeyboardInterrupt())
        assert "Interrupted" in caplog.text

    def test_unexpected_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="dialog_migrator"):
            handle_exception(RuntimeError("kaboom"))
        assert "Migration failed: kaboom" in caplog.text


def test_status_shows_dialog_state(config_file, progress_file, conversation_factory):
    p = create_empty_progress()
    p = initialize_dialog(p, conversation_factory("c9", name="Archive"))
    p = update_dialog_progress(p, "c9", 1, 1)
    save_progress(progress_file, p)

    runner = CliRunner()
    result = runner.invoke(cli, ["status", "--config", str(config_file)])

    assert DialogStatus.IN_PROGRESS.value in result.output
