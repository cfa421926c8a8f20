"""Tests for the command line interface."""

import json

import pytest

from campaign_engine.config import LogLevel, get_testing_config, reset_config
from campaign_engine.startup import create_argument_parser, load_configuration, run_definitions_command

from workflow_builders import build_workflow, message, trigger


@pytest.fixture(autouse=True)
def clean_config():
    reset_config()
    yield
    reset_config()


class TestArgumentParsing:
    """Test CLI options and configuration overrides."""

    def test_overrides_apply_to_preset(self):
        """Test command line options win over the preset."""
        args = create_argument_parser().parse_args([
            "--env", "testing", "--port", "9001", "--log-level", "ERROR",
            "--scheduler-interval", "15", "--no-scheduler", "tick"
        ])

        config = load_configuration(args)

        assert args.command == "tick"
        assert config.port == 9001
        assert config.log_level == LogLevel.ERROR
        assert config.scheduler_interval_seconds == 15.0
        assert config.scheduler_enabled is False

    def test_invalid_override_is_rejected(self):
        """Test overrides are validated like environment settings."""
        args = create_argument_parser().parse_args(["--env", "testing", "--port", "70000"])
        with pytest.raises(ValueError):
            load_configuration(args)

    def test_definition_commands(self):
        """Test definitions subcommands take a path."""
        args = create_argument_parser().parse_args(["definitions", "import", "flows.json", "--activate"])
        assert args.definitions_command == "import"
        assert args.path == "flows.json"
        assert args.activate is True


class TestDefinitionsCommand:
    """Test validating definition files."""

    def write_definitions(self, tmp_path, definitions):
        path = tmp_path / "flows.json"
        path.write_text(json.dumps([d.model_dump(mode="json") for d in definitions]))
        return str(path)

    def test_validate_reports_each_definition(self, tmp_path, capsys):
        """Test valid and invalid definitions are listed."""
        good = build_workflow([trigger(), message()], workflow_id="wf-good")
        bad = build_workflow([trigger(), message(), message(node_id="orphan")],
                             edges=[{"source": "trigger", "target": "welcome"}], workflow_id="wf-bad",
                             status="draft")
        path = self.write_definitions(tmp_path, [good, bad])

        with pytest.raises(SystemExit) as exc_info:
            run_definitions_command("validate", path, get_testing_config())

        assert exc_info.value.code == 1
        output = capsys.readouterr().out
        assert "wf-good: valid" in output
        assert "wf-bad: INVALID" in output

    def test_unreadable_file(self, tmp_path, capsys):
        """Test a missing file exits with an error."""
        with pytest.raises(SystemExit):
            run_definitions_command("validate", str(tmp_path / "missing.json"), get_testing_config())
        assert "Could not read definitions" in capsys.readouterr().out
