"""Tests for the franz-writer command line."""

import importlib
import json
import os

import click
import pytest
import yaml
from click.testing import CliRunner
from rich.console import Console

from franz_wizard import __version__
from franz_wizard.cli.main import cli, collect_inputs, parse_input_value

# The package re-exports the entry point under the same name
cli_module = importlib.import_module("franz_wizard.cli.main")


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith(("FRANZ_", "AI_RETRY_")) or name in ("GEMINI_API_KEY", "GOOGLE_API_KEY"):
            monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    # Keep table cells on one line
    monkeypatch.setattr(cli_module, "console", Console(width=200))


@pytest.fixture
def file_store(monkeypatch, temp_dir):
    path = temp_dir / "documents"
    monkeypatch.setenv("FRANZ_DOCUMENT_STORE", "file")
    monkeypatch.setenv("FRANZ_DOCUMENT_PATH", str(path))
    return path


class TestInputParsing:

    def test_values(self, temp_dir):
        data_file = temp_dir / "details.yaml"
        data_file.write_text("style: haiku\nlines: 3\n")

        assert parse_input_value("rain on the roof") == "rain on the roof"
        assert parse_input_value('{"style": "sonnet"}') == {"style": "sonnet"}
        assert parse_input_value(f"@{data_file}") == {"style": "haiku", "lines": 3}

    def test_collect(self, temp_dir):
        inputs_file = temp_dir / "inputs.json"
        inputs_file.write_text(json.dumps({"poem-topic": "snow", "poem-details": {"style": "haiku"}}))

        inputs = collect_inputs(("poem-topic=rain",), str(inputs_file))

        assert inputs == {"poem-topic": "rain", "poem-details": {"style": "haiku"}}

    def test_bad_pair(self):
        with pytest.raises(click.BadParameter):
            collect_inputs(("no-equals-sign",), None)


class TestWorkflowCommands:

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_list(self, runner):
        result = runner.invoke(cli, ["workflows", "list"])

        assert result.exit_code == 0
        assert "poem-generation" in result.output
        assert "press-release" in result.output

    def test_show(self, runner):
        result = runner.invoke(cli, ["workflows", "show", "poem"])

        assert result.exit_code == 0
        assert "Poem Generator" in result.output
        assert "poem-topic" in result.output

    def test_show_unknown(self, runner):
        result = runner.invoke(cli, ["workflows", "show", "missing"])

        assert result.exit_code == 1
        assert "Workflow not found" in result.output

    def test_validate(self, runner, temp_dir, workflow_data):
        good = temp_dir / "good.yaml"
        good.write_text(yaml.safe_dump(workflow_data))

        result = runner.invoke(cli, ["workflows", "validate", str(good)])

        assert result.exit_code == 0
        assert "simple" in result.output

    def test_validate_reports_errors(self, runner, temp_dir, workflow_data):
        workflow_data["stages"][2]["dependencies"] = ["topic", "nowhere"]
        (temp_dir / "bad.yaml").write_text(yaml.safe_dump(workflow_data))

        result = runner.invoke(cli, ["workflows", "validate", str(temp_dir)])

        assert result.exit_code == 1
        assert "nowhere" in result.output

    def test_workflows_dir_from_settings(self, runner, temp_dir, workflow_data):
        workflows_dir = temp_dir / "workflows"
        workflows_dir.mkdir()
        (workflows_dir / "simple.yaml").write_text(yaml.safe_dump(workflow_data))
        settings_file = temp_dir / "settings.yaml"
        settings_file.write_text(yaml.safe_dump({"workflows_dir": str(workflows_dir)}))

        result = runner.invoke(cli, ["--settings", str(settings_file), "workflows", "list"])

        assert result.exit_code == 0
        assert "simple" in result.output

    def test_missing_settings_file(self, runner, temp_dir):
        result = runner.invoke(cli, ["--settings", str(temp_dir / "nope.yaml"), "workflows", "list"])

        assert result.exit_code == 1
        assert "Cannot load settings" in result.output


class TestRunCommand:

    def test_run_poem(self, runner, temp_dir):
        record_file = temp_dir / "record.json"

        result = runner.invoke(cli, ["run", "poem", "-i", "poem-topic=rain", "-o", str(record_file)])

        assert result.exit_code == 0, result.output
        record = json.loads(record_file.read_text())
        states = record["stage_states"]
        assert states["poem-topic"]["output"] == "rain"
        assert states["poem-details"]["output"] == {"style": "free verse", "lines": "12"}
        assert states["generate-poem-with-title"]["status"] == "completed"
        assert states["generate-poem-image"]["output"]["images"]
        assert states["export-poem"]["status"] == "completed"
        assert "markdown" in states["export-poem"]["output"]["formats"]
        assert record["document"]["status"] == "completed"

    def test_run_stops_without_input(self, runner):
        result = runner.invoke(cli, ["run", "poem"])

        assert result.exit_code == 0
        assert "Stopped at stage 'poem-topic'" in result.output

    def test_unknown_stage_input(self, runner):
        result = runner.invoke(cli, ["run", "poem", "-i", "nowhere=x"])

        assert result.exit_code == 2
        assert "unknown stage(s) in inputs: nowhere" in result.output

    def test_unknown_workflow(self, runner):
        result = runner.invoke(cli, ["run", "missing"])

        assert result.exit_code == 1
        assert "Run failed" in result.output


class TestDocumentCommands:

    def test_document_lifecycle(self, runner, temp_dir, file_store):
        record_file = temp_dir / "record.json"
        result = runner.invoke(cli, ["run", "poem", "-i", "poem-topic=rain", "-o", str(record_file)])
        assert result.exit_code == 0, result.output
        document_id = json.loads(record_file.read_text())["document"]["id"]
        assert (file_store / f"{document_id}.json").exists()

        result = runner.invoke(cli, ["documents", "list"])
        assert result.exit_code == 0
        assert "poem-generation" in result.output

        result = runner.invoke(cli, ["documents", "show", document_id, "--stage", "poem-topic"])
        assert result.exit_code == 0
        assert result.output.strip() == "rain"

        result = runner.invoke(cli, ["documents", "delete", document_id])
        assert result.exit_code == 0
        assert not (file_store / f"{document_id}.json").exists()

    def test_show_missing(self, runner, file_store):
        result = runner.invoke(cli, ["documents", "show", "missing"])

        assert result.exit_code == 1
        assert "Document not found" in result.output

    def test_memory_store_warning(self, runner):
        result = runner.invoke(cli, ["documents", "list"])

        assert result.exit_code == 0
        assert "in-memory store" in result.output
