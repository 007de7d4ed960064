"""Tests for the command-line interface."""

import logging
from unittest.mock import MagicMock, patch

import pytest
import yaml

from convoflow import __version__
from convoflow.cli import SAMPLE_FLOW, build_parser, main
from convoflow.core.config import ConvoflowConfig
from convoflow.flows.validation import validate_flow_file


@pytest.fixture(autouse=True)
def restore_root_handlers():
    """Commands that configure logging replace the root handlers."""
    handlers = logging.root.handlers[:]
    level = logging.root.level
    yield
    logging.root.handlers = handlers
    logging.root.setLevel(level)


@pytest.fixture
def sqlite_config(tmp_path):
    path = tmp_path / "convoflow.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "database": {"url": f"sqlite:///{tmp_path / 'convoflow.db'}"},
                "scheduler": {"enabled": False},
                "api": {"enabled": False},
            }
        ),
        encoding="utf-8",
    )
    return path


class TestCliParsing:
    """Tests for the argument parsing logic."""

    def test_no_args_prints_help(self, capsys):
        with pytest.raises(SystemExit) as e:
            main([])
        assert e.value.code == 0
        assert "usage: convoflow" in capsys.readouterr().out

    def test_version_flag(self, capsys):
        with pytest.raises(SystemExit) as e:
            main(["--version"])
        assert e.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_serve_command_args(self):
        args = build_parser().parse_args(
            ["serve", "-c", "my.yaml", "--host", "127.0.0.1", "-p", "9999", "-d", "--no-api"]
        )
        assert args.command == "serve"
        assert args.config == "my.yaml"
        assert args.host == "127.0.0.1"
        assert args.port == 9999
        assert args.debug is True
        assert args.no_api is True

    def test_init_defaults(self):
        args = build_parser().parse_args(["init"])
        assert args.output == "convoflow.yaml"
        assert args.flow is None
        assert args.force is False


class TestInitCommand:
    """Tests for ``convoflow init``."""

    def test_writes_loadable_config_and_valid_flow(self, tmp_path):
        config_path = tmp_path / "convoflow.yaml"
        flow_path = tmp_path / "flows" / "welcome.yaml"

        exit_code = main(["init", "-o", str(config_path), "--flow", str(flow_path), "--force"])

        assert exit_code == 0
        config = ConvoflowConfig.load(config_path)
        assert config.get_template("tpl_welcome_back").body == "Welcome back, {{name}}!"
        assert validate_flow_file(flow_path) == (True, [])
        assert yaml.safe_load(flow_path.read_text(encoding="utf-8"))["id"] == SAMPLE_FLOW["id"]

    def test_existing_file_is_kept_when_declined(self, tmp_path):
        config_path = tmp_path / "convoflow.yaml"
        config_path.write_text("keep: me\n", encoding="utf-8")

        with patch("builtins.input", return_value="n"):
            exit_code = main(["init", "-o", str(config_path)])

        assert exit_code == 0
        assert config_path.read_text(encoding="utf-8") == "keep: me\n"


class TestValidateCommand:
    """Tests for ``convoflow validate``."""

    def test_valid_flow(self, tmp_path):
        path = tmp_path / "flow.yaml"
        path.write_text(yaml.safe_dump(SAMPLE_FLOW), encoding="utf-8")

        assert main(["validate", str(path)]) == 0

    def test_invalid_flow(self, tmp_path):
        flow = dict(SAMPLE_FLOW)
        flow["steps"] = [dict(step) for step in SAMPLE_FLOW["steps"]]
        flow["steps"][-1]["nextStepId"] = "greet"
        path = tmp_path / "flow.yaml"
        path.write_text(yaml.safe_dump(flow), encoding="utf-8")

        assert main(["validate", str(path)]) == 1

    def test_nothing_to_validate(self):
        assert main(["validate"]) == 1

    def test_config_file(self, sqlite_config, tmp_path):
        assert main(["validate", "--config", str(sqlite_config)]) == 0
        assert main(["validate", "--config", str(tmp_path / "missing.yaml")]) == 1


class TestServeCommand:
    """Tests for ``convoflow serve``."""

    def test_missing_config(self, tmp_path, capsys):
        assert main(["serve", "-c", str(tmp_path / "missing.yaml")]) == 1
        assert "convoflow init" in capsys.readouterr().out

    def test_starts_and_waits(self, sqlite_config):
        runtime = MagicMock()
        with patch("convoflow.cli.commands.AutomationRuntime", return_value=runtime) as factory:
            exit_code = main(["serve", "-c", str(sqlite_config), "-p", "9100", "--no-api"])

        assert exit_code == 0
        config = factory.call_args.args[0]
        assert config.api.port == 9100
        runtime.start.assert_called_once_with(serve_api=False)
        runtime.wait.assert_called_once()

    def test_runtime_failure(self, sqlite_config):
        runtime = MagicMock()
        runtime.start.side_effect = RuntimeError("port in use")
        with patch("convoflow.cli.commands.AutomationRuntime", return_value=runtime):
            assert main(["serve", "-c", str(sqlite_config)]) == 1


class TestSweepCommand:
    """Tests for ``convoflow sweep``."""

    def test_sweep_on_empty_database(self, sqlite_config, capsys):
        assert main(["sweep", "-c", str(sqlite_config)]) == 0
        assert "Timer sweep" in capsys.readouterr().out

    def test_sweep_missing_config(self, tmp_path):
        assert main(["sweep", "-c", str(tmp_path / "missing.yaml")]) == 1
