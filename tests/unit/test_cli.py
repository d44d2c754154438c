"""Unit tests for CLI interface."""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from modgate import __version__
from modgate.gateway.main import main
from tests.fixtures.sample_data import VALID_KEY

NO_KEY_ENV = {"CURSEFORGE_API_KEY": None, "MODGATE_API_KEY": None}


@pytest.fixture
def config_path(tmp_path):
    """Config file path that does not exist, so only defaults apply."""
    return str(tmp_path / "absent.yaml")


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])

    assert result.exit_code == 0
    assert "modgate" in result.output
    assert "--config" in result.output
    for command in ("serve", "search", "health", "check-key"):
        assert command in result.output


def test_cli_version():
    result = CliRunner().invoke(main, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


class TestCheckKey:

    def test_valid_key_from_env(self, config_path):
        result = CliRunner().invoke(
            main,
            ["--config", config_path, "check-key"],
            env={**NO_KEY_ENV, "CURSEFORGE_API_KEY": VALID_KEY},
        )

        assert result.exit_code == 0
        assert "configured successfully" in result.output
        assert "Source: env" in result.output
        assert "Key length: 32" in result.output

    def test_missing_key(self, config_path):
        result = CliRunner().invoke(main, ["--config", config_path, "check-key"], env=NO_KEY_ENV)

        assert result.exit_code == 1
        assert "No API key found" in result.output


class TestSearch:

    def test_prints_result_table(self, config_path, make_gateway):
        with patch("modgate.gateway.main.build_gateway", side_effect=lambda config: make_gateway()):
            result = CliRunner().invoke(
                main, ["--config", config_path, "search", "building", "--page-size", "5"]
            )

        assert result.exit_code == 0, result.output
        assert "Building" in result.output
        assert "Source: api" in result.output

    def test_error_exits_nonzero(self, config_path, make_gateway):
        with patch("modgate.gateway.main.build_gateway",
                   side_effect=lambda config: make_gateway(api_key="short")):
            result = CliRunner().invoke(main, ["--config", config_path, "search", "building"])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_rejects_unknown_sort(self, config_path):
        result = CliRunner().invoke(main, ["--config", config_path, "search", "x", "--sort", "bogus"])
        assert result.exit_code == 2


class TestHealth:

    def test_degraded_report_exits_zero(self, config_path, make_gateway):
        with patch("modgate.gateway.main.build_gateway", side_effect=lambda config: make_gateway()):
            result = CliRunner().invoke(main, ["--config", config_path, "health"])

        assert result.exit_code == 0, result.output
        assert "Status: degraded" in result.output
        assert "Health Checks" in result.output

    def test_unhealthy_report_exits_one(self, config_path, make_gateway):
        with patch("modgate.gateway.main.build_gateway",
                   side_effect=lambda config: make_gateway(api_key=None)):
            result = CliRunner().invoke(main, ["--config", config_path, "health"])

        assert result.exit_code == 1
        assert "Status: unhealthy" in result.output


class TestServe:

    def test_runs_uvicorn_with_overrides(self, config_path):
        with patch("uvicorn.run") as run:
            result = CliRunner().invoke(
                main,
                ["--config", config_path, "--log-level", "debug", "serve", "--port", "9999"],
                env=NO_KEY_ENV,
            )

        assert result.exit_code == 0, result.output
        kwargs = run.call_args.kwargs
        assert kwargs["port"] == 9999
        assert kwargs["host"] == "127.0.0.1"
        assert kwargs["log_level"] == "debug"
