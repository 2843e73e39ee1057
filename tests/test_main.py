from __future__ import annotations

import json

import pytest

from bin_agent import build_info
from bin_agent.main import EXIT_CONFIG, build_parser, load_settings, main


def test_version_flag(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--version"])

    assert excinfo.value.code == 0
    assert build_info.VERSION in capsys.readouterr().out


def test_serve_is_required() -> None:
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args([])

    assert excinfo.value.code == 2


def test_log_level_is_case_insensitive() -> None:
    args = build_parser().parse_args(["serve", "--log-level", "debug"])

    assert args.command == "serve"
    assert args.log_level == "DEBUG"

    with pytest.raises(SystemExit):
        build_parser().parse_args(["serve", "--log-level", "verbose"])


def test_config_accepted_before_and_after_serve() -> None:
    parser = build_parser()

    assert parser.parse_args(["serve", "--config", "agent.json"]).config == "agent.json"
    assert parser.parse_args(["--config", "agent.json", "serve"]).config == "agent.json"
    assert parser.parse_args(["serve"]).config is None


def test_serve_config_option_is_applied(tmp_path, capsys) -> None:
    config = tmp_path / "agent.json"
    config.write_text(json.dumps({"measurement_unit": "hours"}))

    assert main(["serve", "--config", str(config)]) == EXIT_CONFIG
    assert "invalid configuration" in capsys.readouterr().err


def test_config_file_overrides_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("BIN_AGENT_SENSOR_NAME", "envbin")
    monkeypatch.setenv("BIN_AGENT_MEASUREMENT_UNIT", "sec")
    config = tmp_path / "agent.json"
    config.write_text(json.dumps({"sensor_name": "filebin"}))

    settings = load_settings(str(config))

    assert settings.sensor_name == "filebin"
    assert settings.measurement_unit == "sec"


def test_invalid_config_file_exits_with_config_error(tmp_path, capsys) -> None:
    config = tmp_path / "agent.json"
    config.write_text(json.dumps({"mqtt_server": "ws://broker:80"}))

    assert main(["--config", str(config), "serve"]) == EXIT_CONFIG
    assert "invalid configuration" in capsys.readouterr().err


def test_unreadable_config_file_exits_with_config_error(tmp_path, capsys) -> None:
    config_dir = tmp_path / "agent.json"
    config_dir.mkdir()

    assert main(["serve", "--config", str(config_dir)]) == EXIT_CONFIG
    assert "could not be read" in capsys.readouterr().err


def test_unparsable_config_file_exits_with_config_error(tmp_path) -> None:
    config = tmp_path / "agent.json"
    config.write_text("sensor_name=filebin")

    assert main(["--config", str(config), "serve"]) == EXIT_CONFIG
