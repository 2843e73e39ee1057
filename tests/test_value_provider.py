from __future__ import annotations

import asyncio

import pytest

from bin_agent.errors import ReadError
from bin_agent.services.value_provider import BinValueProvider, format_bin_value, parse_bin_time

CONTROLLER_CFG = """\
# RoboController configuration
language = 1;
bin_in_time = 1200;
volume = 90
"""


def test_parse_bin_time_tolerates_controller_syntax() -> None:
    assert parse_bin_time(CONTROLLER_CFG) == 1200.0
    assert parse_bin_time('bin_in_time="30"') == 30.0
    assert parse_bin_time("  bin_in_time   =   7.5  ") == 7.5


@pytest.mark.parametrize(
    "text",
    ["", "language = 1;", "bin_in_time = soon;", "bin_in_time = -5", "# bin_in_time = 10"],
)
def test_parse_bin_time_rejects_unusable_content(text: str) -> None:
    with pytest.raises(ReadError):
        parse_bin_time(text)


def test_format_bin_value_per_unit() -> None:
    assert format_bin_value(1200, full_time=2400, unit="%") == "50"
    assert format_bin_value(3600, full_time=2400, unit="%") == "150"
    assert format_bin_value(1200, full_time=2400, unit="sec") == "1200"
    assert format_bin_value(1230, full_time=2400, unit="min") == "20.5"
    with pytest.raises(ValueError):
        format_bin_value(1, full_time=2400, unit="hours")


def test_provider_reads_file_off_the_event_loop(tmp_path) -> None:
    cfg = tmp_path / "RoboController.cfg"
    cfg.write_text(CONTROLLER_CFG)
    provider = BinValueProvider(cfg, full_time=2400, unit="%")

    assert asyncio.run(provider.read_value()) == "50"

    cfg.write_text("bin_in_time = 0;\n")
    assert provider.read_value_sync() == "0"


def test_provider_wraps_missing_file(tmp_path) -> None:
    provider = BinValueProvider(tmp_path / "missing.cfg", full_time=2400, unit="sec")

    with pytest.raises(ReadError, match="missing.cfg"):
        asyncio.run(provider.read_value())


def test_provider_rejects_bad_configuration(tmp_path) -> None:
    with pytest.raises(ValueError):
        BinValueProvider(tmp_path / "x.cfg", full_time=0, unit="%")
    with pytest.raises(ValueError):
        BinValueProvider(tmp_path / "x.cfg", full_time=2400, unit="hours")
