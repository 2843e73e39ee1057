"""Read the bin usage counter from the vacuum's controller config."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

from bin_agent.errors import ReadError

logger = logging.getLogger(__name__)

BIN_TIME_KEY = "bin_in_time"


class ValueProvider(Protocol):
    async def read_value(self) -> str: ...


def parse_bin_time(text: str) -> float:
    """Return the seconds the bin has been in use from ``key = value`` lines."""

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        if key.strip() != BIN_TIME_KEY:
            continue
        cleaned = value.strip().rstrip(";").strip().strip('"')
        try:
            seconds = float(cleaned)
        except ValueError as exc:
            raise ReadError(f"{BIN_TIME_KEY} has a non-numeric value {cleaned!r}") from exc
        if seconds != seconds or seconds < 0:
            raise ReadError(f"{BIN_TIME_KEY} has an invalid value {cleaned!r}")
        return seconds
    raise ReadError(f"{BIN_TIME_KEY} not found")


def format_bin_value(seconds: float, *, full_time: float, unit: str) -> str:
    if unit == "%":
        return f"{seconds / full_time * 100:.0f}"
    if unit == "sec":
        return f"{seconds:.0f}"
    if unit == "min":
        return f"{seconds / 60:.1f}"
    raise ValueError(f"Unsupported measurement unit {unit!r}")


class BinValueProvider:
    def __init__(self, file_path: str | Path, *, full_time: float, unit: str) -> None:
        if full_time <= 0:
            raise ValueError("full_time must be positive")
        format_bin_value(0.0, full_time=full_time, unit=unit)
        self.file_path = Path(file_path)
        self.full_time = float(full_time)
        self.unit = unit

    def read_value_sync(self) -> str:
        try:
            text = self.file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            raise ReadError(f"failed to read {self.file_path}: {exc}") from exc
        try:
            seconds = parse_bin_time(text)
        except ReadError as exc:
            raise ReadError(f"{self.file_path}: {exc}") from exc
        value = format_bin_value(seconds, full_time=self.full_time, unit=self.unit)
        logger.debug("Bin value from %s is %s%s", self.file_path, value, self.unit)
        return value

    async def read_value(self) -> str:
        return await asyncio.to_thread(self.read_value_sync)
