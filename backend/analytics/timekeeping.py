"""Clock reconciliation between the MT4 server and the TradingView chart.

MT4 statements print times in the broker server's local clock, which runs at a
fixed offset from UTC. Pine Script's ``timestamp()`` reads its arguments in the
chart's timezone, and needs an extra correction on top of that offset.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

RAW_TIME_RE = re.compile(r"(\d{4})\.(\d{2})\.(\d{2}) (\d{2}):(\d{2}):(\d{2})")


class MalformedTimestamp(ValueError):
    def __init__(self, raw: str):
        self.raw = raw
        super().__init__(f"Malformed timestamp {raw!r}, expected YYYY.MM.DD HH:MM:SS")


@dataclass(frozen=True)
class ClockConfig:
    server_utc_offset: float = 3.0  # MT4 server, most brokers are UTC+2 or UTC+3
    target_utc_offset: float = -6.0  # TradingView chart timezone
    target_timestamp_correction: float = 2.0


DEFAULT_CLOCK = ClockConfig()


class DisplayTimestamp(NamedTuple):
    year: int
    month: int
    day: int
    hours: int
    minutes: int


def clock_from_settings() -> ClockConfig:
    """Build the clock from ``settings.REPORT_CLOCK`` (missing keys keep defaults)."""
    from django.conf import settings

    conf = getattr(settings, "REPORT_CLOCK", None) or {}
    return ClockConfig(
        server_utc_offset=float(conf.get("SERVER_UTC_OFFSET", DEFAULT_CLOCK.server_utc_offset)),
        target_utc_offset=float(conf.get("TARGET_UTC_OFFSET", DEFAULT_CLOCK.target_utc_offset)),
        target_timestamp_correction=float(
            conf.get("TARGET_TIMESTAMP_CORRECTION", DEFAULT_CLOCK.target_timestamp_correction)
        ),
    )


def to_absolute_instant(raw: str, clock: ClockConfig = DEFAULT_CLOCK) -> datetime:
    """Turn a server-local ``YYYY.MM.DD HH:MM:SS`` string into an aware UTC datetime."""
    m = RAW_TIME_RE.fullmatch(raw or "")
    if not m:
        raise MalformedTimestamp(raw)
    try:
        pseudo_utc = datetime(*(int(g) for g in m.groups()), tzinfo=timezone.utc)
    except ValueError:
        # digits in the right places but not a calendar date (e.g. month 13)
        raise MalformedTimestamp(raw) from None
    return pseudo_utc - timedelta(hours=clock.server_utc_offset)


def to_display_timestamp(instant: datetime, clock: ClockConfig = DEFAULT_CLOCK) -> DisplayTimestamp:
    shifted = instant.astimezone(timezone.utc) + timedelta(
        hours=clock.target_utc_offset + clock.target_timestamp_correction
    )
    return DisplayTimestamp(shifted.year, shifted.month, shifted.day, shifted.hour, shifted.minute)


def to_display(raw: str, clock: ClockConfig = DEFAULT_CLOCK) -> DisplayTimestamp:
    return to_display_timestamp(to_absolute_instant(raw, clock), clock)
