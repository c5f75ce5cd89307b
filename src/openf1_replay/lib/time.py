"""Time helpers shared by the loader, clock and CLI output."""
from datetime import datetime, timezone
from typing import Optional

import pandas as pd


def format_time(seconds) -> str:
    """
    Format a duration in seconds as MM:SS.sss.

    Minutes are not wrapped into hours, so 3600 becomes "60:00.000".
    Returns "N/A" for None or negative values.
    """
    if seconds is None or seconds < 0:
        return "N/A"
    total_ms = int(round(seconds * 1000))
    minutes, rem_ms = divmod(total_ms, 60_000)
    secs, ms = divmod(rem_ms, 1000)
    return f"{minutes:02d}:{secs:02d}.{ms:03d}"


def format_clock(timestamp: Optional[float]) -> str:
    """Format an epoch timestamp as a 24h HH:MM:SS wall clock in UTC."""
    if timestamp is None:
        return "--:--:--"
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%H:%M:%S")


def parse_timestamp(value) -> Optional[float]:
    """
    Parse an ISO-8601 timestamp into epoch seconds.

    Naive timestamps are taken as UTC. Numbers are passed through as
    epoch seconds. Returns None for blank or unparsable input.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, datetime):
        ts = pd.Timestamp(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            ts = pd.Timestamp(text)
        except (ValueError, TypeError):
            return None
    if ts is pd.NaT:
        return None
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.timestamp()


def iso_timestamp(timestamp: float) -> str:
    """Render epoch seconds in the ISO-8601 form the OpenF1 API accepts."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
