"""Timestamp parsing and canonical ISO-8601 rendering.

Every persisted data point is keyed by its exact instant, so both the
extractors and the persister must render dates identically: UTC, ``Z``
suffix, milliseconds only when the instant has them. Precision stops at the
millisecond, so two instants less than 1 ms apart share a key.
"""

import re
from typing import Optional

import pandas as pd
import pytz

from healthsync.config.settings import LOCAL_TIMEZONE

_local_tz = pytz.timezone(LOCAL_TIMEZONE)

# Apple Health writes "2024-01-01 10:00:00 -0500"; stored histories use ISO-8601
EXPORT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S %z"
DATE_FORMATS = (EXPORT_DATE_FORMAT, "ISO8601")

# pandas resolves words like "now" and "today" even with an explicit format
_CALENDAR_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")


def parse_timestamp(value, local_tz=None) -> Optional[pd.Timestamp]:
    """
    Parse an export or stored timestamp into a UTC pandas Timestamp.

    Accepts Apple Health's ``2024-01-01 10:00:00 -0500`` form and ISO-8601,
    nothing else. Naive values are localized to LOCAL_TIMEZONE.

    Returns:
        UTC Timestamp, or None if the value is empty or unparseable
    """
    if value is None:
        return None
    value = str(value).strip()
    if not _CALENDAR_DATE.match(value):
        return None

    for date_format in DATE_FORMATS:
        try:
            timestamp = pd.to_datetime(value, format=date_format)
            break
        except (ValueError, TypeError, OverflowError):
            continue
    else:
        return None

    if pd.isna(timestamp):
        return None

    if timestamp.tzinfo is None:
        timestamp = (local_tz or _local_tz).localize(timestamp)
    return timestamp.astimezone(pytz.UTC)


def format_timestamp(timestamp: pd.Timestamp) -> str:
    """Render a UTC timestamp as ``YYYY-MM-DDTHH:MM:SS[.mmm]Z``; sub-millisecond digits are dropped."""
    base = timestamp.strftime("%Y-%m-%dT%H:%M:%S")
    millis = timestamp.microsecond // 1000
    if millis:
        return f"{base}.{millis:03d}Z"
    return f"{base}Z"


def normalize_timestamp(value, local_tz=None) -> Optional[str]:
    """Parse ``value`` and return its canonical string, or None."""
    timestamp = parse_timestamp(value, local_tz=local_tz)
    if timestamp is None:
        return None
    return format_timestamp(timestamp)
