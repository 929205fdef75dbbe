"""Timestamp helpers.

All user facing timestamps are rendered in the Asia/Bangkok zone and stored
as strings so existing records keep their on-disk shape:

``DD-MM-YYYY HH:mm:ss``
    submission and approval timestamps

``DD-MM-YYYY``
    payment deadlines

``DDMMYYYYHHmmss``
    suffix appended to document tags
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

TIMEZONE = ZoneInfo(os.getenv("DOCFLOW_TIMEZONE", "Asia/Bangkok"))

TIMESTAMP_FORMAT = "%d-%m-%Y %H:%M:%S"
DATE_FORMAT = "%d-%m-%Y"
TAG_FORMAT = "%d%m%Y%H%M%S"


def now() -> datetime:
    return datetime.now(TIMEZONE)


def _local(when: datetime | None) -> datetime:
    if when is None:
        return now()
    if when.tzinfo is None:
        return when.replace(tzinfo=TIMEZONE)
    return when.astimezone(TIMEZONE)


def format_timestamp(when: datetime | None = None) -> str:
    return _local(when).strftime(TIMESTAMP_FORMAT)


def format_date(when: datetime | None = None) -> str:
    return _local(when).strftime(DATE_FORMAT)


def tag_suffix(when: datetime | None = None) -> str:
    return _local(when).strftime(TAG_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a ``DD-MM-YYYY HH:mm:ss`` string into an aware datetime.

    Raises :class:`ValueError` for anything that does not match.
    """

    return datetime.strptime(value.strip(), TIMESTAMP_FORMAT).replace(tzinfo=TIMEZONE)


def parse_date(value: str) -> datetime:
    """Parse a ``DD-MM-YYYY`` string; raises :class:`ValueError` when invalid."""

    return datetime.strptime(value.strip(), DATE_FORMAT).replace(tzinfo=TIMEZONE)


def add_days(value: str, days: int) -> str:
    """Shift a ``DD-MM-YYYY`` date by ``days`` and render it back."""

    return format_date(parse_date(value) + timedelta(days=days))


def is_valid_date(value) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parse_date(value)
    except ValueError:
        return False
    return True
