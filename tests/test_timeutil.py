from datetime import datetime, timezone

import pytest

from docflow import timeutil


def test_format_timestamp_uses_bangkok_time():
    when = datetime(2024, 3, 5, 17, 4, 9, tzinfo=timezone.utc)
    # UTC+7, rolls over to the next day
    assert timeutil.format_timestamp(when) == "06-03-2024 00:04:09"
    assert timeutil.format_date(when) == "06-03-2024"
    assert timeutil.tag_suffix(when) == "06032024000409"


def test_naive_datetimes_are_taken_as_local():
    assert timeutil.format_timestamp(datetime(2024, 1, 2, 3, 4, 5)) == "02-01-2024 03:04:05"


def test_parse_timestamp_roundtrip_keeps_zone():
    parsed = timeutil.parse_timestamp("31-12-2023 23:59:59")
    assert parsed.tzinfo is timeutil.TIMEZONE
    assert (parsed.year, parsed.month, parsed.day) == (2023, 12, 31)
    assert timeutil.format_timestamp(parsed) == "31-12-2023 23:59:59"


@pytest.mark.parametrize("value", ["2023-12-31 23:59:59", "31/12/2023 23:59:59", "31-12-2023"])
def test_parse_timestamp_is_strict(value):
    with pytest.raises(ValueError):
        timeutil.parse_timestamp(value)


def test_add_days_crosses_month_boundary():
    assert timeutil.add_days("15-01-2024", 30) == "14-02-2024"
    assert timeutil.add_days("14-02-2024", 30) == "15-03-2024"


def test_is_valid_date():
    assert timeutil.is_valid_date("29-02-2024")
    assert not timeutil.is_valid_date("30-02-2024")
    assert not timeutil.is_valid_date("")
    assert not timeutil.is_valid_date(None)
    assert not timeutil.is_valid_date("Not specified")
