"""
Tests for cron arithmetic, one-off time parsing and job id derivation.
"""

from datetime import datetime

import pytest

from alfred.errors import InvalidScheduleError, InvalidTimeError, ValidationError
from alfred.schedule import (
    _translate_day_of_week,
    format_datetime,
    get_next_cron_time,
    is_valid_cron,
    job_id_from_name,
    parse_at_time,
)


def test_every_minute_is_strictly_after():
    now = datetime(2024, 6, 15, 10, 30, 0)
    assert get_next_cron_time("* * * * *", now) == datetime(2024, 6, 15, 10, 31, 0)


def test_mid_minute_rounds_to_next_minute():
    now = datetime(2024, 6, 15, 10, 30, 42)
    assert get_next_cron_time("* * * * *", now) == datetime(2024, 6, 15, 10, 31, 0)


def test_daily_schedule_rolls_over_midnight():
    now = datetime(2024, 6, 15, 23, 0, 0)
    assert get_next_cron_time("30 2 * * *", now) == datetime(2024, 6, 16, 2, 30, 0)


def test_step_values():
    now = datetime(2024, 6, 15, 10, 7, 0)
    assert get_next_cron_time("*/15 * * * *", now) == datetime(2024, 6, 15, 10, 15, 0)


def test_numeric_weekdays_follow_crontab_numbering():
    # 2024-06-15 is a Saturday
    saturday = datetime(2024, 6, 15, 12, 0, 0)
    assert get_next_cron_time("0 9 * * 1", saturday) == datetime(2024, 6, 17, 9, 0, 0)
    assert get_next_cron_time("0 9 * * 0", saturday) == datetime(2024, 6, 16, 9, 0, 0)
    assert get_next_cron_time("0 9 * * 7", saturday) == datetime(2024, 6, 16, 9, 0, 0)
    assert get_next_cron_time("0 9 * * 1-5", saturday) == datetime(2024, 6, 17, 9, 0, 0)


def test_named_weekdays_pass_through():
    assert _translate_day_of_week("mon-fri") == "mon-fri"
    assert _translate_day_of_week("1-5") == "mon,tue,wed,thu,fri"
    assert _translate_day_of_week("0,7") == "sun"
    assert _translate_day_of_week("*/2") == "sun,tue,thu,sat"


@pytest.mark.parametrize("expr", [
    "",
    "* * * *",
    "* * * * * *",
    "61 * * * *",
    "* 25 * * *",
    "* * * * 9",
    "every minute",
])
def test_invalid_cron(expr):
    assert not is_valid_cron(expr)
    with pytest.raises(InvalidScheduleError):
        get_next_cron_time(expr, datetime(2024, 6, 15))


def test_valid_cron():
    assert is_valid_cron("0 9 * * 1-5")
    assert is_valid_cron("*/5 * * * *")


def test_at_time_later_today():
    now = datetime(2024, 6, 15, 10, 0, 0)
    assert parse_at_time("14:30", now) == datetime(2024, 6, 15, 14, 30, 0)


def test_at_time_already_passed_rolls_to_tomorrow():
    now = datetime(2024, 6, 15, 10, 0, 0)
    assert parse_at_time("09:15", now) == datetime(2024, 6, 16, 9, 15, 0)
    # Exactly now counts as passed
    assert parse_at_time("10:00", now) == datetime(2024, 6, 16, 10, 0, 0)


def test_at_time_iso_datetime():
    now = datetime(2024, 6, 15, 10, 0, 0)
    assert parse_at_time("2024-07-01T08:00:00", now) == datetime(2024, 7, 1, 8, 0, 0)
    assert parse_at_time("2024-07-01 08:00", now) == datetime(2024, 7, 1, 8, 0, 0)


@pytest.mark.parametrize("value,message", [
    ("25:00", "Invalid hour: 25"),
    ("12:75", "Invalid minute: 75"),
    ("noon", "Invalid time format"),
    ("2024-13-45T00:00", "Invalid datetime format"),
])
def test_invalid_at_time(value, message):
    with pytest.raises(InvalidTimeError, match=message):
        parse_at_time(value, datetime(2024, 6, 15, 10, 0, 0))


def test_job_id_from_name():
    assert job_id_from_name("My Backup Job!") == "my-backup-job"
    assert job_id_from_name("  nightly__sync  ") == "nightly-sync"
    assert job_id_from_name("build2") == "build2"


def test_job_id_requires_letters_or_digits():
    with pytest.raises(ValidationError):
        job_id_from_name("!!!")


def test_format_datetime():
    assert format_datetime(None) == "-"
    assert format_datetime(datetime(2024, 6, 15, 9, 5, 3)) == "2024-06-15 09:05:03"


def test_restricted_day_fields_match_either():
    # 1st of the month OR any Monday; 2024-06-15 is a Saturday
    assert get_next_cron_time("0 0 1 * 1", datetime(2024, 6, 15, 10, 30)) == datetime(2024, 6, 17, 0, 0)
    # 2024-09-01 is a Sunday, ahead of the next Monday
    assert get_next_cron_time("0 0 1 * 1", datetime(2024, 8, 27, 12, 0)) == datetime(2024, 9, 1, 0, 0)


def test_single_restricted_day_field():
    now = datetime(2024, 6, 15, 10, 30)
    assert get_next_cron_time("0 0 1 * *", now) == datetime(2024, 7, 1, 0, 0)
    assert get_next_cron_time("0 0 * * 1", now) == datetime(2024, 6, 17, 0, 0)


def test_invalid_field_in_either_day_trigger():
    assert not is_valid_cron("0 0 32 * 1")
    assert not is_valid_cron("0 0 1 * 8")
