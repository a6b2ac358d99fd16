import os
import sys
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from repairmatch.services.working_hours import (
    DEFAULT_WORKING_HOURS,
    WorkingHoursConfig,
    format_working_hours_label,
    is_within_working_hours,
    normalize_time_value,
    parse_working_hours,
)

BUENOS_AIRES = "America/Argentina/Buenos_Aires"


def test_legacy_text_with_weekdays_and_saturday():
    config = parse_working_hours("Lun a Vie 9:00 a 18:00, Sab 9:00 a 13:00")
    assert config.weekday_from == "09:00"
    assert config.weekday_to == "18:00"
    assert config.saturday_enabled is True
    assert config.saturday_from == "09:00"
    assert config.saturday_to == "13:00"
    assert config.sunday_enabled is False


def test_legacy_text_with_accents_and_sunday():
    config = parse_working_hours("Lunes a Viernes 8:30 - 17:00. Sábado 10:00 hasta 14:00. Domingo 10:00 a 12:00")
    assert (config.weekday_from, config.weekday_to) == ("08:30", "17:00")
    assert config.saturday_enabled and (config.saturday_from, config.saturday_to) == ("10:00", "14:00")
    assert config.sunday_enabled and (config.sunday_from, config.sunday_to) == ("10:00", "12:00")


def test_legacy_text_without_day_labels_uses_first_range_for_weekdays():
    config = parse_working_hours("de 7:00 a 15:00")
    assert (config.weekday_from, config.weekday_to) == ("07:00", "15:00")
    assert config.saturday_enabled is False


def test_structured_config_and_fallbacks():
    config = parse_working_hours(
        '{"weekday": {"from": "8:00", "to": "25:00"}, "saturday": {"enabled": true}, "sunday": "closed"}'
    )
    assert config.weekday_from == "08:00"
    assert config.weekday_to == "18:00"
    assert config.saturday_enabled is True
    assert (config.saturday_from, config.saturday_to) == ("09:00", "13:00")
    assert config.sunday_enabled is False


@pytest.mark.parametrize("raw", [None, "", "   ", "cuando pueda", "[1, 2]"])
def test_unreadable_config_uses_defaults(raw):
    assert parse_working_hours(raw) == DEFAULT_WORKING_HOURS


def test_normalize_time_value():
    assert normalize_time_value("7:05", "09:00") == "07:05"
    assert normalize_time_value("23:60", "09:00") == "09:00"
    assert normalize_time_value(None, "18:00") == "18:00"


def test_boundaries_are_inclusive_in_local_time():
    config = DEFAULT_WORKING_HOURS
    # Buenos Aires is UTC-3 all year; 2026-03-04 is a Wednesday.
    assert is_within_working_hours(config, datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc), BUENOS_AIRES)
    assert is_within_working_hours(config, datetime(2026, 3, 4, 21, 0, tzinfo=timezone.utc), BUENOS_AIRES)
    assert not is_within_working_hours(config, datetime(2026, 3, 4, 11, 59, tzinfo=timezone.utc), BUENOS_AIRES)
    assert not is_within_working_hours(config, datetime(2026, 3, 4, 21, 1, tzinfo=timezone.utc), BUENOS_AIRES)


def test_naive_datetimes_are_read_as_utc():
    assert is_within_working_hours(DEFAULT_WORKING_HOURS, datetime(2026, 3, 4, 12, 0), BUENOS_AIRES)


def test_weekend_days_follow_enable_flags():
    saturday_morning = datetime(2026, 3, 7, 13, 0, tzinfo=timezone.utc)
    sunday_morning = datetime(2026, 3, 8, 13, 0, tzinfo=timezone.utc)
    assert not is_within_working_hours(DEFAULT_WORKING_HOURS, saturday_morning, BUENOS_AIRES)
    assert is_within_working_hours(WorkingHoursConfig(saturday_enabled=True), saturday_morning, BUENOS_AIRES)
    assert not is_within_working_hours(WorkingHoursConfig(saturday_enabled=True), sunday_morning, BUENOS_AIRES)


def test_local_day_is_used_across_midnight_utc():
    # Saturday 01:00 UTC is still Friday 22:00 in Buenos Aires.
    late_friday = datetime(2026, 3, 7, 1, 0, tzinfo=timezone.utc)
    config = WorkingHoursConfig(weekday_from="20:00", weekday_to="23:00")
    assert is_within_working_hours(config, late_friday, BUENOS_AIRES)
    assert not is_within_working_hours(config, late_friday, "UTC")


def test_format_label():
    assert format_working_hours_label(DEFAULT_WORKING_HOURS) == "Lun a Vie 09:00 - 18:00"
    config = parse_working_hours("Lun a Vie 9:00 a 18:00, Sab 9:00 a 13:00")
    assert format_working_hours_label(config) == "Lun a Vie 09:00 - 18:00 | Sab 09:00 - 13:00"
