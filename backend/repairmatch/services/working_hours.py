"""Technician availability windows.

Working hours are stored on the technician profile either as a JSON object::

    {"weekday": {"from": "09:00", "to": "18:00"},
     "saturday": {"enabled": true, "from": "09:00", "to": "13:00"},
     "sunday": {"enabled": false}}

or as legacy free text typed by the technician, e.g.
``"Lun a Vie 9:00 a 18:00, Sáb 9:00 a 13:00"``. Both forms parse into a
``WorkingHoursConfig``; anything unreadable falls back to the defaults.
"""

import json
import os
import re
import unicodedata
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional, Pattern, Tuple
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = os.getenv("MARKETPLACE_TIMEZONE", "America/Argentina/Buenos_Aires")

_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")
_RANGE = r"(\d{1,2}:\d{2})\s*(?:-|a|hasta)\s*(\d{1,2}:\d{2})"
_WEEKDAY_PATTERN = re.compile(r"lun(?:es)?\s*(?:a|-|al)\s*vie(?:rnes)?[^0-9]*" + _RANGE)
_ANY_RANGE_PATTERN = re.compile(_RANGE)
_SATURDAY_PATTERN = re.compile(r"sab(?:ado)?[^0-9]*" + _RANGE)
_SUNDAY_PATTERN = re.compile(r"dom(?:ingo)?[^0-9]*" + _RANGE)


@dataclass(frozen=True)
class WorkingHoursConfig:
    weekday_from: str = "09:00"
    weekday_to: str = "18:00"
    saturday_enabled: bool = False
    saturday_from: str = "09:00"
    saturday_to: str = "13:00"
    sunday_enabled: bool = False
    sunday_from: str = "09:00"
    sunday_to: str = "13:00"


DEFAULT_WORKING_HOURS = WorkingHoursConfig()


def normalize_time_value(value: Any, fallback: str) -> str:
    match = _TIME_PATTERN.match(str(value or "").strip())
    if not match:
        return fallback
    hours = int(match.group(1))
    minutes = int(match.group(2))
    if hours > 23 or minutes > 59:
        return fallback
    return f"{hours:02d}:{minutes:02d}"


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _extract_range(text: str, pattern: Pattern[str]) -> Optional[Tuple[str, str]]:
    match = pattern.search(text)
    if not match:
        return None
    return match.group(1), match.group(2)


def _parse_structured(parsed: dict) -> WorkingHoursConfig:
    base = DEFAULT_WORKING_HOURS
    weekday = parsed.get("weekday") or {}
    saturday = parsed.get("saturday") or {}
    sunday = parsed.get("sunday") or {}
    if not isinstance(weekday, dict):
        weekday = {}
    if not isinstance(saturday, dict):
        saturday = {}
    if not isinstance(sunday, dict):
        sunday = {}
    return WorkingHoursConfig(
        weekday_from=normalize_time_value(weekday.get("from"), base.weekday_from),
        weekday_to=normalize_time_value(weekday.get("to"), base.weekday_to),
        saturday_enabled=bool(saturday.get("enabled")),
        saturday_from=normalize_time_value(saturday.get("from"), base.saturday_from),
        saturday_to=normalize_time_value(saturday.get("to"), base.saturday_to),
        sunday_enabled=bool(sunday.get("enabled")),
        sunday_from=normalize_time_value(sunday.get("from"), base.sunday_from),
        sunday_to=normalize_time_value(sunday.get("to"), base.sunday_to),
    )


def _parse_legacy_text(raw: str) -> WorkingHoursConfig:
    config = DEFAULT_WORKING_HOURS
    text = strip_accents(raw.lower())

    weekday_range = _extract_range(text, _WEEKDAY_PATTERN) or _extract_range(text, _ANY_RANGE_PATTERN)
    saturday_range = _extract_range(text, _SATURDAY_PATTERN)
    sunday_range = _extract_range(text, _SUNDAY_PATTERN)

    if weekday_range:
        config = replace(
            config,
            weekday_from=normalize_time_value(weekday_range[0], config.weekday_from),
            weekday_to=normalize_time_value(weekday_range[1], config.weekday_to),
        )
    if saturday_range:
        config = replace(
            config,
            saturday_enabled=True,
            saturday_from=normalize_time_value(saturday_range[0], config.saturday_from),
            saturday_to=normalize_time_value(saturday_range[1], config.saturday_to),
        )
    if sunday_range:
        config = replace(
            config,
            sunday_enabled=True,
            sunday_from=normalize_time_value(sunday_range[0], config.sunday_from),
            sunday_to=normalize_time_value(sunday_range[1], config.sunday_to),
        )
    return config


def parse_working_hours(raw: Optional[str]) -> WorkingHoursConfig:
    safe = (raw or "").strip()
    if not safe:
        return DEFAULT_WORKING_HOURS
    try:
        parsed = json.loads(safe)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        return _parse_structured(parsed)
    return _parse_legacy_text(safe)


def format_working_hours_label(config: WorkingHoursConfig) -> str:
    chunks = [f"Lun a Vie {config.weekday_from} - {config.weekday_to}"]
    if config.saturday_enabled:
        chunks.append(f"Sab {config.saturday_from} - {config.saturday_to}")
    if config.sunday_enabled:
        chunks.append(f"Dom {config.sunday_from} - {config.sunday_to}")
    return " | ".join(chunks)


def _to_minutes(value: str) -> int:
    hours, minutes = value.split(":", 1)
    return int(hours) * 60 + int(minutes)


def is_within_working_hours(
    config: WorkingHoursConfig,
    now: Optional[datetime] = None,
    tz_name: str = DEFAULT_TIMEZONE,
) -> bool:
    """Return True when ``now`` falls inside the window for its local weekday.

    Naive datetimes are taken as UTC. Both window edges are inclusive.
    """
    instant = now or datetime.now(timezone.utc)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    local = instant.astimezone(ZoneInfo(tz_name))
    current = local.hour * 60 + local.minute

    weekday = local.weekday()
    if weekday == 5:
        if not config.saturday_enabled:
            return False
        start, end = config.saturday_from, config.saturday_to
    elif weekday == 6:
        if not config.sunday_enabled:
            return False
        start, end = config.sunday_from, config.sunday_to
    else:
        start, end = config.weekday_from, config.weekday_to
    return _to_minutes(start) <= current <= _to_minutes(end)
