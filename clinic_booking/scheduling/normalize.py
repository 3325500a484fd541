"""Canonical date and time strings.

Rows reach the engine from admin screens, legacy imports and JSON requests,
so dates and times arrive as ``date``/``time`` objects, ISO strings, locale
strings or spreadsheet-style timestamps. Everything is reduced to
``YYYY-MM-DD`` and ``HH:MM`` here. Unparseable values come back trimmed but
otherwise unchanged so that validation further down rejects them.
"""

import re
from datetime import date, datetime, time, timedelta
from typing import Any

YMD_PATTERN = re.compile(r'(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})')
HHMM_PATTERN = re.compile(r'(?<!\d)(\d{1,2}):(\d{2})(?!\d)')
LOCALE_DATE_FORMATS = ('%m/%d/%Y', '%a %b %d %Y', '%d %b %Y', '%B %d, %Y', '%b %d, %Y')


def to_ymd(value: Any) -> str:
    if value is None or value == '':
        return ''

    if isinstance(value, (date, datetime)):
        return value.strftime('%Y-%m-%d')

    text = str(value).strip()
    match = YMD_PATTERN.search(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
        try:
            date(year, month, day)
        except ValueError:
            return text
        return f'{year:04d}-{month:02d}-{day:02d}'

    # JS-style "Fri Dec 05 2025 10:00:00 GMT+0900" carries the date in its first four tokens.
    for candidate in (text, ' '.join(text.split()[:4])):
        for date_format in LOCALE_DATE_FORMATS:
            try:
                return datetime.strptime(candidate, date_format).strftime('%Y-%m-%d')
            except ValueError:
                continue

    return text


def _clock_parts(text: str) -> tuple[int, int] | None:
    match = HHMM_PATTERN.search(text)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour, minute


def to_hhmm(value: Any) -> str:
    if value is None or value == '':
        return ''

    if isinstance(value, (time, datetime)):
        return f'{value.hour:02d}:{value.minute:02d}'

    if isinstance(value, timedelta):
        total_minutes = int(value.total_seconds() // 60) % (24 * 60)
        return f'{total_minutes // 60:02d}:{total_minutes % 60:02d}'

    text = str(value).strip()
    parts = _clock_parts(text)
    if parts is None:
        return text
    return f'{parts[0]:02d}:{parts[1]:02d}'


def parse_minutes(hhmm: Any) -> int | None:
    """Minutes since midnight, or None unless ``hhmm`` holds a real clock time."""
    parts = _clock_parts(str(hhmm or ''))
    if parts is None:
        return None
    return parts[0] * 60 + parts[1]


def weekday_index(ymd: str) -> int | None:
    """Weekday of a canonical date, 0 = Sunday through 6 = Saturday."""
    try:
        parsed = datetime.strptime(ymd, '%Y-%m-%d').date()
    except (TypeError, ValueError):
        return None
    return (parsed.weekday() + 1) % 7
