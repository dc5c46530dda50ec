"""
Date resolution for the free-text publication dates returned by the search provider.

The provider reports dates either as absolute strings ("2025-01-28T09:00:00Z",
"28 ene 2025", "Jan 28, 2025") or relative to the time of the query
("4 hours ago", "hace 2 días", "il y a 3 heures", "vor 5 Stunden",
"há 2 horas", "3 ore fa"). Everything is resolved to a timezone-aware UTC
datetime. Resolution never raises: unparseable input resolves to "now".
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Pattern, Tuple

from dateutil import parser as dt_parser
from dateutil.parser import isoparse

logger = logging.getLogger(__name__)

SECOND_MS = 1000
MINUTE_MS = 60 * SECOND_MS
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS
MONTH_MS = 30 * DAY_MS  # 30-day month
YEAR_MS = 365 * DAY_MS  # not leap-aware


def _p(pattern: str, multiplier: int) -> Tuple[Pattern[str], int]:
    return re.compile(pattern, re.IGNORECASE), multiplier


ENGLISH_PATTERNS = [
    _p(r"(\d+)\s*(?:hour|hr)s?\s*ago", HOUR_MS),
    _p(r"(\d+)\s*(?:minute|min)s?\s*ago", MINUTE_MS),
    _p(r"(\d+)\s*(?:day|d)s?\s*ago", DAY_MS),
    _p(r"(\d+)\s*(?:week|w)s?\s*ago", WEEK_MS),
    _p(r"(\d+)\s*(?:month|mo)s?\s*ago", MONTH_MS),
    _p(r"(\d+)\s*(?:year|yr)s?\s*ago", YEAR_MS),
    _p(r"(\d+)\s*(?:second|sec)s?\s*ago", SECOND_MS),
]

SPANISH_PATTERNS = [
    _p(r"hace\s*(\d+)\s*(?:hora|hr)s?", HOUR_MS),
    _p(r"hace\s*(\d+)\s*(?:minuto|min)s?", MINUTE_MS),
    _p(r"hace\s*(\d+)\s*(?:día|dia|d)s?", DAY_MS),
    _p(r"hace\s*(\d+)\s*(?:semana|sem)s?", WEEK_MS),
    _p(r"hace\s*(\d+)\s*(?:mes)(?:es)?", MONTH_MS),
    _p(r"hace\s*(\d+)\s*(?:año)s?", YEAR_MS),
    # "N horas atrás"
    _p(r"(\d+)\s*(?:hora|hr)s?\s*atrás", HOUR_MS),
    _p(r"(\d+)\s*(?:minuto|min)s?\s*atrás", MINUTE_MS),
    _p(r"(\d+)\s*(?:día|dia|d)s?\s*atrás", DAY_MS),
    _p(r"(\d+)\s*(?:semana|sem)s?\s*atrás", WEEK_MS),
    _p(r"(\d+)\s*(?:mes)(?:es)?\s*atrás", MONTH_MS),
    _p(r"(\d+)\s*(?:año)s?\s*atrás", YEAR_MS),
]

FRENCH_PATTERNS = [
    _p(r"(?:il y a|depuis)\s*(\d+)\s*(?:heure|h)s?", HOUR_MS),
    _p(r"(?:il y a|depuis)\s*(\d+)\s*(?:minute|min)s?", MINUTE_MS),
    _p(r"(?:il y a|depuis)\s*(\d+)\s*(?:jour|j)s?", DAY_MS),
    _p(r"(?:il y a|depuis)\s*(\d+)\s*(?:semaine|sem)s?", WEEK_MS),
    _p(r"(?:il y a|depuis)\s*(\d+)\s*mois", MONTH_MS),
    _p(r"(?:il y a|depuis)\s*(\d+)\s*(?:année|an)s?", YEAR_MS),
    _p(r"(\d+)\s*(?:heure|h)s?\s*(?:il y a|depuis)", HOUR_MS),
    _p(r"(\d+)\s*(?:minute|min)s?\s*(?:il y a|depuis)", MINUTE_MS),
    _p(r"(\d+)\s*(?:jour|j)s?\s*(?:il y a|depuis)", DAY_MS),
    _p(r"(\d+)\s*(?:semaine|sem)s?\s*(?:il y a|depuis)", WEEK_MS),
    _p(r"(\d+)\s*mois\s*(?:il y a|depuis)", MONTH_MS),
    _p(r"(\d+)\s*(?:année|an)s?\s*(?:il y a|depuis)", YEAR_MS),
]

GERMAN_PATTERNS = [
    _p(r"(?:vor|her)\s*(\d+)\s*(?:stunde|std)n?", HOUR_MS),
    _p(r"(?:vor|her)\s*(\d+)\s*(?:minute|min)n?", MINUTE_MS),
    _p(r"(?:vor|her)\s*(\d+)\s*(?:tag|t)(?:en)?", DAY_MS),
    _p(r"(?:vor|her)\s*(\d+)\s*(?:woche|w)n?", WEEK_MS),
    _p(r"(?:vor|her)\s*(\d+)\s*(?:monat|mon)(?:en)?", MONTH_MS),
    _p(r"(?:vor|her)\s*(\d+)\s*(?:jahr|j)(?:en)?", YEAR_MS),
    _p(r"(\d+)\s*(?:stunde|std)n?\s*(?:vor|her)", HOUR_MS),
    _p(r"(\d+)\s*(?:minute|min)n?\s*(?:vor|her)", MINUTE_MS),
    _p(r"(\d+)\s*(?:tag|t)(?:en)?\s*(?:vor|her)", DAY_MS),
    _p(r"(\d+)\s*(?:woche|w)n?\s*(?:vor|her)", WEEK_MS),
    _p(r"(\d+)\s*(?:monat|mon)(?:en)?\s*(?:vor|her)", MONTH_MS),
    _p(r"(\d+)\s*(?:jahr|j)(?:en)?\s*(?:vor|her)", YEAR_MS),
]

PORTUGUESE_PATTERNS = [
    _p(r"(?:há|atrás)\s*(\d+)\s*(?:hora|hr)s?", HOUR_MS),
    _p(r"(?:há|atrás)\s*(\d+)\s*(?:minuto|min)s?", MINUTE_MS),
    _p(r"(?:há|atrás)\s*(\d+)\s*(?:dia|d)s?", DAY_MS),
    _p(r"(?:há|atrás)\s*(\d+)\s*(?:semana|sem)s?", WEEK_MS),
    _p(r"(?:há|atrás)\s*(\d+)\s*(?:mês|meses|mes)", MONTH_MS),
    _p(r"(?:há|atrás)\s*(\d+)\s*(?:ano)s?", YEAR_MS),
    _p(r"(\d+)\s*(?:hora|hr)s?\s*(?:atrás|há)", HOUR_MS),
    _p(r"(\d+)\s*(?:minuto|min)s?\s*(?:atrás|há)", MINUTE_MS),
    _p(r"(\d+)\s*(?:dia|d)s?\s*(?:atrás|há)", DAY_MS),
    _p(r"(\d+)\s*(?:semana|sem)s?\s*(?:atrás|há)", WEEK_MS),
    _p(r"(\d+)\s*(?:mês|meses|mes)\s*(?:atrás|há)", MONTH_MS),
    _p(r"(\d+)\s*(?:ano)s?\s*(?:atrás|há)", YEAR_MS),
]

ITALIAN_PATTERNS = [
    _p(r"(?:fa|indietro)\s*(\d+)\s*(?:ora|ore)", HOUR_MS),
    _p(r"(?:fa|indietro)\s*(\d+)\s*(?:minuto|minuti)", MINUTE_MS),
    _p(r"(?:fa|indietro)\s*(\d+)\s*(?:giorno|giorni)", DAY_MS),
    _p(r"(?:fa|indietro)\s*(\d+)\s*(?:settimana|settimane)", WEEK_MS),
    _p(r"(?:fa|indietro)\s*(\d+)\s*(?:mese|mesi)", MONTH_MS),
    _p(r"(?:fa|indietro)\s*(\d+)\s*(?:anno|anni)", YEAR_MS),
    _p(r"(\d+)\s*(?:ora|ore)\s*(?:fa|indietro)", HOUR_MS),
    _p(r"(\d+)\s*(?:minuto|minuti)\s*(?:fa|indietro)", MINUTE_MS),
    _p(r"(\d+)\s*(?:giorno|giorni)\s*(?:fa|indietro)", DAY_MS),
    _p(r"(\d+)\s*(?:settimana|settimane)\s*(?:fa|indietro)", WEEK_MS),
    _p(r"(\d+)\s*(?:mese|mesi)\s*(?:fa|indietro)", MONTH_MS),
    _p(r"(\d+)\s*(?:anno|anni)\s*(?:fa|indietro)", YEAR_MS),
]

# Abbreviated English forms ("3h ago", "2d ago", "1y ago")
SHORTHAND_PATTERNS = [
    _p(r"(\d+)\s*(?:hr|hour|h)s?\s*ago", HOUR_MS),
    _p(r"(\d+)\s*(?:min|minute|m)s?\s*ago", MINUTE_MS),
    _p(r"(\d+)\s*(?:d|day)s?\s*ago", DAY_MS),
    _p(r"(\d+)\s*(?:w|week)s?\s*ago", WEEK_MS),
    _p(r"(\d+)\s*(?:mo|month)s?\s*ago", MONTH_MS),
    _p(r"(\d+)\s*(?:y|year)s?\s*ago", YEAR_MS),
]

RELATIVE_PATTERNS: List[Tuple[Pattern[str], int]] = (
    ENGLISH_PATTERNS
    + SPANISH_PATTERNS
    + FRENCH_PATTERNS
    + GERMAN_PATTERNS
    + PORTUGUESE_PATTERNS
    + ITALIAN_PATTERNS
    + SHORTHAND_PATTERNS
)

# Month abbreviations per language; the first table containing a token wins.
MONTH_TABLES = {
    "en": {"jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
           "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12},
    "es": {"ene": 1, "feb": 2, "mar": 3, "abr": 4, "may": 5, "jun": 6,
           "jul": 7, "ago": 8, "sep": 9, "oct": 10, "nov": 11, "dic": 12},
    "fr": {"jan": 1, "fév": 2, "mar": 3, "avr": 4, "mai": 5, "juin": 6,
           "juil": 7, "août": 8, "sept": 9, "oct": 10, "nov": 11, "déc": 12},
    "de": {"jan": 1, "feb": 2, "mär": 3, "apr": 4, "mai": 5, "jun": 6,
           "jul": 7, "aug": 8, "sep": 9, "okt": 10, "nov": 11, "dez": 12},
    "pt": {"jan": 1, "fev": 2, "mar": 3, "abr": 4, "mai": 5, "jun": 6,
           "jul": 7, "ago": 8, "set": 9, "out": 10, "nov": 11, "dez": 12},
    "it": {"gen": 1, "feb": 2, "mar": 3, "apr": 4, "mag": 5, "giu": 6,
           "lug": 7, "ago": 8, "set": 9, "ott": 10, "nov": 11, "dic": 12},
}

LOCALIZED_DATE_RE = re.compile(r"(\d+)\s+(\w{3,})\s+(\d{4})", re.IGNORECASE)

RELATIVE_INDICATORS = (
    "ago",
    "atrás",
    "hace",
    "il y a",
    "depuis",
    "vor",
    "her",
    "há",
    "fa",
    "indietro",
)

SUPPORTED_LANGUAGES = ["English", "Spanish", "French", "German", "Portuguese", "Italian"]


@dataclass(frozen=True)
class TimeDiff:
    """Elapsed time from a timestamp to now, each bucket truncated independently."""
    days: int
    hours: int
    minutes: int
    seconds: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class DateParser:
    """Resolves provider date strings into absolute UTC datetimes."""

    @classmethod
    def parse(cls, text: Optional[str], now: Optional[datetime] = None) -> datetime:
        """Resolve ``text`` to a datetime; falls back to ``now`` (with a warning)."""
        resolved, ok = cls.parse_with_status(text, now=now)
        if not ok:
            logger.warning(f"Could not parse date string: {text!r}, using current date")
        return resolved

    @classmethod
    def parse_with_status(cls, text: Optional[str], now: Optional[datetime] = None) -> Tuple[datetime, bool]:
        """
        Resolve ``text`` and report whether resolution succeeded.

        Returns:
            (datetime, True) when an absolute or relative form matched,
            (now, False) otherwise.
        """
        now = _as_utc(now) if now else _utcnow()
        if not text or not isinstance(text, str):
            return now, False

        absolute = cls._parse_absolute(text, now)
        if absolute is not None:
            return absolute, True

        relative = cls._parse_relative(text, now)
        if relative is not None:
            return relative, True

        return now, False

    @staticmethod
    def _parse_absolute(text: str, now: datetime) -> Optional[datetime]:
        if "T" in text or "Z" in text:
            try:
                return _as_utc(isoparse(text.strip()))
            except (ValueError, OverflowError):
                pass

        match = LOCALIZED_DATE_RE.search(text)
        if match:
            day = int(match.group(1))
            token = match.group(2).lower()
            year = int(match.group(3))
            month = None
            for table in MONTH_TABLES.values():
                if token in table:
                    month = table[token]
                    break
            if month is not None:
                try:
                    return datetime(year, month, day, tzinfo=timezone.utc)
                except ValueError:
                    logger.debug(f"Localized date out of range: {text!r}")

        # Missing fields come from today at midnight; a partial date in the future is rejected
        try:
            default = now.replace(hour=0, minute=0, second=0, microsecond=0, tzinfo=None)
            parsed = _as_utc(dt_parser.parse(text, default=default))
        except (ValueError, OverflowError):
            return None
        if parsed > now:
            logger.debug(f"Ignoring future date {parsed.isoformat()} parsed from {text!r}")
            return None
        return parsed

    @staticmethod
    def _parse_relative(text: str, now: datetime) -> Optional[datetime]:
        trimmed = text.strip().lower()
        for regex, multiplier in RELATIVE_PATTERNS:
            match = regex.search(trimmed)
            if match:
                value = int(match.group(1))
                try:
                    return now - timedelta(milliseconds=value * multiplier)
                except (OverflowError, ValueError):
                    logger.debug(f"Relative offset out of range: {text!r}")
                    return None
        return None

    @staticmethod
    def is_relative_time(text: Optional[str]) -> bool:
        """True when ``text`` contains a relative-time marker in any supported language."""
        if not text or not isinstance(text, str):
            return False
        trimmed = text.strip().lower()
        return any(indicator in trimmed for indicator in RELATIVE_INDICATORS)

    @staticmethod
    def time_diff_from_now(dt: datetime, now: Optional[datetime] = None) -> TimeDiff:
        now = _as_utc(now) if now else _utcnow()
        diff_ms = (now - _as_utc(dt)) // timedelta(milliseconds=1)
        seconds = diff_ms // 1000
        minutes = seconds // 60
        hours = minutes // 60
        days = hours // 24
        return TimeDiff(days=days, hours=hours, minutes=minutes, seconds=seconds)

    @staticmethod
    def supported_languages() -> List[str]:
        return list(SUPPORTED_LANGUAGES)
