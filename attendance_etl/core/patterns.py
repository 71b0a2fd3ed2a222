# attendance_etl/core/patterns.py
"""
Name heuristics shared by discovery, merging, disentangling and membership:
recurring series that must never merge, members-only ticket variants, social
events that do not count toward membership, and names damaged by earlier merges.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Pattern, Sequence

import dateparser

from attendance_etl.core.models import WooProduct

# ------------------- recurring series / members-only -------------------

NEVER_MERGE_PATTERNS: List[Pattern[str]] = [
    re.compile(r"sunday\s*reading\s*room", re.I),
    re.compile(r"friday\s*drinks", re.I),
    re.compile(r"open\s*projects?\s*night", re.I),
    re.compile(r"club\s*drinks", re.I),
    re.compile(r"book\s*club", re.I),
    re.compile(r"sewing\s*club", re.I),
    re.compile(r"movie\s*nights?", re.I),
    re.compile(r"lunchtime\s*video", re.I),
    re.compile(r"screening\s*(of)?\s*[\"'‘’“”]", re.I),
    re.compile(r"workshop", re.I),
]

MEMBERS_ONLY_PATTERNS: List[Pattern[str]] = [
    re.compile(r"members?\s*only", re.I),
    re.compile(r"members?\s*booking", re.I),
    re.compile(r"members?\s*link", re.I),
    re.compile(r"community\s*member", re.I),
    re.compile(r"-\s*members$", re.I),
]


def compile_patterns(raw: Iterable[str]) -> List[Pattern[str]]:
    return [re.compile(p, re.I) for p in raw]


def should_never_merge(name: str, extra: Sequence[Pattern[str]] = ()) -> bool:
    return any(p.search(name or "") for p in [*NEVER_MERGE_PATTERNS, *extra])


def never_merge_hint(prefix: str) -> str:
    """A NEVER_MERGE_PATTERNS entry matching the raw names behind a normalised prefix."""
    return r"\W+".join(re.escape(w) for w in prefix.split())


def is_members_only_product(name: str) -> bool:
    return any(p.search(name or "") for p in MEMBERS_ONLY_PATTERNS)


# ------------------- social events -------------------

_SOCIAL_WORDS = ("walk", "party", "drinks", "social")
_SEASON_WORDS = ("winter", "spring", "summer", "autumn", "fall", "solstice", "equinox")


def is_social_event(name: str) -> bool:
    """Social events never count toward membership."""
    n = (name or "").lower()
    if any(w in n for w in _SOCIAL_WORDS):
        return True
    return "celebration" in n and any(w in n for w in _SEASON_WORDS)


# ------------------- damaged names -------------------

_WEEKDAYS = "Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday"

_REPEATED_DAY = re.compile(rf"({_WEEKDAYS}),?\s*-?\s*\1", re.I)
_REPEATED_DATE = re.compile(r"- [A-Za-z]+,\s*-\s*[A-Za-z]+,")
_COPY_AND_COPY = re.compile(r"\(Copy\)\s*and\s*\(Copy\)", re.I)

_SINGLE_TITLE_WITH_AND = re.compile(r"\"[^\"]*\band\b[^\"]*\"\s+by", re.I)
_AS_TOLD_TO = re.compile(r"as told to .* and ", re.I)
_TWO_DATED_HALVES = re.compile(r"^(.+?)\s*-\s*[A-Za-z]+,.*\s+and\s+.+\s*-\s*[A-Za-z]+,", re.I)
_TWO_BOOKS = re.compile(r"book\s*club.*\"[^\"]+\"\s*.*\s+and\s+.*\"[^\"]+\"", re.I)
_MULTI_SPEAKER = re.compile(r":\s*.+\s+on\s+.+\s+and\s+.+\s+on\s+", re.I)


@dataclass(frozen=True)
class NameVerdict:
    flagged: bool
    corrupted: bool = False
    reason: str = ""


def is_corrupted_name(name: str) -> bool:
    """True for names mangled by repeated merges ("- Wednesday, - Wednesday, ...")."""
    n = name or ""
    return bool(_REPEATED_DAY.search(n) or _REPEATED_DATE.search(n) or _COPY_AND_COPY.search(n))


def detect_incorrect_merge(name: str) -> NameVerdict:
    n = name or ""
    if is_corrupted_name(n):
        return NameVerdict(True, corrupted=True, reason="repeated date fragments from an earlier merge")
    if _SINGLE_TITLE_WITH_AND.search(n):
        return NameVerdict(False, reason="single quoted title containing 'and'")
    if _AS_TOLD_TO.search(n):
        return NameVerdict(False, reason="author collaboration")
    if _TWO_DATED_HALVES.search(n):
        return NameVerdict(True, reason="two dated events joined by 'and'")
    if _TWO_BOOKS.search(n):
        return NameVerdict(True, reason="book club titles joined by 'and'")
    if _MULTI_SPEAKER.search(n) and "Members" not in n:
        return NameVerdict(True, reason="several speaker events joined by 'and'")
    return NameVerdict(False)


# ------------------- names & dates -------------------

_TRAILING_DATES = (
    re.compile(r"\s*-?\s*\d{1,2}/\d{1,2}/\d{4}\s*$"),
    re.compile(r"\s*-?\s*\d{4}-\d{1,2}-\d{1,2}\s*$"),
    re.compile(r"\s*-?\s*\w+\s+\d{1,2},\s*\d{4}\s*$"),
)
_TRAILING_WEEKDAY = re.compile(rf"\s*-?\s*({_WEEKDAYS}),.*$", re.I)


def remove_date_from_name(name: str) -> str:
    for rx in _TRAILING_DATES:
        name = rx.sub("", name)
    return name.strip()


def format_event_date(dt: datetime) -> str:
    """``Wednesday, January 22, 2026``"""
    return f"{dt:%A}, {dt:%B} {dt.day}, {dt.year}"


def clean_event_name(product_name: str, event_date: datetime) -> str:
    cleaned = _TRAILING_WEEKDAY.sub("", remove_date_from_name(product_name)).strip()
    return f"{cleaned} - {format_event_date(event_date)}"


_DMY = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
_YMD = re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})")


def _safe_date(year: str, month: str, day: str) -> Optional[datetime]:
    try:
        return datetime(int(year), int(month), int(day))
    except ValueError:
        return None


def extract_event_date(product: WooProduct) -> Optional[datetime]:
    """
    Date of the event a product sells tickets for:
    ``DD/MM/YYYY`` or ``YYYY-MM-DD`` in the name, else the ``event_date`` meta
    (``YYYYMMDD`` or anything dateparser understands).
    """
    m = _DMY.search(product.name or "")
    if m:
        dt = _safe_date(m.group(3), m.group(2), m.group(1))
        if dt:
            return dt
    m = _YMD.search(product.name or "")
    if m:
        dt = _safe_date(m.group(1), m.group(2), m.group(3))
        if dt:
            return dt

    raw = product.meta("event_date")
    if raw is None or raw == "":
        return None
    raw = str(raw).strip()
    if re.fullmatch(r"\d{8}", raw):
        return _safe_date(raw[:4], raw[4:6], raw[6:8])
    dt = dateparser.parse(raw, settings={"RETURN_AS_TIMEZONE_AWARE": False})
    return dt


def _mentions_event(terms: List[dict]) -> bool:
    for t in terms or []:
        if "event" in str(t.get("name", "")).lower() or "event" in str(t.get("slug", "")).lower():
            return True
    return False


def is_event_product(product: WooProduct) -> bool:
    if _mentions_event(product.categories):
        return True
    if extract_event_date(product) is not None:
        return True
    return _mentions_event(product.tags)
