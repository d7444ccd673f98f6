"""Rule-based extraction of tax context entities from free text.

Pure and deterministic: no I/O and no model calls. Every category returns a
list (possibly empty) in order of appearance.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

FilingStatus = Literal[
    "Single",
    "MarriedFilingJointly",
    "MarriedFilingSeparately",
    "HeadOfHousehold",
]
Quarter = Literal["Q1", "Q2", "Q3", "Q4"]

FILING_STATUSES: tuple[str, ...] = (
    "Single",
    "MarriedFilingJointly",
    "MarriedFilingSeparately",
    "HeadOfHousehold",
)
QUARTERS: tuple[str, ...] = ("Q1", "Q2", "Q3", "Q4")

US_STATES: tuple[str, ...] = (
    "Alabama", "Alaska", "Arizona", "Arkansas", "California", "Colorado", "Connecticut",
    "Delaware", "Florida", "Georgia", "Hawaii", "Idaho", "Illinois", "Indiana", "Iowa",
    "Kansas", "Kentucky", "Louisiana", "Maine", "Maryland", "Massachusetts", "Michigan",
    "Minnesota", "Mississippi", "Missouri", "Montana", "Nebraska", "Nevada", "New Hampshire",
    "New Jersey", "New Mexico", "New York", "North Carolina", "North Dakota", "Ohio", "Oklahoma",
    "Oregon", "Pennsylvania", "Rhode Island", "South Carolina", "South Dakota", "Tennessee",
    "Texas", "Utah", "Vermont", "Virginia", "Washington", "West Virginia", "Wisconsin", "Wyoming",
    "District of Columbia",
)

STATE_ABBREVIATIONS: dict[str, str] = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas", "CA": "California",
    "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware", "FL": "Florida", "GA": "Georgia",
    "HI": "Hawaii", "ID": "Idaho", "IL": "Illinois", "IN": "Indiana", "IA": "Iowa",
    "KS": "Kansas", "KY": "Kentucky", "LA": "Louisiana", "ME": "Maine", "MD": "Maryland",
    "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota", "MS": "Mississippi", "MO": "Missouri",
    "MT": "Montana", "NE": "Nebraska", "NV": "Nevada", "NH": "New Hampshire", "NJ": "New Jersey",
    "NM": "New Mexico", "NY": "New York", "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio",
    "OK": "Oklahoma", "OR": "Oregon", "PA": "Pennsylvania", "RI": "Rhode Island", "SC": "South Carolina",
    "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas", "UT": "Utah", "VT": "Vermont",
    "VA": "Virginia", "WA": "Washington", "WV": "West Virginia", "WI": "Wisconsin", "WY": "Wyoming",
    "DC": "District of Columbia",
}

# Abbreviations that are also everyday English words (or shouted ones).
AMBIGUOUS_ABBREVIATIONS = frozenset(
    {"IN", "OR", "ME", "OK", "HI", "OH", "ID", "LA", "PA", "MA", "AL", "DE", "CO"}
)
_LOCATION_CUES = frozenset({"in", "from", "to", "of", "state"})
# Lowercase words that may follow a state code ("from OR last year").
_TRAILING_CUES = frozenset(
    {"for", "in", "on", "at", "during", "since", "until", "last", "this", "next", "with", "as"}
)

_STATE_ALIASES: dict[str, str] = {
    **{name.lower(): name for name in US_STATES},
    "washington d.c.": "District of Columbia",
    "washington, d.c.": "District of Columbia",
    "washington dc": "District of Columbia",
    "washington, dc": "District of Columbia",
    "d.c.": "District of Columbia",
}

# Longest alias first so "West Virginia" wins over "Virginia" at the same position.
_STATE_PATTERN = re.compile(
    r"(?<![\w.])("
    + "|".join(re.escape(alias) for alias in sorted(_STATE_ALIASES, key=len, reverse=True))
    + r")(?!\w)",
    re.IGNORECASE,
)
_ABBREVIATION_PATTERN = re.compile(r"\b[A-Z]{2}\b")
_PRECEDING_WORD_PATTERN = re.compile(r"([A-Za-z]+)\W*$")
_FOLLOWING_WORD_PATTERN = re.compile(r"\s+([a-z]+)\b")

_QUARTER_PATTERN = re.compile(
    r"\b(q[1-4]|quarter [1-4]|(?:first|second|third|fourth|1st|2nd|3rd|4th) quarter)\b",
    re.IGNORECASE,
)
_QUARTER_WORDS = {
    "first": "Q1", "1st": "Q1",
    "second": "Q2", "2nd": "Q2",
    "third": "Q3", "3rd": "Q3",
    "fourth": "Q4", "4th": "Q4",
}

_YEAR_PATTERN = re.compile(r"\b20\d{2}\b")

_MARRIED = re.compile(r"\bmarried\b", re.IGNORECASE)
_JOINT = re.compile(r"\bjoint(?:ly)?\b", re.IGNORECASE)
_SEPARATE = re.compile(r"\bseparate(?:ly)?\b", re.IGNORECASE)
_SINGLE = re.compile(r"\bsingle\b", re.IGNORECASE)
_HEAD = re.compile(r"\bhead\b", re.IGNORECASE)
_HOUSEHOLD = re.compile(r"\bhousehold\b", re.IGNORECASE)

# Ordered cascade; the first satisfied rule decides. Bare "married" defaults to joint.
FILING_STATUS_RULES: tuple[tuple[tuple[re.Pattern[str], ...], str], ...] = (
    ((_MARRIED, _JOINT), "MarriedFilingJointly"),
    ((_MARRIED, _SEPARATE), "MarriedFilingSeparately"),
    ((_SINGLE,), "Single"),
    ((_HEAD, _HOUSEHOLD), "HeadOfHousehold"),
    ((_MARRIED,), "MarriedFilingJointly"),
)


@dataclass(frozen=True)
class ExtractedEntities:
    """Candidates detected in one piece of text."""

    states: list[str] = field(default_factory=list)
    quarters: list[str] = field(default_factory=list)
    years: list[int] = field(default_factory=list)
    filing_statuses: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.states or self.quarters or self.years or self.filing_statuses)


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def _abbreviation_allowed(text: str, match: re.Match[str]) -> bool:
    token = match.group(0)
    if token not in AMBIGUOUS_ABBREVIATIONS:
        return True
    if text.strip() == token:
        return True

    preceding = _PRECEDING_WORD_PATTERN.search(text[: match.start()])
    if preceding is None or preceding.group(1).lower() not in _LOCATION_CUES:
        return False

    # "in OR fill it out" reads as a conjunction.
    following = _FOLLOWING_WORD_PATTERN.match(text, match.end())
    return following is None or following.group(1) in _TRAILING_CUES


def extract_states(text: str) -> list[str]:
    """Full state names first; two-letter codes only when no full name is present."""
    full_names = [
        _STATE_ALIASES[match.group(1).lower()]
        for match in _STATE_PATTERN.finditer(text)
    ]
    if full_names:
        return _dedupe(full_names)

    abbreviations = []
    for match in _ABBREVIATION_PATTERN.finditer(text):
        token = match.group(0)
        state = STATE_ABBREVIATIONS.get(token)
        if state and _abbreviation_allowed(text, match):
            abbreviations.append(state)
    return _dedupe(abbreviations)


def _quarter_from_match(matched: str) -> str:
    lowered = matched.lower()
    if lowered.startswith("q") and not lowered.startswith("quarter"):
        return lowered.upper()
    if lowered.startswith("quarter"):
        return f"Q{lowered[-1]}"
    return _QUARTER_WORDS[lowered.split()[0]]


def extract_quarters(text: str) -> list[str]:
    return _dedupe([_quarter_from_match(match.group(1)) for match in _QUARTER_PATTERN.finditer(text)])


def extract_years(text: str) -> list[int]:
    return [int(match.group(0)) for match in _YEAR_PATTERN.finditer(text)]


def extract_filing_statuses(text: str) -> list[str]:
    for patterns, status in FILING_STATUS_RULES:
        if all(pattern.search(text) for pattern in patterns):
            return [status]
    return []


def extract(text: str) -> ExtractedEntities:
    """Detect state, quarter, year and filing-status candidates in `text`."""
    if not text:
        return ExtractedEntities()

    return ExtractedEntities(
        states=extract_states(text),
        quarters=extract_quarters(text),
        years=extract_years(text),
        filing_statuses=extract_filing_statuses(text),
    )


def normalize_state(value: str | None) -> str | None:
    """Map a provider answer ("new york", "NY", "Unknown") onto a canonical state name."""
    if not value:
        return None
    cleaned = value.strip().strip(".\"'")
    if cleaned.upper() in STATE_ABBREVIATIONS:
        return STATE_ABBREVIATIONS[cleaned.upper()]
    return _STATE_ALIASES.get(cleaned.lower())


def normalize_filing_status(value: str | None) -> str | None:
    """Map a provider answer ("Married Filing Jointly", "married") onto a canonical status."""
    if not value:
        return None
    compact = re.sub(r"[^a-z]", "", value.lower())
    for status in FILING_STATUSES:
        if compact == status.lower():
            return status
    if compact == "unknown":
        return None

    statuses = extract_filing_statuses(value)
    return statuses[0] if statuses else None
