"""Find the lines that govern a setting's effective value."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .document import ConfigDocument, LineKind

TOKEN_RE = re.compile(r"^\s*([^\s=:]+)")


class MatchState(Enum):
    NO_MATCH = "no-match"
    COMMENTED_ONLY = "commented-only"
    ACTIVE_MATCH_SAME_VALUE = "active-same"
    ACTIVE_MATCH_DIFFERENT_VALUE = "active-different"


@dataclass(frozen=True)
class ConfigTarget:
    """Where a setting must end up: ``key`` set to ``value`` inside ``section``."""

    key: str
    value: str
    section: Optional[str] = None

    def describe(self) -> str:
        scope = f"[{self.section}] " if self.section else ""
        return f"{scope}{self.key} = {self.value}"


@dataclass
class Location:
    """Result of searching a document for a key within one scope."""

    key: str
    section: Optional[str]
    ranges: List[Tuple[int, int]]
    active: List[int] = field(default_factory=list)
    commented: List[int] = field(default_factory=list)
    # Unparseable lines that start with the key, e.g. "Port" with no value.
    malformed: List[int] = field(default_factory=list)

    @property
    def section_exists(self) -> bool:
        return bool(self.ranges)

    @property
    def effective(self) -> Optional[int]:
        """Index of the authoritative line: the last active occurrence."""
        return self.active[-1] if self.active else None

    @property
    def duplicates(self) -> List[int]:
        """Earlier active occurrences shadowed by the effective one."""
        return self.active[:-1]


def locate(doc: ConfigDocument, key: str, section: Optional[str] = None) -> Location:
    """Collect active and commented occurrences of ``key`` in a scope."""
    ranges = doc.scope_ranges(section)
    location = Location(key=key, section=section, ranges=ranges)
    for start, end in ranges:
        for index in range(start, end):
            line = doc.lines[index]
            if line.kind is LineKind.OTHER and _leading_token(line.raw) == key:
                location.malformed.append(index)
                continue
            if line.kind is not LineKind.SETTING or line.key != key:
                continue
            if line.commented:
                location.commented.append(index)
            else:
                location.active.append(index)
    return location


def _leading_token(raw: str) -> Optional[str]:
    match = TOKEN_RE.match(raw)
    return match.group(1) if match else None


def match_state(doc: ConfigDocument, location: Location, value: str) -> MatchState:
    if location.effective is not None:
        current = doc.lines[location.effective].value or ""
        # A value spread over continuation lines never equals a one-line target.
        if current.strip() == value.strip() and not doc.continuation(location.effective):
            return MatchState.ACTIVE_MATCH_SAME_VALUE
        return MatchState.ACTIVE_MATCH_DIFFERENT_VALUE
    if location.commented:
        return MatchState.COMMENTED_ONLY
    return MatchState.NO_MATCH


def effective_value(
    doc: ConfigDocument, key: str, section: Optional[str] = None
) -> Optional[str]:
    """Return the value a consumer reading this file would use, if any."""
    location = locate(doc, key, section)
    if location.effective is None:
        return None
    parts = [doc.lines[location.effective].value or ""]
    parts.extend(doc.lines[i].raw.strip() for i in doc.continuation(location.effective))
    return "\n".join(parts)


def insertion_index(doc: ConfigDocument, location: Location) -> Optional[int]:
    """
    Index where a new setting for this scope should be inserted.

    New lines go right after the last non-blank line of the scope so blank
    separators before the next section stay in place. Returns None when the
    section does not exist yet.
    """
    if not location.ranges:
        return None
    start, end = location.ranges[-1]
    index = end
    while index > start and doc.lines[index - 1].kind is LineKind.BLANK:
        index -= 1
    return index
