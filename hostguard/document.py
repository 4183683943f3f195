"""
Line-preserving model of key/value configuration files.

A ConfigDocument keeps every line of the source file, tagged with what it
is (comment, blank, section header, setting or something unrecognised), so
that a file can be edited one setting at a time and written back with
every other byte untouched.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Pattern, Tuple

SECTION_RE: Pattern[str] = re.compile(r"^\s*\[([^\]]+)\]\s*$")


class LineKind(Enum):
    COMMENT = "comment"
    BLANK = "blank"
    SECTION = "section"
    SETTING = "setting"
    OTHER = "other"


@dataclass(frozen=True)
class Dialect:
    """
    Line syntax of a configuration file family.

    Attributes:
        name: Short name used on the command line.
        sections: Whether ``[section]`` headers open scopes.
        setting_pattern: Regex with a key group and a value group.
        separator: Text placed between key and value when rendering.
        inline_comment: Regex locating a trailing comment inside a value.
        scope_terminators: Keys whose active occurrence ends the global scope.
        comment_prefixes: Characters that start a full-line comment.
        continuations: Whether indented lines continue the previous value.
    """

    name: str
    sections: bool
    setting_pattern: Pattern[str]
    separator: str
    inline_comment: Optional[Pattern[str]] = None
    scope_terminators: Tuple[str, ...] = ()
    comment_prefixes: Tuple[str, ...] = ("#",)
    continuations: bool = False

    def render(self, key: str, value: str) -> str:
        """Render an active ``key``/``value`` line without newline."""
        return f"{key}{self.separator}{value}"


FLAT_PATTERN = re.compile(r"^(\$?\w[\w.-]*)\s+(.*)$")
INI_PATTERN = re.compile(r"^(\w[\w.-]*)\s*=\s*(.*)$")
COLON_PATTERN = re.compile(r"^(\w[\w.-]*)\s*:\s*(.*)$")

FLAT = Dialect(name="flat", sections=False, setting_pattern=FLAT_PATTERN, separator=" ")
SSHD = Dialect(
    name="sshd",
    sections=False,
    setting_pattern=FLAT_PATTERN,
    separator=" ",
    scope_terminators=("Match",),
)
INI = Dialect(
    name="ini",
    sections=True,
    setting_pattern=INI_PATTERN,
    separator=" = ",
    inline_comment=re.compile(r"\s[#;]"),
    comment_prefixes=("#", ";"),
    continuations=True,
)
SYSTEMD = Dialect(
    name="systemd",
    sections=True,
    setting_pattern=INI_PATTERN,
    separator="=",
    comment_prefixes=("#", ";"),
)
COLON = Dialect(name="colon", sections=False, setting_pattern=COLON_PATTERN, separator=": ")

DIALECTS: Dict[str, Dialect] = {d.name: d for d in (FLAT, SSHD, INI, SYSTEMD, COLON)}


def get_dialect(name: str) -> Dialect:
    try:
        return DIALECTS[name]
    except KeyError:
        raise ValueError(
            f"Unknown dialect '{name}' (expected one of: {', '.join(sorted(DIALECTS))})"
        ) from None


@dataclass
class Line:
    """
    One physical line of a configuration file.

    ``raw`` never contains the line terminator. For settings,
    ``value_start``/``value_end`` delimit the value inside ``raw`` so that it
    can be replaced without touching indentation, spacing or a trailing
    inline comment.
    """

    raw: str
    kind: LineKind
    section: Optional[str] = None
    key: Optional[str] = None
    value: Optional[str] = None
    commented: bool = False
    value_start: int = 0
    value_end: int = 0

    @property
    def active(self) -> bool:
        return self.kind is LineKind.SETTING and not self.commented

    @property
    def indent(self) -> str:
        return self.raw[: len(self.raw) - len(self.raw.lstrip())]

    def with_value(self, value: str) -> "Line":
        """Return a copy of this setting line carrying a new value."""
        if self.kind is not LineKind.SETTING:
            raise ValueError(f"Not a setting line: {self.raw!r}")
        raw = self.raw[: self.value_start] + value + self.raw[self.value_end :]
        return replace(
            self,
            raw=raw,
            value=value,
            value_end=self.value_start + len(value),
        )


def parse_line(raw: str, dialect: Dialect, section: Optional[str] = None) -> Line:
    """Classify a single line. Never fails: unknown lines become OTHER."""
    stripped = raw.lstrip()
    if not stripped.strip():
        return Line(raw=raw, kind=LineKind.BLANK, section=section)

    if dialect.sections:
        header = SECTION_RE.match(raw)
        if header:
            return Line(raw=raw, kind=LineKind.SECTION, section=header.group(1).strip())

    offset = len(raw) - len(stripped)
    body = stripped
    commented = False
    if body.startswith("#"):
        commented = True
        after = body[1:]
        body = after.lstrip()
        offset += 1 + len(after) - len(body)
    elif body[0] in dialect.comment_prefixes:
        return Line(raw=raw, kind=LineKind.COMMENT, section=section)

    match = dialect.setting_pattern.match(body)
    if not match:
        kind = LineKind.COMMENT if commented else LineKind.OTHER
        return Line(raw=raw, kind=kind, section=section)

    value_text = match.group(2)
    if dialect.inline_comment is not None:
        inline = dialect.inline_comment.search(value_text)
        if inline:
            value_text = value_text[: inline.start()]
    value = value_text.rstrip()
    value_start = offset + match.start(2)
    return Line(
        raw=raw,
        kind=LineKind.SETTING,
        section=section,
        key=match.group(1),
        value=value,
        commented=commented,
        value_start=value_start,
        value_end=value_start + len(value),
    )


@dataclass
class ConfigDocument:
    """Ordered, tagged lines of one configuration file."""

    dialect: Dialect
    lines: List[Line] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str, dialect: Dialect) -> "ConfigDocument":
        raw_lines = text.split("\n")
        if raw_lines and raw_lines[-1] == "":
            raw_lines.pop()
        lines: List[Line] = []
        section: Optional[str] = None
        for raw in raw_lines:
            line = parse_line(raw, dialect, section)
            if line.kind is LineKind.SECTION:
                section = line.section
            lines.append(line)
        return cls(dialect=dialect, lines=lines)

    def serialize(self) -> str:
        if not self.lines:
            return ""
        return "\n".join(line.raw for line in self.lines) + "\n"

    def section_names(self) -> List[str]:
        return [line.section for line in self.lines if line.kind is LineKind.SECTION]

    def scope_ranges(self, section: Optional[str] = None) -> List[Tuple[int, int]]:
        """
        Return the ``[start, end)`` line ranges that make up a scope.

        A named section may appear more than once; each occurrence yields a
        range starting right after its header. An empty list means the
        section does not exist. The global scope (``section=None``) is the
        whole file for flat dialects, cut at the first active terminator
        keyword, and the preamble before the first header for sectioned
        dialects.
        """
        if section is None:
            end = len(self.lines)
            for index, line in enumerate(self.lines):
                if line.kind is LineKind.SECTION:
                    end = index
                    break
                if line.active and line.key in self.dialect.scope_terminators:
                    end = index
                    break
            return [(0, end)]

        if not self.dialect.sections:
            raise ValueError(f"Dialect '{self.dialect.name}' has no sections")

        ranges: List[Tuple[int, int]] = []
        start: Optional[int] = None
        for index, line in enumerate(self.lines):
            if line.kind is LineKind.SECTION:
                if start is not None:
                    ranges.append((start, index))
                    start = None
                if line.section == section:
                    start = index + 1
        if start is not None:
            ranges.append((start, len(self.lines)))
        return ranges

    def insert(self, index: int, raw: str) -> Line:
        """Insert a new raw line at ``index`` and classify it in context."""
        section = self._section_at(index)
        line = parse_line(raw, self.dialect, section)
        self.lines.insert(index, line)
        if line.kind is LineKind.SECTION:
            self._retag_sections(index + 1)
        return line

    def continuation(self, index: int) -> List[int]:
        """Indices of indented unrecognised lines that continue the value at ``index``."""
        result: List[int] = []
        if not self.dialect.continuations:
            return result
        for follow in range(index + 1, len(self.lines)):
            line = self.lines[follow]
            if line.kind is not LineKind.OTHER or not line.indent:
                break
            result.append(follow)
        return result

    def replace_line(self, index: int, raw: str) -> Line:
        line = parse_line(raw, self.dialect, self.lines[index].section)
        self.lines[index] = line
        return line

    def _section_at(self, index: int) -> Optional[str]:
        for line in reversed(self.lines[:index]):
            if line.kind is LineKind.SECTION:
                return line.section
        return None

    def _retag_sections(self, start: int) -> None:
        section = self._section_at(start)
        for line in self.lines[start:]:
            if line.kind is LineKind.SECTION:
                break
            line.section = section
