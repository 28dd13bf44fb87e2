from __future__ import annotations

import re
from typing import Protocol

UNKNOWN_VERSION = "unknown"

# `which`-style output puts the file path on the first line and the `*!` header
# comments after it, e.g. "*! version 3.31  26apr2022  Ben Jann".
DEFAULT_VERSION_PATTERN = r"version[^0-9.]*([0-9][0-9.a-z]*)"
DEFAULT_MAX_LINES = 5
DEFAULT_SKIP_LINES = 1


class VersionExtractor(Protocol):
    def extract(self, text: str) -> str:
        ...


class RegexVersionExtractor:
    """
    Best-effort version lookup in free-form diagnostic text.

    Only the first `max_lines` lines are looked at, and the first `skip_lines` of those
    are ignored. The first capture wins; no match yields UNKNOWN_VERSION.
    """

    def __init__(
        self,
        pattern: str | re.Pattern[str] = DEFAULT_VERSION_PATTERN,
        *,
        max_lines: int = DEFAULT_MAX_LINES,
        skip_lines: int = DEFAULT_SKIP_LINES,
    ) -> None:
        self.pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self.max_lines = max_lines
        self.skip_lines = skip_lines

    def extract(self, text: str) -> str:
        for idx, line in enumerate(text.splitlines()):
            if idx >= self.max_lines:
                break
            if idx < self.skip_lines:
                continue
            m = self.pattern.search(line)
            if not m:
                continue
            value = m.group(1) if m.groups() else m.group(0)
            if value:
                return value
        return UNKNOWN_VERSION


_DEFAULT_EXTRACTOR = RegexVersionExtractor()


def extract_version(text: str) -> str:
    return _DEFAULT_EXTRACTOR.extract(text)
