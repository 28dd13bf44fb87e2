from __future__ import annotations

import re
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator

from filelock import FileLock

from .client import StatadepsError

PACKAGES_MARKER = "packages:"
HEADER_LINES = (
    "# Stata package dependencies",
    "# Generated by statadeps; edit with `statadeps install <name>`",
)
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

NAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")
# Exactly two leading spaces; anything else inside the section is passed through.
_ENTRY_RE = re.compile(r"^  ([a-zA-Z0-9_]+):(.*)$")


class ManifestFormatError(StatadepsError):
    pass


@dataclass(frozen=True)
class Entry:
    name: str
    version: str
    annotation: str | None = None

    def render(self) -> str:
        line = f"  {self.name}: {self.version}".rstrip()
        if self.annotation:
            line += f"  # {self.annotation}"
        return line


def format_timestamp(dt: datetime | None = None) -> str:
    return (dt or datetime.now()).strftime(TIMESTAMP_FORMAT)


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise StatadepsError(f"Invalid package name {name!r}. Expected letters, digits and underscores only.")
    return name


def is_marker(line: str) -> bool:
    return line.rstrip() == PACKAGES_MARKER


def parse_entry(line: str) -> Entry | None:
    m = _ENTRY_RE.match(line)
    if not m:
        return None
    rest = m.group(2)
    annotation: str | None = None
    if "#" in rest:
        rest, note = rest.split("#", 1)
        annotation = note.strip() or None
    return Entry(name=m.group(1), version=rest.strip(), annotation=annotation)


def iter_entries(lines: Iterable[str]) -> Iterator[Entry]:
    in_section = False
    for line in lines:
        if not in_section:
            in_section = is_marker(line)
            continue
        entry = parse_entry(line)
        if entry is not None:
            yield entry


def upsert_lines(
    old_lines: Iterable[str],
    name: str,
    version: str,
    timestamp: str,
    *,
    repair: bool = True,
) -> tuple[list[str], bool]:
    """
    Rewrite manifest lines so that `name` maps to `version`.

    Returns the new lines and whether an existing entry was replaced (False means appended).
    Only the first entry for `name` survives; every other line is kept as-is and in order.
    """
    out: list[str] = []
    in_section = False
    replaced = False
    for line in old_lines:
        if not in_section:
            in_section = is_marker(line)
            out.append(line)
            continue
        entry = parse_entry(line)
        if entry is None or entry.name != name:
            out.append(line)
            continue
        if replaced:
            continue
        out.append(Entry(name, version, f"Updated: {timestamp}").render())
        replaced = True

    if not replaced:
        if not in_section:
            if not repair:
                raise ManifestFormatError(f"Manifest has no {PACKAGES_MARKER!r} section.")
            out.append(PACKAGES_MARKER)
        out.append(Entry(name, version, f"Added: {timestamp}").render())
    return out, replaced


def remove_lines(old_lines: Iterable[str], name: str) -> tuple[list[str], bool]:
    out: list[str] = []
    in_section = False
    removed = False
    for line in old_lines:
        if not in_section:
            in_section = is_marker(line)
            out.append(line)
            continue
        entry = parse_entry(line)
        if entry is not None and entry.name == name:
            removed = True
            continue
        out.append(line)
    return out, removed


def _strip_terminator(line: str) -> str:
    return line.removesuffix("\n").removesuffix("\r")


def _read_lines(path: Path) -> tuple[list[str], str]:
    # Only "\n" ends a line; other Unicode separators stay inside the line.
    with path.open("r", encoding="utf-8", newline="\n") as fh:
        raw = list(fh)
    newline = "\r\n" if raw and raw[0].endswith("\r\n") else "\n"
    return [_strip_terminator(line) for line in raw], newline


def _write_lines_atomic(path: Path, lines: list[str], newline: str = "\n") -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8", newline="\n") as fh:
        for line in lines:
            fh.write(line + newline)
    tmp.replace(path)


@contextmanager
def _locked(path: Path) -> Iterator[None]:
    lock_path = path.with_name(path.name + ".lock")
    try:
        with FileLock(str(lock_path)):
            yield
    finally:
        # The Unix backend leaves the lock file behind after release.
        with suppress(OSError):
            lock_path.unlink()


def ensure_exists(path: str | Path, now: datetime | None = None) -> bool:
    path = Path(path)
    if path.exists():
        return False
    lines = [*HEADER_LINES, f"# Created: {format_timestamp(now)}", "", PACKAGES_MARKER]
    _write_lines_atomic(path, lines)
    return True


def list_entries(path: str | Path) -> Iterator[tuple[str, str]]:
    with Path(path).open("r", encoding="utf-8", newline="\n") as fh:
        for entry in iter_entries(_strip_terminator(line) for line in fh):
            yield entry.name, entry.version


def read_entries(path: str | Path) -> list[Entry]:
    lines, _ = _read_lines(Path(path))
    return list(iter_entries(lines))


def upsert(
    path: str | Path,
    name: str,
    version: str,
    timestamp: str | None = None,
    *,
    repair: bool = True,
) -> bool:
    path = Path(path)
    validate_name(name)
    stamp = timestamp or format_timestamp()
    with _locked(path):
        old_lines, newline = _read_lines(path)
        new_lines, replaced = upsert_lines(old_lines, name, version, stamp, repair=repair)
        _write_lines_atomic(path, new_lines, newline)
    return replaced


def remove(path: str | Path, name: str) -> bool:
    path = Path(path)
    with _locked(path):
        old_lines, newline = _read_lines(path)
        new_lines, removed = remove_lines(old_lines, name)
        if removed:
            _write_lines_atomic(path, new_lines, newline)
    return removed
