from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import urljoin

from .client import FetchClient, StatadepsConnectionError, StatadepsError, StatadepsHTTPError
from .config import DEFAULT_SSC_URL

logger = logging.getLogger(__name__)

PKG_SUFFIX = ".pkg"
TRACKING_FILENAME = "statadeps.trk.json"

# Stata return codes, so messages read the same as `net install` failures.
RC_INVALID = 198
RC_NOT_FOUND = 601
RC_ALREADY_EXISTS = 602
RC_HOST_UNREACHABLE = 631
RC_SERVER_REFUSED = 672

# `.pkg` line types whose file goes into the ado tree on install.
_INSTALLED_KINDS = {"f", "F", "h"}


class RepositoryError(StatadepsError):
    def __init__(self, message: str, code: int) -> None:
        self.code = code
        super().__init__(message)


@dataclass(frozen=True)
class PackageFile:
    kind: str
    source: str

    @property
    def filename(self) -> str:
        return self.source.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class PackageDescription:
    name: str
    title: str
    files: tuple[PackageFile, ...]


def parse_pkg(name: str, text: str) -> PackageDescription:
    """
    Parse a Stata `.pkg` description.

    Recognized lines are `d` (description; the first one is the title) and the
    file lines `f`, `F` and `h`. Ancillary (`a`), platform-specific (`g`/`G`)
    and unknown lines are ignored. A file line that names no usable file
    (`f dir/`, `f ..`) raises RepositoryError.
    """
    title = ""
    files: list[PackageFile] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("*"):
            continue
        kind, _, rest = line.partition(" ")
        rest = rest.strip()
        if kind == "d":
            if not title and rest:
                title = rest
            continue
        if kind in _INSTALLED_KINDS and rest:
            f = PackageFile(kind=kind, source=rest)
            if f.filename in ("", ".", ".."):
                raise RepositoryError(f"package {name} lists an invalid file {rest!r}", RC_INVALID)
            files.append(f)
    return PackageDescription(name=name, title=title, files=tuple(files))


def letter_dir(filename: str) -> str:
    first = filename[:1].lower()
    return first if first.isalpha() else "_"


def _is_remote(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def _local_path(location: str) -> Path:
    return Path(location.removeprefix("file://")).expanduser()


def _join(base: str, relative: str) -> str:
    if _is_remote(base):
        try:
            return urljoin(base.rstrip("/") + "/", relative)
        except ValueError as e:
            raise RepositoryError(f"invalid repository location {base!r}: {e}", RC_INVALID) from e
    return str(_local_path(base) / relative)


def _parent(location: str) -> str:
    if _is_remote(location):
        return location.rsplit("/", 1)[0]
    return str(_local_path(location).parent)


def _fetch(location: str, client: FetchClient | None) -> bytes:
    if _is_remote(location):
        if client is None:
            raise RepositoryError(f"No HTTP client available to fetch {location}", RC_INVALID)
        try:
            return client.get_bytes(location)
        except StatadepsHTTPError as e:
            if e.status_code == 404:
                raise RepositoryError(f"file {location} not found", RC_NOT_FOUND) from e
            raise RepositoryError(f"server refused to send {location} (HTTP {e.status_code})", RC_SERVER_REFUSED) from e
        except StatadepsConnectionError as e:
            raise RepositoryError(f"host not reachable for {location}: {e}", RC_HOST_UNREACHABLE) from e

    path = _local_path(location)
    try:
        return path.read_bytes()
    except OSError as e:
        raise RepositoryError(f"file {path} not found", RC_NOT_FOUND) from e
    except ValueError as e:
        raise RepositoryError(f"invalid repository location {location!r}: {e}", RC_INVALID) from e


def _write_json_atomic(path: Path, data: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


class AdoStore:
    """
    Project-local ado tree laid out like Stata's PLUS directory (`<ado_dir>/<letter>/<file>`).

    Files installed per package are tracked in `statadeps.trk.json` at the tree root.
    """

    def __init__(self, ado_dir: Path) -> None:
        self.ado_dir = Path(ado_dir).expanduser()
        self.tracking_path = self.ado_dir / TRACKING_FILENAME

    def ensure_dir(self) -> None:
        try:
            self.ado_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StatadepsError(f"Could not create ado directory: {self.ado_dir}") from e
        if not self.ado_dir.is_dir():
            raise StatadepsError(f"Ado path is not a directory: {self.ado_dir}")

    def destination(self, filename: str) -> Path:
        return self.ado_dir / letter_dir(filename) / filename

    def install_files(self, package: str, payloads: list[tuple[str, bytes]], *, replace: bool) -> list[Path]:
        self.ensure_dir()
        targets = [(self.destination(filename), data) for filename, data in payloads]
        if not replace:
            for target, data in targets:
                if target.exists() and target.read_bytes() != data:
                    raise RepositoryError(f"file {target} already exists", RC_ALREADY_EXISTS)

        written: list[Path] = []
        for target, data in targets:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            written.append(target)

        tracking = self._load_tracking()
        tracking[package] = sorted(str(p.relative_to(self.ado_dir)) for p in written)
        _write_json_atomic(self.tracking_path, tracking)
        return written

    def installed_files(self, package: str) -> list[Path]:
        return [self.ado_dir / rel for rel in self._load_tracking().get(package, [])]

    def locate(self, package: str) -> Path | None:
        path = self.destination(f"{package}.ado")
        return path if path.is_file() else None

    def describe(self, package: str) -> str:
        """
        Text in the shape of Stata's `which`: the file path, then the leading `*!` lines.
        """
        path = self.destination(f"{package}.ado")
        lines = [str(path)]
        with path.open("r", encoding="utf-8", errors="replace") as fh:
            for raw in fh:
                line = raw.rstrip("\r\n")
                if line.startswith("*!"):
                    lines.append(line)
                    continue
                if not line.strip() and len(lines) == 1:
                    continue
                break
        return "\n".join(lines) + "\n"

    def remove(self, package: str) -> list[Path]:
        tracking = self._load_tracking()
        removed: list[Path] = []
        for rel in tracking.pop(package, []):
            path = self.ado_dir / rel
            if path.exists():
                path.unlink()
                removed.append(path)
            parent = path.parent
            if parent != self.ado_dir and parent.is_dir() and not any(parent.iterdir()):
                parent.rmdir()
        if self.tracking_path.exists():
            _write_json_atomic(self.tracking_path, tracking)
        return removed

    def _load_tracking(self) -> dict[str, list[str]]:
        if not self.tracking_path.exists():
            return {}
        try:
            raw = json.loads(self.tracking_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            logger.warning("Ignoring unreadable tracking file %s", self.tracking_path)
            return {}
        if not isinstance(raw, dict):
            return {}
        return {k: [str(p) for p in v] for k, v in raw.items() if isinstance(k, str) and isinstance(v, list)}


class Repository(Protocol):
    label: str

    def install(self, package: str, store: AdoStore, *, replace: bool) -> list[Path]:
        ...


class NetRepository:
    """
    A `net from`-style location (URL or local directory) holding `<name>.pkg` files.
    """

    label = "net"

    def __init__(self, url: str | None, client: FetchClient | None = None) -> None:
        self.url = url.rstrip("/") if url else None
        self.client = client

    def package_url(self, package: str) -> str:
        if not self.url:
            raise RepositoryError("No package repository configured.", RC_INVALID)
        return _join(self.url, package + PKG_SUFFIX)

    def describe_package(self, package: str) -> tuple[str, PackageDescription]:
        pkg_url = self.package_url(package)
        raw = _fetch(pkg_url, self.client)
        return pkg_url, parse_pkg(package, raw.decode("utf-8", errors="replace"))

    def install(self, package: str, store: AdoStore, *, replace: bool = False) -> list[Path]:
        pkg_url, desc = self.describe_package(package)
        if not desc.files:
            raise RepositoryError(f"package {package} at {pkg_url} lists no files to install", RC_NOT_FOUND)

        base = _parent(pkg_url)
        payloads: list[tuple[str, bytes]] = []
        for f in desc.files:
            logger.debug("Fetching %s for %s", f.source, package)
            payloads.append((f.filename, _fetch(_join(base, f.source), self.client)))
        written = store.install_files(package, payloads, replace=replace)
        logger.info("Installed %s from %s (%d files)", package, self.label, len(written))
        return written


class SscRepository(NetRepository):
    """
    The Statistical Software Components archive: `<base>/<first letter>/<name>.pkg`.
    """

    label = "ssc"

    def __init__(self, url: str = DEFAULT_SSC_URL, client: FetchClient | None = None) -> None:
        super().__init__(url, client)

    def package_url(self, package: str) -> str:
        if not self.url:
            raise RepositoryError("No SSC mirror configured.", RC_INVALID)
        return _join(self.url, f"{letter_dir(package)}/{package}{PKG_SUFFIX}")
