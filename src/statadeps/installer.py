from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from . import manifest
from .client import FetchClient, StatadepsError
from .config import Environment
from .repository import AdoStore, NetRepository, Repository, RepositoryError, SscRepository
from .versions import UNKNOWN_VERSION, RegexVersionExtractor, VersionExtractor

logger = logging.getLogger(__name__)

OUTCOME_PRIMARY = "primary"
OUTCOME_FALLBACK = "fallback"


class InstallError(StatadepsError):
    """Neither repository could install the package."""

    def __init__(self, package: str, code: int, message: str | None = None) -> None:
        self.package = package
        self.code = code
        super().__init__(message or f"Could not install {package} (r({code})).")


@dataclass(frozen=True)
class InstallResult:
    name: str
    version: str
    outcome: str
    files: tuple[Path, ...] = ()


@dataclass(frozen=True)
class BatchResult:
    count: int
    results: tuple[InstallResult, ...] = ()
    failures: tuple[tuple[str, str], ...] = ()

    @property
    def empty(self) -> bool:
        return self.count == 0


class Installer:
    def __init__(
        self,
        *,
        manifest_path: Path,
        store: AdoStore,
        primary: Repository,
        secondary: Repository,
        extractor: VersionExtractor | None = None,
        clock: Callable[[], datetime] = datetime.now,
        fail_fast: bool = True,
    ) -> None:
        self.manifest_path = Path(manifest_path)
        self.store = store
        self.primary = primary
        self.secondary = secondary
        self.extractor = extractor or RegexVersionExtractor()
        self.clock = clock
        self.fail_fast = fail_fast

    @classmethod
    def from_environment(
        cls,
        env: Environment,
        *,
        client: FetchClient | None = None,
        extractor: VersionExtractor | None = None,
    ) -> "Installer":
        return cls(
            manifest_path=env.manifest_path,
            store=AdoStore(env.ado_dir),
            primary=NetRepository(env.repository_url, client),
            secondary=SscRepository(env.ssc_url, client),
            extractor=extractor,
            fail_fast=env.fail_fast,
        )

    def install(self, name: str) -> InstallResult:
        manifest.validate_name(name)
        outcome, files = self._install_from_repositories(name)
        version = self._resolve_version(name)
        manifest.upsert(self.manifest_path, name, version, manifest.format_timestamp(self.clock()))
        return InstallResult(name=name, version=version, outcome=outcome, files=tuple(files))

    def install_all(self, manifest_path: Path | None = None, *, fail_fast: bool | None = None) -> BatchResult:
        """
        Reinstall every package listed in the manifest, in file order.

        Recorded versions are ignored; each package is resolved against the repositories again.
        With fail_fast the first InstallError propagates; otherwise failures are collected.
        """
        path = Path(manifest_path) if manifest_path is not None else self.manifest_path
        stop_on_error = self.fail_fast if fail_fast is None else fail_fast
        # Materialize first: each install rewrites the file we are reading from.
        names = [name for name, _ in manifest.list_entries(path)]

        results: list[InstallResult] = []
        failures: list[tuple[str, str]] = []
        count = 0
        for name in names:
            count += 1
            try:
                results.append(self.install(name))
            except InstallError as e:
                if stop_on_error:
                    raise
                logger.warning("Skipping %s: %s", name, e)
                failures.append((name, str(e)))
        return BatchResult(count=count, results=tuple(results), failures=tuple(failures))

    def _install_from_repositories(self, name: str) -> tuple[str, list[Path]]:
        try:
            return OUTCOME_PRIMARY, self.primary.install(name, self.store, replace=False)
        except RepositoryError as e:
            logger.info("%s install of %s failed (r(%d)): %s", self.primary.label, name, e.code, e)

        try:
            files = self.secondary.install(name, self.store, replace=True)
        except RepositoryError as e:
            raise InstallError(name, e.code, f"Could not install {name} (r({e.code})): {e}") from e
        return OUTCOME_FALLBACK, files

    def _resolve_version(self, name: str) -> str:
        if self.store.locate(name) is None:
            logger.debug("No %s.ado found after install; version unknown", name)
            return UNKNOWN_VERSION
        try:
            return self.extractor.extract(self.store.describe(name))
        except Exception as e:  # noqa: BLE001 - version lookup is best-effort
            logger.debug("Version lookup for %s failed: %s", name, e)
            return UNKNOWN_VERSION
