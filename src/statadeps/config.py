from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_SSC_URL = "http://fmwww.bc.edu/repec/bocode"
DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MANIFEST_NAME = "dependencies.txt"
DEFAULT_ADO_DIR = "ado"


@dataclass(frozen=True)
class Config:
    repository_url: str | None = None  # primary `net from` location; None means SSC only
    ssc_url: str = DEFAULT_SSC_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    manifest_name: str = DEFAULT_MANIFEST_NAME
    ado_dir: str = DEFAULT_ADO_DIR  # relative paths are anchored at the project directory
    fail_fast: bool = True


@dataclass(frozen=True)
class Environment:
    """
    Everything an install session needs to know about where things live.

    Built once per invocation from the project directory and the merged config,
    then handed to the installer explicitly.
    """

    project_dir: Path
    manifest_path: Path
    ado_dir: Path
    repository_url: str | None
    ssc_url: str
    timeout_s: float = DEFAULT_TIMEOUT_S
    fail_fast: bool = True

    @classmethod
    def from_config(cls, project_dir: str | Path, cfg: Config) -> "Environment":
        root = Path(project_dir).expanduser().resolve()
        ado_dir = Path(cfg.ado_dir).expanduser()
        if not ado_dir.is_absolute():
            ado_dir = root / ado_dir
        return cls(
            project_dir=root,
            manifest_path=root / cfg.manifest_name,
            ado_dir=ado_dir,
            repository_url=cfg.repository_url or None,
            ssc_url=cfg.ssc_url,
            timeout_s=cfg.timeout_s,
            fail_fast=cfg.fail_fast,
        )


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("STATADEPS_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("statadeps") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path
