from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap

from . import manifest
from ._version import __version__
from .client import FetchClient, StatadepsError
from .config import Config, Environment, config_path, load_config, save_config
from .installer import Installer
from .repository import AdoStore


def _pick(args: argparse.Namespace, attr: str, env_var: str, fallback):
    # Explicit CLI values win even when falsy (e.g. --timeout-s 0); empty env vars count as unset.
    value = getattr(args, attr, None)
    if value is not None:
        return value
    return os.getenv(env_var) or fallback


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    repository_url = _pick(args, "repository_url", "STATADEPS_REPOSITORY_URL", base.repository_url)
    ssc_url = _pick(args, "ssc_url", "STATADEPS_SSC_URL", base.ssc_url)
    timeout_s = _pick(args, "timeout_s", "STATADEPS_TIMEOUT_S", base.timeout_s)
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = base.timeout_s

    fail_fast = base.fail_fast
    if getattr(args, "keep_going", False):
        fail_fast = False

    return Config(
        repository_url=repository_url,
        ssc_url=ssc_url,
        timeout_s=timeout_s_f,
        manifest_name=base.manifest_name,
        ado_dir=base.ado_dir,
        fail_fast=fail_fast,
    )


def _make_environment(args: argparse.Namespace) -> Environment:
    cfg = _merge_cfg(load_config(), args)
    project_dir = getattr(args, "project_dir", None) or os.getcwd()
    return Environment.from_config(project_dir, cfg)


def _start_session(env: Environment) -> None:
    if manifest.ensure_exists(env.manifest_path):
        print(f"Created {env.manifest_path}", file=sys.stderr)
    AdoStore(env.ado_dir).ensure_dir()


def _configure_logging(verbosity: int) -> None:
    if verbosity <= 0:
        return
    level = logging.DEBUG if verbosity > 1 else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="statadeps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Project-local Stata package dependencies.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              STATADEPS_CONFIG_PATH, STATADEPS_REPOSITORY_URL, STATADEPS_SSC_URL, STATADEPS_TIMEOUT_S
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser, *, default: object = None) -> None:
        # Accepted both before and after the subcommand, e.g.:
        #   statadeps --project-dir analysis install estout
        #   statadeps install estout --project-dir analysis
        # Subcommands use SUPPRESS so they do not reset values given before the subcommand.
        parser.add_argument("--project-dir", default=default, help="Project directory holding the manifest (default: cwd)")
        parser.add_argument(
            "--from",
            dest="repository_url",
            default=default,
            help="Primary package repository (URL or directory)",
        )
        parser.add_argument("--ssc-url", default=default, help="SSC archive base URL used as fallback")
        parser.add_argument("--timeout-s", type=float, default=default, help="HTTP timeout in seconds")

    _add_runtime_overrides(p)
    p.add_argument("-v", "--verbose", action="count", default=0, help="Log progress to stderr (-vv for debug)")
    p.add_argument("--version", action="version", version=f"statadeps {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--repository-url")
    cfg_set.add_argument("--ssc-url")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--manifest-name", help="Manifest file name inside the project directory")
    cfg_set.add_argument("--ado-dir", help="Install directory, relative to the project directory unless absolute")
    cfg_set.add_argument("--fail-fast", choices=("yes", "no"), help="Stop install-deps at the first failure")

    init = sub.add_parser("init", help="Create the manifest and ado directory if missing")
    _add_runtime_overrides(init, default=argparse.SUPPRESS)

    install = sub.add_parser(
        "install",
        aliases=["project_install"],
        help="Install one package and record it in the manifest",
    )
    _add_runtime_overrides(install, default=argparse.SUPPRESS)
    install.add_argument("name", help="Package name, e.g. estout")
    install.add_argument("--json", action="store_true", help="Output JSON")

    install_deps = sub.add_parser(
        "install-deps",
        aliases=["install_deps"],
        help="Install every package listed in the manifest",
    )
    _add_runtime_overrides(install_deps, default=argparse.SUPPRESS)
    install_deps.add_argument(
        "--keep-going",
        action="store_true",
        help="Continue after a failed package and report failures at the end",
    )
    install_deps.add_argument("--json", action="store_true", help="Output JSON")

    ls = sub.add_parser("list", aliases=["ls"], help="List manifest entries")
    _add_runtime_overrides(ls, default=argparse.SUPPRESS)
    ls.add_argument("--json", action="store_true", help="Output JSON")

    uninstall = sub.add_parser(
        "uninstall",
        aliases=["remove", "rm"],
        help="Remove a package's files and its manifest entry",
    )
    _add_runtime_overrides(uninstall, default=argparse.SUPPRESS)
    uninstall.add_argument("name", help="Package name")

    return p


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        print(json.dumps(cfg.__dict__.copy(), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        fail_fast = cfg.fail_fast
        if args.fail_fast is not None:
            fail_fast = args.fail_fast == "yes"
        new_cfg = Config(
            repository_url=args.repository_url if args.repository_url is not None else cfg.repository_url,
            ssc_url=args.ssc_url or cfg.ssc_url,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            manifest_name=args.manifest_name or cfg.manifest_name,
            ado_dir=args.ado_dir or cfg.ado_dir,
            fail_fast=fail_fast,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_init(args: argparse.Namespace) -> int:
    env = _make_environment(args)
    _start_session(env)
    print(f"manifest: {env.manifest_path}")
    print(f"ado_dir: {env.ado_dir}")
    return 0


def cmd_install(args: argparse.Namespace) -> int:
    env = _make_environment(args)
    _start_session(env)
    client = FetchClient(timeout_s=env.timeout_s)
    try:
        installer = Installer.from_environment(env, client=client)
        result = installer.install(args.name)
    finally:
        client.close()

    if args.json:
        payload = {
            "name": result.name,
            "version": result.version,
            "outcome": result.outcome,
            "files": [str(p) for p in result.files],
            "manifest_path": str(env.manifest_path),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    print(f"{result.name} {result.version}")
    return 0


def cmd_install_deps(args: argparse.Namespace) -> int:
    env = _make_environment(args)
    _start_session(env)
    client = FetchClient(timeout_s=env.timeout_s)
    try:
        installer = Installer.from_environment(env, client=client)
        result = installer.install_all()
    finally:
        client.close()

    if args.json:
        payload = {
            "count": result.count,
            "installed": {r.name: r.version for r in result.results},
            "failures": {name: message for name, message in result.failures},
            "manifest_path": str(env.manifest_path),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 1 if result.failures else 0

    if result.empty:
        print("No dependencies found.")
        return 0

    for r in result.results:
        print(f"{r.name} {r.version}")
    for name, message in result.failures:
        print(f"warning: {name}: {message}", file=sys.stderr)
    print(f"Installed {result.count} package(s).")
    return 1 if result.failures else 0


def cmd_list(args: argparse.Namespace) -> int:
    env = _make_environment(args)
    _start_session(env)
    entries = manifest.read_entries(env.manifest_path)

    if args.json:
        payload = [{"name": e.name, "version": e.version, "annotation": e.annotation} for e in entries]
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    if not entries:
        print("No dependencies found.")
        return 0
    rows = [["NAME", "VERSION", "NOTE"]]
    for e in entries:
        rows.append([e.name, e.version, e.annotation or ""])
    _print_table(rows)
    return 0


def cmd_uninstall(args: argparse.Namespace) -> int:
    env = _make_environment(args)
    name = manifest.validate_name(args.name)
    _start_session(env)
    removed_files = AdoStore(env.ado_dir).remove(name)
    removed_entry = manifest.remove(env.manifest_path, name)
    if not removed_files and not removed_entry:
        raise StatadepsError(f"Package {name} is not installed.")
    for path in removed_files:
        print(f"removed: {path}")
    if removed_entry:
        print(f"removed from manifest: {name}")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "init":
            return cmd_init(args)
        if args.cmd in ("install", "project_install"):
            return cmd_install(args)
        if args.cmd in ("install-deps", "install_deps"):
            return cmd_install_deps(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        raise AssertionError("unreachable")
    except StatadepsError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
