import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

from statadeps.cli import _merge_cfg, build_parser, main
from statadeps.config import Config
from statadeps.manifest import list_entries


def _make_repo(root: Path, packages: dict[str, str]) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    for name, version in packages.items():
        (root / f"{name}.pkg").write_text(f"d {name}\nf {name}.ado\n", encoding="utf-8")
        (root / f"{name}.ado").write_text(f"*! version {version}\nprogram {name}\nend\n", encoding="utf-8")
    return root


def _make_ssc(root: Path, packages: dict[str, str]) -> Path:
    for name, version in packages.items():
        _make_repo(root / name[0], {name: version})
    root.mkdir(parents=True, exist_ok=True)
    return root


class _CliTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)
        self.project = self.tmp / "project"
        self.project.mkdir()
        self.repo = _make_repo(self.tmp / "repo", {"mytool": "1.2.0"})
        self.ssc = _make_ssc(self.tmp / "ssc", {"estout": "3.31"})
        self.cfg = Config(ssc_url=str(self.ssc))

    def tearDown(self) -> None:
        self._td.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        out = io.StringIO()
        err = io.StringIO()
        with (
            patch("statadeps.cli.load_config", return_value=self.cfg),
            patch.dict(os.environ, {}, clear=False),
            patch("sys.stdout", new=out),
            patch("sys.stderr", new=err),
        ):
            for key in ("STATADEPS_REPOSITORY_URL", "STATADEPS_SSC_URL", "STATADEPS_TIMEOUT_S"):
                os.environ.pop(key, None)
            rc = main(list(argv))
        return rc, out.getvalue(), err.getvalue()

    @property
    def manifest_path(self) -> Path:
        return self.project / "dependencies.txt"


class TestInstallCommand(_CliTestCase):
    def test_install_from_primary_prints_version(self) -> None:
        rc, out, _ = self.run_cli("install", "mytool", "--project-dir", str(self.project), "--from", str(self.repo))

        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), "mytool 1.2.0")
        self.assertEqual(list(list_entries(self.manifest_path)), [("mytool", "1.2.0")])
        self.assertTrue((self.project / "ado" / "m" / "mytool.ado").is_file())

    def test_alias_and_options_before_subcommand(self) -> None:
        rc, out, _ = self.run_cli("--project-dir", str(self.project), "--from", str(self.repo), "project_install", "mytool")
        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), "mytool 1.2.0")

    def test_falls_back_to_ssc(self) -> None:
        rc, out, _ = self.run_cli(
            "install", "estout", "--project-dir", str(self.project), "--from", str(self.repo), "--json"
        )
        self.assertEqual(rc, 0)
        payload = json.loads(out)
        self.assertEqual(payload["version"], "3.31")
        self.assertEqual(payload["outcome"], "fallback")

    def test_malformed_repository_url_falls_back_to_ssc(self) -> None:
        rc, out, err = self.run_cli("install", "estout", "--project-dir", str(self.project), "--from", "http://[bad")
        self.assertEqual(rc, 0, err)
        self.assertEqual(out.strip(), "estout 3.31")

    def test_failure_names_package(self) -> None:
        rc, out, err = self.run_cli("install", "nothere", "--project-dir", str(self.project))
        self.assertEqual(rc, 1)
        self.assertEqual(out, "")
        self.assertIn("error:", err)
        self.assertIn("nothere", err)
        self.assertEqual(list(list_entries(self.manifest_path)), [])

    def test_invalid_name(self) -> None:
        rc, _, err = self.run_cli("install", "bad-name", "--project-dir", str(self.project))
        self.assertEqual(rc, 1)
        self.assertIn("Invalid package name", err)


class TestInstallDepsCommand(_CliTestCase):
    def test_no_dependencies(self) -> None:
        rc, out, _ = self.run_cli("install-deps", "--project-dir", str(self.project))
        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), "No dependencies found.")
        self.assertTrue(self.manifest_path.exists())

    def test_installs_every_entry(self) -> None:
        self.manifest_path.write_text("# deps\n\npackages:\n  mytool: 0.1\n  estout: unknown\n", encoding="utf-8")
        rc, out, _ = self.run_cli("install_deps", "--project-dir", str(self.project), "--from", str(self.repo))

        self.assertEqual(rc, 0)
        self.assertIn("Installed 2 package(s).", out)
        self.assertEqual(list(list_entries(self.manifest_path)), [("mytool", "1.2.0"), ("estout", "3.31")])

    def test_fail_fast_by_default(self) -> None:
        self.manifest_path.write_text("packages:\n  nothere: 1.0\n  mytool: 0.1\n", encoding="utf-8")
        rc, _, err = self.run_cli("install-deps", "--project-dir", str(self.project), "--from", str(self.repo))

        self.assertEqual(rc, 1)
        self.assertIn("nothere", err)
        self.assertEqual(list(list_entries(self.manifest_path)), [("nothere", "1.0"), ("mytool", "0.1")])

    def test_keep_going_reports_failures(self) -> None:
        self.manifest_path.write_text("packages:\n  nothere: 1.0\n  mytool: 0.1\n", encoding="utf-8")
        rc, out, err = self.run_cli(
            "install-deps", "--keep-going", "--project-dir", str(self.project), "--from", str(self.repo)
        )

        self.assertEqual(rc, 1)
        self.assertIn("Installed 2 package(s).", out)
        self.assertIn("warning: nothere:", err)
        self.assertEqual(dict(list_entries(self.manifest_path))["mytool"], "1.2.0")


class TestListAndUninstall(_CliTestCase):
    def test_list_json(self) -> None:
        self.run_cli("install", "mytool", "--project-dir", str(self.project), "--from", str(self.repo))
        rc, out, _ = self.run_cli("list", "--json", "--project-dir", str(self.project))

        self.assertEqual(rc, 0)
        payload = json.loads(out)
        self.assertEqual([(e["name"], e["version"]) for e in payload], [("mytool", "1.2.0")])
        self.assertTrue(payload[0]["annotation"].startswith("Added: "))

    def test_list_empty(self) -> None:
        rc, out, _ = self.run_cli("ls", "--project-dir", str(self.project))
        self.assertEqual(rc, 0)
        self.assertEqual(out.strip(), "No dependencies found.")

    def test_uninstall(self) -> None:
        self.run_cli("install", "mytool", "--project-dir", str(self.project), "--from", str(self.repo))
        rc, out, _ = self.run_cli("uninstall", "mytool", "--project-dir", str(self.project))

        self.assertEqual(rc, 0)
        self.assertIn("removed from manifest: mytool", out)
        self.assertFalse((self.project / "ado" / "m" / "mytool.ado").exists())
        self.assertEqual(list(list_entries(self.manifest_path)), [])

    def test_uninstall_unknown_package(self) -> None:
        rc, _, err = self.run_cli("rm", "mytool", "--project-dir", str(self.project))
        self.assertEqual(rc, 1)
        self.assertIn("not installed", err)


class TestConfigCommand(unittest.TestCase):
    def test_set_then_show(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_file = Path(td) / "config.json"
            with patch.dict(os.environ, {"STATADEPS_CONFIG_PATH": str(cfg_file)}):
                with patch("sys.stdout", new=io.StringIO()):
                    rc = main(["config", "set", "--repository-url", "https://example.org/stata", "--fail-fast", "no"])
                self.assertEqual(rc, 0)

                out = io.StringIO()
                with patch("sys.stdout", new=out):
                    main(["config", "show"])

            shown = json.loads(out.getvalue())
            self.assertEqual(shown["repository_url"], "https://example.org/stata")
            self.assertFalse(shown["fail_fast"])


class TestMergeConfig(unittest.TestCase):
    def test_cli_beats_env_beats_file(self) -> None:
        base = Config(repository_url="file-url", ssc_url="file-ssc", timeout_s=10.0)
        args = SimpleNamespace(repository_url="cli-url", ssc_url=None, timeout_s=None, keep_going=True)
        env = {"STATADEPS_REPOSITORY_URL": "env-url", "STATADEPS_SSC_URL": "env-ssc", "STATADEPS_TIMEOUT_S": "bogus"}
        with patch.dict(os.environ, env):
            cfg = _merge_cfg(base, args)

        self.assertEqual(cfg.repository_url, "cli-url")
        self.assertEqual(cfg.ssc_url, "env-ssc")
        self.assertEqual(cfg.timeout_s, 10.0)
        self.assertFalse(cfg.fail_fast)

    def test_explicit_zero_timeout_is_kept(self) -> None:
        base = Config(timeout_s=10.0)
        args = SimpleNamespace(repository_url=None, ssc_url=None, timeout_s=0.0)
        with patch.dict(os.environ, {"STATADEPS_TIMEOUT_S": "7"}):
            cfg = _merge_cfg(base, args)
        self.assertEqual(cfg.timeout_s, 0.0)

    def test_empty_env_var_counts_as_unset(self) -> None:
        base = Config(ssc_url="file-ssc")
        args = SimpleNamespace(repository_url=None, ssc_url=None, timeout_s=None)
        with patch.dict(os.environ, {"STATADEPS_SSC_URL": ""}):
            cfg = _merge_cfg(base, args)
        self.assertEqual(cfg.ssc_url, "file-ssc")

    def test_subcommand_does_not_reset_global_options(self) -> None:
        args = build_parser().parse_args(["--project-dir", "proj", "install", "estout"])
        self.assertEqual(args.project_dir, "proj")
        args = build_parser().parse_args(["install", "estout"])
        self.assertIsNone(args.project_dir)


if __name__ == "__main__":
    unittest.main()
