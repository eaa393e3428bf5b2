"""
Install and import-test a prepared package.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .errors import ImportTestFailure, InstallFailure
from .interfaces import Installer
from .models import InstallAttempt, InstallReport, PackageTestReport


logger = logging.getLogger(__name__)

HARNESS_DIRNAME = ".test-temp"
HARNESS_PACKAGE = "depup-test"

DEFAULT_INSTALL_METHODS = [
    "npm install --production",
    "npm install --production --legacy-peer-deps",
    "npm install --production --force --ignore-scripts",
]
DEFAULT_HARNESS_METHODS = [
    "npm install",
    "npm install --legacy-peer-deps",
    "npm install --force --ignore-scripts",
]
MAX_INSTALL_TIMEOUT = 60.0
MAX_IMPORT_TIMEOUT = 30.0

IMPORT_TEST_TEMPLATE = """\
try {{
  const test = await import({name});
  console.log('Import successful:', typeof test);
  console.log('Default export:', typeof test.default);
  if (test.default && typeof test.default === 'object') {{
    console.log('Exports:', Object.keys(test.default).slice(0, 5).join(', '));
  }}
}} catch (error) {{
  console.error('Import failed:', error.message);
  process.exit(1);
}}
"""


class SubprocessInstaller(Installer):
    """Run commands with ``subprocess.run`` and an explicit timeout."""

    def __init__(self, stream_output: bool = False) -> None:
        self.stream_output = stream_output

    def run(
        self,
        command: Sequence[str],
        cwd: Path,
        timeout: float,
        env: Optional[dict] = None,
    ) -> InstallAttempt:
        command = tuple(command)
        logger.debug("Running %s in %s (timeout %.0fs)", " ".join(command), cwd, timeout)
        try:
            result = subprocess.run(
                list(command),
                cwd=str(cwd),
                capture_output=not self.stream_output,
                text=True,
                timeout=timeout,
                env={**os.environ, **env} if env else None,
            )
        except subprocess.TimeoutExpired:
            logger.warning("%s timed out after %.0fs", " ".join(command), timeout)
            return InstallAttempt(command=command, succeeded=False, timed_out=True)
        except FileNotFoundError as e:
            return InstallAttempt(command=command, succeeded=False, output=str(e))
        output = (result.stdout or "") + (result.stderr or "")
        return InstallAttempt(command=command, succeeded=result.returncode == 0, output=output)


def split_methods(methods: Iterable[str]) -> List[List[str]]:
    return [shlex.split(method) for method in methods]


def build_harness_manifest(scoped_name: str, package_dir: Path) -> dict:
    return {
        "name": HARNESS_PACKAGE,
        "version": "1.0.0",
        "private": True,
        "type": "module",
        "dependencies": {scoped_name: f"file:{package_dir.resolve()}"},
    }


def build_import_test(scoped_name: str) -> str:
    return IMPORT_TEST_TEMPLATE.format(name=json.dumps(scoped_name))


class PackageTester:
    """Install a package with fallbacks and check that it can be imported."""

    def __init__(
        self,
        installer: Installer,
        timeout: float = 300.0,
        install_methods: Optional[Sequence[str]] = None,
        harness_methods: Optional[Sequence[str]] = None,
    ) -> None:
        self.installer = installer
        self.timeout = timeout
        self.install_methods = split_methods(install_methods or DEFAULT_INSTALL_METHODS)
        self.harness_methods = split_methods(harness_methods or DEFAULT_HARNESS_METHODS)

    @property
    def install_timeout(self) -> float:
        return min(self.timeout / 4, MAX_INSTALL_TIMEOUT)

    @property
    def import_timeout(self) -> float:
        return min(self.timeout / 4, MAX_IMPORT_TIMEOUT)

    def install_with_fallback(self, directory: Path, methods: Sequence[Sequence[str]]) -> InstallReport:
        """Try each install method in order and stop at the first success."""
        report = InstallReport(succeeded=False)
        for method in methods:
            attempt = self.installer.run(method, directory, self.install_timeout)
            report.attempts.append(attempt)
            if attempt.succeeded:
                report.succeeded = True
                break
            logger.debug("  Install method failed: %s", " ".join(method))
        return report

    def test(self, package_dir: Path, scoped_name: str) -> PackageTestReport:
        """Install ``package_dir`` and import it from a throwaway harness.

        Failed installs are recorded as warnings only. The result is
        ``passed=False`` when the import itself fails or cannot be run.
        """
        package_dir = Path(package_dir)
        report = PackageTestReport(passed=False)

        report.dependency_install = self.install_with_fallback(package_dir, self.install_methods)
        if report.dependency_install.succeeded:
            logger.info("Dependencies installed")
        else:
            warning = InstallFailure(f"Could not install dependencies of {scoped_name}")
            logger.warning("%s, continuing", warning)
            report.warnings.append(str(warning))

        harness = package_dir / HARNESS_DIRNAME
        try:
            harness.mkdir(parents=True, exist_ok=True)
            with open(harness / "package.json", "w", encoding="utf-8") as f:
                json.dump(build_harness_manifest(scoped_name, package_dir), f, indent=2)
            with open(harness / "test.mjs", "w", encoding="utf-8") as f:
                f.write(build_import_test(scoped_name))

            report.harness_install = self.install_with_fallback(harness, self.harness_methods)
            if not report.harness_install.succeeded:
                warning = InstallFailure(f"Could not install test harness for {scoped_name}")
                logger.warning("%s, continuing", warning)
                report.warnings.append(str(warning))

            attempt = self.installer.run(["node", "test.mjs"], harness, self.import_timeout)
            report.import_output = attempt.output
            if attempt.succeeded:
                report.passed = True
                logger.info("Import test passed for %s", scoped_name)
            else:
                reason = "timed out" if attempt.timed_out else (attempt.output.strip() or "failed")
                failure = ImportTestFailure(f"Import test failed for {scoped_name}: {reason}")
                logger.warning("%s", failure)
                report.warnings.append(str(failure))
        except OSError as e:
            failure = ImportTestFailure(f"Import test could not run for {scoped_name}: {e}")
            logger.error("%s", failure)
            report.warnings.append(str(failure))
        finally:
            shutil.rmtree(harness, ignore_errors=True)

        return report
