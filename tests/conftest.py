import json
from pathlib import Path

import pytest

from depup.config import DepUpConfig
from depup.errors import ResolutionError
from depup.ledger import IntegrityLedger
from depup.models import InstallAttempt, Manifest
from depup.versioning import split_spec


class FakeRegistry:
    """In-memory registry: ``packages`` maps name -> {version: package.json}."""

    def __init__(self, packages=None, latest=None, failing=()):
        self.packages = packages or {}
        self.latest = dict(latest or {})
        self.failing = set(failing)
        self.lookups = []
        self.extracted = []

    def add(self, package_json, latest=True):
        versions = self.packages.setdefault(package_json["name"], {})
        versions[package_json["version"]] = package_json
        if latest:
            self.latest[package_json["name"]] = package_json["version"]

    def resolve_manifest(self, spec, timeout=None):
        name, selector = split_spec(spec)
        if name in self.failing:
            raise ResolutionError(spec, "registry unreachable")
        selector = selector or "latest"
        if selector == "latest":
            if name not in self.latest:
                raise ResolutionError(spec, "no such package or version")
            selector = self.latest[name]
        data = self.packages.get(name, {}).get(selector)
        if data is None:
            if name in self.latest and selector == self.latest[name]:
                data = {"name": name, "version": selector}
            else:
                raise ResolutionError(spec, "no such package or version")
        return Manifest(
            name=name,
            version=selector,
            dependencies=dict(data.get("dependencies") or {}),
            dev_dependencies=dict(data.get("devDependencies") or {}),
            tarball=f"https://registry.test/{name}/-/{selector}.tgz",
        )

    def latest_version(self, name, timeout=None):
        self.lookups.append((name, timeout))
        return self.resolve_manifest(f"{name}@latest", timeout=timeout).version

    def extract(self, spec, target_dir, timeout=None):
        manifest = self.resolve_manifest(spec, timeout=timeout)
        data = self.packages.get(manifest.name, {}).get(
            manifest.version, {"name": manifest.name, "version": manifest.version}
        )
        target_dir = Path(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        with open(target_dir / "package.json", "w", encoding="utf-8") as f:
            json.dump(data, f)
        (target_dir / "index.js").write_text("module.exports = {};\n", encoding="utf-8")
        self.extracted.append(spec)
        return target_dir


class FakeInstaller:
    """Records commands; commands listed in ``failing`` or ``timing_out`` do not succeed."""

    def __init__(self, failing=(), outputs=None, timing_out=()):
        self.failing = [tuple(c) for c in failing]
        self.timing_out = [tuple(c) for c in timing_out]
        self.outputs = outputs or {}
        self.calls = []

    def run(self, command, cwd, timeout, env=None):
        command = tuple(command)
        self.calls.append({"command": command, "cwd": Path(cwd), "timeout": timeout, "env": env})
        if command in self.timing_out:
            return InstallAttempt(command=command, succeeded=False, timed_out=True)
        return InstallAttempt(
            command=command,
            succeeded=command not in self.failing,
            output=self.outputs.get(command, ""),
        )

    def commands(self):
        return [call["command"] for call in self.calls]


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def packages_root(tmp_path: Path) -> Path:
    return tmp_path / "packages"


@pytest.fixture
def ledger(packages_root: Path) -> IntegrityLedger:
    return IntegrityLedger(packages_root)


@pytest.fixture
def config(tmp_path: Path) -> DepUpConfig:
    return DepUpConfig.from_dict({"packagesDir": "packages"}, base_dir=tmp_path)
