"""
Interfaces for the registry, installer and publisher collaborators.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Protocol, Sequence

from .models import InstallAttempt, Manifest


class PackageRegistry(Protocol):
    """Resolve manifests and fetch package contents from a registry."""

    def resolve_manifest(self, spec: str, timeout: Optional[float] = None) -> Manifest:
        ...

    def latest_version(self, name: str, timeout: Optional[float] = None) -> str:
        ...

    def extract(self, spec: str, target_dir: Path, timeout: Optional[float] = None) -> Path:
        ...


class Installer(Protocol):
    """Run one install (or import) command in a directory."""

    def run(
        self,
        command: Sequence[str],
        cwd: Path,
        timeout: float,
        env: Optional[dict] = None,
    ) -> InstallAttempt:
        ...


class Publisher(Protocol):
    """Push a prepared package directory to the target registry."""

    def publish(
        self,
        directory: Path,
        scoped_name: str,
        version: str,
        auth_token: str,
    ) -> None:
        ...
