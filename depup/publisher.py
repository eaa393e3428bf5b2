"""
Publish decision, manifest validation and the npm publisher.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, Optional

from .errors import (
    ConfigurationError,
    PublishTransportError,
    PublishValidationError,
    ScopeNotFoundError,
)
from .interfaces import Installer, Publisher
from .models import RevisionStatus
from .versioning import is_prerelease


logger = logging.getLogger(__name__)

DEFAULT_SCOPE_PREFIX = "@depup/"
DISALLOWED_SCRIPTS = ("preinstall", "postinstall", "preuninstall", "postuninstall")
SCOPE_ERROR_MARKERS = ("Scope not found", "is not in this registry")
PUBLISH_TIMEOUT = 120.0
PREPARE_TIMEOUT = 60.0


def should_publish(revision_index: int, dependencies_updated: int, requested: bool) -> bool:
    """Publish only new base versions or revisions that changed something."""
    return bool(requested) and (revision_index == 0 or dependencies_updated > 0)


def validate_for_publish(package_json: Dict, scope_prefix: str = DEFAULT_SCOPE_PREFIX) -> None:
    name = package_json.get("name") or ""
    if not name.startswith(scope_prefix) or len(name) <= len(scope_prefix):
        raise PublishValidationError(f"Package name {name!r} is not under {scope_prefix}")
    scripts = package_json.get("scripts") or {}
    found = [script for script in DISALLOWED_SCRIPTS if scripts.get(script)]
    if found:
        raise PublishValidationError(
            f"Disallowed lifecycle scripts in {name}: {', '.join(found)}"
        )


def _scope_of(name: str) -> Optional[str]:
    match = re.match(r"^@([^/]+)/", name)
    return match.group(1) if match else None


class NpmPublisher(Publisher):
    """Publish with the npm CLI through an injected command runner."""

    def __init__(
        self,
        installer: Installer,
        access: str = "public",
        prerelease_tag: str = "beta",
        publish_timeout: float = PUBLISH_TIMEOUT,
    ) -> None:
        self.installer = installer
        self.access = access
        self.prerelease_tag = prerelease_tag
        self.publish_timeout = publish_timeout

    def publish(self, directory: Path, scoped_name: str, version: str, auth_token: str) -> None:
        # Build tooling from devDependencies may be needed by prepublish hooks.
        prepare = self.installer.run(["npm", "install"], Path(directory), PREPARE_TIMEOUT)
        if not prepare.succeeded:
            logger.warning("npm install before publish failed for %s", scoped_name)

        command = ["npm", "publish", "--access", self.access]
        if is_prerelease(version):
            command += ["--tag", self.prerelease_tag]
        attempt = self.installer.run(
            command,
            Path(directory),
            self.publish_timeout,
            env={"NODE_AUTH_TOKEN": auth_token},
        )
        if attempt.succeeded:
            return
        if any(marker in attempt.output for marker in SCOPE_ERROR_MARKERS):
            raise ScopeNotFoundError(scoped_name, version, _scope_of(scoped_name))
        reason = "timed out" if attempt.timed_out else (attempt.output.strip() or "npm publish failed")
        raise PublishTransportError(scoped_name, version, reason)


class PublishGate:
    """Decide whether a prepared revision is published, and publish it."""

    def __init__(
        self,
        publisher: Publisher,
        auth_token: Optional[str] = None,
        scope_prefix: str = DEFAULT_SCOPE_PREFIX,
    ) -> None:
        self.publisher = publisher
        self.auth_token = auth_token
        self.scope_prefix = scope_prefix

    def run(
        self,
        directory: Path,
        package_json: Dict,
        revision_index: int,
        dependencies_updated: int,
        requested: bool,
    ) -> RevisionStatus:
        """Return the terminal status for the revision.

        ``PublishValidationError`` and transport errors propagate; the caller
        records the revision as ``failed``.
        """
        if not requested:
            return RevisionStatus.PREPARED

        name = package_json.get("name", "")
        version = package_json.get("version", "")
        if not should_publish(revision_index, dependencies_updated, requested):
            logger.info("Skipping publish: no dependencies were updated for %s@%s", name, version)
            return RevisionStatus.SKIPPED

        validate_for_publish(package_json, self.scope_prefix)

        if not self.auth_token:
            raise ConfigurationError("NPM_TOKEN environment variable is required for publishing")

        logger.info("Publishing %s@%s", name, version)
        self.publisher.publish(Path(directory), name, version, self.auth_token)
        logger.info("Published %s@%s", name, version)
        return RevisionStatus.PUBLISHED
