"""
Error types raised by the DepUp pipeline.
"""

from __future__ import annotations

from typing import Optional


class DepUpError(RuntimeError):
    """Base class for DepUp errors."""


class ConfigurationError(DepUpError):
    """Raised when configuration or environment is missing or invalid."""


class ResolutionError(DepUpError):
    """Raised when a package spec cannot be resolved against the registry."""

    def __init__(self, spec: str, reason: str) -> None:
        super().__init__(f"Could not resolve {spec}: {reason}")
        self.spec = spec
        self.reason = reason


class DependencyResolutionWarning(DepUpError):
    """A single dependency could not be checked during a bump pass."""

    def __init__(self, dependency: str, reason: str) -> None:
        super().__init__(f"Could not update {dependency}: {reason}")
        self.dependency = dependency
        self.reason = reason


class RevisionConflictError(DepUpError):
    """Raised when an allocated revision directory already exists."""


class InstallFailure(DepUpError):
    """Raised when every install strategy has failed."""


class ImportTestFailure(DepUpError):
    """Raised when the harness import of a package fails."""


class PublishValidationError(DepUpError):
    """Raised when a manifest is not fit to be published."""


class PublishTransportError(DepUpError):
    """Raised when the registry rejects a publish."""

    def __init__(self, package: str, version: str, reason: str) -> None:
        super().__init__(f"Failed to publish {package}@{version}: {reason}")
        self.package = package
        self.version = version
        self.reason = reason


class ScopeNotFoundError(PublishTransportError):
    """The target scope does not exist on the registry."""

    def __init__(self, package: str, version: str, scope: Optional[str]) -> None:
        reason = (
            f"The npm scope '@{scope}' does not exist. Create the organization "
            "at https://www.npmjs.com/org/create and give NPM_TOKEN publish rights."
        )
        super().__init__(package, version, reason)
        self.scope = scope
