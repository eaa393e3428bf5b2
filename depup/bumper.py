"""
Dependency bumping for a package manifest.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Dict, List, Optional

from .errors import DependencyResolutionWarning, DepUpError
from .interfaces import PackageRegistry
from .models import BumpResult, DependencyEdge
from .versioning import coerce_declared, is_newer, is_valid


logger = logging.getLogger(__name__)

SECTIONS = ("dependencies", "devDependencies")
MAX_PER_DEPENDENCY_TIMEOUT = 10.0


def per_dependency_timeout(total_timeout: float) -> float:
    """Timeout for one dependency lookup, derived from the overall timeout."""
    return min(total_timeout / 30, MAX_PER_DEPENDENCY_TIMEOUT)


def dependency_names(package_json: Dict) -> List[str]:
    """Names declared in ``dependencies`` or ``devDependencies``, each once."""
    names: Dict[str, None] = {}
    for section in SECTIONS:
        names.update(dict.fromkeys(package_json.get(section) or {}))
    return list(names)


class DependencyBumper:
    """Rewrite declared dependencies to ``^<latest>`` when the registry has newer."""

    def __init__(
        self,
        registry: PackageRegistry,
        timeout: float = 300.0,
        dependency_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.timeout = timeout
        self.dependency_timeout = dependency_timeout or per_dependency_timeout(timeout)
        self.clock = clock

    def bump(self, package_json: Dict) -> BumpResult:
        """Update ``package_json`` in place and report what changed.

        Each section's range is compared on its own, so a name declared in
        both sections is only rewritten where the latest version is newer.
        A dependency that cannot be looked up, or whose range has no lower
        bound, is recorded as a warning and left as it is.
        """
        result = BumpResult()
        deadline = self.clock() + self.timeout

        for name in dependency_names(package_json):
            remaining = deadline - self.clock()
            if remaining <= 0:
                self._warn(result, DependencyResolutionWarning(name, "bump pass timed out"))
                continue

            declared = {
                section: package_json[section][name]
                for section in SECTIONS
                if name in (package_json.get(section) or {})
            }
            floors = {}
            for section, value in declared.items():
                floor = coerce_declared(value) if isinstance(value, str) else None
                if floor is None:
                    self._warn(result, DependencyResolutionWarning(
                        name, f"range {value!r} in {section} has no comparable version"
                    ))
                else:
                    floors[section] = floor
            if not floors:
                continue

            try:
                latest = self._lookup(name, min(self.dependency_timeout, remaining))
            except DependencyResolutionWarning as warning:
                self._warn(result, warning)
                continue

            updated = False
            for section, floor in floors.items():
                newer = is_newer(latest, floor)
                result.edges.append(DependencyEdge(
                    name=name,
                    declared_range=declared[section],
                    resolved_latest=latest,
                    section=section,
                    updated=newer,
                ))
                if newer:
                    package_json[section][name] = f"^{latest}"
                    logger.debug("  %s (%s): %s -> %s", name, section, declared[section], latest)
                    updated = True
            if updated:
                result.updated_count += 1

        if result.updated_count:
            logger.info("Updated %d dependencies", result.updated_count)
        else:
            logger.info("No dependencies to update")
        if result.warnings:
            logger.warning("Failed to check %d dependencies", len(result.warnings))
        return result

    def _lookup(self, name: str, limit: float) -> str:
        """Latest version of ``name``, bounded by ``limit`` seconds of wall time.

        The socket timeout alone does not bound a lookup, since the session
        retries and backs off; a lookup still running at the limit is
        abandoned on its worker thread.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="depup-lookup")
        try:
            future = executor.submit(self.registry.latest_version, name, timeout=limit)
            latest = future.result(timeout=limit)
        except FutureTimeoutError as e:
            raise DependencyResolutionWarning(name, f"lookup timed out after {limit:g}s") from e
        except (DepUpError, OSError, ValueError) as e:
            raise DependencyResolutionWarning(name, str(e) or type(e).__name__) from e
        finally:
            executor.shutdown(wait=False)
        if not is_valid(latest):
            raise DependencyResolutionWarning(name, f"registry returned invalid version {latest!r}")
        return latest

    @staticmethod
    def _warn(result: BumpResult, warning: DependencyResolutionWarning) -> None:
        logger.debug("  %s", warning)
        result.warnings.append(str(warning))
