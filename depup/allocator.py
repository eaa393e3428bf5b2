"""
Revision index allocation.

Revisions of ``<name>@<base_version>`` live in
``<packages_root>/<name>/<base_version>/rev-<N>``. The next index is one past
the highest existing ``N``; callers must not run two allocations for the same
package and base version at once.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import RevisionConflictError
from .models import PackageRef


logger = logging.getLogger(__name__)

REVISION_PREFIX = "rev-"


def parse_revision_name(name: str) -> Optional[int]:
    """Index encoded in a ``rev-<N>`` name, or None when malformed."""
    if not name.startswith(REVISION_PREFIX):
        return None
    suffix = name[len(REVISION_PREFIX):]
    if not suffix.isdigit():
        return None
    return int(suffix)


def next_index(existing: Iterable[int]) -> int:
    indices = list(existing)
    return max(indices) + 1 if indices else 0


class RevisionAllocator:
    """Compute and claim revision directories under a packages root."""

    def __init__(self, packages_root: Path, ledger=None) -> None:
        self.packages_root = Path(packages_root)
        self.ledger = ledger

    def package_dir(self, name: str) -> Path:
        return self.packages_root / name

    def version_dir(self, ref: PackageRef) -> Path:
        return self.package_dir(ref.name) / ref.base_version

    def revision_dir(self, ref: PackageRef, index: int) -> Path:
        return self.version_dir(ref) / f"{REVISION_PREFIX}{index}"

    def existing_indices(self, ref: PackageRef) -> List[int]:
        indices = set()
        version_dir = self.version_dir(ref)
        if version_dir.is_dir():
            for entry in version_dir.iterdir():
                if not entry.is_dir():
                    continue
                index = parse_revision_name(entry.name)
                if index is not None:
                    indices.add(index)
        if self.ledger is not None:
            indices.update(self.ledger.recorded_indices(ref))
        return sorted(indices)

    def next_index(self, ref: PackageRef) -> int:
        """Next unused index for ``ref``; a pure read."""
        return next_index(self.existing_indices(ref))

    def allocate(self, ref: PackageRef) -> int:
        """Take the next index and create its directory."""
        index = self.next_index(ref)
        target = self.revision_dir(ref, index)
        try:
            target.mkdir(parents=True, exist_ok=False)
        except FileExistsError as e:
            raise RevisionConflictError(f"Revision directory already exists: {target}") from e
        logger.debug("Allocated %s for %s", target.name, ref.spec)
        return index
