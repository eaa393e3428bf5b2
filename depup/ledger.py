"""
Integrity ledger: revision outcomes and community votes.

Each package directory holds two JSON files:

``integrity.json``
    ``{base_version: {index: {version, timestamp, status, integrity?}}}``
``votes.json``
    ``{base_version: {index: {up, down, neutral, details: [...]}}}``

Writes are merge-on-write: the file is re-read under a per-file lock, the
one entry is updated and the whole document is atomically replaced. Vote
details are only ever appended.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .models import (
    IntegritySnapshot,
    PackageRef,
    Revision,
    RevisionKey,
    RevisionStatus,
    Vote,
    VoteDirection,
    compute_score,
    score_status,
)
from .time_utils import format_timestamp
from .versioning import version_sort_key


logger = logging.getLogger(__name__)

INTEGRITY_FILENAME = "integrity.json"
VOTES_FILENAME = "votes.json"

__all__ = [
    "IntegrityLedger",
    "compute_score",
    "score_status",
    "snapshot_from_votes",
    "snapshot_from_entry",
]

_locks_guard = threading.Lock()
_file_locks: Dict[str, threading.Lock] = {}


def lock_for(path: Path) -> threading.Lock:
    key = str(Path(path).resolve())
    with _locks_guard:
        lock = _file_locks.get(key)
        if lock is None:
            lock = _file_locks[key] = threading.Lock()
        return lock


def read_json(path: Path) -> Dict:
    """Load a ledger file; a missing file is an empty ledger."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return data


def write_json_atomic(path: Path, data: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)
        raise


def snapshot_from_entry(entry: Optional[Dict]) -> IntegritySnapshot:
    entry = entry or {}
    details = entry.get("details") or []
    return IntegritySnapshot(
        up_count=int(entry.get("up", 0)),
        down_count=int(entry.get("down", 0)),
        neutral_count=int(entry.get("neutral", 0)),
        last_updated=details[-1].get("timestamp") if details else None,
    )


def snapshot_from_votes(votes: List[Vote]) -> IntegritySnapshot:
    """Recompute a snapshot from the full vote history of one revision."""
    counts = {direction: 0 for direction in VoteDirection}
    for vote in votes:
        counts[vote.direction] += 1
    return IntegritySnapshot(
        up_count=counts[VoteDirection.UP],
        down_count=counts[VoteDirection.DOWN],
        neutral_count=counts[VoteDirection.NEUTRAL],
        last_updated=votes[-1].timestamp if votes else None,
    )


class IntegrityLedger:
    """Per-package revision status and vote files under a packages root."""

    def __init__(self, packages_root: Path) -> None:
        self.packages_root = Path(packages_root)

    def integrity_path(self, package: str) -> Path:
        return self.packages_root / package / INTEGRITY_FILENAME

    def votes_path(self, package: str) -> Path:
        return self.packages_root / package / VOTES_FILENAME

    @contextmanager
    def _edit(self, path: Path) -> Iterator[Dict]:
        with lock_for(path):
            data = read_json(path)
            yield data
            write_json_atomic(path, data)

    # Revision outcomes

    def record_outcome(
        self,
        key: RevisionKey,
        version: str,
        status: RevisionStatus,
        timestamp: Optional[str] = None,
    ) -> Dict:
        """Store the outcome of a pipeline run; vote-derived data is kept."""
        status = RevisionStatus(status)
        with self._edit(self.integrity_path(key.package)) as data:
            entry = data.setdefault(key.base_version, {}).setdefault(str(key.index), {})
            entry.update(
                version=version,
                timestamp=timestamp or format_timestamp(),
                status=status.value,
            )
            stored = dict(entry)
        logger.debug("Recorded %s as %s", key, status.value)
        return stored

    def status_data(self, package: str) -> Dict:
        return read_json(self.integrity_path(package))

    def revisions(self, package: str) -> List[Revision]:
        """Revisions recorded for a package, ordered by base version then index."""
        revisions = []
        for base_version, entries in self.status_data(package).items():
            ref = PackageRef(package, base_version)
            for index, entry in entries.items():
                if not str(index).isdigit() or "status" not in entry:
                    continue
                revisions.append(
                    Revision(
                        package_ref=ref,
                        index=int(index),
                        status=RevisionStatus(entry["status"]),
                        timestamp=entry.get("timestamp", ""),
                    )
                )
        return sorted(
            revisions, key=lambda r: (version_sort_key(r.package_ref.base_version), r.index)
        )

    def recorded_indices(self, ref: PackageRef) -> List[int]:
        entries = self.status_data(ref.name).get(ref.base_version, {})
        return sorted(int(index) for index in entries if str(index).isdigit())

    def base_versions(self, package: str) -> List[str]:
        return list(self.status_data(package).keys())

    def packages(self) -> List[str]:
        """Package names (including ``@scope/name``) that have a status file."""
        if not self.packages_root.is_dir():
            return []
        found = []
        for path in sorted(self.packages_root.rglob(INTEGRITY_FILENAME)):
            relative = path.parent.relative_to(self.packages_root)
            parts = relative.parts
            if len(parts) == 1 or (len(parts) == 2 and parts[0].startswith("@")):
                found.append("/".join(parts))
        return found

    # Votes

    def record_vote(
        self,
        key: RevisionKey,
        direction: VoteDirection,
        description: str = "",
        voter: Optional[str] = None,
    ) -> IntegritySnapshot:
        """Append a vote and refresh the revision's integrity block."""
        direction = VoteDirection(direction)
        timestamp = format_timestamp()
        vote = Vote(
            revision_key=key,
            direction=direction,
            timestamp=timestamp,
            voter_id=voter or os.environ.get("USER") or "anonymous",
            description=description or "",
            vote_id=uuid.uuid4().hex,
        )

        # Lock order is votes then integrity; the snapshot is stored before
        # the votes lock is released.
        with self._edit(self.votes_path(key.package)) as votes:
            entry = votes.setdefault(key.base_version, {}).setdefault(
                str(key.index), {"up": 0, "down": 0, "neutral": 0, "details": []}
            )
            entry[direction.value] = int(entry.get(direction.value, 0)) + 1
            entry.setdefault("details", []).append(vote.to_detail())
            snapshot = snapshot_from_entry(entry)

            with self._edit(self.integrity_path(key.package)) as data:
                revision = data.setdefault(key.base_version, {}).setdefault(str(key.index), {})
                revision["integrity"] = snapshot.to_dict()

        logger.info(
            "Vote recorded: %s for %s (score %d, %s)",
            direction.value, key, snapshot.score, snapshot.status,
        )
        return snapshot

    def votes_data(self, package: str) -> Dict:
        return read_json(self.votes_path(package))

    def votes(self, key: RevisionKey) -> List[Vote]:
        entry = self.votes_data(key.package).get(key.base_version, {}).get(str(key.index), {})
        return [
            Vote(
                revision_key=key,
                direction=VoteDirection(detail["vote"]),
                timestamp=detail.get("timestamp", ""),
                voter_id=detail.get("voter") or detail.get("user") or "anonymous",
                description=detail.get("description", ""),
                vote_id=str(detail.get("id", "")),
            )
            for detail in entry.get("details", [])
        ]

    def snapshot(self, key: RevisionKey) -> IntegritySnapshot:
        entry = self.votes_data(key.package).get(key.base_version, {}).get(str(key.index))
        return snapshot_from_entry(entry)
