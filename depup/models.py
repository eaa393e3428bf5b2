"""
Core data models for the depup pipeline.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .versioning import produce_version


class RevisionStatus(str, Enum):
    PREPARED = "prepared"
    SKIPPED = "skipped"
    PUBLISHED = "published"
    FAILED = "failed"


class VoteDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class ItemState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class PackageRef:
    """An upstream package at the base version being cloned."""

    name: str
    base_version: str

    @property
    def spec(self) -> str:
        return f"{self.name}@{self.base_version}"

    @property
    def partition(self) -> Tuple[str, str]:
        return (self.name, self.base_version)


@dataclass(frozen=True)
class RevisionKey:
    """Address of one revision in the ledger files."""

    package: str
    base_version: str
    index: int

    @classmethod
    def for_ref(cls, ref: PackageRef, index: int) -> "RevisionKey":
        return cls(ref.name, ref.base_version, index)

    def __str__(self) -> str:
        return f"{self.package}@{self.base_version}#{self.index}"


@dataclass(frozen=True)
class Revision:
    """One processing attempt for a package at a base version."""

    package_ref: PackageRef
    index: int
    status: RevisionStatus
    timestamp: str
    produced_version: str = ""

    def __post_init__(self) -> None:
        expected = produce_version(self.package_ref.base_version, self.index)
        if not self.produced_version:
            object.__setattr__(self, "produced_version", expected)
        elif self.produced_version != expected:
            raise ValueError(
                f"Revision {self.index} of {self.package_ref.spec} must be {expected}"
            )

    @property
    def key(self) -> RevisionKey:
        return RevisionKey.for_ref(self.package_ref, self.index)

    def with_status(self, status: RevisionStatus, timestamp: str) -> "Revision":
        return replace(self, status=status, timestamp=timestamp)


@dataclass(frozen=True)
class DependencyEdge:
    """A dependency checked during a bump pass."""

    name: str
    declared_range: str
    resolved_latest: Optional[str]
    section: str = "dependencies"
    updated: bool = False


@dataclass(frozen=True)
class Vote:
    """A single community vote on a revision."""

    revision_key: RevisionKey
    direction: VoteDirection
    timestamp: str
    voter_id: str
    description: str = ""
    vote_id: str = ""

    def to_detail(self) -> Dict[str, str]:
        return {
            "id": self.vote_id,
            "vote": self.direction.value,
            "description": self.description,
            "timestamp": self.timestamp,
            "voter": self.voter_id,
        }


def compute_score(up: int, down: int, neutral: int) -> int:
    """Integrity score in [-100, 100]; zero when nobody has voted."""
    total = up + down + neutral
    if total <= 0:
        return 0
    # Round half up; round() would use banker's rounding.
    return math.floor(((up - down) / total) * 100 + 0.5)


def score_status(score: float) -> str:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    if score >= 40:
        return "fair"
    return "poor"


@dataclass(frozen=True)
class IntegritySnapshot:
    """Vote counts for one revision and the score derived from them."""

    up_count: int = 0
    down_count: int = 0
    neutral_count: int = 0
    last_updated: Optional[str] = None

    @property
    def total(self) -> int:
        return self.up_count + self.down_count + self.neutral_count

    @property
    def score(self) -> int:
        return compute_score(self.up_count, self.down_count, self.neutral_count)

    @property
    def status(self) -> str:
        return score_status(self.score)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "totalVotes": self.total,
            "upVotes": self.up_count,
            "downVotes": self.down_count,
            "neutralVotes": self.neutral_count,
            "lastUpdated": self.last_updated,
        }


@dataclass(frozen=True)
class Manifest:
    """Package manifest as resolved from the registry."""

    name: str
    version: str
    dependencies: Dict[str, str] = field(default_factory=dict)
    dev_dependencies: Dict[str, str] = field(default_factory=dict)
    tarball: Optional[str] = None


@dataclass
class BumpResult:
    updated_count: int = 0
    edges: List[DependencyEdge] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class InstallAttempt:
    command: Tuple[str, ...]
    succeeded: bool
    timed_out: bool = False
    output: str = ""


@dataclass
class InstallReport:
    succeeded: bool
    attempts: List[InstallAttempt] = field(default_factory=list)

    @property
    def strategy(self) -> Optional[Tuple[str, ...]]:
        for attempt in self.attempts:
            if attempt.succeeded:
                return attempt.command
        return None


@dataclass
class PackageTestReport:
    passed: bool
    dependency_install: Optional[InstallReport] = None
    harness_install: Optional[InstallReport] = None
    import_output: str = ""
    warnings: List[str] = field(default_factory=list)

    @property
    def confident(self) -> bool:
        installs = [self.dependency_install, self.harness_install]
        return self.passed and all(r is not None and r.succeeded for r in installs)


@dataclass(frozen=True)
class PipelineOptions:
    bump_deps: bool = False
    test: bool = False
    publish: bool = False
    dry_run: bool = False
    debug: bool = False
    timeout: float = 300.0


@dataclass
class PipelineResult:
    package_ref: PackageRef
    scoped_name: str
    revision: Optional[Revision] = None
    path: Optional[Path] = None
    dependencies_updated: int = 0
    test_passed: Optional[bool] = None
    published: Optional[bool] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def version(self) -> Optional[str]:
        return self.revision.produced_version if self.revision else None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchItem:
    package_ref: PackageRef
    state: ItemState = ItemState.PENDING
    result: Optional[PipelineResult] = None
    error: Optional[str] = None
