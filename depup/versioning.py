"""
Semantic-version ordering and the depup version format.

Versions and ranges are interpreted by ``nodesemver``, a port of npm's own
semver rules, so pre-release ordering and range syntax match what npm does.
"""

from __future__ import annotations

import re
from functools import cmp_to_key
from typing import Iterable, List, Optional, Tuple

from nodesemver import Range, SemVer
from nodesemver import compare as semver_compare
from nodesemver import max_satisfying as semver_max_satisfying

REVISION_TAG = "depup"

_PRODUCED_RE = re.compile(rf"^(?P<base>.+)-{REVISION_TAG}\.(?P<index>0|[1-9]\d*)$")
_LEGACY_RE = re.compile(r"_(\d+)$")
_LOWER_BOUND_OPERATORS = ("", "=", ">=", ">")


def parse_version(value) -> Optional[SemVer]:
    """Parse a strict npm version, returning ``None`` for anything else."""
    if not isinstance(value, str):
        return None
    try:
        return SemVer(value.strip(), False, False)
    except (ValueError, TypeError):
        return None


def parse_range(value) -> Optional[Range]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return Range(value.strip(), False)
    except (ValueError, TypeError):
        return None


def is_valid(value: str) -> bool:
    return parse_version(value) is not None


def is_prerelease(value: str) -> bool:
    version = parse_version(value)
    return version is not None and bool(version.prerelease)


def is_range(selector: str) -> bool:
    """True for a selector such as ``^1.2.0`` that is neither a version nor a tag."""
    return not is_valid(selector) and parse_range(selector) is not None


def coerce_declared(declared: str) -> Optional[str]:
    """Lowest version a declared dependency range admits.

    ``^1.2.3`` and ``~1.2.3`` give ``1.2.3``, ``^4.17`` gives ``4.17.0`` and
    ``>=1.2.0 <2.0.0`` gives ``1.2.0``. Ranges without a lower bound (``*``,
    ``<2.0.0``), tags and URLs give ``None``.
    """
    declared_range = parse_range(declared)
    if declared_range is None:
        return None
    bounds = [
        comparator.semver.version
        for comparators in declared_range.set
        for comparator in comparators
        if isinstance(comparator.semver, SemVer)
        and comparator.operator in _LOWER_BOUND_OPERATORS
    ]
    if not bounds:
        return None
    return min(bounds, key=cmp_to_key(compare))


def compare(left: str, right: str) -> int:
    """Compare two versions, returning -1, 0 or 1.

    Raises ValueError when either side is not a valid version.
    """
    for value in (left, right):
        if parse_version(value) is None:
            raise ValueError(f"Invalid version: {value!r}")
    return semver_compare(left.strip(), right.strip(), False)


def is_newer(candidate: str, current: str) -> bool:
    return compare(candidate, current) > 0


def _compare_any(left: str, right: str) -> int:
    left_valid, right_valid = is_valid(left), is_valid(right)
    if left_valid and right_valid:
        return compare(left, right)
    if left_valid != right_valid:
        return 1 if left_valid else -1
    return (left > right) - (left < right)


# Semver order; strings that are not versions sort first, alphabetically.
version_sort_key = cmp_to_key(_compare_any)


def sort_versions(versions: Iterable[str]) -> List[str]:
    return sorted(versions, key=version_sort_key)


def highest(versions) -> Optional[str]:
    """Highest valid version in an iterable, ignoring invalid entries."""
    valid = [v for v in versions if is_valid(v)]
    if not valid:
        return None
    return max(valid, key=cmp_to_key(compare))


def max_satisfying(versions: Iterable[str], range_spec: str) -> Optional[str]:
    """Highest of ``versions`` inside ``range_spec``, or ``None``."""
    candidates = [v for v in versions if is_valid(v)]
    if not candidates or parse_range(range_spec) is None:
        return None
    return semver_max_satisfying(candidates, range_spec.strip(), False)


def produce_version(base_version: str, index: int) -> str:
    """Version string published for revision ``index`` of ``base_version``."""
    if index < 0:
        raise ValueError("Revision index must be non-negative")
    return f"{base_version}-{REVISION_TAG}.{index}"


def parse_produced_version(value: str) -> Tuple[str, int]:
    """Split a produced version back into ``(base_version, index)``."""
    match = _PRODUCED_RE.match(value)
    if not match:
        raise ValueError(f"Not a {REVISION_TAG} version: {value!r}")
    return match.group("base"), int(match.group("index"))


def normalize_legacy_version(value: str) -> str:
    """Rewrite the old ``1.0.0_3`` form to ``1.0.0-depup.3``."""
    return _LEGACY_RE.sub(rf"-{REVISION_TAG}.\1", value)


def split_spec(spec: str) -> Tuple[str, Optional[str]]:
    """Split ``name@version`` into its parts, honouring scoped names."""
    spec = spec.strip()
    if not spec:
        raise ValueError("Package spec is required")
    if spec.startswith("@"):
        scope_and_name, sep, selector = spec[1:].partition("@")
        name = "@" + scope_and_name
    else:
        name, sep, selector = spec.partition("@")
    if not name or name == "@" or (spec.startswith("@") and "/" not in name):
        raise ValueError(f"Invalid package spec: {spec!r}")
    return name, (selector or None) if sep else None
