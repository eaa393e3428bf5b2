"""
Repair of package directories: revisions written with the old
``<base>_<index>`` version format, and missing or damaged status files.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator

from .allocator import parse_revision_name
from .ledger import (
    INTEGRITY_FILENAME,
    VOTES_FILENAME,
    lock_for,
    read_json,
    snapshot_from_entry,
    write_json_atomic,
)
from .models import RevisionStatus
from .time_utils import format_timestamp
from .versioning import normalize_legacy_version, produce_version


logger = logging.getLogger(__name__)

STATUS_VALUES = {status.value for status in RevisionStatus}


def find_revision_manifests(packages_root: Path) -> Iterator[Path]:
    """``package.json`` files of every ``rev-<N>`` directory."""
    for path in sorted(Path(packages_root).rglob("package.json")):
        if "node_modules" in path.parts:
            continue
        if parse_revision_name(path.parent.name) is not None:
            yield path


def fix_package_json(path: Path) -> bool:
    with open(path, "r", encoding="utf-8") as f:
        package_json = json.load(f)
    version = package_json.get("version")
    if not isinstance(version, str) or "_" not in version:
        return False
    package_json["version"] = normalize_legacy_version(version)
    if package_json["version"] == version:
        return False
    with open(path, "w", encoding="utf-8") as f:
        json.dump(package_json, f, indent=2)
        f.write("\n")
    logger.info("Fixed %s: %s -> %s", path.parent.name, version, package_json["version"])
    return True


def fix_integrity_json(path: Path) -> bool:
    fixed = False
    with lock_for(path):
        data = read_json(path)
        for base_version, entries in data.items():
            if not isinstance(entries, dict):
                continue
            for index, entry in entries.items():
                version = entry.get("version") if isinstance(entry, dict) else None
                if not isinstance(version, str) or "_" not in version:
                    continue
                entry["version"] = normalize_legacy_version(version)
                if entry["version"] != version:
                    fixed = True
                    logger.info(
                        "Fixed integrity %s %s -> %s", path.parent.name, version, entry["version"]
                    )
        if fixed:
            write_json_atomic(path, data)
    return fixed


def fix_version_formats(packages_root: Path) -> int:
    """Rewrite legacy versions in manifests and status files; returns files changed."""
    packages_root = Path(packages_root)
    fixed = 0
    if not packages_root.is_dir():
        return fixed
    for path in find_revision_manifests(packages_root):
        try:
            fixed += fix_package_json(path)
        except (OSError, ValueError) as e:
            logger.warning("Failed to fix %s: %s", path, e)
    for path in sorted(packages_root.rglob(INTEGRITY_FILENAME)):
        try:
            fixed += fix_integrity_json(path)
        except (OSError, ValueError) as e:
            logger.warning("Failed to fix %s: %s", path, e)
    logger.info("Fixed %d files", fixed)
    return fixed


def find_package_dirs(packages_root: Path) -> Dict[str, Path]:
    """Package directories (``name`` or ``@scope/name``) under a packages root."""
    packages_root = Path(packages_root)
    found: Dict[str, Path] = {}
    if not packages_root.is_dir():
        return found
    for top in sorted(packages_root.iterdir()):
        if not top.is_dir():
            continue
        candidates = sorted(p for p in top.iterdir() if p.is_dir()) if top.name.startswith("@") else [top]
        for package_dir in candidates:
            found[package_dir.relative_to(packages_root).as_posix()] = package_dir
    return found


def revision_dirs(package_dir: Path) -> Dict[str, Dict[int, Path]]:
    """``{base_version: {index: path}}`` for the ``rev-<N>`` directories of a package."""
    layout: Dict[str, Dict[int, Path]] = {}
    for version_dir in sorted(p for p in package_dir.iterdir() if p.is_dir()):
        for entry in version_dir.iterdir():
            index = parse_revision_name(entry.name) if entry.is_dir() else None
            if index is not None:
                layout.setdefault(version_dir.name, {})[index] = entry
    return layout


def _load_for_repair(path: Path) -> Dict:
    """Read a ledger file; an unreadable one is moved aside and treated as empty."""
    try:
        return read_json(path)
    except ValueError as e:
        backup = path.with_name(path.name + ".corrupt")
        os.replace(path, backup)
        logger.warning("Moved corrupt %s to %s: %s", path, backup.name, e)
        return {}


def _repair_entries(data: Dict, layout: Dict[str, Dict[int, Path]], votes: Dict) -> None:
    for base_version, entries in list(data.items()):
        if not isinstance(entries, dict):
            del data[base_version]
            continue
        for index, entry in list(entries.items()):
            if not str(index).isdigit() or not isinstance(entry, dict):
                del entries[index]
                continue
            if entry.get("status") not in STATUS_VALUES:
                entry["status"] = RevisionStatus.PREPARED.value
            if not isinstance(entry.get("version"), str):
                entry["version"] = produce_version(base_version, int(index))
            if not isinstance(entry.get("timestamp"), str):
                entry["timestamp"] = format_timestamp()

    for base_version, revisions in layout.items():
        entries = data.setdefault(base_version, {})
        for index, path in sorted(revisions.items()):
            if str(index) in entries:
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            entries[str(index)] = {
                "version": produce_version(base_version, index),
                "timestamp": format_timestamp(modified),
                "status": RevisionStatus.PREPARED.value,
            }

    for base_version, entries in votes.items():
        if not isinstance(entries, dict):
            continue
        for index, vote_entry in entries.items():
            revision = data.get(base_version, {}).get(str(index))
            if revision is None or not isinstance(vote_entry, dict):
                continue
            try:
                revision["integrity"] = snapshot_from_entry(vote_entry).to_dict()
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning("Skipping votes for %s#%s: %s", base_version, index, e)


def repair_integrity_json(package_dir: Path) -> bool:
    """Rebuild a package's status file from its revision directories and votes.

    Malformed entries are dropped or completed, revisions found on disk but
    missing from the file are recorded as ``prepared``, and integrity blocks
    are recomputed from ``votes.json``.
    """
    path = package_dir / INTEGRITY_FILENAME
    votes_path = package_dir / VOTES_FILENAME
    with lock_for(path):
        existed = path.exists()
        data = _load_for_repair(path)
        moved_aside = existed and not path.exists()
        original = copy.deepcopy(data)
        try:
            votes = read_json(votes_path)
        except ValueError as e:
            logger.warning("Ignoring unreadable %s: %s", votes_path, e)
            votes = {}
        _repair_entries(data, revision_dirs(package_dir), votes)
        if data == original and not moved_aside:
            return False
        write_json_atomic(path, data)
    logger.info("Repaired %s", path)
    return True


def repair_integrity_data(packages_root: Path) -> int:
    """Repair missing or damaged status files; returns files written."""
    repaired = 0
    for package, package_dir in find_package_dirs(packages_root).items():
        try:
            repaired += repair_integrity_json(package_dir)
        except OSError as e:
            logger.warning("Failed to repair %s: %s", package, e)
    logger.info("Repaired %d integrity files", repaired)
    return repaired
