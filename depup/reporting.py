"""
Reporting and export utilities.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

from .ledger import IntegrityLedger, snapshot_from_entry
from .models import (
    BatchItem,
    PipelineResult,
    RevisionKey,
    VoteDirection,
    score_status,
)
from .time_utils import format_timestamp, parse_timestamp, utc_now
from .versioning import version_sort_key


logger = logging.getLogger(__name__)

REPORT_COLUMNS = [
    "package",
    "base_version",
    "revision",
    "version",
    "status",
    "timestamp",
    "up",
    "down",
    "neutral",
    "total_votes",
    "score",
    "integrity",
    "last_updated",
]
BATCH_COLUMNS = [
    "package",
    "base_version",
    "state",
    "version",
    "dependencies_updated",
    "test_passed",
    "published",
    "warnings",
    "error",
]
INTEGRITY_BUCKETS = ("excellent", "good", "fair", "poor")
INACTIVE_AFTER_DAYS = 7
VOTE_MARKERS = {
    VoteDirection.UP.value: "+",
    VoteDirection.DOWN.value: "-",
    VoteDirection.NEUTRAL.value: "=",
}


def _safe_filename(package: str) -> str:
    return package.replace("/", "__").replace("@", "")


def integrity_frame(ledger: IntegrityLedger, package: str) -> pd.DataFrame:
    """One row per revision known to either the status file or the vote file."""
    status_data = ledger.status_data(package)
    votes_data = ledger.votes_data(package)

    keys = set()
    for data in (status_data, votes_data):
        for base_version, entries in data.items():
            for index in entries:
                if str(index).isdigit():
                    keys.add((base_version, int(index)))

    rows = []
    for base_version, index in sorted(keys, key=lambda k: (version_sort_key(k[0]), k[1])):
        entry = status_data.get(base_version, {}).get(str(index), {})
        snapshot = snapshot_from_entry(votes_data.get(base_version, {}).get(str(index)))
        rows.append({
            "package": package,
            "base_version": base_version,
            "revision": index,
            "version": entry.get("version"),
            "status": entry.get("status"),
            "timestamp": entry.get("timestamp"),
            "up": snapshot.up_count,
            "down": snapshot.down_count,
            "neutral": snapshot.neutral_count,
            "total_votes": snapshot.total,
            "score": snapshot.score,
            "integrity": snapshot.status,
            "last_updated": snapshot.last_updated,
        })
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def print_summary(result: PipelineResult) -> None:
    logger.info("=" * 60)
    logger.info("PIPELINE RESULT")
    logger.info("=" * 60)
    logger.info("Package: %s -> %s", result.package_ref.spec, result.scoped_name)
    logger.info("Version: %s", result.version or "-")
    logger.info("Status: %s", result.revision.status.value if result.revision else "dry run")
    logger.info("Dependencies updated: %d", result.dependencies_updated)
    if result.test_passed is not None:
        logger.info("Import test: %s", "passed" if result.test_passed else "failed")
    if result.published is not None:
        logger.info("Published: %s", "yes" if result.published else "no")
    for warning in result.warnings:
        logger.info("  warning: %s", warning)
    logger.info("=" * 60)


def print_integrity_status(ledger: IntegrityLedger, package: str, base_version: Optional[str] = None) -> int:
    """Log one line per voted revision; returns how many were shown."""
    votes = ledger.votes_data(package)
    shown = 0
    for version, entries in votes.items():
        if base_version and version != base_version:
            continue
        for index, entry in entries.items():
            snapshot = snapshot_from_entry(entry)
            logger.info(
                "  [%s] %s@%s#%s: %d%% (%d up, %d down, %d neutral)",
                snapshot.status, package, version, index, snapshot.score,
                snapshot.up_count, snapshot.down_count, snapshot.neutral_count,
            )
            shown += 1
    if not shown:
        target = f"{package}@{base_version}" if base_version else package
        logger.info("No votes found for %s", target)
    return shown


def print_integrity_report(ledger: IntegrityLedger, package: str, recent: int = 3) -> pd.DataFrame:
    frame = integrity_frame(ledger, package)
    logger.info("Integrity report for %s", package)
    logger.info("=" * 50)
    if frame.empty:
        logger.info("No data available for this package")
        return frame
    for base_version, group in frame.groupby("base_version", sort=False):
        logger.info("Version %s:", base_version)
        for row in group.itertuples(index=False):
            logger.info(
                "  [%s] Revision %s: %d%% (%d up, %d down, %d neutral) %s",
                row.integrity, row.revision, row.score, row.up, row.down, row.neutral,
                row.status or "",
            )
            key = RevisionKey(package, base_version, int(row.revision))
            for vote in ledger.votes(key)[-recent:]:
                logger.info(
                    "      %s %s",
                    VOTE_MARKERS[vote.direction.value],
                    vote.description or "No description",
                )
    return frame


def save_report_csv(frame: pd.DataFrame, output_dir: Path, package: str) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    report_file = output_dir / f"{_safe_filename(package)}_integrity.csv"
    frame.to_csv(report_file, index=False)
    return report_file


def export_worksheets(frame: pd.DataFrame, output_dir: Path, package: str) -> Optional[Path]:
    """Write one worksheet per base version."""
    if frame.empty:
        return None
    output_dir.mkdir(parents=True, exist_ok=True)
    excel_file = output_dir / f"{_safe_filename(package)}_integrity.xlsx"
    with pd.ExcelWriter(excel_file, engine="openpyxl") as writer:
        for base_version, group in frame.groupby("base_version", sort=False):
            # Excel sheet names have a 31 character limit
            group.to_excel(writer, sheet_name=str(base_version)[:31], index=False)
    return excel_file


def system_frame(ledger: IntegrityLedger) -> pd.DataFrame:
    """Integrity rows for every package under the packages root."""
    frames = [integrity_frame(ledger, package) for package in ledger.packages()]
    frames = [frame for frame in frames if not frame.empty]
    if not frames:
        return pd.DataFrame(columns=REPORT_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def _has_integrity_block(status_data: Dict) -> bool:
    return any(
        isinstance(entry, dict) and "integrity" in entry
        for entries in status_data.values() if isinstance(entries, dict)
        for entry in entries.values()
    )


def system_stats(ledger: IntegrityLedger) -> Dict[str, Any]:
    """Totals across all packages; scores are averaged over voted revisions."""
    packages = ledger.packages()
    frame = system_frame(ledger)
    voted = frame[frame["total_votes"] > 0]

    buckets = {bucket: 0 for bucket in INTEGRITY_BUCKETS}
    for score in voted["score"]:
        buckets[score_status(score)] += 1

    activity = [
        parse_timestamp(value)
        for value in frame["last_updated"].fillna(frame["timestamp"])
        if isinstance(value, str)
    ]
    activity = [dt for dt in activity if dt is not None]

    return {
        "total_packages": len(packages),
        "packages_with_integrity": sum(
            _has_integrity_block(ledger.status_data(package)) for package in packages
        ),
        "packages_with_votes": sum(bool(ledger.votes_data(package)) for package in packages),
        "total_revisions": len(frame),
        "total_votes": int(frame["total_votes"].sum()) if not frame.empty else 0,
        "average_integrity": float(voted["score"].mean()) if not voted.empty else 0.0,
        "buckets": buckets,
        "last_activity": max(activity) if activity else None,
    }


def health_issues(stats: Dict[str, Any], now: Optional[datetime] = None) -> List[str]:
    issues = []
    if stats["total_packages"] == 0:
        issues.append("No packages found in system")
    if stats["packages_with_integrity"] == 0:
        issues.append("No packages have integrity data")
    if stats["average_integrity"] < 50:
        issues.append(f"Low average integrity score: {stats['average_integrity']:.1f}%")
    if stats["buckets"]["poor"] > stats["total_packages"] * 0.2:
        issues.append(f"High number of poor revisions: {stats['buckets']['poor']}")
    last_activity = stats["last_activity"]
    if last_activity is not None:
        idle_days = ((now or utc_now()) - last_activity).total_seconds() / 86400
        if idle_days > INACTIVE_AFTER_DAYS:
            issues.append(f"System inactive for {round(idle_days)} days")
    return issues


def health_status(issues: List[str]) -> str:
    if not issues:
        return "excellent"
    if len(issues) <= 2:
        return "good"
    if len(issues) <= 4:
        return "fair"
    return "poor"


def print_system_status(ledger: IntegrityLedger, now: Optional[datetime] = None) -> Dict[str, Any]:
    stats = system_stats(ledger)
    issues = health_issues(stats, now)
    last_activity = stats["last_activity"]

    logger.info("DepUp system status")
    logger.info("=" * 50)
    logger.info("Packages:")
    logger.info("  Total: %d", stats["total_packages"])
    logger.info("  With integrity: %d", stats["packages_with_integrity"])
    logger.info("  With votes: %d", stats["packages_with_votes"])
    logger.info("Integrity scores:")
    logger.info("  Average: %.1f%%", stats["average_integrity"])
    logger.info("  Excellent (80%%+): %d", stats["buckets"]["excellent"])
    logger.info("  Good (60-79%%): %d", stats["buckets"]["good"])
    logger.info("  Fair (40-59%%): %d", stats["buckets"]["fair"])
    logger.info("  Poor (<40%%): %d", stats["buckets"]["poor"])
    logger.info("Activity:")
    logger.info("  Revisions: %d", stats["total_revisions"])
    logger.info("  Total votes: %d", stats["total_votes"])
    logger.info("  Last updated: %s", format_timestamp(last_activity) if last_activity else "Never")
    logger.info("Health: %s", health_status(issues))
    for issue in issues:
        logger.warning("  - %s", issue)
    return {**stats, "issues": issues, "health": health_status(issues)}


def batch_frame(items: Iterable[BatchItem]) -> pd.DataFrame:
    rows: List[dict] = []
    for item in items:
        result = item.result
        rows.append({
            "package": item.package_ref.name,
            "base_version": item.package_ref.base_version,
            "state": item.state.value,
            "version": result.version if result else None,
            "dependencies_updated": result.dependencies_updated if result else 0,
            "test_passed": result.test_passed if result else None,
            "published": result.published if result else None,
            "warnings": len(result.warnings) if result else 0,
            "error": item.error,
        })
    return pd.DataFrame(rows, columns=BATCH_COLUMNS)


def export_batch_summary_csv(items: Iterable[BatchItem], output_dir: Path, run_name: str) -> Path:
    output_dir.mkdir(parents=True, exist_ok=True)
    summary_file = output_dir / f"{run_name}_batch_results.csv"
    batch_frame(items).to_csv(summary_file, index=False)
    return summary_file
