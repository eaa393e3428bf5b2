import logging
from datetime import timedelta
from pathlib import Path

import pandas as pd

from depup.models import BatchItem, ItemState, PackageRef, PipelineResult, Revision, RevisionKey, RevisionStatus, VoteDirection
from depup.reporting import (
    REPORT_COLUMNS,
    batch_frame,
    export_batch_summary_csv,
    export_worksheets,
    health_issues,
    health_status,
    integrity_frame,
    print_integrity_report,
    print_integrity_status,
    print_system_status,
    save_report_csv,
    system_stats,
)


def _seed(ledger) -> None:
    for version, index, status in (
        ("4.17.20", 0, RevisionStatus.PUBLISHED),
        ("4.17.21", 0, RevisionStatus.PUBLISHED),
        ("4.17.21", 1, RevisionStatus.SKIPPED),
    ):
        ledger.record_outcome(
            RevisionKey("lodash", version, index), f"{version}-depup.{index}", status
        )
    key = RevisionKey("lodash", "4.17.21", 0)
    ledger.record_vote(key, VoteDirection.UP, "works", voter="a")
    ledger.record_vote(key, VoteDirection.UP, voter="b")
    ledger.record_vote(key, VoteDirection.NEUTRAL, voter="c")


def test_integrity_frame(ledger) -> None:
    _seed(ledger)

    frame = integrity_frame(ledger, "lodash")

    assert list(frame.columns) == REPORT_COLUMNS
    assert len(frame) == 3
    voted = frame[(frame["base_version"] == "4.17.21") & (frame["revision"] == 0)].iloc[0]
    assert voted["score"] == 67
    assert voted["integrity"] == "good"
    assert voted["total_votes"] == 3
    skipped = frame[frame["status"] == "skipped"].iloc[0]
    assert skipped["total_votes"] == 0
    assert skipped["integrity"] == "poor"


def test_integrity_frame_empty(ledger) -> None:
    frame = integrity_frame(ledger, "unknown")

    assert frame.empty
    assert list(frame.columns) == REPORT_COLUMNS


def test_reporting_exports(ledger, tmp_path: Path) -> None:
    _seed(ledger)
    output_dir = tmp_path / "out"
    frame = integrity_frame(ledger, "lodash")

    csv_file = save_report_csv(frame, output_dir, "lodash")
    excel_file = export_worksheets(frame, output_dir, "lodash")

    assert csv_file.exists()
    assert pd.read_csv(csv_file).shape == (3, len(REPORT_COLUMNS))
    assert excel_file is not None and excel_file.exists()
    sheets = pd.read_excel(excel_file, sheet_name=None, engine="openpyxl")
    assert sorted(sheets) == ["4.17.20", "4.17.21"]
    assert export_worksheets(frame.iloc[0:0], output_dir, "lodash") is None


def test_scoped_report_filename(ledger, tmp_path: Path) -> None:
    frame = integrity_frame(ledger, "@babel/core")

    csv_file = save_report_csv(frame, tmp_path, "@babel/core")

    assert csv_file.name == "babel__core_integrity.csv"


def test_print_integrity_status(ledger, caplog) -> None:
    _seed(ledger)

    with caplog.at_level(logging.INFO, logger="depup.reporting"):
        shown = print_integrity_status(ledger, "lodash", "4.17.21")
        none_shown = print_integrity_status(ledger, "lodash", "4.17.20")

    assert shown == 1
    assert none_shown == 0
    assert "[good] lodash@4.17.21#0: 67%" in caplog.text
    assert "No votes found for lodash@4.17.20" in caplog.text


def test_print_integrity_report_lists_recent_votes(ledger, caplog) -> None:
    _seed(ledger)

    with caplog.at_level(logging.INFO, logger="depup.reporting"):
        frame = print_integrity_report(ledger, "lodash", recent=2)

    assert len(frame) == 3
    assert "Version 4.17.21:" in caplog.text
    # Only the two most recent votes are listed.
    assert "+ works" not in caplog.text
    assert "+ No description" in caplog.text
    assert "= No description" in caplog.text


def test_batch_summary(tmp_path: Path) -> None:
    ref = PackageRef("lodash", "4.17.21")
    result = PipelineResult(
        package_ref=ref,
        scoped_name="@depup/lodash",
        revision=Revision(ref, 0, RevisionStatus.PUBLISHED, "t"),
        dependencies_updated=2,
        published=True,
    )
    items = [
        BatchItem(ref, state=ItemState.SUCCEEDED, result=result),
        BatchItem(PackageRef("bad", "1.0.0"), state=ItemState.FAILED, error="boom"),
    ]

    frame = batch_frame(items)
    assert frame["version"].tolist() == ["4.17.21-depup.0", None]
    assert frame["state"].tolist() == ["succeeded", "failed"]

    summary = export_batch_summary_csv(items, tmp_path / "out", "sync")
    assert summary.name == "sync_batch_results.csv"
    assert summary.exists()


def test_integrity_frame_orders_versions_by_semver(ledger) -> None:
    for version in ("1.10.0", "1.9.0"):
        ledger.record_outcome(RevisionKey("demo", version, 0), f"{version}-depup.0", RevisionStatus.PREPARED)

    frame = integrity_frame(ledger, "demo")

    assert list(frame["base_version"]) == ["1.9.0", "1.10.0"]


def _seed_system(ledger) -> None:
    _seed(ledger)
    key = RevisionKey("demo", "1.0.0", 0)
    ledger.record_outcome(key, "1.0.0-depup.0", RevisionStatus.PUBLISHED)
    ledger.record_vote(key, VoteDirection.DOWN, "broken", voter="d")


def test_system_stats(ledger) -> None:
    _seed_system(ledger)

    stats = system_stats(ledger)

    assert stats["total_packages"] == 2
    assert stats["packages_with_integrity"] == 2
    assert stats["packages_with_votes"] == 2
    assert stats["total_revisions"] == 4
    assert stats["total_votes"] == 4
    assert stats["average_integrity"] == -16.5
    assert stats["buckets"] == {"excellent": 0, "good": 1, "fair": 0, "poor": 1}
    assert stats["last_activity"].tzinfo is not None


def test_system_stats_empty(ledger) -> None:
    stats = system_stats(ledger)

    assert stats["total_packages"] == 0
    assert stats["last_activity"] is None
    assert health_issues(stats) == [
        "No packages found in system",
        "No packages have integrity data",
        "Low average integrity score: 0.0%",
    ]


def test_health_reports_inactivity(ledger) -> None:
    _seed_system(ledger)
    stats = system_stats(ledger)

    recent = health_issues(stats, now=stats["last_activity"] + timedelta(days=1))
    idle = health_issues(stats, now=stats["last_activity"] + timedelta(days=30))

    assert len(recent) == 2
    assert health_status(recent) == "good"
    assert idle[-1] == "System inactive for 30 days"
    assert health_status(idle) == "fair"


def test_print_system_status(ledger, caplog) -> None:
    _seed_system(ledger)

    with caplog.at_level(logging.INFO, logger="depup.reporting"):
        status = print_system_status(ledger)

    assert status["health"] == "good"
    assert "  Total: 2" in caplog.messages
    assert "  Good (60-79%): 1" in caplog.messages
