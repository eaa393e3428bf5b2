import json
import threading
from pathlib import Path

import pytest

from depup.ledger import (
    IntegrityLedger,
    compute_score,
    score_status,
    snapshot_from_votes,
)
from depup.models import PackageRef, RevisionKey, RevisionStatus, VoteDirection


KEY = RevisionKey("lodash", "4.17.21", 0)


@pytest.mark.parametrize(
    "up, down, neutral, expected",
    [
        (10, 0, 0, 100),
        (8, 2, 0, 60),
        (0, 0, 5, 0),
        (5, 5, 0, 0),
        (2, 8, 0, -60),
        (0, 0, 0, 0),
        (1, 0, 7, 13),
        (0, 1, 7, -12),
    ],
)
def test_compute_score(up, down, neutral, expected) -> None:
    assert compute_score(up, down, neutral) == expected


@pytest.mark.parametrize(
    "score, expected",
    [(100, "excellent"), (80, "excellent"), (79, "good"), (60, "good"),
     (59, "fair"), (40, "fair"), (39, "poor"), (0, "poor"), (-60, "poor")],
)
def test_score_status(score, expected) -> None:
    assert score_status(score) == expected


def test_record_outcome(ledger: IntegrityLedger) -> None:
    ledger.record_outcome(KEY, "4.17.21-depup.0", RevisionStatus.PUBLISHED, "2024-01-01T00:00:00.000Z")

    data = json.loads(ledger.integrity_path("lodash").read_text(encoding="utf-8"))
    assert data == {
        "4.17.21": {
            "0": {
                "version": "4.17.21-depup.0",
                "timestamp": "2024-01-01T00:00:00.000Z",
                "status": "published",
            }
        }
    }
    revisions = ledger.revisions("lodash")
    assert [(r.index, r.status) for r in revisions] == [(0, RevisionStatus.PUBLISHED)]
    assert revisions[0].produced_version == "4.17.21-depup.0"


def test_record_outcome_merges_existing_entries(ledger: IntegrityLedger) -> None:
    ledger.record_outcome(KEY, "4.17.21-depup.0", RevisionStatus.PREPARED)
    ledger.record_outcome(
        RevisionKey("lodash", "4.17.21", 1), "4.17.21-depup.1", RevisionStatus.SKIPPED
    )
    ledger.record_outcome(
        RevisionKey("lodash", "4.17.20", 0), "4.17.20-depup.0", RevisionStatus.FAILED
    )

    assert ledger.recorded_indices(PackageRef("lodash", "4.17.21")) == [0, 1]
    assert sorted(ledger.base_versions("lodash")) == ["4.17.20", "4.17.21"]
    assert ledger.packages() == ["lodash"]


def test_votes_are_append_only(ledger: IntegrityLedger) -> None:
    ledger.record_vote(KEY, VoteDirection.UP, "works", voter="alice")
    ledger.record_vote(KEY, VoteDirection.UP, voter="bob")
    snapshot = ledger.record_vote(KEY, VoteDirection.DOWN, "broken import", voter="carol")

    assert (snapshot.up_count, snapshot.down_count, snapshot.neutral_count) == (2, 1, 0)
    assert snapshot.score == 33
    assert snapshot.status == "poor"

    votes = ledger.votes(KEY)
    assert [v.voter_id for v in votes] == ["alice", "bob", "carol"]
    assert [v.direction for v in votes] == [VoteDirection.UP, VoteDirection.UP, VoteDirection.DOWN]
    assert len({v.vote_id for v in votes}) == 3
    assert snapshot_from_votes(votes) == snapshot


def test_vote_updates_integrity_block_and_keeps_status(ledger: IntegrityLedger) -> None:
    ledger.record_outcome(KEY, "4.17.21-depup.0", RevisionStatus.PUBLISHED)
    ledger.record_vote(KEY, VoteDirection.UP)

    entry = ledger.status_data("lodash")["4.17.21"]["0"]
    assert entry["status"] == "published"
    assert entry["integrity"]["score"] == 100
    assert entry["integrity"]["totalVotes"] == 1

    # A later outcome for the same revision keeps the vote-derived block.
    ledger.record_outcome(KEY, "4.17.21-depup.0", RevisionStatus.PUBLISHED)
    assert ledger.status_data("lodash")["4.17.21"]["0"]["integrity"]["upVotes"] == 1


def test_vote_defaults_voter_from_environment(ledger: IntegrityLedger, monkeypatch) -> None:
    monkeypatch.delenv("USER", raising=False)
    ledger.record_vote(KEY, VoteDirection.NEUTRAL)
    monkeypatch.setenv("USER", "dana")
    ledger.record_vote(KEY, VoteDirection.NEUTRAL)

    assert [v.voter_id for v in ledger.votes(KEY)] == ["anonymous", "dana"]


def test_snapshot_for_unvoted_revision(ledger: IntegrityLedger) -> None:
    snapshot = ledger.snapshot(KEY)

    assert snapshot.total == 0
    assert snapshot.score == 0
    assert snapshot.last_updated is None


def test_scoped_packages_are_listed(ledger: IntegrityLedger) -> None:
    ledger.record_outcome(
        RevisionKey("@babel/core", "7.24.0", 0), "7.24.0-depup.0", RevisionStatus.PREPARED
    )
    ledger.record_outcome(KEY, "4.17.21-depup.0", RevisionStatus.PREPARED)

    assert ledger.packages() == ["@babel/core", "lodash"]


def test_concurrent_votes_are_not_lost(ledger: IntegrityLedger) -> None:
    def vote():
        for _ in range(5):
            ledger.record_vote(KEY, VoteDirection.UP, voter="load")

    threads = [threading.Thread(target=vote) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert ledger.snapshot(KEY).up_count == 20
    assert len(ledger.votes(KEY)) == 20


def test_concurrent_votes_leave_a_current_integrity_block(ledger: IntegrityLedger) -> None:
    ledger.record_outcome(KEY, "4.17.21-depup.0", RevisionStatus.PUBLISHED)

    def vote(direction):
        for _ in range(10):
            ledger.record_vote(KEY, direction, voter="load")

    threads = [
        threading.Thread(target=vote, args=(direction,))
        for direction in (VoteDirection.UP, VoteDirection.DOWN, VoteDirection.UP, VoteDirection.NEUTRAL)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    block = ledger.status_data("lodash")["4.17.21"]["0"]["integrity"]
    assert block["totalVotes"] == 40
    assert (block["upVotes"], block["downVotes"], block["neutralVotes"]) == (20, 10, 10)
    assert block == ledger.snapshot(KEY).to_dict()


def test_revisions_are_ordered_by_semver(ledger: IntegrityLedger) -> None:
    for base_version, index in (("1.10.0", 0), ("1.9.0", 1), ("1.9.0", 0), ("1.10.0-beta.1", 0)):
        ledger.record_outcome(
            RevisionKey("lodash", base_version, index),
            f"{base_version}-depup.{index}",
            RevisionStatus.PREPARED,
        )

    ordered = [(r.package_ref.base_version, r.index) for r in ledger.revisions("lodash")]

    assert ordered == [("1.9.0", 0), ("1.9.0", 1), ("1.10.0-beta.1", 0), ("1.10.0", 0)]


def test_invalid_ledger_file(ledger: IntegrityLedger, packages_root: Path) -> None:
    path = ledger.integrity_path("lodash")
    path.parent.mkdir(parents=True)
    path.write_text("[]", encoding="utf-8")

    with pytest.raises(ValueError):
        ledger.status_data("lodash")


def test_votes_written_with_user_key_are_read(ledger: IntegrityLedger) -> None:
    path = ledger.votes_path("lodash")
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({
        "4.17.21": {"0": {"up": 1, "down": 0, "neutral": 0, "details": [
            {"id": "1", "vote": "up", "description": "", "timestamp": "t", "user": "erin"}
        ]}}
    }), encoding="utf-8")

    assert [v.voter_id for v in ledger.votes(KEY)] == ["erin"]
    assert ledger.snapshot(KEY).score == 100
