"""Tests for the merge engine."""
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from wordplay.exceptions import ValidationError
from wordplay.models.progress_models import (
    ConflictChoice,
    ConflictType,
    LearningRecord,
    ReviewEvent,
    SessionLog,
    Snapshot,
)
from wordplay.services.merge_engine import (
    MergePolicy,
    has_significant_difference,
    merge,
    pick_provisional,
    rebase,
    resolve_conflict,
)


def _record(item_id: str, modified: datetime, **fields) -> LearningRecord:
    defaults = dict(
        next_review_at=modified,
        last_reviewed_at=modified,
        last_modified_at=modified,
    )
    defaults.update(fields)
    return LearningRecord(item_id=item_id, **defaults)


def _snapshot(now: datetime, *records: LearningRecord, **fields) -> Snapshot:
    return Snapshot(records={r.item_id: r for r in records}, exported_at=now, **fields)


@pytest.fixture
def diverged(now: datetime):
    """The same item studied on two devices, ten minutes apart."""
    local = _record("ephemeral", now, repetitions=3, mastery_level=60,
                    total_seen=4, correct_count=3, sync_version=2)
    remote = _record("ephemeral", now + timedelta(minutes=10), repetitions=1, mastery_level=20,
                     total_seen=2, correct_count=1, sync_version=3)
    return local, remote


def test_diverged_edits_raise_conflict(now: datetime, diverged) -> None:
    """Meaningful edits in different sessions give a conflict, newer record provisional."""
    local, remote = diverged
    merge_time = now + timedelta(hours=1)

    result = merge(_snapshot(now, local), _snapshot(now, remote), merge_time)

    assert len(result.conflicts) == 1
    conflict = result.conflicts[0]
    assert conflict.item_id == "ephemeral"
    assert conflict.conflict_type is ConflictType.BOTH_MODIFIED
    assert conflict.local_record == local
    assert conflict.remote_record == remote

    merged = result.snapshot.records["ephemeral"]
    assert merged.repetitions == 1
    assert merged.mastery_level == 20
    assert merged.sync_version == 4
    assert merged.last_modified_at == merge_time


def test_disjoint_records_are_unioned(now: datetime) -> None:
    """Items present on one side only are taken as they are."""
    local = _record("stoic", now, sync_version=1)
    remote = _record("quaint", now, sync_version=5)

    result = merge(_snapshot(now, local), _snapshot(now, remote), now)

    assert result.conflicts == []
    assert result.snapshot.records == {"stoic": local, "quaint": remote}


def test_timestamp_only_difference_never_conflicts(now: datetime) -> None:
    """Far-apart edits with the same progress are not a conflict."""
    local = _record("stoic", now, repetitions=2, mastery_level=50, correct_count=2, sync_version=1)
    remote = replace(local, last_modified_at=now + timedelta(days=2), sync_version=7)

    result = merge(_snapshot(now, local), _snapshot(now, remote), now + timedelta(days=3))

    assert result.conflicts == []
    assert result.snapshot.records["stoic"].sync_version == 8


def test_edits_within_window_do_not_conflict(now: datetime, diverged) -> None:
    """Edits closer together than the window are one session."""
    local, remote = diverged
    remote = replace(remote, last_modified_at=now + timedelta(minutes=4))

    result = merge(_snapshot(now, local), _snapshot(now, remote), now)

    assert result.conflicts == []
    assert result.snapshot.records["ephemeral"].repetitions == 1


def test_conflict_window_is_configurable(now: datetime, diverged) -> None:
    local, remote = diverged
    policy = MergePolicy(conflict_window=timedelta(minutes=30))

    result = merge(_snapshot(now, local), _snapshot(now, remote), now, policy)

    assert result.conflicts == []


@pytest.mark.parametrize("versions", [(0, 3), (2, 0), (3, 3)])
def test_unversioned_or_equal_versions_do_not_conflict(now: datetime, diverged, versions) -> None:
    """A missing or matching version means there is nothing to compare."""
    local, remote = diverged
    local = replace(local, sync_version=versions[0])
    remote = replace(remote, sync_version=versions[1])

    result = merge(_snapshot(now, local), _snapshot(now, remote), now)

    assert result.conflicts == []
    assert result.snapshot.records["ephemeral"].sync_version == max(versions) + 1


def test_absent_remote_returns_local(now: datetime, diverged) -> None:
    """Without a remote snapshot the local one is returned unchanged."""
    local, _ = diverged
    snapshot = _snapshot(now, local)

    result = merge(snapshot, None, now + timedelta(hours=1))

    assert result.snapshot == snapshot
    assert result.snapshot is not snapshot
    assert result.conflicts == []


def test_merge_with_itself_is_idempotent(now: datetime, diverged) -> None:
    """Identical records are kept as they are."""
    local, _ = diverged
    snapshot = _snapshot(now, local)

    result = merge(snapshot, snapshot, now + timedelta(hours=1))

    assert result.snapshot.records == snapshot.records
    assert result.conflicts == []


def test_bump_identical_policy(now: datetime, diverged) -> None:
    """Optionally even identical records get a new version."""
    local, _ = diverged
    snapshot = _snapshot(now, local)

    result = merge(snapshot, snapshot, now, MergePolicy(bump_identical=True))

    assert result.snapshot.records["ephemeral"].sync_version == 3


def test_merge_is_commutative_on_winner(now: datetime, diverged) -> None:
    """The provisional winner does not depend on which side is local."""
    local, remote = diverged

    forward = merge(_snapshot(now, local), _snapshot(now, remote), now)
    backward = merge(_snapshot(now, remote), _snapshot(now, local), now)

    assert forward.snapshot.records == backward.snapshot.records


def test_provisional_tie_breaks(now: datetime) -> None:
    """Equal timestamps fall back to repetitions, then mastery."""
    base = _record("stoic", now, repetitions=2, mastery_level=40)

    assert pick_provisional(base, replace(base, repetitions=3)).repetitions == 3
    assert pick_provisional(replace(base, repetitions=3), base).repetitions == 3
    assert pick_provisional(base, replace(base, mastery_level=70)).mastery_level == 70
    assert pick_provisional(base, replace(base, mastery_level=10)).mastery_level == 40


def test_significant_difference() -> None:
    record = LearningRecord(item_id="stoic", repetitions=1, mastery_level=10, correct_count=1)

    assert not has_significant_difference(record, replace(record, ease_factor=2.0))
    assert has_significant_difference(record, replace(record, correct_count=2))
    assert has_significant_difference(record, replace(record, repetitions=0))
    assert has_significant_difference(record, replace(record, mastery_level=11))


def test_logs_merge_as_deduplicated_union(now: datetime) -> None:
    """Events merge by id; sessions merge by id, the remote copy of a session winning."""
    shared = ReviewEvent(item_id="stoic", quality=4, time_spent=2.0, timestamp=now, correct=True, id="e1")
    local_only = ReviewEvent(item_id="stoic", quality=2, time_spent=1.0,
                             timestamp=now + timedelta(minutes=1), correct=False, id="e2")
    remote_only = ReviewEvent(item_id="quaint", quality=5, time_spent=1.0,
                              timestamp=now + timedelta(minutes=2), correct=True, id="e3")
    local_session = SessionLog(id="s1", kind="flashcard", start_time=now)
    remote_session = SessionLog(id="s1", kind="flashcard", start_time=now, items_studied=9)

    result = merge(
        _snapshot(now, review_events=[shared, local_only], session_logs=[local_session]),
        _snapshot(now, review_events=[shared, remote_only], session_logs=[remote_session]),
        now,
    )

    assert [e.id for e in result.snapshot.review_events] == ["e1", "e2", "e3"]
    assert result.snapshot.session_logs == [remote_session]


def test_events_without_id_merge_by_timestamp(now: datetime) -> None:
    event = ReviewEvent(item_id="stoic", quality=4, time_spent=2.0, timestamp=now, correct=True)

    result = merge(_snapshot(now, review_events=[event]), _snapshot(now, review_events=[event]), now)

    assert result.snapshot.review_events == [event]


def test_unknown_top_level_fields_survive(now: datetime) -> None:
    """Unknown members of both sides are kept, local taking precedence."""
    result = merge(
        _snapshot(now, extra={"theme": "dark"}),
        _snapshot(now, extra={"theme": "light", "locale": "en"}),
        now,
    )

    assert result.snapshot.extra == {"theme": "dark", "locale": "en"}


def test_resolve_conflict_with_local(now: datetime, diverged) -> None:
    """Choosing a side replaces the provisional record and drops the conflict."""
    local, remote = diverged
    result = merge(_snapshot(now, local), _snapshot(now, remote), now)
    resolved_at = now + timedelta(hours=2)

    resolved = resolve_conflict(result, "ephemeral", ConflictChoice.LOCAL, resolved_at)

    record = resolved.snapshot.records["ephemeral"]
    assert record.repetitions == 3
    assert record.mastery_level == 60
    assert record.sync_version == 5
    assert record.last_modified_at == resolved_at
    assert resolved.conflicts == []
    assert result.conflicts  # the input is not modified


def test_resolve_conflict_with_remote(now: datetime, diverged) -> None:
    local, remote = diverged
    result = merge(_snapshot(now, local), _snapshot(now, remote), now)

    resolved = resolve_conflict(result, "ephemeral", "remote", now)

    assert resolved.snapshot.records["ephemeral"].repetitions == 1


def test_resolve_unknown_conflict(now: datetime, diverged) -> None:
    local, remote = diverged
    result = merge(_snapshot(now, local), _snapshot(now, remote), now)

    with pytest.raises(ValidationError):
        resolve_conflict(result, "quaint", ConflictChoice.LOCAL, now)


def test_pending_conflicts_are_carried_forward(now: datetime, diverged) -> None:
    """Unresolved conflicts survive a later merge that does not detect them again."""
    local, remote = diverged
    first = merge(_snapshot(now, local), _snapshot(now, remote), now)

    second = merge(first.snapshot, first.snapshot, now + timedelta(hours=1), pending=first.conflicts)

    assert [c.item_id for c in second.conflicts] == ["ephemeral"]


def test_pending_conflict_dropped_when_item_disappears(now: datetime, diverged) -> None:
    local, remote = diverged
    first = merge(_snapshot(now, local), _snapshot(now, remote), now)

    second = merge(_snapshot(now), _snapshot(now), now, pending=first.conflicts)

    assert second.conflicts == []


def test_rebase_keeps_changes_made_during_upload(now: datetime) -> None:
    """Local edits made after the merge started win over the merged snapshot."""
    before = _snapshot(now, _record("stoic", now, repetitions=1, sync_version=1))
    merged = _snapshot(now, _record("stoic", now, repetitions=1, sync_version=2),
                       _record("quaint", now, sync_version=4))
    edited = _record("stoic", now + timedelta(minutes=1), repetitions=2, sync_version=1)
    event = ReviewEvent(item_id="stoic", quality=5, time_spent=1.0,
                        timestamp=now + timedelta(minutes=1), correct=True, id="late")
    current = _snapshot(now, edited, review_events=[event])

    rebased = rebase(merged, before, current)

    assert rebased.records["stoic"] == edited
    assert rebased.records["quaint"] == merged.records["quaint"]
    assert rebased.review_events == [event]


def test_rebase_without_local_changes_is_identity(now: datetime) -> None:
    before = _snapshot(now, _record("stoic", now, sync_version=1))
    merged = _snapshot(now, _record("stoic", now, sync_version=2))

    assert rebase(merged, before, before) == merged
