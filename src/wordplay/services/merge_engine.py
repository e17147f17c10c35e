"""Merge engine: reconcile a local and a remote snapshot.

Learning records merge by conditional last-writer-wins: the record with the
newer ``last_modified_at`` is carried forward, but when both replicas changed
the same item meaningfully in different sessions a ``SyncConflict`` is raised
for the user to settle. Review events and session logs are historical facts
and merge by de-duplicated union.
"""
import json
import logging
from copy import deepcopy
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Tuple

from wordplay.config import CONFLICT_WINDOW_SECONDS, SyncSettings
from wordplay.exceptions import ValidationError
from wordplay.models.progress_models import (
    ConflictChoice,
    ConflictType,
    LearningRecord,
    MergeResult,
    ReviewEvent,
    SessionLog,
    Snapshot,
    SyncConflict,
    utcnow,
)
from wordplay.services import snapshot_codec

logger = logging.getLogger(__name__)


@dataclass
class MergePolicy:
    """Tunable parts of the merge.

    conflict_window: edits further apart than this count as separate sessions.
    bump_identical: also bump the version of records that are identical on
        both sides (makes a merge of a snapshot with itself non-idempotent).
    """
    conflict_window: timedelta = timedelta(seconds=CONFLICT_WINDOW_SECONDS)
    bump_identical: bool = False

    @classmethod
    def from_settings(cls, sync_settings: SyncSettings) -> "MergePolicy":
        return cls(
            conflict_window=timedelta(seconds=sync_settings.conflict_window_seconds),
            bump_identical=sync_settings.bump_identical_records,
        )


def has_significant_difference(local: LearningRecord, remote: LearningRecord) -> bool:
    """Whether two versions of a record differ in learning progress, not just timestamps."""
    return (
        local.repetitions != remote.repetitions
        or local.mastery_level != remote.mastery_level
        or local.correct_count != remote.correct_count
    )


def is_conflict(local: LearningRecord, remote: LearningRecord, policy: MergePolicy) -> bool:
    """Both replicas modified the item in different sessions."""
    # A version of 0 means the record was never merged, so it carries no version
    if not local.sync_version or not remote.sync_version:
        return False
    if local.sync_version == remote.sync_version:
        return False
    if abs(local.last_modified_at - remote.last_modified_at) <= policy.conflict_window:
        return False
    return has_significant_difference(local, remote)


def pick_provisional(local: LearningRecord, remote: LearningRecord) -> LearningRecord:
    """Newer modification wins; ties go to more repetitions, then higher mastery."""
    if remote.last_modified_at != local.last_modified_at:
        return remote if remote.last_modified_at > local.last_modified_at else local
    if (remote.repetitions, remote.mastery_level) > (local.repetitions, local.mastery_level):
        return remote
    return local


def _bumped(record: LearningRecord, version_floor: int, now: datetime) -> LearningRecord:
    return replace(
        deepcopy(record),
        sync_version=max(record.sync_version, version_floor) + 1,
        last_modified_at=now,
    )


def merge_records(
    local: Dict[str, LearningRecord],
    remote: Dict[str, LearningRecord],
    now: datetime,
    policy: MergePolicy,
) -> Tuple[Dict[str, LearningRecord], List[SyncConflict]]:
    """Merge two record sets keyed by item id."""
    merged: Dict[str, LearningRecord] = {}
    conflicts: List[SyncConflict] = []

    for item_id in list(local) + [item_id for item_id in remote if item_id not in local]:
        local_record = local.get(item_id)
        remote_record = remote.get(item_id)
        if remote_record is None or local_record is None:
            merged[item_id] = deepcopy(local_record or remote_record)
            continue

        if local_record == remote_record and not policy.bump_identical:
            merged[item_id] = deepcopy(local_record)
            continue

        if is_conflict(local_record, remote_record, policy):
            conflicts.append(SyncConflict(
                item_id=item_id,
                local_record=deepcopy(local_record),
                remote_record=deepcopy(remote_record),
                conflict_type=ConflictType.BOTH_MODIFIED,
            ))

        winner = pick_provisional(local_record, remote_record)
        floor = max(local_record.sync_version, remote_record.sync_version)
        merged[item_id] = _bumped(winner, floor, now)

    return merged, conflicts


def _event_key(event: ReviewEvent) -> Hashable:
    if event.id:
        return ("id", event.id)
    if event.timestamp is not None:
        return ("timestamp", snapshot_codec.format_time(event.timestamp))
    return ("content", json.dumps(snapshot_codec.event_to_dict(event), sort_keys=True))


def _session_key(session: SessionLog) -> Hashable:
    if session.id:
        return ("id", session.id)
    if session.start_time is not None:
        return ("timestamp", snapshot_codec.format_time(session.start_time))
    return ("content", json.dumps(snapshot_codec.session_to_dict(session), sort_keys=True))


def merge_logs(local: Iterable[Any], remote: Iterable[Any], key: Callable[[Any], Hashable]) -> List[Any]:
    """Union of two append-only logs, de-duplicated by key, local order first."""
    merged: Dict[Hashable, Any] = {}
    for item in list(local) + list(remote):
        merged[key(item)] = item
    return [deepcopy(item) for item in merged.values()]


def merge(
    local: Snapshot,
    remote: Optional[Snapshot],
    now: Optional[datetime] = None,
    policy: Optional[MergePolicy] = None,
    pending: Iterable[SyncConflict] = (),
) -> MergeResult:
    """Reconcile local with remote.

    Args:
        local: snapshot of this replica.
        remote: snapshot read from remote storage, or None if there is none.
        now: merge time, stamped on every record whose version is bumped.
        policy: conflict detection policy.
        pending: unresolved conflicts from earlier merges; they are carried
            forward unless detected again or their item disappeared.

    Returns:
        The merged snapshot and the outstanding conflicts. Conflicting items
        provisionally carry the newer record until the user resolves them.
    """
    pending = list(pending)
    if remote is None:
        return MergeResult(snapshot=deepcopy(local), conflicts=pending)

    now = now or utcnow()
    policy = policy or MergePolicy()

    records, conflicts = merge_records(local.records, remote.records, now, policy)
    detected = {conflict.item_id for conflict in conflicts}
    carried = [
        conflict for conflict in pending
        if conflict.item_id not in detected and conflict.item_id in records
    ]
    if conflicts:
        logger.warning("Found %d sync conflicts: %s", len(conflicts), sorted(detected))

    extra = deepcopy(remote.extra)
    extra.update(deepcopy(local.extra))
    merged = Snapshot(
        records=records,
        review_events=merge_logs(local.review_events, remote.review_events, _event_key),
        session_logs=merge_logs(local.session_logs, remote.session_logs, _session_key),
        exported_at=now,
        extra=extra,
    )
    logger.info(
        "Merged %d local and %d remote records into %d",
        len(local.records), len(remote.records), len(records),
    )
    return MergeResult(snapshot=merged, conflicts=conflicts + carried)


def rebase(merged: Snapshot, before: Snapshot, current: Snapshot) -> Snapshot:
    """Re-apply local changes made while a merged snapshot was being uploaded.

    ``before`` is the local snapshot the merge started from and ``current``
    the local state now; records that changed in between win over ``merged``.
    """
    rebased = deepcopy(merged)
    for item_id, record in current.records.items():
        if before.records.get(item_id) != record:
            rebased.records[item_id] = deepcopy(record)
    rebased.review_events = merge_logs(rebased.review_events, current.review_events, _event_key)
    rebased.session_logs = merge_logs(rebased.session_logs, current.session_logs, _session_key)
    return rebased


def resolve_conflict(
    result: MergeResult,
    item_id: str,
    choice: ConflictChoice,
    now: Optional[datetime] = None,
) -> MergeResult:
    """Settle one outstanding conflict by picking the local or the remote record.

    The chosen record replaces the provisional one with a bumped version, and
    the conflict is dropped from the outstanding list.
    """
    conflict = next((c for c in result.conflicts if c.item_id == item_id), None)
    if conflict is None:
        raise ValidationError(f"No outstanding conflict for item {item_id!r}")
    choice = ConflictChoice(choice)

    chosen = conflict.local_record if choice is ConflictChoice.LOCAL else conflict.remote_record
    current = result.snapshot.records.get(item_id)
    floor = max(
        current.sync_version if current else 0,
        conflict.local_record.sync_version,
        conflict.remote_record.sync_version,
    )
    snapshot = deepcopy(result.snapshot)
    snapshot.records[item_id] = _bumped(chosen, floor, now or utcnow())
    logger.info("Resolved conflict for %s with the %s record", item_id, choice.value)
    return MergeResult(
        snapshot=snapshot,
        conflicts=[c for c in result.conflicts if c.item_id != item_id],
    )
