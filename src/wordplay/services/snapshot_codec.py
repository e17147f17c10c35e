"""Snapshot codec: JSON documents <-> checked in-memory types.

Documents use named members (camelCase, as exported by the web client), so a
newer client may add members that this version does not know about. Unknown
members are kept in each object's ``extra`` mapping and written back out
unchanged, which keeps them alive across a merge.
"""
import json
import logging
import math
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Tuple

from wordplay.exceptions import MalformedSnapshotError
from wordplay.models.progress_models import (
    ConflictType,
    LearningRecord,
    ReviewEvent,
    SessionLog,
    Snapshot,
    SyncConflict,
    SyncMetadata,
    SyncStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

RECORD_FIELDS = {
    "wordId", "easeFactor", "repetitions", "interval", "nextReview", "totalSeen",
    "correctCount", "accuracy", "lastReviewed", "masteryLevel", "lastModified",
    "syncVersion",
}
EVENT_FIELDS = {"id", "wordId", "quality", "timeSpent", "timestamp", "correct", "testType"}
SESSION_FIELDS = {
    "id", "kind", "startTime", "endTime", "itemsStudied", "correctAnswers", "timeSpent",
}
SNAPSHOT_FIELDS = {"userProgress", "testResults", "sessionLogs", "exportDate"}
METADATA_KEY = "syncMetadata"

# Session collections written by older clients, folded into sessionLogs on read.
LEGACY_SESSION_KEYS = {"flashcardSessions": "flashcard", "testSessions": "test"}


# --- field helpers --------------------------------------------------------

def format_time(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 in UTC, or None."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def parse_time(value: Any, field_name: str) -> datetime:
    if not isinstance(value, str):
        raise MalformedSnapshotError(f"'{field_name}' must be an ISO timestamp, got {value!r}")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise MalformedSnapshotError(f"'{field_name}' is not a valid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_time(doc: Dict[str, Any], key: str) -> Optional[datetime]:
    value = doc.get(key)
    return None if value is None else parse_time(value, key)


def _int(doc: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    value = doc.get(key, default)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedSnapshotError(f"'{key}' must be an integer, got {value!r}")
    if value < 0:
        raise MalformedSnapshotError(f"'{key}' cannot be negative, got {value}")
    return value


def _float(doc: Dict[str, Any], key: str, default: Optional[float] = None) -> float:
    value = doc.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedSnapshotError(f"'{key}' must be a number, got {value!r}")
    if not math.isfinite(value):
        raise MalformedSnapshotError(f"'{key}' must be finite, got {value!r}")
    return float(value)


def _str(doc: Dict[str, Any], key: str) -> str:
    value = doc.get(key)
    if not isinstance(value, str) or not value.strip():
        raise MalformedSnapshotError(f"'{key}' must be a non-empty string, got {value!r}")
    return value


def _object(value: Any, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedSnapshotError(f"{what} must be an object, got {type(value).__name__}")
    return value


def _list(doc: Dict[str, Any], key: str) -> List[Any]:
    value = doc.get(key, [])
    if value is None:
        return []
    if not isinstance(value, list):
        raise MalformedSnapshotError(f"'{key}' must be a list, got {type(value).__name__}")
    return value


def _extra(doc: Dict[str, Any], known: set) -> Dict[str, Any]:
    return {key: value for key, value in doc.items() if key not in known}


# --- records --------------------------------------------------------------

def record_to_dict(record: LearningRecord) -> Dict[str, Any]:
    doc = dict(record.extra)
    doc.update({
        "wordId": record.item_id,
        "easeFactor": float(record.ease_factor),
        "repetitions": record.repetitions,
        "interval": record.interval,
        "nextReview": format_time(record.next_review_at),
        "totalSeen": record.total_seen,
        "correctCount": record.correct_count,
        "accuracy": float(record.accuracy),
        "lastReviewed": format_time(record.last_reviewed_at),
        "masteryLevel": record.mastery_level,
        "lastModified": format_time(record.last_modified_at),
        "syncVersion": record.sync_version,
    })
    return doc


def record_from_dict(doc: Any) -> LearningRecord:
    doc = _object(doc, "A learning record")
    last_reviewed = parse_time(doc.get("lastReviewed"), "lastReviewed")
    total_seen = _int(doc, "totalSeen")
    correct_count = _int(doc, "correctCount")
    if "accuracy" in doc:
        accuracy = _float(doc, "accuracy")
    else:
        accuracy = correct_count / total_seen if total_seen else 0.0
    # Records written before sync existed carry no modification stamp
    last_modified = _optional_time(doc, "lastModified") or last_reviewed
    return LearningRecord(
        item_id=_str(doc, "wordId"),
        ease_factor=_float(doc, "easeFactor"),
        repetitions=_int(doc, "repetitions"),
        interval=_int(doc, "interval"),
        next_review_at=parse_time(doc.get("nextReview"), "nextReview"),
        total_seen=total_seen,
        correct_count=correct_count,
        accuracy=accuracy,
        last_reviewed_at=last_reviewed,
        mastery_level=_int(doc, "masteryLevel", 0),
        last_modified_at=last_modified,
        sync_version=_int(doc, "syncVersion", 0),
        extra=_extra(doc, RECORD_FIELDS),
    )


# --- review events --------------------------------------------------------

def event_to_dict(event: ReviewEvent) -> Dict[str, Any]:
    doc = dict(event.extra)
    doc.update({
        "wordId": event.item_id,
        "quality": event.quality,
        "timeSpent": float(event.time_spent),
        "timestamp": format_time(event.timestamp),
        "correct": event.correct,
        "testType": event.test_type,
    })
    if event.id is not None:
        doc["id"] = event.id
    return doc


def event_from_dict(doc: Any) -> ReviewEvent:
    doc = _object(doc, "A review event")
    quality = _int(doc, "quality")
    correct = doc.get("correct", quality >= 3)
    if not isinstance(correct, bool):
        raise MalformedSnapshotError(f"'correct' must be a boolean, got {correct!r}")
    event_id = doc.get("id")
    if event_id is not None and not isinstance(event_id, str):
        event_id = str(event_id)
    return ReviewEvent(
        item_id=_str(doc, "wordId"),
        quality=quality,
        time_spent=_float(doc, "timeSpent", 0.0),
        timestamp=parse_time(doc.get("timestamp"), "timestamp"),
        correct=correct,
        test_type=doc.get("testType") or "flashcard",
        id=event_id,
        extra=_extra(doc, EVENT_FIELDS),
    )


# --- session logs ---------------------------------------------------------

def session_to_dict(session: SessionLog) -> Dict[str, Any]:
    doc = dict(session.extra)
    doc.update({
        "id": session.id,
        "kind": session.kind,
        "startTime": format_time(session.start_time),
        "endTime": format_time(session.end_time),
        "itemsStudied": int(session.items_studied),
        "correctAnswers": int(session.correct_answers),
        "timeSpent": float(session.time_spent),
    })
    return doc


def session_from_dict(doc: Any, default_kind: str = "flashcard") -> SessionLog:
    doc = _object(doc, "A session log")
    if "itemsStudied" in doc:
        items_studied = _int(doc, "itemsStudied")
    else:
        items_studied = _int(doc, "cardsStudied", doc.get("totalQuestions", 0))
    return SessionLog(
        id=str(doc.get("id") or ""),
        kind=doc.get("kind") or doc.get("testType") or default_kind,
        start_time=parse_time(doc.get("startTime"), "startTime"),
        end_time=_optional_time(doc, "endTime"),
        items_studied=items_studied,
        correct_answers=_int(doc, "correctAnswers", 0),
        time_spent=_float(doc, "timeSpent", 0.0),
        extra=_extra(doc, SESSION_FIELDS),
    )


# --- sync bookkeeping -----------------------------------------------------

def metadata_to_dict(metadata: SyncMetadata) -> Dict[str, Any]:
    return {
        "lastSyncTime": format_time(metadata.last_sync_time),
        "dataChecksum": metadata.checksum,
        "recordCount": metadata.record_count,
        "deviceId": metadata.device_id,
        "syncVersion": metadata.sync_version,
    }


def metadata_from_dict(doc: Any) -> SyncMetadata:
    doc = _object(doc, "Sync metadata")
    return SyncMetadata(
        last_sync_time=_optional_time(doc, "lastSyncTime"),
        checksum=str(doc.get("dataChecksum", "")),
        record_count=_int(doc, "recordCount", 0),
        device_id=str(doc.get("deviceId", "")),
        sync_version=_int(doc, "syncVersion", 0),
    )


def conflict_to_dict(conflict: SyncConflict) -> Dict[str, Any]:
    return {
        "wordId": conflict.item_id,
        "localData": record_to_dict(conflict.local_record),
        "remoteData": record_to_dict(conflict.remote_record),
        "conflictType": conflict.conflict_type.value,
    }


def conflict_from_dict(doc: Any) -> SyncConflict:
    doc = _object(doc, "A sync conflict")
    try:
        conflict_type = ConflictType(doc.get("conflictType", ConflictType.BOTH_MODIFIED.value))
    except ValueError as e:
        raise MalformedSnapshotError(f"Unknown conflict type {doc.get('conflictType')!r}") from e
    return SyncConflict(
        item_id=_str(doc, "wordId"),
        local_record=record_from_dict(doc.get("localData")),
        remote_record=record_from_dict(doc.get("remoteData")),
        conflict_type=conflict_type,
    )


def status_to_dict(status: SyncStatus) -> Dict[str, Any]:
    return {
        "lastSyncTime": format_time(status.last_sync_time),
        "isSyncing": status.is_syncing,
        "error": status.error,
        "conflicts": [conflict_to_dict(conflict) for conflict in status.conflicts],
        "recordCount": status.record_count,
        "checksum": status.checksum,
        "loggedOut": status.logged_out,
    }


def status_from_dict(doc: Any) -> SyncStatus:
    doc = _object(doc, "Sync status")
    return SyncStatus(
        last_sync_time=_optional_time(doc, "lastSyncTime"),
        is_syncing=bool(doc.get("isSyncing", False)),
        error=doc.get("error"),
        conflicts=[conflict_from_dict(item) for item in _list(doc, "conflicts")],
        record_count=doc.get("recordCount"),
        checksum=doc.get("checksum"),
        logged_out=bool(doc.get("loggedOut", False)),
    )


# --- snapshots ------------------------------------------------------------

def snapshot_to_dict(snapshot: Snapshot) -> Dict[str, Any]:
    doc = dict(snapshot.extra)
    doc.update({
        "userProgress": [
            record_to_dict(snapshot.records[item_id]) for item_id in sorted(snapshot.records)
        ],
        "testResults": [event_to_dict(event) for event in snapshot.review_events],
        "sessionLogs": [session_to_dict(session) for session in snapshot.session_logs],
        "exportDate": format_time(snapshot.exported_at),
    })
    return doc


def snapshot_from_dict(doc: Any) -> Snapshot:
    doc = _object(doc, "A snapshot")
    records: Dict[str, LearningRecord] = {}
    for item in _list(doc, "userProgress"):
        record = record_from_dict(item)
        if record.item_id in records:
            logger.warning("Duplicate record for %s in snapshot, keeping the last one", record.item_id)
        records[record.item_id] = record

    session_logs = [session_from_dict(item) for item in _list(doc, "sessionLogs")]
    if "sessionLogs" not in doc:
        for key, kind in LEGACY_SESSION_KEYS.items():
            session_logs.extend(session_from_dict(item, kind) for item in _list(doc, key))

    export_date = doc.get("exportDate")
    extra = _extra(doc, SNAPSHOT_FIELDS | {METADATA_KEY})
    if "sessionLogs" not in doc:
        for key in LEGACY_SESSION_KEYS:
            extra.pop(key, None)

    return Snapshot(
        records=records,
        review_events=[event_from_dict(item) for item in _list(doc, "testResults")],
        session_logs=session_logs,
        exported_at=parse_time(export_date, "exportDate") if export_date else utcnow(),
        extra=extra,
    )


def serialize(snapshot: Snapshot, metadata: Optional[SyncMetadata] = None) -> str:
    """Serialize a snapshot (and optional sync metadata envelope) to JSON.

    Keys are sorted and records ordered by item id, so equal snapshots give
    equal documents and equal checksums.
    """
    doc = snapshot_to_dict(snapshot)
    if metadata is not None:
        doc[METADATA_KEY] = metadata_to_dict(metadata)
    return json.dumps(doc, indent=2, sort_keys=True, ensure_ascii=False)


def deserialize_envelope(blob: str) -> Tuple[Snapshot, Optional[SyncMetadata]]:
    """Decode a snapshot document and the sync metadata sent alongside it, if any."""
    if isinstance(blob, bytes):
        try:
            blob = blob.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedSnapshotError(f"Snapshot is not valid UTF-8: {e}") from e
    if not isinstance(blob, str):
        raise MalformedSnapshotError(f"Snapshot must be text, got {type(blob).__name__}")
    try:
        doc = json.loads(blob)
    except json.JSONDecodeError as e:
        raise MalformedSnapshotError(f"Snapshot is not valid JSON: {e}") from e
    snapshot = snapshot_from_dict(doc)
    metadata = metadata_from_dict(doc[METADATA_KEY]) if doc.get(METADATA_KEY) else None
    return snapshot, metadata


def deserialize(blob: str) -> Snapshot:
    """Decode a snapshot document. Raises MalformedSnapshotError."""
    snapshot, _ = deserialize_envelope(blob)
    return snapshot


def checksum(blob: str) -> str:
    """Weak 32-bit rolling hash (base 36) for corruption detection only."""
    value = 0
    data = blob.encode("utf-16-le")
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        value = ((value << 5) - value + unit) & 0xFFFFFFFF
    if value & 0x80000000:
        value -= 0x100000000
    return _base36(abs(value))


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, remainder = divmod(number, 36)
        out.append(digits[remainder])
    return "".join(reversed(out))
