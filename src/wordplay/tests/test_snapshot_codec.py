"""Tests for the snapshot codec."""
import json
from datetime import datetime, timedelta

import pytest
from faker import Faker

from wordplay.exceptions import MalformedSnapshotError
from wordplay.models.progress_models import (
    LearningRecord,
    ReviewEvent,
    SessionLog,
    Snapshot,
    SyncMetadata,
)
from wordplay.services import snapshot_codec
from wordplay.services.sm2_scheduler import new_record, schedule

fake = Faker()


@pytest.fixture
def snapshot(now: datetime) -> Snapshot:
    """A snapshot with a few records, events and sessions."""
    records = {}
    events = []
    for offset in range(3):
        item_id = f"{fake.word()}-{offset}"
        reviewed_at = now + timedelta(minutes=offset)
        record = schedule(new_record(item_id, now), 5 - offset, reviewed_at)
        records[item_id] = record
        events.append(ReviewEvent(
            item_id=item_id,
            quality=5 - offset,
            time_spent=float(fake.random_int(1, 30)),
            timestamp=reviewed_at,
            correct=5 - offset >= 3,
            id=fake.uuid4(),
        ))
    sessions = [
        SessionLog(
            id="session-1",
            kind="flashcard",
            start_time=now,
            end_time=now + timedelta(minutes=5),
            items_studied=3,
            correct_answers=2,
            time_spent=300.0,
        ),
        SessionLog(id="session-2", kind="match", start_time=now + timedelta(hours=1)),
    ]
    return Snapshot(records=records, review_events=events, session_logs=sessions, exported_at=now)


def test_round_trip(snapshot: Snapshot) -> None:
    """Deserializing a serialized snapshot gives back an equal snapshot."""
    assert snapshot_codec.deserialize(snapshot_codec.serialize(snapshot)) == snapshot


def test_round_trip_empty_snapshot(now: datetime) -> None:
    """An empty snapshot round-trips."""
    empty = Snapshot(exported_at=now)

    assert snapshot_codec.deserialize(snapshot_codec.serialize(empty)) == empty


def test_document_uses_named_members(snapshot: Snapshot) -> None:
    """The blob is a self-describing document with camelCase members."""
    doc = json.loads(snapshot_codec.serialize(snapshot))

    assert set(doc) == {"userProgress", "testResults", "sessionLogs", "exportDate"}
    record = doc["userProgress"][0]
    assert {"wordId", "easeFactor", "repetitions", "interval", "nextReview",
            "masteryLevel", "lastModified", "syncVersion"} <= set(record)


def test_unknown_fields_survive_round_trip(snapshot: Snapshot) -> None:
    """Members this version does not understand are carried through."""
    doc = json.loads(snapshot_codec.serialize(snapshot))
    doc["schemaHint"] = {"version": 7}
    doc["userProgress"][0]["difficulty"] = "hard"
    doc["testResults"][0]["deviceHint"] = "tablet"
    doc["sessionLogs"][0]["score"] = 42

    decoded = snapshot_codec.deserialize(json.dumps(doc))
    again = json.loads(snapshot_codec.serialize(decoded))

    assert again["schemaHint"] == {"version": 7}
    assert again["userProgress"][0]["difficulty"] == "hard"
    assert again["testResults"][0]["deviceHint"] == "tablet"
    assert again["sessionLogs"][0]["score"] == 42


def test_serialization_is_canonical(snapshot: Snapshot) -> None:
    """Record insertion order does not change the document or its checksum."""
    reordered = Snapshot(
        records=dict(reversed(list(snapshot.records.items()))),
        review_events=snapshot.review_events,
        session_logs=snapshot.session_logs,
        exported_at=snapshot.exported_at,
    )

    blob = snapshot_codec.serialize(snapshot)
    assert snapshot_codec.serialize(reordered) == blob
    assert snapshot_codec.checksum(snapshot_codec.serialize(reordered)) == snapshot_codec.checksum(blob)


def test_checksum_detects_changes(snapshot: Snapshot) -> None:
    """A one-character change gives a different checksum."""
    blob = snapshot_codec.serialize(snapshot)
    corrupted = blob.replace('"repetitions": 1', '"repetitions": 2', 1)

    assert corrupted != blob
    assert snapshot_codec.checksum(corrupted) != snapshot_codec.checksum(blob)


def test_checksum_known_values() -> None:
    """The rolling hash matches the web client's string hash."""
    assert snapshot_codec.checksum("") == "0"
    assert snapshot_codec.checksum("a") == "2p"  # 97 in base 36
    assert snapshot_codec.checksum("ab") == "2e9"  # 97 * 31 + 98 = 3105


def test_envelope_carries_sync_metadata(snapshot: Snapshot, now: datetime) -> None:
    """Sync metadata travels alongside the snapshot, not inside its data."""
    metadata = SyncMetadata(
        last_sync_time=now, checksum="abc", record_count=3, device_id="device-1-x", sync_version=4
    )
    blob = snapshot_codec.serialize(snapshot, metadata)

    decoded, decoded_metadata = snapshot_codec.deserialize_envelope(blob)

    assert decoded == snapshot
    assert decoded_metadata == metadata
    assert "syncMetadata" not in decoded.extra


def test_legacy_record_without_sync_fields(now: datetime) -> None:
    """Records written before sync existed take lastReviewed and version 0."""
    doc = {
        "userProgress": [{
            "wordId": "quaint",
            "easeFactor": 2.5,
            "repetitions": 1,
            "interval": 1,
            "nextReview": "2024-05-02T12:00:00.000Z",
            "totalSeen": 1,
            "correctCount": 1,
            "accuracy": 1,
            "lastReviewed": "2024-05-01T12:00:00.000Z",
            "masteryLevel": 100,
        }],
        "exportDate": "2024-05-01T12:00:00.000Z",
    }

    record = snapshot_codec.deserialize(json.dumps(doc)).records["quaint"]

    assert record.last_modified_at == now
    assert record.sync_version == 0
    assert isinstance(record, LearningRecord)


def test_legacy_session_collections(now: datetime) -> None:
    """Flashcard and test sessions from older clients become session logs."""
    doc = {
        "flashcardSessions": [{"id": "f1", "startTime": "2024-05-01T12:00:00Z", "cardsStudied": 4}],
        "testSessions": [{"id": "t1", "testType": "match", "startTime": "2024-05-01T13:00:00Z",
                          "totalQuestions": 10, "correctAnswers": 7}],
    }

    snapshot = snapshot_codec.deserialize(json.dumps(doc))

    assert [(s.id, s.kind, s.items_studied) for s in snapshot.session_logs] == [
        ("f1", "flashcard", 4),
        ("t1", "match", 10),
    ]
    assert snapshot.session_logs[0].start_time == now
    assert "flashcardSessions" not in snapshot.extra


@pytest.mark.parametrize("blob", [
    "not json",
    "[]",
    json.dumps({"userProgress": {"wordId": "x"}}),
    json.dumps({"userProgress": [{"wordId": "x"}]}),
    json.dumps({"userProgress": [{"wordId": "", "easeFactor": 2.5}]}),
    json.dumps({"userProgress": [{"wordId": "   ", "easeFactor": 2.5}]}),
    json.dumps({"testResults": [{"wordId": "\t", "quality": 4, "timestamp": "2024-05-01T12:00:00Z"}]}),
    json.dumps({"testResults": [{"wordId": "x", "quality": "high", "timestamp": "2024-05-01T12:00:00Z"}]}),
    json.dumps({"testResults": [{"wordId": "x", "quality": 4, "timestamp": "yesterday"}]}),
])
def test_malformed_documents_rejected(blob: str) -> None:
    """Structurally invalid documents fail fast."""
    with pytest.raises(MalformedSnapshotError):
        snapshot_codec.deserialize(blob)


def test_whole_numbers_serialize_canonically(now: datetime) -> None:
    """Numbers held as int or float give the same document and checksum."""
    snapshot = Snapshot(
        records={"stoic": LearningRecord(item_id="stoic", ease_factor=2, accuracy=1, total_seen=1,
                                         correct_count=1, next_review_at=now, last_reviewed_at=now,
                                         last_modified_at=now)},
        review_events=[ReviewEvent(item_id="stoic", quality=5, time_spent=5, timestamp=now, correct=True)],
        session_logs=[SessionLog(id="s1", kind="flashcard", start_time=now, time_spent=30)],
        exported_at=now,
    )

    blob = snapshot_codec.serialize(snapshot)
    again = snapshot_codec.serialize(snapshot_codec.deserialize(blob))

    assert again == blob
    assert snapshot_codec.checksum(again) == snapshot_codec.checksum(blob)
    assert '"timeSpent": 5.0' in blob


def test_negative_counts_rejected(snapshot: Snapshot) -> None:
    """Negative counters are not a valid record."""
    doc = json.loads(snapshot_codec.serialize(snapshot))
    doc["userProgress"][0]["repetitions"] = -1

    with pytest.raises(MalformedSnapshotError):
        snapshot_codec.deserialize(json.dumps(doc))
