"""Record store: the single writer of local learning state."""
import json
import logging
import math
import random
import string
import time
import uuid
from copy import deepcopy
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from wordplay import monitoring
from wordplay.config import settings
from wordplay.exceptions import CorruptStateError, MalformedSnapshotError, ValidationError
from wordplay.models.progress_models import (
    ChangeListener,
    LearningRecord,
    ReviewEvent,
    SessionLog,
    Snapshot,
    SyncMetadata,
    SyncStatus,
    utcnow,
)
from wordplay.services import sm2_scheduler, snapshot_codec
from wordplay.services.document_store import DocumentStore
from wordplay.services.statistics import OverallStats, overall_stats

logger = logging.getLogger(__name__)

RECORDS_KEY = "learning-records"
EVENTS_KEY = "review-events"
SESSIONS_KEY = "session-logs"
SYNC_METADATA_KEY = "sync-metadata"
SYNC_STATUS_KEY = "sync-status"
DEVICE_ID_KEY = "device-id"
AUTO_SYNC_KEY = "auto-sync"

DATA_KEYS = (RECORDS_KEY, EVENTS_KEY, SESSIONS_KEY)


def generate_device_id() -> str:
    """Random per-installation identifier, e.g. device-1700000000000-k3j9x0q1z."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"device-{int(time.time() * 1000)}-{suffix}"


class RecordStore:
    """Owns the learning records, review events and session logs of one replica.

    Construct one per session around a database session and pass it to the
    code that needs it. Every mutation is published to subscribers as a
    "changed" notification carrying a short reason string.
    """

    def __init__(self, db: Session, min_ease_factor: Optional[float] = None):
        """Initialize the store with a database session."""
        self.documents = DocumentStore(db)
        self.min_ease_factor = min_ease_factor or settings.scheduler.min_ease_factor
        self.corruption_errors: List[CorruptStateError] = []
        self.revision = 0  # bumped on every change to the learning data
        self._listeners: List[ChangeListener] = []
        self._records: Optional[Dict[str, LearningRecord]] = None
        self._events: Optional[List[ReviewEvent]] = None
        self._sessions: Optional[List[SessionLog]] = None

    # --- change channel ---------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener for change notifications; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, reason: str, publish: bool = True) -> None:
        self.revision += 1
        if not publish:
            return
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception as e:
                logger.error("Change listener failed for '%s': %s", reason, e)

    # --- loading ----------------------------------------------------------

    def _read_json(self, key: str, default: Any, parse: Callable[[Any], Any]) -> Any:
        raw = self.documents.get(key)
        if raw is None:
            return default
        try:
            return parse(json.loads(raw))
        except (ValueError, TypeError, MalformedSnapshotError) as e:
            error = CorruptStateError(key, str(e))
            self.corruption_errors.append(error)
            monitoring.corrupt_collections.labels(collection=key).inc()
            logger.warning("%s; falling back to an empty collection", error)
            return default

    def _load_records(self) -> Dict[str, LearningRecord]:
        if self._records is None:
            def parse(doc: Any) -> Dict[str, LearningRecord]:
                if not isinstance(doc, list):
                    raise TypeError("expected a list of records")
                records = (snapshot_codec.record_from_dict(item) for item in doc)
                return {record.item_id: record for record in records}

            self._records = self._read_json(RECORDS_KEY, {}, parse)
        return self._records

    def _load_events(self) -> List[ReviewEvent]:
        if self._events is None:
            def parse(doc: Any) -> List[ReviewEvent]:
                if not isinstance(doc, list):
                    raise TypeError("expected a list of review events")
                return [snapshot_codec.event_from_dict(item) for item in doc]

            self._events = self._read_json(EVENTS_KEY, [], parse)
        return self._events

    def _load_sessions(self) -> List[SessionLog]:
        if self._sessions is None:
            def parse(doc: Any) -> List[SessionLog]:
                if not isinstance(doc, list):
                    raise TypeError("expected a list of session logs")
                return [snapshot_codec.session_from_dict(item) for item in doc]

            self._sessions = self._read_json(SESSIONS_KEY, [], parse)
        return self._sessions

    # --- serialization of collections -------------------------------------

    @staticmethod
    def _dump_records(records: Dict[str, LearningRecord]) -> str:
        return json.dumps([snapshot_codec.record_to_dict(r) for r in records.values()])

    @staticmethod
    def _dump_events(events: List[ReviewEvent]) -> str:
        return json.dumps([snapshot_codec.event_to_dict(e) for e in events])

    @staticmethod
    def _dump_sessions(sessions: List[SessionLog]) -> str:
        return json.dumps([snapshot_codec.session_to_dict(s) for s in sessions])

    # --- validation -------------------------------------------------------

    def validate(self, record: LearningRecord) -> LearningRecord:
        """Return a copy of record with every field clamped into its valid range
        and the mastery level recomputed.

        Raises ValidationError when the record cannot be repaired.
        """
        if not isinstance(record.item_id, str) or not record.item_id.strip():
            raise ValidationError(f"Record item id must be a non-empty string, got {record.item_id!r}")
        if not math.isfinite(record.ease_factor):
            raise ValidationError(f"Ease factor of {record.item_id} is not finite")

        total_seen = max(0, int(record.total_seen))
        correct_count = min(max(0, int(record.correct_count)), total_seen)
        accuracy = correct_count / total_seen if total_seen else 0.0
        repetitions = max(0, int(record.repetitions))
        # Mastery is derived from accuracy and streak, never taken from the caller
        mastery = sm2_scheduler.mastery_level(accuracy, repetitions) if total_seen else 0
        return replace(
            record,
            ease_factor=max(self.min_ease_factor, float(record.ease_factor)),
            repetitions=repetitions,
            interval=max(1, int(record.interval)),
            total_seen=total_seen,
            correct_count=correct_count,
            accuracy=accuracy,
            mastery_level=mastery,
            sync_version=max(0, int(record.sync_version)),
            extra=dict(record.extra),
        )

    @staticmethod
    def _check_item_id(item_id: str) -> None:
        if not isinstance(item_id, str) or not item_id.strip():
            raise ValidationError(f"Item id must be a non-empty string, got {item_id!r}")

    # --- records ----------------------------------------------------------

    def get(self, item_id: str) -> Optional[LearningRecord]:
        """Get the record for an item, or None if it has never been reviewed."""
        self._check_item_id(item_id)
        record = self._load_records().get(item_id)
        return deepcopy(record) if record else None

    def all(self) -> List[LearningRecord]:
        """All records, in insertion order."""
        return [deepcopy(record) for record in self._load_records().values()]

    def upsert(self, record: LearningRecord, now: Optional[datetime] = None) -> LearningRecord:
        """Replace the record with the same item id, or insert it."""
        record = replace(self.validate(record), last_modified_at=now or utcnow())
        records = dict(self._load_records())
        records[record.item_id] = record
        self.documents.put(RECORDS_KEY, self._dump_records(records))
        self._records = records
        self._notify("record")
        return deepcopy(record)

    def weakest(self, n: Optional[int] = None) -> List[LearningRecord]:
        """The n reviewed records with the lowest accuracy."""
        n = settings.scheduler.weak_items_limit if n is None else n
        if n < 0:
            raise ValidationError(f"Cannot ask for a negative number of items ({n})")
        seen = [record for record in self.all() if record.total_seen > 0]
        return sorted(seen, key=lambda record: record.accuracy)[:n]

    def due(self, now: Optional[datetime] = None) -> List[LearningRecord]:
        """Records due for review at now."""
        return sm2_scheduler.due_items(self.all(), now)

    def new(self, all_ids: Iterable[str], limit: Optional[int] = None) -> List[str]:
        """Item ids that have no record yet."""
        limit = settings.scheduler.new_items_limit if limit is None else limit
        return sm2_scheduler.new_items(self._load_records().values(), all_ids, limit)

    def review(
        self,
        item_id: str,
        quality: int,
        time_spent: float = 0.0,
        now: Optional[datetime] = None,
        test_type: str = "flashcard",
    ) -> LearningRecord:
        """Record one answered review: schedule the item and log the event."""
        self._check_item_id(item_id)
        sm2_scheduler.validate_quality(quality)
        now = now or utcnow()

        current = self.get(item_id) or sm2_scheduler.new_record(
            item_id, now, settings.scheduler.initial_ease_factor
        )
        updated = sm2_scheduler.schedule(current, quality, now, self.min_ease_factor)
        record = replace(self.validate(updated), last_modified_at=now)

        correct = sm2_scheduler.is_remembered(quality)
        event = ReviewEvent(
            item_id=item_id,
            quality=quality,
            time_spent=float(time_spent),
            timestamp=now,
            correct=correct,
            test_type=test_type,
            id=uuid.uuid4().hex,
        )
        records = dict(self._load_records())
        records[item_id] = record
        events = self._load_events() + [event]
        # The record and its event are committed together
        self.documents.put_many({
            RECORDS_KEY: self._dump_records(records),
            EVENTS_KEY: self._dump_events(events),
        })
        self._records, self._events = records, events
        self._notify("review")

        monitoring.reviews_recorded.labels(outcome="correct" if correct else "lapse").inc()
        logger.info(
            "Reviewed %s with quality %d: interval %d day(s), mastery %d",
            item_id, quality, record.interval, record.mastery_level,
        )
        return deepcopy(record)

    # --- review events and sessions ---------------------------------------

    def review_events(self) -> List[ReviewEvent]:
        """All review events, oldest first."""
        return list(self._load_events())

    def append_review_event(self, event: ReviewEvent) -> None:
        """Append an event to the review history."""
        self._check_item_id(event.item_id)
        events = self._load_events() + [event]
        self.documents.put(EVENTS_KEY, self._dump_events(events))
        self._events = events
        self._notify("review-event")

    def session_logs(self) -> List[SessionLog]:
        """All session logs."""
        return [deepcopy(session) for session in self._load_sessions()]

    def save_session_log(self, session: SessionLog) -> None:
        """Save a session, replacing a stored session with the same id."""
        sessions = list(self._load_sessions())
        for index, existing in enumerate(sessions):
            if existing.id == session.id:
                sessions[index] = deepcopy(session)
                break
        else:
            sessions.append(deepcopy(session))
        self.documents.put(SESSIONS_KEY, self._dump_sessions(sessions))
        self._sessions = sessions
        self._notify("session-log")

    def overall_stats(
        self, mastery_threshold: Optional[int] = None, now: Optional[datetime] = None
    ) -> OverallStats:
        """Overall progress statistics."""
        threshold = settings.scheduler.mastery_threshold if mastery_threshold is None else mastery_threshold
        return overall_stats(self.all(), self.review_events(), threshold, now)

    # --- snapshots --------------------------------------------------------

    def export_snapshot(self, now: Optional[datetime] = None) -> Snapshot:
        """Capture the full local state as a snapshot."""
        return Snapshot(
            records={record.item_id: record for record in self.all()},
            review_events=self.review_events(),
            session_logs=self.session_logs(),
            exported_at=now or utcnow(),
        )

    def validate_snapshot(self, snapshot: Snapshot) -> Snapshot:
        """Return a copy of snapshot with every record validated.

        Raises ValidationError when a record cannot be repaired.
        """
        records = {}
        for record in snapshot.records.values():
            validated = self.validate(record)
            records[validated.item_id] = validated
        return replace(
            snapshot,
            records=records,
            review_events=list(snapshot.review_events),
            session_logs=deepcopy(snapshot.session_logs),
            extra=deepcopy(snapshot.extra),
        )

    def replace_all(self, snapshot: Snapshot, notify: bool = True) -> None:
        """Replace every local collection with the snapshot's content.

        All three collections are written in one transaction.
        """
        snapshot = self.validate_snapshot(snapshot)
        records, events, sessions = snapshot.records, snapshot.review_events, snapshot.session_logs
        self.documents.put_many({
            RECORDS_KEY: self._dump_records(records),
            EVENTS_KEY: self._dump_events(events),
            SESSIONS_KEY: self._dump_sessions(sessions),
        })
        self._records, self._events, self._sessions = records, events, sessions
        logger.info(
            "Replaced local data: %d records, %d review events, %d session logs",
            len(records), len(events), len(sessions),
        )
        self._notify("import", publish=notify)

    def clear_all(self) -> None:
        """Remove all learning data (records, events, sessions)."""
        for key in DATA_KEYS:
            self.documents.delete(key)
        self._records, self._events, self._sessions = {}, [], []
        logger.info("Cleared all local learning data")
        self._notify("clear")

    # --- sync bookkeeping -------------------------------------------------

    def sync_metadata(self) -> Optional[SyncMetadata]:
        """Metadata of the last successful sync, if any."""
        return self._read_json(SYNC_METADATA_KEY, None, snapshot_codec.metadata_from_dict)

    def save_sync_metadata(self, metadata: SyncMetadata) -> None:
        self.documents.put(SYNC_METADATA_KEY, json.dumps(snapshot_codec.metadata_to_dict(metadata)))

    def sync_status(self) -> SyncStatus:
        """The persisted sync status."""
        return self._read_json(SYNC_STATUS_KEY, SyncStatus(), snapshot_codec.status_from_dict)

    def save_sync_status(self, status: SyncStatus) -> None:
        self.documents.put(SYNC_STATUS_KEY, json.dumps(snapshot_codec.status_to_dict(status)))

    def device_id(self) -> str:
        """Stable identifier of this installation, created on first use."""
        device_id = self._read_json(DEVICE_ID_KEY, None, lambda doc: doc if isinstance(doc, str) else None)
        if not device_id:
            device_id = generate_device_id()
            self.documents.put(DEVICE_ID_KEY, json.dumps(device_id))
            logger.info("Created device id %s", device_id)
        return device_id

    def auto_sync_enabled(self) -> bool:
        return self._read_json(AUTO_SYNC_KEY, False, lambda doc: doc is True)

    def set_auto_sync(self, enabled: bool) -> None:
        """Turn automatic sync after changes on or off."""
        if enabled:
            self.documents.put(AUTO_SYNC_KEY, json.dumps(True))
        else:
            self.documents.delete(AUTO_SYNC_KEY)
        logger.info("Auto-sync %s", "enabled" if enabled else "disabled")
