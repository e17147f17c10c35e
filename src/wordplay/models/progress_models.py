"""In-memory types for learning progress, snapshots and sync."""
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from wordplay.config import INITIAL_EASE_FACTOR


def utcnow() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(UTC)


class ConflictType(Enum):
    """Kinds of sync conflicts."""
    BOTH_MODIFIED = "both-modified"


class ConflictChoice(Enum):
    """Side picked by the user when resolving a conflict."""
    LOCAL = "local"
    REMOTE = "remote"


class SyncStrategy(Enum):
    """How a sync reconciles local and remote data."""
    UPLOAD = "upload"
    DOWNLOAD = "download"
    MERGE = "merge"


@dataclass
class LearningRecord:
    """Per-item spaced repetition state."""
    item_id: str
    ease_factor: float = INITIAL_EASE_FACTOR
    repetitions: int = 0
    interval: int = 1  # days
    next_review_at: datetime = field(default_factory=utcnow)
    total_seen: int = 0
    correct_count: int = 0
    accuracy: float = 0.0
    last_reviewed_at: datetime = field(default_factory=utcnow)
    mastery_level: int = 0
    last_modified_at: datetime = field(default_factory=utcnow)
    sync_version: int = 0  # 0 = never merged
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReviewEvent:
    """A single answered review. Immutable once written."""
    item_id: str
    quality: int
    time_spent: float
    timestamp: datetime
    correct: bool
    test_type: str = "flashcard"
    id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass
class SessionLog:
    """A flashcard or test session."""
    id: str
    kind: str
    start_time: datetime
    end_time: Optional[datetime] = None
    items_studied: int = 0
    correct_answers: int = 0
    time_spent: float = 0.0
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Snapshot:
    """The complete exportable state of the learning data."""
    records: Dict[str, LearningRecord] = field(default_factory=dict)
    review_events: List[ReviewEvent] = field(default_factory=list)
    session_logs: List[SessionLog] = field(default_factory=list)
    exported_at: datetime = field(default_factory=utcnow)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SyncMetadata:
    """Bookkeeping sent alongside an uploaded snapshot."""
    last_sync_time: Optional[datetime]
    checksum: str
    record_count: int
    device_id: str
    sync_version: int


@dataclass
class SyncConflict:
    """The same item was modified meaningfully on two replicas."""
    item_id: str
    local_record: LearningRecord
    remote_record: LearningRecord
    conflict_type: ConflictType = ConflictType.BOTH_MODIFIED


@dataclass
class SyncStatus:
    """Observable state of the sync orchestrator."""
    last_sync_time: Optional[datetime] = None
    is_syncing: bool = False
    error: Optional[str] = None
    conflicts: List[SyncConflict] = field(default_factory=list)
    record_count: Optional[int] = None
    checksum: Optional[str] = None
    logged_out: bool = False


@dataclass
class MergeResult:
    """Outcome of reconciling two snapshots."""
    snapshot: Snapshot
    conflicts: List[SyncConflict] = field(default_factory=list)


ChangeListener = Callable[[str], None]
