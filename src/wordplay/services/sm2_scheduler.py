"""Modified SM-2 scheduling: pure functions over learning records."""
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from wordplay.config import INITIAL_EASE_FACTOR, MIN_EASE_FACTOR
from wordplay.exceptions import ValidationError
from wordplay.models.progress_models import LearningRecord, utcnow

MIN_QUALITY = 0
MAX_QUALITY = 5
PASSING_QUALITY = 3  # >= 3 means the item was remembered


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (2.5 -> 3, not 2)."""
    return int(math.floor(value + 0.5))


def is_remembered(quality: int) -> bool:
    """Whether a quality rating counts as a successful recall."""
    return quality >= PASSING_QUALITY


def validate_quality(quality: int) -> int:
    """Check that a quality rating is an integer on the 0-5 scale."""
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise ValidationError(f"Quality rating must be an integer, got {quality!r}")
    if not MIN_QUALITY <= quality <= MAX_QUALITY:
        raise ValidationError(
            f"Quality rating must be between {MIN_QUALITY} and {MAX_QUALITY}, got {quality}"
        )
    return quality


def new_record(
    item_id: str,
    now: Optional[datetime] = None,
    ease_factor: float = INITIAL_EASE_FACTOR,
) -> LearningRecord:
    """Create the initial record for an item that has never been reviewed."""
    now = now or utcnow()
    return LearningRecord(
        item_id=item_id,
        ease_factor=ease_factor,
        repetitions=0,
        interval=1,
        next_review_at=now,
        total_seen=0,
        correct_count=0,
        accuracy=0.0,
        last_reviewed_at=now,
        mastery_level=0,
        last_modified_at=now,
    )


def next_ease_factor(
    ease_factor: float, quality: int, min_ease_factor: float = MIN_EASE_FACTOR
) -> float:
    """SM-2 ease factor update, floored at min_ease_factor and never capped."""
    delta = 0.1 - (5 - quality) * (0.08 + (5 - quality) * 0.02)
    return max(min_ease_factor, ease_factor + delta)


def mastery_level(accuracy: float, repetitions: int) -> int:
    """Mastery score in [0, 100] from accuracy and the current streak."""
    return max(0, min(100, round_half_up(accuracy * 100 * (1 + repetitions * 0.1))))


def schedule(
    record: LearningRecord,
    quality: int,
    now: Optional[datetime] = None,
    min_ease_factor: float = MIN_EASE_FACTOR,
) -> LearningRecord:
    """Apply one review with the given quality and return the updated record.

    The input record is left untouched. Mastery is computed from the
    repetitions count *after* this review, so it grows with the streak.
    """
    validate_quality(quality)
    now = now or utcnow()

    repetitions = record.repetitions
    interval = record.interval
    if is_remembered(quality):
        if repetitions == 0:
            interval = 1
        elif repetitions == 1:
            interval = 6
        else:
            interval = round_half_up(interval * record.ease_factor)
        repetitions += 1
    else:
        repetitions = 0
        interval = 1

    total_seen = record.total_seen + 1
    correct_count = record.correct_count + (1 if is_remembered(quality) else 0)
    accuracy = correct_count / total_seen

    return replace(
        record,
        ease_factor=next_ease_factor(record.ease_factor, quality, min_ease_factor),
        repetitions=repetitions,
        interval=max(1, interval),
        next_review_at=now + timedelta(days=interval),
        total_seen=total_seen,
        correct_count=correct_count,
        accuracy=accuracy,
        mastery_level=mastery_level(accuracy, repetitions),
        last_reviewed_at=now,
        last_modified_at=now,
        extra=dict(record.extra),
    )


def due_items(
    records: Iterable[LearningRecord], now: Optional[datetime] = None
) -> List[LearningRecord]:
    """Records whose next review is at or before now."""
    now = now or utcnow()
    return [record for record in records if record.next_review_at <= now]


def new_items(
    records: Iterable[LearningRecord], all_ids: Iterable[str], limit: int = 10
) -> List[str]:
    """Item ids with no learning record yet, in the given order, at most limit."""
    known = {record.item_id for record in records}
    return [item_id for item_id in all_ids if item_id not in known][:max(0, limit)]
