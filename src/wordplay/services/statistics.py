"""Aggregate progress statistics derived from records and review events."""
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from wordplay.models.progress_models import LearningRecord, ReviewEvent, utcnow

STREAK_ACCURACY_THRESHOLD = 0.6  # a day counts when 60%+ of its answers were correct


@dataclass
class OverallStats:
    """Summary of the learner's progress."""
    total_items_studied: int
    average_accuracy: float
    total_time_spent: float
    current_streak: int
    best_streak: int
    mastered_items: int


def _daily_success(events: Iterable[ReviewEvent]) -> Dict[date, bool]:
    totals: Dict[date, List[int]] = defaultdict(lambda: [0, 0])
    for event in events:
        day = totals[event.timestamp.date()]
        day[1] += 1
        if event.correct:
            day[0] += 1
    return {
        day: correct / total >= STREAK_ACCURACY_THRESHOLD
        for day, (correct, total) in totals.items()
    }


def calculate_streaks(
    events: Iterable[ReviewEvent], today: Optional[date] = None
) -> Tuple[int, int]:
    """Return (current_streak, best_streak) in days.

    Days without activity neither extend nor break a streak; a day with
    activity below the accuracy threshold breaks it.
    """
    daily = _daily_success(events)
    if not daily:
        return 0, 0

    best = 0
    running = 0
    for day in sorted(daily):
        if daily[day]:
            running += 1
            best = max(best, running)
        else:
            running = 0

    today = today or utcnow().date()
    first_day = min(daily)
    current = 0
    day = today
    while day >= first_day:
        if day in daily:
            if not daily[day]:
                break
            current += 1
        day -= timedelta(days=1)

    return current, best


def overall_stats(
    records: List[LearningRecord],
    events: List[ReviewEvent],
    mastery_threshold: int = 80,
    now: Optional[datetime] = None,
) -> OverallStats:
    """Compute overall statistics for the progress screen."""
    average = sum(record.accuracy for record in records) / len(records) if records else 0.0
    current, best = calculate_streaks(events, (now or utcnow()).date())
    return OverallStats(
        total_items_studied=len(records),
        average_accuracy=round(average, 2),
        total_time_spent=sum(event.time_spent for event in events),
        current_streak=current,
        best_streak=best,
        mastered_items=sum(1 for record in records if record.mastery_level >= mastery_threshold),
    )
