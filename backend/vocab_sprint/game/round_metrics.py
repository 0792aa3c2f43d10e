"""Round metrics: accuracy, speed, normalized speed, total score and grade.

Everything here is pure arithmetic over a finished round so the server can
recompute a client's result from scratch on every submission.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence, Tuple


MAX_RESPONSE_TIME_MS = 30000
MAX_BASE_SCORE = 1000
MAX_SPEED_BONUS = 100
# Reference cap used for max_possible_score; the actual combo bonus is unbounded
MAX_COMBO_BONUS = 500
MAX_POSSIBLE_SCORE = MAX_BASE_SCORE + MAX_SPEED_BONUS + MAX_COMBO_BONUS
COMBO_STEP_POINTS = 10

GRADE_THRESHOLDS: Tuple[Tuple[float, str], ...] = (
    (95, "S"),
    (90, "A"),
    (80, "B"),
    (70, "C"),
    (60, "D"),
)

STANINE_THRESHOLDS: Tuple[Tuple[int, int], ...] = (
    (96, 9),
    (89, 8),
    (77, 7),
    (60, 6),
    (40, 5),
    (23, 4),
    (11, 3),
    (4, 2),
)


class InvalidRoundSubmission(ValueError):
    pass


@dataclass(frozen=True)
class RoundItem:
    is_correct: bool
    response_time_ms: float
    score: float = 0


@dataclass(frozen=True)
class RoundSubmission:
    duration_sec: int
    total_questions: int
    correct_answers: int
    items: Tuple[RoundItem, ...]
    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class RoundMetrics:
    accuracy: float
    speed: int
    normalized_speed: float
    total_score: int
    max_possible_score: int
    grade: str
    # Plain mean over every item and the sum of the client's per-item scores
    average_response_time: float = 0.0
    item_score_total: float = 0.0
    percentile: Optional[int] = field(default=None)
    stanine: Optional[int] = field(default=None)


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def _check_submission(submission: RoundSubmission) -> None:
    if not isinstance(submission.duration_sec, int) or submission.duration_sec <= 0:
        raise InvalidRoundSubmission("duration_sec must be a positive integer")
    if not isinstance(submission.total_questions, int) or submission.total_questions <= 0:
        raise InvalidRoundSubmission("total_questions must be a positive integer")
    if not isinstance(submission.correct_answers, int) or submission.correct_answers < 0:
        raise InvalidRoundSubmission("correct_answers must be a non-negative integer")
    if submission.correct_answers > submission.total_questions:
        raise InvalidRoundSubmission("correct_answers cannot exceed total_questions")
    if len(submission.items) != submission.total_questions:
        raise InvalidRoundSubmission("items length must equal total_questions")
    if not isinstance(submission.start_time, datetime) or not isinstance(submission.end_time, datetime):
        raise InvalidRoundSubmission("start_time and end_time must be datetimes")
    if submission.end_time <= submission.start_time:
        raise InvalidRoundSubmission("end_time must be after start_time")
    for item in submission.items:
        if not isinstance(item.is_correct, bool):
            raise InvalidRoundSubmission("item.is_correct must be a boolean")
        if item.response_time_ms < 0:
            raise InvalidRoundSubmission("item.response_time_ms must be non-negative")
        if item.score < 0:
            raise InvalidRoundSubmission("item.score must be non-negative")


def calculate_combo_bonus(items: Sequence[RoundItem]) -> int:
    # 1st in a streak = 10, 2nd = 20, ...; a miss resets the streak
    combo = 0
    bonus = 0
    for item in items:
        if item.is_correct:
            combo += 1
            bonus += combo * COMBO_STEP_POINTS
        else:
            combo = 0
    return bonus


def calculate_grade(score: float, max_score: float) -> str:
    percentage = score / max_score * 100 if max_score > 0 else 0
    for threshold, grade in GRADE_THRESHOLDS:
        if percentage >= threshold:
            return grade
    return "F"


def compute_round_metrics(submission: RoundSubmission) -> RoundMetrics:
    _check_submission(submission)

    items = submission.items
    accuracy = submission.correct_answers / submission.total_questions * 100

    # Out-of-range samples are excluded, not clamped
    valid_times = [i.response_time_ms for i in items if 0 < i.response_time_ms <= MAX_RESPONSE_TIME_MS]
    speed = sum(valid_times) / len(valid_times) if valid_times else 0.0

    if speed > 0:
        normalized_speed = max(0.0, min(100.0, (MAX_RESPONSE_TIME_MS - speed) / MAX_RESPONSE_TIME_MS * 100))
    else:
        normalized_speed = 100.0

    base_score = int(round_half_up(accuracy * 10))
    speed_bonus = int(round_half_up(normalized_speed))
    combo_bonus = calculate_combo_bonus(items)
    total_score = base_score + speed_bonus + combo_bonus

    all_times = [i.response_time_ms for i in items]
    return RoundMetrics(
        accuracy=round_half_up(accuracy, 2),
        speed=int(round_half_up(speed)),
        normalized_speed=round_half_up(normalized_speed, 2),
        total_score=total_score,
        max_possible_score=MAX_POSSIBLE_SCORE,
        grade=calculate_grade(total_score, MAX_POSSIBLE_SCORE),
        average_response_time=sum(all_times) / len(all_times),
        item_score_total=sum(i.score for i in items),
    )


def calculate_percentile(score: float, all_scores: Sequence[float]) -> int:
    """Share of ``all_scores`` strictly below ``score``, as a rounded 0-100 value."""
    if not all_scores:
        return 0
    below = sum(1 for s in all_scores if s < score)
    return int(round_half_up(below / len(all_scores) * 100))


def calculate_stanine(percentile: float) -> int:
    for threshold, stanine in STANINE_THRESHOLDS:
        if percentile >= threshold:
            return stanine
    return 1
