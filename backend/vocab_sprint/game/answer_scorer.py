"""Per-question answer judging and scoring for a running round.

Nothing here persists anything; the client-side game loop (and the tests)
feed answers through ``process_answer`` and keep the returned ``GameStats``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from typing import List, Tuple


# Hangul syllables; override for other target languages
DEFAULT_NATIVE_SCRIPT = "가-힣"

# Response time at which the speed bonus reaches zero
TIME_BONUS_CEILING_MS = 10000


@dataclass(frozen=True)
class ScoringConfig:
    base_score: int = 100
    combo_multiplier: float = 0.1  # 10% bonus per combo step
    time_bonus_multiplier: float = 2.0
    max_time_bonus_pct: float = 50  # cap, as a percentage of base_score


DEFAULT_SCORING_CONFIG = ScoringConfig()


@dataclass(frozen=True)
class GameStats:
    total_questions: int = 0
    correct_answers: int = 0
    total_score: int = 0
    accuracy: float = 0.0
    current_combo: int = 0
    max_combo: int = 0
    average_response_time: float = 0.0
    total_response_time: float = 0.0


@dataclass(frozen=True)
class AnswerResult:
    is_correct: bool
    score: int
    combo: int
    response_time: float
    accuracy: float


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def preprocess_answer(answer: str, native_script: str = DEFAULT_NATIVE_SCRIPT) -> str:
    text = _collapse((answer or "").lower())
    return _collapse(re.sub(rf"[^0-9a-z\s{native_script}]", "", text))


def _answer_variants(reference: str, native_script: str) -> List[str]:
    variants = [reference, reference.replace(" ", "")]
    script_only = _collapse(re.sub(r"[a-z]", "", reference))
    letters_only = _collapse(re.sub(rf"[{native_script}]", "", reference))
    for variant in (script_only, letters_only):
        if variant and variant not in variants:
            variants.append(variant)
    return [v for v in variants if v]


def judge_answer(user_answer: str, correct_answer: str, native_script: str = DEFAULT_NATIVE_SCRIPT) -> bool:
    """True when the normalized answer equals the reference or an accepted variant.

    Accepted variants: the reference without whitespace, only its native-script
    part, or only its latin part. An answer that normalizes to "" never matches.
    """
    user = preprocess_answer(user_answer, native_script)
    if not user:
        return False
    reference = preprocess_answer(correct_answer, native_script)
    if user == reference:
        return True
    return user in _answer_variants(reference, native_script)


def calculate_answer_score(
    is_correct: bool,
    response_time_ms: float,
    current_combo: int,
    remaining_time_sec: float,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
) -> int:
    if not is_correct:
        return 0

    base = config.base_score
    combo_bonus = math.floor(base * config.combo_multiplier * max(current_combo, 0))

    speed_factor = 1 - max(response_time_ms, 0) / TIME_BONUS_CEILING_MS
    time_bonus = min(
        math.floor(base * config.time_bonus_multiplier * speed_factor),
        math.floor(base * config.max_time_bonus_pct / 100),
    )
    time_bonus = max(time_bonus, 0)

    # 10% of base per full minute still on the clock
    remaining_bonus = math.floor(base * 0.1 * (max(remaining_time_sec, 0) / 60))

    return max(base + combo_bonus + time_bonus + remaining_bonus, 1)


def update_game_stats(current: GameStats, is_correct: bool, response_time_ms: float, score: int) -> GameStats:
    total_questions = current.total_questions + 1
    correct_answers = current.correct_answers + (1 if is_correct else 0)
    combo = current.current_combo + 1 if is_correct else 0
    total_response_time = current.total_response_time + response_time_ms

    return replace(
        current,
        total_questions=total_questions,
        correct_answers=correct_answers,
        total_score=current.total_score + score,
        accuracy=correct_answers / total_questions * 100,
        current_combo=combo,
        max_combo=max(current.max_combo, combo),
        average_response_time=total_response_time / total_questions,
        total_response_time=total_response_time,
    )


def process_answer(
    user_answer: str,
    correct_answer: str,
    response_time_ms: float,
    remaining_time_sec: float,
    current_stats: GameStats,
    config: ScoringConfig = DEFAULT_SCORING_CONFIG,
    native_script: str = DEFAULT_NATIVE_SCRIPT,
) -> Tuple[AnswerResult, GameStats]:
    is_correct = judge_answer(user_answer, correct_answer, native_script)
    score = calculate_answer_score(
        is_correct, response_time_ms, current_stats.current_combo, remaining_time_sec, config
    )
    new_stats = update_game_stats(current_stats, is_correct, response_time_ms, score)
    result = AnswerResult(
        is_correct=is_correct,
        score=score,
        combo=new_stats.current_combo,
        response_time=response_time_ms,
        accuracy=new_stats.accuracy,
    )
    return result, new_stats


def calculate_performance_rating(stats: GameStats, total_time_ms: float) -> float:
    # Weighted blend of accuracy, speed and combo, each on a 0-100 scale
    if stats.total_questions == 0:
        return 0.0
    accuracy_score = stats.accuracy
    if stats.average_response_time > 0:
        per_question_budget = total_time_ms / stats.total_questions
        speed_score = min(100.0, per_question_budget / stats.average_response_time * 100)
    else:
        speed_score = 100.0
    combo_score = min(100.0, stats.max_combo / 10 * 100)  # 10+ combo = 100
    return accuracy_score * 0.4 + speed_score * 0.3 + combo_score * 0.3
