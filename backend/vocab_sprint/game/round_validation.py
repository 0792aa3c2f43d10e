"""Server-side validation of a client-reported round.

Check groups (structural, range, suspicious patterns) all run and every
finding is collected, so a client can fix everything in one round-trip. The
server recomputation and client cross-check only run once those are clean.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .round_metrics import (
    MAX_RESPONSE_TIME_MS,
    InvalidRoundSubmission,
    RoundItem,
    RoundMetrics,
    RoundSubmission,
    compute_round_metrics,
    round_half_up,
)


logger = logging.getLogger(__name__)

ALLOWED_DURATIONS = (60, 75, 90)
MIN_QUESTIONS = 1
MAX_QUESTIONS = 50

IDENTICAL_TIMES_MIN_ITEMS = 3  # strictly more than this many items
FAST_RESPONSE_MS = 500
FAST_RESPONSE_MAX_RATIO = 0.3
PERFECT_ACCURACY_MIN_ITEMS = 5  # strictly more than this many questions


class ValidationErrorCode(str, Enum):
    INVALID_DURATION = "INVALID_DURATION"
    INVALID_QUESTION_COUNT = "INVALID_QUESTION_COUNT"
    INVALID_RESPONSE_TIME = "INVALID_RESPONSE_TIME"
    INVALID_SCORE_DISCREPANCY = "INVALID_SCORE_DISCREPANCY"
    INVALID_TIME_RANGE = "INVALID_TIME_RANGE"
    INVALID_ACCURACY = "INVALID_ACCURACY"
    SUSPICIOUS_PATTERN = "SUSPICIOUS_PATTERN"
    CLIENT_SERVER_MISMATCH = "CLIENT_SERVER_MISMATCH"


class SuspiciousPatternPolicy(str, Enum):
    REJECT = "reject"
    FLAG = "flag"


@dataclass
class ValidationError:
    code: ValidationErrorCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[ValidationError]
    server_metrics: Optional[RoundMetrics] = None
    client_metrics: Optional[RoundMetrics] = None
    # Suspicious-pattern findings that did not reject the round (FLAG policy)
    flags: List[ValidationError] = field(default_factory=list)


@dataclass(frozen=True)
class RoundSubmissionRequest:
    duration_sec: int
    total_questions: int
    correct_answers: int
    items: Sequence[RoundItem]
    start_time: str
    end_time: str
    client_calculated_score: Optional[float] = None
    round_id: Optional[str] = None


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _finite(value: Any) -> bool:
    try:
        return math.isfinite(value)
    except TypeError:
        return False


def validate_round_submission(
    request: RoundSubmissionRequest,
    *,
    pattern_policy: SuspiciousPatternPolicy = SuspiciousPatternPolicy.REJECT,
    score_tolerance: float = 10,
    duration_tolerance_sec: float = 5,
) -> ValidationResult:
    errors: List[ValidationError] = []
    errors.extend(validate_basic_data(request))
    errors.extend(validate_range_rules(request, duration_tolerance_sec))

    flags: List[ValidationError] = []
    patterns = validate_suspicious_patterns(request)
    if SuspiciousPatternPolicy(pattern_policy) is SuspiciousPatternPolicy.FLAG:
        flags.extend(patterns)
    else:
        errors.extend(patterns)

    server_metrics: Optional[RoundMetrics] = None
    client_metrics: Optional[RoundMetrics] = None
    if not errors:
        calc_errors, server_metrics, client_metrics = validate_client_server_calculation(request, score_tolerance)
        errors.extend(calc_errors)

    if errors:
        logger.info(
            "Round %s rejected: %s",
            request.round_id or "<no id>",
            ", ".join(e.code.value for e in errors),
        )
    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        server_metrics=server_metrics,
        client_metrics=client_metrics,
        flags=flags,
    )


def validate_basic_data(request: RoundSubmissionRequest) -> List[ValidationError]:
    errors: List[ValidationError] = []

    if request.duration_sec not in ALLOWED_DURATIONS:
        errors.append(ValidationError(
            ValidationErrorCode.INVALID_DURATION,
            "Invalid duration. Must be 60, 75, or 90 seconds.",
            {"durationSec": request.duration_sec, "allowed": list(ALLOWED_DURATIONS)},
        ))

    if not MIN_QUESTIONS <= request.total_questions <= MAX_QUESTIONS:
        errors.append(ValidationError(
            ValidationErrorCode.INVALID_QUESTION_COUNT,
            f"Invalid question count. Must be between {MIN_QUESTIONS} and {MAX_QUESTIONS}.",
            {"totalQuestions": request.total_questions},
        ))

    if request.correct_answers < 0 or request.correct_answers > request.total_questions:
        errors.append(ValidationError(
            ValidationErrorCode.INVALID_ACCURACY,
            "Invalid correct answers count. Must be between 0 and totalQuestions.",
            {"correctAnswers": request.correct_answers, "totalQuestions": request.total_questions},
        ))

    if len(request.items) != request.total_questions:
        errors.append(ValidationError(
            ValidationErrorCode.INVALID_QUESTION_COUNT,
            "Items count does not match total questions.",
            {"itemsCount": len(request.items), "totalQuestions": request.total_questions},
        ))

    return errors


def validate_range_rules(request: RoundSubmissionRequest, duration_tolerance_sec: float = 5) -> List[ValidationError]:
    errors: List[ValidationError] = []

    for index, item in enumerate(request.items):
        if not _finite(item.response_time_ms) or not 0 <= item.response_time_ms <= MAX_RESPONSE_TIME_MS:
            errors.append(ValidationError(
                ValidationErrorCode.INVALID_RESPONSE_TIME,
                f"Invalid response time at item {index + 1}.",
                {
                    "itemIndex": index,
                    "responseTimeMs": item.response_time_ms,
                    "expectedRange": [0, MAX_RESPONSE_TIME_MS],
                },
            ))
        if not _finite(item.score) or item.score < 0:
            errors.append(ValidationError(
                ValidationErrorCode.INVALID_SCORE_DISCREPANCY,
                f"Invalid item score at item {index + 1}.",
                {"itemIndex": index, "score": str(item.score)},
            ))

    try:
        start = parse_timestamp(request.start_time)
        end = parse_timestamp(request.end_time)
    except (TypeError, ValueError):
        errors.append(ValidationError(
            ValidationErrorCode.INVALID_TIME_RANGE,
            "Invalid time format. startTime and endTime must be ISO-8601 timestamps.",
            {"startTime": request.start_time, "endTime": request.end_time},
        ))
        return errors

    if end <= start:
        errors.append(ValidationError(
            ValidationErrorCode.INVALID_TIME_RANGE,
            "endTime must be after startTime.",
            {"startTime": request.start_time, "endTime": request.end_time},
        ))
        return errors

    actual_duration = (end - start).total_seconds()
    if abs(actual_duration - request.duration_sec) > duration_tolerance_sec:
        errors.append(ValidationError(
            ValidationErrorCode.INVALID_TIME_RANGE,
            "Actual duration does not match expected duration.",
            {
                "actualDuration": actual_duration,
                "expectedDuration": request.duration_sec,
                "tolerance": duration_tolerance_sec,
            },
        ))

    return errors


def validate_suspicious_patterns(request: RoundSubmissionRequest) -> List[ValidationError]:
    errors: List[ValidationError] = []
    response_times = [item.response_time_ms for item in request.items]

    if len(response_times) > IDENTICAL_TIMES_MIN_ITEMS and len(set(response_times)) == 1:
        errors.append(ValidationError(
            ValidationErrorCode.SUSPICIOUS_PATTERN,
            "All response times are identical. Possible bot activity.",
            {"responseTime": response_times[0], "count": len(response_times)},
        ))

    too_fast = [t for t in response_times if t < FAST_RESPONSE_MS]
    if response_times and len(too_fast) > len(response_times) * FAST_RESPONSE_MAX_RATIO:
        errors.append(ValidationError(
            ValidationErrorCode.SUSPICIOUS_PATTERN,
            "Too many responses are suspiciously fast.",
            {
                "fastResponses": len(too_fast),
                "totalResponses": len(response_times),
                "threshold": FAST_RESPONSE_MAX_RATIO,
            },
        ))

    if (
        request.total_questions > PERFECT_ACCURACY_MIN_ITEMS
        and request.correct_answers == request.total_questions
    ):
        errors.append(ValidationError(
            ValidationErrorCode.SUSPICIOUS_PATTERN,
            "Perfect accuracy with many questions. Requires manual review.",
            {"accuracy": 100, "totalQuestions": request.total_questions},
        ))

    return errors


def validate_client_server_calculation(request: RoundSubmissionRequest, score_tolerance: float = 10):
    errors: List[ValidationError] = []
    try:
        submission = RoundSubmission(
            duration_sec=request.duration_sec,
            total_questions=request.total_questions,
            correct_answers=request.correct_answers,
            items=tuple(request.items),
            start_time=parse_timestamp(request.start_time),
            end_time=parse_timestamp(request.end_time),
        )
        server_metrics = compute_round_metrics(submission)
    except (InvalidRoundSubmission, TypeError, ValueError) as exc:
        errors.append(ValidationError(
            ValidationErrorCode.CLIENT_SERVER_MISMATCH,
            "Failed to calculate server metrics.",
            {"error": str(exc)},
        ))
        return errors, None, None

    client_metrics: Optional[RoundMetrics] = None
    if request.client_calculated_score is not None and not _finite(request.client_calculated_score):
        errors.append(ValidationError(
            ValidationErrorCode.INVALID_SCORE_DISCREPANCY,
            "Client score must be a finite number.",
            {"clientScore": str(request.client_calculated_score)},
        ))
        return errors, server_metrics, None

    if request.client_calculated_score is not None:
        difference = abs(request.client_calculated_score - server_metrics.total_score)
        if difference > score_tolerance:
            errors.append(ValidationError(
                ValidationErrorCode.CLIENT_SERVER_MISMATCH,
                "Client and server score calculation mismatch.",
                {
                    "clientScore": request.client_calculated_score,
                    "serverScore": server_metrics.total_score,
                    "difference": difference,
                    "tolerance": score_tolerance,
                },
            ))
        client_metrics = RoundMetrics(
            accuracy=server_metrics.accuracy,
            speed=server_metrics.speed,
            normalized_speed=server_metrics.normalized_speed,
            total_score=int(round_half_up(request.client_calculated_score)),
            max_possible_score=server_metrics.max_possible_score,
            grade=server_metrics.grade,
            average_response_time=server_metrics.average_response_time,
            item_score_total=server_metrics.item_score_total,
        )

    return errors, server_metrics, client_metrics


_CODE_MESSAGES = {
    ValidationErrorCode.INVALID_DURATION: "Round duration must be 60, 75 or 90 seconds.",
    ValidationErrorCode.INVALID_QUESTION_COUNT: "Question count must be 1-50 and match the number of items.",
    ValidationErrorCode.INVALID_RESPONSE_TIME: "Each response time must be between 0 and 30000 ms.",
    ValidationErrorCode.INVALID_SCORE_DISCREPANCY: "The reported score is inconsistent.",
    ValidationErrorCode.INVALID_TIME_RANGE: "Start/end times must be valid and match the round duration.",
    ValidationErrorCode.INVALID_ACCURACY: "Correct answers must be between 0 and the question count.",
    ValidationErrorCode.SUSPICIOUS_PATTERN: "The answer pattern looks automated.",
    ValidationErrorCode.CLIENT_SERVER_MISMATCH: "The reported score does not match the server calculation.",
}


def get_validation_error_message(errors: Sequence[ValidationError]) -> str:
    if not errors:
        return "Validation passed"
    seen: List[str] = []
    for error in errors:
        message = _CODE_MESSAGES.get(error.code, "Unknown validation error.")
        if message not in seen:
            seen.append(message)
    return " ".join(seen)
