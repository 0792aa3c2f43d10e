from datetime import datetime, timedelta, timezone

import pytest

from vocab_sprint.game.round_metrics import RoundItem
from vocab_sprint.game.round_validation import (
    RoundSubmissionRequest,
    SuspiciousPatternPolicy,
    ValidationError,
    ValidationErrorCode,
    get_validation_error_message,
    parse_timestamp,
    validate_round_submission,
)

START = datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)

FIXTURE_ITEMS = (
    RoundItem(True, 2000, 100),
    RoundItem(True, 1500, 100),
    RoundItem(False, 3000, 0),
    RoundItem(True, 1800, 100),
)
FIXTURE_SERVER_SCORE = 883


def make_request(items=FIXTURE_ITEMS, duration_sec=60, elapsed_sec=None, **overrides):
    elapsed = duration_sec if elapsed_sec is None else elapsed_sec
    fields = dict(
        duration_sec=duration_sec,
        total_questions=len(items),
        correct_answers=sum(1 for i in items if i.is_correct),
        items=tuple(items),
        start_time=START.isoformat(),
        end_time=(START + timedelta(seconds=elapsed)).isoformat(),
    )
    fields.update(overrides)
    return RoundSubmissionRequest(**fields)


def codes(result):
    return [e.code for e in result.errors]


def test_clean_round_passes_and_returns_server_metrics():
    result = validate_round_submission(make_request(client_calculated_score=FIXTURE_SERVER_SCORE))
    assert result.is_valid
    assert result.errors == []
    assert result.server_metrics.total_score == FIXTURE_SERVER_SCORE
    assert result.client_metrics.total_score == FIXTURE_SERVER_SCORE


def test_identical_response_times_are_suspicious():
    items = [RoundItem(i % 2 == 0, 2000) for i in range(5)]
    result = validate_round_submission(make_request(items))
    assert not result.is_valid
    assert ValidationErrorCode.SUSPICIOUS_PATTERN in codes(result)


def test_three_identical_times_are_not_enough():
    items = [RoundItem(True, 2000), RoundItem(False, 2000), RoundItem(True, 2000)]
    assert validate_round_submission(make_request(items)).is_valid


@pytest.mark.parametrize("difference, valid", [(11, False), (-11, False), (10, True), (9, True), (-9, True)])
def test_client_score_tolerance(difference, valid):
    result = validate_round_submission(make_request(client_calculated_score=FIXTURE_SERVER_SCORE + difference))
    assert result.is_valid is valid
    if not valid:
        assert codes(result) == [ValidationErrorCode.CLIENT_SERVER_MISMATCH]
        assert result.errors[0].details["serverScore"] == FIXTURE_SERVER_SCORE


@pytest.mark.parametrize("client_score", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_client_score_is_rejected(client_score):
    result = validate_round_submission(make_request(client_calculated_score=client_score))
    assert not result.is_valid
    assert codes(result) == [ValidationErrorCode.INVALID_SCORE_DISCREPANCY]
    assert result.client_metrics is None


def test_fractional_client_score_is_rounded_half_up():
    result = validate_round_submission(make_request(client_calculated_score=FIXTURE_SERVER_SCORE + 0.5))
    assert result.is_valid
    assert result.client_metrics.total_score == FIXTURE_SERVER_SCORE + 1


@pytest.mark.parametrize("bad_score", [-100, float("nan")])
def test_invalid_item_score(bad_score):
    items = list(FIXTURE_ITEMS[:3]) + [RoundItem(True, 1800, bad_score)]
    result = validate_round_submission(make_request(items, client_calculated_score=FIXTURE_SERVER_SCORE))
    assert codes(result) == [ValidationErrorCode.INVALID_SCORE_DISCREPANCY]
    assert result.errors[0].details["itemIndex"] == 3


def test_unsupported_duration():
    result = validate_round_submission(make_request(duration_sec=45))
    assert codes(result) == [ValidationErrorCode.INVALID_DURATION]
    assert result.server_metrics is None


def test_all_findings_are_reported_together():
    items = list(FIXTURE_ITEMS[:3]) + [RoundItem(True, 40000)]
    result = validate_round_submission(make_request(items, duration_sec=45, elapsed_sec=120, correct_answers=9))
    found = set(codes(result))
    assert {
        ValidationErrorCode.INVALID_DURATION,
        ValidationErrorCode.INVALID_ACCURACY,
        ValidationErrorCode.INVALID_RESPONSE_TIME,
        ValidationErrorCode.INVALID_TIME_RANGE,
    } <= found
    # Cross-check is skipped once structural checks fail
    assert ValidationErrorCode.CLIENT_SERVER_MISMATCH not in found


def test_item_count_must_match_total_questions():
    result = validate_round_submission(make_request(total_questions=6))
    assert ValidationErrorCode.INVALID_QUESTION_COUNT in codes(result)


def test_end_before_start_is_a_time_range_error():
    request = make_request(start_time=(START + timedelta(seconds=60)).isoformat(), end_time=START.isoformat())
    result = validate_round_submission(request)
    assert codes(result) == [ValidationErrorCode.INVALID_TIME_RANGE]


def test_unparseable_timestamp():
    result = validate_round_submission(make_request(start_time="yesterday"))
    assert codes(result) == [ValidationErrorCode.INVALID_TIME_RANGE]


def test_duration_within_tolerance_passes():
    assert validate_round_submission(make_request(elapsed_sec=64)).is_valid
    assert not validate_round_submission(make_request(elapsed_sec=66)).is_valid
    assert validate_round_submission(make_request(elapsed_sec=66), duration_tolerance_sec=10).is_valid


def test_too_many_fast_answers():
    items = [RoundItem(True, 100), RoundItem(True, 200), RoundItem(False, 3000), RoundItem(True, 2500)]
    result = validate_round_submission(make_request(items))
    assert codes(result) == [ValidationErrorCode.SUSPICIOUS_PATTERN]


def test_perfect_accuracy_on_many_questions():
    items = [RoundItem(True, 1500 + i * 100) for i in range(6)]
    result = validate_round_submission(make_request(items))
    assert codes(result) == [ValidationErrorCode.SUSPICIOUS_PATTERN]


def test_flag_policy_accepts_but_records_patterns():
    items = [RoundItem(True, 1500 + i * 100) for i in range(6)]
    result = validate_round_submission(make_request(items), pattern_policy=SuspiciousPatternPolicy.FLAG)
    assert result.is_valid
    assert [f.code for f in result.flags] == [ValidationErrorCode.SUSPICIOUS_PATTERN]
    assert result.server_metrics is not None


def test_parse_timestamp_handles_zulu_and_naive():
    assert parse_timestamp("2026-01-01T09:00:00Z") == START
    assert parse_timestamp("2026-01-01T09:00:00") == START
    assert parse_timestamp("2026-01-01T18:00:00+09:00") == START


def test_error_serialization_and_summary():
    error = ValidationError(ValidationErrorCode.INVALID_DURATION, "bad", {"durationSec": 45})
    assert error.to_dict() == {"code": "INVALID_DURATION", "message": "bad", "details": {"durationSec": 45}}

    assert get_validation_error_message([]) == "Validation passed"
    summary = get_validation_error_message([error, error])
    assert summary.count("60, 75 or 90") == 1
