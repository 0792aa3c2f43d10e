from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import error_response
from ..game.idempotency import ClaimStore, IdempotencyGate, InMemoryClaimStore, SqlClaimStore
from ..game.leaderboard import LeaderboardKey, LeaderboardResult, LeaderboardStore, RankResult, update_leaderboard
from ..game.percentile import PercentileCalculator, PercentileStats, SqlRankingStore
from ..game.round_metrics import RoundItem, RoundMetrics
from ..game.round_validation import (
    RoundSubmissionRequest,
    SuspiciousPatternPolicy,
    get_validation_error_message,
    parse_timestamp,
    validate_round_submission,
)
from ..models import Round, RoundItemRecord
from ..settings import settings
from .auth import User, get_current_user


router = APIRouter(tags=["rounds"])

logger = logging.getLogger(__name__)

# Only used with IDEMPOTENCY_BACKEND=memory (single instance)
_memory_claims = InMemoryClaimStore()


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)


class RoundItemIn(_CamelModel):
    is_correct: bool
    response_time_ms: int
    score: float = 0


class SubmitRoundRequest(_CamelModel):
    # Range checks live in the round validator
    duration_sec: int
    total_questions: int
    correct_answers: int
    items: List[RoundItemIn]
    start_time: str
    end_time: str
    client_calculated_score: Optional[float] = None
    round_id: Optional[str] = Field(default=None, min_length=1, max_length=64)


class MetricsOut(_CamelModel):
    accuracy: float
    speed: int
    normalized_speed: float
    total_score: int
    max_possible_score: int
    grade: str
    percentile: Optional[int] = None
    stanine: Optional[int] = None


class PercentileStatsOut(_CamelModel):
    percentile: int
    stanine: int
    total_players: int


class LeaderboardOut(_CamelModel):
    rank: int
    total_players: int
    period: str


class SubmitRoundResponse(_CamelModel):
    success: bool = True
    round_id: str
    metrics: MetricsOut
    percentile_stats: Optional[PercentileStatsOut] = None
    leaderboard: Optional[LeaderboardOut] = None
    message: Optional[str] = None


def _claim_store(db: Session) -> ClaimStore:
    if settings.idempotency_backend == "memory":
        return _memory_claims
    return SqlClaimStore(db)


def _primary_period() -> str:
    return settings.leaderboard_periods[0] if settings.leaderboard_periods else "daily"


def _to_domain(req: SubmitRoundRequest) -> RoundSubmissionRequest:
    return RoundSubmissionRequest(
        duration_sec=req.duration_sec,
        total_questions=req.total_questions,
        correct_answers=req.correct_answers,
        items=tuple(
            RoundItem(is_correct=i.is_correct, response_time_ms=i.response_time_ms, score=i.score)
            for i in req.items
        ),
        start_time=req.start_time,
        end_time=req.end_time,
        client_calculated_score=req.client_calculated_score,
        round_id=req.round_id,
    )


def _utc_naive(value: str) -> datetime:
    return parse_timestamp(value).astimezone(timezone.utc).replace(tzinfo=None)


def _persist_round(
    db: Session,
    round_id: str,
    user_id: str,
    req: SubmitRoundRequest,
    metrics: RoundMetrics,
    flagged: bool,
) -> None:
    # Round and items go in one transaction
    db.add(Round(
        id=round_id,
        user_id=user_id,
        duration_sec=req.duration_sec,
        total_questions=req.total_questions,
        correct_answers=req.correct_answers,
        score=metrics.total_score,
        accuracy=metrics.accuracy,
        speed=metrics.speed,
        normalized_speed=metrics.normalized_speed,
        grade=metrics.grade,
        flagged=flagged,
        start_time=_utc_naive(req.start_time),
        end_time=_utc_naive(req.end_time),
    ))
    db.flush()
    db.add_all([
        RoundItemRecord(
            round_id=round_id,
            question_index=index,
            is_correct=item.is_correct,
            response_time_ms=item.response_time_ms,
            score=item.score,
        )
        for index, item in enumerate(req.items)
    ])
    db.commit()


def _update_rankings(db: Session, user_id: str, duration_sec: int, metrics: RoundMetrics, stats: PercentileStats) -> RankResult:
    store = LeaderboardStore(db)
    result = LeaderboardResult(
        score=metrics.total_score,
        accuracy=metrics.accuracy,
        speed=metrics.speed,
        grade=metrics.grade,
        percentile=stats.percentile,
        stanine=stats.stanine,
    )
    scope, subject = settings.leaderboard_scope, settings.leaderboard_subject
    try:
        for period in settings.leaderboard_periods:
            key = LeaderboardKey(user_id=user_id, period=period, duration_sec=duration_sec, scope=scope, subject=subject)
            outcome = update_leaderboard(
                store,
                key,
                result,
                attempts=settings.leaderboard_retry_attempts,
                backoff_seconds=settings.leaderboard_retry_backoff_seconds,
            )
            if not outcome.success:
                logger.error("Leaderboard update failed for %s: %s", key, outcome.error)
        return store.get_user_rank(user_id, _primary_period(), duration_sec, scope, subject)
    except Exception:
        # The round is already committed at this point
        logger.exception("Leaderboard update crashed for user %s", user_id)
        return RankResult(success=False, error="leaderboard unavailable")


def process_submission(req: SubmitRoundRequest, user: User, db: Session) -> JSONResponse:
    gate = IdempotencyGate(_claim_store(db))
    claim = gate.claim(req.round_id, user.username)
    if not claim.acquired:
        if claim.foreign:
            return error_response(409, "Round id already used", [
                {"code": "ROUND_ID_TAKEN", "message": "This round id belongs to another submission; start a new round."}
            ])
        if claim.cached_response is not None:
            cached: Dict[str, Any] = dict(claim.cached_response)
            cached["message"] = "Round already submitted"
            return JSONResponse(content=cached)
        return error_response(409, "Round submission already in progress", [
            {"code": "ROUND_IN_PROGRESS", "message": "This round is still being processed; retry shortly."}
        ])

    try:
        return _score_claimed_round(req, user, db, gate)
    except Exception:
        gate.release(req.round_id, user.username)
        raise


def _score_claimed_round(req: SubmitRoundRequest, user: User, db: Session, gate: IdempotencyGate) -> JSONResponse:
    validation = validate_round_submission(
        _to_domain(req),
        pattern_policy=SuspiciousPatternPolicy(settings.suspicious_pattern_policy),
        score_tolerance=settings.score_tolerance,
        duration_tolerance_sec=settings.duration_tolerance_sec,
    )
    if not validation.is_valid:
        gate.release(req.round_id, user.username)
        return error_response(
            400,
            f"Round validation failed. {get_validation_error_message(validation.errors)}",
            [e.to_dict() for e in validation.errors],
        )

    # Only the server's own recomputation is used from here on
    metrics = validation.server_metrics
    flagged = bool(validation.flags)
    if flagged:
        logger.warning(
            "Round %s by %s flagged for review: %s",
            req.round_id or "<no id>",
            user.username,
            "; ".join(f.message for f in validation.flags),
        )

    period = _primary_period()
    ranking = PercentileCalculator(
        SqlRankingStore(db, scope=settings.leaderboard_scope, subject=settings.leaderboard_subject)
    )
    stats = ranking.calculate_percentile_stats(metrics.total_score, period, req.duration_sec)

    round_id = req.round_id or str(uuid.uuid4())
    try:
        _persist_round(db, round_id, user.username, req, metrics, flagged)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to save round %s", round_id)
        gate.release(req.round_id, user.username)
        return error_response(500, "Failed to save round data", [
            {"code": "DB_ERROR", "message": "Database operation failed"}
        ])

    rank = _update_rankings(db, user.username, req.duration_sec, metrics, stats)

    response = SubmitRoundResponse(
        round_id=round_id,
        metrics=MetricsOut(
            accuracy=metrics.accuracy,
            speed=metrics.speed,
            normalized_speed=metrics.normalized_speed,
            total_score=metrics.total_score,
            max_possible_score=metrics.max_possible_score,
            grade=metrics.grade,
            percentile=stats.percentile,
            stanine=stats.stanine,
        ),
        percentile_stats=PercentileStatsOut(
            percentile=stats.percentile,
            stanine=stats.stanine,
            total_players=stats.total_players,
        ),
        leaderboard=LeaderboardOut(
            rank=rank.rank if rank.success else 0,
            total_players=rank.total_players if rank.success else 0,
            period=period,
        ),
        message="Round submitted successfully",
    )
    payload = response.model_dump(by_alias=True, exclude_none=True)

    try:
        gate.complete(req.round_id, payload)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not store idempotent response for round %s", round_id)

    logger.info("Round %s scored %s (%s) for %s", round_id, metrics.total_score, metrics.grade, user.username)
    return JSONResponse(content=payload)


@router.post("/rounds/submit")
def submit_round(req: SubmitRoundRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return process_submission(req, user, db)


@router.post("/api/submitRound", include_in_schema=False)
def submit_round_legacy(req: SubmitRoundRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return process_submission(req, user, db)
