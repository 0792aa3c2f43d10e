from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..game.leaderboard import LeaderboardStore
from ..game.round_validation import ALLOWED_DURATIONS
from ..game.percentile import (
    LeaderboardPeriod,
    PercentileCalculator,
    SqlRankingStore,
    percentile_label,
    stanine_label,
)
from ..settings import settings
from .auth import User, get_current_user


router = APIRouter(prefix="/leaderboard", tags=["leaderboard"])


def _check_duration(duration_sec: int) -> int:
    if duration_sec not in ALLOWED_DURATIONS:
        raise HTTPException(status_code=400, detail=f"durationSec must be one of {list(ALLOWED_DURATIONS)}")
    return duration_sec


@router.get("/top")
def top(
    period: LeaderboardPeriod = Query(LeaderboardPeriod.DAILY),
    duration_sec: int = Query(60, alias="durationSec"),
    scope: Optional[str] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _check_duration(duration_sec)
    entries = LeaderboardStore(db).top_entries(
        period.value,
        duration_sec,
        scope or settings.leaderboard_scope,
        settings.leaderboard_subject,
        limit=limit,
    )
    return {"period": period.value, "durationSec": duration_sec, "entries": entries}


@router.get("/rank")
def my_rank(
    period: LeaderboardPeriod = Query(LeaderboardPeriod.DAILY),
    duration_sec: int = Query(60, alias="durationSec"),
    scope: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _check_duration(duration_sec)
    result = LeaderboardStore(db).get_user_rank(
        user.username,
        period.value,
        duration_sec,
        scope or settings.leaderboard_scope,
        settings.leaderboard_subject,
    )
    if not result.success:
        raise HTTPException(status_code=503, detail="Leaderboard is temporarily unavailable")
    return {"rank": result.rank, "totalPlayers": result.total_players, "period": period.value}


@router.get("/stats")
def stats(
    period: LeaderboardPeriod = Query(LeaderboardPeriod.DAILY),
    duration_sec: int = Query(60, alias="durationSec"),
    scope: Optional[str] = Query(None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _check_duration(duration_sec)
    return LeaderboardStore(db).stats(
        period.value,
        duration_sec,
        scope or settings.leaderboard_scope,
        settings.leaderboard_subject,
    )


@router.get("/percentile")
def percentile(
    score: int = Query(..., ge=0),
    period: LeaderboardPeriod = Query(LeaderboardPeriod.DAILY),
    duration_sec: int = Query(60, alias="durationSec"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _check_duration(duration_sec)
    calculator = PercentileCalculator(
        SqlRankingStore(db, scope=settings.leaderboard_scope, subject=settings.leaderboard_subject)
    )
    result = calculator.calculate_percentile_stats(score, period, duration_sec)
    return {
        **result.to_dict(),
        "percentileLabel": percentile_label(result.percentile),
        "stanineLabel": stanine_label(result.stanine),
    }


@router.get("/me")
def my_percentile(
    period: LeaderboardPeriod = Query(LeaderboardPeriod.DAILY),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    calculator = PercentileCalculator(
        SqlRankingStore(db, scope=settings.leaderboard_scope, subject=settings.leaderboard_subject)
    )
    result = calculator.get_user_percentile_stats(user.username, period)
    if result is None:
        return {"userId": user.username, "ranked": False}
    return {
        "userId": result.user_id,
        "ranked": True,
        "score": result.score,
        "percentile": result.percentile,
        "stanine": result.stanine,
        "rankPosition": result.rank_position,
        "totalPlayers": result.total_players,
    }
