"""Percentile and stanine ranking against the leaderboard population.

The primary path asks the database for an aggregate in one query. If that
raises, comes back empty or comes back malformed, the calculator pulls the raw
scores and ranks locally. If that fails too it returns NEUTRAL_STATS, so
ranking never blocks a round submission.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, List, Optional, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import LeaderboardRow
from .round_metrics import calculate_percentile, calculate_stanine, round_half_up


logger = logging.getLogger(__name__)


class LeaderboardPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ALL_TIME = "all_time"


@dataclass(frozen=True)
class PercentileStats:
    percentile: int
    stanine: int
    total_players: int

    def to_dict(self) -> dict:
        return {"percentile": self.percentile, "stanine": self.stanine, "totalPlayers": self.total_players}


@dataclass(frozen=True)
class UserPercentileStats:
    user_id: str
    score: int
    percentile: int
    stanine: int
    rank_position: int
    total_players: int


NEUTRAL_STATS = PercentileStats(percentile=0, stanine=1, total_players=0)


def period_window_start(period: LeaderboardPeriod | str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Earliest ``updated_at`` that still counts for ``period``; None means unbounded."""
    now = now or datetime.utcnow()
    period = LeaderboardPeriod(period)
    if period is LeaderboardPeriod.DAILY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is LeaderboardPeriod.WEEKLY:
        return now - timedelta(days=7)
    if period is LeaderboardPeriod.MONTHLY:
        return now - timedelta(days=30)
    return None


class RankingStore:
    """Data source for ranking. Subclasses talk to the actual database."""

    def aggregate_percentile(self, score: float, period: str, duration_sec: Optional[int], since: Optional[datetime]) -> Any:
        raise NotImplementedError

    def scores(self, period: str, duration_sec: Optional[int], since: Optional[datetime]) -> List[float]:
        raise NotImplementedError

    def user_score(self, user_id: str, period: str) -> Optional[float]:
        raise NotImplementedError


class SqlRankingStore(RankingStore):
    def __init__(self, db: Session, scope: str = "global", subject: str = "vocabulary") -> None:
        self.db = db
        self.scope = scope
        self.subject = subject

    def _filters(self, period: str, duration_sec: Optional[int], since: Optional[datetime]):
        conditions = [
            LeaderboardRow.period == period,
            LeaderboardRow.scope == self.scope,
            LeaderboardRow.subject == self.subject,
        ]
        if duration_sec:
            conditions.append(LeaderboardRow.duration_sec == duration_sec)
        if since is not None:
            conditions.append(LeaderboardRow.updated_at >= since)
        return conditions

    def aggregate_percentile(self, score, period, duration_sec, since):
        below = func.sum(case((LeaderboardRow.score < score, 1), else_=0))
        stmt = select(func.count(LeaderboardRow.id), below).where(*self._filters(period, duration_sec, since))
        try:
            total, below_count = self.db.execute(stmt).one()
        except SQLAlchemyError:
            # Leave the session usable for the fallback query
            self.db.rollback()
            raise
        if not total:
            return None
        percentile = calculate_percentile_from_counts(int(below_count or 0), int(total))
        return {
            "percentile": percentile,
            "stanine": calculate_stanine(percentile),
            "total_players": int(total),
        }

    def scores(self, period, duration_sec, since):
        stmt = select(LeaderboardRow.score).where(*self._filters(period, duration_sec, since))
        return [s for s in self.db.execute(stmt).scalars().all() if s is not None]

    def user_score(self, user_id, period):
        stmt = (
            select(func.max(LeaderboardRow.score))
            .where(LeaderboardRow.user_id == user_id)
            .where(*self._filters(period, None, period_window_start(period)))
        )
        return self.db.execute(stmt).scalar()


def calculate_percentile_from_counts(below: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(round_half_up(below / total * 100))


def _coerce_stats(raw: Any) -> Optional[PercentileStats]:
    # Reject anything that would not pass the same bounds as RoundMetrics
    if raw is None:
        return None
    if isinstance(raw, (list, tuple)):
        if not raw:
            return None
        raw = raw[0]
    if not isinstance(raw, dict):
        return None
    percentile = raw.get("percentile")
    stanine = raw.get("stanine")
    total = raw.get("total_players", raw.get("totalPlayers"))
    for value in (percentile, stanine, total):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
    if not 0 <= percentile <= 100 or not 1 <= stanine <= 9 or total < 0:
        return None
    if int(total) != total or int(stanine) != stanine:
        return None
    return PercentileStats(percentile=int(round_half_up(percentile)), stanine=int(stanine), total_players=int(total))


class PercentileCalculator:
    def __init__(self, store: RankingStore) -> None:
        self.store = store

    def calculate_percentile_stats(
        self,
        score: float,
        period: LeaderboardPeriod | str = LeaderboardPeriod.DAILY,
        duration_sec: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> PercentileStats:
        period = LeaderboardPeriod(period).value
        since = period_window_start(period, now)
        try:
            raw = self.store.aggregate_percentile(score, period, duration_sec, since)
        except Exception:
            logger.warning("Percentile aggregate query failed; using fallback", exc_info=True)
            return self._fallback(score, period, duration_sec, since)

        stats = _coerce_stats(raw)
        if stats is None:
            if raw is not None:
                logger.warning("Percentile aggregate returned malformed data: %r", raw)
            return self._fallback(score, period, duration_sec, since)
        return stats

    def _fallback(self, score, period, duration_sec, since) -> PercentileStats:
        try:
            scores = self.store.scores(period, duration_sec, since)
        except Exception:
            logger.error("Fallback percentile calculation failed", exc_info=True)
            return NEUTRAL_STATS
        if not scores:
            return NEUTRAL_STATS
        percentile = calculate_percentile(score, scores)
        return PercentileStats(
            percentile=percentile,
            stanine=calculate_stanine(percentile),
            total_players=len(scores),
        )

    def calculate_batch_percentiles(
        self,
        scores: Sequence[float],
        period: LeaderboardPeriod | str = LeaderboardPeriod.DAILY,
        duration_sec: Optional[int] = None,
    ) -> List[PercentileStats]:
        return [self.calculate_percentile_stats(s, period, duration_sec) for s in scores]

    def get_user_percentile_stats(
        self,
        user_id: str,
        period: LeaderboardPeriod | str = LeaderboardPeriod.DAILY,
    ) -> Optional[UserPercentileStats]:
        period = LeaderboardPeriod(period).value
        try:
            score = self.store.user_score(user_id, period)
            if score is None:
                return None
            population = self.store.scores(period, None, period_window_start(period))
        except Exception:
            logger.error("User percentile stats failed for %s", user_id, exc_info=True)
            return None
        percentile = calculate_percentile(score, population)
        higher = sum(1 for s in population if s > score)
        return UserPercentileStats(
            user_id=user_id,
            score=int(score),
            percentile=percentile,
            stanine=calculate_stanine(percentile),
            rank_position=higher + 1,
            total_players=len(population),
        )


def percentile_label(percentile: float) -> str:
    # "top N%" bands shown next to a result
    for threshold, label in (
        (95, "Top 5%"),
        (90, "Top 10%"),
        (80, "Top 20%"),
        (70, "Top 30%"),
        (60, "Top 40%"),
        (50, "Top 50%"),
        (40, "Top 60%"),
        (30, "Top 70%"),
        (20, "Top 80%"),
        (10, "Top 90%"),
    ):
        if percentile >= threshold:
            return label
    return "Top 100%"


_STANINE_LABELS = {
    9: "Outstanding",
    8: "Excellent",
    7: "Good",
    6: "Above average",
    5: "Average",
    4: "Below average",
    3: "Needs work",
    2: "Weak",
    1: "Very weak",
}


def stanine_label(stanine: int) -> str:
    return _STANINE_LABELS.get(stanine, "Unrated")
