"""Leaderboard rows under the best-result policy.

One row per (user, period, duration, scope, subject). A new result replaces
the row only when it is strictly better by (score desc, accuracy desc,
speed asc). The comparison runs inside the upsert's ``WHERE`` clause, so two
near-simultaneous submissions cannot leave a worse result behind.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import LeaderboardRow
from .percentile import period_window_start


logger = logging.getLogger(__name__)

_IDENTITY_COLUMNS = ["user_id", "period", "duration_sec", "scope", "subject"]
_RESULT_COLUMNS = ["score", "accuracy", "speed", "grade", "percentile", "stanine", "updated_at"]


@dataclass(frozen=True)
class LeaderboardKey:
    user_id: str
    period: str
    duration_sec: int
    scope: str = "global"
    subject: str = "vocabulary"


@dataclass(frozen=True)
class LeaderboardResult:
    score: int
    accuracy: float
    speed: int
    grade: str
    percentile: int = 0
    stanine: int = 1


@dataclass(frozen=True)
class UpsertOutcome:
    success: bool
    updated: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class RankResult:
    success: bool
    rank: int = 0
    total_players: int = 0
    error: Optional[str] = None


def is_better(new: LeaderboardResult, old: LeaderboardResult) -> bool:
    """Strict lexicographic improvement; a full tie is not better."""
    return (new.score, new.accuracy, -new.speed) > (old.score, old.accuracy, -old.speed)


def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Leaderboard upsert is not supported on {name!r}")


class LeaderboardStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _key_filters(self, period: str, duration_sec: int, scope: str, subject: str, now: Optional[datetime] = None):
        conditions = [
            LeaderboardRow.period == period,
            LeaderboardRow.duration_sec == duration_sec,
            LeaderboardRow.scope == scope,
            LeaderboardRow.subject == subject,
        ]
        since = period_window_start(period, now)
        if since is not None:
            conditions.append(LeaderboardRow.updated_at >= since)
        return conditions

    def upsert_best(self, key: LeaderboardKey, result: LeaderboardResult, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        table = LeaderboardRow.__table__
        insert = _dialect_insert(self.db)
        stmt = insert(table).values(
            user_id=key.user_id,
            period=key.period,
            duration_sec=key.duration_sec,
            scope=key.scope,
            subject=key.subject,
            score=result.score,
            accuracy=result.accuracy,
            speed=result.speed,
            grade=result.grade,
            percentile=result.percentile,
            stanine=result.stanine,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        better = or_(
            excluded.score > table.c.score,
            and_(excluded.score == table.c.score, excluded.accuracy > table.c.accuracy),
            and_(
                excluded.score == table.c.score,
                excluded.accuracy == table.c.accuracy,
                excluded.speed < table.c.speed,
            ),
        )
        window_start = period_window_start(key.period, now)
        if window_start is not None:
            # A row left over from a previous window no longer counts as the best
            better = or_(better, table.c.updated_at < window_start)
        stmt = stmt.on_conflict_do_update(
            index_elements=_IDENTITY_COLUMNS,
            set_={name: excluded[name] for name in _RESULT_COLUMNS},
            where=better,
        )
        try:
            res = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return (res.rowcount or 0) > 0

    def get_entry(self, key: LeaderboardKey) -> Optional[LeaderboardRow]:
        stmt = select(LeaderboardRow).where(
            LeaderboardRow.user_id == key.user_id,
            LeaderboardRow.period == key.period,
            LeaderboardRow.duration_sec == key.duration_sec,
            LeaderboardRow.scope == key.scope,
            LeaderboardRow.subject == key.subject,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_user_rank(
        self,
        user_id: str,
        period: str,
        duration_sec: int,
        scope: str = "global",
        subject: str = "vocabulary",
        now: Optional[datetime] = None,
    ) -> RankResult:
        conditions = self._key_filters(period, duration_sec, scope, subject, now)
        try:
            total = self.db.execute(select(func.count(LeaderboardRow.id)).where(*conditions)).scalar() or 0
            user_score = self.db.execute(
                select(LeaderboardRow.score).where(LeaderboardRow.user_id == user_id, *conditions)
            ).scalar()
            if user_score is None:
                # Unranked
                return RankResult(success=True, rank=0, total_players=total)
            higher = self.db.execute(
                select(func.count(LeaderboardRow.id)).where(LeaderboardRow.score > user_score, *conditions)
            ).scalar() or 0
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Rank lookup failed for %s/%s/%s: %s", user_id, period, duration_sec, exc)
            return RankResult(success=False, error="Failed to calculate rank")
        return RankResult(success=True, rank=higher + 1, total_players=total)

    def top_entries(
        self,
        period: str,
        duration_sec: int,
        scope: str = "global",
        subject: str = "vocabulary",
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        stmt = (
            select(LeaderboardRow)
            .where(*self._key_filters(period, duration_sec, scope, subject))
            .order_by(LeaderboardRow.score.desc(), LeaderboardRow.accuracy.desc(), LeaderboardRow.speed.asc())
            .limit(limit)
        )
        rows = self.db.execute(stmt).scalars().all()
        return [
            {
                "rank": index + 1,
                "userId": row.user_id,
                "score": row.score,
                "accuracy": row.accuracy,
                "speed": row.speed,
                "grade": row.grade,
                "percentile": row.percentile,
                "stanine": row.stanine,
            }
            for index, row in enumerate(rows)
        ]

    def stats(
        self,
        period: str,
        duration_sec: int,
        scope: str = "global",
        subject: str = "vocabulary",
    ) -> Dict[str, int]:
        stmt = select(LeaderboardRow.score).where(*self._key_filters(period, duration_sec, scope, subject))
        scores = sorted(self.db.execute(stmt).scalars().all())
        if not scores:
            return {"totalPlayers": 0, "averageScore": 0, "topScore": 0, "medianScore": 0}
        count = len(scores)
        middle = count // 2
        median = scores[middle] if count % 2 else (scores[middle - 1] + scores[middle]) / 2
        return {
            "totalPlayers": count,
            "averageScore": round(sum(scores) / count),
            "topScore": scores[-1],
            "medianScore": round(median),
        }


def update_leaderboard(
    store: LeaderboardStore,
    key: LeaderboardKey,
    result: LeaderboardResult,
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.05,
    now: Optional[datetime] = None,
) -> UpsertOutcome:
    attempts = max(attempts, 1)
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            updated = store.upsert_best(key, result, now=now)
            return UpsertOutcome(success=True, updated=updated)
        except SQLAlchemyError as exc:
            last_error = exc
            logger.warning("Leaderboard upsert attempt %d/%d failed for %s: %s", attempt, attempts, key, exc)
            if attempt < attempts:
                time.sleep(backoff_seconds * attempt)
    logger.error("Leaderboard upsert gave up for %s", key)
    return UpsertOutcome(success=False, updated=False, error=str(last_error) if last_error else "unknown error")
