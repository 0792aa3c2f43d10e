from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, delete
from sqlalchemy.orm import Session

from .game.idempotency import COMPLETED, PENDING
from .game.percentile import LeaderboardPeriod, period_window_start
from .models import LeaderboardRow, RoundClaim


COMPLETED_CLAIM_TTL = timedelta(days=7)
PENDING_CLAIM_TTL = timedelta(days=1)


def purge_stale_rows(db: Session, now: Optional[datetime] = None) -> int:
	now = now or datetime.utcnow()
	removed = 0

	# Completed claims only matter for client retries; a week is plenty
	res = db.execute(delete(RoundClaim).where(and_(
		RoundClaim.status == COMPLETED,
		RoundClaim.updated_at < now - COMPLETED_CLAIM_TTL,
	)))
	removed += res.rowcount or 0

	# Pending claims this old belong to a crashed request
	res = db.execute(delete(RoundClaim).where(and_(
		RoundClaim.status == PENDING,
		RoundClaim.created_at < now - PENDING_CLAIM_TTL,
	)))
	removed += res.rowcount or 0

	# Leaderboard rows that fell out of their period window; all_time rows are kept
	for period in (LeaderboardPeriod.DAILY, LeaderboardPeriod.WEEKLY, LeaderboardPeriod.MONTHLY):
		since = period_window_start(period, now)
		res = db.execute(delete(LeaderboardRow).where(and_(
			LeaderboardRow.period == period.value,
			LeaderboardRow.updated_at < since,
		)))
		removed += res.rowcount or 0

	db.commit()
	return removed
