import threading
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from vocab_sprint.db import Base
from vocab_sprint.game.leaderboard import (
    LeaderboardKey,
    LeaderboardResult,
    LeaderboardStore,
    is_better,
    update_leaderboard,
)
from vocab_sprint.models import LeaderboardRow


KEY = LeaderboardKey(user_id="alice", period="all_time", duration_sec=60)


def result(score, accuracy=80.0, speed=2000):
    return LeaderboardResult(score=score, accuracy=accuracy, speed=speed, grade="C")


@pytest.mark.parametrize(
    "new, old, better",
    [
        (result(900), result(800), True),
        (result(800), result(900), False),
        (result(800, accuracy=90.0), result(800, accuracy=80.0), True),
        (result(800, speed=1500), result(800, speed=2000), True),
        (result(800, speed=2500), result(800, speed=2000), False),
        (result(800), result(800), False),
    ],
)
def test_is_better(new, old, better):
    assert is_better(new, old) is better


def test_upsert_keeps_only_the_best_result(db):
    store = LeaderboardStore(db)
    assert store.upsert_best(KEY, result(800))
    assert not store.upsert_best(KEY, result(700))
    assert not store.upsert_best(KEY, result(800))
    assert store.get_entry(KEY).score == 800

    assert store.upsert_best(KEY, result(800, accuracy=85.0))
    assert store.upsert_best(KEY, result(800, accuracy=85.0, speed=1200))
    entry = store.get_entry(KEY)
    assert (entry.score, entry.accuracy, entry.speed) == (800, 85.0, 1200)
    assert db.query(LeaderboardRow).count() == 1


def test_row_from_a_previous_window_is_replaced(db):
    store = LeaderboardStore(db)
    key = LeaderboardKey(user_id="alice", period="daily", duration_sec=60)
    assert store.upsert_best(key, result(1200), now=datetime(2026, 1, 1, 12))
    # Next day a worse score still wins, the old row no longer counts
    assert store.upsert_best(key, result(400), now=datetime(2026, 1, 2, 9))
    db.expire_all()
    assert store.get_entry(key).score == 400


def test_keys_are_independent(db):
    store = LeaderboardStore(db)
    store.upsert_best(KEY, result(800))
    store.upsert_best(LeaderboardKey("alice", "all_time", 90), result(100))
    store.upsert_best(LeaderboardKey("alice", "all_time", 60, scope="class"), result(100))
    assert db.query(LeaderboardRow).count() == 3
    assert store.get_entry(KEY).score == 800


def test_rank_and_listing(db):
    store = LeaderboardStore(db)
    for user, score in (("a", 500), ("b", 700), ("c", 600)):
        store.upsert_best(LeaderboardKey(user, "all_time", 60), result(score))

    rank = store.get_user_rank("c", "all_time", 60)
    assert (rank.success, rank.rank, rank.total_players) == (True, 2, 3)

    unranked = store.get_user_rank("zed", "all_time", 60)
    assert (unranked.success, unranked.rank, unranked.total_players) == (True, 0, 3)

    top = store.top_entries("all_time", 60, limit=2)
    assert [(e["rank"], e["userId"], e["score"]) for e in top] == [(1, "b", 700), (2, "c", 600)]

    assert store.stats("all_time", 60) == {
        "totalPlayers": 3,
        "averageScore": 600,
        "topScore": 700,
        "medianScore": 600,
    }


def test_stats_for_empty_board(db):
    assert LeaderboardStore(db).stats("daily", 60)["totalPlayers"] == 0


class FlakyStore:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def upsert_best(self, key, result, now=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise OperationalError("upsert", {}, Exception("database is locked"))
        return True


def test_update_retries_transient_errors():
    store = FlakyStore(failures=2)
    outcome = update_leaderboard(store, KEY, result(800), attempts=3, backoff_seconds=0)
    assert outcome.success and outcome.updated
    assert store.calls == 3


def test_update_gives_up_after_attempts():
    store = FlakyStore(failures=5)
    outcome = update_leaderboard(store, KEY, result(800), attempts=3, backoff_seconds=0)
    assert not outcome.success
    assert "database is locked" in outcome.error
    assert store.calls == 3


def test_concurrent_upserts_keep_the_best_result(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'leaderboard.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    make_session = sessionmaker(bind=engine)
    submitted = [result(700), result(910, speed=2500), result(910, speed=1800), result(850, accuracy=95.0)]
    barrier = threading.Barrier(len(submitted))

    def submit(res):
        session = make_session()
        try:
            barrier.wait()
            LeaderboardStore(session).upsert_best(KEY, res)
        finally:
            session.close()

    threads = [threading.Thread(target=submit, args=(res,)) for res in submitted]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    session = make_session()
    try:
        entry = LeaderboardStore(session).get_entry(KEY)
        assert (entry.score, entry.speed) == (910, 1800)
        assert session.query(LeaderboardRow).count() == 1
    finally:
        session.close()
        engine.dispose()
