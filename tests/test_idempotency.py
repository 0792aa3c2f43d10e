import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from vocab_sprint.db import Base
from vocab_sprint.game.idempotency import IdempotencyGate, InMemoryClaimStore, SqlClaimStore
from vocab_sprint.models import RoundClaim


@pytest.fixture(params=["memory", "sql"])
def gate(request, db):
    store = InMemoryClaimStore() if request.param == "memory" else SqlClaimStore(db)
    return IdempotencyGate(store)


def test_first_claim_wins(gate):
    assert gate.claim("round-1").acquired
    second = gate.claim("round-1")
    assert not second.acquired
    assert second.in_progress


def test_completed_claim_returns_stored_response(gate):
    gate.claim("round-1")
    gate.complete("round-1", {"roundId": "round-1", "metrics": {"totalScore": 883}})
    again = gate.claim("round-1")
    assert not again.acquired
    assert not again.in_progress
    assert again.cached_response["metrics"]["totalScore"] == 883


def test_released_claim_can_be_retaken(gate):
    gate.claim("round-1")
    gate.release("round-1")
    assert gate.claim("round-1").acquired


def test_release_does_not_forget_completed_rounds(gate):
    gate.claim("round-1")
    gate.complete("round-1", {"ok": True})
    gate.release("round-1")
    assert gate.claim("round-1").cached_response == {"ok": True}


def test_missing_round_id_is_never_deduplicated(gate):
    assert gate.claim(None).acquired
    assert gate.claim(None).acquired
    gate.complete(None, {"ok": True})
    gate.release(None)


def test_sql_claims_are_shared_between_sessions(db):
    from vocab_sprint.db import SessionLocal

    assert IdempotencyGate(SqlClaimStore(db)).claim("round-9").acquired
    other = SessionLocal()
    try:
        assert not IdempotencyGate(SqlClaimStore(other)).claim("round-9").acquired
    finally:
        other.close()
    assert db.get(RoundClaim, "round-9").status == "pending"


def test_round_id_of_another_player_is_refused(gate):
    gate.claim("round-1", "alice")
    gate.complete("round-1", {"metrics": {"totalScore": 883}})

    foreign = gate.claim("round-1", "bob")
    assert not foreign.acquired
    assert foreign.foreign
    assert not foreign.in_progress
    assert foreign.cached_response is None

    assert gate.claim("round-1", "alice").cached_response == {"metrics": {"totalScore": 883}}


def test_release_by_another_player_keeps_the_claim(gate):
    gate.claim("round-1", "alice")
    gate.release("round-1", "bob")
    assert gate.claim("round-1", "alice").in_progress


def test_concurrent_claims_have_one_winner(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'claims.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    make_session = sessionmaker(bind=engine)
    barrier = threading.Barrier(4)
    results = []

    def submit():
        session = make_session()
        try:
            barrier.wait()
            results.append(IdempotencyGate(SqlClaimStore(session)).claim("round-race", "alice").acquired)
        finally:
            session.close()

    threads = [threading.Thread(target=submit) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    engine.dispose()

    assert sorted(results) == [False, False, False, True]
