from vocab_sprint.models import AuthSession, AuthUser
from vocab_sprint.routers.auth import ensure_seed_player, open_session
from vocab_sprint.settings import settings

from test_submit_round_api import payload


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_register_login_and_profile(anon_client):
    res = anon_client.post("/auth/register", json={"username": "dana", "password": "s3cret-pass"})
    assert res.status_code == 201

    res = anon_client.post("/auth/token", data={"username": "dana", "password": "s3cret-pass"})
    assert res.status_code == 200
    token = res.json()["access_token"]

    me = anon_client.get("/auth/me", headers=bearer(token))
    assert me.json() == {"username": "dana", "rounds_played": 0, "best_score": None}


def test_profile_counts_submitted_rounds(anon_client, db):
    token = open_session(db, "erin").access_token
    anon_client.post("/rounds/submit", json=payload(), headers=bearer(token))
    profile = anon_client.get("/auth/me", headers=bearer(token)).json()
    assert profile["rounds_played"] == 1
    assert profile["best_score"] == 883


def test_duplicate_registration_conflicts(anon_client):
    anon_client.post("/auth/register", json={"username": "dana", "password": "pw"})
    res = anon_client.post("/auth/register", json={"username": "dana", "password": "pw"})
    assert res.status_code == 409
    assert res.json()["errors"][0]["code"] == "CONFLICT"


def test_short_username_is_rejected(anon_client):
    res = anon_client.post("/auth/register", json={"username": "ab", "password": "pw"})
    assert res.status_code == 400
    assert res.json()["errors"][0]["code"] == "VALIDATION_ERROR"


def test_wrong_password_is_rejected(anon_client):
    anon_client.post("/auth/register", json={"username": "dana", "password": "right"})
    res = anon_client.post("/auth/token", data={"username": "dana", "password": "wrong"})
    assert res.status_code == 401
    assert res.json()["success"] is False


def test_logout_revokes_token(anon_client, db):
    token = open_session(db, "erin").access_token
    assert anon_client.get("/auth/me", headers=bearer(token)).status_code == 200

    assert anon_client.post("/auth/logout", headers=bearer(token)).status_code == 204
    assert db.query(AuthSession).filter_by(username="erin").count() == 0
    assert anon_client.get("/auth/me", headers=bearer(token)).status_code == 401


def test_garbage_token(anon_client):
    res = anon_client.get("/auth/me", headers=bearer("not-a-jwt"))
    assert res.status_code == 401
    assert res.json()["errors"][0]["code"] == "AUTH_REQUIRED"


def test_seed_player_is_created_once(db, monkeypatch):
    monkeypatch.setattr(settings, "seed_username", "coach")
    monkeypatch.setattr(settings, "seed_password_plain", "classroom")
    assert ensure_seed_player(db)
    assert not ensure_seed_player(db)
    assert db.get(AuthUser, "coach") is not None


def test_health_and_info(anon_client):
    assert anon_client.get("/health").json() == {"status": "ok", "database": "ok"}
    info = anon_client.get("/info").json()
    assert info["status"] == "ok"
    assert info["leaderboardPeriods"][0] == "daily"
