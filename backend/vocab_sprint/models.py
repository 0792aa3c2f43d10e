from __future__ import annotations
from datetime import datetime
from sqlalchemy import Boolean, Column, String, DateTime, Float, ForeignKey, Integer, Text, UniqueConstraint, Index
from .db import Base


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	email = Column(String(256), nullable=True)
	org_id = Column(String(64), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# JWT "jti"; deleting the row revokes the token
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), nullable=False, index=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Round(Base):
	__tablename__ = "rounds"
	id = Column(String(64), primary_key=True)
	user_id = Column(String(128), nullable=False, index=True)
	duration_sec = Column(Integer, nullable=False)
	total_questions = Column(Integer, nullable=False)
	correct_answers = Column(Integer, nullable=False)
	# Server-computed metrics only; client values are never stored here
	score = Column(Integer, nullable=False)
	accuracy = Column(Float, nullable=False)
	speed = Column(Integer, nullable=False)
	normalized_speed = Column(Float, nullable=False)
	grade = Column(String(2), nullable=False)
	flagged = Column(Boolean, default=False, nullable=False)
	start_time = Column(DateTime, nullable=False)
	end_time = Column(DateTime, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RoundItemRecord(Base):
	__tablename__ = "round_items"
	id = Column(Integer, primary_key=True, autoincrement=True)
	round_id = Column(String(64), ForeignKey("rounds.id"), nullable=False, index=True)
	question_index = Column(Integer, nullable=False)
	is_correct = Column(Boolean, nullable=False)
	response_time_ms = Column(Integer, nullable=False)
	score = Column(Float, default=0, nullable=False)


class LeaderboardRow(Base):
	__tablename__ = "leaderboards"
	__table_args__ = (
		UniqueConstraint("user_id", "period", "duration_sec", "scope", "subject", name="uq_leaderboard_identity"),
		Index("ix_leaderboard_ranking", "period", "duration_sec", "scope", "subject", "score"),
	)
	id = Column(Integer, primary_key=True, autoincrement=True)
	user_id = Column(String(128), nullable=False)
	period = Column(String(20), nullable=False)  # daily, weekly, monthly, all_time
	duration_sec = Column(Integer, nullable=False)
	scope = Column(String(20), nullable=False)  # global, school, class, friends
	subject = Column(String(20), nullable=False)  # vocabulary, grammar, ...
	score = Column(Integer, nullable=False)
	accuracy = Column(Float, nullable=False)
	speed = Column(Integer, nullable=False)
	grade = Column(String(2), nullable=False)
	percentile = Column(Integer, default=0, nullable=False)
	stanine = Column(Integer, default=1, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RoundClaim(Base):
	__tablename__ = "round_claims"
	# Inserting this row is the atomic "claim"; the primary key rejects a second one
	round_id = Column(String(64), primary_key=True)
	# Player that claimed the id; replays by anyone else are refused
	user_id = Column(String(128), nullable=True)
	status = Column(String(16), default="pending", nullable=False)  # pending, completed
	response_json = Column(Text, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
