from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	# "development" exposes internal error details in 500 responses
	app_env: str = Field(default="production", validation_alias="APP_ENV")
	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# Seed user
	seed_username: str | None = Field(default=None, validation_alias="SEED_USERNAME")
	seed_password_plain: str | None = Field(default=None, validation_alias="SEED_PASSWORD")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	# Anti-cheat: "reject" blocks suspicious rounds, "flag" stores them marked for review
	suspicious_pattern_policy: Literal["reject", "flag"] = Field(default="reject", validation_alias="SUSPICIOUS_PATTERN_POLICY")
	score_tolerance: float = Field(default=10, validation_alias="SCORE_TOLERANCE")
	duration_tolerance_sec: float = Field(default=5, validation_alias="DURATION_TOLERANCE_SEC")

	# Leaderboard; the first period is the one reported back in the submit response
	leaderboard_periods: List[Literal["daily", "weekly", "monthly", "all_time"]] = Field(
		default=["daily", "weekly", "monthly", "all_time"], validation_alias="LEADERBOARD_PERIODS"
	)
	leaderboard_scope: str = Field(default="global", validation_alias="LEADERBOARD_SCOPE")
	leaderboard_subject: str = Field(default="vocabulary", validation_alias="LEADERBOARD_SUBJECT")
	leaderboard_retry_attempts: int = Field(default=3, validation_alias="LEADERBOARD_RETRY_ATTEMPTS")
	leaderboard_retry_backoff_seconds: float = Field(default=0.05, validation_alias="LEADERBOARD_RETRY_BACKOFF_SECONDS")

	# "database" (shared claim table) or "memory" (single instance only)
	idempotency_backend: Literal["database", "memory"] = Field(default="database", validation_alias="IDEMPOTENCY_BACKEND")

	# Periodic purge of stale claims/leaderboard rows; 0 disables the background loop
	cleanup_interval_hours: float = Field(default=24, validation_alias="CLEANUP_INTERVAL_HOURS")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

	@property
	def is_development(self) -> bool:
		return self.app_env.lower() in ("development", "dev", "local")

settings = Settings()
