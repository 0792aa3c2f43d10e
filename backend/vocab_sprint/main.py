import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import Base, SessionLocal, engine
from .cleanup import purge_stale_rows
from .errors import error_response
from .settings import settings
from .routers import health
from .routers import auth
from .routers import rounds
from .routers import leaderboard

logging.basicConfig(
	level=settings.log_level.upper(),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("vocab_sprint")

app = FastAPI(title="Vocab Sprint API")
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(rounds.router)
app.include_router(leaderboard.router)


@app.get("/info")
def root():
	return {
		"status": "ok",
		"environment": settings.app_env,
		"leaderboardPeriods": list(settings.leaderboard_periods),
		"suspiciousPatternPolicy": settings.suspicious_pattern_policy,
	}


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
	return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
	fields = [
		{"loc": ".".join(str(part) for part in err.get("loc", ())), "msg": err.get("msg", "")}
		for err in exc.errors()
	]
	return error_response(400, "Invalid request data", [
		{"code": "VALIDATION_ERROR", "message": "Request body or parameters are malformed", "details": {"fields": fields}}
	])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
	logger.exception("Unhandled error on %s %s", request.method, request.url.path)
	error = {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred"}
	if settings.is_development:
		error["details"] = {"type": type(exc).__name__, "error": str(exc)}
	return error_response(500, "Internal server error", [error])


def _run_cleanup() -> int:
	db = SessionLocal()
	try:
		return purge_stale_rows(db)
	finally:
		db.close()


async def _cleanup_watcher(interval_seconds: float):
	while True:
		await asyncio.sleep(interval_seconds)
		try:
			removed = await asyncio.to_thread(_run_cleanup)
			logger.info("Periodic cleanup removed %d rows", removed)
		except Exception:
			logger.exception("Periodic cleanup failed")


@app.on_event("startup")
async def startup_event():
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
	db = SessionLocal()
	try:
		auth.ensure_seed_player(db)
	finally:
		db.close()
	try:
		removed = _run_cleanup()
		logger.info("Startup cleanup removed %d rows", removed)
	except Exception:
		logger.exception("Startup cleanup failed")
	app.state.cleanup_task = None
	if settings.cleanup_interval_hours > 0:
		app.state.cleanup_task = asyncio.create_task(_cleanup_watcher(settings.cleanup_interval_hours * 60 * 60))


@app.on_event("shutdown")
async def shutdown_event():
	task = getattr(app.state, "cleanup_task", None)
	if task is not None:
		task.cancel()
		try:
			await task
		except asyncio.CancelledError:
			pass
