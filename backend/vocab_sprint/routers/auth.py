from datetime import datetime, timedelta, timezone
from typing import Optional
import logging
import uuid

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..settings import settings
from ..db import get_db
from ..models import AuthUser, AuthSession, Round

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)
logging.getLogger('passlib').setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

# bcrypt ignores everything past 72 bytes
BCRYPT_MAX_BYTES = 72


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"
	expires_at: datetime


class User(BaseModel):
	username: str


class PlayerProfile(BaseModel):
	username: str
	rounds_played: int
	best_score: Optional[int] = None


class RegisterRequest(BaseModel):
	username: str = Field(min_length=3, max_length=128)
	password: str = Field(min_length=1)
	email: Optional[str] = None


def hash_password(password: str) -> str:
	raw = password.encode('utf-8')[:BCRYPT_MAX_BYTES]
	return pwd_context.hash(raw.decode('utf-8', errors='ignore'))


def verify_password(plain_password: str, hashed_password: str) -> bool:
	return pwd_context.verify(plain_password, hashed_password)


def ensure_seed_player(db: Session) -> bool:
	"""Create the SEED_USERNAME account on first start; existing rows are left alone."""
	username, password = settings.seed_username, settings.seed_password_plain
	if not username or not password or db.get(AuthUser, username) is not None:
		return False
	db.add(AuthUser(username=username, password_hash=hash_password(password)))
	db.commit()
	logger.info("Seeded player account %s", username)
	return True


def authenticate_player(db: Session, username: str, password: str) -> Optional[User]:
	row = db.get(AuthUser, username)
	if row is None or not verify_password(password, row.password_hash):
		return None
	return User(username=row.username)


def token_expiry(expires_delta: Optional[timedelta] = None) -> datetime:
	if expires_delta is None:
		minutes = settings.access_token_expire_minutes
		expires_delta = timedelta(minutes=minutes) if minutes > 0 else timedelta(days=30)
	return datetime.now(timezone.utc) + expires_delta


def open_session(db: Session, username: str, expires_delta: Optional[timedelta] = None) -> Token:
	"""Persist a session row and return a bearer token bound to it by ``jti``."""
	session_id = uuid.uuid4().hex
	db.add(AuthSession(session_id=session_id, username=username))
	db.commit()
	expires_at = token_expiry(expires_delta)
	claims = {"sub": username, "jti": session_id, "exp": expires_at}
	return Token(
		access_token=jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm),
		expires_at=expires_at,
	)


def _decode(token: str) -> dict:
	credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		raise credentials_exception
	if not payload.get("sub") or not payload.get("jti"):
		raise credentials_exception
	return payload


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	payload = _decode(token)
	username, jti = payload["sub"], payload["jti"]
	try:
		# Deleting the session row revokes the token before it expires
		row = db.get(AuthSession, jti)
		if row is None or row.username != username:
			raise HTTPException(status_code=401, detail="Session has been revoked")
		row.last_activity_at = datetime.utcnow()
		db.commit()
	except SQLAlchemyError:
		# Fail closed
		db.rollback()
		logger.exception("Session lookup failed for %s", username)
		raise HTTPException(status_code=401, detail="Could not validate credentials")
	return User(username=username)


@router.post("/token", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_player(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail="Incorrect username or password")
	try:
		return open_session(db, user.username)
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Could not persist session for %s", user.username)
		raise HTTPException(status_code=500, detail="Could not create session")


@router.post("/logout", status_code=204)
def logout(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
	payload = _decode(token)
	db.query(AuthSession).filter(AuthSession.session_id == payload["jti"]).delete()
	db.commit()


@router.get("/me", response_model=PlayerProfile)
def me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	rounds_played, best_score = db.execute(
		select(func.count(Round.id), func.max(Round.score)).where(Round.user_id == user.username)
	).one()
	return PlayerProfile(username=user.username, rounds_played=rounds_played, best_score=best_score)


@router.post("/register", status_code=201)
def register(req: RegisterRequest, db: Session = Depends(get_db)):
	username = req.username.strip()
	if len(username) < 3:
		raise HTTPException(status_code=400, detail="username must be 3-128 characters")
	if db.get(AuthUser, username) is not None:
		raise HTTPException(status_code=409, detail="username already exists")
	email = (req.email or "").strip() or None
	db.add(AuthUser(username=username, password_hash=hash_password(req.password), email=email))
	db.commit()
	logger.info("Registered player %s", username)
	return {"ok": True, "username": username}
