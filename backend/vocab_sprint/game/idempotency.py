"""At-most-once scoring per round id.

A submission first *claims* its round id with an atomic insert-if-absent. The
winner scores and persists the round and then stores the response on the
claim. A later submission by the same player gets that stored response back.
A different player reusing the id is refused and never sees the stored
response. Rounds without an id are never deduplicated.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import RoundClaim


logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"


@dataclass(frozen=True)
class ClaimResult:
    acquired: bool
    # Response stored by the winning submission, once it has completed
    cached_response: Optional[Dict[str, Any]] = None
    # The id is held by another player
    foreign: bool = False

    @property
    def in_progress(self) -> bool:
        return not self.acquired and not self.foreign and self.cached_response is None


class ClaimStore:
    def try_claim(self, round_id: str, owner: Optional[str] = None) -> ClaimResult:
        raise NotImplementedError

    def complete(self, round_id: str, response: Dict[str, Any]) -> None:
        raise NotImplementedError

    def release(self, round_id: str, owner: Optional[str] = None) -> None:
        raise NotImplementedError


def _same_owner(stored: Optional[str], owner: Optional[str]) -> bool:
    return stored == owner


class InMemoryClaimStore(ClaimStore):
    """Process-local claims. Only correct for a single-instance deployment."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # round_id -> (owner, stored response or None while pending)
        self._claims: Dict[str, Tuple[Optional[str], Optional[Dict[str, Any]]]] = {}

    def try_claim(self, round_id, owner=None):
        with self._lock:
            if round_id in self._claims:
                stored_owner, response = self._claims[round_id]
                if not _same_owner(stored_owner, owner):
                    return ClaimResult(acquired=False, foreign=True)
                return ClaimResult(acquired=False, cached_response=response)
            self._claims[round_id] = (owner, None)
            return ClaimResult(acquired=True)

    def complete(self, round_id, response):
        with self._lock:
            owner = self._claims.get(round_id, (None, None))[0]
            self._claims[round_id] = (owner, response)

    def release(self, round_id, owner=None):
        with self._lock:
            entry = self._claims.get(round_id)
            if entry is not None and entry[1] is None and _same_owner(entry[0], owner):
                del self._claims[round_id]


class SqlClaimStore(ClaimStore):
    def __init__(self, db: Session) -> None:
        self.db = db

    def try_claim(self, round_id, owner=None):
        try:
            # A duplicate id fails on the primary key
            self.db.execute(insert(RoundClaim).values(round_id=round_id, user_id=owner, status=PENDING))
            self.db.commit()
            return ClaimResult(acquired=True)
        except IntegrityError:
            self.db.rollback()
        existing = self.db.get(RoundClaim, round_id)
        if existing is None:
            return ClaimResult(acquired=False)
        if not _same_owner(existing.user_id, owner):
            return ClaimResult(acquired=False, foreign=True)
        if existing.status != COMPLETED or not existing.response_json:
            return ClaimResult(acquired=False)
        return ClaimResult(acquired=False, cached_response=json.loads(existing.response_json))

    def complete(self, round_id, response):
        row = self.db.get(RoundClaim, round_id)
        if row is None:
            row = RoundClaim(round_id=round_id)
        row.status = COMPLETED
        row.response_json = json.dumps(response)
        row.updated_at = datetime.utcnow()
        self.db.add(row)
        self.db.commit()

    def release(self, round_id, owner=None):
        row = self.db.get(RoundClaim, round_id)
        if row is not None and row.status == PENDING and _same_owner(row.user_id, owner):
            self.db.delete(row)
            self.db.commit()


class IdempotencyGate:
    def __init__(self, store: ClaimStore) -> None:
        self.store = store

    def claim(self, round_id: Optional[str], owner: Optional[str] = None) -> ClaimResult:
        if not round_id:
            return ClaimResult(acquired=True)
        result = self.store.try_claim(round_id, owner)
        if result.foreign:
            logger.warning("Round id %s reused by %s; it belongs to another player", round_id, owner)
        elif not result.acquired:
            logger.info("Duplicate submission for round %s (in progress: %s)", round_id, result.in_progress)
        return result

    def complete(self, round_id: Optional[str], response: Dict[str, Any]) -> None:
        if round_id:
            self.store.complete(round_id, response)

    def release(self, round_id: Optional[str], owner: Optional[str] = None) -> None:
        # Lets a rejected or failed submission be corrected and resent under the same id
        if round_id:
            self.store.release(round_id, owner)
