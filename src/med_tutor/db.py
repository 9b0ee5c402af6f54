"""Database initialization, profile serialization and the SQLite profile store."""
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from loguru import logger
from pydantic import TypeAdapter
from pydantic import ValidationError as SchemaValidationError

from med_tutor.config import DEFAULT_DB_PATH
from med_tutor.errors import PersistenceError
from med_tutor.models import LearnerProfile, ReviewResult

SCHEMA = """
CREATE TABLE IF NOT EXISTS profiles (
    learner_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS review_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    learner_id TEXT NOT NULL REFERENCES profiles(learner_id),
    card_id TEXT NOT NULL,
    grade INTEGER NOT NULL,
    passed INTEGER NOT NULL,
    interval_days INTEGER NOT NULL,
    due_date TEXT NOT NULL,
    time_spent_seconds REAL DEFAULT 0,
    hints_used INTEGER DEFAULT 0,
    reviewed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_review_log_card ON review_log(learner_id, card_id);
"""

_profile_adapter = TypeAdapter(LearnerProfile)


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Return a SQLite connection with row factory and foreign keys enabled."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: str = DEFAULT_DB_PATH) -> None:
    """Initialize the database, creating all tables if they don't exist."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    conn.executescript(SCHEMA)
    conn.commit()
    conn.close()


def profile_to_json(profile: LearnerProfile) -> str:
    return _profile_adapter.dump_json(profile).decode("utf-8")


def profile_from_json(payload: str) -> LearnerProfile:
    """Rebuild a profile; raises pydantic's ValidationError on a bad payload."""
    return _profile_adapter.validate_json(payload)


class ProfileStore:
    """Loads and saves learner profiles, retrying I/O with exponential backoff.

    The profile is stored as one JSON blob per learner. Reviews passed to
    save() are appended to a permanent review log in the same transaction.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db_path = db_path
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._with_retries(lambda: init_db(db_path), "Initializing profile store")

    def _with_retries(self, operation, description: str):
        last_error: Optional[Exception] = None
        for attempt in range(self.retries):
            try:
                return operation()
            except sqlite3.Error as e:
                last_error = e
                if attempt < self.retries - 1:
                    wait_time = self.backoff_seconds * (2 ** attempt)
                    logger.warning(
                        f"{description} failed on attempt {attempt + 1}/{self.retries}: {e}. "
                        f"Retrying in {wait_time}s..."
                    )
                    self._sleep(wait_time)
        logger.error(f"{description} failed after {self.retries} attempts: {last_error}")
        raise PersistenceError(f"{description} failed: {last_error}") from last_error

    def load(self, learner_id: str) -> Optional[LearnerProfile]:
        """Return the stored profile, or None if there is none or it is corrupt."""
        def read():
            conn = get_connection(self.db_path)
            try:
                return conn.execute(
                    "SELECT payload FROM profiles WHERE learner_id = ?", (learner_id,)
                ).fetchone()
            finally:
                conn.close()

        row = self._with_retries(read, f"Loading profile {learner_id}")
        if row is None:
            return None
        try:
            profile = profile_from_json(row["payload"])
        except SchemaValidationError as e:
            logger.warning(f"Stored profile {learner_id} is corrupt ({e.error_count()} errors), ignoring it")
            return None
        if profile.learner_id != learner_id:
            logger.warning(f"Stored profile under {learner_id} belongs to {profile.learner_id}, ignoring it")
            return None
        return profile

    def save(self, profile: LearnerProfile, reviews: Iterable[ReviewResult] = ()) -> None:
        """Write the profile and its new review log rows atomically."""
        payload = profile_to_json(profile)
        updated_at = (profile.updated_at or datetime.now()).isoformat()
        rows = [
            (
                profile.learner_id, r.card_id, r.grade, int(r.passed), r.interval_days,
                r.due_date.isoformat(), r.time_spent_seconds, r.hints_used,
                r.reviewed_at.isoformat(),
            )
            for r in reviews
        ]

        def write():
            conn = get_connection(self.db_path)
            try:
                with conn:
                    conn.execute(
                        """INSERT INTO profiles (learner_id, payload, updated_at) VALUES (?, ?, ?)
                        ON CONFLICT(learner_id) DO UPDATE SET
                            payload = excluded.payload, updated_at = excluded.updated_at""",
                        (profile.learner_id, payload, updated_at),
                    )
                    conn.executemany(
                        """INSERT INTO review_log (learner_id, card_id, grade, passed, interval_days,
                            due_date, time_spent_seconds, hints_used, reviewed_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        rows,
                    )
            finally:
                conn.close()

        self._with_retries(write, f"Saving profile {profile.learner_id}")

    def review_history(self, learner_id: str, card_id: Optional[str] = None) -> list[dict]:
        """Logged reviews for a learner, oldest first, optionally for one card."""
        query = "SELECT * FROM review_log WHERE learner_id = ?"
        params: tuple = (learner_id,)
        if card_id is not None:
            query += " AND card_id = ?"
            params += (card_id,)
        query += " ORDER BY id"

        def read():
            conn = get_connection(self.db_path)
            try:
                return conn.execute(query, params).fetchall()
            finally:
                conn.close()

        return [dict(r) for r in self._with_retries(read, f"Reading review log for {learner_id}")]
