import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from challenge_engine.config import settings
from challenge_engine.models import (
    AnswerRecord,
    ChallengeSession,
    Difficulty,
    QuizQuestion,
    SessionStatus,
)

DB_PATH = Path(settings.database_path)

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 10.0


def generate_session_id() -> str:
    return str(uuid.uuid4())


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_db_path() -> Path:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    return DB_PATH


def init_db():
    """Create tables if they don't exist."""
    with get_connection() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS profiles (
                user_id TEXT PRIMARY KEY,
                xp_total INTEGER NOT NULL DEFAULT 0,
                coins INTEGER NOT NULL DEFAULT 0,
                is_premium INTEGER NOT NULL DEFAULT 0,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS lessons (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                course_id TEXT NOT NULL,
                title TEXT,
                slug TEXT,
                quiz TEXT
            );

            CREATE TABLE IF NOT EXISTS challenge_sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                topic_id TEXT,
                topic_name TEXT NOT NULL,
                difficulty TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                current_question INTEGER NOT NULL DEFAULT 1,
                total_questions INTEGER NOT NULL,
                hearts_remaining INTEGER NOT NULL DEFAULT 3,
                correct_answers INTEGER NOT NULL DEFAULT 0,
                questions TEXT NOT NULL,
                answers TEXT NOT NULL DEFAULT '[]',
                xp_reward INTEGER NOT NULL,
                xp_earned INTEGER NOT NULL DEFAULT 0,
                completion_percentage INTEGER NOT NULL DEFAULT 0,
                rewards_awarded INTEGER NOT NULL DEFAULT 0,
                xp_awarded INTEGER NOT NULL DEFAULT 0,
                coins_awarded INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_challenge_sessions_user
                ON challenge_sessions(user_id, status, completed_at);

            CREATE TABLE IF NOT EXISTS rate_limits (
                user_id TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                window_start REAL NOT NULL,
                request_count INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, endpoint)
            );

            CREATE TABLE IF NOT EXISTS abuse_signals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                detection_type TEXT NOT NULL,
                severity TEXT NOT NULL,
                description TEXT NOT NULL,
                metadata TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS coin_transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                source TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS challenge_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                session_id TEXT NOT NULL,
                difficulty TEXT NOT NULL,
                status TEXT NOT NULL,
                correct_answers INTEGER NOT NULL,
                total_questions INTEGER NOT NULL,
                completion_percentage INTEGER NOT NULL,
                duration_seconds REAL,
                created_at TEXT NOT NULL
            );
        """)


@contextmanager
def get_connection():
    conn = sqlite3.connect(get_db_path(), timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction():
    """Write transaction that holds the database write lock from its first statement."""
    conn = sqlite3.connect(get_db_path(), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


# Session helpers
def row_to_session(row: sqlite3.Row) -> ChallengeSession:
    return ChallengeSession(
        id=row["id"],
        user_id=row["user_id"],
        topic_id=row["topic_id"],
        topic_name=row["topic_name"],
        difficulty=Difficulty(row["difficulty"]),
        total_questions=row["total_questions"],
        xp_reward=row["xp_reward"],
        questions=[QuizQuestion.from_dict(q) for q in json.loads(row["questions"])],
        started_at=row["started_at"],
        current_question=row["current_question"],
        hearts_remaining=row["hearts_remaining"],
        correct_answers=row["correct_answers"],
        answers=[AnswerRecord.from_dict(a) for a in json.loads(row["answers"] or "[]")],
        status=SessionStatus(row["status"]),
        completed_at=row["completed_at"],
        xp_earned=row["xp_earned"],
        completion_percentage=row["completion_percentage"],
        rewards_awarded=bool(row["rewards_awarded"]),
        xp_awarded=row["xp_awarded"] or 0,
        coins_awarded=row["coins_awarded"] or 0,
        version=row["version"],
    )


def insert_session(session: ChallengeSession):
    with get_connection() as conn:
        conn.execute(
            """INSERT INTO challenge_sessions
               (id, user_id, topic_id, topic_name, difficulty, status, current_question,
                total_questions, hearts_remaining, correct_answers, questions, answers,
                xp_reward, started_at, version)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                session.id,
                session.user_id,
                session.topic_id,
                session.topic_name,
                session.difficulty.value,
                session.status.value,
                session.current_question,
                session.total_questions,
                session.hearts_remaining,
                session.correct_answers,
                json.dumps([q.to_dict() for q in session.questions]),
                json.dumps([a.to_dict() for a in session.answers]),
                session.xp_reward,
                session.started_at,
                session.version,
            ),
        )


def load_session(session_id: str, user_id: str) -> ChallengeSession | None:
    """Fetch a session only if it belongs to user_id."""
    with get_connection() as conn:
        row = conn.execute(
            "SELECT * FROM challenge_sessions WHERE id = ? AND user_id = ?",
            (session_id, user_id),
        ).fetchone()
    return row_to_session(row) if row else None


def save_transition(session: ChallengeSession, expected_version: int) -> bool:
    """Persist an answer transition if nobody else moved the session first.

    The UPDATE only matches an active row still at expected_version, so of two
    racing submissions exactly one succeeds.
    """
    with get_connection() as conn:
        cursor = conn.execute(
            """
            UPDATE challenge_sessions
            SET current_question = ?, hearts_remaining = ?, correct_answers = ?, answers = ?,
                status = ?, completed_at = ?, xp_earned = ?, completion_percentage = ?,
                version = version + 1
            WHERE id = ? AND user_id = ? AND status = 'active' AND version = ?
            """,
            (
                session.current_question,
                session.hearts_remaining,
                session.correct_answers,
                json.dumps([a.to_dict() for a in session.answers]),
                session.status.value,
                session.completed_at,
                session.xp_earned,
                session.completion_percentage,
                session.id,
                session.user_id,
                expected_version,
            ),
        )
        return cursor.rowcount == 1


# Profile helpers
def get_profile(user_id: str) -> dict | None:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM profiles WHERE user_id = ?", (user_id,)).fetchone()
    return dict(row) if row else None


def credit_profile(conn, user_id: str, xp: int, coins: int):
    """Add xp and coins to a profile as a single atomic increment."""
    conn.execute(
        """
        INSERT INTO profiles (user_id, xp_total, coins) VALUES (?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            xp_total = xp_total + excluded.xp_total,
            coins = coins + excluded.coins,
            updated_at = CURRENT_TIMESTAMP
        """,
        (user_id, xp, coins),
    )
