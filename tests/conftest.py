import json
import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

# Configure before importing the app
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["OPENAI_API_KEY"] = ""
os.environ["SECRET_KEY"] = "test-secret"

TOPIC = "physics-101"


def make_question(i: int) -> dict:
    return {
        "question": f"Question {i}?",
        "options": [f"A{i}", f"B{i}", f"C{i}", f"D{i}"],
        "correct": i % 4,
        "explanation": f"Because of reason {i}.",
    }


@pytest.fixture(autouse=True)
def isolated_db(tmp_path):
    import challenge_engine.db as db_module

    db_module.DB_PATH = tmp_path / "test.db"
    db_module.init_db()
    yield db_module.DB_PATH


@pytest.fixture
def client():
    from challenge_engine.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def seed_lessons():
    """Store lessons with quiz questions; returns the questions stored."""
    from challenge_engine.db import get_connection

    def seed(course_id: str = TOPIC, count: int = 50, per_lesson: int = 5) -> list[dict]:
        questions = [make_question(i) for i in range(count)]
        with get_connection() as conn:
            for n, start in enumerate(range(0, count, per_lesson)):
                conn.execute(
                    "INSERT INTO lessons (course_id, title, slug, quiz) VALUES (?, ?, ?, ?)",
                    (
                        course_id,
                        f"Lesson {n}",
                        f"lesson-{n}",
                        json.dumps({"questions": questions[start:start + per_lesson]}),
                    ),
                )
        return questions

    return seed


@pytest.fixture
def auth_headers():
    from challenge_engine.auth.utils import create_token

    def headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_token(user_id)}"}

    return headers


@pytest.fixture
def add_finished_session():
    """Insert a finished session directly, bypassing the engine."""
    from challenge_engine.db import get_connection

    def add(
        user_id: str,
        difficulty: str = "beginner",
        status: str = "completed",
        percentage: int = 80,
        duration: timedelta = timedelta(minutes=20),
        completed_at: datetime | None = None,
    ) -> str:
        completed_at = completed_at or datetime.now(timezone.utc) - timedelta(minutes=5)
        started_at = completed_at - duration
        session_id = str(uuid.uuid4())
        with get_connection() as conn:
            conn.execute(
                """INSERT INTO challenge_sessions
                   (id, user_id, topic_name, difficulty, status, total_questions, questions,
                    xp_reward, completion_percentage, rewards_awarded, started_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)""",
                (
                    session_id,
                    user_id,
                    "Physics",
                    difficulty,
                    status,
                    15,
                    "[]",
                    100,
                    percentage,
                    started_at.isoformat(),
                    completed_at.isoformat(),
                ),
            )
        return session_id

    return add


@pytest.fixture
def answer_key():
    """Correct option index for a session's current question."""
    from challenge_engine.challenges.engine import get_session

    def key(session_id: str, user_id: str) -> int:
        return get_session(session_id, user_id).current.correct

    return key
