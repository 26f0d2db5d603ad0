"""Celery tasks for challenge completion metrics."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict

from challenge_engine.celery_app import celery_app
from challenge_engine.db import get_connection, now_iso
from challenge_engine.models import ChallengeSession

logger = logging.getLogger(__name__)


def _duration_seconds(started_at: str, completed_at: str | None) -> float | None:
    if not completed_at:
        return None
    try:
        return (datetime.fromisoformat(completed_at) - datetime.fromisoformat(started_at)).total_seconds()
    except ValueError:
        return None


def build_metrics_payload(session: ChallengeSession) -> Dict[str, Any]:
    return {
        "user_id": session.user_id,
        "session_id": session.id,
        "difficulty": session.difficulty.value,
        "status": session.status.value,
        "correct_answers": session.correct_answers,
        "total_questions": session.total_questions,
        "completion_percentage": session.completion_percentage,
        "duration_seconds": _duration_seconds(session.started_at, session.completed_at),
    }


@celery_app.task(name="challenge_engine.tasks.metrics.record_completion_metrics")
def record_completion_metrics(payload: Dict[str, Any]) -> None:
    with get_connection() as conn:
        conn.execute(
            """
            INSERT INTO challenge_metrics
                (user_id, session_id, difficulty, status, correct_answers, total_questions,
                 completion_percentage, duration_seconds, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                payload["user_id"],
                payload["session_id"],
                payload["difficulty"],
                payload["status"],
                payload["correct_answers"],
                payload["total_questions"],
                payload["completion_percentage"],
                payload["duration_seconds"],
                now_iso(),
            ),
        )


def emit_completion_metrics(session: ChallengeSession) -> None:
    """Queue the metrics row for a settled session. Never raises."""
    try:
        record_completion_metrics.delay(build_metrics_payload(session))
    except Exception as e:
        logger.warning(f"Could not emit completion metrics for session {session.id}: {e}")
