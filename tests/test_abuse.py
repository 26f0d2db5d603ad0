import sqlite3
from datetime import datetime, timedelta, timezone

from challenge_engine.db import get_connection
from challenge_engine.models import CheckOutcome
from challenge_engine.security import abuse
from challenge_engine.security.abuse import check_challenge_limits


def signal_types(user_id: str) -> list[str]:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT detection_type FROM abuse_signals WHERE user_id = ?", (user_id,)
        ).fetchall()
    return [r["detection_type"] for r in rows]


def test_clean_history_allowed():
    result = check_challenge_limits("user-1")
    assert result.allowed
    assert result.outcome == CheckOutcome.ALLOWED
    assert not result.flagged_for_fraud
    assert result.penalty_multiplier == 1.0


def test_daily_limit_denies_with_retry_after(add_finished_session):
    for _ in range(10):
        add_finished_session("user-1")

    result = check_challenge_limits("user-1")
    assert not result.allowed
    assert result.outcome == CheckOutcome.DENIED
    assert "limit" in result.reason.lower()
    # All ten finished five minutes ago: the oldest must age out of the day
    assert 23 * 3600 < result.retry_after_seconds <= 24 * 3600


def test_cooldown_after_old_completions(add_finished_session):
    now = datetime.now(timezone.utc)
    for _ in range(9):
        add_finished_session("user-1", completed_at=now - timedelta(hours=23, minutes=50))
    add_finished_session("user-1", completed_at=now - timedelta(minutes=10))

    result = check_challenge_limits("user-1", now=now)
    assert not result.allowed
    # Ceiling hit ten minutes ago, so the hour-long cooldown dominates
    assert result.retry_after_seconds == 50 * 60


def test_failed_and_old_sessions_do_not_count(add_finished_session):
    now = datetime.now(timezone.utc)
    for _ in range(5):
        add_finished_session("user-1", status="failed")
    for _ in range(5):
        add_finished_session("user-1", completed_at=now - timedelta(days=2))
    for _ in range(9):
        add_finished_session("user-1")

    assert check_challenge_limits("user-1").allowed


def test_too_many_perfect_scores_flags(add_finished_session):
    for _ in range(6):
        add_finished_session("user-1", percentage=100)

    result = check_challenge_limits("user-1")
    assert result.allowed
    assert result.flagged_for_fraud
    assert result.penalty_multiplier == 0.5

    # A second check does not duplicate the pending signal
    check_challenge_limits("user-1")
    assert signal_types("user-1") == ["perfect_score"]


def test_perfect_score_cap_not_exceeded(add_finished_session):
    for _ in range(5):
        add_finished_session("user-1", percentage=100)

    assert not check_challenge_limits("user-1").flagged_for_fraud


def test_fast_perfect_advanced_flags(add_finished_session):
    add_finished_session("user-1", difficulty="advanced", percentage=100, duration=timedelta(minutes=2))

    result = check_challenge_limits("user-1")
    assert result.flagged_for_fraud
    assert result.penalty_multiplier == 0.5
    assert signal_types("user-1") == ["impossible_speed"]


def test_fast_but_not_suspicious(add_finished_session):
    add_finished_session("user-1", difficulty="advanced", percentage=100, duration=timedelta(minutes=20))
    add_finished_session("user-1", difficulty="advanced", percentage=90, duration=timedelta(minutes=2))
    add_finished_session("user-1", difficulty="beginner", percentage=100, duration=timedelta(minutes=1))

    assert not check_challenge_limits("user-1").flagged_for_fraud


def test_fails_open_when_query_fails(monkeypatch):
    def unreachable():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(abuse, "get_connection", unreachable)

    result = check_challenge_limits("user-1")
    assert result.outcome == CheckOutcome.CHECK_ERROR
    assert result.allowed
    assert not result.flagged_for_fraud
    assert result.penalty_multiplier == 1.0
