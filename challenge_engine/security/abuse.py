"""Farming and cheating heuristics over a caller's recent challenge history."""

import json
import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from challenge_engine.config import settings
from challenge_engine.db import get_connection, now_iso
from challenge_engine.models import AbuseSignal, CheckOutcome, Difficulty

logger = logging.getLogger(__name__)

WINDOW = timedelta(days=1)


@dataclass
class AbuseCheckResult:
    outcome: CheckOutcome
    reason: str | None = None
    retry_after_seconds: int | None = None
    flagged_for_fraud: bool = False
    penalty_multiplier: float = 1.0

    @property
    def allowed(self) -> bool:
        return self.outcome != CheckOutcome.DENIED


def record_abuse_signal(signal: AbuseSignal, dedupe_since: str | None = None) -> bool:
    """Append an abuse signal to the audit table.

    With dedupe_since, a pending signal of the same type recorded after that
    time suppresses the new one. Returns whether a row was written.
    """
    try:
        with get_connection() as conn:
            if dedupe_since:
                existing = conn.execute(
                    """SELECT id FROM abuse_signals
                       WHERE user_id = ? AND detection_type = ? AND status = 'pending'
                       AND created_at >= ?""",
                    (signal.user_id, signal.detection_type, dedupe_since),
                ).fetchone()
                if existing:
                    return False
            conn.execute(
                """INSERT INTO abuse_signals
                   (user_id, detection_type, severity, description, metadata, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    signal.user_id,
                    signal.detection_type,
                    signal.severity,
                    signal.description,
                    json.dumps(signal.metadata),
                    signal.status,
                    now_iso(),
                ),
            )
        return True
    except sqlite3.Error as e:
        # Audit logging must not break the request
        logger.error(f"Failed to record abuse signal {signal.detection_type} for {signal.user_id}: {e}")
        return False


def _duration_seconds(row: dict) -> float | None:
    try:
        started = datetime.fromisoformat(row["started_at"])
        completed = datetime.fromisoformat(row["completed_at"])
    except (TypeError, ValueError):
        return None
    return (completed - started).total_seconds()


def detect_fraud_patterns(user_id: str, completed: list[dict]) -> list[AbuseSignal]:
    """Turn a day of completed sessions into abuse signals."""
    signals = []
    perfect = [r for r in completed if r["completion_percentage"] >= 100]

    if len(perfect) > settings.max_daily_perfect_scores:
        signals.append(
            AbuseSignal(
                user_id=user_id,
                detection_type="perfect_score",
                severity="high",
                description=(
                    f"{len(perfect)} perfect scores in 24h "
                    f"(limit {settings.max_daily_perfect_scores})"
                ),
                metadata={"session_ids": [r["id"] for r in perfect]},
            )
        )

    too_fast = []
    for r in perfect:
        if r["difficulty"] != Difficulty.ADVANCED.value:
            continue
        duration = _duration_seconds(r)
        if duration is not None and duration < settings.min_advanced_perfect_seconds:
            too_fast.append({"session_id": r["id"], "duration_seconds": round(duration, 1)})
    if too_fast:
        signals.append(
            AbuseSignal(
                user_id=user_id,
                detection_type="impossible_speed",
                severity="critical",
                description=(
                    f"Perfect advanced challenge finished in under "
                    f"{settings.min_advanced_perfect_seconds}s"
                ),
                metadata={"sessions": too_fast},
            )
        )
    return signals


def check_challenge_limits(user_id: str, now: datetime | None = None) -> AbuseCheckResult:
    """Decide whether user_id may start another challenge and at what reward rate.

    Hitting the daily completion ceiling denies the caller. Fraud patterns never
    deny; they flag the caller and scale rewards by the penalty multiplier.
    """
    now = now or datetime.now(timezone.utc)
    window_start = (now - WINDOW).isoformat()

    try:
        with get_connection() as conn:
            rows = conn.execute(
                """SELECT id, difficulty, completion_percentage, started_at, completed_at
                   FROM challenge_sessions
                   WHERE user_id = ? AND status = 'completed' AND completed_at >= ?
                   ORDER BY completed_at""",
                (user_id, window_start),
            ).fetchall()
    except sqlite3.Error as e:
        logger.warning(f"Challenge limit check failed for {user_id}, allowing: {e}")
        return AbuseCheckResult(outcome=CheckOutcome.CHECK_ERROR)

    completed = [dict(r) for r in rows]

    signals = detect_fraud_patterns(user_id, completed)
    for signal in signals:
        logger.warning(f"Abuse pattern {signal.detection_type} for {user_id}: {signal.description}")
        record_abuse_signal(signal, dedupe_since=window_start)

    flagged = bool(signals)
    multiplier = settings.fraud_penalty_multiplier if flagged else 1.0

    limit = settings.max_daily_challenges
    if len(completed) >= limit:
        last = datetime.fromisoformat(completed[-1]["completed_at"])
        # Completion whose expiry brings the count back under the limit
        pivot = datetime.fromisoformat(completed[len(completed) - limit]["completed_at"])
        until = max(last + timedelta(seconds=settings.challenge_cooldown_seconds), pivot + WINDOW)
        retry_after = max(1, math.ceil((until - now).total_seconds()))
        logger.info(f"Daily challenge limit reached for {user_id}, retry in {retry_after}s")
        return AbuseCheckResult(
            outcome=CheckOutcome.DENIED,
            reason=f"Daily challenge limit reached ({limit} per day). Take a break and come back later.",
            retry_after_seconds=retry_after,
            flagged_for_fraud=flagged,
            penalty_multiplier=multiplier,
        )

    return AbuseCheckResult(
        outcome=CheckOutcome.ALLOWED,
        flagged_for_fraud=flagged,
        penalty_multiplier=multiplier,
    )
