"""Per-caller, per-endpoint request counting."""

import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from challenge_engine.db import get_connection
from challenge_engine.models import AbuseSignal, CheckOutcome
from challenge_engine.security.abuse import record_abuse_signal

logger = logging.getLogger(__name__)

START_ENDPOINT = "challenge-sessions/start"
ANSWER_ENDPOINT = "challenge-sessions/answer"


@dataclass
class RateLimitResult:
    outcome: CheckOutcome
    remaining: int
    reset_at: datetime

    @property
    def allowed(self) -> bool:
        # A broken counter lets traffic through
        return self.outcome != CheckOutcome.DENIED

    @property
    def retry_after(self) -> int:
        return max(0, int(self.reset_at.timestamp() - time.time() + 0.999))


def check_rate_limit(
    user_id: str, endpoint: str, max_requests: int, window_seconds: int
) -> RateLimitResult:
    """Count this request against the (user, endpoint) window.

    The counter resets when the window has expired. Once the count exceeds
    max_requests the request is denied until the window resets.
    """
    now = time.time()
    try:
        with get_connection() as conn:
            row = conn.execute(
                """
                INSERT INTO rate_limits (user_id, endpoint, window_start, request_count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(user_id, endpoint) DO UPDATE SET
                    request_count = CASE
                        WHEN excluded.window_start - window_start >= ? THEN 1
                        ELSE request_count + 1
                    END,
                    window_start = CASE
                        WHEN excluded.window_start - window_start >= ? THEN excluded.window_start
                        ELSE window_start
                    END
                RETURNING request_count, window_start
                """,
                (user_id, endpoint, now, window_seconds, window_seconds),
            ).fetchall()[0]
            count, window_start = row["request_count"], row["window_start"]
    except sqlite3.Error as e:
        logger.warning(f"Rate limit check failed for {user_id} on {endpoint}, allowing: {e}")
        return RateLimitResult(
            outcome=CheckOutcome.CHECK_ERROR,
            remaining=0,
            reset_at=datetime.fromtimestamp(now + window_seconds, timezone.utc),
        )

    reset_at = datetime.fromtimestamp(window_start + window_seconds, timezone.utc)
    if count > max_requests:
        log_rate_limit_violation(user_id, endpoint, max_requests, window_seconds)
        return RateLimitResult(outcome=CheckOutcome.DENIED, remaining=0, reset_at=reset_at)

    return RateLimitResult(
        outcome=CheckOutcome.ALLOWED, remaining=max_requests - count, reset_at=reset_at
    )


def log_rate_limit_violation(user_id: str, endpoint: str, limit: int, window_seconds: int):
    logger.warning(f"Rate limit exceeded: user={user_id} endpoint={endpoint} limit={limit}/{window_seconds}s")
    record_abuse_signal(
        AbuseSignal(
            user_id=user_id,
            detection_type="rate_limit",
            severity="medium",
            description=f"Exceeded {limit} requests per {window_seconds} seconds",
            metadata={"endpoint": endpoint, "limit": limit, "window_seconds": window_seconds},
        )
    )
