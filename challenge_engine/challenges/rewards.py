import json
import logging

from challenge_engine.db import (
    credit_profile,
    get_connection,
    now_iso,
    row_to_session,
    transaction,
)
from challenge_engine.errors import SessionNotActiveError, SessionNotFoundError
from challenge_engine.models import ChallengeSession, SessionStatus
from challenge_engine.security.abuse import check_challenge_limits
from challenge_engine.tasks.metrics import emit_completion_metrics

logger = logging.getLogger(__name__)

PREMIUM_COIN_MULTIPLIER = 2


def apply_penalty(amount: int, multiplier: float) -> int:
    """Scale a reward down without ever wiping out a non-zero one."""
    if amount <= 0 or multiplier >= 1.0:
        return amount
    return max(1, int(amount * multiplier + 0.5))


def coin_reward(session: ChallengeSession, is_premium: bool) -> int:
    if session.status != SessionStatus.COMPLETED:
        return 0
    coins = session.difficulty.coin_reward
    return coins * PREMIUM_COIN_MULTIPLIER if is_premium else coins


def issue_rewards(session_id: str) -> bool:
    """Credit a finished session's XP and coins to its owner exactly once.

    The rewards_awarded check, the profile increments and the flag flip share
    one immediate transaction, so retries and concurrent callers settle the
    session once. Returns True once the session is settled, including when an
    earlier call already did it.
    """
    with get_connection() as conn:
        row = conn.execute(
            "SELECT user_id, rewards_awarded FROM challenge_sessions WHERE id = ?", (session_id,)
        ).fetchone()
    if not row:
        raise SessionNotFoundError(session_id)
    if row["rewards_awarded"]:
        logger.info(f"Rewards for session {session_id} already issued")
        return True

    # Abuse status can change mid-session, so look it up at issuance.
    # Done outside the write transaction since the check may record signals.
    multiplier = check_challenge_limits(row["user_id"]).penalty_multiplier

    with transaction() as conn:
        row = conn.execute("SELECT * FROM challenge_sessions WHERE id = ?", (session_id,)).fetchone()
        if row["rewards_awarded"]:
            logger.info(f"Rewards for session {session_id} already issued")
            return True

        session = row_to_session(row)
        if session.is_active:
            raise SessionNotActiveError(session_id)

        profile = conn.execute(
            "SELECT is_premium FROM profiles WHERE user_id = ?", (session.user_id,)
        ).fetchone()
        is_premium = bool(profile and profile["is_premium"])

        xp = apply_penalty(session.xp_earned, multiplier)
        coins = apply_penalty(coin_reward(session, is_premium), multiplier)

        credit_profile(conn, session.user_id, xp, coins)
        if coins:
            conn.execute(
                "INSERT INTO coin_transactions (user_id, amount, source, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    session.user_id,
                    coins,
                    "challenge",
                    json.dumps(
                        {
                            "session_id": session.id,
                            "difficulty": session.difficulty.value,
                            "topic_name": session.topic_name,
                        }
                    ),
                    now_iso(),
                ),
            )

        # Flag last: a crash before this point leaves the session to be settled again
        conn.execute(
            "UPDATE challenge_sessions SET rewards_awarded = 1, xp_awarded = ?, coins_awarded = ? "
            "WHERE id = ? AND rewards_awarded = 0",
            (xp, coins, session_id),
        )

    if multiplier < 1.0:
        logger.warning(
            f"Penalty {multiplier} applied to session {session_id}: "
            f"{session.xp_earned} -> {xp} XP, {coins} coins"
        )
    logger.info(f"Issued {xp} XP and {coins} coins to {session.user_id} for session {session_id}")

    emit_completion_metrics(session)
    return True
