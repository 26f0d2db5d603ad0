"""Challenge session lifecycle: start, answer, fetch.

A session moves active -> completed or active -> failed and never leaves a
terminal state. Every transition is written with a version-checked UPDATE, so
concurrent submissions against the same session cannot both land.
"""

import logging
import math
from dataclasses import replace

from challenge_engine.challenges import questions as question_pool
from challenge_engine.challenges.rewards import issue_rewards
from challenge_engine.config import settings
from challenge_engine.db import (
    generate_session_id,
    insert_session,
    load_session,
    now_iso,
    save_transition,
)
from challenge_engine.errors import (
    ChallengeLimitReached,
    RateLimitExceeded,
    SessionNotActiveError,
    SessionNotFoundError,
)
from challenge_engine.models import (
    AnswerRecord,
    ChallengeSession,
    Difficulty,
    SessionStatus,
)
from challenge_engine.security.abuse import check_challenge_limits
from challenge_engine.security.rate_limit import (
    ANSWER_ENDPOINT,
    START_ENDPOINT,
    check_rate_limit,
)

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def apply_answer(session: ChallengeSession, answer_index: int, now: str) -> ChallengeSession:
    """Return the session as it stands after answering its current question."""
    if not session.is_active:
        raise SessionNotActiveError(session.id)

    is_correct = answer_index == session.current.correct
    hearts = session.hearts_remaining if is_correct else max(0, session.hearts_remaining - 1)
    correct = session.correct_answers + 1 if is_correct else session.correct_answers
    answers = session.answers + [
        AnswerRecord(
            question_index=session.current_question - 1,
            answer_index=answer_index,
            is_correct=is_correct,
            timestamp=now,
        )
    ]

    status = SessionStatus.ACTIVE
    current_question = session.current_question
    completed_at = None
    if hearts == 0:
        status = SessionStatus.FAILED
        completed_at = now
    elif session.current_question >= session.total_questions:
        status = SessionStatus.COMPLETED
        completed_at = now
    else:
        current_question += 1

    xp_earned = 0
    completion_percentage = 0
    if status == SessionStatus.COMPLETED:
        xp_earned = session.xp_reward
    elif status == SessionStatus.FAILED:
        xp_earned = round_half_up(correct / session.total_questions * session.xp_reward)
    if status != SessionStatus.ACTIVE:
        completion_percentage = round_half_up(correct / session.total_questions * 100)

    return replace(
        session,
        current_question=current_question,
        hearts_remaining=hearts,
        correct_answers=correct,
        answers=answers,
        status=status,
        completed_at=completed_at,
        xp_earned=xp_earned,
        completion_percentage=completion_percentage,
    )


def start_session(
    user_id: str,
    topic_id: str | None,
    topic_name: str,
    difficulty: Difficulty = Difficulty.BEGINNER,
) -> ChallengeSession:
    limit = check_rate_limit(
        user_id, START_ENDPOINT, settings.start_rate_limit, settings.start_rate_window_seconds
    )
    if not limit.allowed:
        raise RateLimitExceeded(START_ENDPOINT, limit.reset_at, limit.retry_after)

    abuse = check_challenge_limits(user_id)
    if not abuse.allowed:
        raise ChallengeLimitReached(abuse.reason or "Challenge limit reached", abuse.retry_after_seconds)

    pool = question_pool.assemble(topic_id, topic_name, difficulty)

    session = ChallengeSession(
        id=generate_session_id(),
        user_id=user_id,
        topic_id=topic_id,
        topic_name=topic_name,
        difficulty=difficulty,
        total_questions=difficulty.question_count,
        xp_reward=difficulty.xp_reward,
        questions=pool,
        started_at=now_iso(),
    )
    insert_session(session)
    logger.info(f"Started {difficulty.value} session {session.id} for {user_id} on {topic_name}")
    return session


def get_session(session_id: str, user_id: str) -> ChallengeSession:
    session = load_session(session_id, user_id)
    if not session:
        raise SessionNotFoundError(session_id)
    return session


def submit_answer(session_id: str, user_id: str, answer_index: int) -> dict:
    """Evaluate an answer against the session's current question.

    Returns the response payload. On the terminating answer the rewards are
    issued before this returns.
    """
    limit = check_rate_limit(
        user_id, ANSWER_ENDPOINT, settings.answer_rate_limit, settings.answer_rate_window_seconds
    )
    if not limit.allowed:
        raise RateLimitExceeded(ANSWER_ENDPOINT, limit.reset_at, limit.retry_after)

    session = get_session(session_id, user_id)
    if not session.is_active:
        if not session.rewards_awarded:
            # An earlier termination did not finish settling
            issue_rewards(session.id)
        raise SessionNotActiveError(session_id)

    answered = session.current
    updated = apply_answer(session, answer_index, now_iso())
    if not save_transition(updated, expected_version=session.version):
        logger.info(f"Lost answer race on session {session_id}")
        raise SessionNotActiveError(session_id)

    response = {
        "success": True,
        "isCorrect": updated.answers[-1].is_correct,
        "explanation": answered.explanation,
        "heartsRemaining": updated.hearts_remaining,
        "correctAnswers": updated.correct_answers,
        "status": updated.status.value,
        "currentQuestion": updated.current_question,
    }

    if updated.is_active:
        response["nextQuestion"] = updated.current.public_view()
        return response

    logger.info(
        f"Session {session_id} {updated.status.value}: "
        f"{updated.correct_answers}/{updated.total_questions}, {updated.xp_earned} XP"
    )
    issue_rewards(session_id)
    response["sessionEnded"] = True
    response["xpEarned"] = updated.xp_earned
    response["completionPercentage"] = updated.completion_percentage
    return response


def start_payload(session: ChallengeSession) -> dict:
    return {
        "id": session.id,
        "currentQuestion": session.current_question,
        "totalQuestions": session.total_questions,
        "heartsRemaining": session.hearts_remaining,
        "question": session.current.public_view(),
        "xpReward": session.xp_reward,
        "difficulty": session.difficulty.value,
    }


def session_record(session: ChallengeSession) -> dict:
    """Full session record for its owner.

    While the session is active, questions not yet answered are returned
    without their answer key or explanation.
    """
    answered = len(session.answers)
    questions = []
    for i, q in enumerate(session.questions):
        if session.is_active and i >= answered:
            questions.append(q.public_view())
        else:
            questions.append(q.to_dict())

    return {
        "id": session.id,
        "userId": session.user_id,
        "topicId": session.topic_id,
        "topicName": session.topic_name,
        "difficulty": session.difficulty.value,
        "status": session.status.value,
        "currentQuestion": session.current_question,
        "totalQuestions": session.total_questions,
        "heartsRemaining": session.hearts_remaining,
        "correctAnswers": session.correct_answers,
        "questions": questions,
        "answers": [a.to_dict() for a in session.answers],
        "xpReward": session.xp_reward,
        "xpEarned": session.xp_earned,
        "completionPercentage": session.completion_percentage,
        "rewardsAwarded": session.rewards_awarded,
        "xpAwarded": session.xp_awarded,
        "coinsAwarded": session.coins_awarded,
        "startedAt": session.started_at,
        "completedAt": session.completed_at,
    }
