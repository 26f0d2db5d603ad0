import random
import threading

import pytest

from challenge_engine.challenges.engine import (
    apply_answer,
    get_session,
    start_session,
    submit_answer,
)
from challenge_engine.errors import SessionNotActiveError, SessionNotFoundError
from challenge_engine.models import (
    ChallengeSession,
    Difficulty,
    QuizQuestion,
    SessionStatus,
)

TOPIC = "physics-101"
NOW = "2026-01-01T00:00:00+00:00"


def make_session(total: int = 15, xp: int = 100) -> ChallengeSession:
    return ChallengeSession(
        id="s-1",
        user_id="user-1",
        topic_id=TOPIC,
        topic_name="Physics",
        difficulty=Difficulty.BEGINNER,
        total_questions=total,
        xp_reward=xp,
        questions=[
            QuizQuestion(question=f"Q{i}", options=["a", "b", "c", "d"], correct=i % 4, explanation=f"E{i}")
            for i in range(total)
        ],
        started_at=NOW,
    )


def wrong(session: ChallengeSession) -> int:
    return (session.current.correct + 1) % 4


def test_correct_answer_advances():
    session = apply_answer(make_session(), 0, NOW)
    assert session.current_question == 2
    assert session.correct_answers == 1
    assert session.hearts_remaining == 3
    assert session.status == SessionStatus.ACTIVE
    assert session.answers[-1].is_correct


def test_wrong_answer_costs_a_heart():
    start = make_session()
    session = apply_answer(start, wrong(start), NOW)
    assert session.hearts_remaining == 2
    assert session.correct_answers == 0
    assert session.current_question == 2
    assert len(start.answers) == 0


def test_hearts_stay_in_bounds():
    rng = random.Random(3)
    for _ in range(50):
        session = make_session()
        while session.is_active:
            choice = rng.randrange(4)
            session = apply_answer(session, choice, NOW)
            assert 0 <= session.hearts_remaining <= 3
            assert 1 <= session.current_question <= session.total_questions
        assert session.completed_at is not None


def test_happy_path():
    session = make_session()
    while session.is_active:
        session = apply_answer(session, session.current.correct, NOW)

    assert session.status == SessionStatus.COMPLETED
    assert session.correct_answers == 15
    assert session.completion_percentage == 100
    assert session.xp_earned == 100
    assert session.current_question == 15


def test_exhausted_hearts():
    session = make_session()
    for _ in range(3):
        session = apply_answer(session, wrong(session), NOW)

    assert session.status == SessionStatus.FAILED
    assert session.current_question == 3
    assert session.hearts_remaining == 0
    assert session.xp_earned == 0
    assert session.completion_percentage == 0


def test_failure_earns_proportional_xp():
    session = make_session(total=30, xp=200)
    for _ in range(7):
        session = apply_answer(session, session.current.correct, NOW)
    for _ in range(3):
        session = apply_answer(session, wrong(session), NOW)

    assert session.status == SessionStatus.FAILED
    # round(7 / 30 * 200) = round(46.67)
    assert session.xp_earned == 47
    assert session.completion_percentage == 23


def test_last_question_completes_even_with_mistakes():
    session = make_session()
    for _ in range(2):
        session = apply_answer(session, wrong(session), NOW)
    while session.is_active:
        session = apply_answer(session, session.current.correct, NOW)

    assert session.status == SessionStatus.COMPLETED
    assert session.hearts_remaining == 1
    assert session.xp_earned == 100
    assert session.completion_percentage == 87


def test_terminal_session_rejects_answers():
    session = make_session()
    for _ in range(3):
        session = apply_answer(session, wrong(session), NOW)
    for _ in range(2):
        with pytest.raises(SessionNotActiveError):
            apply_answer(session, 0, NOW)


def test_start_persists_session(seed_lessons):
    seed_lessons()
    session = start_session("user-1", TOPIC, "Physics", Difficulty.INTERMEDIATE)

    stored = get_session(session.id, "user-1")
    assert stored.total_questions == 30
    assert len(stored.questions) == 30
    assert stored.hearts_remaining == 3
    assert stored.current_question == 1
    assert stored.status == SessionStatus.ACTIVE
    assert stored.completed_at is None
    assert stored.xp_reward == 200


def test_ownership_isolation(seed_lessons):
    seed_lessons()
    session = start_session("user-1", TOPIC, "Physics")

    with pytest.raises(SessionNotFoundError):
        get_session(session.id, "user-2")
    with pytest.raises(SessionNotFoundError):
        submit_answer(session.id, "user-2", 0)
    assert get_session(session.id, "user-1").answers == []


def test_submit_after_failure_rejected_every_time(seed_lessons, answer_key):
    seed_lessons()
    session = start_session("user-1", TOPIC, "Physics")
    for _ in range(3):
        result = submit_answer(session.id, "user-1", (answer_key(session.id, "user-1") + 1) % 4)
    assert result["status"] == "failed"
    assert result["sessionEnded"]

    for _ in range(3):
        with pytest.raises(SessionNotActiveError):
            submit_answer(session.id, "user-1", 0)
    assert len(get_session(session.id, "user-1").answers) == 3


def test_concurrent_final_answers_only_one_lands(seed_lessons, answer_key):
    from challenge_engine.db import get_profile

    seed_lessons()
    session = start_session("user-1", TOPIC, "Physics")
    for _ in range(14):
        submit_answer(session.id, "user-1", answer_key(session.id, "user-1"))

    key = answer_key(session.id, "user-1")
    outcomes = []

    def submit():
        try:
            outcomes.append(submit_answer(session.id, "user-1", key)["status"])
        except SessionNotActiveError:
            outcomes.append("rejected")

    threads = [threading.Thread(target=submit) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["completed", "rejected", "rejected", "rejected"]
    stored = get_session(session.id, "user-1")
    assert stored.correct_answers == 15
    assert len(stored.answers) == 15
    assert get_profile("user-1")["xp_total"] == 100
