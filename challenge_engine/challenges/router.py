import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from challenge_engine.auth.utils import get_current_caller
from challenge_engine.challenges import engine
from challenge_engine.errors import (
    ChallengeLimitReached,
    QuestionPoolError,
    RateLimitExceeded,
    SessionNotActiveError,
    SessionNotFoundError,
)
from challenge_engine.models import Difficulty

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/challenge-sessions", tags=["challenges"])


class StartRequest(BaseModel):
    topic_id: str | None = Field(default=None, alias="topicId")
    topic_name: Annotated[
        str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)
    ] = Field(alias="topicName")
    difficulty: Difficulty = Difficulty.BEGINNER

    model_config = ConfigDict(populate_by_name=True)


class AnswerRequest(BaseModel):
    answer_index: int = Field(alias="answerIndex", ge=0, le=3)

    model_config = ConfigDict(populate_by_name=True)


def rate_limited(e: RateLimitExceeded) -> HTTPException:
    return HTTPException(
        status_code=429,
        detail={
            "error": "Too many requests",
            "message": str(e),
            "resetAt": e.reset_at.isoformat(),
        },
        headers={"Retry-After": str(e.retry_after)},
    )


def limit_reached(e: ChallengeLimitReached) -> HTTPException:
    headers = {"Retry-After": str(e.retry_after)} if e.retry_after else None
    return HTTPException(
        status_code=403,
        detail={"error": "Challenge limit reached", "message": e.reason, "retryAfter": e.retry_after},
        headers=headers,
    )


@router.post("/start")
def start(payload: StartRequest, user_id: str = Depends(get_current_caller)):
    try:
        session = engine.start_session(
            user_id, payload.topic_id, payload.topic_name, payload.difficulty
        )
    except RateLimitExceeded as e:
        raise rate_limited(e)
    except ChallengeLimitReached as e:
        raise limit_reached(e)
    except QuestionPoolError as e:
        logger.error(f"Could not assemble questions for {user_id}: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    return {"success": True, "session": engine.start_payload(session)}


@router.post("/{session_id}/answer")
def answer(
    session_id: str, payload: AnswerRequest, user_id: str = Depends(get_current_caller)
):
    try:
        return engine.submit_answer(session_id, user_id, payload.answer_index)
    except RateLimitExceeded as e:
        raise rate_limited(e)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SessionNotActiveError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/{session_id}")
def read_session(session_id: str, user_id: str = Depends(get_current_caller)):
    try:
        session = engine.get_session(session_id, user_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "session": engine.session_record(session)}
