"""Domain errors raised by the challenge engine."""

from datetime import datetime


class ChallengeError(Exception):
    """Base class for errors that carry a user-presentable message."""


class RateLimitExceeded(ChallengeError):
    def __init__(self, endpoint: str, reset_at: datetime, retry_after: int):
        self.endpoint = endpoint
        self.reset_at = reset_at
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Try again in {retry_after} seconds.")


class ChallengeLimitReached(ChallengeError):
    def __init__(self, reason: str, retry_after: int | None = None):
        self.reason = reason
        self.retry_after = retry_after
        super().__init__(reason)


class SessionNotFoundError(ChallengeError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Session not found")


class SessionNotActiveError(ChallengeError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Session is not active")


class QuestionPoolError(ChallengeError):
    """Not enough real questions could be gathered for a session."""
