from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

MAX_HEARTS = 3


class Difficulty(str, Enum):
    """Closed set of challenge tiers and the constants each one fixes."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"

    @property
    def question_count(self) -> int:
        return _TIERS[self]["questions"]

    @property
    def xp_reward(self) -> int:
        return _TIERS[self]["xp"]

    @property
    def coin_reward(self) -> int:
        return _TIERS[self]["coins"]

    @property
    def prompt_level(self) -> str:
        return _TIERS[self]["prompt"]


_TIERS = {
    Difficulty.BEGINNER: {
        "questions": 15,
        "xp": 100,
        "coins": 25,
        "prompt": "basic concepts and fundamentals",
    },
    Difficulty.INTERMEDIATE: {
        "questions": 30,
        "xp": 200,
        "coins": 50,
        "prompt": "moderately complex concepts and applications",
    },
    Difficulty.ADVANCED: {
        "questions": 45,
        "xp": 500,
        "coins": 100,
        "prompt": "complex concepts, advanced theories, and problem-solving",
    },
}


class CheckOutcome(str, Enum):
    """Result of a gating check. CHECK_ERROR means the check itself could not run."""

    ALLOWED = "allowed"
    DENIED = "denied"
    CHECK_ERROR = "check_error"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QuizQuestion:
    question: str
    options: list[str]
    correct: int
    explanation: str

    @classmethod
    def from_dict(cls, data: dict) -> "QuizQuestion":
        """Build a question from stored or generated JSON, copying the options list.

        Raises ValueError when the payload is not a four-option question.
        """
        options = data.get("options")
        correct = data.get("correct")
        if not isinstance(data.get("question"), str) or not data["question"].strip():
            raise ValueError("question text missing")
        if not isinstance(options, list) or len(options) != 4:
            raise ValueError("question must have exactly four options")
        if not isinstance(correct, int) or isinstance(correct, bool) or not 0 <= correct < 4:
            raise ValueError("correct index out of range")
        return cls(
            question=data["question"],
            options=[str(o) for o in options],
            correct=correct,
            explanation=str(data.get("explanation") or ""),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def public_view(self) -> dict:
        """Question as shown to the player, answer key withheld."""
        return {"question": self.question, "options": list(self.options)}


@dataclass
class AnswerRecord:
    question_index: int
    answer_index: int
    is_correct: bool
    timestamp: str

    @classmethod
    def from_dict(cls, data: dict) -> "AnswerRecord":
        return cls(
            question_index=data["questionIndex"],
            answer_index=data["answerIndex"],
            is_correct=data["isCorrect"],
            timestamp=data["timestamp"],
        )

    def to_dict(self) -> dict:
        return {
            "questionIndex": self.question_index,
            "answerIndex": self.answer_index,
            "isCorrect": self.is_correct,
            "timestamp": self.timestamp,
        }


@dataclass
class ChallengeSession:
    id: str
    user_id: str
    topic_id: Optional[str]
    topic_name: str
    difficulty: Difficulty
    total_questions: int
    xp_reward: int
    questions: list[QuizQuestion]
    started_at: str
    current_question: int = 1
    hearts_remaining: int = MAX_HEARTS
    correct_answers: int = 0
    answers: list[AnswerRecord] = field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    completed_at: Optional[str] = None
    xp_earned: int = 0
    completion_percentage: int = 0
    rewards_awarded: bool = False
    xp_awarded: int = 0
    coins_awarded: int = 0
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def current(self) -> QuizQuestion:
        return self.questions[self.current_question - 1]


@dataclass
class AbuseSignal:
    user_id: str
    detection_type: str
    severity: str
    description: str
    metadata: dict = field(default_factory=dict)
    status: str = "pending"
