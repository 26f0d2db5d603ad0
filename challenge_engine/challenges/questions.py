import json
import logging
import random

from openai import OpenAI, OpenAIError

from challenge_engine.config import settings
from challenge_engine.db import get_connection
from challenge_engine.errors import QuestionPoolError
from challenge_engine.models import Difficulty, QuizQuestion

logger = logging.getLogger(__name__)

# Lessons scanned per topic when gathering existing quiz questions
MAX_LESSONS = 50

SYSTEM_PROMPT = """You are a science quiz generator. Generate clear, accurate multiple choice
questions at the appropriate difficulty level.

OUTPUT FORMAT - Return valid JSON:
{
    "questions": [
        {
            "question": "question text",
            "options": ["option A", "option B", "option C", "option D"],
            "correct": 0,
            "explanation": "brief explanation of the correct answer"
        }
    ]
}"""


def build_prompt(topic: str, count: int, difficulty: Difficulty) -> str:
    return f"""Generate {count} multiple choice quiz questions about {topic} at {difficulty.prompt_level} level.

Each question should have:
- A clear question text
- 4 answer options
- The correct answer index (0-3)
- A brief explanation"""


def parse_response(content: str) -> dict | None:
    try:
        if "```json" in content:
            content = content.split("```json")[1].split("```")[0]
        elif "```" in content:
            content = content.split("```")[1].split("```")[0]

        return json.loads(content.strip())
    except (json.JSONDecodeError, IndexError):
        return None


def parse_questions(raw: list) -> list[QuizQuestion]:
    """Keep only well-formed questions."""
    questions = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            questions.append(QuizQuestion.from_dict(item))
        except ValueError as e:
            logger.warning(f"Dropping malformed question: {e}")
    return questions


def generate_questions(topic: str, count: int, difficulty: Difficulty) -> list[QuizQuestion]:
    """Ask the generation service for count questions about topic.

    Raises QuestionPoolError if the service is not configured, fails, or times out.
    """
    if not settings.openai_api_key:
        raise QuestionPoolError("Question generation is not configured")

    client = OpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.generation_timeout_seconds,
        max_retries=1,
    )

    try:
        response = client.chat.completions.create(
            model=settings.openai_model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(topic, count, difficulty)},
            ],
            response_format={"type": "json_object"},
            temperature=0.7,
        )
    except OpenAIError as e:
        logger.error(f"Question generation failed for {topic}/{difficulty.value}: {e}")
        raise QuestionPoolError("Question generation service is unavailable") from e

    content = response.choices[0].message.content
    data = parse_response(content) if content else None
    if not data or not isinstance(data.get("questions"), list):
        logger.error(f"Unparseable generation response for {topic}/{difficulty.value}")
        raise QuestionPoolError("Question generation returned an invalid response")

    questions = parse_questions(data["questions"])
    logger.info(f"Generated {len(questions)}/{count} questions for {topic}/{difficulty.value}")
    return questions


def fetch_lesson_questions(topic_id: str) -> list[QuizQuestion]:
    """Collect quiz questions from the lessons of a course."""
    with get_connection() as conn:
        lessons = conn.execute(
            "SELECT slug, quiz FROM lessons WHERE course_id = ? AND quiz IS NOT NULL LIMIT ?",
            (topic_id, MAX_LESSONS),
        ).fetchall()

    questions = []
    for lesson in lessons:
        try:
            quiz = json.loads(lesson["quiz"])
        except json.JSONDecodeError:
            logger.warning(f"Lesson {lesson['slug']} has an unreadable quiz")
            continue
        if isinstance(quiz, dict) and isinstance(quiz.get("questions"), list):
            questions.extend(parse_questions(quiz["questions"]))
    return questions


def shuffle_questions(questions: list, rng: random.Random | None = None) -> list:
    """Fisher-Yates shuffle into a new list."""
    rng = rng or random.SystemRandom()
    shuffled = list(questions)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randrange(i + 1)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def assemble(
    topic_id: str | None,
    topic_name: str,
    difficulty: Difficulty,
    rng: random.Random | None = None,
) -> list[QuizQuestion]:
    """Build the question list for a new session.

    Existing lesson questions are used first; the shortfall is generated. Fails
    with QuestionPoolError rather than returning fewer questions than the tier needs.
    """
    required = difficulty.question_count
    questions = fetch_lesson_questions(topic_id) if topic_id else []

    if len(questions) < required:
        shortfall = required - len(questions)
        logger.info(f"Topic {topic_name}: {len(questions)} lesson questions, generating {shortfall}")
        questions.extend(generate_questions(topic_name, shortfall, difficulty))

    if len(questions) < required:
        raise QuestionPoolError(
            f"Only {len(questions)} of {required} questions available for {topic_name}"
        )

    return shuffle_questions(questions, rng)[:required]
