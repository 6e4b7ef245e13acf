"""
Practice quiz generation and interaction.

Generated problem sets are validated strictly: a set with the wrong number
of problems, a problem without exactly four options, or without exactly
one correct option is rejected, never repaired.
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Literal, Optional, Protocol

from pydantic import ValidationError

from shared.models.domain import (
    MessageRecord,
    PracticeProblem,
    PracticeSessionRecord,
)
from shared.repositories import ConversationRepository, PracticeRepository
from shared.repositories.practice_repository import load_problems
from tutor.exceptions import (
    ConfigurationError,
    ConversationNotFoundError,
    PracticeSessionNotFoundError,
    PracticeValidationError,
)
from tutor.prompts.tutor_prompts import PRACTICE_GENERATION_PROMPT, PRACTICE_REQUEST_PROMPT
from tutor.services.transcript_store import SessionScope, TranscriptStore, to_practice_record

logger = logging.getLogger("tutor.practice_service")

ALLOWED_COUNTS = (3, 5, 10)
OPTIONS_PER_PROBLEM = 4

EASY_KEYWORDS = ("add", "subtract", "multiply", "divide", "basic")
HARD_KEYWORDS = ("calculus", "derivative", "integral", "trigonometric", "logarithm")

_FENCE_RE = re.compile(r"```(?:json)?\n?")

Difficulty = Literal["easy", "medium", "hard"]


class CompletionClient(Protocol):
    async def complete(self, system: str, prompt: str) -> str:
        ...


def infer_difficulty(topic_description: str) -> Difficulty:
    """Coarse session difficulty from keywords in the topic description."""
    lowered = topic_description.lower()
    if any(word in lowered for word in EASY_KEYWORDS):
        return "easy"
    if any(word in lowered for word in HARD_KEYWORDS):
        return "hard"
    return "medium"


def format_recent_context(messages: list, max_messages: int = 5, max_chars: int = 200) -> str:
    """'Recent conversation context' block from the last few messages (dicts or records)."""
    if not messages:
        return ""
    lines = []
    for message in messages[-max_messages:]:
        role = message["role"] if isinstance(message, dict) else message.role
        content = message["content"] if isinstance(message, dict) else message.content
        lines.append(f"{role}: {content[:max_chars]}")
    return "\n\nRecent conversation context:\n" + "\n".join(lines)


def parse_problem_set(raw_text: str, count: int) -> list[PracticeProblem]:
    """
    Parse and validate model output.

    Raises:
        PracticeValidationError: Output is not JSON or violates the set contract
    """
    cleaned = _FENCE_RE.sub("", raw_text).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise PracticeValidationError("Failed to parse model response as JSON") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("problems"), list):
        raise PracticeValidationError("Invalid response structure: expected a 'problems' list")

    raw_problems = payload["problems"]
    if len(raw_problems) != count:
        raise PracticeValidationError(f"Expected {count} problems, got {len(raw_problems)}")

    problems = []
    for index, raw in enumerate(raw_problems):
        if not isinstance(raw, dict):
            raise PracticeValidationError("Problem is not an object", index)
        missing = [f for f in ("problem", "options", "explanation") if not raw.get(f)]
        if missing:
            raise PracticeValidationError(f"Problem missing required fields: {', '.join(missing)}", index)
        if not isinstance(raw["options"], list) or len(raw["options"]) != OPTIONS_PER_PROBLEM:
            raise PracticeValidationError(f"Each problem must have exactly {OPTIONS_PER_PROBLEM} options", index)

        try:
            problem = PracticeProblem.model_validate({
                "problem": raw["problem"],
                "difficulty": raw.get("difficulty"),
                "options": raw["options"],
                "explanation": raw["explanation"],
            })
        except ValidationError as e:
            raise PracticeValidationError(f"Malformed problem: {e.error_count()} field error(s)", index) from e

        correct = sum(1 for option in problem.options if option.is_correct)
        if correct != 1:
            raise PracticeValidationError(f"Each problem must have exactly 1 correct answer, found {correct}", index)
        problems.append(problem)

    return problems


class PracticeGenerator:
    """Generates validated multiple-choice problem sets with the chat model."""

    def __init__(self, client: CompletionClient, context_messages: int = 5, context_chars: int = 200):
        self.client = client
        self.context_messages = context_messages
        self.context_chars = context_chars

    async def generate(
        self,
        topic_description: str,
        count: int,
        recent_context: Optional[list] = None,
    ) -> tuple[list[PracticeProblem], Difficulty]:
        """
        Generate `count` problems similar to `topic_description`.

        Returns:
            (problems, session difficulty)

        Raises:
            ValueError: count not one of 3, 5, 10 or empty topic
            PracticeValidationError: Generated set violates the contract
            LLMError: Model call failed
        """
        if not topic_description or not topic_description.strip():
            raise ValueError("Missing required field: topicDescription")
        if count not in ALLOWED_COUNTS:
            raise ValueError("Count must be 3, 5, or 10")

        prompt = PRACTICE_REQUEST_PROMPT.render(
            count=count,
            topic_description=topic_description,
            context_block=format_recent_context(recent_context or [], self.context_messages, self.context_chars),
        )
        logger.info(json.dumps({"step": "PRACTICE_GENERATE", "status": "starting", "count": count}))

        raw_text = await self.client.complete(PRACTICE_GENERATION_PROMPT.render(), prompt)
        try:
            problems = parse_problem_set(raw_text, count)
        except PracticeValidationError as e:
            logger.error(json.dumps({
                "step": "PRACTICE_GENERATE",
                "status": "invalid",
                "reason": e.reason,
                "problem_index": e.problem_index,
            }))
            raise

        difficulty = infer_difficulty(topic_description)
        logger.info(json.dumps({
            "step": "PRACTICE_GENERATE",
            "status": "complete",
            "count": len(problems),
            "difficulty": difficulty,
        }))
        return problems, difficulty


class PracticeService:
    """Practice session lifecycle: start, answer, navigate, complete."""

    def __init__(
        self,
        store: TranscriptStore,
        session_scope: SessionScope,
        generator: Optional[PracticeGenerator] = None,
    ):
        self.store = store
        self.session_scope = session_scope
        self.generator = generator

    async def start(self, conversation_id: str, topic_description: str, count: int) -> tuple[PracticeSessionRecord, MessageRecord]:
        """Generate a quiz, persist it, and append the assistant message that carries it."""
        loop = asyncio.get_running_loop()
        if not await loop.run_in_executor(None, self._conversation_exists, conversation_id):
            raise ConversationNotFoundError(conversation_id)
        if self.generator is None:
            raise ConfigurationError("anthropic_api_key", "Practice generation is not configured")

        recent = await self.store.list_recent(conversation_id, self.generator.context_messages)
        problems, difficulty = await self.generator.generate(topic_description, count, recent)

        session = await loop.run_in_executor(
            None, self._create, conversation_id, topic_description, difficulty, problems
        )

        message = await self.store.append(
            conversation_id,
            "assistant",
            f"I've generated {count} practice problems for you on \"{topic_description}\". Try solving them below!",
            practice_session_id=session.id,
        )
        return session, message

    def _conversation_exists(self, conversation_id: str) -> bool:
        with self.session_scope() as db:
            return ConversationRepository(db).get_by_id(conversation_id) is not None

    def _create(self, conversation_id: str, topic: str, difficulty: Difficulty, problems: list[PracticeProblem]) -> PracticeSessionRecord:
        with self.session_scope() as db:
            row = PracticeRepository(db).create(conversation_id, topic, difficulty, problems)
            return to_practice_record(row)

    def get(self, session_id: str) -> PracticeSessionRecord:
        with self.session_scope() as db:
            return to_practice_record(self._load(PracticeRepository(db), session_id))

    def answer(self, session_id: str, problem_index: int, answer: Optional[str]) -> PracticeSessionRecord:
        """
        Record (or clear) the student's answer to one problem.

        The score goes up when the answer newly becomes correct and down when
        a previously correct answer is changed to a wrong one.
        """
        with self.session_scope() as db:
            repo = PracticeRepository(db)
            row = self._load(repo, session_id)
            problems = load_problems(row)
            if not 0 <= problem_index < len(problems):
                raise ValueError("Problem index out of bounds")

            problem = problems[problem_index]
            was_correct = problem.is_answer_correct(problem.student_answer)
            is_correct = problem.is_answer_correct(answer)
            score_change = 0
            if was_correct and not is_correct:
                score_change = -1
            elif is_correct and not was_correct:
                score_change = 1

            problems[problem_index] = problem.model_copy(update={
                "student_answer": answer,
                "attempted_at": datetime.utcnow() if answer else None,
            })
            row = repo.save_answer(row, problems, row.score + score_change)
            return to_practice_record(row)

    def set_current_problem(self, session_id: str, index: int) -> PracticeSessionRecord:
        with self.session_scope() as db:
            repo = PracticeRepository(db)
            row = self._load(repo, session_id)
            if not 0 <= index < row.total_problems:
                raise ValueError("Invalid problem index")
            return to_practice_record(repo.set_current_problem(row, index))

    def complete(self, session_id: str) -> PracticeSessionRecord:
        with self.session_scope() as db:
            repo = PracticeRepository(db)
            return to_practice_record(repo.complete(self._load(repo, session_id)))

    @staticmethod
    def _load(repo: PracticeRepository, session_id: str):
        row = repo.get_by_id(session_id)
        if row is None:
            raise PracticeSessionNotFoundError(session_id)
        return row
