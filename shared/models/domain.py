"""Domain models for business logic."""
import re
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Role = Literal["user", "assistant"]

_DATA_URL_RE = re.compile(r"^data:(?P<media_type>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


class StructuredContext(BaseModel):
    """Tutoring progress snapshot embedded in an assistant message."""
    model_config = ConfigDict(populate_by_name=True)

    current_problem: str = Field(alias="currentProblem")
    current_step: int = Field(alias="currentStep")
    total_steps: int = Field(alias="totalSteps")
    problem_type: str = Field(alias="problemType")
    steps_completed: List[str] = Field(default_factory=list, alias="stepsCompleted")
    current_equation: Optional[str] = Field(default=None, alias="currentEquation")
    step_roadmap: Optional[List[str]] = Field(default=None, alias="stepRoadmap")

    @model_validator(mode="after")
    def _check_step_bounds(self) -> "StructuredContext":
        if self.total_steps < 1:
            raise ValueError("totalSteps must be at least 1")
        if not 1 <= self.current_step <= self.total_steps:
            raise ValueError(
                f"currentStep {self.current_step} outside 1..{self.total_steps}"
            )
        if self.step_roadmap is not None and len(self.step_roadmap) != self.total_steps:
            raise ValueError(
                f"stepRoadmap has {len(self.step_roadmap)} entries, expected {self.total_steps}"
            )
        return self


# Message content: a tagged union resolved once by the history assembler

class ImagePayload(BaseModel):
    """Base64 image data with its media type."""
    media_type: str = "image/png"
    data: str  # base64, no data-URL prefix

    @classmethod
    def from_data_url(cls, data_url: str) -> "ImagePayload":
        match = _DATA_URL_RE.match(data_url.strip())
        if not match:
            raise ValueError("Not a base64 data URL")
        return cls(media_type=match.group("media_type"), data=match.group("data"))

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    image: ImagePayload


class TextContent(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class MultimodalContent(BaseModel):
    """Image part(s) followed by a single text part."""
    kind: Literal["multimodal"] = "multimodal"
    parts: List[Annotated[Union[ImagePart, TextPart], Field(discriminator="type")]]

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def images(self) -> List[ImagePayload]:
        return [p.image for p in self.parts if isinstance(p, ImagePart)]


MessageContent = Annotated[Union[TextContent, MultimodalContent], Field(discriminator="kind")]


class ChatMessage(BaseModel):
    """One entry of the ordered history sent to the chat model."""
    role: Role
    content: MessageContent

    @classmethod
    def text(cls, role: Role, text: str) -> "ChatMessage":
        return cls(role=role, content=TextContent(text=text))


# Practice

class PracticeOption(BaseModel):
    label: str
    value: str
    is_correct: bool = Field(alias="isCorrect")

    model_config = ConfigDict(populate_by_name=True)


class PracticeProblem(BaseModel):
    problem: str
    difficulty: Optional[Literal["easy", "medium", "hard"]] = None
    options: List[PracticeOption]
    explanation: str
    student_answer: Optional[str] = Field(default=None, alias="studentAnswer")
    attempted_at: Optional[datetime] = Field(default=None, alias="attemptedAt")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def correct_option(self) -> Optional[PracticeOption]:
        return next((o for o in self.options if o.is_correct), None)

    def is_answer_correct(self, answer: Optional[str]) -> bool:
        correct = self.correct_option
        return answer is not None and correct is not None and answer in (correct.label, correct.value)


class PracticeSessionRecord(BaseModel):
    id: str
    conversation_id: str
    topic: str
    difficulty: Literal["easy", "medium", "hard"]
    problems: List[PracticeProblem]
    total_problems: int
    current_problem_index: int = 0
    score: int = 0
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def answered_count(self) -> int:
        return sum(1 for p in self.problems if p.student_answer is not None)


# Transcript

class MessageRecord(BaseModel):
    """A durable transcript message as read from the store."""
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at_ms: int
    image_ref: Optional[str] = None
    structured_context: Optional[StructuredContext] = None
    practice_session_id: Optional[str] = None
    practice_session: Optional[PracticeSessionRecord] = None
    is_voice: bool = False


class ConversationRecord(BaseModel):
    id: str
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None
