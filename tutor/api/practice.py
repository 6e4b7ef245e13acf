"""Practice quiz endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from shared.models.domain import MessageRecord, PracticeProblem, PracticeSessionRecord
from shared.utils.exceptions import to_http_exception
from tutor.api.dependencies import TutorServices, get_services
from tutor.exceptions import TutorError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["practice"])


class ContextMessage(BaseModel):
    role: str
    content: str


class GeneratePracticeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    topic_description: str = Field(default="", alias="topicDescription")
    count: int
    recent_context: Optional[list[ContextMessage]] = Field(default=None, alias="recentContext")


class GeneratePracticeResponse(BaseModel):
    problems: list[PracticeProblem]
    difficulty: str


class StartPracticeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    topic_description: str = Field(alias="topicDescription")
    count: int


class StartPracticeResponse(BaseModel):
    session: PracticeSessionRecord
    message: MessageRecord


class AnswerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    problem_index: int = Field(alias="problemIndex")
    answer: Optional[str] = None


class CurrentProblemRequest(BaseModel):
    index: int


@router.post("/practice/generate", response_model=GeneratePracticeResponse)
async def generate_practice(request: GeneratePracticeRequest, services: TutorServices = Depends(get_services)):
    """Generate a validated problem set without persisting it."""
    try:
        context = [m.model_dump() for m in request.recent_context or []]
        problems, difficulty = await services.practice_generator.generate(request.topic_description, request.count, context)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": str(e)})
    except TutorError as e:
        raise to_http_exception(e)
    return GeneratePracticeResponse(problems=problems, difficulty=difficulty)


@router.post("/conversations/{conversation_id}/practice", response_model=StartPracticeResponse)
async def start_practice(
    conversation_id: str,
    request: StartPracticeRequest,
    services: TutorServices = Depends(get_services),
):
    """Generate a quiz, persist it and add it to the conversation."""
    try:
        session, message = await services.practice.start(conversation_id, request.topic_description, request.count)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": str(e)})
    except TutorError as e:
        raise to_http_exception(e)
    return StartPracticeResponse(session=session, message=message)


@router.get("/practice/sessions/{session_id}", response_model=PracticeSessionRecord)
def get_practice_session(session_id: str, services: TutorServices = Depends(get_services)):
    try:
        return services.practice.get(session_id)
    except TutorError as e:
        raise to_http_exception(e)


@router.post("/practice/sessions/{session_id}/answers", response_model=PracticeSessionRecord)
def answer_problem(session_id: str, request: AnswerRequest, services: TutorServices = Depends(get_services)):
    """Record (or clear, with a null answer) the answer to one problem."""
    try:
        return services.practice.answer(session_id, request.problem_index, request.answer)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TutorError as e:
        raise to_http_exception(e)


@router.put("/practice/sessions/{session_id}/current", response_model=PracticeSessionRecord)
def set_current_problem(session_id: str, request: CurrentProblemRequest, services: TutorServices = Depends(get_services)):
    try:
        return services.practice.set_current_problem(session_id, request.index)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TutorError as e:
        raise to_http_exception(e)


@router.post("/practice/sessions/{session_id}/complete", response_model=PracticeSessionRecord)
def complete_practice(session_id: str, services: TutorServices = Depends(get_services)):
    try:
        return services.practice.complete(session_id)
    except TutorError as e:
        raise to_http_exception(e)
