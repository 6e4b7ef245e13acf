"""Practice session data access layer."""
import json
import logging
import uuid
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session as DBSession

from shared.models.entities import PracticeSession
from shared.models.domain import PracticeProblem

logger = logging.getLogger(__name__)


def _dump_problems(problems: list[PracticeProblem]) -> str:
    return json.dumps([p.model_dump(mode="json", by_alias=True) for p in problems])


def load_problems(row: PracticeSession) -> list[PracticeProblem]:
    return [PracticeProblem.model_validate(p) for p in json.loads(row.problems_json)]


class PracticeRepository:
    """Repository for practice session CRUD operations."""

    def __init__(self, db: DBSession):
        self.db = db

    def create(
        self,
        conversation_id: str,
        topic: str,
        difficulty: str,
        problems: list[PracticeProblem],
    ) -> PracticeSession:
        """Persist a freshly generated practice session."""
        session = PracticeSession(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            topic=topic,
            difficulty=difficulty,
            problems_json=_dump_problems(problems),
            total_problems=len(problems),
            current_problem_index=0,
            score=0,
            created_at=datetime.utcnow(),
        )
        self.db.add(session)
        self.db.commit()
        self.db.refresh(session)
        return session

    def get_by_id(self, session_id: str) -> Optional[PracticeSession]:
        return self.db.query(PracticeSession).filter(PracticeSession.id == session_id).first()

    def save_answer(
        self,
        session: PracticeSession,
        problems: list[PracticeProblem],
        score: int,
    ) -> PracticeSession:
        """Write back problems (with the recorded answer) and the new score."""
        session.problems_json = _dump_problems(problems)
        session.score = score
        self.db.commit()
        self.db.refresh(session)
        return session

    def set_current_problem(self, session: PracticeSession, index: int) -> PracticeSession:
        session.current_problem_index = index
        self.db.commit()
        self.db.refresh(session)
        return session

    def complete(self, session: PracticeSession) -> PracticeSession:
        session.completed_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(session)
        return session
