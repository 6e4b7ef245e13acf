"""Builders shared across test modules."""
import io

from PIL import Image

from shared.models.domain import MessageRecord, PracticeOption, PracticeProblem


def make_problem(text: str = "What is 2 + 3?", correct: str = "B", difficulty: str = "easy") -> PracticeProblem:
    values = {"A": "4", "B": "5", "C": "6", "D": "7"}
    return PracticeProblem(
        problem=text,
        difficulty=difficulty,
        options=[
            PracticeOption(label=label, value=value, is_correct=(label == correct))
            for label, value in values.items()
        ],
        explanation="2 + 3 = 5",
    )


def raw_problem(text: str = "Solve x + 2 = 5", correct_labels: tuple = ("C",)) -> dict:
    """A problem as the model returns it (camelCase JSON)."""
    return {
        "problem": text,
        "difficulty": "easy",
        "options": [
            {"label": label, "value": value, "isCorrect": label in correct_labels}
            for label, value in (("A", "1"), ("B", "2"), ("C", "3"), ("D", "4"))
        ],
        "explanation": "Subtract 2 from both sides: x = 3.",
    }


class FakeTranscript:
    """Append/list contract of the transcript store, in memory."""

    def __init__(self):
        self.records: list[MessageRecord] = []
        self.on_append = None

    async def append(self, conversation_id: str, role: str, content: str, **kwargs) -> MessageRecord:
        if self.on_append:
            self.on_append(role)
        record = MessageRecord(
            id=f"m{len(self.records) + 1}",
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at_ms=1000 + len(self.records),
            image_ref=kwargs.get("image_ref"),
            structured_context=kwargs.get("structured_context"),
            is_voice=kwargs.get("is_voice", False),
        )
        self.records.append(record)
        return record

    async def list_recent(self, conversation_id: str, limit: int = 15) -> list[MessageRecord]:
        return list(self.records[-limit:])


def png_bytes(size: tuple = (40, 20), color: tuple = (0, 0, 0, 255)) -> bytes:
    """A small rendered canvas."""
    buffer = io.BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()
