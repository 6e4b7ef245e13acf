"""
Prompt Template System

Reusable prompt templates with variable interpolation and validation.
"""

from typing import Any, Optional
from string import Formatter

from tutor.exceptions import PromptTemplateError


class PromptTemplate:
    """Reusable template for generating prompts with {variable} placeholders."""

    def __init__(
        self,
        template: str,
        name: Optional[str] = None,
    ):
        self.template = template.strip()
        self.name = name or "unnamed"
        self.required_vars = self._extract_variables()

    def _extract_variables(self) -> set[str]:
        variables = set()
        for _, field_name, _, _ in Formatter().parse(self.template):
            if field_name:
                variables.add(field_name.split(".")[0].split("[")[0])
        return variables

    def render(self, **kwargs: Any) -> str:
        missing = self.required_vars - set(kwargs.keys())
        if missing:
            raise PromptTemplateError(template_name=self.name, missing_vars=sorted(missing))
        return self.template.format(**kwargs)

    def __repr__(self) -> str:
        return f"PromptTemplate(name='{self.name}', vars={self.required_vars})"


# Progress block convention shared by the chat system prompt.
# Literal braces are doubled for str.format.

PROGRESS_BLOCK_TEMPLATE = PromptTemplate(
    """PROGRESS TRACKING:
Whenever you are working through a specific problem with the student, end your
reply with one fenced block tagged `{block_tag}` in exactly this shape:

```{block_tag}
{{"version": 1, "{block_key}": {{"currentProblem": "<problem statement>", "currentStep": <1-based step>, "totalSteps": <number of steps>, "problemType": "<e.g. linear_equation>", "stepsCompleted": ["<short description>", ...], "currentEquation": "<optional current equation>", "stepRoadmap": ["<phase label>", ... exactly totalSteps labels]}}}}
```

Rules: currentStep is between 1 and totalSteps. stepRoadmap, if given, has
exactly totalSteps entries. Emit at most one such block per reply and omit it
entirely when no problem is in progress.""",
    name="progress_block",
)
