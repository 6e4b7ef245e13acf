"""
Structured Context Extractor

Finds the progress payload the tutor embeds in its prose as a fenced block:

    ```json
    {"version": 1, "problemContext": {"currentProblem": "...", "currentStep": 1, ...}}
    ```

Policy: candidate blocks are scanned in order and the first one that parses,
carries the payload key, and satisfies the StructuredContext invariants wins.
Everything else is skipped. Extraction never raises.
"""

import json
import logging
import re
from typing import Optional

from pydantic import ValidationError

from shared.models.domain import StructuredContext
from tutor.exceptions import StructuredContextError

logger = logging.getLogger("tutor.context_extractor")

SUPPORTED_VERSION = 1
DEFAULT_BLOCK_KEY = "problemContext"
DEFAULT_BLOCK_TAG = "json"


def _block_pattern(tag: str) -> re.Pattern:
    return re.compile(r"```" + re.escape(tag) + r"\s*\n([\s\S]*?)\n```")


def _parse_block(raw: str, block_key: str) -> StructuredContext:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StructuredContextError(f"block is not valid JSON: {e.msg}") from e

    if not isinstance(parsed, dict) or block_key not in parsed:
        raise StructuredContextError(f"block has no '{block_key}' key")

    version = parsed.get("version", SUPPORTED_VERSION)
    if not isinstance(version, int) or version > SUPPORTED_VERSION:
        raise StructuredContextError(f"unsupported block version {version!r}")

    try:
        return StructuredContext.model_validate(parsed[block_key])
    except ValidationError as e:
        raise StructuredContextError(f"payload failed validation: {e.error_count()} error(s)") from e


def extract_structured_context(
    text: str,
    block_key: str = DEFAULT_BLOCK_KEY,
    block_tag: str = DEFAULT_BLOCK_TAG,
) -> Optional[StructuredContext]:
    """
    Return the first valid progress payload in `text`, or None.

    Pure function of its arguments.
    """
    if not text:
        return None

    for index, match in enumerate(_block_pattern(block_tag).finditer(text)):
        try:
            return _parse_block(match.group(1), block_key)
        except StructuredContextError as e:
            logger.debug(f"Skipping candidate block {index}: {e.message}")
    return None


def strip_structured_blocks(text: str, block_key: str = DEFAULT_BLOCK_KEY, block_tag: str = DEFAULT_BLOCK_TAG) -> str:
    """Remove fenced blocks carrying the payload key, for display."""

    def _replace(match: re.Match) -> str:
        try:
            parsed = json.loads(match.group(1))
        except json.JSONDecodeError:
            return match.group(0)
        if isinstance(parsed, dict) and block_key in parsed:
            return ""
        return match.group(0)

    return _block_pattern(block_tag).sub(_replace, text).strip()


class StructuredContextExtractor:
    """Extractor bound to the configured block key and fence tag."""

    def __init__(self, block_key: str = DEFAULT_BLOCK_KEY, block_tag: str = DEFAULT_BLOCK_TAG):
        self.block_key = block_key
        self.block_tag = block_tag

    def __call__(self, text: str) -> Optional[StructuredContext]:
        return extract_structured_context(text, self.block_key, self.block_tag)

    def strip(self, text: str) -> str:
        return strip_structured_blocks(text, self.block_key, self.block_tag)
