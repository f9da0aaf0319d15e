"""Turns a merge request into a parsed review by asking the model."""

import json
import logging

from pydantic import ValidationError

from review_bot.config.settings import Settings
from review_bot.models.gitlab_types import DiffFile, MergeRequest
from review_bot.models.outputs import ReviewResult
from review_bot.prompts.code_reviewer_prompt import SYSTEM_PROMPT
from review_bot.services.ai_gateway import AiReviewGateway
from review_bot.services.prompt_builder import PromptBuilder
from review_bot.services.rag_context import RagContextAssembler

logger = logging.getLogger(__name__)


def extract_json_object(text: str) -> dict | None:
    """Return the first JSON object embedded in ``text``.

    Models sometimes wrap the answer in prose or markdown fences; scanning
    from each ``{`` with ``raw_decode`` finds the first complete object.
    """
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def parse_review_response(text: str) -> ReviewResult:
    """Parse the raw model answer, degrading to an empty review on garbage."""
    if not text or not text.strip():
        logger.warning("AI returned empty response")
        return ReviewResult.empty("AI returned empty response", score=0)

    payload = extract_json_object(text)
    if payload is None:
        logger.warning(f"No JSON object in AI response: {text[:200]!r}")
        return ReviewResult.empty("Failed to parse AI response", score=0)

    try:
        return ReviewResult.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"AI response did not match the review schema: {e}")
        return ReviewResult.empty("Failed to parse AI response", score=0)


class ReviewAnalyzer:
    """RAG context, prompt assembly, one model call, response parsing.

    Model call errors propagate to the caller; reference search failures do
    not.
    """

    def __init__(
        self,
        config: Settings,
        gateway: AiReviewGateway,
        rag_assembler: RagContextAssembler | None,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.rag_assembler = rag_assembler
        self.prompt_builder = prompt_builder or PromptBuilder(config)

    async def analyze(self, mr: MergeRequest, diffs: list[DiffFile]) -> ReviewResult:
        if not diffs:
            logger.info(f"No changed files in MR !{mr.iid}")
            return ReviewResult.empty("No changed files to analyze", score=10)

        rag_context = await self._rag_context(diffs)
        user_prompt = self.prompt_builder.build_user_prompt(mr, diffs, rag_context)

        answer = await self.gateway.ask(SYSTEM_PROMPT, user_prompt)
        result = parse_review_response(answer)

        logger.info(
            f"Review of MR !{mr.iid} parsed: score={result.score}, "
            f"findings={len(result.findings)}"
        )
        return result

    async def _rag_context(self, diffs: list[DiffFile]) -> str:
        if not self.config.rag_enabled or self.rag_assembler is None:
            return ""
        try:
            return await self.rag_assembler.build(diffs)
        except Exception as e:
            logger.warning(f"RAG context unavailable, continuing without it: {e}")
            return ""
