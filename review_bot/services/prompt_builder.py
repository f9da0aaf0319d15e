"""Assembly of the user prompt sent to the review model."""

import logging

from review_bot.config.settings import Settings
from review_bot.models.gitlab_types import DiffFile, MergeRequest
from review_bot.prompts.code_reviewer_prompt import USER_PROMPT_TEMPLATE
from review_bot.utils.diff_lines import annotate_diff

logger = logging.getLogger(__name__)

FILE_SEPARATOR = "\n" + "=" * 80 + "\n"
NO_STANDARDS_FOUND = "No relevant standards found"
PROMPT_TRUNCATED_MARKER = "\n...(prompt truncated by limit)\n"


class PromptBuilder:
    """Formats merge request diffs and reference context into one prompt."""

    def __init__(self, config: Settings) -> None:
        self.config = config

    def build_user_prompt(
        self, mr: MergeRequest, diffs: list[DiffFile], rag_context: str | None
    ) -> str:
        included = 0
        omitted = 0
        formatted: list[str] = []
        used = 0

        for diff in diffs or []:
            if diff.is_deleted or not diff.has_diff:
                omitted += 1
                continue
            if included >= self.config.max_files_per_review:
                omitted += 1
                continue

            one = self.format_diff(diff)
            extra = len(one) + (len(FILE_SEPARATOR) if formatted else 0)
            if used + extra > self.config.max_diff_chars_total:
                omitted += 1
                continue

            formatted.append(one)
            used += extra
            included += 1

        omitted_note = (
            f"\n...(omitted files: {omitted} due to limits)\n" if omitted else ""
        )

        prompt = USER_PROMPT_TEMPLATE.format(
            iid=mr.iid,
            title=mr.title or "No title",
            description=(mr.description or "").strip() or "No description",
            file_count=included,
            diffs=FILE_SEPARATOR.join(formatted),
            omitted=omitted_note,
            rag_section=self._rag_section(rag_context),
        )

        limit = self.config.max_prompt_chars_total
        if len(prompt) > limit:
            prompt = prompt[: limit - len(PROMPT_TRUNCATED_MARKER)] + PROMPT_TRUNCATED_MARKER

        logger.info(
            f"Prompt stats: included_files={included}, omitted_files={omitted}, "
            f"diff_chars={used}, rag_chars={len(rag_context or '')}, "
            f"prompt_chars={len(prompt)}"
        )
        return prompt

    def _rag_section(self, rag_context: str | None) -> str:
        if not self.config.rag_enabled:
            return ""
        context = (rag_context or "").strip()
        if not context:
            logger.warning("RAG is enabled but no context was found")
            context = NO_STANDARDS_FOUND
        return f"\nCoding standards:\n{context}\n"

    def format_diff(self, diff: DiffFile) -> str:
        lines = [f"File: {diff.path}", f"Status: {diff.status_label}"]
        limited = self._limit_diff(annotate_diff(diff.diff_text))
        if limited.strip():
            lines.append("")
            lines.append("Code changes (annotated with line numbers):")
            lines.append(limited)
        return "\n".join(lines) + "\n"

    def _limit_diff(self, annotated: str) -> str:
        if not annotated.strip():
            return ""

        max_chars = self.config.max_diff_chars_per_file
        if len(annotated) > max_chars:
            annotated = annotated[:max_chars] + "\n...(diff truncated)"

        max_lines = self.config.max_lines_per_file
        lines = annotated.split("\n")
        if len(lines) <= max_lines:
            return annotated
        return (
            "\n".join(lines[:max_lines])
            + f"\n...(diff truncated by lines: {len(lines)} -> {max_lines})"
        )
