"""Assembly of retrieved coding standards into one budgeted prompt section.

Two strategies share the ``VectorSearch`` capability:

- ``FullRagContextAssembler`` issues one query per changed file.
- ``EconomyRagContextAssembler`` (default) issues one condensed query for the
  whole merge request plus one query for each of the largest files.

Both deduplicate blocks by content hash across the whole assembly, never
exceed the total character budget, and absorb every search failure: a failed
or empty search degrades to an empty string and never fails the review.
"""

import logging
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from review_bot.config.settings import Settings
from review_bot.models.gitlab_types import DiffFile
from review_bot.models.outputs import RagBlock
from review_bot.services.rag_service import (
    ReferenceLimits,
    VectorSearch,
    format_reference_blocks,
)
from review_bot.utils.diff_lines import extract_added_lines

logger = logging.getLogger(__name__)

TOTAL_TRUNCATED_MARKER = "\n...(references truncated by total limit)"
GENERAL_HEADER = "--- RAG: general context for whole MR ---"
TOP_FILES_HEADER = "--- RAG: additionally for largest files ---"

MIN_QUERY_CHARS_PER_FILE = 500
MAX_QUERY_CHARS_PER_FILE = 2500


class RagBudgets(BaseModel):
    """Character budgets of one assembly."""

    model_config = ConfigDict(frozen=True)

    total: int = 12000
    general: int = 4500
    per_file: int = 1500
    top_files: int = 3
    max_query_chars: int = 15000

    @classmethod
    def from_settings(cls, settings: Settings) -> "RagBudgets":
        return cls(
            total=settings.rag_max_context_chars_total,
            general=settings.rag_max_context_chars_general,
            per_file=settings.rag_max_context_chars_per_file,
            top_files=settings.rag_top_files,
            max_query_chars=settings.max_embedding_query_chars,
        )


class RagContextAssembler(Protocol):
    async def build(self, diffs: list[DiffFile]) -> str: ...


def rag_candidates(diffs: list[DiffFile] | None) -> list[DiffFile]:
    """Files worth searching for: not deleted and with a non-blank diff."""
    if not diffs:
        return []
    return [d for d in diffs if d is not None and not d.is_deleted and d.has_diff]


def display_path(diff: DiffFile) -> str:
    return diff.path or "unknown"


def limit_total(text: str, budget: int) -> str:
    """Cut ``text`` to ``budget`` characters, marker included."""
    if budget <= 0 or len(text) <= budget:
        return text
    if budget <= len(TOTAL_TRUNCATED_MARKER):
        return text[:budget]
    return text[: budget - len(TOTAL_TRUNCATED_MARKER)] + TOTAL_TRUNCATED_MARKER


def build_general_query(candidates: list[DiffFile], max_query_chars: int) -> str:
    """Condense all files into one query, giving each file a fair share.

    Each file contributes ``File: <path>`` followed by its added lines (or a
    raw prefix of the diff if it added nothing), limited to
    ``clamp(max_query_chars / file_count, 500, 2500)`` characters. Files are
    appended in order until the next one would overflow ``max_query_chars``.
    """
    if not candidates or max_query_chars <= 0:
        return ""

    per_file = max_query_chars // len(candidates)
    per_file = max(MIN_QUERY_CHARS_PER_FILE, min(MAX_QUERY_CHARS_PER_FILE, per_file))

    parts: list[str] = []
    used = 0
    for diff in candidates:
        header = f"File: {display_path(diff)}\n"
        snippet = extract_added_lines(diff.diff_text, per_file)
        if not snippet.strip():
            snippet = (diff.diff_text or "")[:per_file]

        block = header + snippet + "\n\n"
        if used + len(block) > max_query_chars:
            break
        parts.append(block)
        used += len(block)

    return "".join(parts)


class _BlockJoiner:
    """Joins blocks under a budget, skipping content already used elsewhere."""

    def __init__(self, limits: ReferenceLimits) -> None:
        self.limits = limits
        self.seen_hashes: set[str] = set()

    def join(self, blocks: list[RagBlock], budget: int) -> str:
        if not blocks or budget <= 0:
            return ""
        return format_reference_blocks(
            blocks, self.limits, budget, self.seen_hashes
        ).strip()


async def _safe_query(search: VectorSearch, text: str, label: str) -> list[RagBlock]:
    try:
        return await search.query(text)
    except Exception as e:
        logger.warning(f"RAG query failed for {label}: {type(e).__name__}: {e}")
        return []


class FullRagContextAssembler:
    """One query per changed file, using that file's diff as the query."""

    def __init__(
        self,
        search: VectorSearch,
        budgets: RagBudgets,
        limits: ReferenceLimits,
    ) -> None:
        self.search = search
        self.budgets = budgets
        self.limits = limits

    async def build(self, diffs: list[DiffFile]) -> str:
        candidates = rag_candidates(diffs)
        if not candidates:
            return ""

        joiner = _BlockJoiner(self.limits)
        sections: list[str] = []

        for diff in candidates:
            path = display_path(diff)
            blocks = await _safe_query(self.search, diff.diff_text or "", path)
            text = joiner.join(blocks, self.limits.max_chars_total)
            if text:
                sections.append(f"--- Reference for file: {path} ---\n{text}\n")

        result = limit_total("\n".join(sections).strip(), self.budgets.total)
        logger.info(f"FULL: rag files={len(sections)}, chars={len(result)}")
        return result


class EconomyRagContextAssembler:
    """A general pass over the whole MR plus a pass over the largest files."""

    def __init__(
        self,
        search: VectorSearch,
        budgets: RagBudgets,
        limits: ReferenceLimits,
    ) -> None:
        self.search = search
        self.budgets = budgets
        self.limits = limits

    async def build(self, diffs: list[DiffFile]) -> str:
        candidates = rag_candidates(diffs)
        if not candidates:
            return ""

        joiner = _BlockJoiner(self.limits)
        general = await self._general_section(candidates, joiner)
        top_files = await self._top_files_section(candidates, joiner)

        combined = "\n".join(s for s in (general, top_files) if s).strip()
        result = limit_total(combined, self.budgets.total)
        logger.info(f"ECONOMY: rag chars={len(result)}")
        return result

    async def _general_section(
        self, candidates: list[DiffFile], joiner: _BlockJoiner
    ) -> str:
        query = build_general_query(candidates, self.budgets.max_query_chars)
        if not query:
            return ""
        blocks = await _safe_query(self.search, query, "general pass")
        text = joiner.join(blocks, self.budgets.general)
        return f"{GENERAL_HEADER}\n{text}\n" if text else ""

    async def _top_files_section(
        self, candidates: list[DiffFile], joiner: _BlockJoiner
    ) -> str:
        if self.budgets.top_files <= 0:
            return ""

        biggest = sorted(
            candidates, key=lambda d: len(d.diff_text or ""), reverse=True
        )[: self.budgets.top_files]

        parts: list[str] = []
        for diff in biggest:
            path = display_path(diff)
            blocks = await _safe_query(self.search, diff.diff_text or "", path)
            text = joiner.join(blocks, self.budgets.per_file)
            if text:
                parts.append(f"[File: {path}]\n{text}\n")

        if not parts:
            return ""
        return f"{TOP_FILES_HEADER}\n" + "\n".join(parts)


def build_rag_context_assembler(
    search: VectorSearch, settings: Settings
) -> FullRagContextAssembler | EconomyRagContextAssembler:
    """Pick the assembly strategy configured by ``rag_economy_mode``."""
    budgets = RagBudgets.from_settings(settings)
    limits = ReferenceLimits.from_settings(settings)
    if settings.rag_economy_mode:
        return EconomyRagContextAssembler(search, budgets, limits)
    return FullRagContextAssembler(search, budgets, limits)
