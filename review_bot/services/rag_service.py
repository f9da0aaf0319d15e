"""Vector search over the coding standards knowledge base using Pinecone + LangChain."""

import logging
from collections.abc import Callable
from typing import Protocol

from langchain_openai import OpenAIEmbeddings
from langchain_pinecone import PineconeVectorStore
from pinecone import Pinecone
from pydantic import BaseModel, ConfigDict

from review_bot.config.settings import Settings
from review_bot.exceptions import RagContextError
from review_bot.models.outputs import RagBlock

logger = logging.getLogger(__name__)

DOC_TRIMMED_MARKER = "\n...(trimmed)\n"
REFERENCES_TRUNCATED_MARKER = "...(references truncated)\n"


class VectorSearch(Protocol):
    """Similarity search returning thresholded reference blocks."""

    async def query(self, text: str, top_k: int | None = None) -> list[RagBlock]: ...


class ReferenceLimits(BaseModel):
    """Budgets applied when formatting the blocks of one query."""

    model_config = ConfigDict(frozen=True)

    max_chars_total: int = 8000
    max_chars_per_doc: int = 1500
    max_docs_per_source: int = 2
    max_sources: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReferenceLimits":
        return cls(
            max_chars_total=settings.rag_max_chars_total,
            max_chars_per_doc=settings.rag_max_chars_per_doc,
            max_docs_per_source=settings.rag_max_docs_per_source,
            max_sources=settings.rag_max_sources,
        )


def apply_similarity_floor(
    blocks: list[RagBlock], min_similarity: float
) -> list[RagBlock]:
    """Drop blocks under the floor, keeping the best one if all would go.

    The result is ordered by similarity, best first.
    """
    ranked = sorted(blocks, key=lambda b: b.similarity_score, reverse=True)
    kept = [b for b in ranked if b.similarity_score >= min_similarity]
    if not kept and ranked:
        logger.debug(
            f"No block above similarity {min_similarity:.2f}; "
            f"keeping best ({ranked[0].similarity_score:.2f})"
        )
        return ranked[:1]
    return kept


def format_block(block: RagBlock, max_chars_per_doc: int) -> str:
    content = block.content or ""
    if len(content) > max_chars_per_doc:
        content = content[:max_chars_per_doc] + DOC_TRIMMED_MARKER
    return (
        f"📚 {block.source_id} (similarity: {block.similarity_score:.2f}):\n"
        f"{content}\n\n"
    )


def select_reference_blocks(
    blocks: list[RagBlock], limits: ReferenceLimits
) -> list[RagBlock]:
    """Pick blocks best first, capping distinct sources and docs per source.

    A new source is only admitted while fewer than ``max_sources`` are in use,
    and each source contributes at most ``max_docs_per_source`` documents.
    """
    per_source: dict[str, int] = {}
    selected: list[RagBlock] = []

    for block in sorted(blocks, key=lambda b: b.similarity_score, reverse=True):
        source = (block.source_id or "").strip() or "unknown"
        count = per_source.get(source)
        if count is None and len(per_source) >= limits.max_sources:
            continue
        if (count or 0) >= limits.max_docs_per_source:
            continue
        per_source[source] = (count or 0) + 1
        selected.append(block)

    return selected


def format_reference_blocks(
    blocks: list[RagBlock],
    limits: ReferenceLimits,
    max_chars: int | None = None,
    seen_hashes: set[str] | None = None,
) -> str:
    """Render retrieved blocks for the prompt within the per-query budgets.

    The output never exceeds ``max_chars`` (``max_chars_total`` by default);
    when a block does not fit, a truncation marker is appended (if it fits)
    and formatting stops. Blocks whose content hash is already in
    ``seen_hashes`` are skipped and rendered ones are added to it.
    """
    budget = limits.max_chars_total if max_chars is None else max_chars
    parts: list[str] = []
    used = 0

    for block in select_reference_blocks(blocks, limits):
        if seen_hashes is not None and block.content_hash in seen_hashes:
            continue
        rendered = format_block(block, limits.max_chars_per_doc)
        if used + len(rendered) > budget:
            if used + len(REFERENCES_TRUNCATED_MARKER) <= budget:
                parts.append(REFERENCES_TRUNCATED_MARKER)
            break
        parts.append(rendered)
        used += len(rendered)
        if seen_hashes is not None:
            seen_hashes.add(block.content_hash)

    logger.debug(f"RAG formatting: blocks={len(parts)}, chars={used}")
    return "".join(parts)


class PineconeVectorSearch:
    """Queries the Pinecone standards index through LangChain.

    The store is created on first use. When RAG is disabled or Pinecone is not
    configured every query returns no blocks. Backend failures are raised as
    ``RagContextError`` for the assembler to absorb.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._store: PineconeVectorStore | None = None

    def is_available(self) -> bool:
        """Check whether RAG is enabled and Pinecone is configured."""
        return self.settings.rag_enabled and bool(self.settings.pinecone_api_key)

    def _get_store(self) -> PineconeVectorStore:
        if self._store is not None:
            return self._store

        pc = Pinecone(api_key=self.settings.pinecone_api_key)
        index = pc.Index(self.settings.pinecone_index_name)

        api_key_callable: Callable[[], str] | None = None
        if self.settings.openai_api_key:
            openai_api_key = self.settings.openai_api_key

            def api_key_callable() -> str:
                return openai_api_key

        embeddings = OpenAIEmbeddings(
            model=self.settings.embedding_model,
            api_key=api_key_callable,
        )
        self._store = PineconeVectorStore(index=index, embedding=embeddings)
        logger.info(
            f"Vector search initialized with index: {self.settings.pinecone_index_name}"
        )
        return self._store

    async def query(self, text: str, top_k: int | None = None) -> list[RagBlock]:
        """Return the blocks most similar to ``text``, thresholded.

        Args:
            text: Query payload; cut to ``max_embedding_query_chars``
            top_k: Number of results to retrieve (default from settings)

        Returns:
            Blocks sorted by similarity, best first
        """
        if not text or not text.strip():
            return []
        if not self.is_available():
            logger.debug("Vector search is not available")
            return []

        max_chars = self.settings.max_embedding_query_chars
        safe_text = text[:max_chars] if max_chars > 0 else text
        k = top_k or self.settings.rag_top_k

        try:
            store = self._get_store()
            results = await store.asimilarity_search_with_score(query=safe_text, k=k)
        except Exception as e:
            raise RagContextError(
                f"Vector search failed: {type(e).__name__}: {str(e)[:200]}"
            ) from e

        blocks = [
            RagBlock(
                source_id=str(doc.metadata.get("source") or "unknown"),
                similarity_score=float(score),
                content=doc.page_content,
            )
            for doc, score in results
        ]
        kept = apply_similarity_floor(blocks, self.settings.rag_min_similarity)

        logger.info(
            f"RAG search: query='{safe_text[:50]}...', "
            f"retrieved={len(blocks)}, kept={len(kept)}"
        )
        return kept
