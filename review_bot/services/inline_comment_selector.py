"""Choose which findings become inline comments and where they are anchored."""

import logging
import posixpath

from pydantic import BaseModel, ConfigDict

from review_bot.config.settings import Settings
from review_bot.models.gitlab_types import DiffFile
from review_bot.models.outputs import Finding, InlineComment, Severity
from review_bot.utils.diff_lines import compute_valid_new_lines, resolve_paths

logger = logging.getLogger(__name__)

SEVERITY_ICONS = {
    Severity.CRITICAL: "🔴",
    Severity.WARNING: "🟠",
}
DEFAULT_ICON = "ℹ️"

MAX_FIX_CHARS = 400
# Probe order for findings whose line is not commentable
LINE_OFFSETS = (-1, 1, -2, 2)


class InlineCommentLimits(BaseModel):
    """Budgets applied to one inline selection."""

    model_config = ConfigDict(frozen=True)

    max_total: int = 10
    max_per_file: int = 3
    max_body_chars: int = 1200

    @classmethod
    def from_settings(cls, settings: Settings) -> "InlineCommentLimits":
        return cls(
            max_total=settings.max_inline_comments,
            max_per_file=settings.max_inline_comments_per_file,
            max_body_chars=settings.max_inline_comment_chars,
        )


def normalize_path(raw: str | None) -> str:
    """Strip the decorations the model tends to put around file names."""
    if not raw:
        return ""
    path = raw.strip()
    if path.lower().startswith("file:"):
        path = path[len("file:") :].strip()
    path = path.replace("`", "").strip()
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def index_diffs_by_path(diffs: list[DiffFile]) -> dict[str, DiffFile]:
    """Map both the new and the old path of every diff to the diff itself."""
    indexed: dict[str, DiffFile] = {}
    for diff in diffs:
        for path in (diff.new_path, diff.old_path):
            key = normalize_path(path)
            if key and key not in indexed:
                indexed[key] = diff
    return indexed


def format_comment_body(finding: Finding, max_chars: int) -> str:
    """Render the markdown body of one inline comment within ``max_chars``."""
    icon = SEVERITY_ICONS.get(finding.severity, DEFAULT_ICON)
    severity = finding.severity.value if finding.severity else "INFO"

    header = f"{icon} **{severity}**"
    if finding.category is not None:
        header += f" • {finding.category.value}"

    body = header + "\n\n" + (finding.message or "").strip()

    fix = (finding.suggested_fix or "").strip()
    if fix:
        if len(fix) > MAX_FIX_CHARS:
            fix = fix[:MAX_FIX_CHARS] + "…"
        body += "\n\n**Suggested fix:**\n" + fix

    if len(body) > max_chars:
        body = body[: max(max_chars - 1, 0)] + "…"
    return body


class InlineCommentSelector:
    """
    Turns untrusted findings into a bounded list of placeable inline comments.

    Only CRITICAL and WARNING findings are considered. Candidates are ranked
    by severity (stable for ties), matched to a diff, and allocated in two
    passes: the first honours the per-file cap, the second lets the remaining
    total budget overflow into files that already hit it. Every emitted
    comment is anchored on a line GitLab accepts for that file.
    """

    def select(
        self,
        findings: list[Finding],
        diffs_by_path: dict[str, DiffFile],
        limits: InlineCommentLimits,
    ) -> list[InlineComment]:
        if not findings or not diffs_by_path or limits.max_total <= 0:
            return []

        candidates = [f for f in findings if self._is_candidate(f)]
        candidates.sort(key=lambda f: f.severity.weight, reverse=True)

        valid_lines_cache: dict[str, frozenset[int]] = {}
        per_file: dict[str, int] = {}
        seen_keys: set[str] = set()
        selected: list[InlineComment] = []

        for enforce_per_file in (True, False):
            for finding in candidates:
                if len(selected) >= limits.max_total:
                    return selected

                diff = self._resolve_diff(finding.file_name, diffs_by_path)
                if diff is None:
                    continue

                old_path, new_path = resolve_paths(diff)
                file_count = per_file.get(new_path, 0)
                if enforce_per_file and file_count >= limits.max_per_file:
                    continue

                if new_path not in valid_lines_cache:
                    valid_lines_cache[new_path] = compute_valid_new_lines(
                        diff.diff_text
                    )
                line = self._fix_line(finding.line_number, valid_lines_cache[new_path])
                if line is None:
                    continue

                category = finding.category.value if finding.category else "NA"
                key = f"{new_path}#{line}#{category}"
                if key in seen_keys:
                    continue
                seen_keys.add(key)

                selected.append(
                    InlineComment(
                        old_path=old_path,
                        new_path=new_path,
                        line=line,
                        body=format_comment_body(finding, limits.max_body_chars),
                    )
                )
                per_file[new_path] = per_file.get(new_path, 0) + 1

            if len(selected) >= limits.max_total:
                break

        return selected

    @staticmethod
    def _is_candidate(finding: Finding) -> bool:
        return (
            finding.is_blocking
            and bool(finding.file_name and finding.file_name.strip())
            and finding.line_number is not None
            and finding.line_number > 0
            and bool(finding.message and finding.message.strip())
        )

    @staticmethod
    def _resolve_diff(
        file_name: str | None, diffs_by_path: dict[str, DiffFile]
    ) -> DiffFile | None:
        key = normalize_path(file_name)
        if not key:
            return None

        exact = diffs_by_path.get(key)
        if exact is not None:
            return exact

        suffix = "/" + posixpath.basename(key)
        for path, diff in diffs_by_path.items():
            if path.endswith(suffix):
                logger.warning(
                    f"Low-confidence file match: '{file_name}' resolved to '{path}' by basename"
                )
                return diff
        return None

    @staticmethod
    def _fix_line(proposed: int | None, valid_lines: frozenset[int]) -> int | None:
        if proposed is None or not valid_lines:
            return None
        if proposed in valid_lines:
            return proposed
        for offset in LINE_OFFSETS:
            candidate = proposed + offset
            if candidate > 0 and candidate in valid_lines:
                return candidate
        return None
