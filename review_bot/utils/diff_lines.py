"""Line bookkeeping for GitLab unified diffs.

GitLab only accepts an inline comment on a ``new_line`` that appears in the
diff as a context or added line. Everything here works on the raw ``diff``
string GitLab returns for one file (no ``diff --git`` preamble, usually no
``---``/``+++`` headers, hunks separated by ``@@`` lines).
"""

import re

from review_bot.models.gitlab_types import DiffFile

HUNK_PATTERN = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@.*$")


def _is_file_header(line: str) -> bool:
    return line.startswith("+++ ") or line.startswith("--- ")


def compute_valid_new_lines(diff_text: str | None) -> frozenset[int]:
    """Return the new-file line numbers an inline comment may anchor to.

    Context (``' '``) and added (``'+'``) lines consume a new-file line number;
    removed lines and ``\\ No newline at end of file`` markers do not. Lines
    before the first hunk header are ignored.

    Example:
        >>> sorted(compute_valid_new_lines("@@ -10,3 +10,4 @@\\n a\\n-b\\n+c\\n+d\\n e"))
        [10, 11, 12, 13]
    """
    if not diff_text or not diff_text.strip():
        return frozenset()

    valid: set[int] = set()
    current_new_line = -1

    for line in diff_text.split("\n"):
        if _is_file_header(line):
            continue

        match = HUNK_PATTERN.match(line)
        if match:
            current_new_line = int(match.group(3))
            continue

        if current_new_line <= 0:
            continue

        if line.startswith(" ") or line.startswith("+"):
            valid.add(current_new_line)
            current_new_line += 1

    return frozenset(valid)


def resolve_paths(diff: DiffFile) -> tuple[str, str]:
    """Return ``(old_path, new_path)``, each falling back to the other."""
    new_path = diff.new_path or diff.old_path or ""
    old_path = diff.old_path or new_path
    return old_path, new_path


def annotate_diff(diff_text: str | None) -> str:
    """Prefix every hunk line with the line number the model should cite.

    Context lines read `` 12: ...``, added lines ``+13: ...`` (new-file
    numbers) and removed lines ``-7: ...`` (old-file numbers), so a finding's
    ``lineNumber`` copied from a ``' '`` or ``'+'`` line is always commentable.
    """
    if not diff_text:
        return ""

    annotated: list[str] = []
    old_line = -1
    new_line = -1

    for line in diff_text.split("\n"):
        if _is_file_header(line):
            annotated.append(line)
            continue

        match = HUNK_PATTERN.match(line)
        if match:
            old_line = int(match.group(1))
            new_line = int(match.group(3))
            annotated.append(line)
            continue

        if new_line <= 0:
            annotated.append(line)
            continue

        if line.startswith("+"):
            annotated.append(f"+{new_line}: {line[1:]}")
            new_line += 1
        elif line.startswith("-"):
            annotated.append(f"-{old_line}: {line[1:]}")
            old_line += 1
        elif line.startswith(" "):
            annotated.append(f" {new_line}: {line[1:]}")
            old_line += 1
            new_line += 1
        else:
            annotated.append(line)

    return "\n".join(annotated)


def extract_added_lines(diff_text: str | None, max_chars: int) -> str:
    """Collect added lines (without the ``+++`` header) up to ``max_chars``."""
    if not diff_text or max_chars <= 0:
        return ""

    collected: list[str] = []
    used = 0
    for line in diff_text.split("\n"):
        if not line.startswith("+") or line.startswith("+++"):
            continue
        cost = len(line) + 1
        if used + cost > max_chars:
            break
        collected.append(line)
        used += cost

    return "\n".join(collected)
