"""Output models for AI review responses and what gets published from them."""

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"

    @property
    def weight(self) -> int:
        """Ordering weight used when ranking findings."""
        return {"CRITICAL": 3, "WARNING": 2, "INFO": 1}[self.value]


class Category(str, Enum):
    NAMING_CONVENTION = "NAMING_CONVENTION"
    PERFORMANCE = "PERFORMANCE"
    SECURITY = "SECURITY"
    DESIGN_PATTERN = "DESIGN_PATTERN"
    ERROR_HANDLING = "ERROR_HANDLING"
    CODE_STYLE = "CODE_STYLE"
    OTHER = "OTHER"

    @property
    def description(self) -> str:
        return {
            "NAMING_CONVENTION": "Naming conventions",
            "PERFORMANCE": "Performance",
            "SECURITY": "Security",
            "DESIGN_PATTERN": "Design and architecture",
            "ERROR_HANDLING": "Error handling",
            "CODE_STYLE": "Code style",
            "OTHER": "Other",
        }[self.value]

    @property
    def emoji(self) -> str:
        return {
            "NAMING_CONVENTION": "🏷️",
            "PERFORMANCE": "🚀",
            "SECURITY": "🔒",
            "DESIGN_PATTERN": "🏗️",
            "ERROR_HANDLING": "🧯",
            "CODE_STYLE": "🎨",
            "OTHER": "ℹ️",
        }[self.value]


SEVERITY_EMOJI = {
    Severity.CRITICAL: "🔴",
    Severity.WARNING: "🟡",
    Severity.INFO: "🔵",
}

# Keys the model is known to use interchangeably for the same field
_FINDING_ALIASES = {
    "text": "message",
    "fileName": "file_name",
    "filePath": "file_name",
    "file_path": "file_name",
    "path": "file_name",
    "file": "file_name",
    "lineNumber": "line_number",
    "line": "line_number",
    "suggestionFix": "suggested_fix",
    "suggestedFix": "suggested_fix",
    "suggestion_fix": "suggested_fix",
}


class Finding(BaseModel):
    """A single issue reported by the model.

    Parsing is lenient because the payload is untrusted model output: known
    key aliases are folded, severity is case-insensitive, and unknown
    severities, categories or non-numeric line numbers become ``None``.
    """

    model_config = ConfigDict(extra="ignore")

    category: Category | None = None
    severity: Severity | None = None
    message: str | None = None
    file_name: str | None = None
    line_number: int | None = None
    suggested_fix: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _fold_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        folded = dict(data)
        for alias, field_name in _FINDING_ALIASES.items():
            if alias in folded:
                value = folded.pop(alias)
                if folded.get(field_name) is None:
                    folded[field_name] = value
        return folded

    @field_validator("severity", "category", mode="before")
    @classmethod
    def _lenient_enum(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or isinstance(value, Enum):
            return value
        members = (
            Severity.__members__
            if info.field_name == "severity"
            else Category.__members__
        )
        normalized = str(value).strip().upper().replace(" ", "_").replace("-", "_")
        return normalized if normalized in members else None

    @field_validator("line_number", mode="before")
    @classmethod
    def _lenient_line(cls, value: Any) -> Any:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        try:
            return int(str(value).strip())
        except ValueError:
            return None

    @property
    def is_blocking(self) -> bool:
        """CRITICAL and WARNING findings are candidates for inline comments."""
        return self.severity in (Severity.CRITICAL, Severity.WARNING)


class ReviewResult(BaseModel):
    """Complete review of one merge request commit."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    score: int = Field(default=0, ge=0, le=10)
    summary: str | None = None
    findings: list[Finding] = Field(default_factory=list, alias="suggestions")
    analyzed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="analyzedAt"
    )
    metadata: str | None = None

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> Any:
        if value is None:
            return 0
        try:
            score = int(round(float(value)))
        except (TypeError, ValueError, OverflowError):
            return 0
        return max(0, min(10, score))

    @field_validator("findings", mode="before")
    @classmethod
    def _drop_garbage_findings(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict | Finding)]
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _stringify_metadata(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return ", ".join(f"{key}={item}" for key, item in value.items())
        return value

    @classmethod
    def empty(cls, summary: str, score: int = 0) -> "ReviewResult":
        """A review without findings, used when there is nothing to parse."""
        return cls(score=score, summary=summary, findings=[])

    def format_summary_markdown(self) -> str:
        """Format the review as GitLab-flavored markdown for the summary note."""
        if self.score >= 9:
            emoji = "🌟"
        elif self.score >= 7:
            emoji = "✅"
        elif self.score >= 5:
            emoji = "⚠️"
        else:
            emoji = "❌"

        lines = [f"## {emoji} Review result: {self.score}/10"]

        if self.summary:
            lines.append("")
            lines.append(self.summary)

        grouped: dict[Category, list[Finding]] = {}
        for finding in self.findings:
            if finding.category is None:
                continue
            grouped.setdefault(finding.category, []).append(finding)

        for category, findings in grouped.items():
            lines.append("")
            lines.append(f"### {category.emoji} {category.description}")
            for finding in findings:
                severity_emoji = SEVERITY_EMOJI.get(finding.severity, "⚪")
                lines.append(f"- {severity_emoji} {finding.message or ''}")

        lines.append("")
        lines.append("---")
        lines.append("*🤖 Automated AI code review*")
        lines.append("")
        lines.append(f"*Analyzed at: {self.analyzed_at.strftime('%d.%m.%Y %H:%M:%S')}*")
        if self.metadata:
            lines.append("")
            lines.append(f"*Stats:* {self.metadata}")

        return "\n".join(lines) + "\n"


class InlineComment(BaseModel):
    """A per-line annotation ready to be posted as a GitLab discussion."""

    model_config = ConfigDict(frozen=True)

    old_path: str
    new_path: str
    line: int
    body: str


class RagBlock(BaseModel):
    """One retrieved reference document."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    similarity_score: float
    content: str

    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()
