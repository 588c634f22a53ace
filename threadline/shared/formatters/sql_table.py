"""Parse SQL tool output into a table plus query notes.

The SQL tool returns plain text: ``#``-prefixed lines are notes from the
executor, every other non-blank line is a ``;``-separated row and the first
row names the columns.
"""
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ParsedSqlContent:
    columns: list[str] = field(default_factory=list)
    data: list[list[str]] = field(default_factory=list)
    comments: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def has_table(self) -> bool:
        return bool(self.columns) and bool(self.data)

    @property
    def notes(self) -> list[str]:
        """Comment lines that are neither errors nor warnings."""
        flagged = set(self.errors) | set(self.warnings)
        return [c for c in self.comments if c not in flagged]


def comment_text(line: str) -> str:
    """Strip the leading ``#`` marker from a comment line."""
    return line.replace("#", "", 1).strip()


def parse_sql_content(content: str) -> ParsedSqlContent:
    parsed = ParsedSqlContent()
    rows: list[list[str]] = []

    for line in (content or "").split("\n"):
        if line.startswith("#"):
            parsed.comments.append(line)
            lowered = line.lower()
            if "error" in lowered:
                parsed.errors.append(line)
            elif "warning" in lowered:
                parsed.warnings.append(line)
        elif line.strip():
            rows.append(line.split(";"))

    if rows:
        parsed.columns = rows[0]
        parsed.data = rows[1:]
    return parsed
