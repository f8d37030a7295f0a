# decay_mem/markdown.py

"""
Markdown views of the store.

- export_as_markdown(): one table per category, for humans and backups.
- migrate_markdown(): load the older free-form "memory tables" document
  (## <category> heading followed by a pipe table) into structured records.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from loguru import logger

from .errors import DecayMemError
from .models import MarkdownTable, MigrationResult
from .taxonomy import CATEGORIES

if TYPE_CHECKING:
    from .memory import Memory

_TITLE_RE = re.compile(r"^##?\s*(.+)")
_ROW_RE = re.compile(r"^\|.+?\|")
_SEPARATOR_RE = re.compile(r"^\|[-|:\s]+\|$")
_PLACEHOLDER_RE = re.compile(r"^(-+|\[.+\]|N/A|Empty|None|\s+)$", re.IGNORECASE)
_DATE_STAMP_RE = re.compile(r"\[\d{4}-\d{2}-\d{2}\]\s*")

MIN_CONTENT_LENGTH = 5
DEDUPE_PREFIX_CHARS = 30


def _format_day(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def export_as_markdown(memory: Memory, per_category: int = 50) -> str:
    """Render the top memories of each non-empty category as markdown tables."""
    output = ["# Memory Tables\n"]

    for category in CATEGORIES:
        memories = memory.list_by_category(category, limit=per_category)
        if not memories:
            continue

        output.append(f"\n## {category}")
        output.append("| Content | Importance | Confidence | Last Accessed |")
        output.append("|---------|------------|------------|---------------|")
        for mem in memories:
            content = mem.content.replace("|", "\\|").replace("\n", " ")
            output.append(
                f"| {content} | {mem.importance:.0f} | {mem.confidence:g} | "
                f"{_format_day(mem.last_accessed_at)} |"
            )

    return "\n".join(output)


def _parse_row(line: str) -> list[str]:
    cells = [cell.strip() for cell in line.split("|")]
    return cells[1:-1]


def parse_tables(text: str) -> list[MarkdownTable]:
    """
    Pull pipe tables out of a markdown document.

    The title comes from a `#`/`##` line directly above the header row
    ("Table" otherwise). Rows whose width differs from the header are dropped,
    and so are tables with no rows.
    """
    tables: list[MarkdownTable] = []
    lines = text.split("\n")
    current: MarkdownTable | None = None

    for i, raw in enumerate(lines):
        line = raw.strip()

        if _ROW_RE.match(line):
            if current is None:
                title_line = lines[i - 1].strip() if i > 0 else ""
                title_match = _TITLE_RE.match(title_line)
                current = MarkdownTable(
                    title=title_match.group(1).strip() if title_match else "Table",
                    headers=_parse_row(line),
                )
            elif not _SEPARATOR_RE.match(line):
                row = _parse_row(line)
                if len(row) == len(current.headers):
                    current.rows.append(row)
        elif current is not None:
            if current.rows:
                tables.append(current)
            current = None

    if current is not None and current.rows:
        tables.append(current)

    return tables


def _dedupe_key(category: str, content: str) -> str:
    return f"{category}:{content.lower()[:DEDUPE_PREFIX_CHARS]}"


def _clean_content(row: list[str]) -> str | None:
    content = row[0] if row and row[0] else " ".join(row).strip()
    if not content or _PLACEHOLDER_RE.match(content) or len(content) < MIN_CONTENT_LENGTH:
        return None

    content = _DATE_STAMP_RE.sub("", content).strip()
    if len(content) < MIN_CONTENT_LENGTH:
        return None
    return content


def migrate_markdown(
    memory: Memory,
    text: str,
    confidence: float = 85,
    dry_run: bool = False,
) -> MigrationResult:
    """
    Import legacy memory tables as records.

    Tables whose title is not an exact category are skipped wholesale. The
    first column is the content; placeholders, short rows and entries that
    duplicate an existing record (same category, same first 30 characters,
    case-insensitive) count as skipped.
    """
    tables = parse_tables(text)
    result = MigrationResult(tables=len(tables))
    seen: set[str] = set()
    loaded_categories: set[str] = set()

    for table in tables:
        category = table.title
        if category not in CATEGORIES:
            logger.info(f"[migrate] Unknown category: '{category}', skipping table")
            continue

        if category not in loaded_categories:
            for mem in memory.list_by_category(category, limit=10_000):
                seen.add(_dedupe_key(mem.category, mem.content))
            loaded_categories.add(category)

        migrated_here = 0
        for row in table.rows:
            content = _clean_content(row)
            if content is None:
                result.skipped += 1
                continue

            key = _dedupe_key(category, content)
            if key in seen:
                result.skipped += 1
                continue

            if not dry_run:
                try:
                    memory.add(content, category, confidence)
                except DecayMemError as e:
                    logger.warning(f"[migrate] Failed to add '{content[:50]}': {e}")
                    result.skipped += 1
                    continue

            seen.add(key)
            result.migrated += 1
            migrated_here += 1

        logger.info(f"[migrate] {migrated_here} memories for {category}")

    logger.info(
        f"[migrate] Complete: migrated={result.migrated} skipped={result.skipped} "
        f"tables={result.tables}"
    )
    return result
