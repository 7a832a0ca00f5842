"""
Memory context for scheduled runs.

Reads the curated memory files (MEMORY.md for the agent's own notes,
USER.md for what it knows about the user) plus today's and yesterday's daily
notes under daily/, and renders them as one block for the system prompt.
Entries in the curated files are separated by a line holding only '§'.
"""

import logging
from datetime import date, timedelta
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

ENTRY_DELIMITER = "\n§\n"

LONG_TERM_MAX_CHARS = 4000
USER_MAX_CHARS = 2000
TODAY_MAX_CHARS = 4000
YESTERDAY_MAX_CHARS = 2000


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n[...truncated]"


def _read(path: Path) -> str:
    if not path.is_file():
        return ""
    try:
        return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read memory file %s: %s", path, e)
        return ""


def _entries(raw: str) -> str:
    entries = [e.strip() for e in raw.split(ENTRY_DELIMITER)]
    return "\n".join(f"- {e}" for e in entries if e)


def load_memory_context(memory_dir: Path, today: Optional[date] = None) -> str:
    """Return the memory block, or "" if there is nothing to inject."""
    memory_dir = Path(memory_dir)
    today = today or date.today()
    sections: List[str] = []

    long_term = _read(memory_dir / "MEMORY.md")
    if long_term:
        sections.append("## Long-term Memory (MEMORY.md)\n" + _truncate(_entries(long_term), LONG_TERM_MAX_CHARS))

    user = _read(memory_dir / "USER.md")
    if user:
        sections.append("## User Profile (USER.md)\n" + _truncate(_entries(user), USER_MAX_CHARS))

    for day, label, limit in (
        (today, "Today's Memory", TODAY_MAX_CHARS),
        (today - timedelta(days=1), "Yesterday's Memory", YESTERDAY_MAX_CHARS),
    ):
        stamp = day.isoformat()
        daily = _read(memory_dir / "daily" / f"{stamp}.md")
        if daily:
            sections.append(f"## {label} ({stamp})\n" + _truncate(daily, limit))

    if not sections:
        return ""

    return "--- Your Memory ---\n\n" + "\n\n".join(sections) + "\n\n--- End of Memory ---"
