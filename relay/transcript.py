#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Recent-context extraction from worker transcripts.

Transcripts are JSONL files; each line is one entry with a "type" and a
"message". Only user and assistant entries with text content are kept.
"""

import json
from collections import deque
from pathlib import Path
from typing import List, Optional, Union

TAIL_LINES = 100
MAX_ENTRY_CHARS = 300
MAX_ENTRIES = 15


def _entry_text(content) -> Optional[str]:
    """Message content as text: a plain string, or the first text block."""
    if isinstance(content, str):
        return content
    if isinstance(content, list) and content:
        first = content[0]
        if isinstance(first, dict):
            text = first.get("text")
            return text if isinstance(text, str) else None
        if isinstance(first, str):
            return first
    return None


def extract_recent_context(
    transcript_path: Union[str, Path],
    tail_lines: int = TAIL_LINES,
    max_chars: int = MAX_ENTRY_CHARS,
    max_entries: int = MAX_ENTRIES,
) -> List[str]:
    """
    Summarise the end of a transcript as `"<role>: <text>"` lines.

    Reads the last tail_lines lines, keeps user/assistant entries, truncates
    each to max_chars and returns the last max_entries. A missing file gives
    an empty list; malformed lines are skipped.
    """
    path = Path(transcript_path)
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            tail = deque(f, maxlen=tail_lines)
    except (FileNotFoundError, IsADirectoryError):
        return []

    entries: List[str] = []
    for line in tail:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue
        role = entry.get("type")
        if role not in ("user", "assistant"):
            continue
        message = entry.get("message")
        if not isinstance(message, dict):
            continue
        text = _entry_text(message.get("content"))
        if text is None:
            continue
        entries.append(f"{role}: {text[:max_chars]}")
    return entries[-max_entries:]


def build_auto_handoff_content(
    channel: str,
    working_dir: str,
    session_id: Optional[str],
    timestamp: str,
    recent: List[str],
    reason: str = "Context size reached the critical tier",
) -> str:
    """Markdown body for an automatically created handoff."""
    activity = "\n".join(recent) if recent else "No recent context extracted"
    return (
        f"# Auto-Handoff\n"
        f"\n"
        f"**Timestamp:** {timestamp}\n"
        f"**Project:** {working_dir}\n"
        f"**Channel:** {channel}\n"
        f"**Session:** {session_id or 'unknown'}\n"
        f"\n"
        f"## Why\n"
        f"\n"
        f"{reason}. This handoff was created automatically so the next\n"
        f"session can continue where this one stopped.\n"
        f"\n"
        f"## Recent Activity\n"
        f"\n"
        f"```\n"
        f"{activity}\n"
        f"```\n"
        f"\n"
        f"## Next Steps\n"
        f"\n"
        f"1. Review the recent activity above\n"
        f"2. Announce: \"Restored from auto-handoff. Channel: {channel}\"\n"
        f"3. Continue where we left off"
    )
