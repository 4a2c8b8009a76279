"""
Transcript search within a single call.

Transcripts are stored as plain text, one utterance per line, each line
prefixed with its speaker (``Agent: ...`` / ``Customer: ...``).
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Optional

_SPEAKER_RE = re.compile(r"^\s*([A-Za-z][\w ]{0,30}):\s*(.*)$")
_ROLES = {"agent": "agent", "assistant": "agent", "customer": "user", "user": "user", "caller": "user"}


@dataclass
class TranscriptSegment:
    segment_index: int
    role: str
    content: str


@dataclass
class TranscriptMatch:
    segment_index: int
    role: str
    content: str
    highlight: str


def split_transcript(text: Optional[str]) -> list[TranscriptSegment]:
    segments = []
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        m = _SPEAKER_RE.match(line)
        if m:
            role = _ROLES.get(m.group(1).strip().lower(), m.group(1).strip().lower())
            content = m.group(2).strip()
        else:
            role, content = "unknown", line.strip()
        segments.append(TranscriptSegment(segment_index=len(segments), role=role, content=content))
    return segments


def _highlight(content: str, query: str, context: int = 40) -> str:
    """Snippet around the first match with the hit wrapped in ``<mark>``."""
    idx = content.lower().find(query.lower())
    start = max(0, idx - context)
    end = min(len(content), idx + len(query) + context)
    before = html.escape(content[start:idx])
    hit = html.escape(content[idx:idx + len(query)])
    after = html.escape(content[idx + len(query):end])
    prefix = "…" if start > 0 else ""
    suffix = "…" if end < len(content) else ""
    return f"{prefix}{before}<mark>{hit}</mark>{after}{suffix}"


def search_transcript(text: Optional[str], query: str) -> list[TranscriptMatch]:
    """Case-insensitive substring search over a transcript's segments."""
    query = query.strip()
    if not query:
        return []
    return [
        TranscriptMatch(
            segment_index=seg.segment_index,
            role=seg.role,
            content=seg.content,
            highlight=_highlight(seg.content, query),
        )
        for seg in split_transcript(text)
        if query.lower() in seg.content.lower()
    ]
