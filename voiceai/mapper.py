"""
Raw call document → CallRecord normalisation.

Documents reach us from the store, from backend functions and from seed
files, so timestamps arrive as native datetimes, store timestamps
(``{"seconds": ..., "nanoseconds": ...}`` or an object with those
attributes) or ISO strings. Everything is normalised to one ISO-8601 UTC
string with millisecond precision.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from voiceai.models import CallAnalysis, CallRecord, Direction


def format_iso(dt: datetime) -> str:
    """UTC, millisecond precision, ``Z`` suffix (sortable as text)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_iso(value: str) -> datetime:
    """Parse an ISO string into an aware UTC datetime (naive means UTC)."""
    dt = datetime.fromisoformat(value.strip())
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _from_seconds(seconds: Any, nanos: Any) -> Optional[datetime]:
    if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
        return None
    if isinstance(nanos, bool) or not isinstance(nanos, (int, float)):
        nanos = 0
    base = datetime.fromtimestamp(0, tz=timezone.utc)
    try:
        return base + timedelta(seconds=seconds, microseconds=int(nanos) // 1000)
    except (OverflowError, ValueError):
        return None


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Turn any supported timestamp shape into an aware datetime, or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            return parse_iso(value)
        except (OverflowError, ValueError):
            return None
    if isinstance(value, Mapping):
        if "seconds" in value:
            return _from_seconds(value["seconds"], value.get("nanoseconds", 0))
        if "_seconds" in value:
            return _from_seconds(value["_seconds"], value.get("_nanoseconds", 0))
        return None
    # protobuf / SDK timestamp objects
    seconds = getattr(value, "seconds", None)
    if seconds is not None:
        nanos = getattr(value, "nanoseconds", None)
        if nanos is None:
            nanos = getattr(value, "nanos", 0)
        return _from_seconds(seconds, nanos)
    return None


def to_iso_string(value: Any, now: Optional[datetime] = None) -> str:
    """Normalise a raw timestamp; missing/unparseable values become ``now``."""
    dt = coerce_datetime(value)
    if dt is not None:
        try:
            return format_iso(dt)
        except (OverflowError, ValueError):
            # aware datetimes at the edge of the calendar cannot shift to UTC
            pass
    return format_iso(now or datetime.now(timezone.utc))


# ── Field helpers ───────────────────────────────────────────────

def _pick(data: Mapping, *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return None


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _opt_bool(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _non_negative(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return max(0.0, float(value))


def _map_analysis(raw: Any) -> Optional[CallAnalysis]:
    if not isinstance(raw, Mapping):
        return None
    return CallAnalysis(
        user_sentiment=_opt_str(_pick(raw, "userSentiment", "user_sentiment")),
        call_successful=_opt_bool(_pick(raw, "callSuccessful", "call_successful")),
        call_summary=_opt_str(_pick(raw, "callSummary", "call_summary")),
        in_voicemail=_opt_bool(_pick(raw, "inVoicemail", "in_voicemail")),
    )


def map_raw_to_call_record(raw: Mapping, now: Optional[datetime] = None) -> CallRecord:
    """
    Map one raw call document onto a CallRecord.

    Total: every field has a fallback, so any mapping produces a record.
    ``now`` pins the fallback instant for missing timestamps; without it the
    current time is used.
    """
    now = now or datetime.now(timezone.utc)

    duration = _non_negative(_pick(raw, "durationSeconds", "duration_seconds"))
    cost = _non_negative(_pick(raw, "costUsd", "cost_usd"))
    direction = _pick(raw, "direction")
    dynamic = _pick(raw, "dynamicVariables", "dynamic_variables")

    return CallRecord(
        id=_opt_str(raw.get("id")) or "",
        agent_id=_opt_str(_pick(raw, "agentId", "agent_id")),
        agent_name=_opt_str(_pick(raw, "agentName", "agent_name")),
        dynamic_variables=dict(dynamic) if isinstance(dynamic, Mapping) else None,
        start_time=to_iso_string(_pick(raw, "startTime", "start_time"), now),
        end_time=to_iso_string(_pick(raw, "endTime", "end_time"), now),
        duration_seconds=int(duration) if duration is not None else 0,
        direction=Direction.OUTBOUND if direction == "outbound" else Direction.INBOUND,
        status=_opt_str(_pick(raw, "status")) or "ended",
        recording_url=_opt_str(_pick(raw, "recordingUrl", "recording_url")),
        transcript_text=_opt_str(_pick(raw, "transcriptText", "transcript_text")),
        call_analysis=_map_analysis(_pick(raw, "callAnalysis", "call_analysis")),
        cost_usd=cost if cost is not None else 0.0,
        created_at=to_iso_string(_pick(raw, "createdAt", "created_at"), now),
    )
