"""
CSV export of call records, for download from the API or the CLI.
"""

from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, TextIO

import structlog

from voiceai.analytics import classify_outcome, dedupe_by_id, sentiment_bucket
from voiceai.models import CallRecord

log = structlog.get_logger(__name__)

# Output columns in order
OUTPUT_COLUMNS = [
    "id",
    "agent_id",
    "agent_name",
    "direction",
    "status",
    "outcome",
    "sentiment",
    "start_time",
    "end_time",
    "duration_seconds",
    "cost_usd",
    "in_voicemail",
    "call_summary",
    "recording_url",
]


def _row(record: CallRecord, include_transcript: bool) -> dict:
    analysis = record.call_analysis
    row = {
        "id": record.id,
        "agent_id": record.agent_id or "",
        "agent_name": record.agent_name or "",
        "direction": record.direction.value,
        "status": record.status,
        "outcome": classify_outcome(record).value,
        "sentiment": sentiment_bucket(record).value,
        "start_time": record.start_time,
        "end_time": record.end_time,
        "duration_seconds": record.duration_seconds,
        "cost_usd": f"{record.cost_usd:.4f}",
        "in_voicemail": "" if analysis is None or analysis.in_voicemail is None else str(analysis.in_voicemail).lower(),
        "call_summary": (analysis.call_summary if analysis else None) or "",
        "recording_url": record.recording_url or "",
    }
    if include_transcript:
        row["transcript"] = record.transcript_text or ""
    return row


def write_calls_csv(records: Iterable[CallRecord], out: TextIO, include_transcript: bool = False) -> int:
    """Write records (newest first) to an open text stream; returns the row count."""
    columns = list(OUTPUT_COLUMNS)
    if include_transcript:
        columns.append("transcript")

    rows = sorted(dedupe_by_id(records), key=lambda r: (r.created_at, r.id), reverse=True)
    writer = csv.DictWriter(out, fieldnames=columns)
    writer.writeheader()
    for record in rows:
        writer.writerow(_row(record, include_transcript))
    return len(rows)


def calls_csv_text(records: Iterable[CallRecord], include_transcript: bool = False) -> str:
    buffer = io.StringIO()
    write_calls_csv(records, buffer, include_transcript)
    return buffer.getvalue()


def generate_output_csv(
    records: Iterable[CallRecord],
    output_dir: Path,
    tenant_id: str = "",
    include_transcript: bool = False,
    now: Optional[datetime] = None,
) -> Path:
    """
    Export records to a timestamped CSV file under ``output_dir``.

    Returns the path to the generated file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d_%H%M%S")
    filename = f"calls_{tenant_id}_{timestamp}.csv" if tenant_id else f"calls_{timestamp}.csv"
    output_path = output_dir / filename

    with open(output_path, "w", newline="", encoding="utf-8") as f:
        count = write_calls_csv(records, f, include_transcript)

    log.info("calls_exported", path=str(output_path), rows=count)
    return output_path
