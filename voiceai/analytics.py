"""
Aggregation views over lists of call records.

Every function here is a pure fold: no I/O, no mutation of its input, and
the result does not depend on input order. Inputs are de-duplicated by
call id first. Each call lands in exactly one outcome bucket (see
``classify_outcome``), every rate is guarded against an empty
denominator, and money is summed with ``math.fsum``.
"""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional, Sequence, Union

from voiceai.exceptions import ValidationError
from voiceai.mapper import coerce_datetime
from voiceai.models import (
    Agent,
    AgentStats,
    AnalyticsMetrics,
    AnalyticsOutcomes,
    AnalyticsSentiment,
    AnalyticsVolume,
    CallOutcome,
    CallRecord,
    CallStats,
    DashboardOverview,
    MetricTrend,
    MonthCost,
    Sentiment,
    SentimentShare,
    TrendPoint,
    VolumePoint,
)

UNKNOWN_AGENT_ID = "unknown"
UNKNOWN_AGENT_NAME = "Unknown Agent"
TREND_WINDOW = 14
SPARKLINE_DAYS = 30
# Spans longer than this are bucketed by ISO week.
WEEKLY_AFTER_DAYS = 31

_ERROR_STATUSES = {"failed", "error"}
_SENTIMENTS = {s.value.lower(): s for s in Sentiment}

RANGE_PRESETS = ("7d", "30d", "90d", "this_month", "last_month", "custom")


# ── Classification ──────────────────────────────────────────────

def _version_key(record: CallRecord) -> tuple[str, str, str]:
    return (record.created_at, record.end_time, record.model_dump_json())


def dedupe_by_id(records: Iterable[CallRecord]) -> list[CallRecord]:
    """
    Collapse repeated ids to one record per id.

    The latest version wins (``created_at``, then ``end_time``, then the
    serialised record as a tiebreak), so the survivor does not depend on
    where each copy sits in the input.
    """
    latest: dict[str, CallRecord] = {}
    for record in records:
        current = latest.get(record.id)
        if current is None or _version_key(record) > _version_key(current):
            latest[record.id] = record
    return list(latest.values())


def classify_outcome(record: CallRecord) -> CallOutcome:
    """
    Exhaustive status-to-outcome mapping.

    successful: analysis marks the call successful, whatever the status
    errored:    status ``failed`` or ``error``
    unsuccessful: status ``ended`` without a success mark
    other:      any other status (in progress, unrecognised)
    """
    analysis = record.call_analysis
    if analysis is not None and analysis.call_successful is True:
        return CallOutcome.SUCCESSFUL
    status = (record.status or "").lower()
    if status in _ERROR_STATUSES:
        return CallOutcome.ERRORED
    if status == "ended":
        return CallOutcome.UNSUCCESSFUL
    return CallOutcome.OTHER


def sentiment_bucket(record: CallRecord) -> Sentiment:
    analysis = record.call_analysis
    raw = analysis.user_sentiment if analysis is not None else None
    if not raw:
        return Sentiment.UNKNOWN
    return _SENTIMENTS.get(raw.strip().lower(), Sentiment.UNKNOWN)


def call_time(record: CallRecord) -> Optional[datetime]:
    """Start instant of a call, falling back to its creation time."""
    return coerce_datetime(record.start_time) or coerce_datetime(record.created_at)


def _rate(part: float, total: float) -> float:
    return part / total if total > 0 else 0.0


# ── Stats ───────────────────────────────────────────────────────

def _fold(records: Sequence[CallRecord]) -> dict:
    outcomes = {o: 0 for o in CallOutcome}
    sentiments = {s: 0 for s in Sentiment}
    for record in records:
        outcomes[classify_outcome(record)] += 1
        sentiments[sentiment_bucket(record)] += 1

    total = len(records)
    total_duration = sum(r.duration_seconds for r in records)
    return {
        "total_calls": total,
        "successful_calls": outcomes[CallOutcome.SUCCESSFUL],
        "failed_calls": outcomes[CallOutcome.UNSUCCESSFUL],
        "errored_calls": outcomes[CallOutcome.ERRORED],
        "other_calls": outcomes[CallOutcome.OTHER],
        "success_rate": _rate(outcomes[CallOutcome.SUCCESSFUL], total) * 100,
        "total_duration": total_duration,
        "avg_duration": _rate(total_duration, total),
        "total_cost": math.fsum(r.cost_usd for r in records),
        "sentiment_positive": sentiments[Sentiment.POSITIVE],
        "sentiment_neutral": sentiments[Sentiment.NEUTRAL],
        "sentiment_negative": sentiments[Sentiment.NEGATIVE],
        "sentiment_unknown": sentiments[Sentiment.UNKNOWN],
    }


def overall_stats(records: Iterable[CallRecord]) -> CallStats:
    """Portfolio-wide stats; an empty input yields all zeros."""
    return CallStats(**_fold(dedupe_by_id(records)))


def agent_stats(records: Iterable[CallRecord]) -> list[AgentStats]:
    """
    Per-agent stats, busiest agent first (ties by agent id).

    Calls without an agent are grouped under ``unknown``. The display name
    comes from the most recent call of the agent that carries one.
    """
    groups: dict[str, list[CallRecord]] = defaultdict(list)
    for record in dedupe_by_id(records):
        groups[record.agent_id or UNKNOWN_AGENT_ID].append(record)

    result = []
    for agent_id, calls in groups.items():
        named = [c for c in calls if c.agent_name]
        if named:
            latest = max(named, key=lambda c: (c.created_at, c.id))
            name = latest.agent_name
        else:
            name = UNKNOWN_AGENT_NAME if agent_id == UNKNOWN_AGENT_ID else agent_id
        result.append(AgentStats(agent_id=agent_id, agent_name=name, **_fold(calls)))

    result.sort(key=lambda s: (-s.total_calls, s.agent_id))
    return result


def merge_agents(registered: Iterable[Agent], records: Iterable[CallRecord]) -> list[Agent]:
    """Registered agents plus any agent only seen in calls, sorted by name."""
    agents: dict[str, Agent] = {}
    for agent in registered:
        agents[agent.agent_id] = agent
    # newest calls first, so the seen-only name comes from the latest call
    for record in sorted(dedupe_by_id(records), key=_version_key, reverse=True):
        if record.agent_id and record.agent_id not in agents:
            agents[record.agent_id] = Agent(
                agent_id=record.agent_id,
                agent_name=record.agent_name or record.agent_id,
            )
    return sorted(agents.values(), key=lambda a: ((a.agent_name or a.agent_id).lower(), a.agent_id))


# ── Time buckets ────────────────────────────────────────────────

def choose_granularity(start: date, end: date) -> str:
    return "weekly" if (end - start).days > WEEKLY_AFTER_DAYS else "daily"


def _bucket(day: date, granularity: str) -> date:
    if granularity == "weekly":
        return day - timedelta(days=day.weekday())
    return day


def _dated(records: Iterable[CallRecord]) -> list[tuple[date, CallRecord]]:
    out = []
    for record in dedupe_by_id(records):
        dt = call_time(record)
        if dt is not None:
            out.append((dt.astimezone(timezone.utc).date(), record))
    return out


def sentiment_trends(
    records: Iterable[CallRecord],
    window: int = TREND_WINDOW,
    granularity: Optional[str] = None,
) -> list[TrendPoint]:
    """Sentiment counts per day (or week), ascending, last ``window`` buckets."""
    dated = _dated(records)
    if not dated:
        return []
    if granularity is None:
        days = [d for d, _ in dated]
        granularity = choose_granularity(min(days), max(days))

    buckets: dict[date, dict[str, int]] = defaultdict(
        lambda: {"positive": 0, "neutral": 0, "negative": 0, "unknown": 0}
    )
    for day, record in dated:
        key = sentiment_bucket(record).value.lower()
        buckets[_bucket(day, granularity)][key] += 1

    ordered = sorted(buckets.items())
    if window > 0:
        ordered = ordered[-window:]
    return [TrendPoint(date=d.isoformat(), **counts) for d, counts in ordered]


def volume_series(
    records: Iterable[CallRecord],
    start: date,
    end: date,
    granularity: Optional[str] = None,
) -> AnalyticsVolume:
    """Zero-filled call counts from ``start`` to ``end`` inclusive."""
    if end < start:
        raise ValidationError("end date is before start date")
    granularity = granularity or choose_granularity(start, end)

    counts: dict[date, int] = defaultdict(int)
    for day, _ in _dated(records):
        if start <= day <= end:
            counts[_bucket(day, granularity)] += 1

    step = timedelta(days=7 if granularity == "weekly" else 1)
    points = []
    cursor = _bucket(start, granularity)
    while cursor <= end:
        points.append(VolumePoint(date=cursor.isoformat(), calls=counts.get(cursor, 0)))
        cursor += step
    return AnalyticsVolume(data=points, granularity=granularity)


# ── Distributions / metrics ─────────────────────────────────────

def sentiment_distribution(records: Iterable[CallRecord]) -> AnalyticsSentiment:
    """Counts and percentages (of all calls, one decimal) per sentiment."""
    unique = dedupe_by_id(records)
    counts = {s: 0 for s in Sentiment}
    for record in unique:
        counts[sentiment_bucket(record)] += 1
    total = len(unique)

    def share(s: Sentiment) -> SentimentShare:
        return SentimentShare(count=counts[s], percentage=round(_rate(counts[s], total) * 100, 1))

    return AnalyticsSentiment(
        positive=share(Sentiment.POSITIVE),
        neutral=share(Sentiment.NEUTRAL),
        negative=share(Sentiment.NEGATIVE),
        unknown=share(Sentiment.UNKNOWN),
    )


def outcome_summary(records: Iterable[CallRecord]) -> AnalyticsOutcomes:
    unique = dedupe_by_id(records)
    counts = {o: 0 for o in CallOutcome}
    voicemail = 0
    for record in unique:
        counts[classify_outcome(record)] += 1
        if record.call_analysis is not None and record.call_analysis.in_voicemail is True:
            voicemail += 1
    return AnalyticsOutcomes(
        successful=counts[CallOutcome.SUCCESSFUL],
        failed=counts[CallOutcome.UNSUCCESSFUL],
        errored=counts[CallOutcome.ERRORED],
        other=counts[CallOutcome.OTHER],
        voicemail=voicemail,
    )


def _change_percent(current: float, previous: float) -> float:
    if previous > 0:
        return round((current - previous) / previous * 100, 1)
    return 100.0 if current > 0 else 0.0


def _trend(current: float, previous: float, higher_is_better: bool = True) -> MetricTrend:
    change = _change_percent(current, previous)
    return MetricTrend(change_percent=change, positive=change >= 0 if higher_is_better else change <= 0)


def call_metrics(
    current: Iterable[CallRecord],
    previous: Iterable[CallRecord] = (),
) -> AnalyticsMetrics:
    """Period averages plus their change against the previous period."""
    cur = _fold(dedupe_by_id(current))
    prev = _fold(dedupe_by_id(previous))

    cur_cost = _rate(cur["total_cost"], cur["total_calls"])
    prev_cost = _rate(prev["total_cost"], prev["total_calls"])
    cur_rate = cur["success_rate"] / 100
    prev_rate = prev["success_rate"] / 100

    return AnalyticsMetrics(
        total_calls=cur["total_calls"],
        avg_call_duration_seconds=round(cur["avg_duration"], 1),
        success_rate=round(cur_rate, 4),
        avg_cost_usd=round(cur_cost, 4),
        trends={
            "total_calls": _trend(cur["total_calls"], prev["total_calls"]),
            "avg_duration": _trend(cur["avg_duration"], prev["avg_duration"]),
            "success_rate": _trend(cur_rate, prev_rate),
            "avg_cost": _trend(cur_cost, prev_cost, higher_is_better=False),
        },
    )


# ── Date ranges ─────────────────────────────────────────────────

def month_start(moment: datetime) -> datetime:
    return datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)


def add_months(moment: datetime, months: int) -> datetime:
    index = moment.year * 12 + (moment.month - 1) + months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=timezone.utc)


def _as_date(value: Union[date, str, None], label: str) -> date:
    if value is None:
        raise ValidationError(f"{label} is required for a custom range")
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid {label}: {value}") from exc


def date_range(
    preset: str,
    now: datetime,
    start: Union[date, str, None] = None,
    end: Union[date, str, None] = None,
) -> tuple[datetime, datetime]:
    """
    Resolve a range preset into a half-open ``[start, end)`` UTC interval.

    ``custom`` takes inclusive calendar dates.
    """
    now = now.astimezone(timezone.utc)
    if preset in ("7d", "30d", "90d"):
        return now - timedelta(days=int(preset[:-1])), now
    if preset == "this_month":
        return month_start(now), now
    if preset == "last_month":
        this_month = month_start(now)
        return add_months(this_month, -1), this_month
    if preset == "custom":
        first = _as_date(start, "start_date")
        last = _as_date(end, "end_date")
        if last < first:
            raise ValidationError("end_date is before start_date")
        return (
            datetime.combine(first, time.min, tzinfo=timezone.utc),
            datetime.combine(last + timedelta(days=1), time.min, tzinfo=timezone.utc),
        )
    raise ValidationError(f"Unknown range preset: {preset}")


def filter_range(records: Iterable[CallRecord], start: datetime, end: datetime) -> list[CallRecord]:
    """Calls whose start instant falls in ``[start, end)``."""
    selected = []
    for record in records:
        dt = call_time(record)
        if dt is not None and start <= dt < end:
            selected.append(record)
    return selected


def previous_period(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """The equal-length interval that ends where ``start`` begins."""
    return start - (end - start), start


# ── Dashboard overview ──────────────────────────────────────────

def dashboard_overview(
    records: Iterable[CallRecord],
    now: datetime,
    dashboard_fee: float = 49.0,
) -> DashboardOverview:
    """Home-page figures: this month vs last month, plus a 30-day sparkline."""
    unique = dedupe_by_id(records)
    now = now.astimezone(timezone.utc)
    this_start = month_start(now)
    next_start = add_months(this_start, 1)
    last_start = add_months(this_start, -1)

    this_month = _fold(filter_range(unique, this_start, next_start))
    last_month = _fold(filter_range(unique, last_start, this_start))

    today = now.date()
    first_day = today - timedelta(days=SPARKLINE_DAYS - 1)
    daily: dict[date, int] = defaultdict(int)
    for day, _ in _dated(unique):
        if first_day <= day <= today:
            daily[day] += 1
    sparkline = [daily.get(first_day + timedelta(days=i), 0) for i in range(SPARKLINE_DAYS)]

    retell_cost = this_month["total_cost"]
    return DashboardOverview(
        total_calls_this_month=this_month["total_calls"],
        total_calls_last_month=last_month["total_calls"],
        success_rate=round(this_month["success_rate"] / 100, 4),
        avg_duration_seconds=round(this_month["avg_duration"], 1),
        avg_duration_last_month_seconds=round(last_month["avg_duration"], 1),
        sparkline_data=sparkline,
        current_month_cost=MonthCost(
            dashboard_fee=dashboard_fee,
            retell_cost=round(retell_cost, 2),
            openrouter_cost=0.0,
            total=round(math.fsum([dashboard_fee, retell_cost]), 2),
        ),
        last_month_cost_total=round(math.fsum([dashboard_fee, last_month["total_cost"]]), 2),
    )
