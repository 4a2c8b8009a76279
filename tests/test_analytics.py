"""Tests for analytics aggregations."""

import random
from datetime import date, datetime, timedelta, timezone

import pytest

from voiceai.analytics import (
    agent_stats,
    call_metrics,
    classify_outcome,
    dashboard_overview,
    date_range,
    dedupe_by_id,
    filter_range,
    merge_agents,
    outcome_summary,
    overall_stats,
    previous_period,
    sentiment_bucket,
    sentiment_distribution,
    sentiment_trends,
    volume_series,
)
from voiceai.exceptions import ValidationError
from voiceai.mapper import format_iso
from voiceai.models import Agent, CallAnalysis, CallOutcome, CallRecord, Sentiment

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_call(
    call_id,
    when=NOW,
    agent_id="agent_a",
    agent_name="Front Desk",
    status="ended",
    successful=None,
    sentiment=None,
    duration=60,
    cost=0.0,
    voicemail=None,
):
    ts = format_iso(when)
    return CallRecord(
        id=call_id,
        agent_id=agent_id,
        agent_name=agent_name,
        start_time=ts,
        end_time=format_iso(when + timedelta(seconds=duration)),
        duration_seconds=duration,
        status=status,
        call_analysis=CallAnalysis(
            user_sentiment=sentiment,
            call_successful=successful,
            in_voicemail=voicemail,
        ),
        cost_usd=cost,
        created_at=ts,
    )


def test_success_rate_with_one_of_each_outcome():
    records = [
        make_call("c1", successful=True, status="ended"),
        make_call("c2", successful=False, status="ended"),
        make_call("c3", successful=None, status="failed"),
    ]
    [stats] = agent_stats(records)
    assert stats.agent_id == "agent_a"
    assert stats.total_calls == 3
    assert stats.successful_calls == 1
    assert stats.failed_calls == 1
    assert stats.errored_calls == 1
    assert stats.success_rate == pytest.approx(100 / 3)


def test_outcomes_are_exhaustive():
    assert classify_outcome(make_call("a", successful=True, status="failed")) is CallOutcome.SUCCESSFUL
    assert classify_outcome(make_call("b", status="error")) is CallOutcome.ERRORED
    assert classify_outcome(make_call("c", status="ended")) is CallOutcome.UNSUCCESSFUL
    assert classify_outcome(make_call("d", status="in_progress")) is CallOutcome.OTHER

    records = [make_call(f"c{i}", status=s) for i, s in enumerate(["ended", "failed", "ongoing", "registered"])]
    stats = overall_stats(records)
    assert (
        stats.successful_calls + stats.failed_calls + stats.errored_calls + stats.other_calls
        == stats.total_calls
        == 4
    )


def test_empty_input_yields_zeros():
    stats = overall_stats([])
    assert stats.total_calls == 0
    assert stats.success_rate == 0.0
    assert stats.avg_duration == 0.0
    assert stats.total_cost == 0.0
    assert agent_stats([]) == []
    assert sentiment_trends([]) == []
    dist = sentiment_distribution([])
    assert dist.positive.percentage == 0.0
    metrics = call_metrics([], [])
    assert metrics.success_rate == 0.0
    assert metrics.trends["total_calls"].change_percent == 0.0


def test_duplicates_are_counted_once():
    call = make_call("dup", successful=True, cost=1.5)
    stats = overall_stats([call, call, make_call("other")])
    assert stats.total_calls == 2
    assert stats.total_cost == pytest.approx(1.5)
    assert len(dedupe_by_id([call, call])) == 1


def test_conflicting_duplicates_keep_the_latest_version():
    early = make_call("dup", when=NOW - timedelta(minutes=5), status="ended", successful=True, cost=1.0)
    late = make_call("dup", when=NOW, status="failed", cost=5.0)
    for ordering in ([early, late], [late, early]):
        stats = overall_stats(ordering)
        assert stats.total_calls == 1
        assert stats.successful_calls == 0
        assert stats.errored_calls == 1
        assert stats.total_cost == pytest.approx(5.0)
        assert dedupe_by_id(ordering) == [late]


def test_same_timestamp_duplicates_resolve_the_same_way():
    a = make_call("dup", successful=True, cost=1.0)
    b = make_call("dup", status="failed", cost=5.0)
    assert dedupe_by_id([a, b]) == dedupe_by_id([b, a])
    assert overall_stats([a, b]) == overall_stats([b, a])


def test_results_do_not_depend_on_order_with_conflicting_duplicates():
    rng = random.Random(11)
    records = []
    for i in range(30):
        call_id = f"c{i % 12}"
        records.append(
            make_call(
                call_id,
                when=NOW - timedelta(days=rng.randint(0, 20), minutes=rng.randint(0, 3)),
                agent_id=rng.choice(["agent_a", "agent_b"]),
                agent_name=rng.choice(["A", "B", None]),
                status=rng.choice(["ended", "failed", "in_progress"]),
                successful=rng.choice([True, False, None]),
                sentiment=rng.choice(["Positive", "Negative", None]),
                duration=rng.randint(0, 600),
                cost=rng.random(),
            )
        )
    expected = (
        overall_stats(records),
        agent_stats(records),
        outcome_summary(records),
        sentiment_distribution(records),
        merge_agents([], records),
    )
    for _ in range(5):
        shuffled = records[:]
        rng.shuffle(shuffled)
        assert (
            overall_stats(shuffled),
            agent_stats(shuffled),
            outcome_summary(shuffled),
            sentiment_distribution(shuffled),
            merge_agents([], shuffled),
        ) == expected


def test_results_do_not_depend_on_order():
    rng = random.Random(3)
    records = [
        make_call(
            f"c{i}",
            when=NOW - timedelta(days=rng.randint(0, 40), minutes=i),
            agent_id=rng.choice(["agent_a", "agent_b", None]),
            agent_name=rng.choice(["A", "B", None]),
            status=rng.choice(["ended", "failed", "in_progress"]),
            successful=rng.choice([True, False, None]),
            sentiment=rng.choice(["Positive", "negative", "NEUTRAL", None, "weird"]),
            duration=rng.randint(0, 600),
            cost=rng.random(),
        )
        for i in range(40)
    ]
    expected = (
        overall_stats(records),
        agent_stats(records),
        sentiment_trends(records),
        outcome_summary(records),
        sentiment_distribution(records),
    )
    for _ in range(5):
        shuffled = records[:]
        rng.shuffle(shuffled)
        assert (
            overall_stats(shuffled),
            agent_stats(shuffled),
            sentiment_trends(shuffled),
            outcome_summary(shuffled),
            sentiment_distribution(shuffled),
        ) == expected


def test_sentiment_is_case_insensitive():
    assert sentiment_bucket(make_call("a", sentiment="positive")) is Sentiment.POSITIVE
    assert sentiment_bucket(make_call("b", sentiment=" NEGATIVE ")) is Sentiment.NEGATIVE
    assert sentiment_bucket(make_call("c", sentiment="meh")) is Sentiment.UNKNOWN
    assert sentiment_bucket(make_call("d")) is Sentiment.UNKNOWN


def test_agent_grouping_naming_and_order():
    records = [
        make_call("c1", agent_id="b", agent_name="Old Name", when=NOW - timedelta(days=2)),
        make_call("c2", agent_id="b", agent_name="New Name", when=NOW - timedelta(days=1)),
        make_call("c3", agent_id="b", agent_name=None, when=NOW),
        make_call("c4", agent_id="a", agent_name="Alpha"),
        make_call("c5", agent_id="c", agent_name="Gamma"),
        make_call("c6", agent_id=None, agent_name=None),
        make_call("c7", agent_id=None, agent_name=None),
    ]
    stats = agent_stats(records)
    assert [(s.agent_id, s.total_calls) for s in stats] == [("b", 3), ("unknown", 2), ("a", 1), ("c", 1)]
    assert stats[0].agent_name == "New Name"
    assert stats[1].agent_name == "Unknown Agent"


def test_merge_agents_adds_agents_seen_only_in_calls():
    registered = [Agent(agent_id="a1", agent_name="Zed")]
    records = [make_call("c1", agent_id="a2", agent_name="Amy"), make_call("c2", agent_id="a1", agent_name="X")]
    merged = merge_agents(registered, records)
    assert [(a.agent_id, a.agent_name) for a in merged] == [("a2", "Amy"), ("a1", "Zed")]


def test_daily_trends_keep_last_window_ascending():
    records = [make_call(f"c{i}", when=NOW - timedelta(days=i), sentiment="Positive") for i in range(20)]
    trends = sentiment_trends(records)
    assert len(trends) == 14
    assert trends[-1].date == "2026-03-15"
    assert trends[0].date == "2026-03-02"
    assert all(t.positive == 1 for t in trends)
    assert [t.date for t in trends] == sorted(t.date for t in trends)


def test_long_spans_are_weekly():
    records = [
        make_call("c1", when=datetime(2026, 1, 7, tzinfo=timezone.utc), sentiment="Negative"),
        make_call("c2", when=datetime(2026, 3, 12, tzinfo=timezone.utc), sentiment="Positive"),
    ]
    trends = sentiment_trends(records)
    # Wednesday 7 Jan falls in the week starting Monday 5 Jan
    assert [t.date for t in trends] == ["2026-01-05", "2026-03-09"]
    assert trends[0].negative == 1


def test_volume_series_zero_fills():
    records = [
        make_call("c1", when=datetime(2026, 3, 2, 9, tzinfo=timezone.utc)),
        make_call("c2", when=datetime(2026, 3, 2, 17, tzinfo=timezone.utc)),
        make_call("c3", when=datetime(2026, 3, 4, 9, tzinfo=timezone.utc)),
        make_call("c4", when=datetime(2026, 2, 1, 9, tzinfo=timezone.utc)),
    ]
    volume = volume_series(records, date(2026, 3, 1), date(2026, 3, 5))
    assert volume.granularity == "daily"
    assert [(p.date, p.calls) for p in volume.data] == [
        ("2026-03-01", 0),
        ("2026-03-02", 2),
        ("2026-03-03", 0),
        ("2026-03-04", 1),
        ("2026-03-05", 0),
    ]

    weekly = volume_series(records, date(2026, 1, 1), date(2026, 3, 5))
    assert weekly.granularity == "weekly"
    assert weekly.data[0].date == "2025-12-29"
    assert sum(p.calls for p in weekly.data) == 4

    with pytest.raises(ValidationError):
        volume_series(records, date(2026, 3, 5), date(2026, 3, 1))


def test_sentiment_distribution_percentages():
    records = [
        make_call("c1", sentiment="Positive"),
        make_call("c2", sentiment="Positive"),
        make_call("c3", sentiment="Negative"),
    ]
    dist = sentiment_distribution(records)
    assert dist.positive.count == 2
    assert dist.positive.percentage == 66.7
    assert dist.negative.percentage == 33.3
    assert dist.unknown.count == 0


def test_outcome_summary_counts_voicemail():
    records = [
        make_call("c1", successful=True),
        make_call("c2", voicemail=True),
        make_call("c3", status="error"),
    ]
    summary = outcome_summary(records)
    assert (summary.successful, summary.failed, summary.errored, summary.other) == (1, 1, 1, 0)
    assert summary.voicemail == 1


def test_call_metrics_trends():
    previous = [make_call("p1", duration=100, cost=1.0), make_call("p2", duration=100, cost=1.0)]
    current = [
        make_call("c1", duration=50, cost=0.5, successful=True),
        make_call("c2", duration=50, cost=0.5),
        make_call("c3", duration=50, cost=0.5),
    ]
    metrics = call_metrics(current, previous)
    assert metrics.total_calls == 3
    assert metrics.avg_call_duration_seconds == 50.0
    assert metrics.success_rate == pytest.approx(0.3333)
    assert metrics.trends["total_calls"].change_percent == 50.0
    assert metrics.trends["avg_duration"].change_percent == -50.0
    assert metrics.trends["avg_duration"].positive is False
    assert metrics.trends["avg_cost"].change_percent == -50.0
    assert metrics.trends["avg_cost"].positive is True
    # previous period had no successes
    assert metrics.trends["success_rate"].change_percent == 100.0


def test_date_range_presets():
    assert date_range("7d", NOW) == (NOW - timedelta(days=7), NOW)
    assert date_range("this_month", NOW) == (datetime(2026, 3, 1, tzinfo=timezone.utc), NOW)
    assert date_range("last_month", NOW) == (
        datetime(2026, 2, 1, tzinfo=timezone.utc),
        datetime(2026, 3, 1, tzinfo=timezone.utc),
    )
    january = datetime(2026, 1, 10, tzinfo=timezone.utc)
    assert date_range("last_month", january)[0] == datetime(2025, 12, 1, tzinfo=timezone.utc)

    start, end = date_range("custom", NOW, "2026-02-01", "2026-02-28")
    assert start == datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 1, tzinfo=timezone.utc)

    with pytest.raises(ValidationError):
        date_range("custom", NOW, "2026-02-01", None)
    with pytest.raises(ValidationError):
        date_range("custom", NOW, "2026-02-10", "2026-02-01")
    with pytest.raises(ValidationError):
        date_range("fortnight", NOW)


def test_filter_range_is_half_open():
    start = datetime(2026, 3, 1, tzinfo=timezone.utc)
    end = datetime(2026, 3, 2, tzinfo=timezone.utc)
    records = [make_call("in", when=start), make_call("out", when=end)]
    assert [r.id for r in filter_range(records, start, end)] == ["in"]
    assert previous_period(start, end) == (datetime(2026, 2, 28, tzinfo=timezone.utc), start)


def test_dashboard_overview():
    records = [
        make_call("m1", when=NOW - timedelta(days=1), successful=True, duration=120, cost=2.0),
        make_call("m2", when=NOW - timedelta(days=3), duration=60, cost=1.0),
        make_call("l1", when=datetime(2026, 2, 20, tzinfo=timezone.utc), duration=30, cost=4.0),
        make_call("old", when=datetime(2025, 12, 1, tzinfo=timezone.utc), cost=100.0),
    ]
    overview = dashboard_overview(records, NOW, dashboard_fee=49.0)
    assert overview.total_calls_this_month == 2
    assert overview.total_calls_last_month == 1
    assert overview.success_rate == 0.5
    assert overview.avg_duration_seconds == 90.0
    assert overview.avg_duration_last_month_seconds == 30.0
    assert overview.current_month_cost.retell_cost == 3.0
    assert overview.current_month_cost.total == 52.0
    assert overview.last_month_cost_total == 53.0

    assert len(overview.sparkline_data) == 30
    assert overview.sparkline_data[-2] == 1
    assert overview.sparkline_data[-4] == 1
    # 20 Feb is 23 days before 15 Mar
    assert overview.sparkline_data[-24] == 1
    assert sum(overview.sparkline_data) == 3
