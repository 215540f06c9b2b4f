"""Unit tests for the per-project usage metrics and the daily metrics cache."""

import sqlite3
from datetime import UTC, date, datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest

from sentinel.analytics import usage
from sentinel.analytics.usage import (
    cache_project_metrics,
    clear_old_cached_metrics,
    get_cost_estimate,
    get_daily_metrics,
    get_error_rate_stats,
    get_model_usage,
    get_project_metrics,
    get_token_usage_stats,
    run_metrics_aggregation,
)
from sentinel.errors import NotFoundError
from sentinel.storage.store import get_connection, get_metrics_cache, init_schema, save_project, save_telemetry

PROJECT = "proj_1"
START = datetime(2026, 1, 1, tzinfo=UTC)
END = datetime(2026, 1, 3, tzinfo=UTC)


def _make_conn() -> sqlite3.Connection:
    conn = get_connection(":memory:")
    init_schema(conn)
    save_project(conn, project_id=PROJECT, name="Test")
    return conn


def _add(conn: sqlite3.Connection, created_at: str, **overrides: Any) -> None:
    fields: dict[str, Any] = {
        "project_id": PROJECT,
        "prompt": "p",
        "response": "r",
        "model": "gpt-4",
        "latency": 100.0,
        "tokens": 1000,
        "risk_score": 0,
        "created_at": created_at,
    }
    fields.update(overrides)
    save_telemetry(conn, **fields)


def _seeded() -> sqlite3.Connection:
    """Two days of traffic: two gpt-4 calls on Jan 1, one claude call on Jan 2."""
    conn = _make_conn()
    _add(conn, "2026-01-01T08:00:00.000000+00:00", latency=100.0, risk_score=90)
    _add(conn, "2026-01-01T09:00:00.000000+00:00", latency=300.0, risk_score=10, error="boom")
    _add(conn, "2026-01-02T10:00:00.000000+00:00", model="claude-3-haiku", tokens=2000, latency=200.0, risk_score=50)
    # outside the range on both sides
    _add(conn, "2025-12-31T23:59:59.000000+00:00", tokens=50000)
    _add(conn, "2026-01-03T00:00:00.000000+00:00", tokens=50000)
    return conn


def _noon(day: date) -> str:
    return f"{day.isoformat()}T12:00:00.000000+00:00"


# ---------------------------------------------------------------------------
# Project summary
# ---------------------------------------------------------------------------


class TestProjectMetrics:
    def test_totals(self) -> None:
        metrics = get_project_metrics(_seeded(), PROJECT, START, END)
        assert metrics.total_requests == 3
        assert metrics.error_count == 1
        assert metrics.error_rate == pytest.approx(1 / 3)
        assert metrics.average_latency == 200
        assert metrics.total_tokens == 4000
        # gpt-4: 2000 tokens at 0.03, claude-3: 2000 tokens at 0.015
        assert metrics.estimated_cost == pytest.approx(0.09)
        assert metrics.high_risk_count == 1
        assert metrics.average_risk_score == pytest.approx(50.0)

    def test_daily_summary_oldest_first(self) -> None:
        metrics = get_project_metrics(_seeded(), PROJECT, START, END)
        assert [(d.date, d.requests, d.errors, d.avg_latency, d.tokens) for d in metrics.daily_summary] == [
            ("2026-01-01", 2, 1, 200, 2000),
            ("2026-01-02", 1, 0, 200, 2000),
        ]
        assert metrics.daily_summary[0].cost == pytest.approx(0.06)
        assert metrics.daily_summary[1].cost == pytest.approx(0.03)

    def test_daily_cost_prices_each_model(self) -> None:
        conn = _make_conn()
        _add(conn, "2026-01-01T08:00:00.000000+00:00", tokens=1000)
        _add(conn, "2026-01-01T09:00:00.000000+00:00", model="llama-2", tokens=10000)
        metrics = get_project_metrics(conn, PROJECT, START, END)
        # 0.03 + 0.001, not 11,000 tokens at the gpt-4 rate
        assert metrics.daily_summary[0].cost == pytest.approx(0.03)

    def test_empty_project(self) -> None:
        metrics = get_project_metrics(_make_conn(), PROJECT, START, END)
        assert metrics.total_requests == 0
        assert metrics.model_breakdown == []
        assert metrics.daily_summary == []

    def test_default_range_is_last_30_days(self) -> None:
        conn = _make_conn()
        now = datetime.now(UTC)
        _add(conn, (now - timedelta(days=40)).isoformat(timespec="microseconds"))
        _add(conn, (now - timedelta(days=2)).isoformat(timespec="microseconds"))
        assert get_project_metrics(conn, PROJECT).total_requests == 1

    def test_naive_datetimes_are_utc(self) -> None:
        metrics = get_project_metrics(_seeded(), PROJECT, datetime(2026, 1, 1), datetime(2026, 1, 3))
        assert metrics.total_requests == 3

    def test_camel_case_dump(self) -> None:
        dumped = get_project_metrics(_seeded(), PROJECT, START, END).model_dump(by_alias=True)
        assert dumped["projectId"] == PROJECT
        assert dumped["modelBreakdown"][0]["totalTokens"] == 2000
        assert dumped["dailySummary"][0]["avgLatency"] == 200


# ---------------------------------------------------------------------------
# Breakdowns
# ---------------------------------------------------------------------------


class TestBreakdowns:
    def test_model_usage_busiest_first(self) -> None:
        breakdown = get_model_usage(_seeded(), PROJECT, START, END)
        assert [(u.model, u.count, u.total_tokens, u.avg_latency) for u in breakdown] == [
            ("gpt-4", 2, 2000, 200),
            ("claude-3-haiku", 1, 2000, 200),
        ]
        assert breakdown[0].total_cost == pytest.approx(0.06)

    def test_error_rate_stats(self) -> None:
        stats = get_error_rate_stats(_seeded(), PROJECT, START, END)
        assert stats.total_requests == 3
        assert stats.error_count == 1
        assert stats.error_rate == pytest.approx(1 / 3)
        assert stats.errors_by_model == {"gpt-4": 1}

    def test_error_rate_stats_empty(self) -> None:
        stats = get_error_rate_stats(_make_conn(), PROJECT, START, END)
        assert stats.error_rate == 0.0
        assert stats.errors_by_model == {}

    def test_token_usage_stats(self) -> None:
        stats = get_token_usage_stats(_seeded(), PROJECT, START, END)
        assert stats.total_tokens == 4000
        assert stats.average_tokens_per_request == 1333
        assert stats.tokens_by_model == {"gpt-4": 2000, "claude-3-haiku": 2000}
        assert stats.request_count == 3

    def test_cost_estimate(self) -> None:
        estimate = get_cost_estimate(_seeded(), PROJECT, START, END)
        assert estimate.total_cost == pytest.approx(0.09)
        assert estimate.cost_by_model == {"gpt-4": pytest.approx(0.06), "claude-3-haiku": pytest.approx(0.03)}
        assert estimate.average_cost_per_request == pytest.approx(0.03)
        assert estimate.request_count == 3

    @pytest.mark.parametrize(
        "read",
        [get_project_metrics, get_model_usage, get_error_rate_stats, get_token_usage_stats, get_cost_estimate],
    )
    def test_unknown_project(self, read: Any) -> None:
        with pytest.raises(NotFoundError):
            read(_make_conn(), "ghost")


# ---------------------------------------------------------------------------
# Daily metrics and the cache
# ---------------------------------------------------------------------------


class TestDailyMetrics:
    def test_calculated_without_cache(self) -> None:
        summary = get_daily_metrics(_seeded(), PROJECT, date(2026, 1, 1))
        assert summary.date == "2026-01-01"
        assert summary.requests == 2
        assert summary.errors == 1
        assert summary.cost == pytest.approx(0.06)

    def test_quiet_day(self) -> None:
        summary = get_daily_metrics(_seeded(), PROJECT, date(2026, 1, 5))
        assert summary.requests == 0
        assert summary.cost == 0.0

    def test_served_from_cache(self) -> None:
        conn = _make_conn()
        day = datetime.now(UTC).date() - timedelta(days=1)
        _add(conn, _noon(day))
        cache_project_metrics(conn, PROJECT, day)
        _add(conn, _noon(day))

        assert get_daily_metrics(conn, PROJECT, day).requests == 1
        assert get_daily_metrics(conn, PROJECT, day, use_cache=False).requests == 2

    def test_cache_lookup_failure_falls_back(self) -> None:
        conn = _make_conn()
        day = datetime.now(UTC).date() - timedelta(days=1)
        _add(conn, _noon(day))
        with patch.object(usage, "get_metrics_cache", side_effect=sqlite3.OperationalError("locked")):
            assert get_daily_metrics(conn, PROJECT, day).requests == 1

    def test_unknown_project(self) -> None:
        with pytest.raises(NotFoundError):
            get_daily_metrics(_make_conn(), "ghost", date(2026, 1, 1))


class TestAggregation:
    def test_cache_record(self) -> None:
        conn = _make_conn()
        day = datetime.now(UTC).date() - timedelta(days=1)
        _add(conn, _noon(day), risk_score=95, latency=300.0)
        _add(conn, _noon(day), risk_score=15, latency=100.0, error="boom")
        _add(conn, _noon(day), model="claude-3-haiku", tokens=2000, risk_score=20, latency=200.0)

        record = cache_project_metrics(conn, PROJECT, day)
        assert record["total_requests"] == 3
        assert record["error_count"] == 1
        assert record["error_rate"] == pytest.approx(1 / 3)
        assert record["average_latency"] == 200
        assert record["estimated_cost"] == pytest.approx(0.09)
        assert record["high_risk_count"] == 1
        assert record["average_risk_score"] == pytest.approx(43.33)
        assert [m["model"] for m in record["model_breakdown"]] == ["gpt-4", "claude-3-haiku"]
        assert get_metrics_cache(conn, PROJECT, day.isoformat()) is not None

    def test_run_caches_yesterday_for_every_project(self) -> None:
        conn = _make_conn()
        save_project(conn, project_id="proj_2", name="Other")
        yesterday = datetime.now(UTC).date() - timedelta(days=1)
        _add(conn, _noon(yesterday))

        report = run_metrics_aggregation(conn)
        assert report.date == yesterday.isoformat()
        assert (report.processed, report.succeeded, report.failed) == (2, 2, 0)
        cached = get_metrics_cache(conn, PROJECT, yesterday.isoformat())
        assert cached is not None
        assert cached["total_requests"] == 1
        other = get_metrics_cache(conn, "proj_2", yesterday.isoformat())
        assert other is not None
        assert other["total_requests"] == 0

    def test_project_failure_does_not_stop_run(self) -> None:
        conn = _make_conn()
        save_project(conn, project_id="proj_2", name="Other")
        real_cache = usage.cache_project_metrics

        def _cache(conn: sqlite3.Connection, project_id: str, day: date) -> Any:
            if project_id == PROJECT:
                raise sqlite3.OperationalError("disk I/O error")
            return real_cache(conn, project_id, day)

        with patch.object(usage, "cache_project_metrics", side_effect=_cache):
            report = run_metrics_aggregation(conn)
        assert (report.processed, report.succeeded, report.failed) == (2, 1, 1)

    def test_prunes_days_past_retention(self) -> None:
        conn = _make_conn()
        today = datetime.now(UTC).date()
        old = today - timedelta(days=91)
        recent = today - timedelta(days=89)
        cache_project_metrics(conn, PROJECT, old)
        cache_project_metrics(conn, PROJECT, recent)

        assert clear_old_cached_metrics(conn) == 1
        assert get_metrics_cache(conn, PROJECT, old.isoformat()) is None
        assert get_metrics_cache(conn, PROJECT, recent.isoformat()) is not None

    def test_run_reports_pruned_days(self) -> None:
        conn = _make_conn()
        cache_project_metrics(conn, PROJECT, datetime.now(UTC).date() - timedelta(days=120))
        assert run_metrics_aggregation(conn).deleted == 1
