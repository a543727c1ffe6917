from datetime import timedelta

import pytest

from ingestion.health import (
    classify_health,
    get_health_summary,
    get_source_health,
    record_metric,
    today_key,
)
from ingestion.models import SourceHealth, utcnow


@pytest.mark.asyncio
async def test_record_metric_accumulates_into_one_daily_row(fake_db):
    """
    Repeated calls for the same source and day add to a single row.

    Asserts:
        - One document per (source_id, date)
        - Counters are summed, not overwritten
        - last_success_at is set by a successful fetch
        - last_error is kept with its timestamp
    """
    await record_metric("test-broker", fetch_attempts=1, fetch_successes=1, fetch_time_total_ms=120)
    await record_metric("test-broker", fetch_attempts=1, fetch_failures=1, fetch_time_total_ms=80)
    await record_metric("test-broker", last_error="HTTP 500")

    assert len(fake_db.source_health.docs) == 1
    health = await get_source_health("test-broker")
    assert health.date == today_key()
    assert health.fetch_attempts == 2
    assert health.fetch_successes == 1
    assert health.fetch_failures == 1
    assert health.avg_fetch_time_ms == 100.0
    assert health.failure_rate == 0.5
    assert health.last_success_at is not None
    assert health.last_error == "HTTP 500"
    assert health.last_error_at is not None


@pytest.mark.asyncio
async def test_record_metric_without_success_leaves_last_success_unset(fake_db):
    await record_metric("craigslist-nyc", fetch_attempts=1, fetch_failures=1)
    health = await get_source_health("craigslist-nyc")
    assert health.last_success_at is None


@pytest.mark.asyncio
async def test_record_metric_rejects_unknown_counter(fake_db):
    with pytest.raises(ValueError):
        await record_metric("test-broker", fetches=1)


@pytest.mark.parametrize(
    "failures,expected",
    [(0, "healthy"), (2, "healthy"), (3, "degraded"), (5, "degraded"), (6, "failing")],
)
def test_classify_health_thresholds(failures, expected):
    record = SourceHealth(
        source_id="s", date="2026-01-01", fetch_attempts=10, fetch_failures=failures
    )
    assert classify_health(record) == expected
    assert classify_health(record.model_dump()) == expected


def test_classify_health_disabled_and_missing():
    assert classify_health(None) == "healthy"
    assert classify_health(None, enabled=False) == "disabled"


@pytest.mark.asyncio
async def test_health_summary_newest_first_with_derived_fields(fake_db):
    yesterday = today_key(utcnow() - timedelta(days=1))
    old = today_key(utcnow() - timedelta(days=30))
    for date in (yesterday, old):
        await fake_db.source_health.insert_one(
            {"source_id": "test-broker", "date": date, "fetch_attempts": 4, "fetch_failures": 1}
        )
    await record_metric("test-broker", parse_attempts=2, parse_time_total_ms=50)

    rows = await get_health_summary(days=7)
    assert [r["date"] for r in rows] == [today_key(), yesterday]
    assert rows[0]["avg_parse_time_ms"] == 25.0
    assert rows[1]["failure_rate"] == 0.25
