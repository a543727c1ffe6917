import logging
from datetime import timedelta
from pymongo import DESCENDING
from .db import get_db
from .models import HEALTH_COUNTERS, SourceHealth, utcnow

logger = logging.getLogger("ingestion.health")
logger.setLevel(logging.INFO)

FAILING_THRESHOLD = 0.5
DEGRADED_THRESHOLD = 0.2

SUCCESS_COUNTERS = ("fetch_successes", "parse_successes")


def today_key(now=None):
    return (now or utcnow()).strftime("%Y-%m-%d")


async def record_metric(source_id, last_error=None, **counters):
    """
    Add counters to today's health row for a source.

    Each call is a single upsert, so concurrent crawls of different sources
    (or repeated calls within one crawl) never lose increments.

    Args:
        source_id (str): Source the metrics belong to
        last_error (str, optional): Error to record with a timestamp
        **counters: Any of HEALTH_COUNTERS; missing counters add 0

    Raises:
        ValueError: On an unknown counter name
    """
    unknown = set(counters) - set(HEALTH_COUNTERS)
    if unknown:
        raise ValueError(f"Unknown health counters: {sorted(unknown)}")

    db = get_db()
    now = utcnow()
    inc = {name: int(counters.get(name, 0) or 0) for name in HEALTH_COUNTERS}
    fields = {"updated_at": now}
    if last_error:
        fields["last_error"] = last_error
        fields["last_error_at"] = now
    if any(inc[name] > 0 for name in SUCCESS_COUNTERS):
        fields["last_success_at"] = now

    await db.source_health.update_one(
        {"source_id": source_id, "date": today_key(now)},
        {
            "$inc": inc,
            "$set": fields,
            "$setOnInsert": {"source_id": source_id, "date": today_key(now)},
        },
        upsert=True,
    )


def classify_health(record, enabled=True):
    """
    Classify a source from one health row.

    Returns:
        str: "disabled", "failing" (failure rate > 0.5), "degraded"
            (> 0.2) or "healthy". A missing record counts as healthy.
    """
    if not enabled:
        return "disabled"
    if record is None:
        return "healthy"
    if isinstance(record, dict):
        record = SourceHealth.model_validate(record)
    rate = record.failure_rate
    if rate > FAILING_THRESHOLD:
        return "failing"
    if rate > DEGRADED_THRESHOLD:
        return "degraded"
    return "healthy"


async def get_source_health(source_id):
    """Return today's SourceHealth for a source, or None."""
    db = get_db()
    doc = await db.source_health.find_one({"source_id": source_id, "date": today_key()})
    return SourceHealth.model_validate(doc) if doc else None


async def get_health_summary(days=7):
    """
    Return health rows of the last ``days`` days, newest first.

    Each row is the stored document plus derived ``avg_fetch_time_ms``,
    ``avg_parse_time_ms`` and ``failure_rate``.
    """
    db = get_db()
    since = today_key(utcnow() - timedelta(days=days))
    docs = (
        await db.source_health.find({"date": {"$gte": since}})
        .sort([("date", DESCENDING)])
        .to_list(length=None)
    )
    rows = []
    for d in docs:
        h = SourceHealth.model_validate(d)
        row = h.model_dump()
        row["avg_fetch_time_ms"] = h.avg_fetch_time_ms
        row["avg_parse_time_ms"] = h.avg_parse_time_ms
        row["failure_rate"] = round(h.failure_rate, 4)
        rows.append(row)
    return rows
