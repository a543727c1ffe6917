import pytest

from ingestion.health import record_metric
from ingestion.models import NormalizedListing
from ingestion.stats import get_ingestion_stats
from ingestion.store import mark_listings_delisted, upsert_listing


@pytest.mark.asyncio
async def test_ingestion_stats_dashboard(fake_db):
    """
    Aggregate counters over sources, listings and health rows.

    Asserts:
        - Source and listing totals, with delisted and duplicate listings
          excluded from the active count
        - Deduplication rate rounded to two decimals
        - Per-source status derived from today's failure rate
        - Sources ordered by active listing count
        - One daily bucket summing every source's row
    """
    for i in range(3):
        await upsert_listing(
            NormalizedListing(source_id="craigslist-nyc", source_url=f"https://cl.example.com/{i}")
        )
    dup_id, _ = await upsert_listing(
        NormalizedListing(source_id="test-broker", source_url="https://tb.example.com/1")
    )
    await fake_db.listings.update_one({"listing_id": dup_id}, {"$set": {"is_duplicate": True}})
    await mark_listings_delisted(
        "craigslist-nyc", ["https://cl.example.com/0", "https://cl.example.com/1"]
    )

    await record_metric("craigslist-nyc", fetch_attempts=10, fetch_successes=4, fetch_failures=6)
    await record_metric("test-broker", fetch_attempts=2, fetch_successes=2, new_listings=1)

    stats = await get_ingestion_stats(days=7)

    assert stats["total_sources"] == 4
    assert stats["enabled_sources"] == 2
    assert stats["total_listings"] == 4
    assert stats["active_listings"] == 2
    assert stats["listings_last_24h"] == 4
    assert stats["deduplication_rate"] == 0.25

    by_id = {s["source_id"]: s for s in stats["source_health"]}
    assert by_id["craigslist-nyc"]["status"] == "failing"
    assert by_id["craigslist-nyc"]["failure_rate"] == 0.6
    assert by_id["test-broker"]["status"] == "healthy"
    assert by_id["test-broker"]["new_listings_today"] == 1
    assert by_id["streeteasy-browser"]["status"] == "disabled"
    assert stats["source_health"][0]["source_id"] == "craigslist-nyc"

    assert len(stats["daily_stats"]) == 1
    assert stats["daily_stats"][0]["fetched"] == 6
    assert stats["daily_stats"][0]["failed"] == 6


@pytest.mark.asyncio
async def test_ingestion_stats_empty_database(fake_db):
    fake_db.sources.docs.clear()
    stats = await get_ingestion_stats()
    assert stats["total_listings"] == 0
    assert stats["deduplication_rate"] == 0
    assert stats["source_health"] == []
    assert stats["daily_stats"] == []
