from datetime import timedelta
from .db import get_db
from .health import classify_health, get_health_summary
from .models import ListingStatus, utcnow


async def get_ingestion_stats(days=7):
    """
    Build the read-only ingestion dashboard view.

    Returns:
        dict:
            - total_sources / enabled_sources
            - total_listings / active_listings (active, not duplicate)
            - listings_last_24h (seen in the last day)
            - deduplication_rate: duplicates / total, 2 decimals
            - source_health: per source status, failure rate, active listing
              count and today's new listings, most listings first
            - daily_stats: per day fetched/parsed/new/failed, oldest first
    """
    db = get_db()
    day_ago = utcnow() - timedelta(days=1)

    total_sources = await db.sources.count_documents({})
    enabled_sources = await db.sources.count_documents({"enabled": True})
    total_listings = await db.listings.count_documents({})
    active_listings = await db.listings.count_documents(
        {"status": ListingStatus.ACTIVE.value, "is_duplicate": False}
    )
    listings_last_24h = await db.listings.count_documents({"last_seen_at": {"$gte": day_ago}})
    duplicate_listings = await db.listings.count_documents({"is_duplicate": True})
    dedup_rate = duplicate_listings / total_listings if total_listings else 0

    health = await get_health_summary(days=days)
    latest = {}
    for row in health:
        # rows come newest first
        latest.setdefault(row["source_id"], row)

    source_health = []
    for source in await db.sources.find({}).to_list(length=None):
        recent = latest.get(source["id"])
        listings_count = await db.listings.count_documents(
            {"source_id": source["id"], "status": ListingStatus.ACTIVE.value}
        )
        source_health.append(
            {
                "source_id": source["id"],
                "source_name": source.get("name"),
                "enabled": source.get("enabled", False),
                "status": classify_health(recent, source.get("enabled", False)),
                "last_success_at": recent.get("last_success_at") if recent else None,
                "listings_count": listings_count,
                "failure_rate": round(recent["failure_rate"], 2) if recent else 0,
                "new_listings_today": recent.get("new_listings", 0) if recent else 0,
            }
        )
    source_health.sort(key=lambda s: s["listings_count"], reverse=True)

    daily = {}
    for row in health:
        day = daily.setdefault(
            row["date"], {"date": row["date"], "fetched": 0, "parsed": 0, "new": 0, "failed": 0}
        )
        day["fetched"] += row.get("fetch_successes", 0)
        day["parsed"] += row.get("parse_successes", 0)
        day["new"] += row.get("new_listings", 0)
        day["failed"] += row.get("fetch_failures", 0)

    return {
        "total_sources": total_sources,
        "enabled_sources": enabled_sources,
        "total_listings": total_listings,
        "active_listings": active_listings,
        "listings_last_24h": listings_last_24h,
        "deduplication_rate": round(dedup_rate, 2),
        "source_health": source_health,
        "daily_stats": sorted(daily.values(), key=lambda d: d["date"]),
    }
