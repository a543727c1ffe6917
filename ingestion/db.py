import os
import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from dotenv import load_dotenv

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "rentals")

logger = logging.getLogger("ingestion.db")

_client = None
_db = None


def get_client():
    """Initialize and return the MongoDB AsyncIOMotorClient singleton."""
    global _client, _db
    if _client is None:
        _client = AsyncIOMotorClient(MONGO_URI, tz_aware=True)
        _db = _client[MONGO_DB]
    return _client


def get_db():
    """Return the MongoDB database instance, initializing if needed.

    Collections used by the ingestion pipeline:
        - sources: SourceConfig documents keyed by ``id``
        - raw_pages: RawPage audit trail
        - listings: NormalizedListing documents
        - canonical_listings: CanonicalListing merge targets
        - jobs: Job queue
        - source_health: per (source_id, date) counters
    """
    global _db
    if _db is None:
        get_client()
    return _db


async def ensure_indexes():
    """
    Create the secondary indexes the ingestion pipeline relies on.

    Safe to run on every startup; MongoDB treats an existing identical index
    as a no-op.

    Indexes:
        raw_pages:
            - (url, fetched_at desc) for latest-fetch lookup
            - (source_id, parse_status)
            - content_hash
            - page_id (unique)
        listings:
            - (source_id, source_url) unique natural key
            - listing_id unique
            - canonical_listing_id
            - (status, last_seen_at desc)
            - (price, beds, borough) for duplicate candidates
            - address_normalized
            - listing_search compound index for API queries
        jobs:
            - job_id unique
            - (status, scheduled_for, priority desc) for claim_next
            - (status, started_at) for lease reclaim
            - (type, status)
        source_health:
            - (source_id, date) unique
        sources:
            - id unique
    """
    db = get_db()

    await db.raw_pages.create_index([("url", ASCENDING), ("fetched_at", DESCENDING)])
    await db.raw_pages.create_index([("source_id", ASCENDING), ("parse_status", ASCENDING)])
    await db.raw_pages.create_index("content_hash")
    await db.raw_pages.create_index("page_id", unique=True)

    await db.listings.create_index(
        [("source_id", ASCENDING), ("source_url", ASCENDING)], unique=True
    )
    await db.listings.create_index("listing_id", unique=True)
    await db.listings.create_index("canonical_listing_id")
    await db.listings.create_index([("status", ASCENDING), ("last_seen_at", DESCENDING)])
    await db.listings.create_index(
        [("price", ASCENDING), ("beds", ASCENDING), ("borough", ASCENDING)]
    )
    await db.listings.create_index("address_normalized")
    await db.listings.create_index(
        [
            ("borough", ASCENDING),
            ("neighborhood", ASCENDING),
            ("price", ASCENDING),
            ("beds", ASCENDING),
            ("status", ASCENDING),
        ],
        name="listing_search",
    )

    await db.jobs.create_index("job_id", unique=True)
    await db.jobs.create_index(
        [("status", ASCENDING), ("scheduled_for", ASCENDING), ("priority", DESCENDING)]
    )
    await db.jobs.create_index([("type", ASCENDING), ("status", ASCENDING)])
    await db.jobs.create_index([("status", ASCENDING), ("started_at", ASCENDING)])

    await db.source_health.create_index(
        [("source_id", ASCENDING), ("date", DESCENDING)], unique=True
    )
    await db.sources.create_index("id", unique=True)

    logger.info("MongoDB indexes ensured")
