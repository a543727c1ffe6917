import os
import logging
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError
from dotenv import load_dotenv
from .db import get_db
from .models import ListingStatus, ParseStatus, utcnow
from .utils import hash_image_url

load_dotenv()

DUPLICATE_PRICE_TOLERANCE = float(os.getenv("DUPLICATE_PRICE_TOLERANCE", "0.05"))

logger = logging.getLogger("ingestion.store")
logger.setLevel(logging.INFO)

# Bookkeeping owned by the store, the dedup resolver or the image analysis
# consumer. A fresh scrape never overwrites these.
PRESERVED_FIELDS = (
    "listing_id",
    "first_seen_at",
    "price_history",
    "is_duplicate",
    "duplicate_of",
    "canonical_listing_id",
    "duplicate_confidence",
    "stored_image_analysis",
    "relist_detected",
    "delisted_at",
)

SORT_FIELDS = {
    "price": [("price", ASCENDING)],
    "date": [("first_seen_at", DESCENDING)],
    "quality": [("stored_image_analysis.quality_score", DESCENDING)],
}


# ----------------------------------------------------------------------------
# Raw pages
# ----------------------------------------------------------------------------


async def save_raw_page(raw_page):
    """Insert a RawPage document and return its ``page_id``."""
    db = get_db()
    await db.raw_pages.insert_one(raw_page.model_dump())
    return raw_page.page_id


async def update_raw_page_parse_status(page_id, status, error=None):
    """
    Record the parse outcome of a stored raw page.

    ``parsed_at`` is only set for a successful parse; ``error_message`` is
    only touched when an error is supplied.
    """
    db = get_db()
    status = ParseStatus(status).value
    fields = {
        "parse_status": status,
        "parsed_at": utcnow() if status == ParseStatus.PARSED.value else None,
    }
    if error:
        fields["error_message"] = error
    await db.raw_pages.update_one({"page_id": page_id}, {"$set": fields})


async def get_latest_raw_page(url):
    """Return the most recent raw page fetched for ``url`` (or None)."""
    db = get_db()
    docs = (
        await db.raw_pages.find({"url": url})
        .sort([("fetched_at", DESCENDING)])
        .limit(1)
        .to_list(length=1)
    )
    return docs[0] if docs else None


# ----------------------------------------------------------------------------
# Listings
# ----------------------------------------------------------------------------


async def upsert_listing(listing):
    """
    Insert or update a listing by its natural key ``(source_id, source_url)``.

    Args:
        listing (NormalizedListing): Freshly parsed listing

    Returns:
        tuple: (listing_id, created)
            - listing_id (str): The stable identity of the stored listing.
              For an existing record this is the stored id, never the id
              carried by ``listing``.
            - created (bool): True when a new document was inserted

    Update rules:
        - Every scraped field, status included, is overwritten;
          PRESERVED_FIELDS never are
        - ``last_seen_at`` / ``last_updated_at`` are refreshed
        - ``image_hashes`` is recomputed from ``images`` on every write
        - A price change appends ``{price: old_price, date: old_last_seen_at}``
          to ``price_history``
        - A previously delisted listing that comes back active gets
          ``relist_detected=True`` and its ``delisted_at`` cleared

    Note:
        Two writers racing on the same natural key both try the insert; the
        loser hits the unique index and falls through to the update path.
    """
    listing.image_hashes = [hash_image_url(url) for url in listing.images]
    db = get_db()
    key = {"source_id": listing.source_id, "source_url": listing.source_url}
    existing = await db.listings.find_one(key)

    if existing is None:
        now = utcnow()
        doc = listing.model_dump()
        doc.update(
            {
                "first_seen_at": now,
                "last_seen_at": now,
                "last_updated_at": now,
                "delisted_at": None,
                "price_history": [],
                "relist_detected": False,
                "is_duplicate": False,
            }
        )
        try:
            await db.listings.insert_one(doc)
            return doc["listing_id"], True
        except DuplicateKeyError:
            logger.info(f"Concurrent insert for {listing.source_url}, updating instead")
            existing = await db.listings.find_one(key)
            if existing is None:
                raise

    now = utcnow()
    fields = listing.model_dump(exclude=set(PRESERVED_FIELDS))
    fields.update({"last_seen_at": now, "last_updated_at": now})
    if (
        existing.get("status") == ListingStatus.DELISTED.value
        and fields["status"] == ListingStatus.ACTIVE.value
    ):
        fields["relist_detected"] = True
        fields["delisted_at"] = None
        logger.info(f"Relist detected for {existing['listing_id']} ({listing.source_url})")

    update = {"$set": fields}
    old_price = existing.get("price")
    if old_price is not None and old_price != listing.price:
        update["$push"] = {
            "price_history": {"price": old_price, "date": existing.get("last_seen_at")}
        }

    await db.listings.update_one({"listing_id": existing["listing_id"]}, update)
    return existing["listing_id"], False


async def mark_listings_delisted(source_id, active_urls):
    """
    Delist every active listing of ``source_id`` not seen in this crawl.

    Args:
        source_id (str): Source whose listings are reconciled
        active_urls (Iterable[str]): ``source_url`` values seen this crawl

    Returns:
        int: Number of listings moved to delisted.
    """
    db = get_db()
    now = utcnow()
    res = await db.listings.update_many(
        {
            "source_id": source_id,
            "status": ListingStatus.ACTIVE.value,
            "source_url": {"$nin": list(active_urls)},
        },
        {
            "$set": {
                "status": ListingStatus.DELISTED.value,
                "delisted_at": now,
                "last_updated_at": now,
            }
        },
    )
    if res.modified_count:
        logger.info(f"Delisted {res.modified_count} listings for {source_id}")
    return res.modified_count


async def find_potential_duplicates(
    listing,
    price_tolerance=DUPLICATE_PRICE_TOLERANCE,
    match_fields=("beds", "baths", "borough"),
):
    """
    Find candidate duplicates of a listing across all sources.

    Candidates have a price within ``price_tolerance`` (fraction, both
    directions), equal values for every field in ``match_fields``, are not
    the listing itself and are not already marked as duplicates. This is the
    matching primitive only; merging is left to a resolver.

    Args:
        listing (NormalizedListing | dict): Listing to match against
        price_tolerance (float): Relative price window, default 0.05
        match_fields (tuple[str]): Fields that must be equal

    Returns:
        list[dict]: Candidate listing documents.
    """
    if not isinstance(listing, dict):
        listing = listing.model_dump()
    db = get_db()
    price = listing.get("price") or 0
    q = {
        "listing_id": {"$ne": listing.get("listing_id")},
        "price": {
            "$gte": price * (1 - price_tolerance),
            "$lte": price * (1 + price_tolerance),
        },
        "is_duplicate": {"$ne": True},
    }
    for field in match_fields:
        q[field] = listing.get(field)
    return await db.listings.find(q).to_list(length=None)


async def get_listing(listing_id):
    db = get_db()
    return await db.listings.find_one({"listing_id": listing_id})


def build_listing_query(
    source_id=None,
    borough=None,
    neighborhood=None,
    min_price=None,
    max_price=None,
    min_beds=None,
    min_baths=None,
    no_fee=None,
    status=ListingStatus.ACTIVE.value,
    since=None,
    analyzed=None,
):
    """Translate listing filters into a MongoDB query document."""
    q = {}
    if source_id:
        q["source_id"] = source_id
    if borough:
        q["borough"] = borough
    if neighborhood:
        q["neighborhood"] = neighborhood
    price = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        q["price"] = price
    if min_beds is not None:
        q["beds"] = {"$gte": min_beds}
    if min_baths is not None:
        q["baths"] = {"$gte": min_baths}
    if no_fee is not None:
        q["no_fee"] = no_fee
    if status:
        q["status"] = status
    if since is not None:
        q["first_seen_at"] = {"$gte": since}
    if analyzed is True:
        q["stored_image_analysis"] = {"$exists": True, "$ne": None}
    elif analyzed is False:
        q["stored_image_analysis"] = None
    return q


async def query_listings(sort="date", page=1, limit=20, **filters):
    """
    Return one page of listings matching the filters.

    Args:
        sort (str): "price", "date" or "quality"
        page (int): 1-based page number
        limit (int): Page size
        **filters: Keyword arguments accepted by build_listing_query

    Returns:
        dict: {"listings": [...], "total": int, "page": int, "limit": int}
    """
    db = get_db()
    q = build_listing_query(**filters)
    total = await db.listings.count_documents(q)
    cursor = (
        db.listings.find(q)
        .sort(SORT_FIELDS.get(sort, SORT_FIELDS["date"]))
        .skip((page - 1) * limit)
        .limit(limit)
    )
    docs = await cursor.to_list(length=limit)
    for d in docs:
        d.pop("_id", None)
    return {"listings": docs, "total": total, "page": page, "limit": limit}
