from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Query, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import os
from dotenv import load_dotenv
from .auth import get_api_key
from .rate_limit import READ_LIMIT, TRIGGER_LIMIT, register_rate_limit, limiter
from ingestion import job_queue
from ingestion.adapters.apify_streeteasy import ApifyError
from ingestion.adapters.factory import create_adapter
from ingestion.db import ensure_indexes
from ingestion.health import classify_health, get_source_health, record_metric
from ingestion.orchestrator import (
    ingest_listings,
    run_crawl,
    schedule_all_crawls,
    schedule_crawl,
)
from ingestion.registry import get_enabled_sources, get_source, list_sources, seed_sources
from ingestion.stats import get_ingestion_stats
from ingestion.store import find_potential_duplicates, get_listing, query_listings
from ingestion.worker import process_jobs
import logging

load_dotenv()
API_PORT = int(os.getenv("API_PORT", "8000"))

BROWSER_SOURCE_ID = "streeteasy-browser"
APIFY_SOURCE_ID = "streeteasy-apify"
APIFY_ACTIONS = ("run", "status", "fetch")
MAX_REPORTED_ERRORS = 10

logger = logging.getLogger("api")
logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await ensure_indexes()
    await seed_sources()
    yield


app = FastAPI(title="Rental Ingestion API", version="1.0", lifespan=lifespan)

register_rate_limit(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def listing_sample(listings, n=3):
    """
    Short preview of the first ``n`` listings of a batch.

    Args:
        listings (list[NormalizedListing]): Batch returned by a scrape
        n (int): Number of listings to include

    Returns:
        list[dict]: url, price, beds, neighborhood and borough per listing.
    """
    return [
        {
            "url": l.source_url,
            "price": l.price,
            "beds": l.beds,
            "neighborhood": l.neighborhood,
            "borough": l.borough,
        }
        for l in listings[:n]
    ]


def parse_beds(beds):
    """Parse a comma separated bedroom filter such as "0,1,2"."""
    if not beds:
        return None
    try:
        return [int(b) for b in beds.split(",") if b.strip()]
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid beds filter: {beds}")


async def require_source(source_id):
    source = await get_source(source_id)
    if source is None:
        raise HTTPException(status_code=404, detail=f"Source not found: {source_id}")
    return source


@app.post("/ingestion/jobs/process", dependencies=[Depends(get_api_key)])
@limiter.limit(TRIGGER_LIMIT)
async def process_job_batch(request: Request, max_jobs: int = Query(5, alias="max", ge=1, le=50)):
    """
    Run up to ``max`` queued jobs now.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        max_jobs (int): Upper bound on jobs handled, 1-50. Defaults to 5

    Returns:
        dict:
            - message (str): Human readable summary
            - processed (list[dict]): job_id, type and final status per job
    """
    processed = await process_jobs(max_jobs)
    return {"message": f"Processed {len(processed)} jobs", "processed": processed}


@app.get("/ingestion/jobs", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def job_status(request: Request):
    """Queue depth by status and the 20 most recently created jobs."""
    return {
        "queue": await job_queue.queue_depth(),
        "recent_jobs": await job_queue.recent_jobs(20),
    }


@app.post("/ingestion/scrape", dependencies=[Depends(get_api_key)])
@limiter.limit(TRIGGER_LIMIT)
async def scrape_streeteasy(
    request: Request,
    max_listings: int = Query(500, alias="maxListings", ge=1, le=5000),
    borough: Optional[str] = Query(None),
    min_price: Optional[int] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[int] = Query(None, alias="maxPrice", ge=0),
    beds: Optional[str] = Query(None),
):
    """
    Scrape StreetEasy search results with the headless browser and store them.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        max_listings (int): Stop after this many listings. Defaults to 500
        borough (str, optional): Borough slug, e.g. "brooklyn"
        min_price (int, optional): Minimum monthly rent
        max_price (int, optional): Maximum monthly rent
        beds (str, optional): Comma separated bedroom counts, e.g. "0,1"

    Returns:
        dict:
            - message, total_found, pages_scraped
            - saved / updated: store outcome per listing
            - scrape_errors / save_errors: first 10 error strings
            - sample: first 3 listings

    Raises:
        HTTPException: 404 if the browser source is not registered
        HTTPException: 400 for a malformed ``beds`` filter
    """
    bed_filter = parse_beds(beds)
    source = await require_source(BROWSER_SOURCE_ID)
    adapter = create_adapter(source)
    logger.info(f"Starting StreetEasy scrape: max={max_listings}, borough={borough or 'all'}")
    try:
        result = await adapter.scrape_rentals(
            max_listings=max_listings,
            borough=borough,
            min_price=min_price,
            max_price=max_price,
            beds=bed_filter,
        )
    finally:
        await adapter.close()

    await record_metric(
        source.id,
        fetch_attempts=result.pages_scraped + len(result.errors),
        fetch_successes=result.pages_scraped,
        fetch_failures=len(result.errors),
    )
    summary = await ingest_listings(source.id, result.listings)

    return {
        "message": f"Scraped {len(result.listings)} listings from StreetEasy",
        "total_found": result.total_found,
        "pages_scraped": result.pages_scraped,
        "saved": summary["saved"],
        "updated": summary["updated"],
        "scrape_errors": result.errors[:MAX_REPORTED_ERRORS],
        "save_errors": summary["errors"][:MAX_REPORTED_ERRORS],
        "sample": listing_sample(result.listings),
    }


@app.post("/ingestion/apify", dependencies=[Depends(get_api_key)])
@limiter.limit(TRIGGER_LIMIT)
async def apify_action(
    request: Request,
    action: str = Query("fetch"),
    run_id: Optional[str] = Query(None, alias="runId"),
    max_listings: int = Query(100, alias="maxListings", ge=1, le=5000),
    borough: Optional[str] = Query(None),
):
    """
    Drive the Apify StreetEasy actor.

    Actions:
        - run: start a new actor run, returns its ``run_id``
        - status: report the state of ``runId``
        - fetch: pull the last dataset, store it and delist listings of the
          provider source that are no longer in it

    Raises:
        HTTPException: 400 for an unknown action or ``status`` without runId
        HTTPException: 404 if the provider source is not registered
        HTTPException: 502 when the provider call fails
    """
    if action not in APIFY_ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown action: {action}")
    if action == "status" and not run_id:
        raise HTTPException(status_code=400, detail="runId required for status check")

    source = await require_source(APIFY_SOURCE_ID)
    adapter = create_adapter(source)
    try:
        if action == "run":
            new_run_id = await adapter.trigger_run(max_items=max_listings, borough=borough)
            return {
                "message": "Apify run started",
                "run_id": new_run_id,
                "check_status_url": f"/ingestion/apify?action=status&runId={new_run_id}",
            }
        if action == "status":
            return await adapter.get_run_status(run_id)
        listings = await adapter.fetch_and_normalize(max_listings=max_listings, borough=borough)
    except ApifyError as e:
        logger.error(f"Apify {action} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    finally:
        await adapter.close()

    if not listings:
        return {
            "message": "No listings found. You may need to trigger a run first.",
            "hint": "POST /ingestion/apify?action=run",
            "total": 0,
            "saved": 0,
        }

    summary = await ingest_listings(source.id, listings, reconcile=True)
    return {
        "message": f"Fetched {len(listings)} listings from Apify",
        "total": len(listings),
        "saved": summary["saved"],
        "updated": summary["updated"],
        "delisted": summary["delisted"],
        "errors": summary["errors"][:MAX_REPORTED_ERRORS],
        "sample": listing_sample(listings),
    }


@app.post("/ingestion/crawl", dependencies=[Depends(get_api_key)])
@limiter.limit(TRIGGER_LIMIT)
async def crawl_all(
    request: Request,
    run_async: bool = Query(False, alias="async"),
    limit: Optional[int] = Query(None, ge=1),
):
    """
    Crawl every enabled source.

    With ``async=true`` one refresh job per source is queued and the job ids
    are returned; otherwise the first ``limit`` sources (priority order) are
    crawled inline and their results returned.
    """
    if run_async:
        scheduled = await schedule_all_crawls()
        return {"message": f"Scheduled {scheduled['scheduled']} crawl jobs", **scheduled}

    sources = await get_enabled_sources()
    if limit:
        sources = sources[:limit]
    results = []
    for source in sources:
        result = await run_crawl(source.id)
        results.append(result.model_dump())
    return {
        "message": f"Crawled {len(results)} sources",
        "total_found": sum(r["listings_found"] for r in results),
        "total_new": sum(r["new_listings"] for r in results),
        "results": results,
    }


@app.post("/ingestion/crawl/{source_id}", dependencies=[Depends(get_api_key)])
@limiter.limit(TRIGGER_LIMIT)
async def crawl_source(
    request: Request,
    source_id: str,
    max_pages: int = Query(5, alias="maxPages", ge=1, le=100),
    max_listings: int = Query(500, alias="maxListings", ge=1, le=5000),
    dry_run: bool = Query(False, alias="dryRun"),
    run_async: bool = Query(False, alias="async"),
):
    """
    Crawl a single source, inline or as a queued job.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        source_id (str): Registry id of the source
        max_pages (int): Discovery page cap. Defaults to 5
        max_listings (int): Listing cap. Defaults to 500
        dry_run (bool): Fetch only, store nothing
        run_async (bool): Queue a refresh job instead of crawling now

    Returns:
        dict: ``{"message", "job_id"}`` when queued, otherwise the CrawlResult.

    Raises:
        HTTPException: 404 if the source is not registered
    """
    source = await require_source(source_id)
    if run_async:
        job_id = await schedule_crawl(source.id, priority=source.priority)
        return {"message": f"Crawl job queued for {source.id}", "job_id": job_id}
    result = await run_crawl(
        source.id, max_pages=max_pages, max_listings=max_listings, dry_run=dry_run
    )
    return result.model_dump()


@app.get("/ingestion/sources", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def get_sources(request: Request, enabled: bool = Query(False)):
    """
    List registered sources with today's health.

    Args:
        request (Request): FastAPI request object (required for rate limiting)
        enabled (bool): Only return enabled sources

    Returns:
        dict: {"total": int, "sources": [SourceConfig + "health" + "health_status"]}
    """
    sources = []
    for source in await list_sources(enabled_only=enabled):
        health = await get_source_health(source.id)
        entry = source.model_dump()
        entry["health"] = health.model_dump() if health else None
        entry["health_status"] = classify_health(health, source.enabled)
        sources.append(entry)
    return {"total": len(sources), "sources": sources}


@app.get("/ingestion/listings", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def list_listings(
    request: Request,
    source: Optional[str] = Query(None),
    borough: Optional[str] = Query(None),
    neighborhood: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    min_beds: Optional[int] = Query(None, alias="minBeds"),
    min_baths: Optional[float] = Query(None, alias="minBaths"),
    no_fee: Optional[bool] = Query(None, alias="noFee"),
    status: str = Query("active"),
    analyzed: Optional[bool] = Query(None),
    sort: str = Query("date", pattern="^(price|date|quality)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
):
    """
    Page through stored listings.

    Filters are combined with AND. ``status=all`` disables the status filter.
    ``analyzed=false`` returns listings the image analysis consumer has not
    processed yet; ``analyzed=true`` only the processed ones.

    Sorting Options:
        - 'price': ascending
        - 'date': newest first (default)
        - 'quality': highest image analysis score first

    Returns:
        dict: {"listings", "total", "page", "limit"}
    """
    return await query_listings(
        sort=sort,
        page=page,
        limit=limit,
        source_id=source,
        borough=borough,
        neighborhood=neighborhood,
        min_price=min_price,
        max_price=max_price,
        min_beds=min_beds,
        min_baths=min_baths,
        no_fee=no_fee,
        status=None if status == "all" else status,
        analyzed=analyzed,
    )


@app.get("/ingestion/listings/{listing_id}/duplicates", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def listing_duplicates(request: Request, listing_id: str):
    """
    Candidate duplicates of one listing across sources.

    Raises:
        HTTPException: 404 if no listing has this id
    """
    doc = await get_listing(listing_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Listing not found")
    candidates = await find_potential_duplicates(doc)
    for c in candidates:
        c.pop("_id", None)
    return {"listing_id": listing_id, "count": len(candidates), "candidates": candidates}


@app.get("/ingestion/stats", dependencies=[Depends(get_api_key)])
@limiter.limit(READ_LIMIT)
async def ingestion_stats(request: Request, days: int = Query(7, ge=1, le=90)):
    """Dashboard counters, per source health and the daily series."""
    return await get_ingestion_stats(days=days)


# Run uvicorn externally or here
if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host="0.0.0.0", port=API_PORT, reload=True)
