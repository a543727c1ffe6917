import time
import logging
from datetime import timedelta
from .adapters.factory import create_adapter
from .health import record_metric
from .job_queue import enqueue
from .models import CrawlResult, JobType, ParseStatus, utcnow
from .registry import get_enabled_sources, get_source
from .store import (
    find_potential_duplicates,
    mark_listings_delisted,
    save_raw_page,
    update_raw_page_parse_status,
    upsert_listing,
)

logger = logging.getLogger("ingestion")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
logger.addHandler(handler)

STAGGER_SECONDS = 60


async def run_crawl(source_id, max_pages=5, max_listings=500, dry_run=False):
    """
    Crawl one source end to end and reconcile its listings.

    Flow per page: ``list_listing_urls(page)`` -> for each URL ``fetch`` ->
    persist the RawPage -> ``parse`` -> ``upsert_listing`` for every parsed
    listing. After the last page, active listings of the source that were not
    seen in this crawl are delisted.

    Args:
        source_id (str): Registry id of the source
        max_pages (int): Upper bound on discovery pages
        max_listings (int): Stop once this many listings were found
        dry_run (bool): Fetch only; nothing is parsed or written except
            fetch metrics

    Returns:
        CrawlResult: Counters, error strings and duration. This function
            never raises; every failure ends up in ``errors`` and in the
            source's health row.

    Failure handling:
        - non-200 fetch: error string + fetch failure metric, URL skipped
        - 200 with zero listings: page marked failed + parse failure metric
        - exception while handling one URL: recorded, crawl continues
        - any other exception: recorded as ``last_error``, crawl stops
        - delisting is skipped when no listing was seen, so an empty or
          broken crawl never delists a whole source
    """
    started = time.monotonic()
    result = CrawlResult(source_id=source_id, dry_run=dry_run)
    adapter = None
    active_urls = []

    try:
        source = await get_source(source_id)
        if source is None:
            result.errors.append(f"Source not found: {source_id}")
            return result
        if not source.enabled:
            result.errors.append(f"Source is disabled: {source_id}")
            return result

        adapter = create_adapter(source)
        logger.info(f"[{source_id}] Starting crawl (max_pages={max_pages}, dry_run={dry_run})")

        for page in range(max_pages):
            listing_urls = await adapter.list_listing_urls(page=page)
            if not listing_urls:
                logger.info(f"[{source_id}] No more listings on page {page + 1}")
                break
            logger.info(f"[{source_id}] Found {len(listing_urls)} URLs on page {page + 1}")

            for item in listing_urls:
                if result.listings_found >= max_listings:
                    logger.info(f"[{source_id}] Reached max listings limit")
                    break
                await _process_url(adapter, item.url, result, active_urls, dry_run)

            if result.listings_found >= max_listings:
                break

        if not dry_run and active_urls:
            delisted = await mark_listings_delisted(source_id, active_urls)
            result.delisted_listings = delisted
            if delisted:
                await record_metric(source_id, delisted_listings=delisted)

    except Exception as e:
        logger.exception(f"[{source_id}] Crawl failed: {e}")
        result.errors.append(str(e) or e.__class__.__name__)
        await _record_crawl_error(source_id, str(e) or e.__class__.__name__)
    finally:
        if adapter is not None:
            await adapter.close()

    result.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"[{source_id}] Crawl complete: found={result.listings_found} new={result.new_listings} "
        f"updated={result.updated_listings} delisted={result.delisted_listings} "
        f"errors={len(result.errors)} duration={result.duration_ms}ms"
    )
    return result


async def _record_crawl_error(source_id, error):
    # the store may be the thing that failed
    try:
        await record_metric(source_id, last_error=error)
    except Exception as e:
        logger.error(f"[{source_id}] Could not record crawl error: {e}")


async def _process_url(adapter, url, result, active_urls, dry_run):
    source_id = adapter.source_id
    fetch_recorded = False
    try:
        raw_page = await adapter.fetch(url)
        if not raw_page.ok:
            msg = f"Failed to fetch {url}: {raw_page.error_message or raw_page.http_status}"
            logger.warning(f"[{source_id}] {msg}")
            result.errors.append(msg)
            await record_metric(
                source_id,
                fetch_attempts=1,
                fetch_failures=1,
                fetch_time_total_ms=raw_page.fetch_time_ms,
            )
            return

        await record_metric(
            source_id,
            fetch_attempts=1,
            fetch_successes=1,
            fetch_time_total_ms=raw_page.fetch_time_ms,
        )
        fetch_recorded = True

        if dry_run:
            result.listings_found += 1
            active_urls.append(url)
            return

        page_id = await save_raw_page(raw_page)
        parse_started = time.monotonic()
        listings = await adapter.parse(raw_page)
        parse_ms = int((time.monotonic() - parse_started) * 1000)

        if not listings:
            logger.info(f"[{source_id}] No listings extracted from {url}")
            await update_raw_page_parse_status(page_id, ParseStatus.FAILED, "No listings extracted")
            await record_metric(
                source_id, parse_attempts=1, parse_failures=1, parse_time_total_ms=parse_ms
            )
            return

        await update_raw_page_parse_status(page_id, ParseStatus.PARSED)

        new = updated = duplicates = 0
        for listing in listings:
            _, created = await upsert_listing(listing)
            result.listings_found += 1
            active_urls.append(listing.source_url)
            if created:
                new += 1
                if await find_potential_duplicates(listing):
                    duplicates += 1
            else:
                updated += 1

        result.new_listings += new
        result.updated_listings += updated
        await record_metric(
            source_id,
            parse_attempts=1,
            parse_successes=1,
            parse_time_total_ms=parse_ms,
            listings_found=len(listings),
            new_listings=new,
            updated_listings=updated,
            duplicates_detected=duplicates,
        )

    except Exception as e:
        msg = f"Error processing {url}: {e}"
        logger.exception(f"[{source_id}] {msg}")
        result.errors.append(msg)
        if fetch_recorded:
            await record_metric(source_id, parse_attempts=1, parse_failures=1, last_error=str(e))
        else:
            await record_metric(
                source_id, fetch_attempts=1, fetch_failures=1, last_error=str(e)
            )


async def schedule_crawl(source_id, priority=1, delay_seconds=0):
    """Enqueue a refresh job for ``source_id``; returns the job id."""
    return await enqueue(
        JobType.REFRESH,
        {"source_id": source_id},
        priority=priority,
        scheduled_for=utcnow() + timedelta(seconds=delay_seconds),
        max_attempts=3,
    )


async def schedule_all_crawls():
    """
    Enqueue a refresh job for every enabled source.

    Sources are taken in priority order and staggered one minute apart so
    a single worker tick does not hit every site at once.

    Returns:
        dict: {"scheduled": int, "job_ids": [str, ...]}
    """
    sources = await get_enabled_sources()
    job_ids = []
    for i, source in enumerate(sources):
        job_ids.append(
            await schedule_crawl(
                source.id, priority=source.priority, delay_seconds=i * STAGGER_SECONDS
            )
        )
    logger.info(f"Scheduled crawls for {len(job_ids)} sources")
    return {"scheduled": len(job_ids), "job_ids": job_ids}


async def ingest_listings(source_id, listings, reconcile=False):
    """
    Store a batch of already-normalized listings for a source.

    Used by the direct scrape and provider paths, which produce listings
    without going through ``fetch``/``parse``.

    Args:
        source_id (str): Source the listings belong to
        listings (list[NormalizedListing]): Batch to upsert
        reconcile (bool): Delist the source's active listings missing from
            this batch (skipped for an empty batch)

    Returns:
        dict: {"saved": int, "updated": int, "delisted": int, "errors": [str]}
    """
    saved = updated = delisted = 0
    errors = []
    seen = []
    for listing in listings:
        listing.source_id = source_id
        try:
            _, created = await upsert_listing(listing)
        except Exception as e:
            logger.exception(f"[{source_id}] Failed to save {listing.source_url}: {e}")
            errors.append(f"{listing.source_url}: {e}")
            continue
        seen.append(listing.source_url)
        if created:
            saved += 1
        else:
            updated += 1

    if reconcile and seen:
        delisted = await mark_listings_delisted(source_id, seen)

    await record_metric(
        source_id,
        listings_found=len(listings),
        new_listings=saved,
        updated_listings=updated,
        delisted_listings=delisted,
        last_error=errors[-1] if errors else None,
    )
    logger.info(
        f"[{source_id}] Ingested {len(listings)} listings: saved={saved} updated={updated} "
        f"delisted={delisted} errors={len(errors)}"
    )
    return {"saved": saved, "updated": updated, "delisted": delisted, "errors": errors}
