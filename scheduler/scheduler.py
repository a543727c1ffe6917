import asyncio
import os
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv
from ingestion.db import ensure_indexes
from ingestion.orchestrator import schedule_all_crawls
from ingestion.registry import seed_sources
from ingestion.worker import process_jobs
from scheduler.reporter import generate_health_report

load_dotenv()

CRAWL_INTERVAL_MINUTES = int(os.getenv("CRAWL_INTERVAL_MINUTES", "360"))
JOB_POLL_MINUTES = int(os.getenv("JOB_POLL_MINUTES", "1"))
JOBS_PER_TICK = int(os.getenv("JOBS_PER_TICK", "5"))
REPORT_HOUR_UTC = 6

logger = logging.getLogger("scheduler")
logger.setLevel(logging.INFO)
handler = logging.StreamHandler()
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
logger.addHandler(handler)


async def enqueue_crawls():
    """Queue one refresh job per enabled source."""
    scheduled = await schedule_all_crawls()
    logger.info(f"Enqueued {scheduled['scheduled']} crawl jobs")


async def drain_jobs():
    """
    Work through the queue for one scheduler tick.

    Bounded by JOBS_PER_TICK so a tick never runs longer than a handful of
    crawls.
    """
    processed = await process_jobs(JOBS_PER_TICK)
    if processed:
        failed = [p for p in processed if p["status"] in ("retrying", "failed")]
        logger.info(f"Processed {len(processed)} jobs ({len(failed)} failed)")


async def daily_report():
    report = await generate_health_report()
    logger.info(
        f"Daily health report written, {len(report['unhealthy'])} unhealthy sources, "
        f"alert_sent={report['alert_sent']}"
    )


def build_scheduler():
    """
    Create the AsyncIOScheduler with the ingestion jobs registered.

    Jobs:
        - enqueue_crawls: every CRAWL_INTERVAL_MINUTES
        - drain_jobs: every JOB_POLL_MINUTES, at most one instance at a time
        - daily_report: cron, 06:00 UTC

    Returns:
        AsyncIOScheduler: Not yet started.
    """
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        enqueue_crawls,
        "interval",
        minutes=CRAWL_INTERVAL_MINUTES,
        id="enqueue_crawls",
    )
    scheduler.add_job(
        drain_jobs,
        "interval",
        minutes=JOB_POLL_MINUTES,
        id="drain_jobs",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        daily_report,
        "cron",
        hour=REPORT_HOUR_UTC,
        minute=0,
        id="daily_report",
    )
    return scheduler


async def async_main():
    """
    Prepare the database and run the scheduler until the process is stopped.

    Indexes and seed sources are ensured once at startup, then the first
    round of crawls is queued immediately rather than after the first
    interval.
    """
    await ensure_indexes()
    await seed_sources()

    scheduler = build_scheduler()
    scheduler.start()
    logger.info(
        f"Scheduler started (crawls every {CRAWL_INTERVAL_MINUTES} min, "
        f"queue poll every {JOB_POLL_MINUTES} min)"
    )
    await enqueue_crawls()
    # Keep program running forever
    await asyncio.Event().wait()


if __name__ == "__main__":
    asyncio.run(async_main())
