import logging
from . import job_queue
from .models import JobType
from .orchestrator import run_crawl

logger = logging.getLogger("ingestion.worker")
logger.setLevel(logging.INFO)

CRAWL_MAX_PAGES = 3
CRAWL_MAX_LISTINGS = 200

# Accepted by the queue but handled by consumers outside this package.
SKIPPED_JOB_TYPES = {JobType.PARSE.value, JobType.DEDUP.value, JobType.ANALYZE.value}


async def execute_job(job):
    """
    Run one claimed job and return its result payload.

    Raises:
        ValueError: Missing ``source_id`` or an unknown job type
    """
    if job.type in (JobType.REFRESH.value, JobType.FETCH.value):
        source_id = job.payload.get("source_id")
        if not source_id:
            raise ValueError(f"Job {job.job_id} has no source_id in payload")
        result = await run_crawl(
            source_id, max_pages=CRAWL_MAX_PAGES, max_listings=CRAWL_MAX_LISTINGS
        )
        return result.model_dump()
    if job.type in SKIPPED_JOB_TYPES:
        logger.info(f"Job type {job.type} not implemented here, skipping {job.job_id}")
        return {"skipped": True}
    raise ValueError(f"Unknown job type: {job.type}")


async def process_jobs(max_jobs=5):
    """
    Claim and run up to ``max_jobs`` jobs, one at a time.

    Each job is claimed atomically, executed, then completed or failed.
    A failed job is retried later by the queue's backoff policy.

    Args:
        max_jobs (int): Upper bound on jobs handled by this call

    Returns:
        list[dict]: ``{"job_id", "type", "status"}`` per job, where status is
            "completed", "skipped" or the queue status after a failure
            ("retrying" or "failed").
    """
    processed = []
    for _ in range(max_jobs):
        job = await job_queue.claim_next()
        if job is None:
            break
        logger.info(f"Processing job {job.job_id} ({job.type})")
        try:
            result = await execute_job(job)
        except Exception as e:
            logger.exception(f"Job {job.job_id} failed: {e}")
            status = await job_queue.fail(job.job_id, str(e) or e.__class__.__name__)
            processed.append({"job_id": job.job_id, "type": job.type, "status": status})
            continue
        await job_queue.complete(job.job_id, result)
        status = "skipped" if result.get("skipped") else "completed"
        processed.append({"job_id": job.job_id, "type": job.type, "status": status})
    return processed
