import os
import logging
from datetime import timedelta
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from dotenv import load_dotenv
from .db import get_db
from .models import Job, JobStatus, JobType, utcnow

load_dotenv()

logger = logging.getLogger("ingestion.jobs")
logger.setLevel(logging.INFO)

# Minutes to wait before retry N (1-based); the last value repeats.
BACKOFF_MINUTES = [1, 5, 15, 30]

# A running job older than this is assumed orphaned by a dead worker.
RUNNING_LEASE_MINUTES = int(os.getenv("RUNNING_LEASE_MINUTES", "60"))


def backoff_minutes(attempts):
    return BACKOFF_MINUTES[min(max(attempts, 1) - 1, len(BACKOFF_MINUTES) - 1)]


async def enqueue(job_type, payload=None, priority=1, scheduled_for=None, max_attempts=3):
    """
    Add a pending job to the queue.

    Args:
        job_type (JobType | str): fetch, parse, dedup, analyze or refresh
        payload (dict, optional): Job arguments, e.g. {"source_id": ...}
        priority (int): Higher values are claimed first
        scheduled_for (datetime, optional): Earliest run time, default now
        max_attempts (int): Attempts before the job is terminally failed

    Returns:
        str: The new ``job_id``.
    """
    job = Job(
        type=JobType(job_type),
        payload=payload or {},
        priority=priority,
        scheduled_for=scheduled_for or utcnow(),
        max_attempts=max_attempts,
    )
    db = get_db()
    await db.jobs.insert_one(job.model_dump())
    logger.info(f"Enqueued {job.type} job {job.job_id} priority={priority}")
    return job.job_id


async def claim_next():
    """
    Atomically claim the next runnable job.

    A job is runnable when it is pending or retrying and its
    ``scheduled_for`` is not in the future, or when it has been running for
    longer than RUNNING_LEASE_MINUTES (its worker died mid-job). Highest
    priority wins, then the earliest ``scheduled_for``. The status flip to
    running happens in the same ``find_one_and_update``, so concurrent
    claimers never receive the same job.

    Returns:
        Job or None: The claimed job, already marked running.
    """
    db = get_db()
    now = utcnow()
    lease_expired = now - timedelta(minutes=RUNNING_LEASE_MINUTES)
    doc = await db.jobs.find_one_and_update(
        {
            "$or": [
                {
                    "status": {"$in": [JobStatus.PENDING.value, JobStatus.RETRYING.value]},
                    "scheduled_for": {"$lte": now},
                },
                {"status": JobStatus.RUNNING.value, "started_at": {"$lte": lease_expired}},
            ]
        },
        {"$set": {"status": JobStatus.RUNNING.value, "started_at": now, "updated_at": now}},
        sort=[("priority", DESCENDING), ("scheduled_for", ASCENDING)],
        return_document=ReturnDocument.BEFORE,
    )
    if not doc:
        return None
    if doc["status"] == JobStatus.RUNNING.value:
        logger.warning(f"Reclaimed job {doc['job_id']} after its lease expired")
    doc.update(status=JobStatus.RUNNING.value, started_at=now, updated_at=now)
    return Job.model_validate(doc)


async def complete(job_id, result=None):
    db = get_db()
    now = utcnow()
    await db.jobs.update_one(
        {"job_id": job_id},
        {
            "$set": {
                "status": JobStatus.COMPLETED.value,
                "completed_at": now,
                "updated_at": now,
                "result": result,
            }
        },
    )


async def fail(job_id, error):
    """
    Record a failed attempt and either schedule a retry or give up.

    The attempt counter is incremented first. While attempts remain the job
    goes to retrying with ``scheduled_for = next_retry_at = now + backoff``
    (1, 5, 15, 30 minutes, capped at 30). Once ``attempts >= max_attempts``
    the job is terminally failed and keeps its original ``scheduled_for``.

    Returns:
        str or None: The new status, or None when the job does not exist.
    """
    db = get_db()
    job = await db.jobs.find_one({"job_id": job_id})
    if not job:
        logger.warning(f"fail() on unknown job {job_id}")
        return None

    now = utcnow()
    attempts = job.get("attempts", 0) + 1
    fields = {"attempts": attempts, "last_error": error, "updated_at": now}
    if attempts < job.get("max_attempts", 3):
        retry_at = now + timedelta(minutes=backoff_minutes(attempts))
        fields.update(
            status=JobStatus.RETRYING.value,
            next_retry_at=retry_at,
            scheduled_for=retry_at,
        )
        logger.warning(
            f"Job {job_id} failed (attempt {attempts}), retrying at {retry_at.isoformat()}: {error}"
        )
    else:
        fields.update(status=JobStatus.FAILED.value, next_retry_at=None)
        logger.error(f"Job {job_id} failed permanently after {attempts} attempts: {error}")

    await db.jobs.update_one({"job_id": job_id}, {"$set": fields})
    return fields["status"]


async def get_job(job_id):
    db = get_db()
    doc = await db.jobs.find_one({"job_id": job_id})
    return Job.model_validate(doc) if doc else None


async def queue_depth():
    """Return ``{status: count}`` for every job status."""
    db = get_db()
    depth = {}
    for status in JobStatus:
        depth[status.value] = await db.jobs.count_documents({"status": status.value})
    return depth


async def recent_jobs(limit=20):
    db = get_db()
    docs = await db.jobs.find({}).sort([("created_at", DESCENDING)]).limit(limit).to_list(length=limit)
    for d in docs:
        d.pop("_id", None)
    return docs
