import pytest

import ingestion.worker as worker
from ingestion import job_queue
from ingestion.models import CrawlResult, JobType


@pytest.fixture
def fake_run_crawl(monkeypatch):
    calls = []

    async def run_crawl(source_id, max_pages=5, max_listings=500, dry_run=False):
        calls.append((source_id, max_pages, max_listings))
        return CrawlResult(source_id=source_id, listings_found=4, new_listings=1)

    monkeypatch.setattr(worker, "run_crawl", run_crawl)
    return calls


@pytest.mark.asyncio
async def test_refresh_job_runs_crawl_and_completes(fake_db, fake_run_crawl):
    job_id = await job_queue.enqueue(JobType.REFRESH, {"source_id": "test-broker"})

    processed = await worker.process_jobs(max_jobs=5)

    assert processed == [{"job_id": job_id, "type": "refresh", "status": "completed"}]
    assert fake_run_crawl == [
        ("test-broker", worker.CRAWL_MAX_PAGES, worker.CRAWL_MAX_LISTINGS)
    ]
    job = await job_queue.get_job(job_id)
    assert job.status == "completed"
    assert job.result["listings_found"] == 4


@pytest.mark.asyncio
async def test_job_without_source_id_goes_to_retry(fake_db, fake_run_crawl):
    """
    A refresh job with no source_id raises inside execute_job; the worker
    reports the queue status and keeps going.
    """
    job_id = await job_queue.enqueue(JobType.FETCH, {})

    processed = await worker.process_jobs()

    assert processed[0]["status"] == "retrying"
    assert fake_run_crawl == []
    job = await job_queue.get_job(job_id)
    assert job.attempts == 1
    assert "no source_id" in job.last_error


@pytest.mark.asyncio
async def test_consumer_side_job_types_are_skipped(fake_db, fake_run_crawl):
    parse_id = await job_queue.enqueue(JobType.PARSE, {"page_id": "p1"}, priority=3)
    await job_queue.enqueue(JobType.REFRESH, {"source_id": "craigslist-nyc"})

    processed = await worker.process_jobs(max_jobs=1)

    assert processed == [{"job_id": parse_id, "type": "parse", "status": "skipped"}]
    assert (await job_queue.get_job(parse_id)).status == "completed"
    assert (await job_queue.queue_depth())["pending"] == 1


@pytest.mark.asyncio
async def test_empty_queue_processes_nothing(fake_db, fake_run_crawl):
    assert await worker.process_jobs() == []
