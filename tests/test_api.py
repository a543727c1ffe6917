# tests/test_api.py
import pytest
from httpx import AsyncClient

import api.main as main
from api.rate_limit import limiter
from conftest import TEST_API_KEY
from ingestion.adapters.apify_streeteasy import ApifyError
from ingestion.models import CrawlResult, NormalizedListing, ScrapeResult
from ingestion.store import upsert_listing

HEADERS = {"X-API-Key": TEST_API_KEY}


@pytest.fixture(autouse=True)
def reset_limits():
    limiter.reset()
    yield
    limiter.reset()


def make_listing(url, source_id="streeteasy-browser", price=3000, **fields):
    fields.setdefault("beds", 1)
    fields.setdefault("borough", "Brooklyn")
    return NormalizedListing(source_id=source_id, source_url=url, price=price, **fields)


class FakeScrapeAdapter:
    def __init__(self, result=None, apify_listings=None, apify_error=None):
        self.result = result or ScrapeResult()
        self.apify_listings = apify_listings or []
        self.apify_error = apify_error
        self.closed = False
        self.scrape_kwargs = None

    async def scrape_rentals(self, **kwargs):
        self.scrape_kwargs = kwargs
        return self.result

    async def trigger_run(self, max_items=100, borough=None):
        return "run-123"

    async def get_run_status(self, run_id):
        return {"run_id": run_id, "status": "SUCCEEDED", "item_count": 12}

    async def fetch_and_normalize(self, max_listings=100, borough=None):
        if self.apify_error:
            raise self.apify_error
        return self.apify_listings

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_adapter(monkeypatch):
    """Install a FakeScrapeAdapter as the API's adapter factory."""

    def install(**kwargs):
        adapter = FakeScrapeAdapter(**kwargs)
        monkeypatch.setattr(main, "create_adapter", lambda source, client=None: adapter)
        return adapter

    return install


@pytest.mark.asyncio
async def test_unauthorized_access(client: AsyncClient):
    """
    Test authentication on a protected endpoint.

    Asserts:
        - Missing X-API-Key returns 401
        - A wrong key returns 403
    """
    r = await client.get("/ingestion/sources")
    assert r.status_code == 401
    r = await client.get("/ingestion/sources", headers={"X-API-Key": "wrong"})
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_list_sources_with_health(client: AsyncClient):
    """
    Test listing registered sources.

    Asserts:
        - All four sources are returned in priority order
        - ``enabled=true`` keeps only the enabled ones
        - Disabled sources report a "disabled" health status
    """
    r = await client.get("/ingestion/sources", headers=HEADERS)
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 4
    assert data["sources"][0]["id"] == "test-broker"
    statuses = {s["id"]: s["health_status"] for s in data["sources"]}
    assert statuses["streeteasy-browser"] == "disabled"
    assert statuses["test-broker"] == "healthy"

    r = await client.get("/ingestion/sources?enabled=true", headers=HEADERS)
    assert [s["id"] for s in r.json()["sources"]] == ["test-broker", "craigslist-nyc"]


@pytest.mark.asyncio
async def test_crawl_source_inline_and_async(client: AsyncClient, monkeypatch):
    """
    Test the single source crawl trigger.

    Asserts:
        - Inline mode passes the query parameters to run_crawl and returns
          the CrawlResult
        - async=true queues a refresh job and returns its id
        - An unknown source returns 404
    """
    calls = []

    async def fake_run_crawl(source_id, max_pages=5, max_listings=500, dry_run=False):
        calls.append((source_id, max_pages, max_listings, dry_run))
        return CrawlResult(source_id=source_id, listings_found=7, new_listings=3)

    monkeypatch.setattr(main, "run_crawl", fake_run_crawl)

    r = await client.post(
        "/ingestion/crawl/test-broker?maxPages=2&maxListings=50&dryRun=true", headers=HEADERS
    )
    assert r.status_code == 200
    assert r.json()["listings_found"] == 7
    assert calls == [("test-broker", 2, 50, True)]

    r = await client.post("/ingestion/crawl/test-broker?async=true", headers=HEADERS)
    assert r.status_code == 200
    job_id = r.json()["job_id"]

    r = await client.get("/ingestion/jobs", headers=HEADERS)
    data = r.json()
    assert data["queue"]["pending"] == 1
    assert data["recent_jobs"][0]["job_id"] == job_id

    r = await client.post("/ingestion/crawl/nope", headers=HEADERS)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_crawl_all_sources(client: AsyncClient, monkeypatch):
    async def fake_run_crawl(source_id, max_pages=5, max_listings=500, dry_run=False):
        return CrawlResult(source_id=source_id, listings_found=5, new_listings=2)

    monkeypatch.setattr(main, "run_crawl", fake_run_crawl)

    r = await client.post("/ingestion/crawl", headers=HEADERS)
    data = r.json()
    assert data["total_found"] == 10
    assert data["total_new"] == 4
    assert [res["source_id"] for res in data["results"]] == ["test-broker", "craigslist-nyc"]

    r = await client.post("/ingestion/crawl?limit=1", headers=HEADERS)
    assert len(r.json()["results"]) == 1

    r = await client.post("/ingestion/crawl?async=true", headers=HEADERS)
    assert r.json()["scheduled"] == 2
    assert len(r.json()["job_ids"]) == 2


@pytest.mark.asyncio
async def test_process_jobs_endpoint(client: AsyncClient, monkeypatch):
    async def fake_process_jobs(max_jobs=5):
        return [{"job_id": "j1", "type": "refresh", "status": "completed"}][:max_jobs]

    monkeypatch.setattr(main, "process_jobs", fake_process_jobs)

    r = await client.post("/ingestion/jobs/process?max=3", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["processed"][0]["status"] == "completed"

    r = await client.post("/ingestion/jobs/process?max=0", headers=HEADERS)
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_scrape_stores_listings(client: AsyncClient, fake_db, fake_adapter):
    """
    Test the StreetEasy browser scrape trigger.

    Asserts:
        - Query parameters reach scrape_rentals, beds parsed into ints
        - Every scraped listing is saved under the browser source
        - The adapter is closed
        - A malformed beds filter returns 400
    """
    listings = [make_listing(f"https://streeteasy.com/rental/{i}") for i in range(4)]
    adapter = fake_adapter(
        result=ScrapeResult(listings=listings, total_found=40, pages_scraped=1, errors=["p2 blocked"])
    )

    r = await client.post(
        "/ingestion/scrape?maxListings=4&borough=brooklyn&minPrice=2000&beds=0,1",
        headers=HEADERS,
    )
    assert r.status_code == 200
    data = r.json()
    assert data["saved"] == 4
    assert data["updated"] == 0
    assert data["total_found"] == 40
    assert data["scrape_errors"] == ["p2 blocked"]
    assert len(data["sample"]) == 3
    assert adapter.closed
    assert adapter.scrape_kwargs["beds"] == [0, 1]
    assert adapter.scrape_kwargs["min_price"] == 2000
    assert len(fake_db.listings.docs) == 4

    r = await client.post("/ingestion/scrape?beds=one", headers=HEADERS)
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_apify_actions(client: AsyncClient, fake_db, fake_adapter):
    """
    Test the Apify trigger actions.

    Asserts:
        - run returns the run id and a status URL
        - status without runId is rejected with 400
        - fetch with an empty dataset returns a hint
        - fetch stores listings and delists provider listings missing from
          the dataset
        - provider errors surface as 502
    """
    fake_adapter()
    r = await client.post("/ingestion/apify?action=run", headers=HEADERS)
    assert r.json()["run_id"] == "run-123"
    assert "runId=run-123" in r.json()["check_status_url"]

    r = await client.post("/ingestion/apify?action=status", headers=HEADERS)
    assert r.status_code == 400
    r = await client.post("/ingestion/apify?action=status&runId=run-123", headers=HEADERS)
    assert r.json()["status"] == "SUCCEEDED"

    r = await client.post("/ingestion/apify?action=explode", headers=HEADERS)
    assert r.status_code == 400

    r = await client.post("/ingestion/apify?action=fetch", headers=HEADERS)
    assert r.json()["total"] == 0
    assert "hint" in r.json()

    await upsert_listing(make_listing("https://streeteasy.com/rental/old", source_id="streeteasy-apify"))
    fake_adapter(apify_listings=[make_listing("https://streeteasy.com/rental/new", source_id="x")])
    r = await client.post("/ingestion/apify?action=fetch", headers=HEADERS)
    data = r.json()
    assert data["saved"] == 1
    assert data["delisted"] == 1

    fake_adapter(apify_error=ApifyError("APIFY_API_TOKEN not configured"))
    r = await client.post("/ingestion/apify?action=fetch", headers=HEADERS)
    assert r.status_code == 502


@pytest.mark.asyncio
async def test_list_listings_filters_and_sorting(client: AsyncClient, fake_db):
    """
    Test browsing stored listings.

    Asserts:
        - Default query returns active listings only
        - status=all includes delisted listings
        - Price filters and price sort combine
        - An unknown sort value is rejected with 422
    """
    await upsert_listing(make_listing("https://a.example.com/1", source_id="a", price=2000))
    await upsert_listing(make_listing("https://a.example.com/2", source_id="a", price=3500, no_fee=True))
    await upsert_listing(make_listing("https://a.example.com/3", source_id="a", price=4500))
    await fake_db.listings.update_one(
        {"source_url": "https://a.example.com/3"}, {"$set": {"status": "delisted"}}
    )

    r = await client.get("/ingestion/listings", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["total"] == 2

    r = await client.get("/ingestion/listings?status=all", headers=HEADERS)
    assert r.json()["total"] == 3

    r = await client.get(
        "/ingestion/listings?status=all&minPrice=3000&sort=price", headers=HEADERS
    )
    assert [l["price"] for l in r.json()["listings"]] == [3500, 4500]

    r = await client.get("/ingestion/listings?noFee=true", headers=HEADERS)
    assert [l["source_url"] for l in r.json()["listings"]] == ["https://a.example.com/2"]

    r = await client.get("/ingestion/listings?sort=cheapest", headers=HEADERS)
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_listing_duplicates(client: AsyncClient, fake_db):
    listing_id, _ = await upsert_listing(make_listing("https://a.example.com/1", source_id="a"))
    await upsert_listing(make_listing("https://b.example.com/1", source_id="b", price=3050))

    r = await client.get(f"/ingestion/listings/{listing_id}/duplicates", headers=HEADERS)
    assert r.status_code == 200
    data = r.json()
    assert data["count"] == 1
    assert data["candidates"][0]["source_url"] == "https://b.example.com/1"

    r = await client.get("/ingestion/listings/missing/duplicates", headers=HEADERS)
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_stats_endpoint(client: AsyncClient):
    r = await client.get("/ingestion/stats?days=3", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["total_sources"] == 4

    r = await client.get("/ingestion/stats?days=0", headers=HEADERS)
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_rate_limit_hit(client: AsyncClient):
    """
    Test that the read rate limit is enforced.

    Makes up to 101 sequential requests against the jobs endpoint; the
    limiter must answer 429 once the hourly budget is spent.

    Asserts:
        - A 429 status is eventually returned
    """
    last_status = None
    for _ in range(101):
        r = await client.get("/ingestion/jobs", headers=HEADERS)
        last_status = r.status_code
        if last_status == 429:
            break
    assert last_status == 429
