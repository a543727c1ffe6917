import asyncio
import os
import time
import logging
import httpx
from dotenv import load_dotenv
from .streeteasy_direct import StreetEasyDirectAdapter
from ..gazetteer import infer_borough
from ..models import ListingUrlResult, ParseStatus, RawPage
from ..utils import network_retry

load_dotenv()
APIFY_API_TOKEN = os.getenv("APIFY_API_TOKEN", "")
APIFY_API_BASE = "https://api.apify.com/v2"
DEFAULT_ACTOR_ID = "memo23~apify-streeteasy-cheerio"
BOROUGH_PATHS = {
    "manhattan": "manhattan",
    "brooklyn": "brooklyn",
    "queens": "queens",
    "bronx": "bronx",
    "staten-island": "staten-island",
    "staten island": "staten-island",
}

logger = logging.getLogger("ingestion.adapters")


class ApifyError(Exception):
    """Raised for provider misconfiguration, failed runs and timeouts."""


def _matches_borough(edge, wanted):
    area = ((edge or {}).get("node") or {}).get("areaName") or ""
    return wanted in area.lower() or (infer_borough(area) or "").lower() == wanted


class ApifyStreetEasyAdapter(StreetEasyDirectAdapter):
    """
    StreetEasy listings through an Apify actor instead of direct scraping.

    The provider returns the same GraphQL edges StreetEasy embeds in its
    pages, so normalization is inherited from the direct adapter. ``fetch``
    and ``parse`` are placeholders for the crawl contract; the real entry
    points are ``trigger_run``, ``wait_for_run`` and ``fetch_and_normalize``.
    """

    def __init__(self, config, client=None, api_token=None):
        super().__init__(config, client=client)
        self.api_token = api_token if api_token is not None else APIFY_API_TOKEN
        self.actor_id = config.urls.api_endpoint or DEFAULT_ACTOR_ID
        if not self.api_token:
            logger.warning("APIFY_API_TOKEN not set - Apify adapter will not work")

    def _auth_headers(self):
        if not self.api_token:
            raise ApifyError("APIFY_API_TOKEN not configured")
        return {"Authorization": f"Bearer {self.api_token}", "Accept": "application/json"}

    async def list_listing_urls(self, page=0, borough=None, category=None):
        if page > 0:
            return []
        results = []
        for edge in await self.fetch_dataset_items(borough=borough):
            node = edge.get("node") or {}
            if not node.get("id"):
                continue
            path = node.get("urlPath") or f"/rental/{node['id']}"
            results.append(
                ListingUrlResult(
                    url=f"{self.base_url}{path}",
                    source_listing_id=str(node["id"]),
                    metadata={
                        "price": node.get("price"),
                        "beds": node.get("bedroomCount"),
                        "neighborhood": node.get("areaName"),
                    },
                )
            )
        return results

    async def fetch(self, url):
        # Data already lives in the provider's dataset.
        return RawPage(
            source_id=self.source_id, url=url, http_status=200, parse_status=ParseStatus.PENDING
        )

    async def parse(self, raw_page):
        return []

    async def trigger_run(self, max_items=100, borough=None, search_url=None):
        """
        Start a new actor run.

        Args:
            max_items (int): Maximum listings the actor should collect
            borough (str, optional): Restrict the default search to a borough
            search_url (str, optional): Explicit StreetEasy search URL

        Returns:
            str: The provider's run id.

        Raises:
            ApifyError: Missing token or a non-2xx response
        """
        headers = self._auth_headers()
        if not search_url:
            path = BOROUGH_PATHS.get((borough or "").lower(), "nyc")
            search_url = f"{self.base_url}/for-rent/{path}"
        resp = await self.client.post(
            f"{APIFY_API_BASE}/acts/{self.actor_id}/runs",
            headers=headers,
            json={"startUrls": [{"url": search_url}], "maxItems": max_items},
        )
        if resp.status_code >= 300:
            raise ApifyError(f"Apify run failed: {resp.status_code} {resp.text}")
        run_id = resp.json()["data"]["id"]
        logger.info(f"Triggered Apify run {run_id} for {search_url}")
        return run_id

    @network_retry(attempts=3, exceptions=(httpx.TransportError,))
    async def get_run_status(self, run_id):
        """Return ``{"status": ..., "dataset_id": ...}`` for a run."""
        resp = await self.client.get(
            f"{APIFY_API_BASE}/acts/{self.actor_id}/runs/{run_id}",
            headers=self._auth_headers(),
        )
        if resp.status_code != 200:
            raise ApifyError(f"Failed to get run status: {resp.status_code}")
        data = resp.json().get("data") or {}
        return {"status": data.get("status"), "dataset_id": data.get("defaultDatasetId") or data.get("datasetId")}

    async def wait_for_run(self, run_id, timeout_seconds=300, poll_interval=5):
        """
        Poll a run until it succeeds.

        Returns:
            str: The dataset id of the finished run.

        Raises:
            ApifyError: The run FAILED, was ABORTED or did not finish in time
        """
        deadline = time.monotonic() + timeout_seconds
        while time.monotonic() < deadline:
            status = await self.get_run_status(run_id)
            if status["status"] == "SUCCEEDED" and status["dataset_id"]:
                return status["dataset_id"]
            if status["status"] in ("FAILED", "ABORTED", "TIMED-OUT"):
                raise ApifyError(f"Apify run {status['status']}")
            await asyncio.sleep(poll_interval)
        raise ApifyError("Apify run timed out")

    async def fetch_dataset_items(self, max_listings=1000, borough=None, dataset_id=None):
        """
        Download raw edges from a dataset (default: the actor's last run).

        A 404 means no run has produced a dataset yet and yields ``[]``.
        """
        headers = self._auth_headers()
        if dataset_id:
            url = f"{APIFY_API_BASE}/datasets/{dataset_id}/items"
        else:
            url = f"{APIFY_API_BASE}/acts/{self.actor_id}/runs/last/dataset/items"
        resp = await self.client.get(url, headers=headers, params={"limit": max_listings})
        if resp.status_code == 404:
            logger.warning("No Apify dataset found - trigger a run first")
            return []
        if resp.status_code != 200:
            raise ApifyError(f"Apify fetch failed: {resp.status_code}")
        items = resp.json()
        if not isinstance(items, list):
            raise ApifyError("Unexpected Apify dataset payload")
        if borough:
            wanted = borough.lower().replace("-", " ")
            items = [i for i in items if _matches_borough(i, wanted)]
        return items

    async def fetch_and_normalize(self, max_listings=1000, borough=None, dataset_id=None):
        """Fetch dataset edges and normalize them into NormalizedListing objects."""
        listings = []
        for edge in await self.fetch_dataset_items(max_listings, borough, dataset_id):
            try:
                listing = self.normalize_edge(edge)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"[{self.source_id}] Skipping malformed Apify item: {e}")
                continue
            if listing:
                listings.append(listing)
        return listings
