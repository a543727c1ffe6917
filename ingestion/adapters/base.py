import asyncio
import os
import random
import time
import logging
from httpx import AsyncClient
from dotenv import load_dotenv
from ..models import NormalizedListing, ParseStatus, RawPage
from ..utils import browser_headers, extract_image_urls, hash_content, make_absolute_url

load_dotenv()
FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "30"))
BLOCK_BACKOFF_SECONDS = float(os.getenv("BLOCK_BACKOFF_SECONDS", "30"))

logger = logging.getLogger("ingestion.adapters")
logger.setLevel(logging.INFO)


class BaseAdapter:
    """
    Common fetch/parse plumbing shared by every source adapter.

    Subclasses implement ``list_listing_urls`` and ``parse``; everything that
    talks to the network goes through ``fetch`` so the source's rate limit,
    timeout and block handling apply uniformly.

    Args:
        config (SourceConfig): The source being crawled
        client (httpx.AsyncClient, optional): Pre-built client, e.g. one with a
            MockTransport in tests. A default client with FETCH_TIMEOUT is
            created otherwise.
    """

    def __init__(self, config, client=None):
        self.config = config
        self.source_id = config.id
        self.client = client or AsyncClient(timeout=FETCH_TIMEOUT, follow_redirects=True)

    async def close(self):
        """Close the HTTP client and release resources."""
        await self.client.aclose()

    async def list_listing_urls(self, page=0, borough=None, category=None):
        raise NotImplementedError

    async def parse(self, raw_page):
        raise NotImplementedError

    def get_headers(self):
        return browser_headers()

    async def polite_delay(self):
        """Sleep ``delay_ms`` plus uniform jitter in ``[0, jitter_ms]``."""
        rl = self.config.scrape_config.rate_limit
        delay = (rl.delay_ms + random.uniform(0, rl.jitter_ms)) / 1000.0
        if delay > 0:
            await asyncio.sleep(delay)

    async def _request(self, url):
        """
        Perform one GET and return ``(status, body, headers)``.

        Override point for adapters that do not use plain HTTP (the headless
        browser adapter renders pages instead).
        """
        resp = await self.client.get(url, headers=self.get_headers())
        return resp.status_code, resp.text, dict(resp.headers)

    async def fetch(self, url):
        """
        Fetch a URL politely and record the attempt as a RawPage.

        Applies the source's rate-limit delay before the request. An HTTP 403
        is treated as a block: wait BLOCK_BACKOFF_SECONDS, retry once and
        return whatever the retry produced.

        Args:
            url (str): Absolute URL to fetch

        Returns:
            RawPage: Never raises for network or HTTP failures. A transport
                failure yields ``http_status=0`` with ``error_message`` set and
                ``parse_status="failed"``; HTTP error statuses are returned
                as-is for the caller to judge.
        """
        await self.polite_delay()
        start = time.monotonic()
        try:
            status, content, headers = await self._request(url)
            if status == 403:
                logger.warning(
                    f"[{self.source_id}] 403 for {url}, backing off {BLOCK_BACKOFF_SECONDS}s"
                )
                await asyncio.sleep(BLOCK_BACKOFF_SECONDS)
                status, content, headers = await self._request(url)
        except Exception as e:
            logger.warning(f"[{self.source_id}] Fetch error {url}: {e!r}")
            return RawPage(
                source_id=self.source_id,
                url=url,
                http_status=0,
                error_message=str(e) or e.__class__.__name__,
                parse_status=ParseStatus.FAILED,
                fetch_time_ms=int((time.monotonic() - start) * 1000),
            )

        return RawPage(
            source_id=self.source_id,
            url=url,
            http_status=status,
            html_content=content,
            content_hash=hash_content(content),
            extracted_image_urls=extract_image_urls(content),
            headers=headers,
            error_message=None if status == 200 else f"HTTP {status}",
            fetch_time_ms=int((time.monotonic() - start) * 1000),
        )

    async def has_changed(self, url, last_content_hash):
        """Re-fetch ``url`` and compare its content hash with the last one."""
        page = await self.fetch(url)
        return page.content_hash != last_content_hash

    def make_absolute_url(self, url):
        return make_absolute_url(self.config.urls.base, url)

    def create_listing(self, raw_page=None, **fields):
        """Build a NormalizedListing owned by this source."""
        fields.setdefault("source_id", self.source_id)
        if raw_page is not None:
            fields.setdefault("source_url", raw_page.url)
            fields.setdefault("raw_page_id", raw_page.page_id)
        return NormalizedListing(**fields)
