import logging
from .base import BaseAdapter
from .extraction import (
    COMMON_RENTAL_PATHS,
    dedupe_by_url,
    extract_listing_fields,
    links_from_search_page,
    parse_sitemap,
)
from ..gazetteer import infer_borough, infer_neighborhood
from ..models import ListingUrlResult
from ..utils import normalize_address

logger = logging.getLogger("ingestion.adapters")

SITEMAP_PAGE_SIZE = 100
MAX_NESTED_SITEMAPS = 10
NESTED_SITEMAP_HINTS = ("rental", "listing", "apartment", "propert")


class GenericBrokerAdapter(BaseAdapter):
    """
    Adapter for broker sites with no known structure.

    Discovery tries, in order, the configured sitemap, the configured search
    page and a set of common rental paths, stopping at the first strategy
    that yields URLs. Detail pages go through the extraction cascade in
    ``extraction.py`` (JSON-LD, microdata, class-name heuristics).
    """

    def __init__(self, config, client=None):
        super().__init__(config, client=client)
        self._sitemap_urls = None

    async def list_listing_urls(self, page=0, borough=None, category=None):
        urls = self.config.urls

        if urls.sitemap:
            sitemap_urls = await self.discover_from_sitemap()
            if sitemap_urls:
                # the sitemap is authoritative once it yields anything
                start = page * SITEMAP_PAGE_SIZE
                return sitemap_urls[start:start + SITEMAP_PAGE_SIZE]

        if urls.search_path:
            results = await self.discover_from_search_page(
                f"{urls.base.rstrip('/')}{urls.search_path}", page
            )
            if results:
                return dedupe_by_url(results)

        if page == 0:
            for path in COMMON_RENTAL_PATHS:
                results = await self.discover_from_search_page(
                    f"{urls.base.rstrip('/')}{path}", 0
                )
                if results:
                    logger.info(f"[{self.source_id}] Discovered listings under {path}")
                    return dedupe_by_url(results)

        return []

    async def discover_from_sitemap(self):
        """
        Read listing URLs from the source's sitemap.

        Follows one level of sitemap index, preferring nested sitemaps whose
        URL hints at rentals. The flattened result is cached on the adapter
        so later pages slice the same list.
        """
        if self._sitemap_urls is not None:
            return self._sitemap_urls

        found = []
        raw = await self.fetch(self.config.urls.sitemap)
        if raw.ok:
            urls, nested = parse_sitemap(raw.html_content)
            found.extend(urls)
            preferred = [u for u in nested if any(h in u.lower() for h in NESTED_SITEMAP_HINTS)]
            for nested_url in (preferred or nested)[:MAX_NESTED_SITEMAPS]:
                nested_raw = await self.fetch(nested_url)
                if not nested_raw.ok:
                    logger.warning(
                        f"[{self.source_id}] Nested sitemap {nested_url} returned {nested_raw.http_status}"
                    )
                    continue
                nested_urls, _ = parse_sitemap(nested_raw.html_content)
                found.extend(nested_urls)
        else:
            logger.warning(
                f"[{self.source_id}] Sitemap {self.config.urls.sitemap} returned {raw.http_status}"
            )

        self._sitemap_urls = dedupe_by_url([ListingUrlResult(url=u) for u in found])
        return self._sitemap_urls

    async def discover_from_search_page(self, url, page):
        page_url = url
        if page > 0:
            sep = "&" if "?" in url else "?"
            page_url = f"{url}{sep}page={page + 1}"
        raw = await self.fetch(page_url)
        if not raw.ok:
            return []
        return links_from_search_page(raw.html_content, self.config.urls.base)

    async def parse(self, raw_page):
        if not raw_page.ok or not raw_page.html_content:
            return []
        strategy, fields = extract_listing_fields(raw_page.html_content, self.config.urls.base)
        if not fields:
            logger.info(f"[{self.source_id}] No extraction strategy matched {raw_page.url}")
            return []
        logger.debug(f"[{self.source_id}] Extracted {raw_page.url} via {strategy}")

        address = normalize_address(fields.get("address_text", ""))
        fields["address_text"] = address
        fields["address_normalized"] = address or None
        text = f"{address} {fields.get('title') or ''}"
        fields["neighborhood"] = infer_neighborhood(text)
        fields["borough"] = infer_borough(text)
        return [self.create_listing(raw_page, **fields)]
