import asyncio
import json
import random
import re
import logging
from datetime import datetime, timezone
from urllib.parse import urlencode
from bs4 import BeautifulSoup
from .base import BaseAdapter
from ..gazetteer import infer_borough
from ..models import ListingStatus, ListingUrlResult, ScrapeResult
from ..utils import USER_AGENTS, browser_headers, clean_price, parse_baths, parse_beds

logger = logging.getLogger("ingestion.adapters")

DEFAULT_SEARCH_PATH = "/for-rent/nyc"
PHOTO_URL = "https://photos.zillowstatic.com/fp/{key}-se_extra_large_1500_800.webp"
RENTAL_ID_RE = re.compile(r"/rental/(\d+)")
APOLLO_RE = re.compile(r"window\.__APOLLO_STATE__\s*=\s*")
CARD_SELECTOR = '[data-testid="listing-card"], .listingCard, .SearchResultsListItem'

# Where search results have been seen inside __NEXT_DATA__ pageProps
NEXT_DATA_PATHS = (
    ("searchResults", "edges"),
    ("listings", "edges"),
    ("data", "searchResults", "edges"),
)


def _parse_datetime(value):
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _dig(data, path):
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _title(beds, area):
    return f"{'Studio' if beds == 0 else f'{beds}BR'} in {area or 'NYC'}"


class StreetEasyDirectAdapter(BaseAdapter):
    """
    Marketplace adapter that reads the client state embedded in search pages.

    Every search results page is one "listing URL"; parsing it yields all
    listings on that page. Extraction tries ``__NEXT_DATA__`` first, then the
    ``window.__APOLLO_STATE__`` GraphQL cache, then plain DOM listing cards.
    """

    max_pages = 50
    max_page_errors = None
    page_delay = (2.0, 4.0)

    def get_headers(self):
        headers = browser_headers(random.choice(USER_AGENTS))
        headers.update(
            {
                "Pragma": "no-cache",
                "Sec-Fetch-Dest": "document",
                "Sec-Fetch-Mode": "navigate",
                "Sec-Fetch-Site": "none",
                "Sec-Fetch-User": "?1",
                "Upgrade-Insecure-Requests": "1",
            }
        )
        return headers

    @property
    def base_url(self):
        return self.config.urls.base.rstrip("/")

    def search_url(self, page=0, borough=None, min_price=None, max_price=None, beds=None):
        """Build the results URL for a 0-based ``page`` and optional filters."""
        path = self.config.urls.search_path or DEFAULT_SEARCH_PATH
        if borough:
            path = f"/for-rent/{borough.lower().replace(' ', '-')}"
        params = []
        if min_price:
            params.append(("price_min", min_price))
        if max_price:
            params.append(("price_max", max_price))
        if beds:
            params.append(("beds", ",".join(str(b) for b in beds)))
        params.append(("page", page + 1))
        return f"{self.base_url}{path}?{urlencode(params, safe=',')}"

    async def list_listing_urls(self, page=0, borough=None, category=None):
        if page >= self.max_pages:
            return []
        return [ListingUrlResult(url=self.search_url(page, borough), metadata={"page": page + 1})]

    async def parse(self, raw_page):
        if not raw_page.ok or not raw_page.html_content:
            return []
        listings = self.parse_search_page(raw_page.html_content)
        for listing in listings:
            listing.raw_page_id = raw_page.page_id
        return listings

    def parse_search_page(self, html):
        """
        Extract every listing from one search results page.

        Returns:
            list[NormalizedListing]: Possibly empty. Individual malformed
                entries are skipped and logged.
        """
        soup = BeautifulSoup(html, "lxml")

        listings = self._from_next_data(soup)
        if listings:
            return listings

        listings = self._from_apollo_state(soup)
        if listings:
            return listings

        listings = []
        for card in soup.select(CARD_SELECTOR):
            try:
                listing = self.normalize_card(card)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"[{self.source_id}] Failed to parse listing card: {e}")
                continue
            if listing:
                listings.append(listing)
        return listings

    def _from_next_data(self, soup):
        script = soup.select_one("script#__NEXT_DATA__")
        if not script or not script.string:
            return []
        try:
            data = json.loads(script.string)
        except ValueError as e:
            logger.warning(f"[{self.source_id}] Failed to parse __NEXT_DATA__: {e}")
            return []
        page_props = _dig(data, ("props", "pageProps")) or {}
        edges = []
        for path in NEXT_DATA_PATHS:
            edges = _dig(page_props, path) or []
            if edges:
                break

        listings = []
        for edge in edges:
            try:
                listing = self.normalize_edge(edge)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"[{self.source_id}] Failed to parse listing edge: {e}")
                continue
            if listing:
                listings.append(listing)
        return listings

    def _from_apollo_state(self, soup):
        for script in soup.find_all("script"):
            text = script.string or ""
            m = APOLLO_RE.search(text)
            if not m:
                continue
            try:
                state, _ = json.JSONDecoder().raw_decode(text[m.end():])
            except ValueError as e:
                logger.warning(f"[{self.source_id}] Failed to parse Apollo state: {e}")
                return []
            listings = []
            for key, node in state.items():
                if not ("Rental" in key or "Listing" in key):
                    continue
                if not isinstance(node, dict) or not node.get("id") or not node.get("price"):
                    continue
                try:
                    listing = self.normalize_node(node)
                except (AttributeError, TypeError, ValueError) as e:
                    logger.warning(f"[{self.source_id}] Failed to parse Apollo entry {key}: {e}")
                    continue
                if listing:
                    listings.append(listing)
            return listings
        return []

    def normalize_edge(self, edge):
        """Normalize one GraphQL search edge (``{"node": {...}, "matchedAmenities": [...]}``)."""
        node = (edge or {}).get("node") or {}
        listing = self.normalize_node(node)
        if listing is not None:
            listing.amenities = [
                a["name"] for a in edge.get("matchedAmenities") or [] if a.get("name")
            ]
        return listing

    def normalize_node(self, node):
        """
        Map a StreetEasy rental node onto a NormalizedListing.

        Nodes without an id or without any price are dropped. Baths count
        half baths as 0.5; photos are expanded from their storage keys.
        """
        if not node.get("id"):
            return None
        price = node.get("price") or node.get("netEffectivePrice") or 0
        if not price:
            return None

        beds = int(node.get("bedroomCount") or 0)
        baths = (node.get("fullBathroomCount") or 0) + (node.get("halfBathroomCount") or 0) * 0.5
        url_path = node.get("urlPath")
        source_url = (
            f"{self.base_url}{url_path}" if url_path else f"{self.base_url}/rental/{node['id']}"
        )
        street = node.get("street") or ""
        unit = node.get("unit")
        address = f"{street} #{unit}" if unit else street
        area = node.get("areaName")
        geo = node.get("geoPoint") or {}
        open_house = node.get("upcomingOpenHouse") or {}
        status = node.get("status")

        return self.create_listing(
            source_listing_id=str(node["id"]),
            source_url=source_url,
            title=_title(beds, area),
            price=float(price),
            beds=beds,
            baths=float(baths),
            sqft=int(node["livingAreaSize"]) if node.get("livingAreaSize") else None,
            address_text=address,
            address_normalized=address or None,
            neighborhood=area,
            borough=infer_borough(area or ""),
            latitude=geo.get("latitude"),
            longitude=geo.get("longitude"),
            images=[PHOTO_URL.format(key=p["key"]) for p in node.get("photos") or [] if p.get("key")],
            broker_company=node.get("sourceGroupLabel"),
            no_fee=node.get("noFee"),
            available_date=_parse_datetime(node.get("availableAt")),
            net_effective_price=node.get("netEffectivePrice"),
            months_free=node.get("monthsFree"),
            lease_term_months=node.get("leaseTermMonths"),
            furnished=node.get("furnished"),
            is_new_development=node.get("isNewDevelopment"),
            has_tour_3d=node.get("hasTour3d"),
            has_videos=node.get("hasVideos"),
            media_asset_count=node.get("mediaAssetCount"),
            building_type=node.get("buildingType"),
            upcoming_open_house=_parse_datetime(open_house.get("startTime")),
            unit=unit,
            tier=node.get("tier"),
            price_delta=node.get("interestingPriceDelta"),
            off_market_at=_parse_datetime(node.get("offMarketAt")),
            status=(
                ListingStatus.ACTIVE
                if status in (None, "ACTIVE")
                else ListingStatus.UNKNOWN
            ),
        )

    def normalize_card(self, card):
        link = card.select_one('a[href*="/rental/"]') or card.select_one('a[href*="/building/"]')
        href = link.get("href") if link else None
        if not href:
            return None
        source_url = self.make_absolute_url(href)

        price_el = (
            card.select_one('[data-testid="price"]')
            or card.select_one(".price")
            or card.select_one(".listing-price")
        )
        price = clean_price(price_el.get_text()) if price_el else None
        if not price:
            return None

        details = " ".join(
            el.get_text(" ", strip=True)
            for el in card.select('[data-testid="beds-baths"], .details, .listing-details')
        )
        beds = 0 if "studio" in details.lower() else parse_beds(details)
        address_el = (
            card.select_one('[data-testid="address"]')
            or card.select_one(".address")
            or card.select_one(".listing-address")
        )
        address = address_el.get_text(" ", strip=True) if address_el else ""
        hood_el = card.select_one('[data-testid="neighborhood"]') or card.select_one(".neighborhood")
        neighborhood = hood_el.get_text(" ", strip=True) if hood_el else ""
        img = card.select_one("img")
        image = (img.get("src") or img.get("data-src")) if img else None
        m = RENTAL_ID_RE.search(source_url)

        return self.create_listing(
            source_listing_id=m.group(1) if m else None,
            source_url=source_url,
            title=_title(beds, neighborhood),
            price=price,
            beds=beds,
            baths=parse_baths(details),
            address_text=address,
            address_normalized=address or None,
            neighborhood=neighborhood or None,
            borough=infer_borough(neighborhood),
            images=[image] if image else [],
            no_fee="no fee" in card.get_text(" ").lower(),
        )

    async def scrape_rentals(
        self, max_listings=500, borough=None, min_price=None, max_price=None, beds=None
    ):
        """
        Run a filtered multi-page scrape outside of the crawl orchestrator.

        Pages are fetched in order until a page yields no listings, the page
        cap is hit or ``max_listings`` is reached, with a random 2-4 s pause
        between pages. A page that fails to fetch is recorded and skipped.

        Args:
            max_listings (int): Stop after this many listings
            borough (str, optional): Borough slug, e.g. "brooklyn"
            min_price (int, optional): Minimum monthly rent filter
            max_price (int, optional): Maximum monthly rent filter
            beds (list[int], optional): Bedroom counts to include

        Returns:
            ScrapeResult: Listings (truncated to ``max_listings``), pages
                scraped, total found and per-page error strings.
        """
        result = ScrapeResult()
        for page in range(self.max_pages):
            if len(result.listings) >= max_listings:
                break
            url = self.search_url(page, borough, min_price, max_price, beds)
            logger.info(f"[{self.source_id}] Scraping page {page + 1}: {url}")
            raw = await self.fetch(url)
            if not raw.ok:
                result.errors.append(
                    f"Page {page + 1}: {raw.error_message or f'HTTP {raw.http_status}'}"
                )
                if self.max_page_errors is not None and len(result.errors) > self.max_page_errors:
                    logger.error(f"[{self.source_id}] Too many page errors, stopping scrape")
                    break
                continue
            page_listings = await self.parse(raw)
            if not page_listings:
                break
            result.listings.extend(page_listings)
            result.pages_scraped += 1
            result.total_found += len(page_listings)
            if len(result.listings) < max_listings:
                await asyncio.sleep(random.uniform(*self.page_delay))

        result.listings = result.listings[:max_listings]
        return result
