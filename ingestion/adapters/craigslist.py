import copy
import json
import re
import logging
from bs4 import BeautifulSoup
from .base import BaseAdapter
from ..gazetteer import infer_borough, infer_neighborhood
from ..models import ListingUrlResult
from ..utils import clean_price, normalize_address, parse_baths, parse_beds, parse_sqft

logger = logging.getLogger("ingestion.adapters")

RESULTS_PER_PAGE = 120
DEFAULT_CATEGORY = "/search/apa"
MIN_PRICE = 500
MAX_PRICE = 50000

# (minimum beds, price floor); the first matching row applies
PRICE_FLOORS = [(2, 1800), (1, 1500), (0, 1200)]

SPAM_PHRASES = [
    "section 8",
    "voucher",
    "send me your",
    "western union",
    "wire transfer",
    "first and last month",
    "move in today",
    "no credit check no",
    "call or text",
    "must see pics",
    "dont miss",
]

PHONE_RE = re.compile(r"\d{3}[-.\s]?\d{3}[-.\s]?\d{4}")
POSTING_ID_RE = re.compile(r"/(\d+)\.html")
NO_FEE_RE = re.compile(r"no\s*fee|no\s*broker|owner|landlord", re.IGNORECASE)


def posting_id(url):
    m = POSTING_ID_RE.search(url or "")
    return m.group(1) if m else None


def is_likely_spam(title, description, price, beds):
    """
    Flag postings that look like scams.

    A posting is spam when its price is below the floor for its bedroom
    count (studio < 1200, 1 bed < 1500, 2+ beds < 1800), when it contains a
    known spam phrase, or when it lists more than three phone numbers.
    """
    text = f"{title} {description}".lower()
    for min_beds, floor in PRICE_FLOORS:
        if beds >= min_beds:
            if price < floor:
                return True
            break
    if any(phrase in text for phrase in SPAM_PHRASES):
        return True
    return len(PHONE_RE.findall(text)) > 3


class CraigslistAdapter(BaseAdapter):
    """Classifieds adapter: search result pages plus one posting per detail page."""

    async def list_listing_urls(self, page=0, borough=None, category=None):
        urls = self.config.urls
        category = category or urls.search_path or DEFAULT_CATEGORY
        if borough and urls.borough_filters.get(borough):
            # /search/apa -> /search/mnh/apa
            prefix, _, cat = category.rpartition("/")
            category = f"{prefix}{urls.borough_filters[borough]}/{cat}"
        search_url = f"{urls.base.rstrip('/')}{category}"
        if page > 0:
            sep = "&" if "?" in search_url else "?"
            search_url += f"{sep}s={page * RESULTS_PER_PAGE}"

        raw = await self.fetch(search_url)
        if not raw.ok:
            logger.error(f"[{self.source_id}] Search page {search_url} returned {raw.http_status}")
            return []
        return self.parse_search_page(raw.html_content)

    def parse_search_page(self, html):
        soup = BeautifulSoup(html, "lxml")
        results = []
        seen = set()
        for row in soup.select("li.cl-search-result, .result-row"):
            link = row.select_one("a.cl-app-anchor, a.result-title")
            href = link.get("href") if link else None
            if not href:
                continue
            url = self.make_absolute_url(href)
            if url in seen:
                continue
            seen.add(url)
            price_el = row.select_one(".priceinfo, .result-price")
            meta_el = row.select_one(".meta, .housing")
            results.append(
                ListingUrlResult(
                    url=url,
                    source_listing_id=posting_id(url),
                    metadata={
                        "preview_price": clean_price(price_el.get_text()) if price_el else None,
                        "preview_meta": meta_el.get_text(" ", strip=True) if meta_el else "",
                    },
                )
            )
        return results

    async def parse(self, raw_page):
        """
        Parse one Craigslist posting.

        Returns an empty list for postings outside the 500..50000 price band
        and for postings that look like spam; both are expected outcomes and
        not errors.
        """
        if not raw_page.ok or not raw_page.html_content:
            return []
        soup = BeautifulSoup(raw_page.html_content, "lxml")

        title_el = soup.select_one("#titletextonly") or soup.select_one(".postingtitletext")
        title = title_el.get_text(" ", strip=True) if title_el else ""
        if not title and soup.title and soup.title.string:
            title = soup.title.string.split(" - ")[0].strip()

        price_el = soup.select_one(".price, .postingtitletext .price")
        price = clean_price(price_el.get_text()) if price_el else None
        if not price or price < MIN_PRICE or price > MAX_PRICE:
            logger.info(f"[{self.source_id}] Price {price} out of range for {raw_page.url}")
            return []

        housing = " ".join(
            el.get_text(" ", strip=True) for el in soup.select(".housing, .postingtitletext")
        )
        beds = parse_beds(housing)
        baths = parse_baths(housing)
        sqft = parse_sqft(housing)

        map_el = soup.select_one("#map")
        address = (map_el.get("data-address") if map_el else "") or ""
        if not address:
            loc_el = soup.select_one(".mapaddress") or soup.select_one("small")
            address = loc_el.get_text(" ", strip=True) if loc_el else ""

        crumb = soup.select_one(".breadcrumb-subarea, .subarea")
        neighborhood = (crumb.get_text(strip=True) if crumb else "") or infer_neighborhood(
            f"{address} {title}"
        )
        borough = infer_borough(f"{address} {neighborhood or ''} {title}")
        if not address and neighborhood:
            address = neighborhood

        description = self._description(soup)

        if is_likely_spam(title, description, price, beds):
            logger.info(f"[{self.source_id}] Spam filtered: {raw_page.url}")
            return []

        amenities = []
        for span in soup.select(".mapAndAttrs .attrgroup span, .attrgroup span"):
            text = span.get_text(" ", strip=True)
            if text and not re.match(r"^\$?\d", text) and text not in amenities:
                amenities.append(text)

        address = normalize_address(address)
        listing = self.create_listing(
            raw_page,
            source_listing_id=posting_id(raw_page.url),
            title=title,
            price=price,
            beds=beds,
            baths=baths,
            sqft=sqft,
            address_text=address,
            address_normalized=address or None,
            neighborhood=neighborhood or None,
            borough=borough,
            images=self._images(soup),
            description=description,
            amenities=amenities,
            no_fee=bool(NO_FEE_RE.search(f"{title} {description}")),
        )
        return [listing]

    def _description(self, soup):
        body = soup.select_one("#postingbody")
        if not body:
            return ""
        body = copy.copy(body)
        for el in body.select(".print-information, .show-contact"):
            el.decompose()
        return body.get_text(" ", strip=True)

    def _images(self, soup):
        images = []
        for el in soup.select("#thumbs a, .gallery img, .iw img"):
            src = el.get("href") or el.get("src")
            if src and "images.craigslist.org" in src:
                full = src.replace("50x50c", "600x450").replace("300x300", "600x450")
                if full not in images:
                    images.append(full)
        thumbs = soup.select_one("#thumbs")
        data = thumbs.get("data-images") if thumbs else None
        if data:
            try:
                for img in json.loads(data):
                    url = img.get("url") if isinstance(img, dict) else None
                    if url and url not in images:
                        images.append(url)
            except ValueError:
                logger.debug("Ignoring malformed data-images attribute")
        return images
