import json
import re
import logging
from bs4 import BeautifulSoup
from ..models import ListingUrlResult
from ..utils import clean_price, make_absolute_url, parse_baths, parse_beds, parse_sqft

logger = logging.getLogger("ingestion.adapters")

RENTAL_TYPES = ("Apartment", "House", "RealEstateListing", "Residence", "SingleFamilyResidence")

MICRODATA_SELECTOR = ", ".join(
    f'[itemtype*="schema.org/{t}"]' for t in ("Apartment", "RealEstateListing", "Residence")
)

LISTING_URL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"/rental/",
        r"/listing/",
        r"/property/",
        r"/apartment/",
        r"/for-rent/",
        r"/[A-Z]{2}\d+",
        r"/\d{5,}",
    )
]

EXCLUDE_URL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"/search",
        r"/contact",
        r"/about",
        r"/blog",
        r"/news",
        r"/agent",
        r"\.(jpg|png|gif|pdf|css|js)$",
    )
]

LISTING_LINK_SELECTORS = [
    'a[href*="/rental/"]',
    'a[href*="/listing/"]',
    'a[href*="/property/"]',
    'a[href*="/apartment/"]',
    ".listing-card a",
    ".property-card a",
    ".rental-item a",
    "[data-listing-id] a",
    ".search-result a",
]

COMMON_RENTAL_PATHS = [
    "/rentals",
    "/for-rent",
    "/apartments",
    "/available-rentals",
    "/listings",
    "/properties",
]

MAX_IMAGES = 20
MAX_AMENITIES = 20


def is_likely_listing_url(url):
    """True when ``url`` looks like a listing detail page and not site chrome."""
    if not url:
        return False
    if any(p.search(url) for p in EXCLUDE_URL_PATTERNS):
        return False
    return any(p.search(url) for p in LISTING_URL_PATTERNS)


def is_rental_item(item):
    if not isinstance(item, dict):
        return False
    item_type = item.get("@type") or ""
    if isinstance(item_type, list):
        item_type = " ".join(str(t) for t in item_type)
    return any(t in str(item_type) for t in RENTAL_TYPES)


def iter_json_ld(soup):
    """
    Yield every JSON-LD object embedded in the page.

    Top-level arrays and ``@graph`` containers are flattened. Scripts that
    are not valid JSON are skipped.
    """
    for script in soup.select('script[type="application/ld+json"]'):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Skipping unparseable JSON-LD block")
            continue
        items = data if isinstance(data, list) else [data]
        for item in items:
            if not isinstance(item, dict):
                continue
            yield item
            for node in item.get("@graph") or []:
                if isinstance(node, dict):
                    yield node


def format_address(address):
    if isinstance(address, str):
        return address
    if not isinstance(address, dict):
        return ""
    parts = [
        address.get("streetAddress"),
        address.get("addressLocality"),
        address.get("addressRegion"),
        address.get("postalCode"),
    ]
    return ", ".join(str(p) for p in parts if p)


def _to_int(value, default=0):
    try:
        return int(float(str(value).replace(",", "")))
    except (TypeError, ValueError):
        return default


def _to_float(value, default=1.0):
    try:
        return float(str(value).replace(",", ""))
    except (TypeError, ValueError):
        return default


def _json_ld_images(image):
    if isinstance(image, str):
        return [image]
    images = []
    if isinstance(image, dict):
        image = [image]
    for img in image or []:
        if isinstance(img, str):
            images.append(img)
        elif isinstance(img, dict) and img.get("url"):
            images.append(img["url"])
    return images


# ----------------------------------------------------------------------------
# Extraction strategies. Each takes (soup, base_url) and returns a dict of
# NormalizedListing fields, or None when it found nothing usable.
# ----------------------------------------------------------------------------


def extract_from_json_ld(soup, base_url):
    """
    Read the first rental-typed JSON-LD object on the page.

    Recognized @type values: Apartment, House, RealEstateListing, Residence,
    SingleFamilyResidence.
    """
    item = next((i for i in iter_json_ld(soup) if is_rental_item(i)), None)
    if item is None:
        return None

    price = 0
    offers = item.get("offers")
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    if isinstance(offers, dict):
        price = clean_price(offers.get("price") or offers.get("lowPrice") or 0) or 0

    floor_size = item.get("floorSize")
    if isinstance(floor_size, dict):
        floor_size = floor_size.get("value")

    amenities = []
    for a in item.get("amenityFeature") or []:
        name = a.get("name") if isinstance(a, dict) else a
        if name:
            amenities.append(str(name))

    return {
        "title": str(item.get("name") or ""),
        "price": price,
        "beds": _to_int(item.get("numberOfBedrooms") or item.get("numberOfRooms") or 0),
        "baths": _to_float(
            item.get("numberOfBathroomsTotal") or item.get("numberOfBathrooms") or 1
        ),
        "sqft": _to_int(floor_size, default=0) or None,
        "address_text": format_address(item.get("address") or {}),
        "images": [make_absolute_url(base_url, u) for u in _json_ld_images(item.get("image"))],
        "description": str(item.get("description") or ""),
        "amenities": amenities[:MAX_AMENITIES],
    }


def extract_from_microdata(soup, base_url):
    """Collect ``itemprop`` values inside schema.org Apartment/Residence scopes."""
    scopes = soup.select(MICRODATA_SELECTOR)
    if not scopes:
        return None
    data = {}
    for scope in scopes:
        for el in scope.select("[itemprop]"):
            prop = el.get("itemprop")
            content = el.get("content") or el.get("src") or el.get_text(" ", strip=True)
            if prop and content and prop not in data:
                data[prop] = content
    if not data:
        return None

    address = data.get("address") or ", ".join(
        data[k]
        for k in ("streetAddress", "addressLocality", "addressRegion", "postalCode")
        if data.get(k)
    )
    images = [make_absolute_url(base_url, data["image"])] if data.get("image") else []
    return {
        "title": str(data.get("name") or ""),
        "price": clean_price(data.get("price") or 0) or 0,
        "beds": _to_int(data.get("numberOfBedrooms") or data.get("numberOfRooms") or 0),
        "baths": _to_float(data.get("numberOfBathroomsTotal") or data.get("numberOfBathrooms") or 1),
        "sqft": _to_int(data.get("floorSize"), default=0) or None,
        "address_text": address,
        "images": images,
        "description": str(data.get("description") or ""),
        "amenities": [],
    }


def _first_text(soup, selector):
    el = soup.select_one(selector)
    return el.get_text(" ", strip=True) if el else ""


def extract_from_heuristics(soup, base_url):
    """
    Fall back to class-name heuristics common on broker sites.

    Returns None when neither a price nor an address could be found.
    """
    title = _first_text(soup, "h1") or _first_text(soup, '[class*="title"]')
    if not title and soup.title and soup.title.string:
        title = soup.title.string.split("|")[0].strip()

    price_text = _first_text(soup, '[class*="price"]')
    if not price_text:
        el = soup.select_one("[data-price]")
        price_text = el.get("data-price", "") if el else ""
    price = clean_price(price_text) or 0

    details = " ".join(
        el.get_text(" ", strip=True)
        for el in soup.select('[class*="detail"], [class*="info"], [class*="spec"]')
    )

    address = (
        _first_text(soup, '[class*="address"]')
        or _first_text(soup, "address")
        or _first_text(soup, '[class*="location"]')
    )

    if not price and not address:
        return None

    images = []
    for img in soup.select('[class*="gallery"] img, [class*="photo"] img, [class*="image"] img'):
        src = img.get("src") or img.get("data-src")
        if not src or "placeholder" in src or "logo" in src:
            continue
        url = make_absolute_url(base_url, src)
        if url not in images:
            images.append(url)

    amenities = []
    for el in soup.select('[class*="amenity"], [class*="feature"] li'):
        text = el.get_text(" ", strip=True)
        if 2 < len(text) < 50 and text not in amenities:
            amenities.append(text)

    return {
        "title": title,
        "price": price,
        "beds": parse_beds(details),
        "baths": parse_baths(details),
        "sqft": parse_sqft(details),
        "address_text": address,
        "images": images[:MAX_IMAGES],
        "description": _first_text(soup, '[class*="description"]')
        or _first_text(soup, '[class*="content"]'),
        "amenities": amenities[:MAX_AMENITIES],
    }


EXTRACTION_STRATEGIES = (
    ("json-ld", extract_from_json_ld),
    ("microdata", extract_from_microdata),
    ("heuristic", extract_from_heuristics),
)


def extract_listing_fields(html, base_url, strategies=EXTRACTION_STRATEGIES):
    """
    Run the extraction cascade over a listing detail page.

    Strategies are tried in order and the first one that returns fields
    wins; later strategies are not consulted.

    Args:
        html (str): Page body
        base_url (str): Source base URL for resolving relative image links
        strategies (tuple): ``(name, callable)`` pairs, in precedence order

    Returns:
        tuple: (strategy_name, fields) or (None, None) when nothing matched.
    """
    if not html:
        return None, None
    soup = BeautifulSoup(html, "lxml")
    for name, strategy in strategies:
        fields = strategy(soup, base_url)
        if fields:
            return name, fields
    return None, None


# ----------------------------------------------------------------------------
# Discovery helpers
# ----------------------------------------------------------------------------


def parse_sitemap(xml):
    """
    Split a sitemap document into listing URLs and nested sitemap URLs.

    Returns:
        tuple: (listing_urls, nested_sitemap_urls). Only URLs passing
            ``is_likely_listing_url`` are kept in the first list.
    """
    soup = BeautifulSoup(xml or "", "xml")
    urls = []
    for url_el in soup.find_all("url"):
        loc = url_el.find("loc")
        if loc and loc.get_text(strip=True):
            u = loc.get_text(strip=True)
            if is_likely_listing_url(u):
                urls.append(u)
    nested = []
    for sm in soup.find_all("sitemap"):
        loc = sm.find("loc")
        if loc and loc.get_text(strip=True):
            nested.append(loc.get_text(strip=True))
    return urls, nested


def links_from_search_page(html, base_url):
    """
    Collect listing links from a search/index page.

    Looks at JSON-LD first (rental-typed items and ``ItemList`` members),
    then at common listing-card link selectors. Results may contain
    duplicates; callers de-duplicate.
    """
    soup = BeautifulSoup(html or "", "lxml")
    results = []

    for item in iter_json_ld(soup):
        if is_rental_item(item):
            url = item.get("url") or item.get("@id")
            if url:
                results.append(
                    ListingUrlResult(
                        url=make_absolute_url(base_url, url), metadata={"json_ld": item}
                    )
                )
        if item.get("@type") == "ItemList":
            for element in item.get("itemListElement") or []:
                if not isinstance(element, dict):
                    continue
                inner = element.get("item")
                url = element.get("url") or (inner.get("url") if isinstance(inner, dict) else None)
                if url and is_likely_listing_url(url):
                    results.append(ListingUrlResult(url=make_absolute_url(base_url, url)))

    for selector in LISTING_LINK_SELECTORS:
        for a in soup.select(selector):
            href = a.get("href")
            if href and is_likely_listing_url(href):
                results.append(ListingUrlResult(url=make_absolute_url(base_url, href)))

    return results


def dedupe_by_url(results):
    seen = set()
    uniq = []
    for r in results:
        if r.url not in seen:
            seen.add(r.url)
            uniq.append(r)
    return uniq
