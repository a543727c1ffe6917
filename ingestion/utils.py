import hashlib
import re
from urllib.parse import urljoin
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

USER_AGENTS = [
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
]

IMG_SRC_RE = re.compile(r"""<img[^>]+src=["']([^"']+)["']""", re.IGNORECASE)
PRICE_RE = re.compile(r"\$?\s*(\d[\d,]*(?:\.\d+)?)")
BEDS_RE = re.compile(r"\b(\d+)\s*(?:bedrooms?|beds?|bd|br)\b", re.IGNORECASE)
BATHS_RE = re.compile(r"\b(\d+(?:\.\d+)?)\s*(?:bathrooms?|baths?|ba)\b", re.IGNORECASE)
SQFT_RE = re.compile(r"(\d+(?:,\d+)?)\s*(?:sq\.?\s*ft|sqft|sf|ft2)", re.IGNORECASE)


def browser_headers(user_agent=None):
    """
    Build realistic browser-like request headers.

    Args:
        user_agent (str, optional): User-Agent to send. Defaults to the first
            entry of USER_AGENTS.

    Returns:
        dict: Header mapping suitable for httpx requests.
    """
    return {
        "User-Agent": user_agent or USER_AGENTS[0],
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Accept-Encoding": "gzip, deflate, br",
        "Connection": "keep-alive",
        "Cache-Control": "no-cache",
    }


def hash_content(content):
    """Return the SHA-256 hex digest of a page body."""
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


def hash_image_url(image_url):
    return hashlib.md5(image_url.encode("utf-8")).hexdigest()


def extract_image_urls(html):
    """Return every raw ``<img src>`` value in document order."""
    return IMG_SRC_RE.findall(html or "")


def make_absolute_url(base_url, url):
    """
    Resolve a possibly relative link against a source's base URL.

    Protocol-relative links ("//cdn...") are forced to https.
    """
    if url.startswith("http"):
        return url
    if url.startswith("//"):
        return f"https:{url}"
    return urljoin(base_url.rstrip("/") + "/", url)


def clean_price(text):
    """
    Parse the first money amount in a text fragment.

    Args:
        text (str): Raw price text such as "$3,250/mo" or "3250"

    Returns:
        float or None: Parsed amount, None when no number is present.
    """
    if text is None:
        return None
    m = PRICE_RE.search(str(text))
    if not m:
        return None
    try:
        return float(m.group(1).replace(",", ""))
    except ValueError:
        return None


def parse_beds(text):
    """
    Extract a bedroom count from free text.

    "N br", "N bd", "N bed", "N bedroom" yield N; "studio" yields 0. Anything else
    also yields 0.
    """
    if not text:
        return 0
    m = BEDS_RE.search(text)
    if m:
        return int(m.group(1))
    return 0


def parse_baths(text):
    """Extract a bathroom count ("N ba", "1.5 bath"); defaults to 1."""
    if not text:
        return 1.0
    m = BATHS_RE.search(text)
    if m:
        return float(m.group(1))
    return 1.0


def parse_sqft(text):
    if not text:
        return None
    m = SQFT_RE.search(text)
    if m:
        return int(m.group(1).replace(",", ""))
    return None


def normalize_address(address):
    """
    Collapse whitespace and repeated punctuation in a scraped address.

    Example:
        "  123  Main St ,, Apt 4 , " -> "123 Main St, Apt 4"
    """
    if not address:
        return ""
    s = re.sub(r"\s+", " ", address)
    s = re.sub(r"\s+,", ",", s)
    s = re.sub(r",(\s*,)+", ",", s)
    return s.strip().strip(",").strip()


def network_retry(**tenacity_kwargs):
    """
    Create a tenacity retry decorator for handling network failures.

    Returns a configured retry decorator with exponential backoff strategy,
    suitable for wrapping coroutines that call external HTTP APIs and may
    experience transient failures.

    Args:
        **tenacity_kwargs: Optional keyword arguments
            - attempts (int): Maximum number of retry attempts. Defaults to 3.
            - exceptions (tuple): Exception types to retry on. Defaults to
              (Exception,).

    Returns:
        tenacity.Retrying: Configured retry decorator

    Retry Behavior:
        - Stops after specified number of attempts (default: 3)
        - Waits with exponential backoff: min=1s, max=10s, multiplier=1
        - Re-raises the last exception once attempts are exhausted

    Example:
        @network_retry(attempts=5, exceptions=(httpx.TransportError,))
        async def get_status(run_id):
            return await client.get(url)
    """
    return retry(
        stop=stop_after_attempt(tenacity_kwargs.get("attempts", 3)),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(tenacity_kwargs.get("exceptions", (Exception,))),
        reraise=True,
    )
