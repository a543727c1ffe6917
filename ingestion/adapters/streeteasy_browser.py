import os
import random
import logging
from dotenv import load_dotenv
from playwright.async_api import async_playwright, TimeoutError as PWTimeout
from .streeteasy_direct import StreetEasyDirectAdapter
from ..utils import USER_AGENTS

load_dotenv()
HEADLESS = os.getenv("HEADLESS", "1") == "1"
BROWSER_NAV_TIMEOUT_MS = int(os.getenv("BROWSER_NAV_TIMEOUT_MS", "30000"))

logger = logging.getLogger("ingestion.adapters")

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-dev-shm-usage",
]
BLOCKED_RESOURCE_TYPES = {"image", "font", "media"}
RESULTS_SELECTOR = '[data-testid="search-results"], .searchResults, .listings'

# Runs before any page script in every new document
STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', { get: () => undefined });
window.chrome = { runtime: {} };
Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });
Object.defineProperty(navigator, 'languages', { get: () => ['en-US', 'en'] });
"""


async def _block_heavy_resources(route):
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class StreetEasyBrowserAdapter(StreetEasyDirectAdapter):
    """
    StreetEasy through a headless Chromium, for when plain HTTP gets blocked.

    Parsing is inherited unchanged; only the transport differs. Every page is
    rendered in a fresh browser context with a random user agent, the
    ``navigator.webdriver`` flag hidden and images, fonts and media blocked.
    The browser is started lazily on the first fetch and torn down by
    ``close()``.
    """

    max_pages = 30
    max_page_errors = 5

    def __init__(self, config, client=None):
        super().__init__(config, client=client)
        self._playwright = None
        self._browser = None

    async def _ensure_browser(self):
        if self._browser is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=HEADLESS, args=LAUNCH_ARGS
            )
            logger.info(f"[{self.source_id}] Launched headless Chromium")
        return self._browser

    async def _request(self, url):
        browser = await self._ensure_browser()
        context = await browser.new_context(
            user_agent=random.choice(USER_AGENTS),
            viewport={"width": 1920, "height": 1080},
            locale="en-US",
        )
        try:
            await context.add_init_script(STEALTH_SCRIPT)
            await context.route("**/*", _block_heavy_resources)
            page = await context.new_page()
            response = await page.goto(
                url, wait_until="networkidle", timeout=BROWSER_NAV_TIMEOUT_MS
            )
            try:
                await page.wait_for_selector(RESULTS_SELECTOR, timeout=10000)
            except PWTimeout:
                logger.info(f"[{self.source_id}] Results container not found on {url}")
            content = await page.content()
            if response is None:
                return 0, content, {}
            return response.status, content, dict(response.headers)
        finally:
            await context.close()

    async def close(self):
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        await super().close()
