import logging
from .apify_streeteasy import ApifyStreetEasyAdapter
from .craigslist import CraigslistAdapter
from .generic_broker import GenericBrokerAdapter
from .streeteasy_browser import StreetEasyBrowserAdapter
from .streeteasy_direct import StreetEasyDirectAdapter

logger = logging.getLogger("ingestion.adapters")

# Parser ids from SourceConfig.scrape_config.parser. Sites without a
# dedicated adapter are served by the generic extraction cascade.
ADAPTERS = {
    "craigslist": CraigslistAdapter,
    "generic-broker": GenericBrokerAdapter,
    "streeteasy-direct": StreetEasyDirectAdapter,
    "streeteasy-browser": StreetEasyBrowserAdapter,
    "apify-streeteasy": ApifyStreetEasyAdapter,
    "renthop": GenericBrokerAdapter,
    "leasebreak": GenericBrokerAdapter,
    "cityrealty": GenericBrokerAdapter,
    "nybits": GenericBrokerAdapter,
    "naked-apartments": GenericBrokerAdapter,
}


def register_adapter(parser, factory):
    """Register (or replace) the adapter class/callable for a parser id."""
    ADAPTERS[parser] = factory


def supported_parsers():
    return sorted(ADAPTERS)


def create_adapter(config, client=None):
    """
    Instantiate the adapter for a source.

    Args:
        config (SourceConfig): Source to build an adapter for
        client (httpx.AsyncClient, optional): Shared HTTP client

    Returns:
        BaseAdapter: The registered adapter, or GenericBrokerAdapter for an
            unknown parser id (logged as a warning).
    """
    parser = config.scrape_config.parser
    factory = ADAPTERS.get(parser)
    if factory is None:
        logger.warning(f"No adapter for parser '{parser}' ({config.id}), using generic adapter")
        factory = GenericBrokerAdapter
    return factory(config, client=client)
