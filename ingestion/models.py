import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid.uuid4())


# ----------------------------------------------------------------------------
# Source configuration
# ----------------------------------------------------------------------------


class SourceType(str, Enum):
    CLASSIFIEDS = "classifieds"
    MARKETPLACE = "marketplace"
    BROKERAGE = "brokerage"
    BOUTIQUE_BROKER = "boutique-broker"
    PROPERTY_MANAGEMENT = "property-management"


class DataQuality(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class ScrapeDifficulty(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RateLimitConfig(BaseModel):
    requests_per_minute: int = 10
    delay_ms: int = 2000
    jitter_ms: int = 1000


class ScrapeConfig(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    difficulty: ScrapeDifficulty = ScrapeDifficulty.MEDIUM
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    refresh_interval_minutes: int = 360
    parser: str = "generic-broker"
    requires_js: bool = False


class SourceUrls(BaseModel):
    base: str
    search_path: Optional[str] = None
    sitemap: Optional[str] = None
    api_endpoint: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    borough_filters: Dict[str, str] = Field(default_factory=dict)


class DataAvailability(BaseModel):
    """Per-field data quality of a source. Used for reporting only."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    price: DataQuality = DataQuality.NONE
    beds: DataQuality = DataQuality.NONE
    baths: DataQuality = DataQuality.NONE
    sqft: DataQuality = DataQuality.NONE
    address: DataQuality = DataQuality.NONE
    images: DataQuality = DataQuality.NONE
    description: DataQuality = DataQuality.NONE
    broker: DataQuality = DataQuality.NONE


class SourceConfig(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str
    name: str
    type: SourceType = SourceType.BROKERAGE
    enabled: bool = True
    priority: int = 5
    urls: SourceUrls
    data_availability: DataAvailability = Field(default_factory=DataAvailability)
    scrape_config: ScrapeConfig = Field(default_factory=ScrapeConfig)
    notes: Optional[str] = None


# ----------------------------------------------------------------------------
# Raw pages
# ----------------------------------------------------------------------------


class ParseStatus(str, Enum):
    PENDING = "pending"
    PARSED = "parsed"
    FAILED = "failed"


class RawPage(BaseModel):
    """One fetch attempt. Kept as an audit trail, never authoritative."""

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    page_id: str = Field(default_factory=new_id)
    source_id: str
    url: str
    fetched_at: datetime = Field(default_factory=utcnow)
    http_status: int = 0
    html_content: str = ""
    content_hash: str = ""
    extracted_image_urls: List[str] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)
    error_message: Optional[str] = None
    parse_status: ParseStatus = ParseStatus.PENDING
    parsed_at: Optional[datetime] = None
    fetch_time_ms: int = 0

    @property
    def ok(self):
        return self.http_status == 200


# ----------------------------------------------------------------------------
# Listings
# ----------------------------------------------------------------------------


class ListingStatus(str, Enum):
    ACTIVE = "active"
    DELISTED = "delisted"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class PriceHistoryEntry(BaseModel):
    price: float
    date: datetime


class NormalizedListing(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    listing_id: str = Field(default_factory=new_id)

    # source tracking
    source_id: str
    source_listing_id: Optional[str] = None
    source_url: str
    raw_page_id: Optional[str] = None

    # core
    title: Optional[str] = None
    price: float = 0
    beds: int = 0
    baths: float = 1
    sqft: Optional[int] = None

    # location
    address_text: str = ""
    address_normalized: Optional[str] = None
    neighborhood: Optional[str] = None
    borough: Optional[str] = None
    city: str = "New York"
    state: str = "NY"
    zip_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    # media / content
    images: List[str] = Field(default_factory=list)
    image_hashes: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    amenities: List[str] = Field(default_factory=list)

    # broker / contact
    broker_name: Optional[str] = None
    broker_company: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None

    no_fee: Optional[bool] = None
    rent_stabilized: Optional[bool] = None
    available_date: Optional[datetime] = None

    # marketplace extension fields
    net_effective_price: Optional[float] = None
    months_free: Optional[float] = None
    lease_term_months: Optional[int] = None
    furnished: Optional[bool] = None
    is_new_development: Optional[bool] = None
    has_tour_3d: Optional[bool] = None
    has_videos: Optional[bool] = None
    media_asset_count: Optional[int] = None
    building_type: Optional[str] = None
    upcoming_open_house: Optional[datetime] = None
    unit: Optional[str] = None
    tier: Optional[str] = None
    price_delta: Optional[float] = None
    off_market_at: Optional[datetime] = None

    # tracking
    status: ListingStatus = ListingStatus.ACTIVE
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)
    delisted_at: Optional[datetime] = None
    price_history: List[PriceHistoryEntry] = Field(default_factory=list)
    relist_detected: bool = False

    # written by the image analysis consumer
    stored_image_analysis: Optional[Dict[str, Any]] = None

    # dedup
    canonical_listing_id: Optional[str] = None
    is_duplicate: bool = False
    duplicate_of: Optional[str] = None
    duplicate_confidence: Optional[float] = None


class CanonicalListing(BaseModel):
    """Merge target for one physical unit seen across sources.

    Populated by a separate resolver that consumes
    ``store.find_potential_duplicates``; nothing in this package writes it.
    """

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    canonical_id: str = Field(default_factory=new_id)
    best_price: float
    beds: int
    baths: float
    sqft: Optional[int] = None
    address_normalized: str
    neighborhood: Optional[str] = None
    borough: Optional[str] = None
    all_source_ids: List[str] = Field(default_factory=list)
    all_source_urls: List[str] = Field(default_factory=list)
    all_images: List[str] = Field(default_factory=list)
    first_seen_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    status: ListingStatus = ListingStatus.ACTIVE
    data_quality_score: float = 0
    source_count: int = 0


# ----------------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------------


class JobType(str, Enum):
    FETCH = "fetch"
    PARSE = "parse"
    DEDUP = "dedup"
    ANALYZE = "analyze"
    REFRESH = "refresh"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class Job(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    job_id: str = Field(default_factory=new_id)
    type: JobType
    status: JobStatus = JobStatus.PENDING
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 1
    scheduled_for: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    result: Optional[Any] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ----------------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------------

HEALTH_COUNTERS = (
    "fetch_attempts",
    "fetch_successes",
    "fetch_failures",
    "parse_attempts",
    "parse_successes",
    "parse_failures",
    "listings_found",
    "new_listings",
    "updated_listings",
    "delisted_listings",
    "duplicates_detected",
    "fetch_time_total_ms",
    "parse_time_total_ms",
)


class SourceHealth(BaseModel):
    source_id: str
    date: str  # YYYY-MM-DD
    fetch_attempts: int = 0
    fetch_successes: int = 0
    fetch_failures: int = 0
    parse_attempts: int = 0
    parse_successes: int = 0
    parse_failures: int = 0
    listings_found: int = 0
    new_listings: int = 0
    updated_listings: int = 0
    delisted_listings: int = 0
    duplicates_detected: int = 0
    fetch_time_total_ms: int = 0
    parse_time_total_ms: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def avg_fetch_time_ms(self):
        return round(self.fetch_time_total_ms / max(1, self.fetch_attempts), 1)

    @property
    def avg_parse_time_ms(self):
        return round(self.parse_time_total_ms / max(1, self.parse_attempts), 1)

    @property
    def failure_rate(self):
        return self.fetch_failures / max(1, self.fetch_attempts)


# ----------------------------------------------------------------------------
# Adapter / orchestrator results
# ----------------------------------------------------------------------------


class ListingUrlResult(BaseModel):
    url: str
    source_listing_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CrawlResult(BaseModel):
    source_id: str
    listings_found: int = 0
    new_listings: int = 0
    updated_listings: int = 0
    delisted_listings: int = 0
    errors: List[str] = Field(default_factory=list)
    duration_ms: int = 0
    dry_run: bool = False


class ScrapeResult(BaseModel):
    listings: List[NormalizedListing] = Field(default_factory=list)
    total_found: int = 0
    pages_scraped: int = 0
    errors: List[str] = Field(default_factory=list)
