"""Core data models for the mod metadata gateway."""

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Union


class SortField(Enum):
    """Sort fields accepted by the mod search endpoint."""
    NAME = "name"
    POPULARITY = "popularity"
    SIZE = "size"
    UPDATED = "updated"

    @property
    def api_value(self) -> int:
        """Numeric code the upstream API expects."""
        return _SORT_FIELD_CODES[self]


_SORT_FIELD_CODES = {
    SortField.NAME: 1,
    SortField.POPULARITY: 2,
    SortField.SIZE: 3,
    SortField.UPDATED: 4,
}


class SortOrder(Enum):
    ASC = "asc"
    DESC = "desc"


class Priority(IntEnum):
    """Request queue priorities. Higher drains first."""
    BACKGROUND = 0
    ANALYTICS = 1
    USER = 5
    HEALTH = 10


class ResultSource(Enum):
    """Where a search result came from."""
    CACHE = "cache"
    API = "api"
    STALE = "stale"


class CheckStatus(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class OverallStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class MetricKind(Enum):
    """Known performance metric kinds."""
    API_RESPONSE_TIME = "api_response_time"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    CACHE_RESPONSE_TIME = "cache_response_time"
    RATE_LIMIT_HIT = "rate_limit_hit"
    RATE_LIMIT_QUEUED = "rate_limit_queued"
    RETRY_SCHEDULED = "retry_scheduled"
    BACKGROUND_RUN = "background_run"


@dataclass
class RateLimitState:
    """Snapshot of the token bucket."""
    tokens: float
    capacity: int
    refill_rate_per_second: float
    last_refill_at: float
    window_reset_at: float  # when the bucket will be full again


@dataclass
class RateLimitInfo:
    """Upstream rate limit headers, as last seen."""
    remaining: int
    reset_at: float  # epoch seconds


@dataclass
class QueueStatus:
    active_requests: int
    queue_length: int
    max_concurrency: int
    running: bool


@dataclass(frozen=True)
class QueryFingerprint:
    """Every parameter that affects a search result set.

    The hashed digest is the cache key; ``label`` is only for logs.
    """
    term: str
    category_id: Optional[int]
    sort_field: str
    sort_order: str
    page: int
    page_size: int

    @classmethod
    def from_query(
        cls,
        term: str = "",
        category_id: Optional[int] = None,
        sort_field: Union[SortField, str] = SortField.NAME,
        sort_order: Union[SortOrder, str] = SortOrder.ASC,
        page: int = 1,
        page_size: int = 20,
    ) -> "QueryFingerprint":
        return cls(
            term=(term or "").strip().lower(),
            category_id=category_id,
            sort_field=SortField(sort_field).value,
            sort_order=SortOrder(sort_order).value,
            page=page,
            page_size=page_size,
        )

    @property
    def digest(self) -> str:
        raw = json.dumps(
            [self.term, self.category_id, self.sort_field, self.sort_order,
             self.page, self.page_size],
            separators=(",", ":"),
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @property
    def label(self) -> str:
        return "_".join([
            self.term or "*",
            str(self.category_id) if self.category_id is not None else "all",
            self.sort_field,
            self.sort_order,
            str(self.page),
            str(self.page_size),
        ])


@dataclass
class CacheEntry:
    """Cached result set. Only the access counters change after creation."""
    key: str
    payload: Any
    total_count: int
    created_at: float
    expires_at: float
    hit_count: int = 0
    last_accessed_at: float = 0.0
    label: str = ""

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_record(self) -> Dict[str, Any]:
        return {
            "payload": self.payload,
            "total_count": self.total_count,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "label": self.label,
        }

    @classmethod
    def from_record(cls, key: str, record: Dict[str, Any], now: float) -> "CacheEntry":
        return cls(
            key=key,
            payload=record["payload"],
            total_count=int(record["total_count"]),
            created_at=float(record["created_at"]),
            expires_at=float(record["expires_at"]),
            last_accessed_at=now,
            label=record.get("label", ""),
        )


@dataclass
class SearchPattern:
    """Usage statistics for one normalized search query."""
    query: str
    frequency: int
    last_used_at: float
    avg_result_count: float
    daily_counts: Dict[int, int] = field(default_factory=dict)  # UTC day -> searches


@dataclass
class CategoryAnalytics:
    category_id: int
    name: str
    search_volume: int
    avg_downloads: float
    mod_count: int
    popularity_score: float
    trending: bool
    last_analyzed_at: float


@dataclass
class Category:
    id: int
    name: str
    slug: str = ""


@dataclass
class SearchPage:
    """One page of upstream search results."""
    mods: List[Dict[str, Any]]
    total_count: int


@dataclass
class SearchResult:
    """What the gateway hands back for a search."""
    items: List[Dict[str, Any]]
    total_count: int
    source: ResultSource
    stale: bool = False


@dataclass
class WarmTarget:
    """A query the warming scheduler keeps fresh."""
    label: str
    term: str = ""
    category_id: Optional[int] = None
    sort_field: SortField = SortField.POPULARITY
    sort_order: SortOrder = SortOrder.DESC
    page_size: int = 20
    priority: float = 0.0

    def fingerprint(self) -> QueryFingerprint:
        return QueryFingerprint.from_query(
            self.term, self.category_id, self.sort_field, self.sort_order, 1, self.page_size
        )


@dataclass
class WarmingStatus:
    is_warming: bool  # scheduler loop active
    in_progress: bool  # a cycle is running right now
    last_run_at: Optional[float]
    runs: int
    spawn_count: int
    interval_seconds: float


@dataclass
class WarmingReport:
    refreshed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    started_at: float = 0.0
    finished_at: float = 0.0


@dataclass
class ApiKeyStatus:
    has_api_key: bool
    source: str  # "config", "env" or "none"
    key_length: int
    is_valid_format: bool
    message: str


@dataclass(frozen=True)
class ApiCallMetadata:
    endpoint: str
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        if self.error is not None:
            return True
        return self.status_code is not None and self.status_code >= 400


@dataclass(frozen=True)
class CacheEventMetadata:
    label: str
    stale: bool = False


@dataclass(frozen=True)
class RateLimitMetadata:
    retry_after: float
    source: str  # "local" or "upstream"
    label: str = ""


@dataclass(frozen=True)
class BackgroundRunMetadata:
    service: str
    succeeded: int = 0
    failed: int = 0


MetricMetadata = Union[
    ApiCallMetadata, CacheEventMetadata, RateLimitMetadata, BackgroundRunMetadata
]


@dataclass
class PerformanceMetric:
    kind: MetricKind
    timestamp: float
    value: float
    metadata: Optional[MetricMetadata] = None


@dataclass
class PerformanceStats:
    min: float
    max: float
    avg: float
    count: int
    p95: float
    p99: float


@dataclass
class HealthCheckResult:
    status: CheckStatus
    message: str
    response_time_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "response_time_ms": self.response_time_ms,
            "details": self.details,
        }


@dataclass
class HealthReport:
    status: OverallStatus
    timestamp: str  # ISO-8601 UTC
    version: str
    checks: Dict[str, HealthCheckResult]
    metrics: Dict[str, Any]
    recommendations: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "version": self.version,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
            "metrics": self.metrics,
            "recommendations": list(self.recommendations),
        }


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_plain(obj: Any) -> Any:
    """Dataclass/enum tree to JSON-friendly values."""
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "__dataclass_fields__"):
        return {k: to_plain(v) for k, v in asdict(obj).items()}
    if isinstance(obj, dict):
        return {k: to_plain(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_plain(v) for v in obj]
    return obj
