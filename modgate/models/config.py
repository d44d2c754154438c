"""Configuration management for the mod gateway."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from modgate.models.data_models import SortField, SortOrder, WarmTarget


class WarmTargetConfig(BaseModel):
    """A query the warming scheduler refreshes every cycle."""
    label: str = Field(description="Display name")
    term: str = Field(default="", description="Search filter")
    category_id: Optional[int] = Field(default=None, description="Restrict to one category")
    sort_field: SortField = Field(default=SortField.POPULARITY, description="Sort field")
    sort_order: SortOrder = Field(default=SortOrder.DESC, description="Sort direction")
    page_size: int = Field(default=20, description="Results per page")
    priority: float = Field(default=0.0, description="Higher warms first")

    @field_validator('page_size')
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if not 1 <= v <= 50:
            raise ValueError(f"page_size must be between 1 and 50, got: {v}")
        return v

    def to_target(self) -> WarmTarget:
        return WarmTarget(
            label=self.label,
            term=self.term,
            category_id=self.category_id,
            sort_field=self.sort_field,
            sort_order=self.sort_order,
            page_size=self.page_size,
            priority=self.priority,
        )


def default_warm_targets() -> List[WarmTargetConfig]:
    return [
        WarmTargetConfig(label="Popular", term="", priority=10),
        WarmTargetConfig(label="QoL", term="quality of life", priority=9),
        WarmTargetConfig(label="Maps", category_id=17, priority=8),
        WarmTargetConfig(label="RPG", term="rpg progression", priority=7),
        WarmTargetConfig(label="Overhauls", term="overhaul total conversion", priority=6),
        WarmTargetConfig(label="General", term="utility building", priority=5),
        WarmTargetConfig(label="Custom Cosmetics", term="cosmetic decoration", priority=4),
    ]


class GatewayConfig(BaseModel):
    """Gateway configuration. Defaults match CurseForge's public quota."""

    # Credentials and upstream
    api_key: Optional[str] = Field(default=None, description="CurseForge API key")
    api_key_source: str = Field(default="config", description="Where api_key came from")
    base_url: str = Field(default="https://api.curseforge.com/v1", description="API base URL")
    game_id: int = Field(default=83374, description="Game id (ARK: Survival Ascended)")
    user_agent: str = Field(default="modgate/0.1", description="User-Agent header")

    # Token bucket
    rate_limit_capacity: int = Field(default=60, description="Token bucket size")
    rate_limit_refill_per_second: float = Field(default=1.0, description="Tokens added per second")

    # Request queue
    max_concurrency: int = Field(default=4, description="Concurrent upstream requests")
    request_timeout: float = Field(default=25.0, description="Upper bound per request in seconds")
    connect_timeout: float = Field(default=5.0, description="HTTP connect timeout in seconds")

    # Retry policy
    timeout_retries: int = Field(default=3, description="Retries after timeouts")
    network_retries: int = Field(default=1, description="Retries after network failures")
    server_retries: int = Field(default=3, description="Retries after 5xx answers")
    rate_limit_retries: int = Field(default=3, description="Retries after upstream 429")
    retry_base_delay: float = Field(default=1.0, description="Base delay for exponential backoff")
    retry_max_delay: float = Field(default=4.0, description="Maximum retry delay")
    retry_jitter_max: float = Field(default=0.0, description="Maximum jitter for retry delay")

    # Cache
    search_cache_ttl: float = Field(default=5 * 60 * 60, description="Search result TTL in seconds")
    mod_cache_ttl: float = Field(default=24 * 60 * 60, description="Single mod TTL in seconds")
    cache_max_entries: int = Field(default=500, description="Soft cap on cached entries")

    # Warming
    warming_interval: float = Field(default=30 * 60, description="Seconds between warming cycles")
    warming_batch_size: int = Field(default=20, description="Upstream calls per warming cycle")
    background_autostart: bool = Field(default=False, description="Start background services on startup")
    warm_targets: List[WarmTargetConfig] = Field(
        default_factory=default_warm_targets,
        description="Seed queries kept warm"
    )

    # Analytics
    analysis_interval: float = Field(default=60 * 60, description="Seconds between analyses")
    analysis_sample_size: int = Field(default=20, description="Mods sampled per category")
    analysis_max_categories: int = Field(default=20, description="Categories analysed per run")
    trending_threshold: float = Field(default=1.5, description="Recent/historical ratio for trending")
    trending_window_days: int = Field(default=7, description="Length of the recent window")
    analytics_retention_days: int = Field(default=30, description="Analytics retention window")
    min_search_volume: int = Field(default=5, description="Minimum searches for a popular pattern")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    structured_logging: bool = Field(default=True, description="Enable structured logging")

    # HTTP service
    host: str = Field(default="127.0.0.1", description="Service bind address")
    port: int = Field(default=8080, description="Service port")

    @field_validator('base_url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError(f"URL must start with http:// or https://, got: {v}")
        return v.rstrip('/')

    @field_validator('rate_limit_capacity', 'max_concurrency', 'cache_max_entries', 'warming_batch_size')
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be at least 1, got: {v}")
        return v

    @field_validator(
        'rate_limit_refill_per_second', 'request_timeout', 'connect_timeout',
        'search_cache_ttl', 'mod_cache_ttl', 'warming_interval', 'analysis_interval'
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"value must be positive, got: {v}")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    def seed_targets(self) -> List[WarmTarget]:
        return [target.to_target() for target in self.warm_targets]

    # Environment variable overrides
    @classmethod
    def env_overrides(cls) -> Dict[str, Any]:
        """Collect overrides from ``MODGATE_*`` variables and ``CURSEFORGE_API_KEY``."""
        env_mappings = {
            "MODGATE_API_KEY": "api_key",
            "MODGATE_BASE_URL": "base_url",
            "MODGATE_GAME_ID": "game_id",
            "MODGATE_RATE_LIMIT_CAPACITY": "rate_limit_capacity",
            "MODGATE_RATE_LIMIT_REFILL": "rate_limit_refill_per_second",
            "MODGATE_MAX_CONCURRENCY": "max_concurrency",
            "MODGATE_REQUEST_TIMEOUT": "request_timeout",
            "MODGATE_SEARCH_CACHE_TTL": "search_cache_ttl",
            "MODGATE_CACHE_MAX_ENTRIES": "cache_max_entries",
            "MODGATE_WARMING_INTERVAL": "warming_interval",
            "MODGATE_BACKGROUND_AUTOSTART": "background_autostart",
            "MODGATE_LOG_LEVEL": "log_level",
            "MODGATE_HOST": "host",
            "MODGATE_PORT": "port",
        }

        overrides: Dict[str, Any] = {}
        # Explicit MODGATE_API_KEY wins over the conventional name
        if os.environ.get("CURSEFORGE_API_KEY"):
            overrides["api_key"] = os.environ["CURSEFORGE_API_KEY"]
            overrides["api_key_source"] = "env"

        for env_var, field_name in env_mappings.items():
            if env_var in os.environ:
                overrides[field_name] = os.environ[env_var]
                if field_name == "api_key":
                    overrides["api_key_source"] = "env"

        # pydantic coerces the strings to each field's type
        return overrides

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Create configuration with environment variable overrides."""
        return cls(**cls.env_overrides())


class ConfigManager:
    """Manages configuration loading with override precedence."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else Path("config/config.yaml")
        self._config: Optional[GatewayConfig] = None

    def load_config(self, cli_overrides: Optional[Dict] = None) -> GatewayConfig:
        """
        Load configuration with override precedence: CLI > ENV > YAML.

        Args:
            cli_overrides: Optional dictionary of CLI flag overrides

        Returns:
            Fully merged GatewayConfig instance

        Raises:
            ValueError: If configuration validation fails
        """
        config_dict: Dict[str, Any] = {}

        if self.config_file.exists():
            with open(self.config_file, 'r') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    config_dict.update(yaml_config)

        config_dict.update(GatewayConfig.env_overrides())

        if cli_overrides:
            # Filter out None values from CLI
            config_dict.update({k: v for k, v in cli_overrides.items() if v is not None})

        self._config = GatewayConfig(**config_dict)
        return self._config

    @property
    def config(self) -> GatewayConfig:
        """Get the loaded configuration."""
        if self._config is None:
            self._config = self.load_config()
        return self._config
