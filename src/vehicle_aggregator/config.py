"""Configuration loading and settings for Vehicle Aggregator."""

from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from vehicle_aggregator.models import BoundingBox, DatasetConfig, DatasetsFileConfig

DEFAULT_UPSTREAM_URL = "https://emma.mav.hu//otp2-backend/otp/routers/default/index/graphql"

# Coverage area of the default upstream (Hungary and its border regions)
DEFAULT_COVERAGE = BoundingBox(sw_lat=45.74, sw_lon=16.11, ne_lat=48.58, ne_lon=22.90)

TRAIN_MODES = ["RAIL", "RAIL_REPLACEMENT_BUS", "SUBURBAN_RAILWAY", "TRAMTRAIN"]
BUS_MODES = ["COACH"]


def default_datasets() -> list[DatasetConfig]:
    """Built-in train and bus datasets used when no datasets file is configured."""
    return [
        DatasetConfig(
            name="train",
            path="/fetch-train-data",
            modes=TRAIN_MODES,
            bounding_box=DEFAULT_COVERAGE,
        ),
        DatasetConfig(
            name="bus",
            path="/fetch-bus-data",
            modes=BUS_MODES,
            bounding_box=DEFAULT_COVERAGE,
            tiled=True,
        ),
    ]


def load_datasets_file(path: Path) -> DatasetsFileConfig:
    """Load and parse a datasets.yaml configuration file.

    Args:
        path: Path to the datasets.yaml file.

    Returns:
        Parsed DatasetsFileConfig.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        pydantic.ValidationError: If the configuration is invalid.
    """
    with path.open() as f:
        raw_config = yaml.safe_load(f)

    return DatasetsFileConfig.model_validate(raw_config)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=True,
    )

    # Upstream settings
    upstream_url: str = Field(
        default=DEFAULT_UPSTREAM_URL,
        validation_alias="UPSTREAM_URL",
        description="GraphQL endpoint of the transit backend",
    )
    upstream_headers: dict[str, str] = Field(
        default_factory=dict,
        validation_alias="UPSTREAM_HEADERS",
        description="Extra headers for upstream requests, as a JSON object",
    )
    upstream_proxy: str | None = Field(
        default=None,
        validation_alias="UPSTREAM_PROXY",
        description="Outbound proxy URL for upstream requests",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        validation_alias="REQUEST_TIMEOUT_SECONDS",
        description="Timeout for a single upstream query",
    )
    max_concurrent_queries: int = Field(
        default=20,
        ge=1,
        le=500,
        validation_alias="MAX_CONCURRENT_QUERIES",
        description="Maximum number of concurrent trip-detail queries",
    )

    # Pipeline settings
    cache_ttl_seconds: float = Field(
        default=20.0,
        gt=0,
        le=3600,
        validation_alias="CACHE_TTL_SECONDS",
        description="How long a computed dataset is served before recomputing",
    )
    relevance_grace_seconds: int = Field(
        default=300,
        ge=0,
        le=86400,
        validation_alias="RELEVANCE_GRACE_SECONDS",
        description="How long after its final departure a trip is still shown",
    )
    service_timezone: str = Field(
        default="Europe/Budapest",
        validation_alias="SERVICE_TIMEZONE",
        description="Timezone of the upstream service day",
    )
    datasets_path: Path | None = Field(
        default=None,
        validation_alias="DATASETS_PATH",
        description="Optional datasets.yaml replacing the built-in datasets",
    )
    prefetch_enabled: bool = Field(
        default=False,
        validation_alias="PREFETCH_ENABLED",
        description="Refresh every dataset in the background each cache window",
    )

    # Server settings
    host: str = Field(
        default="0.0.0.0",
        validation_alias="HOST",
        description="Interface the HTTP API binds to",
    )
    port: int = Field(
        default=3000,
        ge=1,
        le=65535,
        validation_alias="PORT",
        description="Port for the HTTP API",
    )
    cors_allow_origin: str = Field(
        default="*",
        validation_alias="CORS_ALLOW_ORIGIN",
        description="Value of the Access-Control-Allow-Origin header",
    )

    # Logging settings
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: str = Field(
        default="json",
        validation_alias="LOG_FORMAT",
        description="Log output format (json or text)",
    )

    @field_validator("service_timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        """Ensure the timezone name is known."""
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.service_timezone)

    def load_datasets(self) -> list[DatasetConfig]:
        """Datasets from DATASETS_PATH, or the built-in ones when unset."""
        if self.datasets_path is None:
            return default_datasets()
        return load_datasets_file(self.datasets_path).datasets
