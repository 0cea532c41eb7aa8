"""
Configuration Module - Load and validate application settings.
==============================================================

Loads configuration from:
1. config/settings.yaml (defaults)
2. Environment variables from .env file
3. Environment variables from system

Environment variables override YAML defaults.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file early
load_dotenv()


def _find_project_root() -> Path:
    """Find the project root directory by looking for pyproject.toml."""
    current = Path(__file__).resolve()
    for parent in [current] + list(current.parents):
        if (parent / "pyproject.toml").exists():
            return parent
    return Path.cwd()


PROJECT_ROOT = _find_project_root()
CONFIG_DIR = PROJECT_ROOT / "config"
DEFAULT_CONFIG_FILE = CONFIG_DIR / "settings.yaml"


# ─────────────────────────────────────────────────────────────────────────────
# Nested Configuration Models
# ─────────────────────────────────────────────────────────────────────────────


class CatalogConfig(BaseModel):
    """Catalog source settings."""

    base_url: str = "https://my.uwindsor.ca/web/uw/course-search"
    term: str = "20185"
    start_token: str = "1"
    page_param: str = "page"
    term_param: str = "term"
    extra_params: dict[str, str] = Field(default_factory=dict)
    user_agent: str = "CourseFinder/0.1.0"
    timeout: float = 15.0


class RetryConfig(BaseModel):
    """Per-page fetch retry policy."""

    max_attempts: int = 5
    backoff_base: float = 0.5
    backoff_factor: float = 2.0
    backoff_max: float = 8.0

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v


class RebuildConfig(BaseModel):
    """Rebuild cycle settings."""

    max_rejection_rate: float = 0.5
    timeout: float = 300.0
    refresh_interval: float = 0.0
    parallel_fetch: bool = False
    max_workers: int = 4
    prune_missing: bool = True
    allow_empty: bool = False


class SearchConfig(BaseModel):
    """Query settings."""

    default_limit: int = 10
    max_limit: int = 50


class PathsConfig(BaseModel):
    """Data paths configuration."""

    data_dir: str = "data"
    snapshot_file: str = "data/index_snapshot.json"
    snapshot_enabled: bool = True

    def resolve(self, base_path: Path) -> "ResolvedPaths":
        """Resolve paths relative to a base path."""
        return ResolvedPaths(
            data_dir=base_path / self.data_dir,
            snapshot_file=base_path / self.snapshot_file,
        )


class ResolvedPaths(BaseModel):
    """Resolved absolute paths."""

    data_dir: Path
    snapshot_file: Path

    model_config = {"arbitrary_types_allowed": True}


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-8s | %(rebuild)s | %(name)s | %(message)s"
    rich_console: bool = True
    file: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# Main Settings Class
# ─────────────────────────────────────────────────────────────────────────────


class Settings(BaseSettings):
    """
    Main application settings.

    Loads from:
    1. config/settings.yaml (defaults)
    2. Environment variables

    Environment variables override YAML settings.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Top-level environment overrides
    catalog_url: Optional[str] = Field(default=None, validation_alias="CATALOG_URL")
    catalog_term: Optional[str] = Field(default=None, validation_alias="CATALOG_TERM")
    search_limit: Optional[int] = Field(default=None, validation_alias="SEARCH_LIMIT")
    log_level: Optional[str] = Field(default=None, validation_alias="LOG_LEVEL")

    # Nested configurations (from YAML)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rebuild: RebuildConfig = Field(default_factory=RebuildConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    _project_root: Path = PROJECT_ROOT
    _resolved_paths: Optional[ResolvedPaths] = None

    @property
    def project_root(self) -> Path:
        """Get the project root directory."""
        return self._project_root

    @property
    def resolved_paths(self) -> ResolvedPaths:
        """Get resolved absolute paths."""
        if self._resolved_paths is None:
            self._resolved_paths = self.paths.resolve(self._project_root)
        return self._resolved_paths

    def get_effective_base_url(self) -> str:
        """Get the catalog URL (env override or config)."""
        return self.catalog_url or self.catalog.base_url

    def get_effective_term(self) -> str:
        """Get the scrape term code (env override or config)."""
        return self.catalog_term or self.catalog.term

    def get_effective_limit(self) -> int:
        """Get the default result limit (env override or config)."""
        if self.search_limit is not None:
            return self.search_limit
        return self.search.default_limit

    def get_effective_log_level(self) -> str:
        """Get the effective log level (env override or config)."""
        if self.log_level:
            return self.log_level.upper()
        return self.logging.level.upper()


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load configuration from YAML file."""
    if not config_path.exists():
        return {}

    with open(config_path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        return data if data else {}


def _create_settings(config_path: Optional[Path] = None) -> Settings:
    """Create settings instance by merging YAML defaults with environment."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    yaml_config = _load_yaml_config(config_path)
    return Settings(**yaml_config)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get the singleton settings instance.

    Returns:
        Settings instance with merged configuration

    Example:
        >>> settings = get_settings()
        >>> print(settings.search.default_limit)
        10
    """
    return _create_settings()


def reload_settings() -> Settings:
    """
    Force reload of settings (clears cache).

    Returns:
        Fresh Settings instance
    """
    get_settings.cache_clear()
    return get_settings()
