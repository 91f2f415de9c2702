"""
Configuration for kit-enricher.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PLUGIN_NAME = "datasette-kit-enricher"

DEFAULT_EXCLUDED_KEYWORDS = ["Plates", "Beams", "Bricks", "Miscellaneous"]


@dataclass
class RebrickableConfig:
    """Rebrickable API and bulk download configuration."""

    api_base: str = "https://rebrickable.com/api/v3/lego"
    api_key: str | None = None
    api_key_env: str | None = "REBRICKABLE_API_KEY"
    timeout_seconds: float = 15.0
    download_timeout_seconds: float = 120.0
    sets_csv_url: str = "https://cdn.rebrickable.com/media/downloads/sets.csv.gz"
    themes_csv_url: str = "https://cdn.rebrickable.com/media/downloads/themes.csv.gz"

    def get_api_key(self) -> str | None:
        """Get API key from config or environment."""
        if self.api_key and self.api_key.strip():
            return self.api_key.strip()
        if self.api_key_env:
            value = os.environ.get(self.api_key_env, "").strip()
            return value or None
        return None


@dataclass
class ResolverConfig:
    """Cache, quota and retry policy for key resolution."""

    cache_ttl_days: int = 30
    daily_limit: int = 900  # Adjust to your Rebrickable plan
    max_attempts: int = 3
    # Waits before the 2nd and 3rd attempts
    retry_delays_seconds: list[float] = field(default_factory=lambda: [2.0, 60.0])
    excluded_keywords: list[str] = field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_KEYWORDS)
    )


@dataclass
class StoreConfig:
    """Store listing configuration."""

    base_url: str = "https://marstoy.com"
    listing_path: str = "/collections/brick-kits"
    page_param: str = "page_num"
    max_pages: int = 200
    timeout_seconds: float = 15.0


@dataclass
class EnricherConfig:
    """Complete kit-enricher configuration."""

    db_path: Path = field(default_factory=lambda: Path("kit_enricher.db"))
    initialize_on_startup: bool = False

    rebrickable: RebrickableConfig = field(default_factory=RebrickableConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    store: StoreConfig = field(default_factory=StoreConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnricherConfig":
        """Create config from a dictionary (e.g., from YAML)."""
        config = cls()

        if "db_path" in data:
            config.db_path = Path(data["db_path"])
        if "initialize_on_startup" in data:
            config.initialize_on_startup = bool(data["initialize_on_startup"])

        if "rebrickable" in data:
            rb = data["rebrickable"] or {}
            defaults = RebrickableConfig()
            config.rebrickable = RebrickableConfig(
                api_base=rb.get("api_base", defaults.api_base),
                api_key=rb.get("api_key"),
                api_key_env=rb.get("api_key_env", defaults.api_key_env),
                timeout_seconds=rb.get("timeout_seconds", defaults.timeout_seconds),
                download_timeout_seconds=rb.get(
                    "download_timeout_seconds", defaults.download_timeout_seconds
                ),
                sets_csv_url=rb.get("sets_csv_url", defaults.sets_csv_url),
                themes_csv_url=rb.get("themes_csv_url", defaults.themes_csv_url),
            )

        if "resolver" in data:
            res = data["resolver"] or {}
            config.resolver = ResolverConfig(
                cache_ttl_days=res.get("cache_ttl_days", 30),
                daily_limit=res.get("daily_limit", 900),
                max_attempts=res.get("max_attempts", 3),
                retry_delays_seconds=[
                    float(d) for d in res.get("retry_delays_seconds", [2.0, 60.0])
                ],
                excluded_keywords=res.get(
                    "excluded_keywords", list(DEFAULT_EXCLUDED_KEYWORDS)
                ),
            )

        if "store" in data:
            st = data["store"] or {}
            defaults = StoreConfig()
            config.store = StoreConfig(
                base_url=st.get("base_url", defaults.base_url),
                listing_path=st.get("listing_path", defaults.listing_path),
                page_param=st.get("page_param", defaults.page_param),
                max_pages=st.get("max_pages", defaults.max_pages),
                timeout_seconds=st.get("timeout_seconds", defaults.timeout_seconds),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "EnricherConfig":
        """Load config from a YAML file (datasette.yaml format)."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Look for config under plugins.datasette-kit-enricher
        plugin_config = data.get("plugins", {}).get(PLUGIN_NAME, {}) or {}
        return cls.from_dict(plugin_config)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for JSON serialization.

        The API key itself is never included.
        """
        return {
            "db_path": str(self.db_path),
            "initialize_on_startup": self.initialize_on_startup,
            "rebrickable": {
                "api_base": self.rebrickable.api_base,
                "api_key_env": self.rebrickable.api_key_env,
                "api_key_configured": self.rebrickable.get_api_key() is not None,
                "timeout_seconds": self.rebrickable.timeout_seconds,
                "download_timeout_seconds": self.rebrickable.download_timeout_seconds,
                "sets_csv_url": self.rebrickable.sets_csv_url,
                "themes_csv_url": self.rebrickable.themes_csv_url,
            },
            "resolver": {
                "cache_ttl_days": self.resolver.cache_ttl_days,
                "daily_limit": self.resolver.daily_limit,
                "max_attempts": self.resolver.max_attempts,
                "retry_delays_seconds": list(self.resolver.retry_delays_seconds),
                "excluded_keywords": list(self.resolver.excluded_keywords),
            },
            "store": {
                "base_url": self.store.base_url,
                "listing_path": self.store.listing_path,
                "page_param": self.store.page_param,
                "max_pages": self.store.max_pages,
                "timeout_seconds": self.store.timeout_seconds,
            },
        }
