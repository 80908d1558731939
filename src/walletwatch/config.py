"""Application configuration using pydantic-settings."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/walletwatch.db",
        description="Database connection URL",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")

    # ======================
    # Balance refresh
    # ======================
    refresh_interval_seconds: float = Field(
        default=60.0, description="Seconds between periodic balance refreshes"
    )
    min_refresh_interval_seconds: float = Field(
        default=10.0, description="Unforced refreshes closer together than this are skipped"
    )
    ticker_refresh_seconds: float = Field(
        default=300.0, description="Seconds between price ticker refreshes"
    )
    http_timeout: float = Field(default=15.0, description="HTTP timeout in seconds")

    # ======================
    # Token auto-detection
    # ======================
    auto_fetch_disabled: bool = Field(
        default=False, description="Disable transacted and partner token auto-detection"
    )
    extra_partner_contracts: dict[int, list[str]] = Field(
        default_factory=dict,
        description="Extra partner contracts per chain id, as JSON",
    )

    # ======================
    # Chain RPC Endpoints
    # ======================
    eth_rpc_url: str = Field(default="https://eth.llamarpc.com", description="Ethereum RPC URL")
    bsc_rpc_url: str = Field(
        default="https://bsc-dataseed.binance.org", description="BSC RPC URL"
    )
    xdai_rpc_url: str = Field(default="https://rpc.gnosischain.com", description="Gnosis RPC URL")
    matic_rpc_url: str = Field(default="https://polygon-rpc.com", description="Polygon RPC URL")
    avax_rpc_url: str = Field(
        default="https://api.avax.network/ext/bc/C/rpc", description="Avalanche RPC URL"
    )

    # ======================
    # Block Explorer API Keys
    # ======================
    etherscan_api_key: str = Field(default="", description="Etherscan API key")
    bscscan_api_key: str = Field(default="", description="BscScan API key")
    gnosisscan_api_key: str = Field(default="", description="GnosisScan API key")
    polygonscan_api_key: str = Field(default="", description="PolygonScan API key")
    snowtrace_api_key: str = Field(default="", description="SnowTrace API key")

    # ======================
    # Price tickers
    # ======================
    coingecko_api_url: str = Field(
        default="https://api.coingecko.com/api/v3", description="CoinGecko API URL"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_rpc_url(self, chain: int) -> str:
        """Get RPC URL for a chain id."""
        rpc_map = {
            1: self.eth_rpc_url,
            56: self.bsc_rpc_url,
            100: self.xdai_rpc_url,
            137: self.matic_rpc_url,
            43114: self.avax_rpc_url,
        }
        return rpc_map.get(chain, "")

    def get_explorer_api_key(self, chain: int) -> str:
        """Get block explorer API key for a chain id."""
        key_map = {
            1: self.etherscan_api_key,
            56: self.bscscan_api_key,
            100: self.gnosisscan_api_key,
            137: self.polygonscan_api_key,
            43114: self.snowtrace_api_key,
        }
        return key_map.get(chain, "")

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "database_url": self._redact_url(self.database_url),
            "refresh_interval_seconds": self.refresh_interval_seconds,
            "auto_fetch_disabled": self.auto_fetch_disabled,
            "chains": {
                chain: {
                    "rpc": self.get_rpc_url(chain),
                    "api_key": "***" if self.get_explorer_api_key(chain) else "(not set)",
                }
                for chain in (1, 56, 100, 137, 43114)
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
