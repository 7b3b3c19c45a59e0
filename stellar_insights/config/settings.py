"""
Application settings: one typed dataclass built from environment variables.

Every field reads its env var through a default_factory so a fresh Settings()
reflects the current environment (tests monkeypatch env and construct anew).
Validation and clamping happen in __post_init__.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from stellar_insights.config import env
from stellar_insights.pricing.feed import parse_asset_ids

DEFAULT_TASKS = ("payments", "trustlines", "account_merges", "fee_bumps")
HORIZON_MAX_PAGE_SIZE = 200


@dataclass
class Settings:
    """Service configuration (env or explicit)."""

    db_path: Path = field(default_factory=lambda: Path(env.get_str("DB_PATH", "stellar_insights.db")))

    # --- Ledger source ---
    horizon_url: str = field(default_factory=env.get_horizon_url)
    horizon_timeout_sec: float = field(default_factory=lambda: env.get_float("HORIZON_TIMEOUT_SEC", 15.0))
    stellar_expert_url: str = field(default_factory=lambda: env.get_str("STELLAR_EXPERT_URL", env.STELLAR_EXPERT_API_URL))

    # --- Ingestion ---
    ingest_tasks: tuple[str, ...] = field(default_factory=lambda: env.get_list("INGEST_TASKS", DEFAULT_TASKS))
    ingest_batch_size: int = field(default_factory=lambda: env.get_int("INGEST_BATCH_SIZE", HORIZON_MAX_PAGE_SIZE))
    ingest_poll_interval_sec: float = field(default_factory=lambda: env.get_float("INGEST_POLL_INTERVAL_SEC", 5.0))
    ingest_start_cursor: str = field(default_factory=lambda: env.get_str("INGEST_START_CURSOR", "now"))
    heartbeat_interval_sec: float = field(default_factory=lambda: env.get_float("HEARTBEAT_INTERVAL_SEC", 30.0))

    # --- Retry / circuit breaker ---
    retry_attempts: int = field(default_factory=lambda: env.get_int("RETRY_ATTEMPTS", 5))
    retry_backoff_sec: float = field(default_factory=lambda: env.get_float("RETRY_BACKOFF_SEC", 1.0))
    retry_max_backoff_sec: float = field(default_factory=lambda: env.get_float("RETRY_MAX_BACKOFF_SEC", 60.0))
    circuit_failure_threshold: int = field(default_factory=lambda: env.get_int("CIRCUIT_FAILURE_THRESHOLD", 5))
    circuit_success_threshold: int = field(default_factory=lambda: env.get_int("CIRCUIT_SUCCESS_THRESHOLD", 2))
    circuit_timeout_sec: float = field(default_factory=lambda: env.get_float("CIRCUIT_TIMEOUT_SEC", 30.0))

    # --- Aggregation ---
    aggregation_interval_sec: float = field(default_factory=lambda: env.get_float("AGGREGATION_INTERVAL_SEC", 60.0))
    reliability_green_min: float = field(default_factory=lambda: env.get_float("RELIABILITY_GREEN_MIN", 90.0))
    reliability_yellow_min: float = field(default_factory=lambda: env.get_float("RELIABILITY_YELLOW_MIN", 70.0))

    # --- Pricing ---
    price_feed_enabled: bool = field(default_factory=lambda: env.get_bool("PRICE_FEED_ENABLED", True))
    price_feed_provider: str = field(default_factory=env.get_price_feed_provider)
    price_feed_url: str = field(default_factory=lambda: env.get_str("PRICE_FEED_URL"))
    price_feed_api_key: str = field(default_factory=lambda: env.get_str("PRICE_FEED_API_KEY"))
    price_feed_timeout_sec: float = field(default_factory=lambda: env.get_float("PRICE_FEED_TIMEOUT_SEC", 10.0))
    price_cache_ttl_sec: float = field(default_factory=lambda: env.get_float("PRICE_FEED_CACHE_TTL_SEC", 900.0))
    price_feed_asset_ids: tuple[str, ...] = field(default_factory=lambda: env.get_list("PRICE_FEED_ASSET_IDS", ()))

    # --- Reputation ---
    report_threshold: int = field(default_factory=lambda: env.get_int("REPUTATION_REPORT_THRESHOLD", 3))
    revalidation_enabled: bool = field(default_factory=lambda: env.get_bool("REVALIDATION_ENABLED", True))
    revalidation_interval_hours: float = field(default_factory=lambda: env.get_float("REVALIDATION_INTERVAL_HOURS", 24.0))
    revalidation_batch_size: int = field(default_factory=lambda: env.get_int("REVALIDATION_BATCH_SIZE", 100))
    revalidation_max_age_days: int = field(default_factory=lambda: env.get_int("REVALIDATION_MAX_AGE_DAYS", 7))

    # --- Anchoring ---
    snapshot_interval_sec: float = field(default_factory=lambda: env.get_float("SNAPSHOT_INTERVAL_SEC", 3600.0))
    contract_mode: str = field(default_factory=env.get_contract_mode)
    contract_rpc_url: str = field(default_factory=lambda: env.get_str("CONTRACT_RPC_URL"))
    contract_id: str = field(default_factory=lambda: env.get_str("CONTRACT_ID"))
    snapshot_submitter: str = field(default_factory=lambda: env.get_str("SNAPSHOT_SUBMITTER", "insights-anchor"))
    contract_timeout_sec: float = field(default_factory=lambda: env.get_float("CONTRACT_TIMEOUT_SEC", 20.0))

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        unknown = [t for t in self.ingest_tasks if t not in DEFAULT_TASKS]
        if unknown:
            raise ValueError(f"Unknown ingestion task(s): {', '.join(unknown)}")
        self.ingest_batch_size = max(1, min(HORIZON_MAX_PAGE_SIZE, int(self.ingest_batch_size)))
        self.ingest_poll_interval_sec = max(0.1, float(self.ingest_poll_interval_sec))
        self.retry_attempts = max(1, int(self.retry_attempts))
        if self.retry_backoff_sec < 0:
            self.retry_backoff_sec = 0.0
        if not (0 <= self.reliability_yellow_min <= self.reliability_green_min <= 100):
            raise ValueError("Reliability thresholds must satisfy 0 <= yellow <= green <= 100")
        if self.price_feed_enabled and self.price_feed_provider == "coinmarketcap" and not self.price_feed_api_key:
            raise ValueError("PRICE_FEED_API_KEY must be set when PRICE_FEED_PROVIDER=coinmarketcap")
        self.price_cache_ttl_sec = max(0.0, float(self.price_cache_ttl_sec))
        parse_asset_ids(self.price_feed_asset_ids)
        self.report_threshold = max(1, int(self.report_threshold))
        self.revalidation_batch_size = max(1, int(self.revalidation_batch_size))
        if self.contract_mode == "rpc" and not self.contract_rpc_url:
            raise ValueError("CONTRACT_RPC_URL must be set when CONTRACT_MODE=rpc")
        if not self.snapshot_submitter:
            raise ValueError("SNAPSHOT_SUBMITTER must be non-empty")


def get_settings() -> Settings:
    """
    Return the current application settings.

    Returns:
        Settings built from the environment (and .env), validated.
    """
    env.load_insights_env()
    return Settings()
