from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Block explorer (Etherscan V2 multichain endpoint)
    upstream_api_key: str = ""
    upstream_base_url: str = "https://api.etherscan.io/v2/api"
    upstream_chain_id: int = 1
    upstream_rps: int = 5  # calls per second, shared by every process using the key
    upstream_timeout_seconds: float = 30.0
    upstream_max_attempts: int = 5  # 0 = retry transient failures forever
    upstream_backoff_ms: int = 500  # linear: attempt * backoff

    # Ingestion
    page_size: int = 100
    network_tag: str = "ERC20"

    # Database
    database_url: str = "sqlite+aiosqlite:///token_tracker.db"

    # Web
    web_host: str = "0.0.0.0"
    web_port: int = 8888

    # Background sync
    background_sync: bool = False  # run the periodic sync loop inside the web process
    worker_interval_seconds: int = 3600

    log_level: str = "INFO"

    @field_validator("upstream_rps")
    @classmethod
    def _floor_rps(cls, v: int) -> int:
        return max(1, v)

    @property
    def min_interval_seconds(self) -> float:
        return 1.0 / self.upstream_rps


settings = Settings()
