"""
Configuration models for the insurance engine.

Uses Pydantic for validation and type safety. Values come from a YAML
file (with ${VAR} expansion) and can be overridden through environment
variables using the ``SECTION__FIELD`` convention.
"""
import os
import re
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from insurance_engine import constants

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_UNRESOLVED = re.compile(r'^\$\{[^}]+\}$')
_ENV_REF = re.compile(r'\$\{([^}]+)\}')


def _load_env_files(root: Path = _PROJECT_ROOT) -> None:
    """.env then .env.local (local wins) for dev/staging runs; prod reads the real environment only."""
    if os.getenv("ENVIRONMENT", "prod").strip().lower() == "prod":
        return
    for name, override in ((".env", False), (".env.local", True)):
        path = root / name
        if path.exists():
            load_dotenv(dotenv_path=path, override=override)


def _drop_unresolved(node):
    """Replace values still holding a literal ${VAR} with None."""
    if isinstance(node, dict):
        return {k: _drop_unresolved(v) for k, v in node.items()}
    if isinstance(node, list):
        return [_drop_unresolved(v) for v in node]
    if isinstance(node, str) and _UNRESOLVED.match(node):
        return None
    return node


class SystemConfig(BaseSettings):
    """Process-level settings."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "insurance-engine"
    version: str = "0.1.0"


class DataConfig(BaseSettings):
    """Record store configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    # None until DATABASE_URL is injected; Database() fails loudly when accessed
    database_url: Optional[str] = None
    echo_sql: bool = False


class MarketDataConfig(BaseSettings):
    """Price feed and market data REST settings."""
    model_config = SettingsConfigDict(extra="ignore")

    ws_endpoint: str = constants.BINANCE_FUTURES_WS_ENDPOINT
    ws_reconnect_max_retries: int = Field(default=10, ge=3, le=50)
    ws_reconnect_backoff_seconds: int = Field(default=5, ge=1, le=30)
    rest_timeout_ms: int = Field(default=30000, ge=1000, le=120000)

    price_window_capacity: int = Field(default=constants.PRICE_WINDOW_CAPACITY, ge=10, le=100000)
    price_freshness_seconds: float = Field(default=constants.PRICE_FRESHNESS_SECONDS, gt=0, le=300)

    # Extra symbols to stream even when no active pair lists them
    extra_symbols: List[str] = Field(default_factory=list)

    @field_validator("extra_symbols")
    @classmethod
    def normalize_symbols(cls, v: List[str]) -> List[str]:
        return [s.strip().upper() for s in v if s and s.strip()]


class LedgerConfig(BaseSettings):
    """On-chain insurance contract settings."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    rpc_http_url: Optional[str] = None
    contract_address: Optional[str] = None
    mod_private_key: Optional[str] = None
    # None = ABI bundled with the package
    abi_path: Optional[str] = None
    event_poll_seconds: float = Field(default=constants.LEDGER_EVENT_POLL_SECONDS, ge=1, le=300)
    # None = start from the chain head at startup
    start_block: Optional[int] = Field(default=None, ge=0)
    max_block_range: int = Field(default=2000, ge=1, le=100000)


class SchedulerConfig(BaseSettings):
    """Reconciliation loop cadence."""
    model_config = SettingsConfigDict(extra="ignore")

    pending_interval_seconds: float = Field(default=constants.PENDING_SWEEP_INTERVAL_SECONDS, ge=1, le=600)
    active_interval_seconds: float = Field(default=constants.ACTIVE_SWEEP_INTERVAL_SECONDS, ge=1, le=600)
    creation_timeout_seconds: int = Field(default=constants.CREATION_TIMEOUT_SECONDS, ge=10, le=3600)
    pair_refresh_enabled: bool = True
    pair_refresh_interval_seconds: float = Field(default=constants.PAIR_CONFIG_REFRESH_SECONDS, ge=60, le=86400)


class LockConfig(BaseSettings):
    """Per-contract advisory lock settings."""
    model_config = SettingsConfigDict(extra="ignore")

    # memory: single node; database: shared entity_locks table for multi-node
    backend: Literal["memory", "database"] = "memory"
    ttl_seconds: int = Field(default=constants.LOCK_TTL_SECONDS, ge=5, le=600)


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = "logs/run.log"


class Config(BaseSettings):
    """Engine configuration: one section per component."""
    model_config = SettingsConfigDict(env_nested_delimiter="__", extra="ignore")

    system: SystemConfig = Field(default_factory=SystemConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "staging", "prod"] = "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """
        Build a Config from a YAML file.

        ${VAR} references are filled from the environment; any left unset
        become None. ENVIRONMENT and DATABASE_URL always win over the file.
        """
        path = Path(yaml_path)
        if not path.is_file():
            raise FileNotFoundError(f"Config file does not exist: {path}")

        text = _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), path.read_text())
        raw = _drop_unresolved(yaml.safe_load(text) or {})

        env = os.getenv("ENVIRONMENT")
        if env:
            raw["environment"] = env.strip().lower()
        database_url = os.getenv("DATABASE_URL")
        if database_url:
            raw.setdefault("data", {})["database_url"] = database_url

        return cls(**raw)

    def validate_config(self) -> None:
        """Cross-section checks that field constraints cannot express."""
        scheduler = self.scheduler
        if scheduler.pending_interval_seconds >= scheduler.creation_timeout_seconds:
            raise ValueError(
                f"scheduler.pending_interval_seconds ({scheduler.pending_interval_seconds}) must be "
                f"below the creation timeout ({scheduler.creation_timeout_seconds}s)"
            )

        if self.environment == "prod" and self.ledger.enabled:
            missing = [
                name for name in ("rpc_http_url", "contract_address", "mod_private_key")
                if not getattr(self.ledger, name)
            ]
            if missing:
                raise ValueError(f"Ledger enabled in prod but missing: {', '.join(missing)}")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Read .env files (outside prod), then the YAML config, then validate.

    Defaults to the config.yaml shipped beside this module. Raises
    FileNotFoundError for a missing file and ValueError (pydantic's
    ValidationError included) for bad values.
    """
    _load_env_files()
    config = Config.from_yaml(config_path or Path(__file__).parent / "config.yaml")
    config.validate_config()
    return config
