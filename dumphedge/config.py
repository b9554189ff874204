# dumphedge/config.py
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(Exception):
    """Raised when configuration is missing, malformed or out of range."""


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class SystemConfig(_Section):
    dry_run: bool = True
    read_only: bool = False
    auto_mode: bool = False
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()


class StrategyConfig(_Section):
    shares: int = Field(default=20, gt=0)
    sum_target: float = Field(default=0.95, ge=0.5, le=1.0)
    drop_threshold: float = Field(default=0.15, ge=0.01, le=0.30)
    window_minutes: float = Field(default=2, ge=1, le=15)
    fee_rate: float = Field(default=0.005, ge=0.0, le=0.1)
    spread_buffer: float = Field(default=0.02, ge=0.0, le=0.5)
    detection_interval: float = Field(default=3.0, gt=0)
    detection_window: float = Field(default=3.0, gt=0)
    buffer_capacity: int = Field(default=1000, gt=1)


class NetworkConfig(_Section):
    ws_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    api_url: str = "https://clob.polymarket.com"
    gamma_api_url: str = "https://gamma-api.polymarket.com"
    reconnect_delay: float = Field(default=1.0, gt=0)
    max_reconnects: int = Field(default=5, ge=0)
    heartbeat: float = Field(default=10.0, gt=0)
    request_timeout: float = Field(default=10.0, gt=0)

    @field_validator("ws_url")
    @classmethod
    def _wss_only(cls, v: str) -> str:
        if not v.startswith("wss://"):
            raise ValueError("ws_url must start with wss://")
        return v

    @field_validator("api_url", "gamma_api_url")
    @classmethod
    def _https_only(cls, v: str) -> str:
        if not v.startswith("https://"):
            raise ValueError("must start with https://")
        return v.rstrip("/")


class RoundsConfig(_Section):
    asset: str = "btc"
    duration_seconds: int = Field(default=900, gt=0)
    check_interval: float = Field(default=1.0, gt=0)
    discovery_interval: float = Field(default=10.0, gt=0)
    ending_warning_seconds: float = Field(default=60.0, ge=0)
    static_up_token_id: Optional[str] = None
    static_down_token_id: Optional[str] = None
    static_slug: str = "static-market"

    @model_validator(mode="after")
    def _static_pair(self):
        if bool(self.static_up_token_id) != bool(self.static_down_token_id):
            raise ValueError("static_up_token_id and static_down_token_id must be set together")
        return self

    @property
    def has_static_market(self) -> bool:
        return bool(self.static_up_token_id and self.static_down_token_id)


class ExecutionConfig(_Section):
    max_attempts: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=1.0, ge=0)
    order_type: str = "GTC"
    chain_id: int = 137
    signature_type: Optional[int] = None

    @field_validator("order_type")
    @classmethod
    def _known_order_type(cls, v: str) -> str:
        v = v.upper()
        if v not in ("GTC", "FOK"):
            raise ValueError("order_type must be GTC or FOK")
        return v


class AlertsConfig(_Section):
    min_severity: str = "info"
    max_per_window: int = Field(default=10, gt=0)
    throttle_window: float = Field(default=60.0, gt=0)
    history_size: int = Field(default=100, gt=0)
    console: bool = True

    @field_validator("min_severity")
    @classmethod
    def _known_severity(cls, v: str) -> str:
        v = v.lower()
        if v not in ("info", "warning", "critical"):
            raise ValueError("min_severity must be info, warning or critical")
        return v


class AuditConfig(_Section):
    trade_log: str = "logs/transitions.csv"
    cycle_store: str = "logs/cycles.csv"


class Secrets(BaseSettings):
    """
    Credentials read from the environment and optional .env file.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", frozen=True)

    private_key: Optional[str] = Field(default=None, alias="PK")
    wallet_address: Optional[str] = Field(default=None, alias="BROWSER_ADDRESS")
    telegram_bot_token: Optional[str] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: Optional[str] = Field(default=None, alias="TELEGRAM_CHAT_ID")
    discord_webhook_url: Optional[str] = Field(default=None, alias="DISCORD_WEBHOOK_URL")


class BotConfig(_Section):
    """
    Immutable configuration snapshot. Updates produce a new instance via apply_updates().
    """
    system: SystemConfig = SystemConfig()
    strategy: StrategyConfig = StrategyConfig()
    network: NetworkConfig = NetworkConfig()
    rounds: RoundsConfig = RoundsConfig()
    execution: ExecutionConfig = ExecutionConfig()
    alerts: AlertsConfig = AlertsConfig()
    audit: AuditConfig = AuditConfig()
    secrets: Secrets = Field(default_factory=lambda: Secrets(_env_file=None))

    @model_validator(mode="after")
    def _credentials_for_live(self):
        if not (self.system.dry_run or self.system.read_only) and not self.secrets.private_key:
            raise ValueError("PK (private key) is required unless dry_run or read_only is enabled")
        return self


# Flat names accepted by apply_updates() and the CLI overrides.
_FIELD_SECTIONS = {
    name: section
    for section, model in (
        ("system", SystemConfig),
        ("strategy", StrategyConfig),
        ("network", NetworkConfig),
        ("rounds", RoundsConfig),
        ("execution", ExecutionConfig),
        ("alerts", AlertsConfig),
    )
    for name in model.model_fields
}


def _format_error(err: ValidationError) -> str:
    parts = []
    for e in err.errors():
        loc = ".".join(str(p) for p in e["loc"]) or "config"
        parts.append(f"{loc}: {e['msg']}")
    return "; ".join(parts)


def build_config(raw: Optional[Dict[str, Any]] = None, secrets: Optional[Secrets] = None) -> BotConfig:
    """
    Validates a raw dict (as parsed from YAML) into a BotConfig.
    """
    data = dict(raw or {})
    if secrets is not None:
        data["secrets"] = secrets
    try:
        return BotConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_error(e)) from e


def load_config(path: str = "config.yaml", secrets: Optional[Secrets] = None) -> BotConfig:
    """
    Reads the YAML file and the environment. Any problem raises ConfigError.
    """
    if not os.path.exists(path):
        raise ConfigError(f"config file not found: {path}")
    with open(path, "r") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at top level")
    if secrets is None:
        try:
            secrets = Secrets()
        except ValidationError as e:
            raise ConfigError(_format_error(e)) from e
    return build_config(raw, secrets)


def apply_updates(config: BotConfig, **changes) -> BotConfig:
    """
    Returns a new validated snapshot with the given flat field changes applied.
    The original snapshot is never modified.
    """
    data = config.model_dump()
    data["secrets"] = config.secrets
    for name, value in changes.items():
        section = _FIELD_SECTIONS.get(name)
        if section is None:
            raise ConfigError(f"unknown setting: {name}")
        data[section][name] = value
    try:
        return BotConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_error(e)) from e
