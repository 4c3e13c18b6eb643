import os
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError
from .retry import BackoffPolicy


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class RiskConfig(_Frozen):
    size_multiplier: float = Field(1.0, gt=0)
    max_leverage: int = Field(20, ge=1, le=100)
    max_position_size_percent: float = Field(50.0, ge=1, le=100)
    min_notional: float = Field(10.0, ge=0)
    max_concurrent_trades: int = Field(10, gt=0)
    blocked_assets: Tuple[str, ...] = ()

    @field_validator("blocked_assets", mode="before")
    @classmethod
    def _split_assets(cls, v):
        if v is None:
            return ()
        if isinstance(v, str):
            v = v.split(",")
        return tuple(s.strip().upper() for s in v if s and str(s).strip())


class RetryConfig(_Frozen):
    max_attempts: int = Field(3, ge=1)
    initial_delay_ms: int = Field(1000, ge=0)
    max_delay_ms: int = Field(10000, ge=0)
    multiplier: float = Field(2.0, ge=1)

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay=self.initial_delay_ms / 1000.0,
            max_delay=self.max_delay_ms / 1000.0,
            multiplier=self.multiplier,
            max_attempts=self.max_attempts,
        )


class StreamConfig(_Frozen):
    ws_url: Optional[str] = None
    reconnect_base_delay_ms: int = Field(1000, ge=0)
    reconnect_max_delay_ms: int = Field(30000, ge=0)
    max_reconnect_attempts: int = Field(10, ge=1)
    ping_interval_sec: float = Field(50.0, gt=0)

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_delay=self.reconnect_base_delay_ms / 1000.0,
            max_delay=self.reconnect_max_delay_ms / 1000.0,
            multiplier=2.0,
            max_attempts=self.max_reconnect_attempts,
        )


class HealthConfig(_Frozen):
    enabled: bool = True
    interval_minutes: float = Field(5, gt=0)
    drift_threshold: float = Field(0.01, ge=0)


class TelegramConfig(_Frozen):
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)


class LoggingConfig(_Frozen):
    level: str = "INFO"
    log_dir: str = "logs"
    trades_csv_path: str = "logs/copied_trades.csv"

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, v):
        v = str(v).upper()
        if v == "WARN":
            v = "WARNING"
        if v not in ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v}")
        return v


class Config(_Frozen):
    private_key: str = Field(min_length=1)
    target_wallet: str = Field(min_length=1)
    account_address: Optional[str] = None
    testnet: bool = True
    dry_run: bool = False
    base_url: Optional[str] = None
    slippage_percent: float = Field(1.0, gt=0, le=10)
    request_timeout_sec: float = Field(10.0, gt=0)
    risk: RiskConfig = RiskConfig()
    retry: RetryConfig = RetryConfig()
    stream: StreamConfig = StreamConfig()
    health: HealthConfig = HealthConfig()
    telegram: TelegramConfig = TelegramConfig()
    logging: LoggingConfig = LoggingConfig()

    def summary(self) -> Dict[str, Any]:
        """Secret-free view for startup logs and notifications."""
        return {
            "testnet": self.testnet,
            "dry_run": self.dry_run,
            "target_wallet": self.target_wallet,
            "size_multiplier": self.risk.size_multiplier,
            "max_leverage": self.risk.max_leverage,
            "max_position_size_percent": self.risk.max_position_size_percent,
            "max_concurrent_trades": self.risk.max_concurrent_trades,
            "blocked_assets": list(self.risk.blocked_assets),
            "health_check_minutes": self.health.interval_minutes if self.health.enabled else None,
        }


# env var -> path inside the config tree
ENV_OVERRIDES: Dict[str, Tuple[str, ...]] = {
    "PRIVATE_KEY": ("private_key",),
    "TARGET_WALLET": ("target_wallet",),
    "ACCOUNT_ADDRESS": ("account_address",),
    "TESTNET": ("testnet",),
    "DRY_RUN": ("dry_run",),
    "SLIPPAGE_PERCENT": ("slippage_percent",),
    "SIZE_MULTIPLIER": ("risk", "size_multiplier"),
    "MAX_LEVERAGE": ("risk", "max_leverage"),
    "MAX_POSITION_SIZE_PERCENT": ("risk", "max_position_size_percent"),
    "MIN_NOTIONAL": ("risk", "min_notional"),
    "MAX_CONCURRENT_TRADES": ("risk", "max_concurrent_trades"),
    "BLOCKED_ASSETS": ("risk", "blocked_assets"),
    "HEALTH_CHECK_INTERVAL": ("health", "interval_minutes"),
    "DRIFT_THRESHOLD": ("health", "drift_threshold"),
    "TELEGRAM_BOT_TOKEN": ("telegram", "bot_token"),
    "TELEGRAM_CHAT_ID": ("telegram", "chat_id"),
    "LOG_LEVEL": ("logging", "level"),
}


def _apply_env(data: Dict[str, Any], environ) -> Dict[str, Any]:
    for var, path in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        node = data
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = raw
    return data


def build_config(data: Dict[str, Any]) -> Config:
    try:
        return Config(**data)
    except ValidationError as exc:
        lines: List[str] = []
        for err in exc.errors():
            where = ".".join(str(p) for p in err["loc"])
            lines.append(f"{where}: {err['msg']}")
        raise ConfigError("Configuration validation failed:\n" + "\n".join(lines), context={"errors": lines}) from exc


def load_config(path: Optional[str] = None, environ=None) -> Config:
    load_dotenv()
    data: Dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"Config file not found: {path}", context={"path": path}) from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}", context={"path": path}) from exc
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping", context={"path": path})
    return build_config(_apply_env(data, os.environ if environ is None else environ))
