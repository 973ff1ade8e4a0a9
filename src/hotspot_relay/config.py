"""Configuration management for the hotspot relay."""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from hotspot_relay.domain.routers import RouterConfig
from hotspot_relay.errors import ConfigurationError

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3001, ge=1024, le=65535)
    trust_forwarded_headers: bool = Field(default=False)
    enable_background_loops: bool = Field(
        default=True,
        description="Start the consumer, job runner and reconciler with the HTTP app.",
    )


class StoreSettings(BaseModel):
    backend: Literal["file", "sqlite", "redis"] = Field(default="file")
    data_dir: str = Field(default="./data")
    sqlite_path: str = Field(default="./data/relay.sqlite")
    sqlite_wal: bool = Field(default=True)
    redis_url: str = Field(default="redis://127.0.0.1:6379/0")
    namespace: str = Field(default="relay", min_length=1)
    processed_ttl_seconds: int = Field(
        default=0,
        ge=0,
        description="Retention for processed event ids; 0 keeps them forever.",
    )
    lock_ttl_ms: int = Field(default=30_000, ge=1_000, le=600_000)
    operation_timeout_seconds: float = Field(default=5.0, gt=0, le=60)


class JobSettings(BaseModel):
    tick_ms: int = Field(default=5_000, ge=100)
    max_attempts: int = Field(default=5, ge=1, le=50)
    backoff_base_ms: int = Field(default=30_000, ge=100)
    backoff_jitter_cap_ms: int = Field(default=5_000, ge=0)
    batch_size: int = Field(default=50, ge=1, le=1_000)
    retry_delay_ms: int = Field(default=30_000, ge=0)
    trial_minutes: int = Field(default=5, ge=1, le=24 * 60)


class CircuitSettings(BaseModel):
    failure_threshold: int = Field(default=5, ge=1, le=100)
    recovery_ms: int = Field(default=60_000, ge=1_000)


class ConsumerSettings(BaseModel):
    events_url: str | None = Field(default=None)
    ack_url: str | None = Field(default=None)
    hmac_secret: SecretStr | None = Field(default=None)
    require_hmac: bool = Field(default=False)
    poll_ms: int = Field(default=3_000, ge=0)
    ack_retries: int = Field(default=2, ge=0, le=10)
    ack_retry_delay_ms: int = Field(default=500, ge=0)
    request_timeout_seconds: float = Field(default=5.0, gt=0, le=120)
    queue_file: str = Field(default="./data/events_queue.json")


class ReconcilerSettings(BaseModel):
    interval_ms: int = Field(default=60_000, description="0 or less disables the loop.")
    remove_extra_peers: bool = Field(default=False)
    handshake_online_seconds: int = Field(default=120, ge=1)


class OverlaySettings(BaseModel):
    interface: str = Field(default="wg0", min_length=1)
    wg_binary: str = Field(default="wg")
    command_timeout_seconds: float = Field(default=5.0, gt=0, le=60)
    persistent_keepalive: int | None = Field(default=25, ge=0, le=65535)


class NetworkSettings(BaseModel):
    dry_run: bool = Field(default=False)
    command_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    address_list: str = Field(default="paid_clients", min_length=1)
    offline_max_age_seconds: int = Field(
        default=0,
        ge=0,
        description=(
            "Refuse grants to routers whose tunnel handshake is older than this; 0 disables."
        ),
    )


class SecuritySettings(BaseModel):
    relay_token: SecretStr | None = Field(default=None)
    api_secret: SecretStr | None = Field(default=None)
    internal_token: SecretStr | None = Field(default=None)
    strict: bool = Field(default=False)
    internal_allowed_ips: tuple[str, ...] = Field(default=())
    rate_limit_per_ip: int = Field(default=60, ge=1)
    max_body_size_kb: int = Field(default=256, ge=1)


class AuditSettings(BaseModel):
    enabled: bool = Field(default=True)
    persist: bool = Field(default=False, description="Also write audit records to SQLite.")


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    jobs: JobSettings = Field(default_factory=JobSettings)
    circuit: CircuitSettings = Field(default_factory=CircuitSettings)
    consumer: ConsumerSettings = Field(default_factory=ConsumerSettings)
    reconciler: ReconcilerSettings = Field(default_factory=ReconcilerSettings)
    overlay: OverlaySettings = Field(default_factory=OverlaySettings)
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    routers: list[RouterConfig] = Field(default_factory=list)

    @field_validator("routers")
    @classmethod
    def _validate_unique_router_ids(cls, value: list[RouterConfig]) -> list[RouterConfig]:
        seen: set[str] = set()
        for router in value:
            if router.id in seen:
                raise ValueError(f"duplicate router id: {router.id}")
            seen.add(router.id)
        return value


ENV_KEYS = {
    "host": "RELAY_HOST",
    "port": "RELAY_PORT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "store": "RELAY_STORE",
    "data_dir": "RELAY_DATA_DIR",
    "sqlite_path": "RELAY_SQLITE_PATH",
    "redis_url": "REDIS_URL",
    "namespace": "RELAY_NAMESPACE",
    "events_url": "BACKEND_EVENTS_URL",
    "ack_url": "BACKEND_ACK_URL",
    "hmac_secret": "BACKEND_HMAC_SECRET",
    "relay_token": "RELAY_TOKEN",
    "api_secret": "RELAY_API_SECRET",
    "internal_token": "RELAY_INTERNAL_TOKEN",
    "routers": "ROUTER_NODES",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv_preserve_case(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate)
    return str((_project_root() / candidate).resolve())


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def _env_str(key: str) -> str | None:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_router_nodes(key: str) -> list[object]:
    raw = _env_str(key)
    if raw is None:
        return []
    try:
        nodes = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Invalid configuration: {key} is not valid JSON ({exc.msg})") from exc
    if not isinstance(nodes, list):
        raise RuntimeError(f"Invalid configuration: {key} must be a JSON array")
    return nodes


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = _env_str(ENV_KEYS["log_file"])
    data_dir = _resolve_path(os.getenv(ENV_KEYS["data_dir"], StoreSettings().data_dir))

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "trust_forwarded_headers": _env_bool(
                "RELAY_TRUST_FORWARDED_HEADERS", ServerSettings().trust_forwarded_headers
            ),
            "enable_background_loops": _env_bool(
                "RELAY_BACKGROUND_LOOPS", ServerSettings().enable_background_loops
            ),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "store": {
            "backend": os.getenv(ENV_KEYS["store"], StoreSettings().backend).strip().lower(),
            "data_dir": data_dir,
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], str(Path(data_dir) / "relay.sqlite"))
            ),
            "sqlite_wal": _env_bool("RELAY_SQLITE_WAL", StoreSettings().sqlite_wal),
            "redis_url": os.getenv(ENV_KEYS["redis_url"], StoreSettings().redis_url),
            "namespace": os.getenv(ENV_KEYS["namespace"], StoreSettings().namespace),
            "processed_ttl_seconds": _env_int(
                "RELAY_PROCESSED_TTL", StoreSettings().processed_ttl_seconds
            ),
            "lock_ttl_ms": _env_int("RELAY_LOCK_TTL_MS", StoreSettings().lock_ttl_ms),
            "operation_timeout_seconds": _env_float(
                "RELAY_STORE_TIMEOUT_SECONDS", StoreSettings().operation_timeout_seconds
            ),
        },
        "jobs": {
            "tick_ms": _env_int("RELAY_JOB_TICK_MS", JobSettings().tick_ms),
            "max_attempts": _env_int("RELAY_JOB_MAX_ATTEMPTS", JobSettings().max_attempts),
            "backoff_base_ms": _env_int(
                "RELAY_JOB_BACKOFF_BASE_MS", JobSettings().backoff_base_ms
            ),
            "backoff_jitter_cap_ms": _env_int(
                "RELAY_JOB_JITTER_CAP_MS", JobSettings().backoff_jitter_cap_ms
            ),
            "batch_size": _env_int("RELAY_JOB_BATCH_SIZE", JobSettings().batch_size),
            "retry_delay_ms": _env_int("RELAY_RETRY_DELAY_MS", JobSettings().retry_delay_ms),
            "trial_minutes": _env_int("RELAY_TRIAL_MINUTES", JobSettings().trial_minutes),
        },
        "circuit": {
            "failure_threshold": _env_int(
                "RELAY_CB_FAILURE_THRESHOLD", CircuitSettings().failure_threshold
            ),
            "recovery_ms": _env_int("RELAY_CB_RECOVERY_MS", CircuitSettings().recovery_ms),
        },
        "consumer": {
            "events_url": _env_str(ENV_KEYS["events_url"]),
            "ack_url": _env_str(ENV_KEYS["ack_url"]),
            "hmac_secret": _env_str(ENV_KEYS["hmac_secret"]),
            "require_hmac": _env_bool("BACKEND_REQUIRE_HMAC", ConsumerSettings().require_hmac),
            "poll_ms": _env_int("RELAY_EVENTS_POLL_MS", ConsumerSettings().poll_ms),
            "ack_retries": _env_int("BACKEND_ACK_RETRIES", ConsumerSettings().ack_retries),
            "ack_retry_delay_ms": _env_int(
                "BACKEND_ACK_RETRY_DELAY_MS", ConsumerSettings().ack_retry_delay_ms
            ),
            "request_timeout_seconds": _env_float(
                "BACKEND_TIMEOUT_SECONDS", ConsumerSettings().request_timeout_seconds
            ),
            "queue_file": _resolve_path(
                os.getenv("RELAY_EVENTS_QUEUE_FILE", str(Path(data_dir) / "events_queue.json"))
            ),
        },
        "reconciler": {
            "interval_ms": _env_int(
                "RELAY_RECONCILE_INTERVAL_MS", ReconcilerSettings().interval_ms
            ),
            "remove_extra_peers": _env_bool(
                "RELAY_RECONCILE_REMOVE", ReconcilerSettings().remove_extra_peers
            ),
            "handshake_online_seconds": _env_int(
                "RELAY_HANDSHAKE_ONLINE_SECONDS", ReconcilerSettings().handshake_online_seconds
            ),
        },
        "overlay": {
            "interface": os.getenv("WG_INTERFACE", OverlaySettings().interface),
            "wg_binary": os.getenv("WG_BINARY", OverlaySettings().wg_binary),
            "command_timeout_seconds": _env_float(
                "WG_TIMEOUT_SECONDS", OverlaySettings().command_timeout_seconds
            ),
            "persistent_keepalive": _env_int(
                "WG_PERSISTENT_KEEPALIVE", OverlaySettings().persistent_keepalive or 0
            )
            or None,
        },
        "network": {
            "dry_run": _env_bool("RELAY_DRY_RUN", NetworkSettings().dry_run),
            "command_timeout_seconds": _env_float(
                "ROUTER_TIMEOUT_SECONDS", NetworkSettings().command_timeout_seconds
            ),
            "address_list": os.getenv("ROUTER_ADDRESS_LIST", NetworkSettings().address_list),
            "offline_max_age_seconds": _env_int(
                "RELAY_OFFLINE_MAX_AGE_SEC", NetworkSettings().offline_max_age_seconds
            ),
        },
        "security": {
            "relay_token": _env_str(ENV_KEYS["relay_token"]),
            "api_secret": _env_str(ENV_KEYS["api_secret"]),
            "internal_token": _env_str(ENV_KEYS["internal_token"]),
            "strict": _env_bool("RELAY_STRICT_SECURITY", SecuritySettings().strict),
            "internal_allowed_ips": tuple(
                _split_csv_preserve_case(os.getenv("RELAY_INTERNAL_ALLOWED_IPS"))
            ),
            "rate_limit_per_ip": _env_int(
                "RELAY_RATE_LIMIT_PER_MIN", SecuritySettings().rate_limit_per_ip
            ),
            "max_body_size_kb": _env_int(
                "RELAY_MAX_BODY_SIZE_KB", SecuritySettings().max_body_size_kb
            ),
        },
        "audit": {
            "enabled": _env_bool("RELAY_AUDIT_ENABLED", AuditSettings().enabled),
            "persist": _env_bool("RELAY_AUDIT_PERSIST", AuditSettings().persist),
        },
        "routers": _env_router_nodes(ENV_KEYS["routers"]),
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    Path(settings.store.data_dir).mkdir(parents=True, exist_ok=True)
    Path(settings.store.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings


def validate_startup(settings: Settings) -> None:
    """Refuse to start with unsafe or incomplete security configuration."""
    security = settings.security
    if security.relay_token is None:
        raise ConfigurationError(f"{ENV_KEYS['relay_token']} is required")
    if not security.strict:
        return
    missing = [
        ENV_KEYS[key]
        for key, value in (
            ("api_secret", security.api_secret),
            ("internal_token", security.internal_token),
        )
        if value is None
    ]
    if settings.consumer.events_url and settings.consumer.hmac_secret is None:
        missing.append(ENV_KEYS["hmac_secret"])
    if missing:
        raise ConfigurationError(
            "RELAY_STRICT_SECURITY is enabled but required secrets are missing: "
            + ", ".join(missing)
        )
