"""Application configuration: data model, YAML loading, defaults and validation."""

from __future__ import annotations

import enum
import os
import re
from dataclasses import MISSING, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import yaml


class ConfigError(ValueError):
    """Raised when a configuration file cannot be read, parsed or validated."""


class AppMode(str, enum.Enum):
    """Startup mode of the application."""

    HTTP = "http"
    CLI = "cli"


class EnvCheckStatus(str, enum.Enum):
    """Outcome of resolving one environment placeholder."""

    PROVIDED = "provided"
    DEFAULTED = "defaulted"
    MISSING = "missing"


@dataclass(frozen=True)
class EnvCheck:
    """Records how one environment variable referenced by the config was resolved."""

    name: str
    status: EnvCheckStatus
    message: str


@dataclass
class ServerConfig:
    host: str = ""
    port: int = 0


@dataclass
class APIConfig:
    auth_token: str = ""
    allow_unauthenticated: bool = False


@dataclass
class SecurityConfig:
    auth_value_encryption_key: str = ""
    integrity_hmac_key: str = ""


@dataclass
class DatabaseConfig:
    host: str = ""
    port: int = 0
    user: str = ""
    password: str = ""
    dbname: str = ""
    sslmode: str = ""
    max_conns: int = 0
    min_conns: int = 0
    migrations_dir: str = ""

    def dsn(self) -> str:
        """Build a PostgreSQL connection string from the configured fields."""
        return (
            f"host={self.host} port={self.port} user={self.user} "
            f"password={self.password} dbname={self.dbname} sslmode={self.sslmode}"
        )


@dataclass
class SSHConfig:
    connect_timeout_seconds: int = 0
    command_timeout_seconds: int = 0
    known_hosts_path: str = ""
    insecure_ignore_host_key: bool | None = None


@dataclass
class CollectorConfig:
    batch_size: int = 0
    chunk_size: int = 0
    store_raw_content: bool | None = None
    chunk_hash_algo: str = ""


@dataclass
class RuntimeConfig:
    dry_run: bool = False


@dataclass
class JobsConfig:
    workers: int = 0
    queue_size: int = 0
    history_limit: int = 0


@dataclass
class HealthConfig:
    failure_threshold: int = 0
    backoff_base_seconds: int = 0
    backoff_max_seconds: int = 0
    last_error_max_length: int = 0


@dataclass
class WorkerConfig:
    discovery_servers: int = 0
    collection_servers: int = 0
    collection_log_files_per_host: int = 0
    integrity_servers: int = 0
    integrity_log_files_per_host: int = 0
    per_server_isolation: bool | None = None


@dataclass
class SchedulerConfig:
    discovery_cron: str = ""
    collection_cron: str = ""
    integrity_cron: str = ""


@dataclass
class ServerEntry:
    """A remote server declared in the configuration file."""

    name: str = ""
    host: str = ""
    port: int = 0
    username: str = ""
    auth_type: str = ""  # "password" or "key"
    auth_value: str = ""  # password or path to a private key
    os_type: str = ""  # "linux", "windows", "macos" or "" for auto-detection


_SECTIONS: dict[str, type] = {
    "server": ServerConfig,
    "api": APIConfig,
    "security": SecurityConfig,
    "database": DatabaseConfig,
    "ssh": SSHConfig,
    "scheduler": SchedulerConfig,
    "collector": CollectorConfig,
    "health": HealthConfig,
    "jobs": JobsConfig,
    "runtime": RuntimeConfig,
    "workers": WorkerConfig,
}


def _coerce(default: Any, value: Any, key: str) -> Any:
    if value is None:
        return default
    if default is None or isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"{key}: expected a boolean, got {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"{key}: expected an integer, got {value!r}")
        return value
    if isinstance(value, (dict, list)):
        raise ConfigError(f"{key}: expected a scalar value")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _load_section(cls: type, data: Any, path: str) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ConfigError(f"{path}: expected a mapping")
    kwargs = {}
    for item in fields(cls):
        if item.name in data:
            default = None if item.default is MISSING else item.default
            kwargs[item.name] = _coerce(default, data[item.name], f"{path}.{item.name}")
    return cls(**kwargs)


@dataclass
class Config:
    """Root application configuration."""

    server: ServerConfig = field(default_factory=ServerConfig)
    api: APIConfig = field(default_factory=APIConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    ssh: SSHConfig = field(default_factory=SSHConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    servers: list[ServerEntry] = field(default_factory=list)
    env_checks: list[EnvCheck] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Any) -> Config:
        """Build a config from a parsed YAML document; unknown keys are ignored."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ConfigError("top-level YAML document must be a mapping")
        sections = {
            name: _load_section(section_cls, data.get(name), name)
            for name, section_cls in _SECTIONS.items()
        }
        raw_servers = data.get("servers")
        if raw_servers is None:
            raw_servers = []
        if not isinstance(raw_servers, list):
            raise ConfigError("servers: expected a list")
        servers = [
            _load_section(ServerEntry, item, f"servers[{index}]")
            for index, item in enumerate(raw_servers)
        ]
        return cls(servers=servers, **sections)


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(:-([^}]*))?\}")


def expand_env_defaults(value: str) -> tuple[str, list[EnvCheck]]:
    """Replace ${VAR} and ${VAR:-default} placeholders and report how each was resolved."""
    checks: list[EnvCheck] = []
    seen: set[str] = set()

    def record(name: str, status: EnvCheckStatus, message: str) -> None:
        if name not in seen:
            checks.append(EnvCheck(name=name, status=status, message=message))
            seen.add(name)

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        env_value = os.environ.get(name)
        if env_value is not None:
            record(name, EnvCheckStatus.PROVIDED, "value was loaded from the environment")
            return env_value
        if match.group(2) is not None:
            record(
                name,
                EnvCheckStatus.DEFAULTED,
                "environment variable is missing, default value was applied",
            )
            return match.group(3)
        record(
            name,
            EnvCheckStatus.MISSING,
            "environment variable is missing, empty value was applied",
        )
        return ""

    return _ENV_PATTERN.sub(replace, value), checks


def _read_text(path: str | os.PathLike[str]) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"config: read {str(path)!r}: {exc}") from exc


def _parse_yaml(text: str) -> Config:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"config: parse yaml: {exc}") from exc
    try:
        return Config.from_mapping(data)
    except ConfigError as exc:
        raise ConfigError(f"config: parse yaml: {exc}") from exc


def load(path: str | os.PathLike[str]) -> Config:
    """Read a YAML config with the minimal legacy validation and defaults."""
    cfg = _parse_yaml(_read_text(path))
    try:
        _validate_legacy(cfg)
    except ConfigError as exc:
        raise ConfigError(f"config: validate: {exc}") from exc
    return cfg


def _validate_legacy(cfg: Config) -> None:
    if not cfg.database.host:
        raise ConfigError("database.host must not be empty")
    if not cfg.database.dbname:
        raise ConfigError("database.dbname must not be empty")
    if cfg.server.port == 0:
        cfg.server.port = 8080
    if cfg.database.port == 0:
        cfg.database.port = 5432
    if not cfg.database.sslmode:
        cfg.database.sslmode = "disable"
    _apply_scheduler_and_health_defaults(cfg)


def load_runtime(path: str | os.PathLike[str]) -> Config:
    """Load the runtime configuration for the HTTP mode."""
    return load_runtime_for_mode(path, AppMode.HTTP)


def load_runtime_for_mode(path: str | os.PathLike[str], mode: AppMode) -> Config:
    """Load the runtime configuration for one startup mode with mode-aware defaults."""
    expanded, env_checks = expand_env_defaults(_read_text(path))
    cfg = _parse_yaml(expanded)
    cfg.env_checks = env_checks
    _apply_runtime_defaults(cfg, AppMode(mode))
    try:
        _validate_runtime(cfg, AppMode(mode))
    except ConfigError as exc:
        raise ConfigError(f"config: validate: {exc}") from exc
    return cfg


def _apply_scheduler_and_health_defaults(cfg: Config) -> None:
    if not cfg.scheduler.discovery_cron:
        cfg.scheduler.discovery_cron = "0 */6 * * *"
    if not cfg.scheduler.collection_cron:
        cfg.scheduler.collection_cron = "*/5 * * * *"
    if not cfg.scheduler.integrity_cron:
        cfg.scheduler.integrity_cron = "0 * * * *"
    if cfg.health.failure_threshold == 0:
        cfg.health.failure_threshold = 1
    if cfg.health.backoff_base_seconds == 0:
        cfg.health.backoff_base_seconds = 60
    if cfg.health.backoff_max_seconds == 0:
        cfg.health.backoff_max_seconds = 900
    if cfg.health.last_error_max_length == 0:
        cfg.health.last_error_max_length = 2048


def _apply_runtime_defaults(cfg: Config, mode: AppMode) -> None:
    if mode is AppMode.HTTP:
        if not cfg.server.host:
            cfg.server.host = "0.0.0.0"
        if cfg.server.port == 0:
            cfg.server.port = 8080
    db = cfg.database
    if db.port == 0:
        db.port = 5432
    if not db.sslmode:
        db.sslmode = "disable"
    if not db.migrations_dir:
        db.migrations_dir = "migrations"
    if db.max_conns == 0:
        db.max_conns = 10
    if db.min_conns == 0:
        db.min_conns = 1

    ssh = cfg.ssh
    if ssh.connect_timeout_seconds == 0:
        ssh.connect_timeout_seconds = 10
    if ssh.command_timeout_seconds == 0:
        ssh.command_timeout_seconds = 30
    if ssh.insecure_ignore_host_key is None:
        ssh.insecure_ignore_host_key = False
    if not ssh.known_hosts_path and not ssh.insecure_ignore_host_key:
        ssh.known_hosts_path = _default_known_hosts_path()

    _apply_scheduler_and_health_defaults(cfg)

    collector = cfg.collector
    if collector.batch_size == 0:
        collector.batch_size = 5000
    if collector.chunk_size == 0:
        collector.chunk_size = 1000
    if not collector.chunk_hash_algo:
        collector.chunk_hash_algo = "sha256"
    if collector.store_raw_content is None:
        collector.store_raw_content = False

    jobs = cfg.jobs
    if jobs.workers == 0:
        jobs.workers = 2
    if jobs.queue_size == 0:
        jobs.queue_size = 128
    if jobs.history_limit == 0:
        jobs.history_limit = 1000

    workers = cfg.workers
    if workers.discovery_servers == 0:
        workers.discovery_servers = 4
    if workers.collection_servers == 0:
        workers.collection_servers = 4
    if workers.collection_log_files_per_host == 0:
        workers.collection_log_files_per_host = 2
    if workers.integrity_servers == 0:
        workers.integrity_servers = 2
    if workers.integrity_log_files_per_host == 0:
        workers.integrity_log_files_per_host = 1
    if workers.per_server_isolation is None:
        workers.per_server_isolation = True


def _require_non_negative(value: int, key: str) -> None:
    if value < 0:
        raise ConfigError(f"{key} must be greater than or equal to zero")


def _require_positive(value: int, key: str) -> None:
    if value <= 0:
        raise ConfigError(f"{key} must be greater than zero")


def _validate_runtime(cfg: Config, mode: AppMode) -> None:
    if mode is AppMode.HTTP:
        _require_non_negative(cfg.server.port, "server.port")
    db = cfg.database
    _require_non_negative(db.max_conns, "database.max_conns")
    _require_non_negative(db.min_conns, "database.min_conns")
    if db.max_conns > 0 and db.min_conns > db.max_conns:
        raise ConfigError("database.min_conns must be less than or equal to database.max_conns")

    security = cfg.security
    if not security.integrity_hmac_key:
        raise ConfigError("security.integrity_hmac_key is required")
    if len(security.integrity_hmac_key.encode("utf-8")) < 16:
        raise ConfigError("security.integrity_hmac_key must contain at least 16 characters")
    if not cfg.runtime.dry_run and _database_configured(cfg) and not security.auth_value_encryption_key:
        raise ConfigError(
            "security.auth_value_encryption_key is required when PostgreSQL storage is enabled"
        )
    if security.auth_value_encryption_key and len(security.auth_value_encryption_key.encode("utf-8")) < 16:
        raise ConfigError("security.auth_value_encryption_key must contain at least 16 characters")

    collector = cfg.collector
    _require_non_negative(collector.batch_size, "collector.batch_size")
    _require_non_negative(collector.chunk_size, "collector.chunk_size")
    if collector.chunk_hash_algo and collector.chunk_hash_algo != "sha256":
        raise ConfigError(f"collector.chunk_hash_algo {collector.chunk_hash_algo!r} is not supported")

    health = cfg.health
    _require_non_negative(health.failure_threshold, "health.failure_threshold")
    _require_non_negative(health.backoff_base_seconds, "health.backoff_base_seconds")
    _require_non_negative(health.backoff_max_seconds, "health.backoff_max_seconds")
    if health.backoff_max_seconds > 0 and health.backoff_base_seconds > health.backoff_max_seconds:
        raise ConfigError(
            "health.backoff_base_seconds must be less than or equal to health.backoff_max_seconds"
        )
    _require_non_negative(health.last_error_max_length, "health.last_error_max_length")

    _require_positive(cfg.jobs.workers, "jobs.workers")
    _require_positive(cfg.jobs.queue_size, "jobs.queue_size")
    _require_positive(cfg.jobs.history_limit, "jobs.history_limit")

    _require_non_negative(cfg.ssh.connect_timeout_seconds, "ssh.connect_timeout_seconds")
    _require_non_negative(cfg.ssh.command_timeout_seconds, "ssh.command_timeout_seconds")
    if not cfg.ssh.insecure_ignore_host_key and not cfg.ssh.known_hosts_path:
        raise ConfigError(
            "ssh.known_hosts_path is required when ssh.insecure_ignore_host_key is false"
        )

    workers = cfg.workers
    _require_non_negative(workers.discovery_servers, "workers.discovery_servers")
    _require_non_negative(workers.collection_servers, "workers.collection_servers")
    _require_non_negative(workers.collection_log_files_per_host, "workers.collection_log_files_per_host")
    _require_non_negative(workers.integrity_servers, "workers.integrity_servers")
    _require_non_negative(workers.integrity_log_files_per_host, "workers.integrity_log_files_per_host")

    for index, entry in enumerate(cfg.servers):
        if not entry.name:
            raise ConfigError(f"servers[{index}].name is required")
        if not entry.host:
            raise ConfigError(f"servers[{index}].host is required")
        if not entry.username:
            raise ConfigError(f"servers[{index}].username is required")
        if entry.auth_type not in ("password", "key"):
            raise ConfigError(f"servers[{index}].auth_type must be either password or key")
        if not entry.auth_value:
            raise ConfigError(f"servers[{index}].auth_value is required")
        if entry.os_type not in ("", "linux", "windows", "macos"):
            raise ConfigError(f"servers[{index}].os_type must be empty, linux, windows or macos")


def _database_configured(cfg: Config) -> bool:
    db = cfg.database
    return bool(db.host and db.user and db.dbname)


def _default_known_hosts_path() -> str:
    try:
        home = Path.home()
    except (RuntimeError, KeyError):
        return ""
    if not str(home):
        return ""
    return str(home / ".ssh" / "known_hosts")