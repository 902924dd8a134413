"""
Pool configuration, sourced from environment variables.

- DATABASE_URL: asyncpg DSN (any `sslmode` query param is dropped, see below)
- APP_ENV / NODE_ENV: "production" turns on TLS with relaxed certificate checks
- DB_POOL_MAX_SIZE: maximum number of live connections (default 20)
- DB_IDLE_TIMEOUT_MS: close connections idle longer than this (default 30000, 0 disables)
- DB_ACQUIRE_TIMEOUT_MS: fail acquire() after this long (default 2000)
- DB_SHUTDOWN_GRACE_MS: how long shutdown waits for leased connections (default 5000)
- DB_EXTENSIONS: comma-separated extensions to ensure on startup (default "postgis,vector")
"""

from __future__ import annotations

import enum
import os
import ssl
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

DEFAULT_MAX_SIZE = 20
DEFAULT_IDLE_TIMEOUT_MS = 30_000
DEFAULT_ACQUIRE_TIMEOUT_MS = 2_000
DEFAULT_SHUTDOWN_GRACE_MS = 5_000
DEFAULT_EXTENSIONS = ("postgis", "vector")


# The environment cannot produce a usable config (e.g. DATABASE_URL missing).
class ConfigError(RuntimeError):
    pass


class TransportSecurity(str, enum.Enum):
    OFF = "off"
    # TLS without certificate/hostname verification (managed hosts with self-signed certs).
    RELAXED = "relaxed"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _sanitize_database_url(url: str) -> str:
    # TLS is decided by TransportSecurity, not by the URL.
    parts = urlsplit(url)
    if not parts.query:
        return url

    params = [(k, v) for (k, v) in parse_qsl(parts.query, keep_blank_values=True) if k != "sslmode"]
    query = urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def database_url() -> str:
    url = os.environ.get("DATABASE_URL", "").strip()
    if not url:
        raise ConfigError("DATABASE_URL is not set.")
    return _sanitize_database_url(url)


def deployment_mode() -> str:
    mode = os.environ.get("APP_ENV", "").strip() or os.environ.get("NODE_ENV", "").strip()
    return (mode or "development").lower()


def transport_security_for(mode: str) -> TransportSecurity:
    return TransportSecurity.RELAXED if mode == "production" else TransportSecurity.OFF


@dataclass(frozen=True)
class PoolConfig:
    dsn: str
    max_size: int = DEFAULT_MAX_SIZE
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT_MS / 1000
    acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT_MS / 1000
    security: TransportSecurity = TransportSecurity.OFF
    shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE_MS / 1000
    capabilities: tuple[str, ...] = DEFAULT_EXTENSIONS

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError("max_size must be at least 1.")
        if self.acquire_timeout <= 0:
            raise ValueError("acquire_timeout must be positive.")

    @classmethod
    def from_env(cls) -> PoolConfig:
        """
        Build the config from the process environment.

        Unparseable numbers fall back to defaults; a pool size below 1 is clamped.
        """
        acquire_ms = _env_int("DB_ACQUIRE_TIMEOUT_MS", DEFAULT_ACQUIRE_TIMEOUT_MS)
        if acquire_ms <= 0:
            acquire_ms = DEFAULT_ACQUIRE_TIMEOUT_MS
        return cls(
            dsn=database_url(),
            max_size=max(1, _env_int("DB_POOL_MAX_SIZE", DEFAULT_MAX_SIZE)),
            idle_timeout=max(0, _env_int("DB_IDLE_TIMEOUT_MS", DEFAULT_IDLE_TIMEOUT_MS)) / 1000,
            acquire_timeout=acquire_ms / 1000,
            security=transport_security_for(deployment_mode()),
            shutdown_grace=max(0, _env_int("DB_SHUTDOWN_GRACE_MS", DEFAULT_SHUTDOWN_GRACE_MS)) / 1000,
            capabilities=_env_list("DB_EXTENSIONS", DEFAULT_EXTENSIONS),
        )

    def ssl_option(self) -> ssl.SSLContext | bool:
        """
        Value for asyncpg's `ssl=` argument.
        """
        if self.security is TransportSecurity.OFF:
            return False
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx
