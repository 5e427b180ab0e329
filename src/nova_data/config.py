"""
Data Layer Configuration

Settings come from environment variables, optionally loaded from a .env
file. Nothing connects at import time; the facade and the migration CLIs
build their config objects when they start.
"""

from __future__ import annotations

import os
import ssl
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()


def env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def parse_backend_list(raw: str) -> List[str]:
    """Split a comma-separated DATABASES value into normalized names."""
    names = []
    for part in raw.split(","):
        name = part.strip().lower()
        if name and name not in names:
            names.append(name)
    return names


@dataclass
class PoolConfig:
    """Connection parameters and bounds for the PostgreSQL pool."""

    host: str = "localhost"
    port: int = 5432
    database: str = "nova_universe"
    user: str = "nova_user"
    password: str = ""
    dsn: Optional[str] = None
    min_size: int = 2
    max_size: int = 10
    idle_timeout: float = 30.0
    connect_timeout: float = 10.0
    statement_timeout: float = 30.0
    ssl_enabled: bool = False
    ssl_ca: Optional[str] = None
    ssl_cert: Optional[str] = None
    ssl_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "PoolConfig":
        return cls(
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=_env_int("POSTGRES_PORT", 5432),
            database=os.getenv("POSTGRES_DB", "nova_universe"),
            user=os.getenv("POSTGRES_USER", "nova_user"),
            password=os.getenv("POSTGRES_PASSWORD", ""),
            dsn=os.getenv("DATABASE_URL") or None,
            min_size=_env_int("POSTGRES_POOL_MIN", 2),
            max_size=_env_int("POSTGRES_POOL_MAX", 10),
            idle_timeout=_env_float("POSTGRES_IDLE_TIMEOUT", 30.0),
            connect_timeout=_env_float("POSTGRES_CONNECT_TIMEOUT", 10.0),
            statement_timeout=_env_float("POSTGRES_STATEMENT_TIMEOUT", 30.0),
            ssl_enabled=env_bool("POSTGRES_SSL"),
            ssl_ca=os.getenv("POSTGRES_SSL_CA") or None,
            ssl_cert=os.getenv("POSTGRES_SSL_CERT") or None,
            ssl_key=os.getenv("POSTGRES_SSL_KEY") or None,
        )

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        """Build the TLS context, or None when TLS is disabled."""
        if not self.ssl_enabled:
            return None
        context = ssl.create_default_context(cafile=self.ssl_ca)
        if self.ssl_cert:
            context.load_cert_chain(self.ssl_cert, keyfile=self.ssl_key)
        return context

    def __repr__(self) -> str:
        target = self.dsn.split("@")[-1] if self.dsn else f"{self.host}:{self.port}/{self.database}"
        return (
            f"PoolConfig(target={target}, pool=[{self.min_size}, {self.max_size}], "
            f"ssl={self.ssl_enabled})"
        )


@dataclass
class DocumentStoreConfig:
    """Connection parameters for the MongoDB client."""

    uri: str = "mongodb://localhost:27017"
    database: str = "nova_logs"
    user: Optional[str] = None
    password: Optional[str] = None
    auth_source: str = "admin"
    tls: bool = False
    tls_ca_file: Optional[str] = None
    min_pool_size: int = 2
    max_pool_size: int = 10
    max_idle_time_ms: int = 30000
    server_selection_timeout_ms: int = 5000
    socket_timeout_ms: int = 45000

    @classmethod
    def from_env(cls) -> "DocumentStoreConfig":
        return cls(
            uri=os.getenv("MONGO_URI", os.getenv("MONGO_URL", "mongodb://localhost:27017")),
            database=os.getenv("MONGO_DB_NAME", "nova_logs"),
            user=os.getenv("MONGO_USER") or None,
            password=os.getenv("MONGO_PASSWORD") or None,
            auth_source=os.getenv("MONGO_AUTH_SOURCE", "admin"),
            tls=env_bool("MONGO_TLS"),
            tls_ca_file=os.getenv("MONGO_TLS_CA_FILE") or None,
            min_pool_size=_env_int("MONGO_POOL_MIN", 2),
            max_pool_size=_env_int("MONGO_POOL_MAX", 10),
            max_idle_time_ms=_env_int("MONGO_IDLE_TIMEOUT_MS", 30000),
            server_selection_timeout_ms=_env_int("MONGO_SERVER_SELECTION_TIMEOUT_MS", 5000),
            socket_timeout_ms=_env_int("MONGO_SOCKET_TIMEOUT_MS", 45000),
        )

    def client_options(self) -> Dict[str, Any]:
        """Keyword arguments for AsyncMongoClient."""
        options: Dict[str, Any] = {
            "minPoolSize": self.min_pool_size,
            "maxPoolSize": self.max_pool_size,
            "maxIdleTimeMS": self.max_idle_time_ms,
            "serverSelectionTimeoutMS": self.server_selection_timeout_ms,
            "socketTimeoutMS": self.socket_timeout_ms,
        }
        if self.user and self.password:
            options["username"] = self.user
            options["password"] = self.password
            options["authSource"] = self.auth_source
        if self.tls:
            options["tls"] = True
            if self.tls_ca_file:
                options["tlsCAFile"] = self.tls_ca_file
        return options

    def __repr__(self) -> str:
        return (
            f"DocumentStoreConfig(uri={self.uri.split('@')[-1]}, database={self.database}, "
            f"tls={self.tls})"
        )


@dataclass
class DatabaseConfig:
    """Top-level data layer configuration."""

    databases: List[str] = field(default_factory=lambda: ["postgresql"])
    postgres: PoolConfig = field(default_factory=PoolConfig)
    mongo: DocumentStoreConfig = field(default_factory=DocumentStoreConfig)
    sqlite_path: str = "log.sqlite"
    migrations_dir: Path = Path("db/migrations")

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        return cls(
            databases=parse_backend_list(os.getenv("DATABASES", "postgresql")),
            postgres=PoolConfig.from_env(),
            mongo=DocumentStoreConfig.from_env(),
            sqlite_path=os.getenv("SQLITE_PATH", "log.sqlite"),
            migrations_dir=Path(os.getenv("MIGRATIONS_DIR", "db/migrations")),
        )

    def __repr__(self) -> str:
        return (
            f"DatabaseConfig(databases={','.join(self.databases)}, "
            f"migrations_dir={self.migrations_dir})"
        )
