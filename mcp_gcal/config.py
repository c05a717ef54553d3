"""
Configuration for the mcp-gcal OAuth broker

Dataclass sections loaded from environment variables, covering:
- Credential store backend (SQLite or PostgreSQL)
- Upstream Google OAuth client
- Broker token and session lifetimes
- HTTP listener address and public base URL
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URI = "https://www.googleapis.com/oauth2/v2/userinfo"

DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/userinfo.email",
]


def default_config_dir() -> Path:
    """Directory holding the database and client credentials"""
    base = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "mcp-gcal"


@dataclass
class DatabaseConfig:
    """Credential store configuration"""
    type: str = "sqlite"  # sqlite, postgresql
    path: Optional[str] = None
    connection_string: Optional[str] = None
    pool_size: int = 10
    encryption_key: Optional[str] = None

    def __post_init__(self):
        if self.path is None:
            self.path = str(default_config_dir() / "mcp-gcal.db")


@dataclass
class UpstreamConfig:
    """Upstream identity provider configuration"""
    credentials_file: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    auth_uri: str = GOOGLE_AUTH_URI
    token_uri: str = GOOGLE_TOKEN_URI
    userinfo_uri: str = GOOGLE_USERINFO_URI
    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    timeout: float = 30.0

    def __post_init__(self):
        if self.credentials_file is None:
            self.credentials_file = str(default_config_dir() / "credentials.json")


@dataclass
class BrokerConfig:
    """Lifetimes of broker-issued credentials, in seconds unless noted"""
    access_token_ttl: int = 3600
    session_ttl: int = 600
    token_retention_days: int = 7
    sweep_interval: int = 3600


@dataclass
class ServerConfig:
    """HTTP listener configuration"""
    addr: str = ":8080"
    base_url: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class MonitoringConfig:
    """Logging configuration"""
    log_level: str = "INFO"
    audit_enabled: bool = True


@dataclass
class Config:
    """Main configuration for the broker"""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables"""

        db_config = DatabaseConfig(
            type=os.getenv("MCP_GCAL_DB_TYPE", "sqlite"),
            path=os.getenv("MCP_GCAL_DB"),
            connection_string=os.getenv("DATABASE_URL"),
            pool_size=int(os.getenv("MCP_GCAL_DB_POOL_SIZE", "10")),
            encryption_key=os.getenv("MCP_GCAL_ENCRYPTION_KEY"),
        )

        upstream_config = UpstreamConfig(
            credentials_file=os.getenv("MCP_GCAL_CREDENTIALS_FILE"),
            client_id=os.getenv("GOOGLE_CLIENT_ID"),
            client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
            timeout=float(os.getenv("MCP_GCAL_UPSTREAM_TIMEOUT", "30")),
        )

        broker_config = BrokerConfig(
            access_token_ttl=int(os.getenv("MCP_GCAL_ACCESS_TOKEN_TTL", "3600")),
            session_ttl=int(os.getenv("MCP_GCAL_SESSION_TTL", "600")),
            token_retention_days=int(os.getenv("MCP_GCAL_TOKEN_RETENTION_DAYS", "7")),
            sweep_interval=int(os.getenv("MCP_GCAL_SWEEP_INTERVAL", "3600")),
        )

        server_config = ServerConfig(
            addr=os.getenv("MCP_GCAL_ADDR", ":8080"),
            base_url=os.getenv("MCP_GCAL_BASE_URL") or None,
            cors_origins=os.getenv("CORS_ORIGINS", "*").split(","),
        )

        monitoring_config = MonitoringConfig(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            audit_enabled=os.getenv("AUDIT_ENABLED", "true").lower() == "true",
        )

        return cls(
            database=db_config,
            upstream=upstream_config,
            broker=broker_config,
            server=server_config,
            monitoring=monitoring_config,
        )

    def validate(self) -> None:
        """Validate configuration"""
        if self.database.type not in ("sqlite", "postgresql"):
            raise ValueError(f"Unsupported database type: {self.database.type}")

        if self.database.type == "postgresql" and not self.database.connection_string:
            raise ValueError("DATABASE_URL is required for the postgresql backend")

        if self.database.type == "sqlite" and self.database.path == ":memory:":
            raise ValueError("The sqlite backend requires a file path")

        for name in ("access_token_ttl", "session_ttl", "sweep_interval"):
            if getattr(self.broker, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.broker.token_retention_days < 0:
            raise ValueError("token_retention_days must not be negative")

        split_addr(self.server.addr)
        resolve_base_url(self.server.addr, self.server.base_url)

    @property
    def base_url(self) -> str:
        return resolve_base_url(self.server.addr, self.server.base_url)


def split_addr(addr: str) -> Tuple[str, int]:
    """
    Split a listen address such as ":8080", "127.0.0.1:9000" or "[::1]:8080"

    Returns:
        (host, port) where host may be empty for "all interfaces"

    Raises:
        ValueError: If the address has no valid port
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    port_number = int(port)
    if not 0 < port_number < 65536:
        raise ValueError(f"invalid port in listen address {addr!r}")
    return host, port_number


def resolve_base_url(addr: str, explicit: Optional[str] = None) -> str:
    """
    Determine the public base URL used in discovery documents and redirects

    Args:
        addr: Listen address, used when no explicit URL is configured
        explicit: Operator supplied base URL

    Returns:
        Base URL without a trailing slash

    Raises:
        ValueError: If the explicit URL is not an absolute http(s) URL
    """
    if explicit:
        parsed = urlsplit(explicit)
        if parsed.scheme not in ("http", "https"):
            raise ValueError("base URL must use http or https")
        if not parsed.netloc:
            raise ValueError("base URL must include a host")
        if parsed.query or parsed.fragment:
            raise ValueError("base URL must not include a query or fragment")
        return explicit.rstrip("/")

    host, port = split_addr(addr)
    if host in ("", "0.0.0.0", "::"):
        host = "localhost"
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}"


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get global configuration instance"""
    global _config
    if _config is None:
        _config = Config.from_env()
        _config.validate()
    return _config


def set_config(config: Config) -> None:
    """Set global configuration instance"""
    global _config
    config.validate()
    _config = config


def reset_config() -> None:
    """Reset global configuration instance"""
    global _config
    _config = None
