"""
Connection configuration.

Pydantic models describe what a caller may pass in; ``resolve_connection_settings``
turns a validated ``ConnectionConfig`` into a frozen ``ConnectionSettings`` with
every optional field filled in, which is all the rest of the package reads.
Default values live in ``RELATIONAL_DB_CONFIG`` so they can be inspected and
overridden from YAML.
"""

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from .exceptions import ValidationError
from .vendors import Vendor, VendorStrategy, get_vendor_strategy

RELATIONAL_DB_CONFIG = {
    'pool': {
        'min_size': 0,                     # Connections kept open while idle
        'max_size': 10,                    # Hard cap on physical connections
        'acquire_timeout': 30.0,           # Seconds to wait for a free connection
        'idle_timeout': 300.0,             # Seconds before an idle connection is closed (0 = never)
    },
    'reconnection': {
        'enabled': False,
        'max_attempts': 5,                 # 0 = retry forever
        'base_delay': 1.0,                 # Seconds, doubled per attempt
        'max_delay': 30.0,
    },
    'query': {
        'slow_query_threshold': 1.0,       # Log queries slower than this (seconds)
        'log_sql_max_length': 500,
    },
    'schema': {
        'cache_ttl': 60.0,                 # Seconds a schema inspection stays cached
    },
}

DEFAULT_PORTS = {
    Vendor.POSTGRESQL: 5432,
    Vendor.MYSQL: 3306,
}

_URL_SCHEMES = {
    'postgres': Vendor.POSTGRESQL,
    'postgresql': Vendor.POSTGRESQL,
    'mysql': Vendor.MYSQL,
    'mariadb': Vendor.MYSQL,
    'sqlite': Vendor.SQLITE,
}


def get_default_config() -> Dict[str, Any]:
    """Get a deep copy of the default configuration dictionary."""
    return copy.deepcopy(RELATIONAL_DB_CONFIG)


class PoolOptions(BaseModel):
    """Connection pool tuning."""
    model_config = ConfigDict(extra="forbid")

    min_size: int = Field(RELATIONAL_DB_CONFIG['pool']['min_size'], ge=0)
    max_size: int = Field(RELATIONAL_DB_CONFIG['pool']['max_size'], ge=1, description="Maximum pool size")
    acquire_timeout: float = Field(RELATIONAL_DB_CONFIG['pool']['acquire_timeout'], ge=0)
    idle_timeout: float = Field(RELATIONAL_DB_CONFIG['pool']['idle_timeout'], ge=0)

    @model_validator(mode='after')
    def validate_bounds(self):
        if self.min_size > self.max_size:
            raise ValueError(f"min_size ({self.min_size}) cannot exceed max_size ({self.max_size})")
        return self


class ReconnectionOptions(BaseModel):
    """Backoff policy applied whenever a physical connection has to be opened."""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = RELATIONAL_DB_CONFIG['reconnection']['enabled']
    max_attempts: int = Field(RELATIONAL_DB_CONFIG['reconnection']['max_attempts'], ge=0,
                              description="Retries after the first attempt, 0 = infinite")
    base_delay: float = Field(RELATIONAL_DB_CONFIG['reconnection']['base_delay'], ge=0)
    max_delay: float = Field(RELATIONAL_DB_CONFIG['reconnection']['max_delay'], ge=0)

    @model_validator(mode='after')
    def validate_delays(self):
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self


class NetworkConnectionOptions(BaseModel):
    """Structured descriptor for PostgreSQL and MySQL."""
    model_config = ConfigDict(extra="forbid")

    host: str = Field("localhost", min_length=1)
    port: Optional[int] = Field(None, ge=1, le=65535)
    database: str = Field(..., min_length=1)
    user: Optional[str] = None
    password: Optional[str] = None
    ssl: bool = False


class EmbeddedConnectionOptions(BaseModel):
    """Structured descriptor for SQLite: a file path or ``:memory:``."""
    model_config = ConfigDict(extra="forbid")

    path: str = Field(":memory:", min_length=1)


class ConnectionConfig(BaseModel):
    """Vendor tag plus exactly one way of reaching the database."""
    model_config = ConfigDict(extra="forbid")

    vendor: Vendor
    connection_string: Optional[str] = Field(None, min_length=1)
    connection: Optional[Union[NetworkConnectionOptions, EmbeddedConnectionOptions]] = None
    pool: PoolOptions = Field(default_factory=PoolOptions)
    reconnection: ReconnectionOptions = Field(default_factory=ReconnectionOptions)

    @model_validator(mode='after')
    def validate_target(self):
        if (self.connection_string is None) == (self.connection is None):
            raise ValueError("Provide exactly one of connection_string or connection")

        if self.connection is not None:
            embedded = isinstance(self.connection, EmbeddedConnectionOptions)
            if embedded and self.vendor != Vendor.SQLITE:
                raise ValueError(f"{self.vendor.value} requires host/database connection options")
            if not embedded and self.vendor == Vendor.SQLITE:
                raise ValueError("sqlite requires a file path or ':memory:' connection option")
        return self


@dataclass(frozen=True)
class ConnectionSettings:
    """Fully resolved connection settings; no optional fields left to interpret."""
    vendor: Vendor
    url: URL
    min_size: int
    max_size: int
    acquire_timeout: float
    idle_timeout: float
    reconnect_enabled: bool
    reconnect_max_attempts: int
    reconnect_base_delay: float
    reconnect_max_delay: float
    slow_query_threshold: float
    connect_args: Dict[str, Any] = field(default_factory=dict)

    @property
    def masked_url(self) -> str:
        return self.url.render_as_string(hide_password=True)


def _url_from_string(vendor: Vendor, strategy: VendorStrategy, value: str) -> URL:
    if vendor == Vendor.SQLITE and '://' not in value:
        return URL.create(strategy.drivername, database=value)

    try:
        url = make_url(value)
    except ArgumentError as e:
        raise ValidationError(f"Invalid connection string for {vendor.value}") from e

    scheme = url.drivername.split('+', 1)[0]
    if _URL_SCHEMES.get(scheme) != vendor:
        raise ValidationError(
            f"Connection string scheme '{scheme}' does not match vendor '{vendor.value}'"
        )
    return url.set(drivername=strategy.drivername)


def build_url(config: ConnectionConfig, strategy: Optional[VendorStrategy] = None) -> URL:
    """Build the async-driver SQLAlchemy URL for a connection config."""
    strategy = strategy or get_vendor_strategy(config.vendor)

    if config.connection_string is not None:
        return _url_from_string(config.vendor, strategy, config.connection_string)

    options = config.connection
    if isinstance(options, EmbeddedConnectionOptions):
        return URL.create(strategy.drivername, database=options.path)

    return URL.create(
        strategy.drivername,
        username=options.user,
        password=options.password,
        host=options.host,
        port=options.port or DEFAULT_PORTS[config.vendor],
        database=options.database,
    )


def resolve_connection_settings(config: ConnectionConfig,
                                defaults: Optional[Dict[str, Any]] = None) -> ConnectionSettings:
    """
    Resolve a connection config into explicit settings.

    Args:
        config: Validated connection config
        defaults: Optional defaults dictionary (see ``get_default_config``)

    Returns:
        Frozen settings consumed by the connection manager
    """
    defaults = defaults or RELATIONAL_DB_CONFIG
    strategy = get_vendor_strategy(config.vendor)
    pool = config.pool
    reconnection = config.reconnection

    min_size, max_size, idle_timeout = pool.min_size, pool.max_size, pool.idle_timeout
    if strategy.single_connection:
        # One shared connection keeps :memory: databases alive across statements
        min_size, max_size, idle_timeout = 1, 1, 0.0

    ssl = getattr(config.connection, 'ssl', False)
    return ConnectionSettings(
        vendor=config.vendor,
        url=build_url(config, strategy),
        min_size=min_size,
        max_size=max_size,
        acquire_timeout=pool.acquire_timeout,
        idle_timeout=idle_timeout,
        reconnect_enabled=reconnection.enabled,
        reconnect_max_attempts=reconnection.max_attempts,
        reconnect_base_delay=reconnection.base_delay,
        reconnect_max_delay=reconnection.max_delay,
        slow_query_threshold=defaults['query']['slow_query_threshold'],
        connect_args=strategy.connect_args(ssl),
    )


def validate_config(config_dict: Dict[str, Any]) -> List[str]:
    """
    Get list of validation errors without raising exception.

    Args:
        config_dict: Connection configuration dictionary

    Returns:
        List of ``location: message`` strings, empty when valid
    """
    try:
        ConnectionConfig.model_validate(config_dict)
        return []
    except PydanticValidationError as e:
        errors = []
        for error in e.errors():
            loc = ' -> '.join(str(x) for x in error['loc'])
            errors.append(f"{loc}: {error['msg']}" if loc else error['msg'])
        return errors


def load_config(path: Union[str, Path]) -> ConnectionConfig:
    """
    Load a connection config from a YAML file.

    The file may hold the config at top level or under a ``database`` key.

    Raises:
        ValidationError: If the file is not a mapping or fails validation
    """
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValidationError(f"Configuration file {path} must contain a mapping")

    data = data.get('database', data)
    errors = validate_config(data)
    if errors:
        raise ValidationError(f"Invalid database configuration: {'; '.join(errors)}")
    return ConnectionConfig.model_validate(data)
