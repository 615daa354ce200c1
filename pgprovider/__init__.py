"""Pooled PostgreSQL connection providers built from layered configuration."""

from .config import (
    Config,
    ConfigurationError,
    ConnectionSettings,
    InvalidConfiguration,
    MissingConfiguration,
    Mode,
    load_config,
    resolve_settings,
)
from .pooling import (
    AsyncpgPooledSource,
    DuplicateSourceError,
    PoolClosedError,
    PooledSource,
    PoolingError,
    SourceRegistry,
)
from .provider import ConnectionProvider, ProviderFactory, create_pooling_provider

__all__ = [
    "AsyncpgPooledSource",
    "Config",
    "ConfigurationError",
    "ConnectionProvider",
    "ConnectionSettings",
    "DuplicateSourceError",
    "InvalidConfiguration",
    "MissingConfiguration",
    "Mode",
    "PoolClosedError",
    "PooledSource",
    "PoolingError",
    "ProviderFactory",
    "SourceRegistry",
    "create_pooling_provider",
    "load_config",
    "resolve_settings",
]
