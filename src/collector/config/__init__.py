"""Configuration package for the archive collector."""

from .settings import (
    CollectorSettings,
    RetrySettings,
    ScanSettings,
    ConfigurationError,
    load_settings,
    describe_settings,
)

from .identity import (
    read_collector_id,
    get_or_create_collector_id,
)

__all__ = [
    "CollectorSettings",
    "RetrySettings",
    "ScanSettings",
    "ConfigurationError",
    "load_settings",
    "describe_settings",

    "read_collector_id",
    "get_or_create_collector_id",
]
