"""Lifecycle tunables and reconnect pacing for the instance keeper.

This package provides configuration and resilience utilities shared by
connection sessions and the keeper process.
"""

from bonk_fleet.keeper.lifecycle.config import (
    DEFAULT_CONFIG,
    FleetConfig,
    LogConfig,
    ReconcilerConfig,
    ServerConfig,
    SessionConfig,
    TokenConfig,
)
from bonk_fleet.keeper.lifecycle.resilience import (
    COOLDOWN_MULTIPLIER,
    SERVER_DOWN_MULTIPLIER,
    Backoff,
    ReconnectPolicy,
    probe_with_retry,
)

__all__ = [
    # Configuration
    "DEFAULT_CONFIG",
    "FleetConfig",
    "LogConfig",
    "ReconcilerConfig",
    "ServerConfig",
    "SessionConfig",
    "TokenConfig",
    # Resilience
    "COOLDOWN_MULTIPLIER",
    "SERVER_DOWN_MULTIPLIER",
    "Backoff",
    "ReconnectPolicy",
    "probe_with_retry",
]
