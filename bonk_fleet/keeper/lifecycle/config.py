# Copyright 2025 The bonk_fleet Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Configuration constants and settings for the instance keeper.

This module consolidates the reconnect, heartbeat, token and log-buffer
parameters into typed dataclasses. Every dataclass can be populated from
``BONK_*`` environment variables.
"""

import os
from dataclasses import dataclass, field


@dataclass
class SessionConfig:
  """Connection session timing and reconnect parameters.

  One parameterized session replaces the per-bot variants, so every constant
  that used to differ between them lives here.
  """
  # Reconnection
  max_reconnect_attempts: int = 10  # Attempts before the extended cooldown
  base_reconnect_delay: float = 30.0  # Seconds; doubled while the server is down

  # Probing
  ping_attempts: int = 3  # Pings per probe phase
  ping_retry_delay: float = 2.0  # Pause between failed pings
  ping_timeout: float = 10.0  # Timeout for a single ping

  # Heartbeat/keepalive
  heartbeat_interval: float = 5.0  # Watchdog wake-up period
  heartbeat_timeout: float = 60.0  # Silence allowed while connected
  join_timeout: float = 20.0  # Time allowed between handle creation and join

  # Teardown
  close_timeout: float = 5.0  # Timeout for closing a protocol handle

  @classmethod
  def from_env(cls) -> 'SessionConfig':
    """Create configuration from environment variables."""
    return cls(
        max_reconnect_attempts=int(os.getenv('BONK_MAX_RECONNECT', '10')),
        base_reconnect_delay=float(os.getenv('BONK_RECONNECT_DELAY', '30.0')),
        ping_attempts=int(os.getenv('BONK_PING_ATTEMPTS', '3')),
        ping_retry_delay=float(os.getenv('BONK_PING_RETRY_DELAY', '2.0')),
        ping_timeout=float(os.getenv('BONK_PING_TIMEOUT', '10.0')),
        heartbeat_interval=float(os.getenv('BONK_HEARTBEAT_INTERVAL', '5.0')),
        heartbeat_timeout=float(os.getenv('BONK_HEARTBEAT_TIMEOUT', '60.0')),
        join_timeout=float(os.getenv('BONK_CONNECT_TIMEOUT', '20.0')),
    )


@dataclass
class TokenConfig:
  """Log subscription token settings."""
  ttl_seconds: float = 300.0  # Tokens are valid for five minutes
  token_bytes: int = 32  # Entropy of generated token values

  @classmethod
  def from_env(cls) -> 'TokenConfig':
    """Create configuration from environment variables."""
    return cls(
        ttl_seconds=float(os.getenv('BONK_TOKEN_TTL', '300.0')),
    )


@dataclass
class LogConfig:
  """Per-instance log buffering and delivery limits."""
  buffer_capacity: int = 1000  # Entries kept per instance (FIFO eviction)
  subscriber_queue_size: int = 1024  # Pending pushes before a subscriber is dropped

  @classmethod
  def from_env(cls) -> 'LogConfig':
    """Create configuration from environment variables."""
    return cls(
        buffer_capacity=int(os.getenv('BONK_LOG_BUFFER', '1000')),
        subscriber_queue_size=int(os.getenv('BONK_SUBSCRIBER_QUEUE', '1024')),
    )


@dataclass
class ReconcilerConfig:
  """Desired-state source and reconciliation pacing."""
  config_path: str = 'instances.json'  # JSON desired-state file
  poll_interval: float = 2.0  # Seconds between file change checks
  debounce_seconds: float = 0.5  # Quiet period before reconciling

  @classmethod
  def from_env(cls) -> 'ReconcilerConfig':
    """Create configuration from environment variables."""
    return cls(
        config_path=os.getenv('BONK_CONFIG_PATH', 'instances.json'),
        poll_interval=float(os.getenv('BONK_CONFIG_POLL', '2.0')),
        debounce_seconds=float(os.getenv('BONK_CONFIG_DEBOUNCE', '0.5')),
    )


@dataclass
class ServerConfig:
  """Control surface and protocol bridge endpoints."""
  http_host: str = '0.0.0.0'
  http_port: int = 3000
  bridge_url: str = 'ws://localhost:8765'  # Protocol bridge WebSocket
  bridge_connect_timeout: float = 10.0
  credentials_dir: str = './profiles'  # Auth cache passed to the bridge

  @classmethod
  def from_env(cls) -> 'ServerConfig':
    """Create configuration from environment variables."""
    return cls(
        http_host=os.getenv('BONK_HTTP_HOST', '0.0.0.0'),
        http_port=int(os.getenv('BONK_HTTP_PORT', '3000')),
        bridge_url=os.getenv('BONK_BRIDGE_URL', 'ws://localhost:8765'),
        credentials_dir=os.getenv('BONK_PROFILES_FOLDER', './profiles'),
    )


@dataclass
class FleetConfig:
  """Root configuration aggregating all sub-configurations."""
  session: SessionConfig = field(default_factory=SessionConfig)
  tokens: TokenConfig = field(default_factory=TokenConfig)
  logs: LogConfig = field(default_factory=LogConfig)
  reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
  server: ServerConfig = field(default_factory=ServerConfig)

  @classmethod
  def from_env(cls) -> 'FleetConfig':
    """Create complete configuration from environment variables.

    Returns:
        FleetConfig with all sub-configs populated from environment.
    """
    return cls(
        session=SessionConfig.from_env(),
        tokens=TokenConfig.from_env(),
        logs=LogConfig.from_env(),
        reconciler=ReconcilerConfig.from_env(),
        server=ServerConfig.from_env(),
    )

  def validate(self) -> None:
    """Validate configuration values are sensible.

    Raises:
        ValueError: If configuration contains invalid values.
    """
    # Session validations
    if self.session.max_reconnect_attempts < 1:
      raise ValueError("max_reconnect_attempts must be at least 1")
    if self.session.base_reconnect_delay < 0:
      raise ValueError("base_reconnect_delay cannot be negative")
    if self.session.ping_attempts < 1:
      raise ValueError("ping_attempts must be at least 1")
    if self.session.ping_retry_delay < 0:
      raise ValueError("ping_retry_delay cannot be negative")
    if self.session.heartbeat_interval <= 0:
      raise ValueError("heartbeat_interval must be positive")
    if self.session.heartbeat_timeout < self.session.heartbeat_interval:
      raise ValueError("heartbeat_timeout must be >= heartbeat_interval")
    if self.session.join_timeout <= 0:
      raise ValueError("join_timeout must be positive")

    # Token validations
    if self.tokens.ttl_seconds <= 0:
      raise ValueError("token ttl_seconds must be positive")
    if self.tokens.token_bytes < 16:
      raise ValueError("token_bytes must be at least 16")

    # Log validations
    if self.logs.buffer_capacity <= 0:
      raise ValueError("buffer_capacity must be positive")
    if self.logs.subscriber_queue_size <= 0:
      raise ValueError("subscriber_queue_size must be positive")

    # Reconciler validations
    if self.reconciler.poll_interval <= 0:
      raise ValueError("poll_interval must be positive")
    if self.reconciler.debounce_seconds < 0:
      raise ValueError("debounce_seconds cannot be negative")


# Default configuration instance
DEFAULT_CONFIG = FleetConfig()
