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

"""Runs the instance keeper: control API, reconciler and sessions.

Usage:
  bonk-fleet --config_path=instances.json --http_port=3000 \
      --bridge_url=ws://localhost:8765 --echo_logs
"""

import asyncio
import contextlib
import dataclasses
from typing import Callable, Optional

import uvicorn
from absl import app, flags, logging
from fastapi import FastAPI
from termcolor import colored

from bonk_fleet.keeper.bridge_client import BridgeProtocolClient
from bonk_fleet.keeper.config_reconciler import ConfigReconciler
from bonk_fleet.keeper.control_api import create_app
from bonk_fleet.keeper.desired_state import (
    DesiredStateStore,
    JsonFileDesiredStateStore,
)
from bonk_fleet.keeper.instance_registry import InstanceRegistry
from bonk_fleet.keeper.lifecycle.config import FleetConfig
from bonk_fleet.keeper.log_broadcaster import (
    LogBroadcaster,
    LogEntry,
    format_console_line,
)
from bonk_fleet.keeper.protocol_client import ProtocolClient
from bonk_fleet.keeper.token_issuer import TokenIssuer

# Command line flags; unset flags fall back to BONK_* environment values.
_CONFIG_PATH = flags.DEFINE_string(
    "config_path", None, "Desired-state JSON file"
)
_HTTP_HOST = flags.DEFINE_string(
    "http_host", None, "Interface the control API binds to"
)
_HTTP_PORT = flags.DEFINE_integer(
    "http_port", None, "Control API port"
)
_BRIDGE_URL = flags.DEFINE_string(
    "bridge_url", None, "WebSocket URL of the protocol bridge"
)
_CREDENTIALS_DIR = flags.DEFINE_string(
    "credentials_dir", None, "Auth cache folder handed to the bridge"
)
_RECONNECT_DELAY = flags.DEFINE_float(
    "reconnect_delay", None, "Base reconnect delay in seconds"
)
_MAX_RECONNECT = flags.DEFINE_integer(
    "max_reconnect_attempts", None, "Reconnect attempts before a cooldown"
)
_ECHO_LOGS = flags.DEFINE_boolean(
    "echo_logs", False, "Mirror instance logs to the console in colour"
)


@dataclasses.dataclass
class Fleet:
  """Every long-lived component of one keeper process."""

  config: FleetConfig
  broadcaster: LogBroadcaster
  tokens: TokenIssuer
  registry: InstanceRegistry
  reconciler: ConfigReconciler
  app: FastAPI


def build_fleet(
    config: FleetConfig,
    client: Optional[ProtocolClient] = None,
    store: Optional[DesiredStateStore] = None,
    echo: Optional[Callable[[LogEntry], None]] = None,
) -> Fleet:
  """Wires the keeper's components together."""
  config.validate()
  if client is None:
    client = BridgeProtocolClient(
        config.server.bridge_url,
        connect_timeout=config.server.bridge_connect_timeout,
        close_timeout=config.session.close_timeout,
    )
  if store is None:
    store = JsonFileDesiredStateStore(
        config.reconciler.config_path,
        poll_interval=config.reconciler.poll_interval,
    )

  broadcaster = LogBroadcaster(capacity=config.logs.buffer_capacity, echo=echo)
  tokens = TokenIssuer(
      ttl_seconds=config.tokens.ttl_seconds,
      token_bytes=config.tokens.token_bytes,
  )
  registry = InstanceRegistry(
      client,
      broadcaster,
      session_config=config.session,
      credentials_dir=config.server.credentials_dir,
  )
  reconciler = ConfigReconciler(
      registry, store, debounce_seconds=config.reconciler.debounce_seconds
  )
  fastapi_app = create_app(
      registry,
      tokens,
      broadcaster=broadcaster,
      reconciler=reconciler,
      subscriber_queue_size=config.logs.subscriber_queue_size,
  )
  return Fleet(
      config=config,
      broadcaster=broadcaster,
      tokens=tokens,
      registry=registry,
      reconciler=reconciler,
      app=fastapi_app,
  )


def config_from_flags() -> FleetConfig:
  """Environment configuration with command line overrides applied."""
  config = FleetConfig.from_env()
  if _CONFIG_PATH.value is not None:
    config.reconciler.config_path = _CONFIG_PATH.value
  if _HTTP_HOST.value is not None:
    config.server.http_host = _HTTP_HOST.value
  if _HTTP_PORT.value is not None:
    config.server.http_port = _HTTP_PORT.value
  if _BRIDGE_URL.value is not None:
    config.server.bridge_url = _BRIDGE_URL.value
  if _CREDENTIALS_DIR.value is not None:
    config.server.credentials_dir = _CREDENTIALS_DIR.value
  if _RECONNECT_DELAY.value is not None:
    config.session.base_reconnect_delay = _RECONNECT_DELAY.value
  if _MAX_RECONNECT.value is not None:
    config.session.max_reconnect_attempts = _MAX_RECONNECT.value
  return config


def echo_to_console(entry: LogEntry) -> None:
  print(format_console_line(entry), flush=True)


async def serve(fleet: Fleet) -> None:
  """Serves the control API until shutdown, reconciling in the background."""
  server = uvicorn.Server(
      uvicorn.Config(
          fleet.app,
          host=fleet.config.server.http_host,
          port=fleet.config.server.http_port,
          log_level="info",
          timeout_graceful_shutdown=2,
      )
  )
  reconciler_task = asyncio.create_task(fleet.reconciler.run())
  try:
    await server.serve()
  finally:
    reconciler_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
      await reconciler_task
    await fleet.registry.shutdown()
    logging.info("All instances stopped")


def main(argv):
  """Main entry point."""
  if len(argv) > 1:
    raise app.UsageError("Too many command-line arguments.")

  config = config_from_flags()
  fleet = build_fleet(
      config, echo=echo_to_console if _ECHO_LOGS.value else None
  )
  print(colored("bonk-fleet instance keeper", "green"))
  print(
      f"Control API on http://{config.server.http_host}:"
      f"{config.server.http_port}, desired state from "
      f"{config.reconciler.config_path}"
  )
  asyncio.run(serve(fleet))


def run():
  app.run(main)


if __name__ == "__main__":
  run()
