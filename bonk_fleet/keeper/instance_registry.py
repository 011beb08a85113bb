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

"""Registry of managed instances and their connection sessions.

The registry is constructed once per process and passed to the control API
and the reconciler. Its map lock is only held for lookups and inserts; every
instance has its own lock for start, stop and send, so a slow stop of one
instance never delays another.
"""

import asyncio
import dataclasses
from typing import Any, Callable, Dict, List, Optional

from absl import logging

from bonk_fleet.keeper.connection_session import ConnectionSession
from bonk_fleet.keeper.desired_state import InstanceConfig
from bonk_fleet.keeper.errors import (
    AlreadyRunningError,
    NotConnectedError,
    NotFoundError,
)
from bonk_fleet.keeper.lifecycle.config import SessionConfig
from bonk_fleet.keeper.log_broadcaster import LogBroadcaster
from bonk_fleet.keeper.protocol_client import ConnectParams, ProtocolClient
from bonk_fleet.keeper.session_state import SessionState

SessionFactory = Callable[..., ConnectionSession]


@dataclasses.dataclass
class Instance:
  """One managed connection target.

  ``session`` is None whenever the instance is stopped or disabled; the log
  buffer and subscriber binding live in the broadcaster and outlive it.
  """

  id: str
  config: InstanceConfig
  disabled: bool = False
  session: Optional[ConnectionSession] = None
  lock: asyncio.Lock = dataclasses.field(
      default_factory=asyncio.Lock, repr=False, compare=False
  )

  @property
  def is_running(self) -> bool:
    return self.session is not None and self.session.is_running


@dataclasses.dataclass(frozen=True)
class InstanceStatus:
  instance_id: str
  connection_state: SessionState
  is_connected: bool
  is_connecting: bool
  is_server_down: bool
  reconnect_attempts: int
  ws_subscriber_attached: bool

  def to_dict(self) -> Dict[str, Any]:
    return {
        "instanceId": self.instance_id,
        "connectionState": self.connection_state.value,
        "isConnected": self.is_connected,
        "isConnecting": self.is_connecting,
        "isServerDown": self.is_server_down,
        "reconnectAttempts": self.reconnect_attempts,
        "wsSubscriberAttached": self.ws_subscriber_attached,
    }


class InstanceRegistry:
  """Owns every Instance and its at most one live ConnectionSession."""

  def __init__(
      self,
      client: ProtocolClient,
      broadcaster: LogBroadcaster,
      session_config: Optional[SessionConfig] = None,
      credentials_dir: Optional[str] = None,
      session_factory: Optional[SessionFactory] = None,
  ):
    self._client = client
    self._broadcaster = broadcaster
    self._session_config = session_config or SessionConfig()
    self._credentials_dir = credentials_dir
    self._session_factory = session_factory or ConnectionSession
    self._instances: Dict[str, Instance] = {}
    self._map_lock = asyncio.Lock()

  @property
  def broadcaster(self) -> LogBroadcaster:
    return self._broadcaster

  async def _lookup(self, instance_id: str) -> Optional[Instance]:
    async with self._map_lock:
      return self._instances.get(instance_id)

  async def _require(self, instance_id: str) -> Instance:
    instance = await self._lookup(instance_id)
    if instance is None:
      raise NotFoundError("Bot not found", instance_id=instance_id)
    return instance

  async def _get_or_create(
      self, instance_id: str, config: InstanceConfig
  ) -> Instance:
    async with self._map_lock:
      instance = self._instances.get(instance_id)
      if instance is None:
        instance = Instance(id=instance_id, config=config)
        self._instances[instance_id] = instance
      return instance

  def _new_session(self, instance: Instance) -> ConnectionSession:
    params: ConnectParams = instance.config.to_connect_params(
        self._credentials_dir
    )
    return self._session_factory(
        instance.id,
        params,
        self._client,
        config=self._session_config,
        emit=lambda message: self._broadcaster.append(instance.id, message),
    )

  async def start(
      self, instance_id: str, config: InstanceConfig
  ) -> InstanceStatus:
    """Starts a session for an instance, creating the instance if needed.

    Raises:
      AlreadyRunningError: If the instance already has an active session.
    """
    instance = await self._get_or_create(instance_id, config)
    async with instance.lock:
      if instance.is_running:
        raise AlreadyRunningError(
            "Bot is already running", instance_id=instance_id
        )
      instance.config = config
      instance.disabled = False
      instance.session = self._new_session(instance)
      self._broadcaster.append(
          instance_id,
          f"EVENT: Starting connection to {config.host}:{config.port} "
          f"as {config.username}",
      )
      await instance.session.start()
    logging.info("Started instance %s", instance_id)
    return self._status_of(instance)

  async def stop(self, instance_id: str) -> InstanceStatus:
    """Stops an instance's session; its logs and subscriber stay intact.

    Raises:
      NotFoundError: If the instance was never started or recorded.
    """
    instance = await self._require(instance_id)
    async with instance.lock:
      session, instance.session = instance.session, None
      if session is not None:
        await session.stop()
        logging.info("Stopped instance %s", instance_id)
    return self._status_of(instance)

  async def status(self, instance_id: str) -> InstanceStatus:
    instance = await self._require(instance_id)
    return self._status_of(instance)

  async def statuses(self) -> List[InstanceStatus]:
    async with self._map_lock:
      instances = list(self._instances.values())
    return [self._status_of(instance) for instance in instances]

  async def send_message(self, instance_id: str, text: str) -> None:
    """Sends chat text through an instance's connected session.

    Raises:
      NotConnectedError: If the instance has no connected session.
    """
    instance = await self._lookup(instance_id)
    if instance is None:
      raise NotConnectedError("Bot is not connected", instance_id=instance_id)
    async with instance.lock:
      session = instance.session
      if session is None or not session.is_connected:
        raise NotConnectedError(
            "Bot is not connected", instance_id=instance_id
        )
      await session.send_message(text)

  async def record_config(
      self, instance_id: str, config: InstanceConfig, disabled: bool = False
  ) -> Instance:
    """Records a config for the next cold start without touching a session."""
    instance = await self._get_or_create(instance_id, config)
    async with instance.lock:
      if instance.config != config:
        logging.info(
            "Recorded new config for %s; applies on next start", instance_id
        )
      instance.config = config
      instance.disabled = disabled
    return instance

  async def remove(self, instance_id: str) -> None:
    """Stops an instance and forgets it, including its log buffer."""
    instance = await self._require(instance_id)
    async with instance.lock:
      session, instance.session = instance.session, None
      if session is not None:
        await session.stop()
    async with self._map_lock:
      self._instances.pop(instance_id, None)
    self._broadcaster.remove(instance_id)

  async def get(self, instance_id: str) -> Optional[Instance]:
    return await self._lookup(instance_id)

  async def instance_ids(self) -> List[str]:
    async with self._map_lock:
      return sorted(self._instances)

  async def running_ids(self) -> List[str]:
    async with self._map_lock:
      return sorted(
          instance_id
          for instance_id, instance in self._instances.items()
          if instance.session is not None
      )

  async def shutdown(self) -> None:
    """Stops every session."""
    for instance_id in await self.running_ids():
      try:
        await self.stop(instance_id)
      except NotFoundError:
        continue

  def _status_of(self, instance: Instance) -> InstanceStatus:
    session = instance.session
    attached = self._broadcaster.has_subscriber(instance.id)
    if session is None:
      return InstanceStatus(
          instance_id=instance.id,
          connection_state=SessionState.IDLE,
          is_connected=False,
          is_connecting=False,
          is_server_down=False,
          reconnect_attempts=0,
          ws_subscriber_attached=attached,
      )
    snapshot = session.snapshot
    return InstanceStatus(
        instance_id=instance.id,
        connection_state=snapshot.state,
        is_connected=session.is_connected,
        is_connecting=session.is_connecting,
        is_server_down=snapshot.is_server_down,
        reconnect_attempts=snapshot.reconnect_attempts,
        ws_subscriber_attached=attached,
    )
