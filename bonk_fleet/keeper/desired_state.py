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

"""Desired-state models and the stores that provide them.

The desired state maps instance ids to connection targets, for example::

    {
      "instances": {
        "lobby": {"host": "play.example.net", "port": 19132,
                  "username": "KeeperBot", "offlineMode": true},
        "arena": {"host": "10.0.0.7", "port": 19133,
                  "username": "ArenaBot", "disabled": true}
      }
    }
"""

import asyncio
import json
import os
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from absl import logging
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from bonk_fleet.keeper.errors import DesiredStateError
from bonk_fleet.keeper.protocol_client import ConnectParams

DesiredState = Dict[str, "DesiredInstance"]


class InstanceConfig(BaseModel):
  """Connection target and identity of one instance."""

  model_config = ConfigDict(populate_by_name=True, frozen=True)

  host: str = Field(..., min_length=1, max_length=255)
  port: int = Field(19132, ge=1, le=65535)
  username: str = Field(..., min_length=1, max_length=64)
  offline_mode: bool = Field(False, alias="offlineMode")

  @field_validator("host", "username")
  @classmethod
  def _strip(cls, value: str) -> str:
    value = value.strip()
    if not value:
      raise ValueError("must not be blank")
    return value

  def to_connect_params(self, credentials_dir: Optional[str] = None) -> ConnectParams:
    return ConnectParams(
        host=self.host,
        port=self.port,
        username=self.username,
        offline_mode=self.offline_mode,
        credentials_dir=credentials_dir,
    )


class DesiredInstance(InstanceConfig):
  """An instance entry in the desired state."""

  disabled: bool = False

  def connection(self) -> InstanceConfig:
    return InstanceConfig(
        host=self.host,
        port=self.port,
        username=self.username,
        offline_mode=self.offline_mode,
    )


def parse_desired_state(data: Any) -> DesiredState:
  """Validates raw desired-state data.

  Accepts ``{"instances": {id: {...}}}`` or a bare ``{id: {...}}`` mapping.

  Raises:
    DesiredStateError: If the data does not describe valid instances.
  """
  if isinstance(data, Mapping) and "instances" in data:
    data = data["instances"]
  if data is None:
    return {}
  if not isinstance(data, Mapping):
    raise DesiredStateError("Desired state must be a mapping of instance ids")

  instances: DesiredState = {}
  for instance_id, entry in data.items():
    try:
      instances[str(instance_id)] = DesiredInstance.model_validate(entry)
    except ValidationError as e:
      raise DesiredStateError(
          f"Invalid desired state entry: {e}", instance_id=str(instance_id)
      ) from e
  return instances


class DesiredStateStore(Protocol):
  """Read access to the desired state plus change notification."""

  def load(self) -> DesiredState:
    """Returns the current desired state.

    Raises:
      DesiredStateError: If the source cannot be read or validated.
    """
    ...

  async def wait_for_change(self) -> None:
    """Returns once the desired state may have changed."""
    ...


class InMemoryDesiredStateStore:
  """Desired state held in memory; ``set`` notifies waiters."""

  def __init__(self, instances: Optional[Mapping[str, Any]] = None):
    self._instances: DesiredState = parse_desired_state(instances or {})
    self._changed = asyncio.Event()

  def load(self) -> DesiredState:
    return dict(self._instances)

  def set(self, instances: Mapping[str, Any]) -> None:
    self._instances = parse_desired_state(instances)
    self._changed.set()

  def update(self, instance_id: str, **changes: Any) -> None:
    current = self._instances[instance_id]
    self._instances = dict(self._instances)
    self._instances[instance_id] = current.model_copy(update=changes)
    self._changed.set()

  async def wait_for_change(self) -> None:
    await self._changed.wait()
    self._changed.clear()


class JsonFileDesiredStateStore:
  """Desired state read from a JSON file, watched by polling its mtime."""

  def __init__(self, path: str, poll_interval: float = 2.0):
    self.path = path
    self._poll_interval = poll_interval
    self._signature: Optional[Tuple[int, int]] = None
    self._signature = self._stat()

  def _stat(self) -> Optional[Tuple[int, int]]:
    try:
      stat = os.stat(self.path)
    except FileNotFoundError:
      return None
    except OSError as e:
      logging.warning("Cannot stat desired state file %s: %s", self.path, e)
      return self._signature
    return (stat.st_mtime_ns, stat.st_size)

  def load(self) -> DesiredState:
    try:
      with open(self.path, "r", encoding="utf-8") as f:
        data = json.load(f)
    except FileNotFoundError:
      logging.warning("Desired state file %s not found; using empty state",
                      self.path)
      return {}
    except (OSError, ValueError) as e:
      raise DesiredStateError(
          f"Failed to read desired state from {self.path}: {e}"
      ) from e
    return parse_desired_state(data)

  async def wait_for_change(self) -> None:
    while True:
      await asyncio.sleep(self._poll_interval)
      signature = self._stat()
      if signature != self._signature:
        self._signature = signature
        logging.info("Desired state file %s changed", self.path)
        return
