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

"""Contract between connection sessions and the game protocol client.

The protocol client performs the wire-level handshake, encryption and packet
coding. Sessions only see the capability described here: ping a server, open
a handle that reports events, send on it, close it.
"""

import dataclasses
import enum
from typing import Any, Callable, Mapping, Optional, Protocol, runtime_checkable


@dataclasses.dataclass(frozen=True, kw_only=True)
class ConnectParams:
  host: str
  port: int
  username: str
  offline_mode: bool = False
  credentials_dir: Optional[str] = None


class ClientEventType(enum.Enum):
  """Notifications a protocol handle can raise."""

  JOINED = "joined"
  SPAWNED = "spawned"
  TEXT_RECEIVED = "text_received"
  PACKET_RECEIVED = "packet_received"
  DISCONNECTED = "disconnected"
  CLOSED = "closed"
  ERRORED = "errored"


@dataclasses.dataclass(frozen=True)
class ClientEvent:
  """A single notification from a protocol handle.

  Attributes:
    type: What happened.
    payload: Decoded packet or text payload for TEXT/PACKET events.
    reason: Disconnect reason text for DISCONNECTED.
    error: Error description for ERRORED.
  """

  type: ClientEventType
  payload: Any = None
  reason: Optional[str] = None
  error: Optional[str] = None


EventListener = Callable[[ClientEvent], None]


@runtime_checkable
class ProtocolHandle(Protocol):
  """A live connection produced by ``ProtocolClient.connect``."""

  async def send(self, message_type: str, payload: Mapping[str, Any]) -> None:
    """Queues one outbound packet."""
    ...

  async def close(self) -> None:
    """Closes the connection; pending operations fail with an error."""
    ...


@runtime_checkable
class ProtocolClient(Protocol):
  """Capability that reaches game servers."""

  async def ping(self, host: str, port: int, timeout: float) -> bool:
    """Returns True if the server answered a status ping in time."""
    ...

  async def connect(
      self, params: ConnectParams, listener: EventListener
  ) -> ProtocolHandle:
    """Opens a fresh handle.

    ``listener`` is installed before any event can be delivered, so no event
    of the new handle is ever missed.

    Raises:
      ConnectFailedError: If the handle could not be created or authenticated.
    """
    ...
