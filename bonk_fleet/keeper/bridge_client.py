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

"""Protocol client that reaches game servers through a WebSocket bridge.

The bridge process speaks the game protocol; this client exchanges small JSON
messages with it:

  ping     -> {"type": "ping", "host", "port"}        <- {"type": "pong", "ok"}
  connect  -> {"type": "connect", "data": {...}}      <- {"type": "accepted"}
  events   <- joined | spawned | text | packet | disconnect | error
  send     -> {"type": "send", "name", "params"}
"""

import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, Mapping, Optional

import websockets
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from bonk_fleet.keeper.errors import ConnectFailedError, NotConnectedError
from bonk_fleet.keeper.protocol_client import (
    ClientEvent,
    ClientEventType,
    ConnectParams,
    EventListener,
)

logger = logging.getLogger(__name__)

# Maximum size of a single bridge message (1 MiB)
MAX_BRIDGE_MESSAGE_SIZE = 1024 * 1024

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_CLOSE_TIMEOUT = 5.0


class BridgeMessage(BaseModel):
  """One JSON message received from the bridge."""

  model_config = ConfigDict(extra="ignore")

  type: str = Field(..., min_length=1, max_length=50)
  ok: Optional[bool] = None
  name: Optional[str] = None
  params: Any = None
  reason: Optional[str] = None
  error: Optional[str] = None
  message: Optional[str] = None


_TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class BridgeHandle:
  """A live bridge connection bound to one game session.

  A reader task turns bridge messages into ClientEvents for the listener.
  When the socket closes on its own, a single CLOSED event is delivered.
  """

  def __init__(
      self,
      websocket: Any,
      listener: EventListener,
      close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
  ):
      self._websocket = websocket
      self._listener = listener
      self._close_timeout = close_timeout
      self._reader: Optional[asyncio.Task] = None
      self._closed = False

  @property
  def closed(self) -> bool:
      return self._closed

  def start(self) -> None:
      self._reader = asyncio.create_task(self._read_loop())

  async def send(self, message_type: str, payload: Mapping[str, Any]) -> None:
      if self._closed:
          raise NotConnectedError("Protocol handle is closed")
      await self._websocket.send(
          json.dumps({"type": "send", "name": message_type, "params": dict(payload)})
      )

  async def close(self) -> None:
      if self._closed:
          return
      self._closed = True

      reader, self._reader = self._reader, None
      if reader is not None and reader is not asyncio.current_task():
          reader.cancel()
          with contextlib.suppress(asyncio.CancelledError):
              await reader

      try:
          await asyncio.wait_for(
              self._websocket.close(), timeout=self._close_timeout
          )
      except asyncio.TimeoutError:
          logger.warning(f"Bridge close timed out after {self._close_timeout}s")
      except Exception as e:
          logger.warning(f"Error closing bridge connection: {e}")

  async def _read_loop(self) -> None:
      try:
          async for raw in self._websocket:
              self._dispatch(raw)
      except ConnectionClosed as e:
          logger.info(f"Bridge connection closed: {e}")
      if not self._closed:
          self._closed = True
          self._emit(ClientEvent(ClientEventType.CLOSED))

  def _dispatch(self, raw: Any) -> None:
      try:
          message = BridgeMessage.model_validate_json(raw)
      except ValidationError as e:
          logger.warning(f"Invalid bridge message: {e}")
          return

      kind = message.type
      if kind == "joined":
          event = ClientEvent(ClientEventType.JOINED)
      elif kind == "spawned":
          event = ClientEvent(ClientEventType.SPAWNED)
      elif kind == "text":
          event = ClientEvent(ClientEventType.TEXT_RECEIVED, payload=message.params)
      elif kind == "packet":
          event = ClientEvent(
              ClientEventType.PACKET_RECEIVED,
              payload={"name": message.name, "params": message.params},
          )
      elif kind == "disconnect":
          event = ClientEvent(ClientEventType.DISCONNECTED, reason=message.reason)
      elif kind == "error":
          event = ClientEvent(
              ClientEventType.ERRORED,
              error=message.error or message.message or "bridge error",
          )
      else:
          logger.debug(f"Ignoring bridge message of type {kind}")
          return
      self._emit(event)

  def _emit(self, event: ClientEvent) -> None:
      try:
          self._listener(event)
      except Exception:
          logger.exception(f"Listener failed for {event.type.value} event")


class BridgeProtocolClient:
  """ProtocolClient implementation backed by the WebSocket bridge."""

  def __init__(
      self,
      url: str,
      connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
      close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
  ):
      self.url = url
      self.connect_timeout = connect_timeout
      self.close_timeout = close_timeout

  async def _open(self, timeout: float) -> Any:
      return await asyncio.wait_for(
          websockets.connect(
              self.url,
              max_size=MAX_BRIDGE_MESSAGE_SIZE,
              close_timeout=self.close_timeout,
          ),
          timeout=timeout,
      )

  async def _close_quietly(self, websocket: Any) -> None:
      try:
          await asyncio.wait_for(websocket.close(), timeout=self.close_timeout)
      except Exception as e:
          logger.debug(f"Error closing bridge connection: {e}")

  async def ping(self, host: str, port: int, timeout: float) -> bool:
      """Asks the bridge to ping a game server."""
      websocket = None
      try:
          websocket = await self._open(timeout)
          await websocket.send(json.dumps({"type": "ping", "host": host, "port": port}))
          raw = await asyncio.wait_for(websocket.recv(), timeout=timeout)
          reply = BridgeMessage.model_validate_json(raw)
      except (*_TRANSPORT_ERRORS, ValidationError) as e:
          logger.debug(f"Ping of {host}:{port} via bridge failed: {e}")
          return False
      finally:
          if websocket is not None:
              await self._close_quietly(websocket)
      return reply.type == "pong" and bool(reply.ok)

  async def connect(
      self, params: ConnectParams, listener: EventListener
  ) -> BridgeHandle:
      """Opens a bridge connection and asks it to join the game server.

      Raises:
          ConnectFailedError: If the bridge is unreachable or refuses.
      """
      try:
          websocket = await self._open(self.connect_timeout)
      except _TRANSPORT_ERRORS as e:
          raise ConnectFailedError(f"Bridge unreachable at {self.url}: {e}") from e

      request: Dict[str, Any] = {
          "type": "connect",
          "data": {
              "host": params.host,
              "port": params.port,
              "username": params.username,
              "offlineMode": params.offline_mode,
              "credentialsDir": params.credentials_dir,
          },
      }

      try:
          await websocket.send(json.dumps(request))
          raw = await asyncio.wait_for(websocket.recv(), timeout=self.connect_timeout)
          reply = BridgeMessage.model_validate_json(raw)
      except (*_TRANSPORT_ERRORS, ValidationError) as e:
          await self._close_quietly(websocket)
          raise ConnectFailedError(f"Bridge handshake failed: {e}") from e
      except asyncio.CancelledError:
          await self._close_quietly(websocket)
          raise

      if reply.type != "accepted":
          await self._close_quietly(websocket)
          raise ConnectFailedError(
              reply.error or reply.reason or f"Bridge refused connect ({reply.type})"
          )

      logger.info(f"Bridge accepted connect to {params.host}:{params.port} as {params.username}")
      handle = BridgeHandle(websocket, listener, close_timeout=self.close_timeout)
      handle.start()
      return handle
