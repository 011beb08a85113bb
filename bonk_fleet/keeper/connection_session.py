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

"""Asynchronous driver for one instance's connection lifecycle.

A ConnectionSession owns at most one protocol handle. All state changes go
through ``session_state.transition`` while the session's guard is held. The
probe, connect, backoff and watchdog tasks never touch state directly; they
post events tagged with the handle generation that was current when they
were spawned, and the runner task drops events whose generation is stale.
"""

import asyncio
import contextlib
import functools
import json
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, NamedTuple, Optional

from absl import logging

from bonk_fleet.keeper.errors import (
    HeartbeatTimeoutError,
    NotConnectedError,
    ProbeFailedError,
)
from bonk_fleet.keeper.lifecycle.config import SessionConfig
from bonk_fleet.keeper.lifecycle.resilience import ReconnectPolicy, probe_with_retry
from bonk_fleet.keeper.protocol_client import (
    ClientEvent,
    ClientEventType,
    ConnectParams,
    ProtocolClient,
    ProtocolHandle,
)
from bonk_fleet.keeper.session_state import (
    Effect,
    EffectKind,
    SessionEvent,
    SessionSnapshot,
    SessionState,
    Trigger,
    transition,
)

_FORMATTING_CODE = re.compile(r"§[0-9a-fk-or]", re.IGNORECASE)

_TRIGGERS = {
    ClientEventType.JOINED: Trigger.JOINED,
    ClientEventType.SPAWNED: Trigger.SPAWNED,
    ClientEventType.TEXT_RECEIVED: Trigger.TEXT_RECEIVED,
    ClientEventType.PACKET_RECEIVED: Trigger.PACKET_RECEIVED,
    ClientEventType.DISCONNECTED: Trigger.DISCONNECTED,
    ClientEventType.CLOSED: Trigger.CLOSED,
    ClientEventType.ERRORED: Trigger.ERRORED,
}

# Inbound events that prove the server is still talking to us.
_LIVENESS_EVENTS = frozenset({
    ClientEventType.JOINED,
    ClientEventType.SPAWNED,
    ClientEventType.TEXT_RECEIVED,
    ClientEventType.PACKET_RECEIVED,
})


class _Posted(NamedTuple):
  generation: int
  event: SessionEvent
  handle: Optional[ProtocolHandle] = None


def strip_formatting(text: str) -> str:
  return _FORMATTING_CODE.sub("", text)


def render_text(payload: Any) -> str:
  """Renders an inbound text payload as a log line.

  Player chat becomes ``CHAT: <source> message``; every other text type is
  rendered as ``<TYPE>: message``. JSON raw-text messages are unwrapped to
  their concatenated text components.
  """
  if not isinstance(payload, Mapping):
    return f"CHAT: {strip_formatting(str(payload))}"

  kind = str(payload.get("type") or "chat")
  message = str(payload.get("message") or "")

  if kind.startswith("json"):
    try:
      rawtext = json.loads(message).get("rawtext") or []
      message = "".join(part.get("text", "") for part in rawtext)
    except (ValueError, AttributeError):
      pass

  message = strip_formatting(message)
  source = payload.get("source_name")
  if kind == "chat" and source:
    return f"CHAT: <{source}> {message}"
  if kind in ("chat", "whisper", "json", "json_whisper"):
    return f"CHAT: {message}"
  return f"{kind.upper()}: {message}"


class ConnectionSession:
  """Keeps one game client connected to one server.

  Attributes:
    instance_id: Owning instance identifier, used in logs.
    params: Target server and identity for every connect attempt.
    online_players: Roster built from ``player_list`` packets, uuid -> name.
    handles_opened: Number of protocol handles created so far.
  """

  def __init__(
      self,
      instance_id: str,
      params: ConnectParams,
      client: ProtocolClient,
      config: Optional[SessionConfig] = None,
      emit: Optional[Callable[[str], None]] = None,
      clock: Callable[[], float] = time.monotonic,
  ):
    self.instance_id = instance_id
    self.params = params
    self._client = client
    self._config = config or SessionConfig()
    self._emit = emit
    self._clock = clock
    self._policy = ReconnectPolicy(
        max_attempts=self._config.max_reconnect_attempts,
        base_delay=self._config.base_reconnect_delay,
    )

    self._snapshot = SessionSnapshot()
    self._guard = asyncio.Lock()
    self._events: "asyncio.Queue[_Posted]" = asyncio.Queue()
    self._generation = 0
    self._handle: Optional[ProtocolHandle] = None
    self._runner: Optional[asyncio.Task] = None
    self._pending: Optional[asyncio.Task] = None
    self._watchdog: Optional[asyncio.Task] = None

    self.heartbeat_deadline: Optional[float] = None
    self.online_players: Dict[str, str] = {}
    self.handles_opened = 0

  # Observers

  @property
  def snapshot(self) -> SessionSnapshot:
    return self._snapshot

  @property
  def state(self) -> SessionState:
    return self._snapshot.state

  @property
  def reconnect_attempts(self) -> int:
    return self._snapshot.reconnect_attempts

  @property
  def is_server_down(self) -> bool:
    return self._snapshot.is_server_down

  @property
  def is_connected(self) -> bool:
    return self._snapshot.state is SessionState.CONNECTED

  @property
  def is_connecting(self) -> bool:
    return self._snapshot.state in (
        SessionState.PROBING, SessionState.CONNECTING
    )

  @property
  def is_running(self) -> bool:
    return self._snapshot.state is not SessionState.IDLE

  # Commands

  async def start(self) -> bool:
    """Starts connecting. Returns False if the session was already active."""
    async with self._guard:
      changed = await self._apply(SessionEvent(Trigger.START))
      if changed and (self._runner is None or self._runner.done()):
        self._runner = asyncio.create_task(
            self._run(self._events), name=f"session-{self.instance_id}"
        )
    return changed

  async def stop(self) -> None:
    """Stops the session and waits for its tasks to finish. Idempotent."""
    async with self._guard:
      await self._apply(SessionEvent(Trigger.STOP))
      runner, self._runner = self._runner, None
      stale, self._events = self._events, asyncio.Queue()

    if runner is not None and not runner.done():
      runner.cancel()
      with contextlib.suppress(asyncio.CancelledError):
        await runner

    while not stale.empty():
      posted = stale.get_nowait()
      if posted.handle is not None:
        await self._close_handle(posted.handle)

  async def send_message(self, text: str) -> None:
    """Sends a chat message on the current handle.

    Raises:
      NotConnectedError: If the session has not joined a server.
    """
    handle = self._handle
    if not self.is_connected or handle is None:
      raise NotConnectedError(
          "Bot is not connected", instance_id=self.instance_id
      )
    await handle.send(
        "text",
        {
            "type": "chat",
            "needs_translation": False,
            "source_name": self.params.username,
            "message": text,
            "filtered_message": "",
            "xuid": "",
            "platform_chat_id": "",
        },
    )
    logging.debug("[%s] Sent chat message: %s", self.instance_id, text)

  # Runner

  async def _run(self, events: "asyncio.Queue[_Posted]") -> None:
    while True:
      posted = await events.get()
      async with self._guard:
        if posted.generation != self._generation:
          logging.debug(
              "[%s] Dropping stale %s event",
              self.instance_id,
              posted.event.trigger.value,
          )
          if posted.handle is not None:
            await self._close_handle(posted.handle)
          continue
        if posted.handle is not None:
          self._handle = posted.handle
        try:
          await self._apply(posted.event)
        except Exception:  # Keep the runner alive for later events.
          logging.exception(
              "[%s] Failed to apply %s",
              self.instance_id,
              posted.event.trigger.value,
          )

  def _post(
      self,
      generation: int,
      event: SessionEvent,
      handle: Optional[ProtocolHandle] = None,
  ) -> None:
    self._events.put_nowait(_Posted(generation, event, handle))

  async def _apply(self, event: SessionEvent) -> bool:
    result = transition(self._snapshot, event, self._policy)
    previous = self._snapshot.state
    self._snapshot = result.snapshot
    if result.snapshot.state is not previous:
      logging.info(
          "[%s] %s -> %s on %s",
          self.instance_id,
          previous.value,
          result.snapshot.state.value,
          event.trigger.value,
      )
    for effect in result.effects:
      await self._execute(effect)
    return not result.is_noop or result.snapshot.state is not previous

  async def _execute(self, effect: Effect) -> None:
    kind = effect.kind
    if kind is EffectKind.LOG:
      self._log(effect.message or "")
    elif kind is EffectKind.PROBE:
      self._replace_pending(self._probe(self._generation))
    elif kind is EffectKind.OPEN_HANDLE:
      await self._discard_handle()
      self._replace_pending(self._open_handle(self._generation))
    elif kind is EffectKind.CLOSE_HANDLE:
      await self._discard_handle()
    elif kind is EffectKind.ARM_JOIN_WATCHDOG:
      self._arm_watchdog(self._config.join_timeout)
    elif kind is EffectKind.ARM_HEARTBEAT_WATCHDOG:
      self._arm_watchdog(self._config.heartbeat_timeout)
    elif kind is EffectKind.DISARM_WATCHDOG:
      _cancel(self._watchdog)
      self._watchdog = None
      self.heartbeat_deadline = None
    elif kind is EffectKind.SCHEDULE_RETRY:
      self._replace_pending(
          self._backoff(self._generation, effect.delay or 0.0)
      )
    elif kind is EffectKind.CANCEL_PENDING:
      _cancel(self._pending)
      self._pending = None
      self._generation += 1

  def _replace_pending(self, coro: Awaitable[None]) -> None:
    _cancel(self._pending)
    self._pending = asyncio.create_task(coro)

  def _log(self, message: str) -> None:
    logging.info("[%s] %s", self.instance_id, message)
    if self._emit is not None:
      self._emit(message)

  # Handles

  async def _discard_handle(self) -> None:
    self._generation += 1
    handle, self._handle = self._handle, None
    self.online_players.clear()
    if handle is not None:
      await self._close_handle(handle)

  async def _close_handle(self, handle: ProtocolHandle) -> None:
    try:
      await asyncio.wait_for(handle.close(), timeout=self._config.close_timeout)
    except asyncio.TimeoutError:
      logging.warning(
          "[%s] Timed out closing protocol handle", self.instance_id
      )
    except Exception as e:  # Closing a broken handle may fail; it is gone.
      logging.warning(
          "[%s] Error closing protocol handle: %s", self.instance_id, e
      )

  async def _open_handle(self, generation: int) -> None:
    listener = functools.partial(self._on_client_event, generation)
    try:
      handle = await self._client.connect(self.params, listener)
    except asyncio.CancelledError:
      raise
    except Exception as e:  # Every connect failure feeds the state machine.
      self._post(
          generation,
          SessionEvent(
              Trigger.CONNECT_FAILED, detail=str(e) or type(e).__name__
          ),
      )
      return
    self.handles_opened += 1
    self._post(generation, SessionEvent(Trigger.HANDLE_OPENED), handle=handle)

  def _on_client_event(self, generation: int, event: ClientEvent) -> None:
    if generation != self._generation:
      return
    if event.type in _LIVENESS_EVENTS and self.is_connected:
      self.heartbeat_deadline = self._clock() + self._config.heartbeat_timeout

    detail: Optional[str] = None
    if event.type is ClientEventType.TEXT_RECEIVED:
      detail = render_text(event.payload)
    elif event.type is ClientEventType.PACKET_RECEIVED:
      detail = self._describe_packet(event.payload)
    elif event.type is ClientEventType.DISCONNECTED:
      detail = event.reason
    elif event.type is ClientEventType.ERRORED:
      detail = event.error

    self._post(generation, SessionEvent(_TRIGGERS[event.type], detail=detail))

  def _describe_packet(self, payload: Any) -> Optional[str]:
    """Log line for the few packets operators care about, if any."""
    if not isinstance(payload, Mapping):
      return None
    params = payload.get("params") or {}
    if payload.get("name") == "start_game":
      return _describe_start_game(self.params.username, params)
    if payload.get("name") == "player_list":
      return self._track_players(params)
    return None

  def _track_players(self, params: Mapping[str, Any]) -> Optional[str]:
    """Updates the roster from player_list records."""
    records = params.get("records") or {}
    kind = records.get("type")
    entries: List[Mapping[str, Any]] = records.get("records") or []

    if kind == "add":
      for entry in entries:
        self.online_players[entry.get("uuid")] = entry.get("username", "")
    elif kind == "remove":
      for entry in entries:
        self.online_players.pop(entry.get("uuid"), None)
    else:
      return None

    names = ", ".join(sorted(self.online_players.values()))
    return (
        f"EVENT: Total players online: {len(self.online_players)} | "
        f"Players: {names}"
    )

  # Timers

  async def _probe(self, generation: int) -> None:
    try:
      await probe_with_retry(
          self._client.ping,
          self.params.host,
          self.params.port,
          attempts=self._config.ping_attempts,
          timeout=self._config.ping_timeout,
          retry_delay=self._config.ping_retry_delay,
          on_failure=lambda number, reason: self._log(
              f"ERROR: Ping attempt {number} failed: {reason}"
          ),
      )
    except ProbeFailedError as e:
      self._post(generation, SessionEvent(Trigger.PROBE_FAILED, detail=str(e)))
    else:
      self._log("EVENT: Server responded to ping")
      self._post(generation, SessionEvent(Trigger.PROBE_SUCCEEDED))

  async def _backoff(self, generation: int, delay: float) -> None:
    await asyncio.sleep(delay)
    self._post(generation, SessionEvent(Trigger.BACKOFF_ELAPSED))

  def _arm_watchdog(self, timeout: float) -> None:
    _cancel(self._watchdog)
    self.heartbeat_deadline = self._clock() + timeout
    self._watchdog = asyncio.create_task(
        self._watch(self._generation, timeout)
    )

  async def _watch(self, generation: int, timeout: float) -> None:
    interval = self._config.heartbeat_interval
    while True:
      deadline = self.heartbeat_deadline
      if deadline is None:
        await asyncio.sleep(interval)
        continue
      remaining = deadline - self._clock()
      if remaining <= 0:
        error = HeartbeatTimeoutError(
            f"No liveness signal for {timeout:g}s"
        )
        self._post(
            generation,
            SessionEvent(Trigger.HEARTBEAT_LAPSED, detail=str(error)),
        )
        return
      await asyncio.sleep(min(interval, remaining))


def _describe_start_game(
    username: str, params: Mapping[str, Any]
) -> Optional[str]:
  position = params.get("player_position")
  if not isinstance(position, Mapping):
    return None
  try:
    x, y, z = (float(position[axis]) for axis in ("x", "y", "z"))
  except (KeyError, TypeError, ValueError):
    return None
  return (
      f"EVENT: {username}'s position - X: {x:.2f}, Y: {y:.2f}, Z: {z:.2f} "
      f"({params.get('dimension')})"
  )


def _cancel(task: Optional[asyncio.Task]) -> None:
  if task is not None and not task.done():
    task.cancel()
