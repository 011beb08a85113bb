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

"""Pure transition logic for a connection session.

``transition(snapshot, event, policy)`` maps the current session snapshot and
one event to the next snapshot plus the effects the driver must carry out.
Nothing in this module touches the network, timers or tasks, so every rule of
the lifecycle can be exercised directly:

    >>> policy = ReconnectPolicy(max_attempts=10, base_delay=5.0)
    >>> t = transition(SessionSnapshot(), SessionEvent(Trigger.START), policy)
    >>> t.snapshot.state
    <SessionState.PROBING: 'probing'>
"""

import dataclasses
import enum
from typing import Optional, Tuple

from bonk_fleet.keeper.lifecycle.resilience import ReconnectPolicy

# Disconnect reasons containing this marker come from the server briefly
# reporting a stale duplicate of our own session; they never end a session.
DUPLICATE_SESSION_MARKER = "serverIdConflict"


class SessionState(enum.Enum):
  """Connection lifecycle states."""

  IDLE = "idle"
  PROBING = "probing"
  CONNECTING = "connecting"
  CONNECTED = "connected"
  RECONNECTING = "reconnecting"


# States in which start() is a no-op.
ACTIVE_STATES = frozenset({
    SessionState.PROBING,
    SessionState.CONNECTING,
    SessionState.CONNECTED,
    SessionState.RECONNECTING,
})

# States in which the current handle may report events.
_HANDLE_STATES = frozenset({SessionState.CONNECTING, SessionState.CONNECTED})


class Trigger(enum.Enum):
  """Inputs to the session state machine."""

  START = "start"
  STOP = "stop"
  PROBE_SUCCEEDED = "probe_succeeded"
  PROBE_FAILED = "probe_failed"
  HANDLE_OPENED = "handle_opened"
  CONNECT_FAILED = "connect_failed"
  JOINED = "joined"
  SPAWNED = "spawned"
  TEXT_RECEIVED = "text_received"
  PACKET_RECEIVED = "packet_received"
  DISCONNECTED = "disconnected"
  CLOSED = "closed"
  ERRORED = "errored"
  HEARTBEAT_LAPSED = "heartbeat_lapsed"
  BACKOFF_ELAPSED = "backoff_elapsed"


@dataclasses.dataclass(frozen=True)
class SessionEvent:
  trigger: Trigger
  # Reason, error text or rendered log line, depending on the trigger.
  detail: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class SessionSnapshot:
  state: SessionState = SessionState.IDLE
  reconnect_attempts: int = 0
  is_server_down: bool = False


class EffectKind(enum.Enum):
  """Side effects requested by a transition."""

  LOG = "log"
  PROBE = "probe"
  OPEN_HANDLE = "open_handle"
  CLOSE_HANDLE = "close_handle"
  ARM_JOIN_WATCHDOG = "arm_join_watchdog"
  ARM_HEARTBEAT_WATCHDOG = "arm_heartbeat_watchdog"
  DISARM_WATCHDOG = "disarm_watchdog"
  SCHEDULE_RETRY = "schedule_retry"
  CANCEL_PENDING = "cancel_pending"


@dataclasses.dataclass(frozen=True)
class Effect:
  kind: EffectKind
  delay: Optional[float] = None
  message: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class Transition:
  snapshot: SessionSnapshot
  effects: Tuple[Effect, ...] = ()

  @property
  def is_noop(self) -> bool:
    return not self.effects

  def effect_kinds(self) -> Tuple[EffectKind, ...]:
    return tuple(effect.kind for effect in self.effects)


def _log(message: str) -> Effect:
  return Effect(EffectKind.LOG, message=message)


def is_duplicate_session_reason(reason: Optional[str]) -> bool:
  """True if a disconnect reason reports a duplicate-session conflict."""
  return bool(reason) and DUPLICATE_SESSION_MARKER in reason


def _unchanged(snapshot: SessionSnapshot, *effects: Effect) -> Transition:
  return Transition(snapshot=snapshot, effects=tuple(effects))


def _begin_reconnect(
    snapshot: SessionSnapshot,
    policy: ReconnectPolicy,
    cause: str,
    *,
    server_down: bool,
) -> Transition:
  """Moves to RECONNECTING and schedules the next probe."""
  is_server_down = snapshot.is_server_down or server_down
  backoff = policy.next_backoff(snapshot.reconnect_attempts, is_server_down)

  if backoff.cooldown:
    plan = (
        "EVENT: Max reconnection attempts reached. Resetting counter and "
        f"continuing in {backoff.delay:.1f}s..."
    )
  else:
    plan = (
        f"EVENT: Attempting to reconnect ({backoff.attempts}/"
        f"{policy.max_attempts}) in {backoff.delay:.1f}s..."
    )

  return Transition(
      snapshot=SessionSnapshot(
          state=SessionState.RECONNECTING,
          reconnect_attempts=backoff.attempts,
          is_server_down=is_server_down,
      ),
      effects=(
          _log(cause),
          Effect(EffectKind.DISARM_WATCHDOG),
          Effect(EffectKind.CLOSE_HANDLE),
          Effect(EffectKind.SCHEDULE_RETRY, delay=backoff.delay),
          _log(plan),
      ),
  )


def transition(
    snapshot: SessionSnapshot,
    event: SessionEvent,
    policy: ReconnectPolicy,
) -> Transition:
  """Computes the next session snapshot and the effects to run.

  Events that make no sense in the current state (for example a late
  ``closed`` from a handle that was already discarded) yield a no-op
  transition.

  Args:
    snapshot: Current session snapshot.
    event: The event to apply.
    policy: Reconnect pacing.

  Returns:
    The resulting Transition.
  """
  state = snapshot.state
  trigger = event.trigger

  if trigger is Trigger.STOP:
    if state is SessionState.IDLE:
      return _unchanged(SessionSnapshot())
    return Transition(
        snapshot=SessionSnapshot(),
        effects=(
            Effect(EffectKind.CANCEL_PENDING),
            Effect(EffectKind.DISARM_WATCHDOG),
            Effect(EffectKind.CLOSE_HANDLE),
            _log("EVENT: Bot has been stopped."),
        ),
    )

  if trigger is Trigger.START:
    if state in ACTIVE_STATES:
      return _unchanged(snapshot)
    return Transition(
        snapshot=dataclasses.replace(snapshot, state=SessionState.PROBING),
        effects=(
            _log("EVENT: Continuing to connect to server..."),
            Effect(EffectKind.PROBE),
        ),
    )

  if trigger is Trigger.BACKOFF_ELAPSED:
    if state is not SessionState.RECONNECTING:
      return _unchanged(snapshot)
    if snapshot.reconnect_attempts:
      message = (
          "EVENT: Retrying connection (attempt "
          f"{snapshot.reconnect_attempts}/{policy.max_attempts})..."
      )
    else:
      message = "EVENT: Cooldown finished, retrying connection..."
    return Transition(
        snapshot=dataclasses.replace(snapshot, state=SessionState.PROBING),
        effects=(_log(message), Effect(EffectKind.PROBE)),
    )

  if state is SessionState.PROBING:
    if trigger is Trigger.PROBE_SUCCEEDED:
      return Transition(
          snapshot=dataclasses.replace(snapshot, state=SessionState.CONNECTING),
          effects=(Effect(EffectKind.OPEN_HANDLE),),
      )
    if trigger is Trigger.PROBE_FAILED:
      return _begin_reconnect(
          snapshot,
          policy,
          f"ERROR: Connection error: {event.detail or 'All ping attempts failed'}",
          server_down=True,
      )
    return _unchanged(snapshot)

  if state not in _HANDLE_STATES:
    return _unchanged(snapshot)

  # CONNECTING or CONNECTED from here on.
  if trigger is Trigger.HANDLE_OPENED:
    if state is not SessionState.CONNECTING:
      return _unchanged(snapshot)
    return Transition(
        snapshot=dataclasses.replace(snapshot, is_server_down=False),
        effects=(
            _log("EVENT: Setting up event handlers..."),
            Effect(EffectKind.ARM_JOIN_WATCHDOG),
        ),
    )

  if trigger is Trigger.CONNECT_FAILED:
    if state is not SessionState.CONNECTING:
      return _unchanged(snapshot)
    return _begin_reconnect(
        snapshot,
        policy,
        f"ERROR: Connection error: {event.detail or 'connect failed'}",
        server_down=True,
    )

  if trigger is Trigger.JOINED:
    if state is SessionState.CONNECTED:
      return _unchanged(snapshot)
    return Transition(
        snapshot=SessionSnapshot(state=SessionState.CONNECTED),
        effects=(
            _log(
                "EVENT: Joined the server! "
                f"(after {snapshot.reconnect_attempts} reconnect attempts)"
            ),
            Effect(EffectKind.ARM_HEARTBEAT_WATCHDOG),
        ),
    )

  if trigger is Trigger.SPAWNED:
    return _unchanged(
        dataclasses.replace(snapshot, reconnect_attempts=0),
        _log("EVENT: Spawned in the world!"),
    )

  if trigger in (Trigger.TEXT_RECEIVED, Trigger.PACKET_RECEIVED):
    if not event.detail:
      return _unchanged(snapshot)
    return _unchanged(snapshot, _log(event.detail))

  if trigger is Trigger.DISCONNECTED:
    if is_duplicate_session_reason(event.detail):
      return _unchanged(
          snapshot,
          _log(f"EVENT: Ignoring duplicate-session disconnect: {event.detail}"),
      )
    return _begin_reconnect(
        snapshot,
        policy,
        f"EVENT: Disconnected: {event.detail or 'no reason given'}",
        server_down=False,
    )

  if trigger is Trigger.CLOSED:
    return _begin_reconnect(
        snapshot, policy, "EVENT: Connection closed", server_down=False
    )

  if trigger is Trigger.ERRORED:
    return _begin_reconnect(
        snapshot,
        policy,
        f"ERROR: {event.detail or 'protocol client error'}",
        server_down=True,
    )

  if trigger is Trigger.HEARTBEAT_LAPSED:
    if state is SessionState.CONNECTING:
      cause = "ERROR: Connection error: timed out waiting to join"
    else:
      cause = "ERROR: Server heartbeat failed, initiating reconnect..."
    if event.detail:
      cause = f"{cause} ({event.detail})"
    return _begin_reconnect(snapshot, policy, cause, server_down=True)

  return _unchanged(snapshot)
