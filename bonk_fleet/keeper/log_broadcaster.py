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

"""Per-instance bounded log buffers with a single live subscriber."""

import dataclasses
import datetime
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Sequence

from absl import logging
from termcolor import colored

from bonk_fleet.keeper.errors import SubscriberGoneError

_LEVEL_COLORS = {
    "CHAT": "green",
    "EVENT": "blue",
    "ERROR": "red",
}


@dataclasses.dataclass(frozen=True)
class LogEntry:
  timestamp: float
  instance_id: str
  message: str

  def to_dict(self) -> Dict[str, Any]:
    return {
        "timestamp": datetime.datetime.fromtimestamp(
            self.timestamp, tz=datetime.timezone.utc
        ).isoformat(),
        "instanceId": self.instance_id,
        "message": self.message,
    }


class LogSubscriber(Protocol):
  """The live receiving end of an instance's log feed.

  ``replay`` and ``push`` must not block; they raise SubscriberGoneError once
  the subscriber can no longer accept entries.
  """

  def replay(self, entries: Sequence[LogEntry]) -> None:
    ...

  def push(self, entry: LogEntry) -> None:
    ...

  def detach(self) -> None:
    ...


class _Channel:
  """Buffer and subscriber binding of one instance."""

  def __init__(self, capacity: int):
    self.lock = threading.Lock()
    self.buffer: Deque[LogEntry] = deque(maxlen=capacity)
    self.subscriber: Optional[LogSubscriber] = None


def format_console_line(entry: LogEntry, color: bool = True) -> str:
  """Formats an entry for the console, colouring it by its message prefix."""
  stamp = datetime.datetime.fromtimestamp(entry.timestamp).strftime(
      "%Y-%m-%d %H:%M:%S"
  )
  prefix = f"[{stamp}] [{entry.instance_id}]"
  if not color:
    return f"{prefix} {entry.message}"

  level = entry.message.split(":", 1)[0]
  body = entry.message
  if level in _LEVEL_COLORS:
    body = colored(entry.message, _LEVEL_COLORS[level])
  return f"{colored(prefix, 'dark_grey')} {body}"


class LogBroadcaster:
  """Appends log entries per instance and delivers them to one subscriber.

  Each instance has its own lock, so a slow subscriber of one instance never
  holds up logging for another. Appends and attaches for the same instance
  are serialized: an attaching subscriber sees every entry exactly once,
  either in its replay or as a live push.

  Examples:
    >>> broadcaster = LogBroadcaster(capacity=2)
    >>> for message in ("one", "two", "three"):
    ...   _ = broadcaster.append("a", message)
    >>> [e.message for e in broadcaster.entries("a")]
    ['two', 'three']
  """

  def __init__(
      self,
      capacity: int = 1000,
      echo: Optional[Callable[[LogEntry], None]] = None,
      clock: Callable[[], float] = time.time,
  ):
    if capacity <= 0:
      raise ValueError("capacity must be positive")
    self._capacity = capacity
    self._echo = echo
    self._clock = clock
    self._channels: Dict[str, _Channel] = {}
    self._channels_lock = threading.Lock()

  @property
  def capacity(self) -> int:
    return self._capacity

  def _channel(self, instance_id: str) -> _Channel:
    with self._channels_lock:
      channel = self._channels.get(instance_id)
      if channel is None:
        channel = _Channel(self._capacity)
        self._channels[instance_id] = channel
      return channel

  def append(self, instance_id: str, message: str) -> LogEntry:
    """Buffers a new entry and pushes it to the live subscriber, if any."""
    entry = LogEntry(
        timestamp=self._clock(), instance_id=instance_id, message=message
    )
    channel = self._channel(instance_id)
    gone: Optional[LogSubscriber] = None
    with channel.lock:
      channel.buffer.append(entry)
      subscriber = channel.subscriber
      if subscriber is not None:
        try:
          subscriber.push(entry)
        except SubscriberGoneError:
          channel.subscriber = None
          gone = subscriber

    if gone is not None:
      logging.info("Log subscriber for %s went away; detached", instance_id)
      _detach_quietly(gone)
    if self._echo is not None:
      self._echo(entry)
    return entry

  def attach(self, instance_id: str, subscriber: LogSubscriber) -> None:
    """Binds ``subscriber`` as the only live subscriber of an instance.

    The previous subscriber, if any, is detached. The current buffer is
    replayed once, in insertion order, before any live entry is pushed.

    Raises:
      SubscriberGoneError: If the subscriber failed during replay; it is left
        unbound.
    """
    channel = self._channel(instance_id)
    with channel.lock:
      previous = channel.subscriber
      channel.subscriber = subscriber
      try:
        subscriber.replay(list(channel.buffer))
      except SubscriberGoneError:
        channel.subscriber = None
        raise
      finally:
        if previous is not None and previous is not subscriber:
          _detach_quietly(previous)
    logging.info("Log subscriber attached for %s", instance_id)

  def detach(
      self, instance_id: str, subscriber: Optional[LogSubscriber] = None
  ) -> bool:
    """Unbinds the live subscriber.

    With ``subscriber`` given, unbinds only if it is still the bound one, so
    a replaced subscriber closing late cannot detach its successor.
    """
    with self._channels_lock:
      channel = self._channels.get(instance_id)
    if channel is None:
      return False
    with channel.lock:
      current = channel.subscriber
      if current is None or (subscriber is not None and current is not subscriber):
        return False
      channel.subscriber = None
    _detach_quietly(current)
    return True

  def has_subscriber(self, instance_id: str) -> bool:
    with self._channels_lock:
      channel = self._channels.get(instance_id)
    if channel is None:
      return False
    with channel.lock:
      return channel.subscriber is not None

  def entries(self, instance_id: str) -> List[LogEntry]:
    with self._channels_lock:
      channel = self._channels.get(instance_id)
    if channel is None:
      return []
    with channel.lock:
      return list(channel.buffer)

  def remove(self, instance_id: str) -> None:
    """Drops an instance's buffer and detaches its subscriber."""
    with self._channels_lock:
      channel = self._channels.pop(instance_id, None)
    if channel is None:
      return
    with channel.lock:
      subscriber, channel.subscriber = channel.subscriber, None
    if subscriber is not None:
      _detach_quietly(subscriber)


def _detach_quietly(subscriber: LogSubscriber) -> None:
  try:
    subscriber.detach()
  except Exception as e:  # A broken subscriber must not break logging.
    logging.warning("Error detaching log subscriber: %s", e)
