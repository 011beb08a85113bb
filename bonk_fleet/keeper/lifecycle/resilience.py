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

"""Resilience patterns for keeping instance connections alive.

This module provides the reconnect backoff policy used by the session state
machine and the retried server probe that precedes every connect attempt.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import tenacity
from absl import logging

from bonk_fleet.keeper.errors import ProbeFailedError

# Multiplier applied to the base delay while the server looks down, and for
# the cooldown that follows an exhausted attempt budget.
SERVER_DOWN_MULTIPLIER = 2
COOLDOWN_MULTIPLIER = 2


@dataclass(frozen=True)
class Backoff:
  """Outcome of one reconnect scheduling decision.

  Attributes:
      attempts: Reconnect attempt counter after this decision
      delay: Seconds to wait before probing again
      cooldown: True when the attempt budget was exhausted and reset
  """
  attempts: int
  delay: float
  cooldown: bool = False


@dataclass(frozen=True)
class ReconnectPolicy:
  """Reconnect pacing for a single session.

  Attributes:
      max_attempts: Attempts allowed before an extended cooldown
      base_delay: Delay in seconds between ordinary reconnect attempts
  """
  max_attempts: int = 10
  base_delay: float = 30.0

  def __post_init__(self):
    """Validate configuration after initialization."""
    if self.max_attempts < 1:
      raise ValueError("max_attempts must be at least 1")
    if self.base_delay < 0:
      raise ValueError("base_delay cannot be negative")

  def next_backoff(self, attempts: int, is_server_down: bool) -> Backoff:
    """Computes the next reconnect delay.

    The counter never exceeds ``max_attempts``: the attempt that would exceed
    it resets the counter to zero and waits an extended cooldown instead. The
    policy never gives up.

    Args:
        attempts: Current reconnect attempt counter
        is_server_down: Whether the last failure looked like a dead server

    Returns:
        Backoff with the new counter and the delay to wait

    Example:
        >>> policy = ReconnectPolicy(max_attempts=10, base_delay=5.0)
        >>> policy.next_backoff(0, is_server_down=True)
        Backoff(attempts=1, delay=10.0, cooldown=False)
        >>> policy.next_backoff(10, is_server_down=False)
        Backoff(attempts=0, delay=10.0, cooldown=True)
    """
    attempts += 1
    if attempts > self.max_attempts:
      return Backoff(
          attempts=0,
          delay=self.base_delay * COOLDOWN_MULTIPLIER,
          cooldown=True,
      )

    multiplier = SERVER_DOWN_MULTIPLIER if is_server_down else 1
    return Backoff(attempts=attempts, delay=self.base_delay * multiplier)


def _log_ping_retry(retry_state: tenacity.RetryCallState) -> None:
  assert retry_state.outcome is not None
  logging.info(
      "Ping attempt %d failed: %s. Retrying in %.1fs",
      retry_state.attempt_number,
      retry_state.outcome.exception(),
      retry_state.next_action.sleep if retry_state.next_action else 0.0,
  )


async def probe_with_retry(
    ping: Callable[[str, int, float], Awaitable[bool]],
    host: str,
    port: int,
    *,
    attempts: int = 3,
    timeout: float = 10.0,
    retry_delay: float = 2.0,
    on_failure: Optional[Callable[[int, str], None]] = None,
) -> int:
  """Pings a server until it answers or the attempt budget is spent.

  Args:
      ping: Coroutine function ``ping(host, port, timeout) -> bool``
      host: Target host
      port: Target port
      attempts: Maximum number of pings
      timeout: Timeout applied to each ping
      retry_delay: Fixed pause after a failed ping
      on_failure: Called with ``(attempt_number, reason)`` for every failure

  Returns:
      The attempt number that succeeded.

  Raises:
      ProbeFailedError: If every attempt failed.
  """
  retrying = tenacity.AsyncRetrying(
      stop=tenacity.stop_after_attempt(attempts),
      wait=tenacity.wait_fixed(retry_delay),
      retry=tenacity.retry_if_exception_type(ProbeFailedError),
      before_sleep=_log_ping_retry,
      reraise=True,
  )

  async for attempt in retrying:
    with attempt:
      number = attempt.retry_state.attempt_number
      try:
        ok = await asyncio.wait_for(ping(host, port, timeout), timeout=timeout)
      except asyncio.TimeoutError:
        ok, reason = False, f"timed out after {timeout}s"
      except Exception as e:  # Any transport error counts as a failed ping.
        ok, reason = False, str(e) or type(e).__name__
      else:
        reason = "no response"

      if not ok:
        if on_failure is not None:
          on_failure(number, reason)
        raise ProbeFailedError(
            f"Ping attempt {number}/{attempts} to {host}:{port} failed: {reason}"
        )
      return number

  # Unreachable: tenacity either returns from the block or re-raises.
  raise ProbeFailedError(f"All ping attempts to {host}:{port} failed")
