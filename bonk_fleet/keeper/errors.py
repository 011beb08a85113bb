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

"""Error taxonomy for the instance keeper.

Connection-level errors (probe, connect, heartbeat) are raised and handled
inside a session and only surface as state and log records. Usage errors are
raised synchronously to control-surface callers.
"""

from typing import Optional


class FleetError(Exception):
  """Base class for all keeper errors."""

  error_code = "E500"

  def __init__(self, message: str = "", *, instance_id: Optional[str] = None):
    super().__init__(message)
    self.instance_id = instance_id

  def __str__(self):
    base_str = super().__str__()
    if self.instance_id:
      return f"{base_str} (instance={self.instance_id})"
    return base_str


class ProbeFailedError(FleetError):
  """Every ping attempt against the target server failed."""

  error_code = "probe_failed"


class ConnectFailedError(FleetError):
  """A protocol handle could not be created or authenticated."""

  error_code = "connect_failed"


class HeartbeatTimeoutError(FleetError):
  """No liveness signal arrived before the heartbeat deadline."""

  error_code = "heartbeat_timeout"


class AlreadyRunningError(FleetError):
  error_code = "already_running"


class NotFoundError(FleetError):
  error_code = "not_found"


class NotConnectedError(FleetError):
  error_code = "not_connected"


class InvalidOrExpiredTokenError(FleetError):
  """A log token is unknown, already redeemed, or past its window."""

  error_code = "invalid_token"


class SubscriberGoneError(FleetError):
  """A log subscriber can no longer accept deliveries."""

  error_code = "subscriber_gone"


class DesiredStateError(FleetError):
  """The desired-state source could not be read or validated."""

  error_code = "invalid_desired_state"
