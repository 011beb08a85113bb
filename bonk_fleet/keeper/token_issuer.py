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

"""Short-lived, single-use tokens authorizing one log subscription."""

import dataclasses
import secrets
import threading
import time
from typing import Callable, Dict

from absl import logging

from bonk_fleet.keeper.errors import InvalidOrExpiredTokenError


@dataclasses.dataclass
class LogToken:
  value: str
  instance_id: str
  issued_at: float
  used: bool = False

  def is_expired(self, now: float, ttl_seconds: float) -> bool:
    return now - self.issued_at > ttl_seconds


class TokenIssuer:
  """Mints and redeems log subscription tokens.

  A token is accepted by ``redeem`` at most once, and never after
  ``ttl_seconds`` from issuance. Redeemed and expired tokens are removed
  from the table.
  """

  def __init__(
      self,
      ttl_seconds: float = 300.0,
      token_bytes: int = 32,
      clock: Callable[[], float] = time.time,
  ):
    if ttl_seconds <= 0:
      raise ValueError("ttl_seconds must be positive")
    self._ttl_seconds = ttl_seconds
    self._token_bytes = token_bytes
    self._clock = clock
    self._tokens: Dict[str, LogToken] = {}
    self._lock = threading.Lock()

  @property
  def ttl_seconds(self) -> float:
    return self._ttl_seconds

  def issue(self, instance_id: str) -> LogToken:
    token = LogToken(
        value=secrets.token_urlsafe(self._token_bytes),
        instance_id=instance_id,
        issued_at=self._clock(),
    )
    with self._lock:
      self._purge_expired_locked(token.issued_at)
      self._tokens[token.value] = token
    logging.debug("Issued log token for %s", instance_id)
    return token

  def redeem(self, value: str) -> str:
    """Consumes a token and returns the instance id it was issued for.

    Raises:
      InvalidOrExpiredTokenError: If the token is unknown, already used or
        expired.
    """
    now = self._clock()
    with self._lock:
      token = self._tokens.pop(value, None) if value else None
      if token is None or token.used:
        raise InvalidOrExpiredTokenError("Invalid or unknown token")
      if token.is_expired(now, self._ttl_seconds):
        raise InvalidOrExpiredTokenError(
            "Token expired", instance_id=token.instance_id
        )
      token.used = True
    return token.instance_id

  def purge_expired(self) -> int:
    with self._lock:
      return self._purge_expired_locked(self._clock())

  def _purge_expired_locked(self, now: float) -> int:
    expired = [
        value
        for value, token in self._tokens.items()
        if token.is_expired(now, self._ttl_seconds)
    ]
    for value in expired:
      del self._tokens[value]
    return len(expired)

  def __len__(self) -> int:
    with self._lock:
      return len(self._tokens)
