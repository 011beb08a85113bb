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

"""Brings running instances into agreement with the desired state."""

import asyncio
import dataclasses
from typing import List, Optional, Tuple

from absl import logging

from bonk_fleet.keeper.desired_state import DesiredState, DesiredStateStore
from bonk_fleet.keeper.errors import AlreadyRunningError, DesiredStateError
from bonk_fleet.keeper.instance_registry import InstanceRegistry


@dataclasses.dataclass(frozen=True)
class ReconcileResult:
  started: Tuple[str, ...] = ()
  stopped: Tuple[str, ...] = ()

  @property
  def changed(self) -> bool:
    return bool(self.started or self.stopped)


class ConfigReconciler:
  """Starts and stops instances so they match a DesiredStateStore.

  Reconciliation is idempotent: applying the same desired state twice issues
  no additional start or stop calls. Config edits for an instance that is
  already running are recorded for its next cold start only.

  Attributes:
    last_result: Outcome of the most recent reconciliation.
  """

  def __init__(
      self,
      registry: InstanceRegistry,
      store: DesiredStateStore,
      debounce_seconds: float = 0.5,
      watch_retry_seconds: float = 1.0,
  ):
    self._registry = registry
    self._store = store
    self._debounce_seconds = debounce_seconds
    self._watch_retry_seconds = watch_retry_seconds
    self._lock = asyncio.Lock()
    self._notified = asyncio.Event()
    self.last_result: Optional[ReconcileResult] = None

  def notify_changed(self) -> None:
    """Requests a reconciliation after the debounce period."""
    self._notified.set()

  async def reconcile(self) -> ReconcileResult:
    """Reconciles once against the store's current snapshot.

    An unreadable desired state is logged and leaves every instance as it is.
    """
    async with self._lock:
      try:
        desired = self._store.load()
      except DesiredStateError as e:
        logging.error("Keeping current instances; desired state invalid: %s", e)
        return ReconcileResult()
      result = await self._apply(desired)
      self.last_result = result

    if result.changed:
      logging.info(
          "Reconciled desired state: started=%s stopped=%s",
          list(result.started),
          list(result.stopped),
      )
    return result

  async def _apply(self, desired: DesiredState) -> ReconcileResult:
    started: List[str] = []
    stopped: List[str] = []

    for instance_id in await self._registry.running_ids():
      entry = desired.get(instance_id)
      if entry is None or entry.disabled:
        await self._registry.stop(instance_id)
        stopped.append(instance_id)

    for instance_id, entry in sorted(desired.items()):
      config = entry.connection()
      if entry.disabled:
        await self._registry.record_config(instance_id, config, disabled=True)
        continue

      instance = await self._registry.get(instance_id)
      if instance is not None and instance.is_running:
        await self._registry.record_config(instance_id, config)
        continue

      try:
        await self._registry.start(instance_id, config)
      except AlreadyRunningError:
        # Started through the control API in the meantime.
        continue
      started.append(instance_id)

    return ReconcileResult(started=tuple(started), stopped=tuple(stopped))

  async def run(self) -> None:
    """Reconciles at startup and after every debounced change notification."""
    await self.reconcile()
    watcher = asyncio.create_task(self._watch_store())
    try:
      while True:
        await self._notified.wait()
        await self._debounce()
        await self.reconcile()
    finally:
      watcher.cancel()

  async def _debounce(self) -> None:
    while True:
      self._notified.clear()
      try:
        await asyncio.wait_for(
            self._notified.wait(), timeout=self._debounce_seconds
        )
      except asyncio.TimeoutError:
        return

  async def _watch_store(self) -> None:
    while True:
      try:
        await self._store.wait_for_change()
      except asyncio.CancelledError:
        raise
      except Exception:
        logging.exception("Desired state watch failed; retrying")
        await asyncio.sleep(self._watch_retry_seconds)
        continue
      self.notify_changed()
