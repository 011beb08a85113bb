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

"""Tests for the instance registry."""

import asyncio
import unittest

from bonk_fleet.keeper.desired_state import InstanceConfig
from bonk_fleet.keeper.errors import (
    AlreadyRunningError,
    NotConnectedError,
    NotFoundError,
)
from bonk_fleet.keeper.instance_registry import InstanceRegistry
from bonk_fleet.keeper.log_broadcaster import LogBroadcaster
from bonk_fleet.keeper.session_state import SessionState
from bonk_fleet.keeper.tests.test_helpers import (
    FakeProtocolClient,
    RecordingSubscriber,
    fast_session_config,
    wait_until,
)

_CONFIG = InstanceConfig(host="play.example.net", port=19132, username="Keeper")


class TestInstanceRegistry(unittest.IsolatedAsyncioTestCase):

  async def asyncSetUp(self):
    self.client = FakeProtocolClient()
    self.broadcaster = LogBroadcaster(capacity=1000)
    self.registry = InstanceRegistry(
        self.client,
        self.broadcaster,
        session_config=fast_session_config(),
        credentials_dir="/tmp/profiles",
    )

  async def asyncTearDown(self):
    await self.registry.shutdown()

  async def test_status_before_start_is_not_found(self):
    with self.assertRaises(NotFoundError) as ctx:
      await self.registry.status("a")
    self.assertEqual(ctx.exception.instance_id, "a")

  async def test_status_follows_session_lifecycle(self):
    status = await self.registry.start("a", _CONFIG)
    self.assertNotEqual(status.connection_state, SessionState.CONNECTED)
    self.assertFalse(status.is_connected)

    await wait_until(lambda: self.client.last_handle is not None)
    status = await self.registry.status("a")
    self.assertEqual(status.connection_state, SessionState.CONNECTING)
    self.assertTrue(status.is_connecting)

    self.client.last_handle.join()
    instance = await self.registry.get("a")
    await wait_until(lambda: instance.session.is_connected)
    status = await self.registry.status("a")
    self.assertEqual(status.connection_state, SessionState.CONNECTED)
    self.assertEqual(status.to_dict()["connectionState"], "connected")
    self.assertEqual(self.client.last_handle.params.credentials_dir,
                     "/tmp/profiles")

  async def test_start_twice_fails_already_running(self):
    await self.registry.start("a", _CONFIG)
    with self.assertRaises(AlreadyRunningError):
      await self.registry.start("a", _CONFIG)
    await asyncio.sleep(0.05)
    self.assertEqual(self.client.connect_calls, 1)

  async def test_concurrent_starts_create_one_session(self):
    results = await asyncio.gather(
        self.registry.start("a", _CONFIG),
        self.registry.start("a", _CONFIG),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    self.assertEqual(len(errors), 1)
    self.assertIsInstance(errors[0], AlreadyRunningError)
    await wait_until(lambda: self.client.last_handle is not None)
    await asyncio.sleep(0.05)
    self.assertEqual(len(self.client.handles), 1)

  async def test_stop_unknown_is_not_found(self):
    with self.assertRaises(NotFoundError):
      await self.registry.stop("ghost")

  async def test_stop_keeps_logs_and_subscriber(self):
    await self.registry.start("a", _CONFIG)
    subscriber = RecordingSubscriber()
    self.broadcaster.attach("a", subscriber)

    status = await self.registry.stop("a")
    self.assertEqual(status.connection_state, SessionState.IDLE)
    self.assertTrue(status.ws_subscriber_attached)
    self.assertFalse(subscriber.detached)
    self.assertIn("EVENT: Bot has been stopped.", subscriber.pushed)
    self.assertTrue(self.broadcaster.entries("a"))
    self.assertEqual(await self.registry.running_ids(), [])

  async def test_restart_after_stop(self):
    await self.registry.start("a", _CONFIG)
    await self.registry.stop("a")
    status = await self.registry.start("a", _CONFIG)
    self.assertNotEqual(status.connection_state, SessionState.IDLE)

  async def test_send_message_requires_connected_session(self):
    with self.assertRaises(NotConnectedError):
      await self.registry.send_message("ghost", "hi")

    await self.registry.start("a", _CONFIG)
    with self.assertRaises(NotConnectedError):
      await self.registry.send_message("a", "hi")

    await wait_until(lambda: self.client.last_handle is not None)
    self.client.last_handle.join()
    instance = await self.registry.get("a")
    await wait_until(lambda: instance.session.is_connected)
    await self.registry.send_message("a", "hi")
    self.assertEqual(self.client.last_handle.sent[0]["payload"]["message"], "hi")

  async def test_slow_stop_does_not_block_other_instances(self):
    await self.registry.start("a", _CONFIG)
    instance = await self.registry.get("a")
    await wait_until(lambda: instance.session.heartbeat_deadline is not None)
    handle_a = self.client.last_handle
    release = asyncio.Event()

    async def slow_close():
      await release.wait()
      handle_a.closed = True

    handle_a.close = slow_close
    stopping = asyncio.create_task(self.registry.stop("a"))
    await asyncio.sleep(0.01)

    status = await asyncio.wait_for(self.registry.start("b", _CONFIG), 1.0)
    self.assertEqual(status.instance_id, "b")
    release.set()
    await stopping

  async def test_record_config_does_not_restart(self):
    await self.registry.start("a", _CONFIG)
    edited = InstanceConfig(host="other.example.net", username="Keeper")
    await self.registry.record_config("a", edited)
    await asyncio.sleep(0.05)
    self.assertEqual(self.client.connect_calls, 1)
    self.assertEqual(self.client.last_handle.params.host, "play.example.net")
    instance = await self.registry.get("a")
    self.assertEqual(instance.config.host, "other.example.net")

  async def test_remove_forgets_instance(self):
    await self.registry.start("a", _CONFIG)
    await self.registry.remove("a")
    self.assertEqual(await self.registry.instance_ids(), [])
    self.assertEqual(self.broadcaster.entries("a"), [])
    with self.assertRaises(NotFoundError):
      await self.registry.status("a")


if __name__ == "__main__":
  unittest.main()
