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

"""Tests for desired-state parsing and stores."""

import asyncio
import json
import os
import tempfile
import unittest
from unittest import mock

from pydantic import ValidationError

from bonk_fleet.keeper import desired_state
from bonk_fleet.keeper.desired_state import (
    InMemoryDesiredStateStore,
    InstanceConfig,
    JsonFileDesiredStateStore,
    parse_desired_state,
)
from bonk_fleet.keeper.errors import DesiredStateError


class TestParseDesiredState(unittest.TestCase):

  def test_wrapped_and_bare_forms(self):
    entry = {"host": "play.example.net", "username": "Keeper"}
    wrapped = parse_desired_state({"instances": {"lobby": entry}})
    bare = parse_desired_state({"lobby": entry})
    self.assertEqual(wrapped, bare)
    self.assertEqual(wrapped["lobby"].port, 19132)
    self.assertFalse(wrapped["lobby"].disabled)
    self.assertFalse(wrapped["lobby"].offline_mode)

  def test_camel_case_alias(self):
    state = parse_desired_state({
        "lobby": {"host": "h", "username": "u", "offlineMode": True},
    })
    self.assertTrue(state["lobby"].offline_mode)

  def test_empty_and_null(self):
    self.assertEqual(parse_desired_state({}), {})
    self.assertEqual(parse_desired_state({"instances": None}), {})

  def test_invalid_entry_names_instance(self):
    with self.assertRaises(DesiredStateError) as ctx:
      parse_desired_state({"lobby": {"host": "h", "port": 0, "username": "u"}})
    self.assertEqual(ctx.exception.instance_id, "lobby")

  def test_non_mapping_rejected(self):
    with self.assertRaises(DesiredStateError):
      parse_desired_state(["lobby"])

  def test_connection_drops_disabled_flag(self):
    state = parse_desired_state({
        "lobby": {"host": " h ", "username": "u", "disabled": True},
    })
    config = state["lobby"].connection()
    self.assertEqual(config, InstanceConfig(host="h", username="u"))
    params = config.to_connect_params("/tmp/profiles")
    self.assertEqual(params.host, "h")
    self.assertEqual(params.credentials_dir, "/tmp/profiles")


class TestInstanceConfig(unittest.TestCase):

  def test_blank_username_rejected(self):
    with self.assertRaises(ValidationError):
      InstanceConfig(host="h", username="   ")

  def test_configs_are_immutable(self):
    config = InstanceConfig(host="h", username="u")
    with self.assertRaises(ValidationError):
      config.host = "other"


class TestInMemoryDesiredStateStore(unittest.IsolatedAsyncioTestCase):

  async def test_set_notifies_waiter(self):
    store = InMemoryDesiredStateStore()
    waiter = asyncio.create_task(store.wait_for_change())
    await asyncio.sleep(0)
    self.assertFalse(waiter.done())

    store.set({"lobby": {"host": "h", "username": "u"}})
    await asyncio.wait_for(waiter, timeout=1.0)
    self.assertEqual(list(store.load()), ["lobby"])

  async def test_update_replaces_fields(self):
    store = InMemoryDesiredStateStore({"lobby": {"host": "h", "username": "u"}})
    store.update("lobby", disabled=True)
    self.assertTrue(store.load()["lobby"].disabled)
    self.assertEqual(store.load()["lobby"].host, "h")


class TestJsonFileDesiredStateStore(unittest.IsolatedAsyncioTestCase):

  def setUp(self):
    self.tmpdir = tempfile.TemporaryDirectory()
    self.addCleanup(self.tmpdir.cleanup)
    self.path = os.path.join(self.tmpdir.name, "instances.json")

  def _write(self, data):
    with open(self.path, "w", encoding="utf-8") as f:
      if isinstance(data, str):
        f.write(data)
      else:
        json.dump(data, f)

  async def test_missing_file_is_empty_state(self):
    store = JsonFileDesiredStateStore(self.path)
    self.assertEqual(store.load(), {})

  async def test_invalid_json_raises(self):
    self._write("{not json")
    store = JsonFileDesiredStateStore(self.path)
    with self.assertRaises(DesiredStateError):
      store.load()

  async def test_loads_instances(self):
    self._write({"instances": {"lobby": {"host": "h", "username": "u"}}})
    store = JsonFileDesiredStateStore(self.path)
    self.assertEqual(store.load()["lobby"].username, "u")

  async def test_unreadable_file_keeps_watching(self):
    self._write({"lobby": {"host": "h", "username": "u"}})
    store = JsonFileDesiredStateStore(self.path, poll_interval=0.01)
    waiter = asyncio.create_task(store.wait_for_change())

    with mock.patch.object(
        desired_state.os, "stat", side_effect=PermissionError("denied")
    ):
      await asyncio.sleep(0.05)
    self.assertFalse(waiter.done())

    self._write({
        "arena": {"host": "h", "username": "u"},
        "lobby": {"host": "h", "username": "u"},
    })
    await asyncio.wait_for(waiter, timeout=1.0)
    self.assertIn("arena", store.load())

  async def test_detects_file_creation(self):
    store = JsonFileDesiredStateStore(self.path, poll_interval=0.01)
    waiter = asyncio.create_task(store.wait_for_change())
    await asyncio.sleep(0.05)
    self.assertFalse(waiter.done())

    self._write({"lobby": {"host": "h", "username": "u"}})
    await asyncio.wait_for(waiter, timeout=1.0)
    self.assertIn("lobby", store.load())


if __name__ == "__main__":
  unittest.main()
