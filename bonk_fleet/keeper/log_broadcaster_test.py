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

"""Tests for per-instance log buffers and subscriber delivery."""

from bonk_fleet.keeper import log_broadcaster
from bonk_fleet.keeper.errors import SubscriberGoneError
from absl.testing import absltest


class RecordingSubscriber:

  def __init__(self, fail_push=False, fail_replay=False):
    self.replayed = None
    self.pushed = []
    self.detached = False
    self.fail_push = fail_push
    self.fail_replay = fail_replay

  def replay(self, entries):
    if self.fail_replay:
      raise SubscriberGoneError('gone')
    self.replayed = [entry.message for entry in entries]

  def push(self, entry):
    if self.fail_push:
      raise SubscriberGoneError('gone')
    self.pushed.append(entry.message)

  def detach(self):
    self.detached = True


class LogBroadcasterTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.broadcaster = log_broadcaster.LogBroadcaster(capacity=1000)

  def test_buffer_is_bounded_fifo(self):
    for i in range(1001):
      self.broadcaster.append('a', f'message {i}')
    messages = [e.message for e in self.broadcaster.entries('a')]
    self.assertLen(messages, 1000)
    self.assertNotIn('message 0', messages)
    self.assertEqual(messages[0], 'message 1')
    self.assertEqual(messages[-1], 'message 1000')

  def test_attach_replays_then_delivers_live(self):
    self.broadcaster.append('a', 'one')
    self.broadcaster.append('a', 'two')
    subscriber = RecordingSubscriber()
    self.broadcaster.attach('a', subscriber)
    self.broadcaster.append('a', 'three')
    self.assertEqual(subscriber.replayed, ['one', 'two'])
    self.assertEqual(subscriber.pushed, ['three'])
    self.assertTrue(self.broadcaster.has_subscriber('a'))

  def test_attach_replaces_and_detaches_previous(self):
    first = RecordingSubscriber()
    second = RecordingSubscriber()
    self.broadcaster.attach('a', first)
    self.broadcaster.attach('a', second)
    self.broadcaster.append('a', 'live')
    self.assertTrue(first.detached)
    self.assertEqual(first.pushed, [])
    self.assertEqual(second.pushed, ['live'])

  def test_failed_push_detaches_but_keeps_buffering(self):
    subscriber = RecordingSubscriber(fail_push=True)
    self.broadcaster.attach('a', subscriber)
    self.broadcaster.append('a', 'lost')
    self.broadcaster.append('a', 'kept')
    self.assertFalse(self.broadcaster.has_subscriber('a'))
    self.assertTrue(subscriber.detached)
    self.assertEqual(
        [e.message for e in self.broadcaster.entries('a')], ['lost', 'kept']
    )

  def test_failed_replay_leaves_no_binding(self):
    with self.assertRaises(SubscriberGoneError):
      self.broadcaster.attach('a', RecordingSubscriber(fail_replay=True))
    self.assertFalse(self.broadcaster.has_subscriber('a'))

  def test_stale_detach_does_not_remove_successor(self):
    first = RecordingSubscriber()
    second = RecordingSubscriber()
    self.broadcaster.attach('a', first)
    self.broadcaster.attach('a', second)
    self.assertFalse(self.broadcaster.detach('a', first))
    self.assertTrue(self.broadcaster.has_subscriber('a'))
    self.assertTrue(self.broadcaster.detach('a', second))

  def test_instances_are_independent(self):
    subscriber = RecordingSubscriber()
    self.broadcaster.attach('a', subscriber)
    self.broadcaster.append('b', 'other')
    self.assertEqual(subscriber.pushed, [])
    self.assertEqual(self.broadcaster.entries('a'), [])

  def test_remove_drops_buffer(self):
    subscriber = RecordingSubscriber()
    self.broadcaster.append('a', 'one')
    self.broadcaster.attach('a', subscriber)
    self.broadcaster.remove('a')
    self.assertTrue(subscriber.detached)
    self.assertEqual(self.broadcaster.entries('a'), [])

  def test_echo_receives_entries(self):
    echoed = []
    broadcaster = log_broadcaster.LogBroadcaster(echo=echoed.append)
    entry = broadcaster.append('a', 'EVENT: hello')
    self.assertEqual(echoed, [entry])
    self.assertEqual(entry.to_dict()['instanceId'], 'a')


class FormatConsoleLineTest(absltest.TestCase):

  def test_plain_line(self):
    entry = log_broadcaster.LogEntry(0.0, 'lobby', 'CHAT: <Steve> hi')
    line = log_broadcaster.format_console_line(entry, color=False)
    self.assertTrue(line.endswith('[lobby] CHAT: <Steve> hi'))

  def test_coloured_line_keeps_message(self):
    entry = log_broadcaster.LogEntry(0.0, 'lobby', 'ERROR: boom')
    line = log_broadcaster.format_console_line(entry)
    self.assertIn('ERROR: boom', line)


if __name__ == '__main__':
  absltest.main()
