import unittest
from unittest.mock import Mock, patch

import fakeredis
import redis

from habitchat.services import presence_service
from habitchat.services.presence_service import InMemoryPresenceRegistry, RedisPresenceRegistry


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def time(self) -> float:
        return self.now


class RedisPresenceRegistryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.clock_patch = patch.object(presence_service, "time", new=self.clock)
        self.clock_patch.start()
        self.registry = RedisPresenceRegistry(fakeredis.FakeRedis(), ttl_seconds=30)

    def tearDown(self) -> None:
        self.clock_patch.stop()

    def test_entry_lapses_without_touch(self) -> None:
        self.registry.connect(1, "sid-1")
        self.assertTrue(self.registry.is_online(1))

        self.clock.now += 31
        self.assertFalse(self.registry.is_online(1))

    def test_touch_keeps_a_connected_socket_online(self) -> None:
        self.registry.connect(1, "sid-1")
        for _ in range(4):
            self.clock.now += 20
            self.registry.touch(1, "sid-1")
        self.assertTrue(self.registry.is_online(1))
        self.assertEqual(self.registry.online_user_ids([1, 2]), {1})

    def test_disconnect_reports_remaining_live_sockets(self) -> None:
        self.registry.connect(1, "sid-1")
        self.registry.connect(1, "sid-2")
        self.assertTrue(self.registry.disconnect(1, "sid-1"))
        self.assertFalse(self.registry.disconnect(1, "sid-2"))
        self.assertFalse(self.registry.is_online(1))

    def test_stale_sibling_does_not_count_as_remaining(self) -> None:
        self.registry.connect(1, "sid-stale")
        self.clock.now += 31
        self.registry.connect(1, "sid-live")
        self.assertFalse(self.registry.disconnect(1, "sid-live"))

    def test_redis_errors_read_as_offline(self) -> None:
        client = Mock()
        client.zcount.side_effect = redis.ConnectionError("down")
        client.pipeline.side_effect = redis.ConnectionError("down")
        registry = RedisPresenceRegistry(client, ttl_seconds=30)

        registry.connect(1, "sid-1")
        registry.touch(1, "sid-1")
        self.assertFalse(registry.is_online(1))
        self.assertFalse(registry.disconnect(1, "sid-1"))


class InMemoryPresenceRegistryTests(unittest.TestCase):
    def test_touch_is_harmless_and_entries_never_lapse(self) -> None:
        registry = InMemoryPresenceRegistry()
        self.assertFalse(registry.expires)
        registry.connect(1, "sid-1")
        registry.touch(1, "sid-1")
        self.assertTrue(registry.is_online(1))
        self.assertFalse(registry.disconnect(1, "sid-1"))


if __name__ == "__main__":
    unittest.main()
