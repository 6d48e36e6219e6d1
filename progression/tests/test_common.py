"""
Tests for the shared infrastructure: partitioned state store, metrics cache,
configuration loading, serialization and log context.
"""

import datetime
import enum
import io
import json
import logging
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import pytest

from progression.common.cache import MemoryCacheBackend
from progression.common.clock import ManualClock
from progression.common.config import ConfigLoader
from progression.common.exceptions import ConfigurationError
from progression.common.logger import JsonFormatter, LoggerAdapter, with_context
from progression.common.serialization import SerializableMixin, serialize, to_json
from progression.common.state_store import StateStore
from progression.common.utils import clamp, days_between, month_index, safe_divide, to_naive_local


class TestStateStore(unittest.TestCase):
    """Test the StateStore class."""

    def setUp(self):
        self.store = StateStore(lambda key: {"key": key, "count": 0}, shards=4, name="test")

    def test_locked_creates_value(self):
        """Test that locked() builds the value on first use."""
        with self.store.locked("user-1") as value:
            value["count"] += 1
        self.assertEqual(self.store.get("user-1"), {"key": "user-1", "count": 1})
        self.assertIn("user-1", self.store)

    def test_locked_without_create(self):
        """Test that create=False yields None for a missing key."""
        with self.store.locked("missing", create=False) as value:
            self.assertIsNone(value)
        self.assertNotIn("missing", self.store)
        self.assertIsNone(self.store.get("missing"))

    def test_put_delete_and_keys(self):
        """Test replacing, listing and deleting keys."""
        self.store.put("a", {"count": 5})
        self.store.get_or_create("b")
        self.assertEqual(sorted(self.store.keys()), ["a", "b"])
        self.assertEqual(len(self.store), 2)

        self.assertTrue(self.store.delete("a"))
        self.assertFalse(self.store.delete("a"))
        self.assertEqual(self.store.keys(), ["b"])

        self.store.clear()
        self.assertEqual(len(self.store), 0)

    def test_same_key_same_lock(self):
        """Test that a key always maps to the same shard lock."""
        self.assertIs(self.store.lock_for("user-1"), self.store.lock_for("user-1"))

    def test_invalid_shard_count(self):
        """Test that a store needs at least one shard."""
        with self.assertRaises(ValueError):
            StateStore(dict, shards=0)

    def test_concurrent_updates_are_serialized(self):
        """Test that concurrent read-modify-write under locked() loses no updates."""
        def work(key):
            for _ in range(500):
                with self.store.locked(key) as value:
                    value["count"] += 1

        keys = ["user-1", "user-2"] * 4
        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(work, keys))

        self.assertEqual(self.store.get("user-1")["count"], 2000)
        self.assertEqual(self.store.get("user-2")["count"], 2000)

    def test_lock_is_reentrant(self):
        """Test that a holder of a key's lock can lock it again."""
        with self.store.locked("user-1"):
            with self.store.locked("user-1") as value:
                value["count"] = 3
        self.assertEqual(self.store.get("user-1")["count"], 3)


class TestMemoryCacheBackend(unittest.TestCase):
    """Test the MemoryCacheBackend class."""

    def setUp(self):
        self.clock = ManualClock()
        self.cache = MemoryCacheBackend(max_size=2, default_ttl=10, name="test", clock=self.clock)

    def test_get_set(self):
        """Test storing and retrieving a value."""
        result = self.cache.set("key", {"value": 1})
        self.assertTrue(result.success)

        result = self.cache.get("key")
        self.assertTrue(result.success)
        self.assertTrue(result.hit)
        self.assertEqual(result.value, {"value": 1})
        self.assertEqual(result.source, "test")

    def test_miss(self):
        """Test that a missing key is a miss, not an error."""
        result = self.cache.get("missing")
        self.assertFalse(result.success)
        self.assertFalse(result.hit)
        self.assertEqual(self.cache.get_stats()["misses"], 1)

    def test_expiry_follows_clock(self):
        """Test that entries expire when the clock passes their TTL."""
        self.cache.set("key", "value")
        self.clock.advance(seconds=5)
        self.assertTrue(self.cache.get("key").hit)
        self.assertEqual(self.cache.get("key").ttl, 5)

        self.clock.advance(seconds=6)
        self.assertFalse(self.cache.get("key").hit)
        self.assertEqual(self.cache.get_stats()["expirations"], 1)

    def test_explicit_ttl_overrides_default(self):
        """Test that a per-call TTL wins over the default."""
        self.cache.set("key", "value", ttl=100)
        self.clock.advance(seconds=50)
        self.assertTrue(self.cache.has("key"))

    def test_lru_eviction(self):
        """Test that the least recently used entry is evicted when full."""
        self.cache.set("a", 1)
        self.cache.set("b", 2)
        self.cache.get("a")
        self.cache.set("c", 3)

        self.assertTrue(self.cache.has("a"))
        self.assertFalse(self.cache.has("b"))
        self.assertTrue(self.cache.has("c"))
        self.assertEqual(self.cache.get_stats()["evictions"], 1)

    def test_delete_and_cleanup(self):
        """Test deleting entries and purging expired ones."""
        self.cache.set("a", 1)
        self.assertTrue(self.cache.delete("a"))
        self.assertFalse(self.cache.delete("a"))

        self.cache.set("b", 2, ttl=1)
        self.clock.advance(seconds=2)
        self.assertEqual(self.cache.cleanup_expired(), 1)
        self.assertEqual(len(self.cache), 0)


class Colour(enum.Enum):
    RED = "red"


@dataclass
class Sample(SerializableMixin):
    name: str
    colour: Colour
    seen_at: datetime.datetime
    tags: set

    __serializable_fields__ = ["name", "colour", "seen_at", "tags"]


def test_serialize_nested_values():
    sample = Sample("x", Colour.RED, datetime.datetime(2024, 1, 1, 9, 0), {"b", "a"})
    assert sample.to_dict() == {
        "name": "x",
        "colour": "red",
        "seen_at": "2024-01-01T09:00:00",
        "tags": ["a", "b"],
    }
    assert serialize({"items": [sample]})["items"][0]["colour"] == "red"
    assert to_json({"day": datetime.date(2024, 1, 2)}) == '{"day": "2024-01-02"}'


def test_serializable_mixin_requires_fields():
    with pytest.raises(ValueError):
        Sample.from_dict({"name": "x"})


def test_utils():
    assert safe_divide(1, 0) == 0
    assert safe_divide(1, 4) == 0.25
    assert clamp(12, 1, 10) == 10
    assert clamp(-3, 1, 10) == 1
    assert days_between(datetime.date(2024, 1, 31), datetime.date(2024, 2, 2)) == 2
    assert month_index(datetime.date(2024, 3, 1)) - month_index(datetime.date(2023, 12, 31)) == 3


def test_to_naive_local_keeps_naive_values():
    naive = datetime.datetime(2024, 1, 1, 9, 0)
    assert to_naive_local(naive) is naive
    assert to_naive_local(None) is None

    aware = datetime.datetime(2024, 1, 1, 9, 0, tzinfo=datetime.timezone.utc)
    converted = to_naive_local(aware)
    assert converted.tzinfo is None
    assert converted == aware.astimezone().replace(tzinfo=None)


def test_manual_clock_is_thread_safe():
    clock = ManualClock(datetime.datetime(2024, 1, 1))

    def tick():
        for _ in range(100):
            clock.advance(seconds=1)

    threads = [threading.Thread(target=tick) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert clock.now() == datetime.datetime(2024, 1, 1, 0, 6, 40)
    assert clock.today() == datetime.date(2024, 1, 1)


class TestConfigLoader:
    """Test loading configuration from files and the environment."""

    def test_defaults(self, tmp_path):
        config = ConfigLoader(str(tmp_path / "missing.yaml")).load()
        assert config.streak.recovery_grace_days == 2
        assert config.difficulty.promote_threshold == 3
        assert config.storage.backend == "memory"

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "progression.yaml"
        path.write_text(
            "streak:\n"
            "  max_recoveries: 3\n"
            "difficulty:\n"
            "  max_level: 8\n"
        )
        config = ConfigLoader(str(path)).load()
        assert config.streak.max_recoveries == 3
        assert config.difficulty.max_level == 8

    def test_json_file(self, tmp_path):
        path = tmp_path / "progression.json"
        path.write_text('{"leaderboard": {"default_limit": 10}}')
        config = ConfigLoader(str(path)).load()
        assert config.leaderboard.default_limit == 10

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "progression.yaml"
        path.write_text("streak:\n  recovery_grace_days: 4\n")
        monkeypatch.setenv("STREAK_RECOVERY_GRACE_DAYS", "3")
        monkeypatch.setenv("ALLOW_ORIGINS", "http://a.test, http://b.test")

        config = ConfigLoader(str(path)).load()
        assert config.streak.recovery_grace_days == 3
        assert config.api.allow_origins == ["http://a.test", "http://b.test"]

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "progression.yaml"
        path.write_text("streak:\n  recovery_grace_days: 1\n")
        with pytest.raises(ConfigurationError):
            ConfigLoader(str(path)).load()

    def test_starting_level_must_be_in_bounds(self, tmp_path):
        path = tmp_path / "progression.yaml"
        path.write_text("difficulty:\n  min_level: 2\n  max_level: 5\n  starting_level: 7\n")
        with pytest.raises(ConfigurationError):
            ConfigLoader(str(path)).load()

    def test_invalid_value_names_the_key(self, tmp_path):
        path = tmp_path / "progression.yaml"
        path.write_text("streak:\n  recovery_grace_days: 1\n")
        with pytest.raises(ConfigurationError) as excinfo:
            ConfigLoader(str(path)).load()
        assert excinfo.value.config_key == "streak.recovery_grace_days"

    def test_malformed_file_rejected(self, tmp_path):
        path = tmp_path / "progression.json"
        path.write_text('{"streak": ')
        with pytest.raises(ConfigurationError):
            ConfigLoader(str(path)).load()

    def test_unsupported_format_rejected(self, tmp_path):
        path = tmp_path / "progression.toml"
        path.write_text("[streak]\n")
        with pytest.raises(ConfigurationError):
            ConfigLoader(str(path)).load()

    def test_non_mapping_file_rejected(self, tmp_path):
        path = tmp_path / "progression.yaml"
        path.write_text("- streak\n- difficulty\n")
        with pytest.raises(ConfigurationError):
            ConfigLoader(str(path)).load()


class TestLoggerAdapter(unittest.TestCase):
    """Test context-carrying log adapters."""

    def setUp(self):
        self.stream = io.StringIO()
        self.handler = logging.StreamHandler(self.stream)
        self.handler.setFormatter(JsonFormatter())
        self.logger = logging.getLogger("progression-tests.adapter")
        self.logger.addHandler(self.handler)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

    def tearDown(self):
        self.logger.removeHandler(self.handler)

    def test_context_reaches_json_output(self):
        adapter = LoggerAdapter(self.logger, {"job": "maintenance"}).with_context(cycle=3)
        adapter.info("cycle finished")

        payload = json.loads(self.stream.getvalue())
        self.assertEqual(payload["message"], "cycle finished")
        self.assertEqual(payload["job"], "maintenance")
        self.assertEqual(payload["cycle"], 3)

    def test_with_context_keeps_parent_context(self):
        parent = LoggerAdapter(self.logger, {"job": "maintenance"})
        child = parent.with_context(cycle=1)
        self.assertEqual(parent.extra, {"job": "maintenance"})
        self.assertEqual(child.extra, {"job": "maintenance", "cycle": 1})

    def test_named_adapter_uses_application_logger(self):
        adapter = with_context("jobs.maintenance", job="maintenance")
        self.assertEqual(adapter.logger.name, "progression.jobs.maintenance")
        self.assertEqual(adapter.extra, {"job": "maintenance"})
