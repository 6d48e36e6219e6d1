"""
Redis Storage Collaborators

Versioned user state as JSON strings updated with WATCH/MULTI, and
leaderboard entries as one sorted set per category with a companion hash of
update times.
"""

import json
import datetime
from typing import Any, Dict, List, Optional

import redis
from redis.exceptions import RedisError, WatchError

from progression.common.config import RedisConfig, get_config
from progression.common.exceptions import ConflictError, StorageUnavailableError
from progression.common.logger import app_logger
from progression.common.serialization import serialize
from progression.gamification.leaderboard import rank_key
from progression.gamification.models import LeaderboardEntry
from progression.storage.base import LeaderboardRepository, StateRepository, VersionedState

logger = app_logger.getChild("storage.redis")

# Singleton Redis client instance
_redis_client: Optional[redis.Redis] = None


def get_redis_settings(config: Optional[RedisConfig] = None) -> Dict[str, Any]:
    """
    Get Redis connection settings from configuration.

    Returns:
        Keyword arguments for ``redis.Redis``
    """
    config = config or get_config().redis
    return {
        "host": config.host,
        "port": config.port,
        "db": config.db,
        "password": config.password,
        "ssl": config.use_ssl,
        "socket_connect_timeout": config.connection_timeout,
        "decode_responses": False,
    }


def get_redis_client(config: Optional[RedisConfig] = None) -> redis.Redis:
    """
    Get the shared Redis client, creating it on first use.

    A client is returned even when the first ping fails; operations then fail
    with ``RedisError`` and the repositories report the backend unavailable.
    """
    global _redis_client

    if _redis_client is None:
        settings = get_redis_settings(config)
        _redis_client = redis.Redis(**settings)
        try:
            _redis_client.ping()
            logger.info(f"Connected to Redis at {settings['host']}:{settings['port']}")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")

    return _redis_client


def reset_redis_client() -> None:
    """Close the shared client so the next call reconnects."""
    global _redis_client

    if _redis_client is not None:
        try:
            _redis_client.close()
        except RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
        _redis_client = None
        logger.info("Redis client reset")


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisStateRepository(StateRepository):
    """
    User state stored as ``{"version": n, "data": {...}}`` under
    ``<prefix>state:<user_id>``.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        key_prefix: Optional[str] = None,
        name: str = "redis"
    ):
        self._redis = redis_client or get_redis_client()
        self._key_prefix = key_prefix if key_prefix is not None else get_config().storage.key_prefix
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def _build_key(self, user_id: str) -> str:
        return f"{self._key_prefix}state:{user_id}"

    @staticmethod
    def _decode(user_id: str, raw: Optional[bytes]) -> Optional[VersionedState]:
        if raw is None:
            return None
        document = json.loads(raw)
        return VersionedState(user_id, int(document["version"]), document.get("data") or {})

    def load(self, user_id: str) -> Optional[VersionedState]:
        try:
            return self._decode(user_id, self._redis.get(self._build_key(user_id)))
        except RedisError as e:
            raise StorageUnavailableError(f"could not load state for user {user_id}", e)

    def save(self, user_id: str, data: Dict[str, Any], expected_version: int) -> int:
        key = self._build_key(user_id)
        try:
            with self._redis.pipeline() as pipe:
                pipe.watch(key)
                current = self._decode(user_id, pipe.get(key))
                actual_version = current.version if current else 0
                if actual_version != expected_version:
                    pipe.unwatch()
                    raise ConflictError("UserState", user_id, expected_version, actual_version)

                version = actual_version + 1
                pipe.multi()
                pipe.set(key, json.dumps({"version": version, "data": serialize(data)}))
                pipe.execute()
                return version
        except WatchError as e:
            raise ConflictError("UserState", user_id, expected_version) from e
        except RedisError as e:
            raise StorageUnavailableError(f"could not save state for user {user_id}", e)

    def delete(self, user_id: str) -> bool:
        try:
            return bool(self._redis.delete(self._build_key(user_id)))
        except RedisError as e:
            raise StorageUnavailableError(f"could not delete state for user {user_id}", e)

    def user_ids(self) -> List[str]:
        prefix = self._build_key("")
        try:
            return [_text(key)[len(prefix):] for key in self._redis.scan_iter(match=f"{prefix}*")]
        except RedisError as e:
            raise StorageUnavailableError("could not list stored users", e)


class RedisLeaderboardRepository(LeaderboardRepository):
    """
    Entries of a category in the sorted set ``<prefix>leaderboard:<id>`` with
    update times in the hash ``<prefix>leaderboard:<id>:updated``.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        key_prefix: Optional[str] = None,
        name: str = "redis"
    ):
        self._redis = redis_client or get_redis_client()
        self._key_prefix = key_prefix if key_prefix is not None else get_config().storage.key_prefix
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def _scores_key(self, category_id: str) -> str:
        return f"{self._key_prefix}leaderboard:{category_id}"

    def _updated_key(self, category_id: str) -> str:
        return f"{self._scores_key(category_id)}:updated"

    def save_entry(self, entry: LeaderboardEntry) -> bool:
        scores_key = self._scores_key(entry.category_id)
        updated_key = self._updated_key(entry.category_id)
        try:
            with self._redis.pipeline() as pipe:
                # Retry until no other writer touches the category mid-update
                while True:
                    try:
                        pipe.watch(updated_key)
                        stored = pipe.hget(updated_key, entry.user_id)
                        if stored is not None and entry.updated_at < datetime.datetime.fromisoformat(_text(stored)):
                            pipe.unwatch()
                            return False
                        pipe.multi()
                        pipe.zadd(scores_key, {entry.user_id: entry.score})
                        pipe.hset(updated_key, entry.user_id, entry.updated_at.isoformat())
                        pipe.execute()
                        return True
                    except WatchError:
                        logger.debug(f"Concurrent leaderboard write on {entry.category_id}, retrying")
                        continue
        except RedisError as e:
            raise StorageUnavailableError(f"could not save leaderboard entry for {entry.category_id}", e)

    def load_entries(self, category_id: str) -> List[LeaderboardEntry]:
        try:
            scores = self._redis.zrevrange(self._scores_key(category_id), 0, -1, withscores=True)
            updated = self._redis.hgetall(self._updated_key(category_id))
        except RedisError as e:
            raise StorageUnavailableError(f"could not load leaderboard {category_id}", e)

        updated_at = {_text(user_id): _text(value) for user_id, value in updated.items()}
        entries = []
        for member, score in scores:
            user_id = _text(member)
            stamp = updated_at.get(user_id)
            if stamp is None:
                logger.warning(f"Leaderboard {category_id} entry for {user_id} has no update time, skipping")
                continue
            entries.append(LeaderboardEntry(
                user_id=user_id,
                category_id=category_id,
                score=float(score),
                updated_at=datetime.datetime.fromisoformat(stamp),
            ))
        entries.sort(key=rank_key)
        return entries

    def category_ids(self) -> List[str]:
        prefix = f"{self._key_prefix}leaderboard:"
        try:
            keys = [_text(key) for key in self._redis.scan_iter(match=f"{prefix}*")]
        except RedisError as e:
            raise StorageUnavailableError("could not list leaderboards", e)
        return sorted(key[len(prefix):] for key in keys if not key.endswith(":updated"))
