import redis as redis_sync
from redis.connection import ConnectionPool as SyncConnectionPool

from cinecanon.core.config import settings

_redis_sync: redis_sync.Redis | None = None
_sync_pool: SyncConnectionPool | None = None


def get_redis_sync() -> redis_sync.Redis:
	"""Get a singleton sync Redis client with connection pooling."""
	global _redis_sync, _sync_pool
	if _redis_sync is None:
		_sync_pool = SyncConnectionPool.from_url(
			settings.redis_url,
			decode_responses=True,
			max_connections=50,
			socket_connect_timeout=5,
			socket_timeout=5,
			retry_on_timeout=True,
		)
		_redis_sync = redis_sync.Redis(connection_pool=_sync_pool)
	return _redis_sync
