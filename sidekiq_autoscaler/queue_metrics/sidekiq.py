import logging
from typing import Dict, Optional

import redis
import redis.asyncio

from sidekiq_autoscaler.control_loop import QueueStateFetcher
from sidekiq_autoscaler.errors import QueueFetchError

QUEUES_KEY = 'sidekiq:queues'
QUEUE_KEY_PREFIX = 'sidekiq:queue:'


class SidekiqQueueFetcher(QueueStateFetcher):
    """
    Reads Sidekiq queue lengths from Redis.

    Sidekiq records the name of every queue it has seen in the
    ``sidekiq:queues`` set and keeps each queue's pending jobs in a
    ``sidekiq:queue:<name>`` list. When the application uses redis-namespace,
    every key carries a ``<namespace>:`` prefix.
    """

    def __init__(self, client: redis.asyncio.Redis, namespace: Optional[str] = None):
        self._client = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: Optional[str] = None,
                 socket_timeout: Optional[float] = 5.0) -> 'SidekiqQueueFetcher':
        """
        Create a fetcher connected to the Redis server at url.

        Args:
            url: Redis URL, e.g. redis://127.0.0.1/0
            namespace: Optional redis-namespace prefix used by the application
            socket_timeout: Seconds to wait on connect and on each reply

        Returns:
            SidekiqQueueFetcher: Fetcher backed by a connection pool
        """
        client = redis.asyncio.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout
        )
        return cls(client, namespace)

    def key(self, name: str) -> str:
        if self.namespace:
            return f"{self.namespace}:{name}"
        return name

    async def get_current_state(self) -> Dict[str, int]:
        """
        Get the number of pending jobs in every known Sidekiq queue.

        Returns:
            dict: Pending job count per queue name

        Raises:
            QueueFetchError: If Redis cannot be reached or replies unexpectedly
        """
        try:
            queues = sorted(await self._client.smembers(self.key(QUEUES_KEY)))
            if not queues:
                logging.info("Sidekiq has not registered any queues yet")
                return {}

            async with self._client.pipeline(transaction=False) as pipe:
                for queue in queues:
                    pipe.llen(self.key(QUEUE_KEY_PREFIX + queue))
                lengths = await pipe.execute()
        except (redis.RedisError, OSError) as e:
            logging.error(f"Error getting Sidekiq queue lengths: {e}", exc_info=True)
            raise QueueFetchError(f"querying Sidekiq queues: {e}") from e

        if len(lengths) != len(queues):
            raise QueueFetchError(f"expected {len(queues)} queue lengths, got {len(lengths)}")

        queue_lengths = {}
        for queue, length in zip(queues, lengths):
            if isinstance(length, bool) or not isinstance(length, int) or length < 0:
                raise QueueFetchError(f"malformed length {length!r} for Sidekiq queue {queue}")
            queue_lengths[queue] = length

        logging.debug(f"Sidekiq queue lengths: {queue_lengths}")
        return queue_lengths

    async def close(self) -> None:
        await self._client.aclose()
