from __future__ import annotations

import json
import logging
from typing import Any

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Pub/Sub helpers for broadcasting real-time task status updates
# ---------------------------------------------------------------------------

JOB_STATUS_CHANNEL = "job_status"


class JobStatusPublisher:
    """Publishes task status changes to the ``job_status`` Redis channel.

    Publishing is best-effort: a Redis outage is logged and swallowed so it
    never turns a successful task into a failed one.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "JobStatusPublisher":
        pool = aioredis.ConnectionPool.from_url(
            url,
            decode_responses=True,
            max_connections=20,
        )
        return cls(aioredis.Redis(connection_pool=pool))

    async def publish(
        self,
        task_id: int,
        status: str,
        *,
        detail: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> int:
        """Publish a status update.

        Parameters
        ----------
        task_id:
            Identifier of the task whose status changed.
        status:
            New status string (``"processing"``, ``"completed"``, ...).
        detail:
            Optional human-readable detail message (error text on failure).
        extra:
            Optional dict of additional metadata to include in the payload.

        Returns
        -------
        int
            Number of subscribers that received the message, ``0`` when the
            publish failed.
        """
        payload: dict[str, Any] = {
            "task_id": task_id,
            "status": status,
        }
        if detail is not None:
            payload["detail"] = detail
        if extra:
            payload.update(extra)

        try:
            return await self._client.publish(JOB_STATUS_CHANNEL, json.dumps(payload))
        except aioredis.RedisError:
            logger.warning("Could not publish status for task %s", task_id, exc_info=True)
            return 0

    async def close(self) -> None:
        await self._client.aclose()

