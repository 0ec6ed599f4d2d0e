"""
Progress publishing for optimization runs.

The engine calls a progress callback with OptimizationProgress updates. The
callback built here throttles them and publishes JSON payloads to Redis so
that listeners (dashboards, websockets) can follow a run.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from connection_optimizer.config import config
from connection_optimizer.models.optimization import OptimizationProgress

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "optimization_progress"
ALL_RUNS_CHANNEL = f"{CHANNEL_PREFIX}:all"
MIN_PROGRESS_STEP = 5


def get_redis_client():
    """Redis client for REDIS_URL, or None when Redis is unreachable."""
    try:
        import redis

        if not config.is_redis_available():
            return None
        return redis.Redis.from_url(config.REDIS_URL)
    except Exception as e:
        logger.debug(f"Redis client unavailable: {e}")
        return None


def build_payload(run_id: str, progress: OptimizationProgress) -> Dict[str, Any]:
    data = progress.model_dump()
    data.update({
        "run_id": run_id,
        "type": "progress",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    return data


def publish_progress(client, run_id: str, payload: Dict[str, Any]) -> bool:
    """
    Publish one payload to the run channel and the shared channel.

    Returns:
        True if published successfully
    """
    if client is None:
        return False
    try:
        message = json.dumps(payload)
        client.publish(f"{CHANNEL_PREFIX}:{run_id}", message)
        client.publish(ALL_RUNS_CHANNEL, message)
        return True
    except Exception as e:
        logger.debug(f"Redis publish error: {e}")
        return False


def create_progress_callback(
    run_id: str,
    client=None,
    update_interval: Optional[float] = None,
) -> Callable[[OptimizationProgress], bool]:
    """
    Create a throttled progress callback for OptimizationEngine.optimize().

    Args:
        run_id: Identifier used in the channel name
        client: redis-py client; looked up from REDIS_URL when omitted
        update_interval: Minimum seconds between updates

    Returns:
        Callback returning True when the update was published
    """
    interval = config.PROGRESS_INTERVAL if update_interval is None else update_interval
    redis_client = client if client is not None else get_redis_client()
    last_update_time = [0.0]
    last_progress = [-MIN_PROGRESS_STEP]

    def callback(progress: OptimizationProgress) -> bool:
        current_time = time.time()
        value = progress.progress

        # Always send 0% and 100%
        if (value - last_progress[0] < MIN_PROGRESS_STEP and
                current_time - last_update_time[0] < interval and
                value not in (0, 100)):
            return False

        last_update_time[0] = current_time
        last_progress[0] = value
        return publish_progress(redis_client, run_id, build_payload(run_id, progress))

    return callback


__all__ = [
    "create_progress_callback",
    "get_redis_client",
    "publish_progress",
    "build_payload",
]
