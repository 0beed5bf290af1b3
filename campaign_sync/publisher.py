"""
Event Publisher for Sync Runs

Publishes the outcome of a sync run to Redis Pub/Sub after it completes.

Features:
- sync_completed summary event on REDIS_CHANNEL_SYNCED
- one sync_failed event per failed campaign on REDIS_CHANNEL_DLQ, a
  dead-letter feed for external tooling (nothing replays it automatically)
- JSON message serialization
- Structured logging

Usage:
    from campaign_sync.publisher import publish_sync_events

    await publish_sync_events(summary, settings)
"""

import logging
from typing import Optional

from campaign_sync.utils.config import Settings
from campaign_sync.utils.mq import RedisPublisher
from campaign_sync.utils.schemas import SyncEvent, SyncSummary

logger = logging.getLogger(__name__)


def build_events(summary: SyncSummary, settings: Settings) -> list[tuple[str, SyncEvent]]:
    """Channel/event pairs describing a finished run."""
    events = [
        (
            settings.REDIS_CHANNEL_SYNCED,
            SyncEvent(
                type="sync_completed",
                data={
                    "attempted": summary.attempted,
                    "succeeded": summary.succeeded,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                    "partial": summary.partial,
                    "started_at": summary.started_at.isoformat(),
                    "finished_at": summary.finished_at.isoformat() if summary.finished_at else None,
                },
            ),
        )
    ]
    for failure in summary.failures:
        events.append(
            (
                settings.REDIS_CHANNEL_DLQ,
                SyncEvent(
                    type="sync_failed",
                    data={
                        "campaign_id": failure.campaign_id,
                        "error_kind": failure.error_kind,
                        "error_reason": failure.error_message,
                    },
                ),
            )
        )
    return events


async def publish_sync_events(
    summary: SyncSummary,
    settings: Settings,
    publisher: Optional[RedisPublisher] = None,
) -> int:
    """
    Publish the run summary and its dead-letter events.

    Args:
        summary: Finished run summary
        settings: Redis URL and channel names
        publisher: Publisher to use; one is created and closed if omitted

    Returns:
        Number of events published

    Raises:
        redis.RedisError: If publishing fails
    """
    owns_publisher = publisher is None
    publisher = publisher or RedisPublisher.from_settings(settings)
    published = 0

    try:
        for channel, event in build_events(summary, settings):
            await publisher.publish(channel, event.model_dump(mode="json"))
            published += 1

        logger.info(
            "Published sync events",
            extra={
                "channel": settings.REDIS_CHANNEL_SYNCED,
                "dlq_channel": settings.REDIS_CHANNEL_DLQ,
                "events": published,
            },
        )
        return published

    except Exception as e:
        logger.error(
            "Failed to publish event",
            extra={"channel": settings.REDIS_CHANNEL_SYNCED, "published": published, "error": str(e)},
        )
        raise

    finally:
        # Cleanup connection
        if owns_publisher:
            await publisher.close()
