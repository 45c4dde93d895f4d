"""
Progress Stream Adapter - turns persisted progress into a live subscription

Polls the stored snapshot every interval; a push on the ProgressChannel for
the same analysis wakes the poll early. The stream ends right after it has
yielded a completed or failed snapshot.
"""
import asyncio
import logging
from typing import AsyncIterator, Callable, Optional

from models.canonical import JobStage, JobStatus, ProgressSnapshot
from services.progress_channel import ProgressChannel

logger = logging.getLogger(__name__)


def failed_snapshot(analysis_id: str, message: str) -> ProgressSnapshot:
    return ProgressSnapshot(
        analysis_id=analysis_id,
        status=JobStatus.FAILED,
        stage=JobStage.FAILED,
        message=message,
        percentage=0,
    )


class ProgressStream:
    """Caller-facing progress subscription"""

    def __init__(
        self,
        fetch: Callable[[str], ProgressSnapshot],
        channel: Optional[ProgressChannel] = None,
        interval: float = 2.0
    ):
        self.fetch = fetch
        self.channel = channel
        self.interval = interval

    async def subscribe(self, analysis_id: str) -> AsyncIterator[ProgressSnapshot]:
        subscription = self.channel.subscribe(analysis_id) if self.channel else None
        try:
            while True:
                try:
                    snapshot = await asyncio.to_thread(self.fetch, analysis_id)
                except Exception as e:
                    logger.warning(f"Progress fetch failed for {analysis_id}: {e}")
                    snapshot = failed_snapshot(analysis_id, str(e))

                yield snapshot
                if snapshot.is_terminal:
                    return

                if subscription:
                    await subscription.wait(self.interval)
                else:
                    await asyncio.sleep(self.interval)
        finally:
            if subscription:
                self.channel.unsubscribe(subscription)
