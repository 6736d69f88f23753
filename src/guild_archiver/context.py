"""Per-guild crawl state shared by the backfill crawler and the live monitor."""

from typing import Iterable, Set

from loguru import logger

from .database import ArchiveDatabase
from .models import ChannelState


class ArchiveContext:
    """
    Tracks which channels accept live messages.

    A channel is monitored once its backfill has been scheduled, so live
    messages never land in a channel whose history the crawler has not
    yet been asked to cover. Excluded channels are never monitored.
    """

    def __init__(self, guild_id: str, excluded_channels: Iterable[str] = ()) -> None:
        self.guild_id = guild_id
        self.excluded_channels: Set[str] = set(excluded_channels)
        self.in_progress: Set[str] = set()
        self.completed: Set[str] = set()

    def channel_state(self, channel_id: str) -> ChannelState:
        if channel_id in self.excluded_channels:
            return ChannelState.NOT_MONITORED
        if channel_id in self.completed:
            return ChannelState.CRAWL_COMPLETE
        if channel_id in self.in_progress:
            return ChannelState.CRAWL_IN_PROGRESS
        return ChannelState.NOT_MONITORED

    def is_monitored(self, channel_id: str) -> bool:
        return self.channel_state(channel_id) is not ChannelState.NOT_MONITORED

    def is_excluded(self, channel_id: str) -> bool:
        return channel_id in self.excluded_channels

    def exclude(self, channel_id: str) -> None:
        self.excluded_channels.add(channel_id)

    def include(self, channel_id: str) -> None:
        self.excluded_channels.discard(channel_id)

    def mark_started(self, channel_id: str) -> None:
        if channel_id not in self.completed:
            self.in_progress.add(channel_id)

    def mark_completed(self, channel_id: str) -> None:
        self.in_progress.discard(channel_id)
        self.completed.add(channel_id)

    async def load_cursors(self, db: ArchiveDatabase) -> None:
        """Rebuild channel states from persisted crawl cursors."""
        for cursor in await db.get_channel_cursors():
            if cursor.fetch_completed:
                self.mark_completed(cursor.id)
            elif cursor.fetch_started:
                self.mark_started(cursor.id)

        logger.info(
            f"Guild {self.guild_id}: {len(self.completed)} channels complete, "
            f"{len(self.in_progress)} in progress"
        )
