"""
Write-ahead buffer for live messages.

Live messages are staged first and only archived once they are older than
the dwell time and have been confirmed upstream, so messages deleted
shortly after being sent never reach the archive.
"""

from typing import Callable, Dict, Optional

from discord.ext import tasks
from loguru import logger

from .config import Config
from .database import ArchiveDatabase
from .models import MessageModel, WalStats, epoch_ms
from .source import ArchiveSource


def format_duration(ms: Optional[int]) -> str:
    """Render a millisecond duration as "1d 2h 3m 4s"."""
    if ms is None:
        return "N/A"

    seconds = max(int(ms // 1000), 0)
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)

    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")
    return " ".join(parts)


class WriteAheadBuffer:
    """
    Stages live messages and promotes them to the archive after verification.

    A sweep claims each ready entry before touching it, so an overlapping
    sweep never promotes the same entry twice, and releases the claim on any
    failure so the next sweep retries it.
    """

    def __init__(
        self,
        db: ArchiveDatabase,
        source: Optional[ArchiveSource],
        config: Config,
        clock: Callable[[], int] = epoch_ms
    ) -> None:
        """
        Initialize the buffer.

        Args:
            db: Archive database holding the staging table
            source: Upstream used to re-verify staged messages
            config: Configuration providing the dwell time and sweep interval
            clock: Returns the current time in epoch milliseconds
        """
        self.db = db
        self.source = source
        self.config = config
        self.clock = clock
        self.dwell_time_ms = int(config.wal_dwell_time * 1000)
        self._loop = tasks.loop(seconds=config.wal_check_interval)(self._scheduled_sweep)
        self._loop.error(self._on_loop_error)

    async def stage(self, message: MessageModel) -> bool:
        """
        Stage a live message.

        Returns:
            True if the message was newly staged, False if it was already staged
        """
        inserted = await self.db.stage_wal_entry(message)
        if inserted:
            logger.debug(f"Staged message {message.id} from channel {message.channel_id}")
        return inserted

    async def sweep(self) -> Dict[str, int]:
        """
        Verify and archive every staged entry past its dwell time.

        Returns:
            Counters for promoted, duplicate, deleted-upstream, skipped and
            retried entries
        """
        results = {"promoted": 0, "duplicates": 0, "deleted_upstream": 0, "skipped": 0, "retried": 0}
        cutoff = self.clock() - self.dwell_time_ms
        entries = await self.db.get_ready_wal_entries(cutoff)

        if not entries:
            logger.debug("Write-ahead buffer sweep: nothing ready")
            return results

        logger.info(f"Write-ahead buffer sweep: {len(entries)} entries ready")

        for entry in entries:
            if not await self.db.claim_wal_entry(entry.id):
                results["skipped"] += 1
                continue

            try:
                if await self.db.message_exists(entry.id):
                    await self.db.delete_wal_entry(entry.id)
                    results["duplicates"] += 1
                    continue

                if not await self.source.message_exists(entry.channel_id, entry.id):
                    await self.db.delete_wal_entry(entry.id)
                    results["deleted_upstream"] += 1
                    logger.debug(f"Message {entry.id} no longer exists upstream; dropped")
                    continue

                await self.db.promote_wal_entry(entry)
                results["promoted"] += 1

            except Exception as e:
                logger.warning(f"Failed to process staged message {entry.id}, will retry: {e}")
                results["retried"] += 1
                try:
                    await self.db.release_wal_entry(entry.id)
                except Exception as release_error:
                    logger.error(f"Failed to release staged message {entry.id}: {release_error}")

        logger.info(
            f"Write-ahead buffer sweep done: {results['promoted']} archived, "
            f"{results['duplicates']} duplicates, {results['deleted_upstream']} deleted upstream, "
            f"{results['retried']} to retry"
        )
        return results

    async def recover_claims(self) -> int:
        """Release entries left claimed by a sweep interrupted before shutdown."""
        rows = await self.db.fetchall("SELECT id FROM message_wal WHERE processed = 1")
        for row in rows:
            await self.db.release_wal_entry(row["id"])
        if rows:
            logger.warning(f"Released {len(rows)} staged messages claimed by an interrupted sweep")
        return len(rows)

    async def get_stats(self) -> WalStats:
        """Get write-ahead buffer statistics."""
        now = self.clock()
        counts = await self.db.get_wal_counts(now - self.dwell_time_ms)

        oldest = counts.get("oldest_timestamp")
        newest = counts.get("newest_timestamp")
        oldest_age = now - oldest if oldest is not None else None
        newest_age = now - newest if newest is not None else None

        return WalStats(
            total_entries=counts["total_entries"],
            ready_to_process=counts["ready_to_process"],
            oldest_timestamp=oldest,
            newest_timestamp=newest,
            oldest_age_ms=oldest_age,
            newest_age_ms=newest_age,
            oldest_age=format_duration(oldest_age),
            newest_age=format_duration(newest_age),
        )

    async def _scheduled_sweep(self) -> None:
        try:
            await self.sweep()
        except Exception as e:
            logger.error(f"Write-ahead buffer sweep failed, retrying next tick: {e}")

    async def _on_loop_error(self, error: BaseException) -> None:
        logger.error(f"Write-ahead buffer timer error: {error}")

    def start(self) -> None:
        """Start the periodic sweep."""
        if not self._loop.is_running():
            logger.info(
                f"Starting write-ahead buffer sweeps every {self.config.wal_check_interval}s "
                f"(dwell time {self.config.wal_dwell_time}s)"
            )
            self._loop.start()

    def stop(self) -> None:
        if self._loop.is_running():
            self._loop.cancel()

    @property
    def is_running(self) -> bool:
        return self._loop.is_running()
