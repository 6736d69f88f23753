"""
Per-guild archive facade.

GuildArchive wires the store, write-ahead buffer, crawler, monitor, memory
governor and reconstructor for one guild and exposes the operations the
bot commands and the CLI call.
"""

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from loguru import logger

from .config import Config
from .context import ArchiveContext
from .crawler import BackfillCrawler, ExportState, StatusReporter
from .database import ArchiveDatabase
from .memory import MemoryGovernor
from .models import CrawlOutcome, ExportSummary, ReconstructionSummary, VacuumResult, WalStats, epoch_ms
from .monitor import LiveEventMonitor
from .reconstruction import MembershipReconstructor
from .source import ArchiveSource
from .wal import WriteAheadBuffer


# guild_metadata key holding channel IDs excluded at runtime
EXCLUSIONS_KEY = "excluded_channels"


class OperationInProgressError(Exception):
    """Raised when a long-running operation is already running for a guild."""
    pass


class GuildArchive:
    """All archive components for a single guild."""

    def __init__(
        self,
        guild_id: str,
        config: Config,
        source: ArchiveSource,
        db: Optional[ArchiveDatabase] = None,
        governor: Optional[MemoryGovernor] = None,
        clock: Callable[[], int] = epoch_ms
    ) -> None:
        """
        Initialize the archive components.

        Args:
            guild_id: Discord guild ID
            config: Configuration object
            source: Upstream access for the guild
            db: Archive database (defaults to the guild's file under database_dir)
            governor: Memory governor (defaults to one sampling this process)
            clock: Returns the current time in epoch milliseconds
        """
        self.guild_id = guild_id
        self.config = config
        self.source = source
        self.db = db or ArchiveDatabase(config.database_path_for(guild_id), config)
        self.context = ArchiveContext(guild_id, config.excluded_channels_list)
        self.governor = governor or MemoryGovernor(config)
        self.wal = WriteAheadBuffer(self.db, source, config, clock=clock)
        self.monitor = LiveEventMonitor(self.db, self.wal, self.context, config)
        self.reconstructor = MembershipReconstructor(self.db, source, config)
        self._operation_lock = asyncio.Lock()
        self.current_operation: Optional[str] = None

    async def start(self, run_timers: bool = True) -> None:
        """Open the archive, restore crawl state and start the sweep timer."""
        await self.db.initialize()
        await self._load_exclusions()
        await self.context.load_cursors(self.db)
        await self.wal.recover_claims()
        if run_timers:
            self.wal.start()
        logger.info(f"Archive for guild {self.guild_id} started")

    async def stop(self) -> None:
        self.wal.stop()
        self.governor.stop()
        await self.db.close()
        logger.info(f"Archive for guild {self.guild_id} stopped")

    @property
    def is_busy(self) -> bool:
        return self._operation_lock.locked()

    async def _run_exclusive(self, name: str, operation: Callable[[], Any]) -> Any:
        if self._operation_lock.locked():
            raise OperationInProgressError(
                f"{self.current_operation} is already running for guild {self.guild_id}"
            )
        async with self._operation_lock:
            self.current_operation = name
            try:
                return await operation()
            finally:
                self.current_operation = None

    async def start_export(self, status_ref: Any = None) -> ExportSummary:
        """
        Crawl every readable channel into the archive.

        Args:
            status_ref: Message to edit with progress updates

        Returns:
            Export counters and elapsed time
        """
        return await self._run_exclusive("export", lambda: self._export(status_ref))

    async def _export(self, status_ref: Any) -> ExportSummary:
        started = time.monotonic()
        channels = [
            channel for channel in await self.source.list_visible_text_channels(self.context.excluded_channels)
            if not self.context.is_excluded(channel.id)
        ]

        # Register every target before crawling so live messages are staged from now on
        for channel in channels:
            await self.db.mark_channel_started(channel)
            self.context.mark_started(channel.id)

        logger.info(f"Exporting {len(channels)} channels for guild {self.guild_id}")

        reporter = StatusReporter(self.source, status_ref, self.config.status_update_interval)
        crawler = BackfillCrawler(self.db, self.source, self.context, self.governor, self.config, reporter)
        state = ExportState()

        await reporter.maybe_update(state, force=True)
        self.governor.start()
        try:
            await crawler.crawl_all(channels, state)
        finally:
            self.governor.stop()

        state.duplicates_removed = await self.db.check_duplicates()
        elapsed = time.monotonic() - started

        summary = ExportSummary(
            guild_id=self.guild_id,
            channels_total=len(channels),
            channels_completed=state.count(CrawlOutcome.COMPLETED),
            channels_skipped=state.count(CrawlOutcome.SKIPPED),
            channels_incomplete=state.count(CrawlOutcome.ABANDONED) + state.count(CrawlOutcome.FAILED),
            messages_processed=state.messages_processed,
            messages_stored=state.messages_stored,
            messages_dropped=state.messages_dropped,
            storage_errors=state.storage_errors,
            rate_limit_hits=state.rate_limit_hits,
            duplicates_removed=state.duplicates_removed,
            elapsed_seconds=round(elapsed, 2),
            completed_at=datetime.now(timezone.utc),
        )

        await self.db.set_metadata({
            "import_completed_at": summary.completed_at.isoformat(),
            "import_channels_total": summary.channels_total,
            "import_channels_incomplete": summary.channels_incomplete,
            "import_messages_processed": summary.messages_processed,
            "import_messages_stored": summary.messages_stored,
            "import_messages_dropped": summary.messages_dropped,
            "import_storage_errors": summary.storage_errors,
            "import_rate_limit_hits": summary.rate_limit_hits,
            "import_duration_seconds": summary.elapsed_seconds,
        })
        await reporter.maybe_update(state, force=True, final=True)

        logger.info(
            f"Export for guild {self.guild_id} finished in {summary.elapsed_seconds}s: "
            f"{summary.messages_stored} stored, {summary.channels_incomplete} channels incomplete"
        )
        return summary

    def list_exclusions(self) -> List[str]:
        return sorted(self.context.excluded_channels)

    def is_configured_exclusion(self, channel_id: str) -> bool:
        return channel_id in self.config.excluded_channels_list

    async def exclude_channel(self, channel_id: str) -> bool:
        """
        Stop archiving a channel and remember the choice across restarts.

        Returns:
            False if the channel was already excluded
        """
        if self.context.is_excluded(channel_id):
            return False
        self.context.exclude(channel_id)
        await self._save_exclusions()
        logger.info(f"Guild {self.guild_id}: channel {channel_id} excluded")
        return True

    async def include_channel(self, channel_id: str) -> bool:
        """
        Archive a previously excluded channel again.

        Returns:
            False if the channel was not excluded

        Raises:
            ValueError: If the exclusion comes from EXCLUDED_CHANNELS
        """
        if self.is_configured_exclusion(channel_id):
            raise ValueError(f"Channel {channel_id} is excluded by the EXCLUDED_CHANNELS setting")
        if not self.context.is_excluded(channel_id):
            return False
        self.context.include(channel_id)
        await self._save_exclusions()
        logger.info(f"Guild {self.guild_id}: channel {channel_id} included")
        return True

    async def _save_exclusions(self) -> None:
        added = sorted(self.context.excluded_channels - set(self.config.excluded_channels_list))
        await self.db.set_metadata({EXCLUSIONS_KEY: json.dumps(added)})

    async def _load_exclusions(self) -> None:
        stored = (await self.db.get_metadata()).get(EXCLUSIONS_KEY)
        if not stored:
            return
        try:
            channel_ids = json.loads(stored)
        except ValueError:
            channel_ids = None
        if not isinstance(channel_ids, list):
            logger.warning(f"Guild {self.guild_id}: ignoring unreadable stored exclusions {stored!r}")
            return
        for channel_id in channel_ids:
            self.context.exclude(str(channel_id))

    async def reconstruct_members(self) -> ReconstructionSummary:
        return await self._run_exclusive("member reconstruction", self.reconstructor.reconstruct_left_members)

    async def reconstruct_roles(self) -> ReconstructionSummary:
        return await self._run_exclusive("role reconstruction", self.reconstructor.reconstruct_roles)

    async def check_duplicates(self) -> int:
        return await self.db.check_duplicates()

    async def get_stats(self) -> WalStats:
        return await self.wal.get_stats()

    async def vacuum(self) -> VacuumResult:
        return await self._run_exclusive("vacuum", self.db.vacuum)
