"""
Backfill crawler for channel history.

Walks each channel from newest to oldest in fixed-size pages, storing
messages in batches and persisting a cursor after each batch so an
interrupted crawl resumes where it stopped. Channels are crawled by a
bounded pool of workers.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .config import Config
from .context import ArchiveContext
from .database import ArchiveDatabase
from .memory import MemoryGovernor
from .models import ChannelRef, CrawlOutcome, MessageModel
from .source import ArchiveSource, RateLimitedError, UpstreamForbidden, UpstreamNotFound
from .wal import format_duration


@dataclass
class ExportState:
    """Counters shared by every worker of one export."""

    channels_total: int = 0
    messages_processed: int = 0
    messages_stored: int = 0
    messages_dropped: int = 0
    storage_errors: int = 0
    rate_limit_hits: int = 0
    fetch_requests: int = 0
    duplicates_removed: int = 0
    active_crawls: int = 0
    max_active_crawls: int = 0
    outcomes: Dict[str, CrawlOutcome] = field(default_factory=dict)
    active_channels: Dict[str, str] = field(default_factory=dict)
    channel_processed: Dict[str, int] = field(default_factory=dict)
    channel_started_at: Dict[str, float] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)

    def count(self, outcome: CrawlOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value is outcome)

    @property
    def channels_finished(self) -> int:
        return len(self.outcomes)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at

    def channel_speed(self, channel_id: str) -> float:
        started = self.channel_started_at.get(channel_id)
        if started is None:
            return 0.0
        elapsed = time.monotonic() - started
        if elapsed <= 0:
            return 0.0
        return self.channel_processed.get(channel_id, 0) / elapsed


class StatusReporter:
    """Edits a status message with export progress, at most once per interval."""

    def __init__(
        self,
        source: ArchiveSource,
        ref: Any,
        interval: float,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.source = source
        self.ref = ref
        self.interval = interval
        self.clock = clock
        self.updates_sent = 0
        self._last_update: Optional[float] = None

    def render(self, state: ExportState, final: bool = False) -> str:
        title = "Guild export complete" if final else "Guild export in progress"
        lines = [
            f"**{title}**",
            f"Channels: {state.count(CrawlOutcome.COMPLETED) + state.count(CrawlOutcome.SKIPPED)}"
            f"/{state.channels_total} complete, {state.active_crawls} active",
            f"Messages: {state.messages_processed:,} processed, {state.messages_stored:,} stored, "
            f"{state.messages_dropped:,} bot messages skipped",
            f"Rate limits: {state.rate_limit_hits} | Storage errors: {state.storage_errors}",
            f"Elapsed: {format_duration(int(state.elapsed_seconds * 1000))}",
        ]
        incomplete = state.count(CrawlOutcome.ABANDONED) + state.count(CrawlOutcome.FAILED)
        if incomplete:
            lines.append(f"Incomplete channels: {incomplete}")
        if not final and state.active_channels:
            active = sorted(state.active_channels.items(), key=lambda item: item[1])[:5]
            lines.append("Active: " + ", ".join(
                f"#{name} ({state.channel_speed(channel_id):.1f} msg/s)" for channel_id, name in active
            ))
        return "\n".join(lines)

    async def maybe_update(self, state: ExportState, force: bool = False, final: bool = False) -> bool:
        """
        Push a progress update if the interval has elapsed.

        Returns:
            True if the status message was edited
        """
        now = self.clock()
        if not force and self._last_update is not None and now - self._last_update < self.interval:
            return False

        self._last_update = now
        try:
            await self.source.edit_status_message(self.ref, self.render(state, final=final))
            self.updates_sent += 1
            return True
        except Exception as e:
            logger.warning(f"Failed to update status message: {e}")
            return False


class BackfillCrawler:
    """
    Crawls channel history into the archive.

    Each channel is paged strictly sequentially; different channels are
    crawled concurrently by up to max_concurrent_crawls workers.
    """

    def __init__(
        self,
        db: ArchiveDatabase,
        source: ArchiveSource,
        context: ArchiveContext,
        governor: MemoryGovernor,
        config: Config,
        reporter: Optional[StatusReporter] = None
    ) -> None:
        self.db = db
        self.source = source
        self.context = context
        self.governor = governor
        self.config = config
        self.reporter = reporter

    async def crawl_channel(self, channel: ChannelRef, state: Optional[ExportState] = None) -> CrawlOutcome:
        """
        Crawl one channel's history, resuming from its persisted cursor.

        Args:
            channel: Channel or thread to crawl
            state: Shared export counters

        Returns:
            How the crawl ended
        """
        state = state if state is not None else ExportState(channels_total=1)

        if self.context.is_excluded(channel.id):
            state.outcomes[channel.id] = CrawlOutcome.SKIPPED
            return CrawlOutcome.SKIPPED

        cursor = await self.db.get_channel_cursor(channel.id)
        if cursor is not None and cursor.fetch_completed:
            logger.debug(f"#{channel.name} already archived, skipping")
            self.context.mark_completed(channel.id)
            state.outcomes[channel.id] = CrawlOutcome.SKIPPED
            return CrawlOutcome.SKIPPED

        if cursor is None or not cursor.fetch_started:
            await self.db.mark_channel_started(channel)
        self.context.mark_started(channel.id)

        before = cursor.last_message_id if cursor is not None else None
        if before:
            logger.info(f"Resuming #{channel.name} before message {before}")
        else:
            logger.info(f"Starting crawl of #{channel.name} ({channel.id})")

        page_size = self.config.history_page_size
        batch: List[MessageModel] = []
        last_processed_id = before
        fetch_cycles = 0
        outcome = CrawlOutcome.FAILED

        state.active_crawls += 1
        state.max_active_crawls = max(state.max_active_crawls, state.active_crawls)
        state.active_channels[channel.id] = channel.name
        state.channel_started_at[channel.id] = time.monotonic()
        state.channel_processed.setdefault(channel.id, 0)

        try:
            while True:
                await self.governor.wait_until_clear()
                fetch_cycles += 1
                if fetch_cycles % self.config.memory_check_every_fetches == 0:
                    await self.governor.check_and_handle("FETCH_CYCLE")
                    await self.governor.wait_until_clear()

                try:
                    page = await self.source.fetch_history_page(channel.id, before, page_size)
                except RateLimitedError as e:
                    state.rate_limit_hits += 1
                    delay = e.retry_after if e.retry_after is not None else self.config.default_rate_limit_retry
                    logger.warning(f"Rate limited in #{channel.name}, retrying in {delay:.2f}s")
                    await asyncio.sleep(delay)
                    continue
                except (UpstreamNotFound, UpstreamForbidden) as e:
                    logger.warning(f"Stopping crawl of #{channel.name}: {e}")
                    await self._flush(channel, batch, state)
                    outcome = CrawlOutcome.ABANDONED
                    break
                except Exception as e:
                    logger.error(f"Error crawling #{channel.name}, crawl left resumable: {e}")
                    await self._flush(channel, batch, state)
                    outcome = CrawlOutcome.FAILED
                    break

                state.fetch_requests += 1

                if not page:
                    await self._flush(channel, batch, state)
                    await self._complete(channel, last_processed_id)
                    outcome = CrawlOutcome.COMPLETED
                    break

                for message in page:
                    state.messages_processed += 1
                    state.channel_processed[channel.id] += 1
                    if message.author_bot:
                        state.messages_dropped += 1
                        continue
                    batch.append(message)
                    if len(batch) >= self.config.db_batch_size:
                        await self._flush(channel, batch, state)

                last_processed_id = page[-1].id
                before = page[-1].id

                if len(page) < page_size:
                    await self._flush(channel, batch, state)
                    await self._complete(channel, last_processed_id)
                    outcome = CrawlOutcome.COMPLETED
                    break

                if self.reporter is not None:
                    await self.reporter.maybe_update(state)
        finally:
            state.active_crawls -= 1
            state.active_channels.pop(channel.id, None)
            state.outcomes[channel.id] = outcome

        logger.info(
            f"Crawl of #{channel.name} {outcome.value}: "
            f"{state.channel_processed.get(channel.id, 0)} messages processed"
        )
        return outcome

    async def _complete(self, channel: ChannelRef, last_processed_id: Optional[str]) -> None:
        await self.db.mark_channel_completed(channel.id, last_processed_id)
        self.context.mark_completed(channel.id)

    async def _flush(self, channel: ChannelRef, batch: List[MessageModel], state: ExportState) -> int:
        """
        Store and clear the pending batch, then advance the channel cursor.

        Falls back to row-by-row writes when the bulk insert fails.

        Returns:
            Number of messages stored
        """
        if not batch:
            return 0

        messages = list(batch)
        batch.clear()

        try:
            stored = await self.db.upsert_messages(messages)
        except Exception as e:
            logger.warning(f"Batch insert of {len(messages)} messages failed, storing individually: {e}")
            stored = 0
            for message in messages:
                try:
                    await self.db.upsert_message(message)
                    stored += 1
                except Exception as row_error:
                    state.storage_errors += 1
                    logger.error(f"Failed to store message {message.id}: {row_error}")

        state.messages_stored += stored

        # Pages arrive newest first, so the last message is the oldest stored
        try:
            await self.db.update_channel_cursor(channel.id, messages[-1].id)
        except Exception as e:
            logger.error(f"Failed to persist cursor for #{channel.name}: {e}")

        return stored

    async def crawl_all(self, channels: List[ChannelRef], state: Optional[ExportState] = None) -> ExportState:
        """
        Crawl every channel with a bounded worker pool.

        Returns once every channel has reached a terminal state.

        Args:
            channels: Channels to crawl
            state: Shared export counters (created if omitted)

        Returns:
            The export counters
        """
        state = state if state is not None else ExportState()
        state.channels_total = len(channels)
        next_index = 0

        async def worker(worker_id: int) -> None:
            nonlocal next_index
            while next_index < len(channels):
                channel = channels[next_index]
                next_index += 1
                try:
                    await self.crawl_channel(channel, state)
                except Exception as e:
                    logger.error(f"Worker {worker_id} failed on #{channel.name}: {e}")
                    state.outcomes[channel.id] = CrawlOutcome.FAILED

        worker_count = min(self.config.max_concurrent_crawls, len(channels))
        logger.info(f"Crawling {len(channels)} channels with {worker_count} workers")
        await asyncio.gather(*(worker(i) for i in range(worker_count)))
        return state
