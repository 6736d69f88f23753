"""
Main Discord bot implementation for guild archiving.

This module contains the GuildArchiver bot class that keeps one archive per
guild, routes gateway events into it, and exposes the administrator commands
that run exports, reconstruction and maintenance.
"""

import asyncio
import re
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import discord
from discord.ext import commands
from loguru import logger

from .config import Config, get_config
from .models import ExportSummary, ReconstructionSummary
from .service import GuildArchive, OperationInProgressError
from .source import (
    DiscordArchiveSource, member_roles_to_models, member_to_model,
    message_to_model, role_to_model
)


def format_export_summary(summary: ExportSummary) -> str:
    return (
        "**Export finished**\n"
        f"Channels: {summary.channels_completed} completed, {summary.channels_skipped} already archived, "
        f"{summary.channels_incomplete} incomplete (of {summary.channels_total})\n"
        f"Messages: {summary.messages_processed:,} processed, {summary.messages_stored:,} stored, "
        f"{summary.messages_dropped:,} bot messages skipped\n"
        f"Storage errors: {summary.storage_errors} | Rate limits: {summary.rate_limit_hits} | "
        f"Duplicates removed: {summary.duplicates_removed}\n"
        f"Elapsed: {summary.elapsed_seconds:.1f}s"
    )


def format_reconstruction_summary(title: str, summary: ReconstructionSummary) -> str:
    lines = [
        f"**{title}**",
        f"Candidates: {summary.candidates} | Processed: {summary.processed} | "
        f"Inserted: {summary.inserted} | Skipped: {summary.skipped}",
    ]
    if summary.details:
        lines.append(", ".join(f"{key}: {value}" for key, value in summary.details.items()))
    if summary.failed_batches:
        lines.append(f"Failed batches: {summary.failed_batches}")
    lines.append("_Reconstructed data is inferred from message history and may be incomplete._")
    return "\n".join(lines)


CHANNEL_REFERENCE = re.compile(
    r"^(?:<#(\d+)>|https?://(?:\w+\.)?discord(?:app)?\.com/channels/\d+/(\d+)(?:/\d+)?/?|(\d+))$"
)


def parse_channel_reference(text: str) -> Optional[str]:
    """Extract a channel ID from a mention, a channel or message link, or a bare ID."""
    match = CHANNEL_REFERENCE.match(text.strip())
    if not match:
        return None
    return next(group for group in match.groups() if group)


def format_exclusions(archive: GuildArchive) -> str:
    channel_ids = archive.list_exclusions()
    if not channel_ids:
        return "No channels are excluded from archiving."
    lines = ["**Excluded channels**"]
    for channel_id in channel_ids:
        suffix = " (EXCLUDED_CHANNELS)" if archive.is_configured_exclusion(channel_id) else ""
        lines.append(f"<#{channel_id}> `{channel_id}`{suffix}")
    return "\n".join(lines)


class GuildArchiver(commands.Bot):
    """
    Discord bot that archives guild messages and membership.

    Each guild gets its own SQLite archive. Live messages go through the
    write-ahead buffer; history is imported with the exportguild command.
    """

    def __init__(self, config: Optional[Config] = None) -> None:
        """
        Initialize the Guild Archiver bot.

        Args:
            config: Configuration object, defaults to loading from environment
        """
        self.config = config or get_config()

        intents = discord.Intents.default()
        intents.members = True
        intents.message_content = True

        super().__init__(
            command_prefix=self.config.bot_prefix,
            intents=intents,
            help_command=None,
            description="Discord guild archiving bot"
        )

        self.archives: Dict[str, GuildArchive] = {}
        self._archive_lock = asyncio.Lock()

        self.stats = {
            "messages_seen": 0,
            "errors": 0,
            "start_time": datetime.now(timezone.utc)
        }

        self._setup_logging()
        self._register_event_handlers()
        self._register_commands()
        self._setup_signal_handlers()

    def _setup_logging(self) -> None:
        """Setup logging configuration."""
        log_level = "DEBUG" if self.config.enable_debug else self.config.log_level.value

        logger.remove()

        logger.add(
            sys.stderr,
            level=log_level,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
            colorize=True
        )

        if self.config.log_file_path:
            logger.add(
                self.config.log_file_path,
                level=log_level,
                format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
                rotation=self.config.log_max_size,
                retention=self.config.log_backup_count,
                compression="gz"
            )

    async def get_archive(self, guild: discord.Guild) -> GuildArchive:
        """Get the guild's archive, opening it on first use."""
        guild_id = str(guild.id)
        async with self._archive_lock:
            archive = self.archives.get(guild_id)
            if archive is None:
                archive = GuildArchive(guild_id, self.config, DiscordArchiveSource(guild))
                await archive.start()
                self.archives[guild_id] = archive
        return archive

    def _register_event_handlers(self) -> None:
        """Register all Discord event handlers."""

        @self.event
        async def on_ready() -> None:
            """Called when the bot is ready."""
            logger.info(f"Bot logged in as {self.user} (ID: {self.user.id})")
            logger.info(f"Connected to {len(self.guilds)} guilds")

            for guild in self.guilds:
                try:
                    await self.get_archive(guild)
                except Exception as e:
                    logger.error(f"Failed to open archive for guild {guild.name}: {e}")
                    self.stats["errors"] += 1

        @self.event
        async def on_message(message: discord.Message) -> None:
            """Stage live messages, then process bot commands."""
            if message.guild is None:
                return

            self.stats["messages_seen"] += 1
            try:
                archive = await self.get_archive(message.guild)
                await archive.monitor.handle_message(message_to_model(message))
            except Exception as e:
                logger.error(f"Failed to handle message {message.id}: {e}")
                self.stats["errors"] += 1

            await self.process_commands(message)

        @self.event
        async def on_member_join(member: discord.Member) -> None:
            archive = await self.get_archive(member.guild)
            await archive.monitor.handle_member_join(member_to_model(member), member_roles_to_models(member))

        @self.event
        async def on_member_remove(member: discord.Member) -> None:
            archive = await self.get_archive(member.guild)
            await archive.monitor.handle_member_remove(member_to_model(member))

        @self.event
        async def on_member_update(before: discord.Member, after: discord.Member) -> None:
            if before.roles == after.roles and before.display_name == after.display_name and before.name == after.name:
                return

            archive = await self.get_archive(after.guild)
            await archive.monitor.handle_member_update(
                member_to_model(before),
                member_to_model(after),
                member_roles_to_models(before),
                member_roles_to_models(after)
            )

        @self.event
        async def on_guild_role_create(role: discord.Role) -> None:
            archive = await self.get_archive(role.guild)
            await archive.monitor.handle_role_create(role_to_model(role))

        @self.event
        async def on_guild_role_update(before: discord.Role, after: discord.Role) -> None:
            archive = await self.get_archive(after.guild)
            await archive.monitor.handle_role_update(role_to_model(after))

        @self.event
        async def on_guild_role_delete(role: discord.Role) -> None:
            archive = await self.get_archive(role.guild)
            await archive.monitor.handle_role_delete(str(role.id))

        @self.event
        async def on_guild_join(guild: discord.Guild) -> None:
            """Handle joining a new guild."""
            logger.info(f"Joined guild: {guild.name} (ID: {guild.id})")
            await self.get_archive(guild)

        @self.event
        async def on_guild_remove(guild: discord.Guild) -> None:
            """Handle leaving a guild."""
            logger.info(f"Left guild: {guild.name} (ID: {guild.id})")
            archive = self.archives.pop(str(guild.id), None)
            if archive is not None:
                await archive.stop()

        @self.event
        async def on_command_error(ctx: commands.Context, error: commands.CommandError) -> None:
            if isinstance(error, (commands.MissingPermissions, commands.NoPrivateMessage)):
                await ctx.reply("You need administrator permissions in a server to use this command.")
                return
            if isinstance(error, commands.CommandNotFound):
                return
            original = getattr(error, "original", error)
            if isinstance(original, OperationInProgressError):
                await ctx.reply(f"Busy: {original}")
                return
            logger.error(f"Command {ctx.command} failed: {original}")
            self.stats["errors"] += 1
            await ctx.reply(f"Command failed: {original}")

        @self.event
        async def on_error(event: str, *args, **kwargs) -> None:
            """Handle Discord API errors."""
            logger.exception(f"Discord error in event {event}")
            self.stats["errors"] += 1

    def _register_commands(self) -> None:
        """Register administrator commands."""

        @self.command(name="exportguild")
        @commands.guild_only()
        @commands.has_permissions(administrator=True)
        async def export_guild(ctx: commands.Context) -> None:
            """Archive the full history of every readable channel."""
            archive = await self.get_archive(ctx.guild)
            if archive.is_busy:
                await ctx.reply(f"Busy: {archive.current_operation} is already running.")
                return
            status = await ctx.send("Starting guild export...")
            summary = await archive.start_export(status)
            await ctx.send(format_export_summary(summary))

        @self.group(name="members", invoke_without_command=True)
        @commands.guild_only()
        @commands.has_permissions(administrator=True)
        async def members(ctx: commands.Context) -> None:
            await ctx.reply(f"Usage: {self.config.bot_prefix}members <left|roles|sync>")

        @members.command(name="left")
        async def members_left(ctx: commands.Context) -> None:
            """Reconstruct members who left before tracking started."""
            archive = await self.get_archive(ctx.guild)
            await ctx.send("Reconstructing departed members from message history...")
            summary = await archive.reconstruct_members()
            await ctx.send(format_reconstruction_summary("Left member reconstruction", summary))

        @members.command(name="roles")
        async def members_roles(ctx: commands.Context) -> None:
            """Reconstruct roles of departed members."""
            archive = await self.get_archive(ctx.guild)
            await ctx.send("Reconstructing roles for departed members...")
            summary = await archive.reconstruct_roles()
            await ctx.send(format_reconstruction_summary("Role reconstruction", summary))

        @members.command(name="sync")
        async def members_sync(ctx: commands.Context) -> None:
            """Import every current member and role."""
            archive = await self.get_archive(ctx.guild)
            await ctx.send("Fetching members...")
            snapshot = [
                (member_to_model(member), member_roles_to_models(member))
                async for member in ctx.guild.fetch_members(limit=None)
            ]
            roles = [role_to_model(role) for role in ctx.guild.roles if not role.is_default()]
            results = await archive.monitor.sync_members(snapshot, roles)
            await ctx.send(
                f"Stored {results['members']} members and {results['roles']} roles "
                f"({results['failed_batches']} failed batches)."
            )

        @self.group(name="ex", invoke_without_command=True)
        @commands.guild_only()
        @commands.has_permissions(administrator=True)
        async def exclusions(ctx: commands.Context) -> None:
            await ctx.reply(f"Usage: {self.config.bot_prefix}ex <list|add|remove> [channel]")

        @exclusions.command(name="list")
        async def exclusions_list(ctx: commands.Context) -> None:
            """Show channels that are never archived."""
            archive = await self.get_archive(ctx.guild)
            await ctx.send(format_exclusions(archive))

        @exclusions.command(name="add")
        async def exclusions_add(ctx: commands.Context, *, reference: str) -> None:
            """Exclude a channel given as a mention, a link or an ID."""
            channel_id = parse_channel_reference(reference)
            if channel_id is None or ctx.guild.get_channel_or_thread(int(channel_id)) is None:
                await ctx.reply(f"No channel in this server matches `{reference}`.")
                return
            archive = await self.get_archive(ctx.guild)
            if await archive.exclude_channel(channel_id):
                await ctx.send(f"<#{channel_id}> will no longer be archived.")
            else:
                await ctx.reply(f"<#{channel_id}> is already excluded.")

        @exclusions.command(name="remove")
        async def exclusions_remove(ctx: commands.Context, *, reference: str) -> None:
            """Archive a previously excluded channel again."""
            channel_id = parse_channel_reference(reference)
            if channel_id is None:
                await ctx.reply(f"`{reference}` is not a channel mention, link or ID.")
                return
            archive = await self.get_archive(ctx.guild)
            try:
                removed = await archive.include_channel(channel_id)
            except ValueError as e:
                await ctx.reply(str(e))
                return
            if removed:
                await ctx.send(f"<#{channel_id}> will be archived again from the next export.")
            else:
                await ctx.reply(f"<#{channel_id}> is not excluded.")

        @self.command(name="walstats")
        @commands.guild_only()
        @commands.has_permissions(administrator=True)
        async def wal_stats(ctx: commands.Context) -> None:
            """Show write-ahead buffer statistics."""
            archive = await self.get_archive(ctx.guild)
            stats = await archive.get_stats()
            await ctx.send(
                "**Write-ahead buffer**\n"
                f"Staged: {stats.total_entries} | Ready: {stats.ready_to_process}\n"
                f"Oldest: {stats.oldest_age} | Newest: {stats.newest_age}"
            )

        @self.command(name="dedupe")
        @commands.guild_only()
        @commands.has_permissions(administrator=True)
        async def dedupe(ctx: commands.Context) -> None:
            """Remove duplicate message rows."""
            archive = await self.get_archive(ctx.guild)
            duplicates = await archive.check_duplicates()
            await ctx.send(f"Removed duplicates for {duplicates} message IDs.")

        @self.command(name="vacuum")
        @commands.guild_only()
        @commands.has_permissions(administrator=True)
        async def vacuum(ctx: commands.Context) -> None:
            """Compact the archive file."""
            archive = await self.get_archive(ctx.guild)
            result = await archive.vacuum()
            await ctx.send(
                f"Vacuum complete: {result.size_before_mb:.2f} MB -> {result.size_after_mb:.2f} MB "
                f"({result.percent_saved:.1f}% saved)"
            )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down gracefully...")
            asyncio.create_task(self.close())

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def get_stats(self) -> Dict[str, Any]:
        """
        Get bot statistics.

        Returns:
            Dictionary containing bot statistics
        """
        uptime = datetime.now(timezone.utc) - self.stats["start_time"]
        staged = {}
        for guild_id, archive in self.archives.items():
            staged[guild_id] = (await archive.get_stats()).total_entries

        return {
            "uptime_seconds": uptime.total_seconds(),
            "messages_seen": self.stats["messages_seen"],
            "errors": self.stats["errors"],
            "guilds": len(self.guilds),
            "staged_messages": staged,
            "busy_guilds": {
                guild_id: archive.current_operation
                for guild_id, archive in self.archives.items() if archive.is_busy
            }
        }

    async def close(self) -> None:
        """Close the bot and cleanup resources."""
        logger.info("Shutting down bot...")

        for archive in list(self.archives.values()):
            try:
                await archive.stop()
            except Exception as e:
                logger.error(f"Error closing archive for guild {archive.guild_id}: {e}")
        self.archives.clear()

        await super().close()

        logger.info("Bot shutdown complete")


async def main() -> None:
    """Main entry point for the bot."""
    try:
        config = get_config()
        bot = GuildArchiver(config)

        logger.info("Starting Guild Archiver...")
        await bot.start(config.discord_token)

    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
