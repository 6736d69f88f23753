"""Tests for the bot's commands and reply formatting."""

import pytest
import pytest_asyncio

from guild_archiver.bot import (
    GuildArchiver, format_export_summary, format_reconstruction_summary, parse_channel_reference
)
from guild_archiver.models import ExportSummary, ReconstructionSummary
from guild_archiver.service import EXCLUSIONS_KEY, GuildArchive

from conftest import make_message


class FakeGuild:
    def __init__(self, guild_id, channel_ids):
        self.id = guild_id
        self.name = "Test Guild"
        self.channels = {channel_id: object() for channel_id in channel_ids}

    def get_channel_or_thread(self, channel_id):
        return self.channels.get(channel_id)


class FakeContext:
    """Command context that records every reply."""

    def __init__(self, guild):
        self.guild = guild
        self.replies = []
        self.sent = []

    async def reply(self, text):
        self.replies.append(text)

    async def send(self, text):
        self.sent.append(text)


@pytest_asyncio.fixture
async def bot(config, source, governor, monkeypatch):
    monkeypatch.setattr(GuildArchiver, "_setup_signal_handlers", lambda self: None)
    config.excluded_channels = "999"
    archiver = GuildArchiver(config)
    archive = GuildArchive("1", config, source, governor=governor)
    await archive.start(run_timers=False)
    archiver.archives["1"] = archive
    yield archiver
    await archive.stop()


@pytest.fixture
def ctx():
    return FakeContext(FakeGuild(1, [2, 3, 999]))


async def invoke(bot, name, ctx, **kwargs):
    await bot.get_command(name).callback(ctx, **kwargs)


class TestFormatting:
    """Test command reply text."""

    def test_export_summary(self):
        summary = ExportSummary(
            guild_id="1",
            channels_total=5,
            channels_completed=3,
            channels_skipped=1,
            channels_incomplete=1,
            messages_processed=12345,
            messages_stored=12000,
            messages_dropped=345,
            elapsed_seconds=61.25,
        )

        text = format_export_summary(summary)

        assert "3 completed, 1 already archived, 1 incomplete (of 5)" in text
        assert "12,345 processed" in text
        assert "Elapsed: 61.2s" in text or "Elapsed: 61.3s" in text

    def test_reconstruction_summary(self):
        summary = ReconstructionSummary(
            candidates=4, processed=4, inserted=3, skipped=1, failed_batches=1,
            details={"role_history": 2, "message_mention": 1}
        )

        text = format_reconstruction_summary("Role reconstruction", summary)

        assert text.startswith("**Role reconstruction**")
        assert "Inserted: 3" in text
        assert "role_history: 2" in text
        assert "Failed batches: 1" in text
        assert "may be incomplete" in text


class TestChannelReferences:
    """Test parsing of channel arguments."""

    @pytest.mark.parametrize("text,expected", [
        ("<#123>", "123"),
        ("123", "123"),
        ("  123  ", "123"),
        ("https://discord.com/channels/1/123", "123"),
        ("https://discord.com/channels/1/123/456", "123"),
        ("https://ptb.discord.com/channels/1/123/", "123"),
        ("https://discordapp.com/channels/1/123", "123"),
        ("general", None),
        ("<@123>", None),
        ("https://example.com/channels/1/123", None),
    ])
    def test_parse(self, text, expected):
        assert parse_channel_reference(text) == expected


class TestExclusionCommands:
    """Test the ex command group."""

    @pytest.mark.asyncio
    async def test_commands_are_registered(self, bot):
        for name in ("ex", "ex list", "ex add", "ex remove", "exportguild", "walstats", "dedupe", "vacuum"):
            assert bot.get_command(name) is not None

    @pytest.mark.asyncio
    async def test_add_excludes_and_persists(self, bot, ctx):
        archive = bot.archives["1"]

        await invoke(bot, "ex add", ctx, reference="<#2>")

        assert ctx.sent == ["<#2> will no longer be archived."]
        assert archive.context.is_excluded("2") is True
        assert (await archive.db.get_metadata())[EXCLUSIONS_KEY] == '["2"]'

    @pytest.mark.asyncio
    async def test_add_accepts_links_and_ids(self, bot, ctx):
        await invoke(bot, "ex add", ctx, reference="https://discord.com/channels/1/3")
        await invoke(bot, "ex add", ctx, reference="3")

        assert ctx.sent == ["<#3> will no longer be archived."]
        assert ctx.replies == ["<#3> is already excluded."]

    @pytest.mark.asyncio
    async def test_add_rejects_channels_outside_the_guild(self, bot, ctx):
        await invoke(bot, "ex add", ctx, reference="<#77>")
        await invoke(bot, "ex add", ctx, reference="not-a-channel")

        assert len(ctx.replies) == 2
        assert all(reply.startswith("No channel in this server") for reply in ctx.replies)
        assert bot.archives["1"].list_exclusions() == ["999"]

    @pytest.mark.asyncio
    async def test_remove(self, bot, ctx):
        archive = bot.archives["1"]
        await invoke(bot, "ex add", ctx, reference="2")

        await invoke(bot, "ex remove", ctx, reference="<#2>")
        await invoke(bot, "ex remove", ctx, reference="<#2>")

        assert ctx.sent[-1] == "<#2> will be archived again from the next export."
        assert ctx.replies == ["<#2> is not excluded."]
        assert archive.context.is_excluded("2") is False
        assert (await archive.db.get_metadata())[EXCLUSIONS_KEY] == "[]"

    @pytest.mark.asyncio
    async def test_remove_refuses_configured_exclusions(self, bot, ctx):
        await invoke(bot, "ex remove", ctx, reference="999")

        assert "EXCLUDED_CHANNELS" in ctx.replies[0]
        assert bot.archives["1"].context.is_excluded("999") is True

    @pytest.mark.asyncio
    async def test_list(self, bot, ctx):
        await invoke(bot, "ex add", ctx, reference="2")

        await invoke(bot, "ex list", ctx)

        listing = ctx.sent[-1]
        assert listing.startswith("**Excluded channels**")
        assert "<#2> `2`\n" in listing
        assert "<#999> `999` (EXCLUDED_CHANNELS)" in listing


class TestMaintenanceCommands:
    """Test the maintenance commands against a live archive."""

    @pytest.mark.asyncio
    async def test_walstats(self, bot, ctx):
        archive = bot.archives["1"]
        await archive.db.stage_wal_entry(make_message(1, timestamp=1000))

        await invoke(bot, "walstats", ctx)

        assert "Staged: 1 | Ready: 1" in ctx.sent[0]

    @pytest.mark.asyncio
    async def test_dedupe_and_vacuum(self, bot, ctx):
        await bot.archives["1"].db.upsert_message(make_message(1))

        await invoke(bot, "dedupe", ctx)
        await invoke(bot, "vacuum", ctx)

        assert ctx.sent[0] == "Removed duplicates for 0 message IDs."
        assert ctx.sent[1].startswith("Vacuum complete:")

    @pytest.mark.asyncio
    async def test_exportguild_reports_busy_archive(self, bot, ctx):
        archive = bot.archives["1"]
        await archive._operation_lock.acquire()
        archive.current_operation = "vacuum"
        try:
            await invoke(bot, "exportguild", ctx)
        finally:
            archive.current_operation = None
            archive._operation_lock.release()

        assert ctx.replies == ["Busy: vacuum is already running."]
        assert ctx.sent == []

    @pytest.mark.asyncio
    async def test_bot_stats(self, bot):
        stats = await bot.get_stats()

        assert stats["staged_messages"] == {"1": 0}
        assert stats["busy_guilds"] == {}
        assert stats["errors"] == 0
