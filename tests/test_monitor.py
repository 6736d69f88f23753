"""Tests for live event handling."""

import pytest

from guild_archiver.context import ArchiveContext
from guild_archiver.models import GuildRoleModel, MemberRoleModel, RoleAction
from guild_archiver.monitor import LiveEventMonitor
from guild_archiver.wal import WriteAheadBuffer

from conftest import make_member, make_message


@pytest.fixture
def context():
    return ArchiveContext("1", excluded_channels=["999"])


@pytest.fixture
def monitor(db, source, config, context):
    wal = WriteAheadBuffer(db, source, config)
    return LiveEventMonitor(db, wal, context, config)


def role(member_id, role_id, added_at=1, name=None, position=0):
    return MemberRoleModel(
        member_id=member_id, role_id=role_id, role_name=name or role_id,
        role_position=position, added_at=added_at
    )


class TestLiveMessages:
    """Test staging of live messages."""

    @pytest.mark.asyncio
    async def test_unmonitored_channel_is_ignored(self, monitor, db):
        assert await monitor.handle_message(make_message(1, channel_id="100")) is False
        assert await db.get_wal_entry("1") is None
        assert monitor.stats["messages_ignored"] == 1

    @pytest.mark.asyncio
    async def test_monitored_channel_is_staged(self, monitor, context, db):
        context.mark_started("100")

        assert await monitor.handle_message(make_message(1, channel_id="100")) is True
        assert await db.get_wal_entry("1") is not None
        assert await db.message_exists("1") is False

        context.mark_completed("100")
        assert await monitor.handle_message(make_message(2, channel_id="100")) is True
        assert monitor.stats["messages_staged"] == 2

    @pytest.mark.asyncio
    async def test_bot_and_excluded_messages_are_ignored(self, monitor, context, db):
        context.mark_started("100")
        context.mark_started("999")

        assert await monitor.handle_message(make_message(1, channel_id="100", bot=True)) is False
        assert await monitor.handle_message(make_message(2, channel_id="999")) is False
        assert (await db.get_wal_counts(0))["total_entries"] == 0

    @pytest.mark.asyncio
    async def test_restaging_is_a_no_op(self, monitor, context):
        context.mark_started("100")
        message = make_message(1, channel_id="100")

        assert await monitor.handle_message(message) is True
        assert await monitor.handle_message(message) is False
        assert monitor.stats["messages_staged"] == 1


class TestMembership:
    """Test member and role events."""

    @pytest.mark.asyncio
    async def test_join_records_member_and_roles(self, monitor, db):
        await monitor.handle_member_join(make_member("7"), [role("7", "a")])

        assert (await db.get_member("7")).left_guild is False
        assert [r.role_id for r in await db.get_member_roles("7")] == ["a"]

    @pytest.mark.asyncio
    async def test_remove_flags_tracked_member(self, monitor, db):
        await monitor.handle_member_join(make_member("7"), [])

        await monitor.handle_member_remove(make_member("7"))

        member = await db.get_member("7")
        assert member.left_guild is True
        assert member.left_timestamp is not None

    @pytest.mark.asyncio
    async def test_remove_untracked_member_creates_row(self, monitor, db):
        await monitor.handle_member_remove(make_member("8", username="stranger"))

        member = await db.get_member("8")
        assert member.username == "stranger"
        assert member.left_guild is True

    @pytest.mark.asyncio
    async def test_rejoin_clears_left_flag(self, monitor, db):
        await monitor.handle_member_join(make_member("7"), [])
        await monitor.handle_member_remove(make_member("7"))

        await monitor.handle_member_join(make_member("7"), [])

        member = await db.get_member("7")
        assert member.left_guild is False
        assert member.left_timestamp is None

    @pytest.mark.asyncio
    async def test_role_changes_are_recorded(self, monitor, db):
        await monitor.handle_member_join(make_member("7"), [role("7", "a", added_at=100), role("7", "b", added_at=100)])

        history = await monitor.handle_member_update(
            make_member("7"),
            make_member("7"),
            [role("7", "a", added_at=100), role("7", "b", added_at=100)],
            [role("7", "a", added_at=999, name="A renamed"), role("7", "c", added_at=999)],
        )

        assert {(entry.role_id, entry.action) for entry in history} == {
            ("c", RoleAction.ADDED),
            ("b", RoleAction.REMOVED),
        }
        assert len(await db.get_role_history("7")) == 2

        roles = {r.role_id: r for r in await db.get_member_roles("7")}
        assert set(roles) == {"a", "c"}
        assert roles["a"].added_at == 100
        assert roles["a"].role_name == "A renamed"
        assert roles["c"].added_at == 999

    @pytest.mark.asyncio
    async def test_kept_roles_retain_stored_added_at(self, monitor, db):
        """Gateway snapshots stamp every role with the event time; stored times win."""
        await monitor.handle_member_join(make_member("7"), [role("7", "a", added_at=100)])

        await monitor.handle_member_update(
            make_member("7"),
            make_member("7"),
            [role("7", "a", added_at=5000)],
            [role("7", "a", added_at=5000, position=4), role("7", "b", added_at=5000)],
        )

        roles = {r.role_id: r for r in await db.get_member_roles("7")}
        assert roles["a"].added_at == 100
        assert roles["a"].role_position == 4
        assert roles["b"].added_at == 5000

    @pytest.mark.asyncio
    async def test_update_without_role_changes_appends_no_history(self, monitor, db):
        await monitor.handle_member_join(make_member("7"), [role("7", "a")])

        history = await monitor.handle_member_update(
            make_member("7"), make_member("7", display_name="New Name"), [role("7", "a")], [role("7", "a")]
        )

        assert history == []
        assert (await db.get_member("7")).display_name == "New Name"
        assert await db.get_role_history("7") == []


class TestRoles:
    """Test guild role events and member sync."""

    @pytest.mark.asyncio
    async def test_role_lifecycle(self, monitor, db):
        await monitor.handle_role_create(GuildRoleModel(id="r1", name="Mods"))
        await monitor.handle_role_update(GuildRoleModel(id="r1", name="Moderators"))
        assert (await db.get_role("r1"))["name"] == "Moderators"

        await monitor.handle_role_delete("r1")

        stored = await db.get_role("r1")
        assert stored["deleted"] == 1
        assert stored["name"] == "Moderators"
        assert monitor.stats["role_events"] == 3

    @pytest.mark.asyncio
    async def test_sync_members_in_batches(self, monitor, db, config):
        members = [(make_member(str(i)), [role(str(i), "r1")]) for i in range(config.member_batch_size + 5)]

        results = await monitor.sync_members(members, [GuildRoleModel(id="r1", name="Everyone Else")])

        assert results == {"roles": 1, "members": config.member_batch_size + 5, "failed_batches": 0}
        assert (await db.get_statistics())["member_roles"] == config.member_batch_size + 5

    @pytest.mark.asyncio
    async def test_sync_counts_failed_batches(self, monitor, db, monkeypatch):
        async def broken(entries):
            raise RuntimeError("locked")

        monkeypatch.setattr(db, "store_member_batch", broken)

        results = await monitor.sync_members([(make_member("1"), [])])

        assert results["failed_batches"] == 1
        assert results["members"] == 0
