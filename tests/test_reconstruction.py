"""Tests for left-member and role reconstruction."""

import pytest

from guild_archiver.models import GuildRoleModel, MemberRoleModel, RoleSource
from guild_archiver.reconstruction import MembershipReconstructor
from guild_archiver.source import RateLimitedError

from conftest import make_member, make_message


async def add_role_history(db, member_id, role_id, role_name, timestamp, action="added"):
    async def operation(conn):
        await conn.execute(
            "INSERT INTO role_history (member_id, role_id, role_name, action, timestamp) VALUES (?, ?, ?, ?, ?)",
            (member_id, role_id, role_name, action, timestamp)
        )

    await db.run_in_transaction(operation, "seed_role_history")


class TestLeftMembers:
    """Test reconstruction of departed members from message authors."""

    @pytest.mark.asyncio
    async def test_departed_authors_are_inserted(self, db, source, config):
        await db.upsert_messages([
            make_message(1, author_id="gone", timestamp=1000, author_username="Ghost"),
            make_message(2, author_id="gone", timestamp=3000, author_username="Ghost"),
            make_message(3, author_id="tracked", timestamp=2000),
            make_message(4, author_id="robot", timestamp=2500, bot=True),
            make_message(5, author_id="lurker", timestamp=4000),
        ])
        await db.upsert_member(make_member("tracked"))
        source.members["lurker"] = make_member("lurker")
        reconstructor = MembershipReconstructor(db, source, config)

        summary = await reconstructor.reconstruct_left_members()

        assert summary.candidates == 2
        assert summary.inserted == 1
        assert summary.skipped == 1
        assert summary.failed_batches == 0

        member = await db.get_member("gone")
        assert member.left_guild is True
        assert member.joined_timestamp == 1000
        assert member.left_timestamp == 3000
        assert member.display_name == "Ghost"
        assert await db.get_member("lurker") is None
        assert await db.get_member("robot") is None

    @pytest.mark.asyncio
    async def test_second_run_inserts_nothing(self, db, source, config):
        await db.upsert_messages([make_message(1, author_id="gone", timestamp=1000)])
        reconstructor = MembershipReconstructor(db, source, config)

        first = await reconstructor.reconstruct_left_members()
        second = await reconstructor.reconstruct_left_members()

        assert first.inserted == 1
        assert second.candidates == 0
        assert second.inserted == 0

    @pytest.mark.asyncio
    async def test_rate_limited_lookup_is_retried(self, db, source, config):
        await db.upsert_messages([make_message(1, author_id="gone", timestamp=1000)])
        source.member_errors["gone"] = [RateLimitedError("slow down", retry_after=0)]
        reconstructor = MembershipReconstructor(db, source, config)

        summary = await reconstructor.reconstruct_left_members()

        assert summary.inserted == 1
        assert source.member_errors["gone"] == []

    @pytest.mark.asyncio
    async def test_failed_batch_is_counted(self, db, source, config, monkeypatch):
        await db.upsert_messages([make_message(1, author_id="gone", timestamp=1000)])

        async def broken_insert(members):
            raise RuntimeError("disk full")

        monkeypatch.setattr(db, "insert_left_members", broken_insert)
        reconstructor = MembershipReconstructor(db, source, config)

        summary = await reconstructor.reconstruct_left_members()

        assert summary.failed_batches == 1
        assert summary.inserted == 0
        assert "disk full" in summary.errors[0]

    @pytest.mark.asyncio
    async def test_requires_source(self, db, config):
        await db.upsert_messages([make_message(1, author_id="gone", timestamp=1000)])
        reconstructor = MembershipReconstructor(db, None, config)

        with pytest.raises(ValueError):
            await reconstructor.reconstruct_left_members()


class TestRoles:
    """Test role inference for departed members."""

    @pytest.mark.asyncio
    async def test_roles_from_history_and_mentions(self, db, config):
        await db.upsert_roles([
            GuildRoleModel(id="r1", name="Regular", color="#00ff00", position=3),
            GuildRoleModel(id="r2", name="Artist", position=2),
        ])
        await db.insert_left_members([make_member("gone", left_guild=True, left_timestamp=9000)])
        await add_role_history(db, "gone", "r1", "Regular", 500)
        await add_role_history(db, "gone", "r1", "Regular", 700, action="removed")
        await db.upsert_messages([
            make_message(1, author_id="gone", timestamp=900, mention_roles=["r1"]),
            make_message(2, author_id="gone", timestamp=2000, mention_roles=["r2"]),
            make_message(3, author_id="someone else", timestamp=100, mention_roles=["r2"]),
        ])
        reconstructor = MembershipReconstructor(db, None, config)

        summary = await reconstructor.reconstruct_roles()

        assert summary.candidates == 1
        assert summary.inserted == 2
        assert summary.details == {"role_history": 1, "message_mention": 1}

        roles = {role.role_id: role for role in await db.get_member_roles("gone")}
        assert roles["r1"].source == RoleSource.ROLE_HISTORY
        assert roles["r1"].added_at == 500
        assert roles["r1"].role_color == "#00ff00"
        assert roles["r2"].source == RoleSource.MESSAGE_MENTION
        assert roles["r2"].added_at == 2000

    @pytest.mark.asyncio
    async def test_earlier_mention_wins(self, db, config):
        await db.upsert_role(GuildRoleModel(id="r1", name="Regular"))
        await db.insert_left_members([make_member("gone", left_guild=True, left_timestamp=9000)])
        await add_role_history(db, "gone", "r1", "Regular", 5000)
        await db.upsert_message(make_message(1, author_id="gone", timestamp=100, mention_roles=["r1"]))
        reconstructor = MembershipReconstructor(db, None, config)

        await reconstructor.reconstruct_roles()

        [role] = await db.get_member_roles("gone")
        assert role.source == RoleSource.MESSAGE_MENTION
        assert role.added_at == 100

    def test_tie_keeps_role_history(self, config):
        reconstructor = MembershipReconstructor(None, None, config)

        merged = reconstructor._merge_role_evidence(
            "gone",
            [{"role_id": "r1", "role_name": "Regular", "first_seen": 100, "role_color": None, "role_position": 1}],
            [{"role_id": "r1", "role_name": "Regular", "first_seen": 100, "role_color": None, "role_position": 1}],
        )

        assert merged["r1"].source == RoleSource.ROLE_HISTORY

    @pytest.mark.asyncio
    async def test_members_with_roles_are_not_candidates(self, db, config):
        await db.insert_left_members([make_member("gone", left_guild=True, left_timestamp=9000)])
        await db.insert_member_roles([MemberRoleModel(member_id="gone", role_id="r1", added_at=1)])
        await db.upsert_member(make_member("present"))
        reconstructor = MembershipReconstructor(db, None, config)

        summary = await reconstructor.reconstruct_roles()

        assert summary.candidates == 0
        assert summary.inserted == 0

    @pytest.mark.asyncio
    async def test_second_run_is_a_no_op(self, db, config):
        await db.upsert_role(GuildRoleModel(id="r1", name="Regular"))
        await db.insert_left_members([make_member("gone", left_guild=True, left_timestamp=9000)])
        await db.upsert_message(make_message(1, author_id="gone", timestamp=100, mention_roles=["r1"]))
        reconstructor = MembershipReconstructor(db, None, config)

        first = await reconstructor.reconstruct_roles()
        second = await reconstructor.reconstruct_roles()

        assert first.inserted == 1
        assert second.candidates == 0
        assert second.inserted == 0

    @pytest.mark.asyncio
    async def test_member_without_evidence_is_skipped(self, db, config):
        await db.insert_left_members([make_member("quiet", left_guild=True, left_timestamp=9000)])
        reconstructor = MembershipReconstructor(db, None, config)

        summary = await reconstructor.reconstruct_roles()

        assert summary.candidates == 1
        assert summary.skipped == 1
        assert summary.inserted == 0
