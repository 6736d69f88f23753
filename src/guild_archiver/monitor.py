"""
Live event handling for an archived guild.

Live messages are only staged into the write-ahead buffer; membership and
role events are written straight to the archive.
"""

from typing import Dict, List, Optional, Tuple

from loguru import logger

from .config import Config
from .context import ArchiveContext
from .database import ArchiveDatabase
from .models import (
    GuildMemberModel, GuildRoleModel, MemberRoleModel, MessageModel,
    RoleAction, RoleHistoryModel, epoch_ms
)
from .wal import WriteAheadBuffer


class LiveEventMonitor:
    """
    Routes live gateway events for one guild into the archive.

    A live message is accepted only when its channel is being or has been
    crawled; otherwise the crawler would later miss the gap before it.
    """

    def __init__(
        self,
        db: ArchiveDatabase,
        wal: WriteAheadBuffer,
        context: ArchiveContext,
        config: Config
    ) -> None:
        self.db = db
        self.wal = wal
        self.context = context
        self.config = config
        self.stats = {
            "messages_staged": 0,
            "messages_ignored": 0,
            "member_events": 0,
            "role_events": 0,
            "errors": 0,
        }

    def should_monitor(self, message: MessageModel) -> bool:
        if message.author_bot:
            return False
        return self.context.is_monitored(message.channel_id)

    async def handle_message(self, message: MessageModel) -> bool:
        """
        Stage a live message if its channel is monitored.

        Returns:
            True if the message was staged
        """
        if not self.should_monitor(message):
            self.stats["messages_ignored"] += 1
            return False

        try:
            staged = await self.wal.stage(message)
        except Exception as e:
            self.stats["errors"] += 1
            logger.error(f"Failed to stage message {message.id}: {e}")
            return False

        if staged:
            self.stats["messages_staged"] += 1
        return staged

    async def handle_member_join(self, member: GuildMemberModel, roles: List[MemberRoleModel]) -> None:
        """Record a member joining (or rejoining) with their current roles."""
        await self.db.store_member_with_roles(member, roles)
        self.stats["member_events"] += 1
        logger.info(f"Member joined: {member.username} ({member.id})")

    async def handle_member_remove(self, member: GuildMemberModel) -> None:
        """Flag a member as departed, creating the row if it was never tracked."""
        left_at = epoch_ms()
        if not await self.db.mark_member_left(member.id, left_at):
            departed = member.model_copy(update={"left_guild": True, "left_timestamp": left_at, "last_updated": left_at})
            await self.db.upsert_member(departed)
        self.stats["member_events"] += 1
        logger.info(f"Member left: {member.username} ({member.id})")

    async def handle_member_update(
        self,
        before: GuildMemberModel,
        after: GuildMemberModel,
        before_roles: List[MemberRoleModel],
        after_roles: List[MemberRoleModel]
    ) -> List[RoleHistoryModel]:
        """
        Record role changes and refresh the member row.

        Returns:
            The role history entries appended
        """
        now = epoch_ms()
        old_roles: Dict[str, MemberRoleModel] = {role.role_id: role for role in before_roles}
        new_roles: Dict[str, MemberRoleModel] = {role.role_id: role for role in after_roles}

        history = [
            RoleHistoryModel(
                member_id=after.id, role_id=role_id, role_name=role.role_name,
                action=RoleAction.ADDED, timestamp=now
            )
            for role_id, role in new_roles.items() if role_id not in old_roles
        ]
        history.extend(
            RoleHistoryModel(
                member_id=after.id, role_id=role_id, role_name=role.role_name,
                action=RoleAction.REMOVED, timestamp=now
            )
            for role_id, role in old_roles.items() if role_id not in new_roles
        )

        if before.display_name != after.display_name or before.username != after.username:
            logger.debug(f"Member {after.id} renamed to {after.display_name}")

        # Roles already on record keep their stored added_at
        stored = {role.role_id: role.added_at for role in await self.db.get_member_roles(after.id)}
        roles = [
            role.model_copy(update={"added_at": stored[role.role_id]}) if role.role_id in stored else role
            for role in after_roles
        ]
        await self.db.store_member_with_roles(after, roles, history)
        self.stats["member_events"] += 1

        if history:
            logger.info(f"Member {after.id}: {len(history)} role changes recorded")
        return history

    async def handle_role_create(self, role: GuildRoleModel) -> None:
        await self.db.upsert_role(role)
        self.stats["role_events"] += 1
        logger.info(f"Role created: {role.name} ({role.id})")

    async def handle_role_update(self, role: GuildRoleModel) -> None:
        await self.db.upsert_role(role)
        self.stats["role_events"] += 1

    async def handle_role_delete(self, role_id: str) -> None:
        await self.db.soft_delete_role(role_id, epoch_ms())
        self.stats["role_events"] += 1
        logger.info(f"Role deleted: {role_id}")

    async def sync_members(
        self,
        members: List[Tuple[GuildMemberModel, List[MemberRoleModel]]],
        roles: Optional[List[GuildRoleModel]] = None
    ) -> Dict[str, int]:
        """
        Import a full snapshot of the guild's roles and members.

        Args:
            members: Every current member with their roles
            roles: Every current guild role

        Returns:
            Counts of roles and members stored and failed batches
        """
        results = {"roles": 0, "members": 0, "failed_batches": 0}

        if roles:
            results["roles"] = await self.db.upsert_roles(roles)

        batch_size = self.config.member_batch_size
        for start in range(0, len(members), batch_size):
            batch = members[start:start + batch_size]
            try:
                results["members"] += await self.db.store_member_batch(batch)
            except Exception as e:
                results["failed_batches"] += 1
                logger.error(f"Member sync batch at {start} failed: {e}")

        logger.info(
            f"Member sync: {results['roles']} roles, {results['members']} members, "
            f"{results['failed_batches']} failed batches"
        )
        return results
