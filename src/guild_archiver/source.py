"""
Upstream chat-platform access for the archive pipeline.

The crawler, write-ahead buffer and reconstructor only talk to the platform
through the ArchiveSource protocol, which keeps them testable without a
gateway connection. DiscordArchiveSource implements it on discord.py and
converts Discord objects into archive models.
"""

import json
from typing import Any, Iterable, List, Optional, Protocol, Set

import discord
from loguru import logger

from .models import (
    ChannelRef, GuildMemberModel, GuildRoleModel, MemberRoleModel,
    MessageModel, RoleSource, epoch_ms
)


class UpstreamError(Exception):
    """Base exception for chat-platform failures."""
    pass


class UpstreamNotFound(UpstreamError):
    """The requested channel, message or member no longer exists."""
    pass


class UpstreamForbidden(UpstreamError):
    """The bot lacks access to the requested resource."""
    pass


class RateLimitedError(UpstreamError):
    """The platform asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ArchiveSource(Protocol):
    """Operations the archive pipeline needs from the chat platform."""

    async def list_visible_text_channels(self, excluded: Iterable[str] = ()) -> List[ChannelRef]:
        ...

    async def fetch_history_page(self, channel_id: str, before: Optional[str], limit: int) -> List[MessageModel]:
        ...

    async def message_exists(self, channel_id: str, message_id: str) -> bool:
        ...

    async def fetch_current_member(self, member_id: str) -> Optional[GuildMemberModel]:
        ...

    async def edit_status_message(self, ref: Any, text: str) -> None:
        ...


def message_to_model(message: discord.Message) -> MessageModel:
    """
    Convert a Discord message to a MessageModel for archive storage.

    Args:
        message: Discord message object

    Returns:
        MessageModel with attachments, embeds, reactions and role mentions
        serialized as JSON strings
    """
    attachments = [
        {
            "id": str(attachment.id),
            "url": attachment.url,
            "filename": attachment.filename,
            "size": attachment.size,
        }
        for attachment in message.attachments
    ]
    embeds = [{"type": embed.type, "title": embed.title} for embed in message.embeds]
    reactions = [{"emoji": str(reaction.emoji), "count": reaction.count} for reaction in message.reactions]
    mention_roles = [str(role_id) for role_id in message.raw_role_mentions]

    return MessageModel(
        id=str(message.id),
        content=message.content or "",
        author_id=str(message.author.id),
        author_username=message.author.display_name,
        author_bot=message.author.bot,
        timestamp=epoch_ms(message.created_at),
        created_at=message.created_at.isoformat(),
        channel_id=str(message.channel.id),
        attachments_json=json.dumps(attachments),
        embeds_json=json.dumps(embeds),
        reactions_json=json.dumps(reactions),
        mention_roles_json=json.dumps(mention_roles),
    )


def member_to_model(member: discord.Member) -> GuildMemberModel:
    """Convert a Discord member to a current (not left) member row."""
    return GuildMemberModel(
        id=str(member.id),
        username=member.name,
        display_name=member.display_name,
        avatar_url=str(member.display_avatar.url) if member.display_avatar else None,
        joined_at=member.joined_at.isoformat() if member.joined_at else None,
        joined_timestamp=epoch_ms(member.joined_at) if member.joined_at else None,
        bot=member.bot,
        last_updated=epoch_ms(),
        left_guild=False,
        left_timestamp=None,
    )


def member_roles_to_models(member: discord.Member, added_at: Optional[int] = None) -> List[MemberRoleModel]:
    """Get the member's roles, skipping @everyone."""
    added_at = added_at if added_at is not None else epoch_ms()
    return [
        MemberRoleModel(
            member_id=str(member.id),
            role_id=str(role.id),
            role_name=role.name,
            role_color=str(role.color),
            role_position=role.position,
            added_at=added_at,
            source=RoleSource.LIVE,
        )
        for role in member.roles
        if not role.is_default()
    ]


def role_to_model(role: discord.Role) -> GuildRoleModel:
    return GuildRoleModel(
        id=str(role.id),
        name=role.name,
        color=str(role.color),
        position=role.position,
        permissions=str(role.permissions.value),
        mentionable=role.mentionable,
        hoist=role.hoist,
        managed=role.managed,
        created_at=role.created_at.isoformat(),
        created_timestamp=epoch_ms(role.created_at),
    )


def translate_discord_error(error: Exception) -> Exception:
    """
    Map a discord.py exception onto the archive's upstream error types.

    Args:
        error: Exception raised by discord.py

    Returns:
        The matching UpstreamError, or the original exception if it is not
        a platform error
    """
    if isinstance(error, UpstreamError):
        return error
    if isinstance(error, discord.NotFound):
        return UpstreamNotFound(str(error))
    if isinstance(error, discord.Forbidden):
        return UpstreamForbidden(str(error))
    if isinstance(error, discord.RateLimited):
        return RateLimitedError(str(error), retry_after=error.retry_after)
    if isinstance(error, discord.HTTPException) and error.status == 429:
        retry_after = None
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
        if headers and headers.get("Retry-After"):
            try:
                retry_after = float(headers["Retry-After"])
            except ValueError:
                retry_after = None
        return RateLimitedError(str(error), retry_after=retry_after)
    if isinstance(error, discord.HTTPException):
        return UpstreamError(f"HTTP {error.status} (code {error.code}): {error.text}")
    if isinstance(error, discord.DiscordException):
        return UpstreamError(str(error))
    return error


class DiscordArchiveSource:
    """ArchiveSource backed by a discord.py guild."""

    def __init__(self, guild: discord.Guild) -> None:
        self.guild = guild

    async def _resolve_channel(self, channel_id: str) -> Any:
        channel = self.guild.get_channel_or_thread(int(channel_id))
        if channel is not None:
            return channel
        try:
            return await self.guild.fetch_channel(int(channel_id))
        except discord.DiscordException as e:
            raise translate_discord_error(e) from e

    def _can_read_history(self, channel: Any) -> bool:
        permissions = channel.permissions_for(self.guild.me)
        return permissions.view_channel and permissions.read_message_history

    def _is_readable_parent(self, channel: Any, excluded_ids: Set[str]) -> bool:
        if str(channel.id) in excluded_ids:
            logger.debug(f"Skipping #{channel.name}: excluded")
            return False
        if not self._can_read_history(channel):
            logger.debug(f"Skipping #{channel.name}: missing read permissions")
            return False
        return True

    async def list_visible_text_channels(self, excluded: Iterable[str] = ()) -> List[ChannelRef]:
        """
        List text channels and threads whose history the bot can read.

        Threads are collected from readable text channels and forums. An
        excluded channel hides its threads as well.

        Args:
            excluded: Channel IDs never archived

        Returns:
            Crawl targets: text channels, then active threads, then archived
            public threads
        """
        excluded_ids = {str(channel_id) for channel_id in excluded}
        targets: List[ChannelRef] = []
        seen = set()
        parents = []

        for channel in self.guild.text_channels:
            if self._is_readable_parent(channel, excluded_ids):
                parents.append(channel)
                targets.append(ChannelRef(id=str(channel.id), name=channel.name))
                seen.add(channel.id)

        # Forum posts are threads; the forum itself has no history
        for forum in self.guild.forums:
            if self._is_readable_parent(forum, excluded_ids):
                parents.append(forum)

        parent_ids = {channel.id for channel in parents}

        def add_thread(thread: Any, parent_id: int) -> None:
            if thread.id in seen or str(thread.id) in excluded_ids:
                return
            targets.append(ChannelRef(id=str(thread.id), name=thread.name, is_thread=True, parent_id=str(parent_id)))
            seen.add(thread.id)

        try:
            active_threads = await self.guild.active_threads()
        except discord.DiscordException as e:
            logger.warning(f"Could not list active threads for {self.guild.name}: {e}")
            active_threads = []

        for thread in active_threads:
            if thread.parent_id in parent_ids:
                add_thread(thread, thread.parent_id)

        for channel in parents:
            try:
                async for thread in channel.archived_threads(limit=None):
                    add_thread(thread, channel.id)
            except discord.DiscordException as e:
                logger.warning(f"Could not list archived threads in #{channel.name}: {e}")

        logger.info(f"Found {len(targets)} readable channels and threads in {self.guild.name}")
        return targets

    async def fetch_history_page(self, channel_id: str, before: Optional[str], limit: int) -> List[MessageModel]:
        """Fetch up to `limit` messages older than `before`, newest first."""
        channel = await self._resolve_channel(channel_id)
        before_obj = discord.Object(id=int(before)) if before else None
        try:
            return [
                message_to_model(message)
                async for message in channel.history(limit=limit, before=before_obj)
            ]
        except discord.DiscordException as e:
            raise translate_discord_error(e) from e

    async def message_exists(self, channel_id: str, message_id: str) -> bool:
        try:
            channel = await self._resolve_channel(channel_id)
            await channel.fetch_message(int(message_id))
            return True
        except (UpstreamNotFound, UpstreamForbidden):
            return False
        except discord.DiscordException as e:
            mapped = translate_discord_error(e)
            if isinstance(mapped, (UpstreamNotFound, UpstreamForbidden)):
                return False
            raise mapped from e

    async def fetch_current_member(self, member_id: str) -> Optional[GuildMemberModel]:
        try:
            member = await self.guild.fetch_member(int(member_id))
        except discord.NotFound:
            return None
        except discord.DiscordException as e:
            raise translate_discord_error(e) from e
        return member_to_model(member)

    async def edit_status_message(self, ref: Any, text: str) -> None:
        if ref is None:
            return
        try:
            await ref.edit(content=text)
        except discord.DiscordException as e:
            raise translate_discord_error(e) from e
