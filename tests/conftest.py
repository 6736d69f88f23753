"""
Shared fixtures for the archive tests.

FakeSource stands in for the Discord API: channel history is held in memory
newest first, and failures can be queued per channel or per message.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from guild_archiver.config import Config, reset_config
from guild_archiver.database import ArchiveDatabase
from guild_archiver.memory import MemoryGovernor
from guild_archiver.models import ChannelRef, GuildMemberModel, MessageModel


VALID_TOKEN = "OTk5OTk5OTk5OTk5OTk5OTk5.XXXXXX.XXXXXXXXXXXXXXXXXXXXXXXXXXXXXXX"


def make_message(
    message_id: int,
    channel_id: str = "100",
    author_id: str = "1",
    bot: bool = False,
    timestamp: Optional[int] = None,
    mention_roles: Iterable[str] = (),
    content: Optional[str] = None,
    author_username: str = "someone"
) -> MessageModel:
    """Build a message whose timestamp defaults to its ID."""
    timestamp = timestamp if timestamp is not None else message_id
    return MessageModel(
        id=str(message_id),
        content=content if content is not None else f"message {message_id}",
        author_id=author_id,
        author_username=author_username,
        author_bot=bot,
        timestamp=timestamp,
        created_at=datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc).isoformat(),
        channel_id=channel_id,
        mention_roles_json="[" + ", ".join(f'"{role}"' for role in mention_roles) + "]",
    )


def make_member(member_id: str, **overrides: Any) -> GuildMemberModel:
    data = {
        "id": member_id,
        "username": f"user{member_id}",
        "display_name": f"User {member_id}",
        "last_updated": 1,
    }
    data.update(overrides)
    return GuildMemberModel(**data)


class FakeSource:
    """In-memory ArchiveSource."""

    def __init__(self) -> None:
        self.channels: List[ChannelRef] = []
        self.history: Dict[str, List[MessageModel]] = {}
        self.page_errors: Dict[str, List[Exception]] = {}
        self.requests: List[Tuple[str, Optional[str], int]] = []
        self.upstream_ids: Set[str] = set()
        self.exists_errors: Dict[str, Exception] = {}
        self.members: Dict[str, GuildMemberModel] = {}
        self.member_errors: Dict[str, List[Exception]] = {}
        self.status_edits: List[str] = []
        self.delay = 0.0
        self.active = 0
        self.max_active = 0

    def add_channel(
        self,
        channel_id: str,
        messages: List[MessageModel],
        name: Optional[str] = None,
        parent_id: Optional[str] = None
    ) -> ChannelRef:
        ref = ChannelRef(
            id=channel_id, name=name or f"channel-{channel_id}",
            is_thread=parent_id is not None, parent_id=parent_id
        )
        self.channels.append(ref)
        self.history[channel_id] = sorted(messages, key=lambda m: int(m.id), reverse=True)
        return ref

    async def list_visible_text_channels(self, excluded: Iterable[str] = ()) -> List[ChannelRef]:
        excluded = set(excluded)
        return [
            channel for channel in self.channels
            if channel.id not in excluded and channel.parent_id not in excluded
        ]

    async def fetch_history_page(self, channel_id: str, before: Optional[str], limit: int) -> List[MessageModel]:
        self.requests.append((channel_id, before, limit))
        queued = self.page_errors.get(channel_id)
        if queued:
            raise queued.pop(0)

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        messages = self.history.get(channel_id, [])
        if before is not None:
            messages = [message for message in messages if int(message.id) < int(before)]
        return messages[:limit]

    async def message_exists(self, channel_id: str, message_id: str) -> bool:
        if message_id in self.exists_errors:
            raise self.exists_errors[message_id]
        return message_id in self.upstream_ids

    async def fetch_current_member(self, member_id: str) -> Optional[GuildMemberModel]:
        queued = self.member_errors.get(member_id)
        if queued:
            raise queued.pop(0)
        return self.members.get(member_id)

    async def edit_status_message(self, ref: Any, text: str) -> None:
        self.status_edits.append(text)


@pytest.fixture(autouse=True)
def clean_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config(tmp_path):
    return Config(
        discord_token=VALID_TOKEN,
        database_dir=str(tmp_path / "data"),
        wal_dwell_time=3600.0,
        memory_limit_mb=64,
        memory_scale_factor=0.5,
        memory_cooldown_seconds=0.0,
    )


@pytest_asyncio.fixture
async def db(config):
    database = ArchiveDatabase(config.database_path_for("1"), config)
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def governor(config):
    return MemoryGovernor(config, sampler=lambda: 0, collector=lambda: 0, gc_pause=0)
