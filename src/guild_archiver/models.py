"""
Data models for the guild archive.

This module defines Pydantic models that mirror the rows stored in the
per-guild SQLite archive (messages, staged live messages, crawl cursors,
members, roles and role history) and the summaries returned by the
long-running archive operations.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from enum import Enum

from pydantic import BaseModel, Field, ConfigDict, model_validator


class ChannelState(str, Enum):
    """Whether live messages in a channel are accepted for archiving."""

    NOT_MONITORED = "not_monitored"
    CRAWL_IN_PROGRESS = "crawl_in_progress"
    CRAWL_COMPLETE = "crawl_complete"


class RoleAction(str, Enum):
    """Role history actions."""

    ADDED = "added"
    REMOVED = "removed"


class RoleSource(str, Enum):
    """Provenance of a member role row."""

    LIVE = "live"
    ROLE_HISTORY = "role_history"
    MESSAGE_MENTION = "message_mention"


class CrawlOutcome(str, Enum):
    """Terminal state of a single channel crawl."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"
    FAILED = "failed"


class MessageModel(BaseModel):
    """Model for an archived message."""

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid"
    )

    id: str = Field(..., description="Discord message ID")
    content: str = Field("", description="Message text content")
    author_id: str = Field(..., description="Discord user ID of message author")
    author_username: str = Field("", description="Display name of message author")
    author_bot: bool = Field(False, description="Whether author is a bot")
    timestamp: int = Field(..., description="Creation time in epoch milliseconds")
    created_at: str = Field(..., description="Creation time as an ISO 8601 string")
    channel_id: str = Field(..., description="Discord channel ID")
    attachments_json: str = Field("[]", description="Serialized attachment list")
    embeds_json: str = Field("[]", description="Serialized embed summaries")
    reactions_json: str = Field("[]", description="Serialized reaction summary")
    mention_roles_json: str = Field("[]", description="Serialized list of mentioned role IDs")


class WalEntryModel(MessageModel):
    """A live message staged in the write-ahead buffer."""

    processed: bool = Field(False, description="Whether a sweep currently owns this entry")


class ChannelRef(BaseModel):
    """A channel or thread targeted by the backfill crawler."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Discord channel ID")
    name: str = Field("", description="Channel name")
    is_thread: bool = Field(False, description="Whether the channel is a thread")
    parent_id: Optional[str] = Field(None, description="Parent channel ID for threads")


class ChannelCursorModel(BaseModel):
    """Persisted crawl position for a channel."""

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid"
    )

    id: str = Field(..., description="Discord channel ID")
    name: str = Field("", description="Channel name")
    fetch_started: bool = Field(False, description="Whether a crawl has been scheduled")
    fetch_completed: bool = Field(False, description="Whether the full history has been archived")
    last_message_id: Optional[str] = Field(None, description="Oldest message ID archived so far")
    last_fetch_timestamp: Optional[int] = Field(None, description="Last crawl activity in epoch milliseconds")

    @model_validator(mode="after")
    def completed_implies_started(self) -> "ChannelCursorModel":
        if self.fetch_completed and not self.fetch_started:
            raise ValueError("A completed crawl must also be started")
        return self


class GuildMemberModel(BaseModel):
    """Model for a current or former guild member."""

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid"
    )

    id: str = Field(..., description="Discord user ID")
    username: str = Field("", description="Account username")
    display_name: str = Field("", description="Guild display name")
    avatar_url: Optional[str] = Field(None, description="Avatar URL")
    joined_at: Optional[str] = Field(None, description="Join time as an ISO 8601 string")
    joined_timestamp: Optional[int] = Field(None, description="Join time in epoch milliseconds")
    bot: bool = Field(False, description="Whether the member is a bot")
    last_updated: int = Field(..., description="Last update in epoch milliseconds")
    left_guild: bool = Field(False, description="Whether the member has left")
    left_timestamp: Optional[int] = Field(None, description="Leave time in epoch milliseconds")

    @model_validator(mode="after")
    def left_requires_timestamp(self) -> "GuildMemberModel":
        if self.left_guild and self.left_timestamp is None:
            raise ValueError("A member who left must carry a leave timestamp")
        return self


class MemberRoleModel(BaseModel):
    """A role held by a member."""

    model_config = ConfigDict(extra="forbid")

    member_id: str = Field(..., description="Discord user ID")
    role_id: str = Field(..., description="Discord role ID")
    role_name: str = Field("", description="Role name")
    role_color: Optional[str] = Field(None, description="Role color as hex")
    role_position: int = Field(0, description="Role position in the hierarchy")
    added_at: int = Field(..., description="When the role was added in epoch milliseconds")
    source: RoleSource = Field(RoleSource.LIVE, description="Where this row came from")


class RoleHistoryModel(BaseModel):
    """An append-only role change record."""

    model_config = ConfigDict(extra="forbid")

    member_id: str = Field(..., description="Discord user ID")
    role_id: str = Field(..., description="Discord role ID")
    role_name: str = Field("", description="Role name at the time of the change")
    action: RoleAction = Field(..., description="Whether the role was added or removed")
    timestamp: int = Field(..., description="When the change was observed in epoch milliseconds")


class GuildRoleModel(BaseModel):
    """Model for a guild role."""

    model_config = ConfigDict(
        validate_assignment=True,
        extra="forbid"
    )

    id: str = Field(..., description="Discord role ID")
    name: str = Field(..., description="Role name")
    color: Optional[str] = Field(None, description="Role color as hex")
    position: int = Field(0, description="Role position")
    permissions: str = Field("0", description="Permission bitfield")
    mentionable: bool = Field(False, description="Whether the role can be mentioned")
    hoist: bool = Field(False, description="Whether the role is displayed separately")
    managed: bool = Field(False, description="Whether the role is managed by an integration")
    created_at: Optional[str] = Field(None, description="Creation time as an ISO 8601 string")
    created_timestamp: Optional[int] = Field(None, description="Creation time in epoch milliseconds")


class MemorySnapshot(BaseModel):
    """A single memory sample."""

    rss_bytes: int = Field(..., description="Resident set size in bytes")
    limit_bytes: int = Field(..., description="Effective limit in bytes")

    @property
    def over_limit(self) -> bool:
        return self.rss_bytes > self.limit_bytes

    @property
    def rss_mb(self) -> float:
        return self.rss_bytes / (1024 * 1024)


class WalStats(BaseModel):
    """Write-ahead buffer statistics."""

    total_entries: int = 0
    ready_to_process: int = 0
    oldest_timestamp: Optional[int] = None
    newest_timestamp: Optional[int] = None
    oldest_age_ms: Optional[int] = None
    newest_age_ms: Optional[int] = None
    oldest_age: str = "N/A"
    newest_age: str = "N/A"


class ExportSummary(BaseModel):
    """Outcome of a full guild export."""

    guild_id: str
    channels_total: int = 0
    channels_completed: int = 0
    channels_skipped: int = 0
    channels_incomplete: int = 0
    messages_processed: int = 0
    messages_stored: int = 0
    messages_dropped: int = 0
    storage_errors: int = 0
    rate_limit_hits: int = 0
    duplicates_removed: int = 0
    elapsed_seconds: float = 0.0
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ReconstructionSummary(BaseModel):
    """Outcome of a membership or role reconstruction run."""

    candidates: int = 0
    processed: int = 0
    inserted: int = 0
    skipped: int = 0
    failed_batches: int = 0
    errors: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)


class VacuumResult(BaseModel):
    """Outcome of a store compaction."""

    size_before_mb: float
    size_after_mb: float
    space_saved_mb: float
    percent_saved: float


def epoch_ms(moment: Optional[datetime] = None) -> int:
    """Convert a datetime (default: now) to epoch milliseconds."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)
