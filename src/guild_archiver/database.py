"""
Persistent store for a single guild archive.

This module provides the interface to the per-guild SQLite archive, handling
message storage, the write-ahead staging table, crawl cursors, membership and
role tracking, and the queries behind membership reconstruction. Writes are
serialized through one lock and run inside explicit transactions with retry
logic for transient locking errors.
"""

import asyncio
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import aiosqlite
from loguru import logger
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from .config import Config
from .models import (
    ChannelCursorModel, ChannelRef, GuildMemberModel, GuildRoleModel,
    MemberRoleModel, MessageModel, RoleHistoryModel, VacuumResult,
    WalEntryModel, epoch_ms
)


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


class RetryableError(DatabaseError):
    """Exception for errors that should trigger a retry."""
    pass


class NonRetryableError(DatabaseError):
    """Exception for errors that should not trigger a retry."""
    pass


class ConnectionError(DatabaseError):
    """Exception for connection-related errors."""
    pass


MESSAGE_COLUMNS: Tuple[str, ...] = (
    "id",
    "content",
    "author_id",
    "author_username",
    "author_bot",
    "timestamp",
    "created_at",
    "channel_id",
    "attachments_json",
    "embeds_json",
    "reactions_json",
    "mention_roles_json",
)

_COLUMN_LIST = ", ".join(MESSAGE_COLUMNS)
_PLACEHOLDERS = ", ".join("?" for _ in MESSAGE_COLUMNS)

MESSAGE_UPSERT_SQL = (
    f"INSERT INTO messages ({_COLUMN_LIST}) VALUES ({_PLACEHOLDERS}) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{column} = excluded.{column}" for column in MESSAGE_COLUMNS[1:])
)

WAL_INSERT_SQL = (
    f"INSERT OR IGNORE INTO message_wal ({_COLUMN_LIST}, processed) "
    f"VALUES ({_PLACEHOLDERS}, 0)"
)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT NOT NULL,
        content TEXT,
        author_id TEXT,
        author_username TEXT,
        author_bot INTEGER DEFAULT 0,
        timestamp INTEGER,
        created_at TEXT,
        channel_id TEXT,
        attachments_json TEXT DEFAULT '[]',
        embeds_json TEXT DEFAULT '[]',
        reactions_json TEXT DEFAULT '[]',
        mention_roles_json TEXT DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message_wal (
        id TEXT PRIMARY KEY,
        content TEXT,
        author_id TEXT,
        author_username TEXT,
        author_bot INTEGER DEFAULT 0,
        timestamp INTEGER,
        created_at TEXT,
        channel_id TEXT,
        attachments_json TEXT DEFAULT '[]',
        embeds_json TEXT DEFAULT '[]',
        reactions_json TEXT DEFAULT '[]',
        mention_roles_json TEXT DEFAULT '[]',
        processed INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS channels (
        id TEXT PRIMARY KEY,
        name TEXT,
        fetch_started INTEGER DEFAULT 0,
        fetch_completed INTEGER DEFAULT 0,
        last_message_id TEXT,
        last_fetch_timestamp INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS guild_members (
        id TEXT PRIMARY KEY,
        username TEXT,
        display_name TEXT,
        avatar_url TEXT,
        joined_at TEXT,
        joined_timestamp INTEGER,
        bot INTEGER DEFAULT 0,
        last_updated INTEGER,
        left_guild INTEGER DEFAULT 0,
        left_timestamp INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS member_roles (
        member_id TEXT NOT NULL,
        role_id TEXT NOT NULL,
        role_name TEXT,
        role_color TEXT,
        role_position INTEGER,
        added_at INTEGER,
        source TEXT DEFAULT 'live',
        PRIMARY KEY (member_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        member_id TEXT NOT NULL,
        role_id TEXT NOT NULL,
        role_name TEXT,
        action TEXT NOT NULL,
        timestamp INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS guild_roles (
        id TEXT PRIMARY KEY,
        name TEXT,
        color TEXT,
        position INTEGER,
        permissions TEXT,
        mentionable INTEGER DEFAULT 0,
        hoist INTEGER DEFAULT 0,
        managed INTEGER DEFAULT 0,
        created_at TEXT,
        created_timestamp INTEGER,
        updated_at TEXT,
        updated_timestamp INTEGER,
        deleted INTEGER DEFAULT 0,
        deleted_at TEXT,
        deleted_timestamp INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS guild_metadata (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at INTEGER
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_messages_author_id ON messages(author_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_channel_id ON messages(channel_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_message_wal_ready ON message_wal(processed, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_member_roles_member_id ON member_roles(member_id)",
    "CREATE INDEX IF NOT EXISTS idx_member_roles_role_id ON member_roles(role_id)",
    "CREATE INDEX IF NOT EXISTS idx_role_history_member_id ON role_history(member_id)",
    "CREATE INDEX IF NOT EXISTS idx_guild_members_left ON guild_members(left_guild)",
]

UNIQUE_MESSAGE_INDEX = "CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_id ON messages(id)"

RETRYABLE_KEYWORDS = ["locked", "busy", "timeout", "disk i/o"]

Operation = Callable[[aiosqlite.Connection], Awaitable[Any]]


def _message_params(message: MessageModel) -> Tuple[Any, ...]:
    return (
        message.id,
        message.content,
        message.author_id,
        message.author_username,
        int(message.author_bot),
        message.timestamp,
        message.created_at,
        message.channel_id,
        message.attachments_json,
        message.embeds_json,
        message.reactions_json,
        message.mention_roles_json,
    )


def _member_params(member: GuildMemberModel) -> Tuple[Any, ...]:
    return (
        member.id,
        member.username,
        member.display_name,
        member.avatar_url,
        member.joined_at,
        member.joined_timestamp,
        int(member.bot),
        member.last_updated,
        int(member.left_guild),
        member.left_timestamp,
    )


def _member_role_params(role: MemberRoleModel) -> Tuple[Any, ...]:
    return (
        role.member_id,
        role.role_id,
        role.role_name,
        role.role_color,
        role.role_position,
        role.added_at,
        role.source.value,
    )


def _file_size(path: Path) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


class ArchiveDatabase:
    """
    Manages all interactions with one guild's SQLite archive.

    Provides methods for storing messages, staging live messages, tracking
    crawl cursors, recording membership and role changes, and running the
    reconstruction queries, with proper error handling and retry logic.
    """

    def __init__(self, path: Union[str, Path], config: Optional[Config] = None) -> None:
        """
        Initialize the archive database.

        Args:
            path: Location of the SQLite file
            config: Configuration object (optional, used for logging context)
        """
        self.path = Path(path)
        self.config = config
        self.conn: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self._initialized = False

    async def connect(self) -> None:
        """Open the SQLite connection in WAL journal mode."""
        if self.conn is not None:
            return

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode: every transaction is opened explicitly below
            self.conn = await aiosqlite.connect(str(self.path), isolation_level=None)
            self.conn.row_factory = aiosqlite.Row
            await self._pragma(self.conn, "journal_mode=WAL")
            await self._pragma(self.conn, "synchronous=NORMAL")
            await self._pragma(self.conn, "busy_timeout=5000")
            logger.debug(f"Opened archive database {self.path}")
        except Exception as e:
            logger.error(f"Failed to open archive database {self.path}: {e}")
            raise ConnectionError(f"Database connection failed: {e}") from e

    async def migrate(self) -> None:
        """Create tables and indexes, removing legacy duplicate messages first."""
        async def operation(conn: aiosqlite.Connection) -> None:
            for statement in SCHEMA:
                await conn.execute(statement)
            await self._ensure_column(conn, "messages", "mention_roles_json", "TEXT DEFAULT '[]'")
            await self._ensure_column(conn, "message_wal", "mention_roles_json", "TEXT DEFAULT '[]'")
            await self._ensure_column(conn, "member_roles", "source", "TEXT DEFAULT 'live'")
            for statement in INDEXES:
                await conn.execute(statement)

        await self._execute_with_retry(operation, "migrate_schema")

        # Older archives may predate the unique id index
        removed = await self.check_duplicates()
        if removed:
            logger.warning(f"Removed duplicates for {removed} message IDs before indexing {self.path}")

        async def add_unique_index(conn: aiosqlite.Connection) -> None:
            await conn.execute(UNIQUE_MESSAGE_INDEX)

        await self._execute_with_retry(add_unique_index, "create_unique_message_index")

    async def initialize(self) -> None:
        """Connect and migrate the archive."""
        if self._initialized:
            return
        await self.connect()
        await self.migrate()
        self._initialized = True
        logger.info(f"Archive database ready at {self.path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            logger.info(f"Closing archive database {self.path}")
            await self.conn.close()
            self.conn = None
            self._initialized = False

    async def _pragma(self, conn: aiosqlite.Connection, pragma: str) -> List[aiosqlite.Row]:
        # Pragmas may return rows; an undrained cursor leaves a statement open and blocks VACUUM
        cursor = await conn.execute(f"PRAGMA {pragma}")
        rows = await cursor.fetchall()
        await cursor.close()
        return list(rows)

    def _ensure_connection(self) -> aiosqlite.Connection:
        """Ensure the connection is open and return it."""
        if not self.conn:
            raise ConnectionError("Database connection not open. Call initialize() first.")
        return self.conn

    async def _ensure_column(self, conn: aiosqlite.Connection, table: str, column: str, ddl: str) -> None:
        """Add a column if an older archive is missing it."""
        cursor = await conn.execute(f"PRAGMA table_info({table})")
        existing = {row["name"] for row in await cursor.fetchall()}
        await cursor.close()
        if column not in existing:
            logger.info(f"Adding column {table}.{column}")
            await conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")

    def _retrying(self) -> AsyncRetrying:
        """Retry policy for transient locking errors, taken from the config."""
        max_retries = self.config.max_retries if self.config else 3
        retry_delay = self.config.retry_delay if self.config else 0.5
        return AsyncRetrying(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=retry_delay, min=retry_delay, max=5),
            retry=retry_if_exception_type(RetryableError),
            reraise=True
        )

    async def _execute_with_retry(self, operation: Operation, operation_name: str) -> Any:
        """
        Execute a write operation in its own transaction with retry logic.

        Writers are serialized through a lock so two coroutines never share
        a transaction on the single connection.

        Args:
            operation: Coroutine function receiving the connection
            operation_name: Name of the operation for logging

        Returns:
            The result of the operation

        Raises:
            DatabaseError: If the operation fails after all retries
        """
        async for attempt in self._retrying():
            with attempt:
                return await self._execute_once(operation, operation_name)

    async def _execute_once(self, operation: Operation, operation_name: str) -> Any:
        conn = self._ensure_connection()

        async with self._write_lock:
            try:
                logger.debug(f"Executing {operation_name}")
                await conn.execute("BEGIN IMMEDIATE")
                try:
                    result = await operation(conn)
                except BaseException:
                    await conn.execute("ROLLBACK")
                    raise
                await conn.execute("COMMIT")
                logger.debug(f"Successfully executed {operation_name}")
                return result

            except DatabaseError:
                raise
            except Exception as e:
                logger.warning(f"{operation_name} failed: {e}")

                error_str = str(e).lower()
                if any(keyword in error_str for keyword in RETRYABLE_KEYWORDS):
                    raise RetryableError(f"Retryable error in {operation_name}: {e}") from e
                raise NonRetryableError(f"Non-retryable error in {operation_name}: {e}") from e

    async def run_in_transaction(self, operation: Operation, operation_name: str) -> Any:
        """Run a caller-supplied write operation in one transaction."""
        return await self._execute_with_retry(operation, operation_name)

    async def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        conn = self._ensure_connection()
        cursor = await conn.execute(sql, params)
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        conn = self._ensure_connection()
        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        await cursor.close()
        return list(rows)

    async def _scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = await self.fetchone(sql, params)
        return row[0] if row is not None else None

    # Messages

    async def upsert_message(self, message: MessageModel) -> None:
        """Insert a message, replacing any stored row with the same ID."""
        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.execute(MESSAGE_UPSERT_SQL, _message_params(message))

        await self._execute_with_retry(operation, f"upsert_message_{message.id}")

    async def upsert_messages(self, messages: List[MessageModel]) -> int:
        """
        Store multiple messages in a single transaction.

        Args:
            messages: Messages to store

        Returns:
            Number of messages written
        """
        if not messages:
            return 0

        params = [_message_params(message) for message in messages]

        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.executemany(MESSAGE_UPSERT_SQL, params)

        await self._execute_with_retry(operation, f"upsert_messages_batch_{len(params)}")
        return len(params)

    async def message_exists(self, message_id: str) -> bool:
        row = await self.fetchone("SELECT 1 FROM messages WHERE id = ? LIMIT 1", (message_id,))
        return row is not None

    async def get_message(self, message_id: str) -> Optional[MessageModel]:
        row = await self.fetchone(
            f"SELECT {_COLUMN_LIST} FROM messages WHERE id = ? ORDER BY rowid LIMIT 1",
            (message_id,)
        )
        if row is None:
            return None
        data = dict(row)
        data["mention_roles_json"] = data.get("mention_roles_json") or "[]"
        return MessageModel(**data)

    async def count_messages(self, channel_id: Optional[str] = None) -> int:
        if channel_id is None:
            return await self._scalar("SELECT COUNT(*) FROM messages")
        return await self._scalar("SELECT COUNT(*) FROM messages WHERE channel_id = ?", (channel_id,))

    async def check_duplicates(self) -> int:
        """
        Remove duplicate message rows, keeping the lowest rowid per message ID.

        Returns:
            Number of message IDs that had duplicates
        """
        async def operation(conn: aiosqlite.Connection) -> int:
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM (SELECT id FROM messages GROUP BY id HAVING COUNT(*) > 1)"
            )
            row = await cursor.fetchone()
            await cursor.close()
            duplicated_ids = row[0] if row else 0

            if duplicated_ids:
                await conn.execute(
                    "DELETE FROM messages WHERE rowid NOT IN (SELECT MIN(rowid) FROM messages GROUP BY id)"
                )
            return duplicated_ids

        duplicated_ids = await self._execute_with_retry(operation, "check_duplicates")
        if duplicated_ids:
            logger.info(f"Removed duplicate rows for {duplicated_ids} message IDs")
        else:
            logger.debug("No duplicate messages found")
        return duplicated_ids

    # Write-ahead staging

    async def stage_wal_entry(self, message: MessageModel) -> bool:
        """
        Stage a live message; re-staging an already staged ID is a no-op.

        Returns:
            True if a new entry was created
        """
        async def operation(conn: aiosqlite.Connection) -> bool:
            cursor = await conn.execute(WAL_INSERT_SQL, _message_params(message))
            inserted = cursor.rowcount == 1
            await cursor.close()
            return inserted

        return await self._execute_with_retry(operation, f"stage_wal_entry_{message.id}")

    async def get_ready_wal_entries(self, cutoff_timestamp: int) -> List[WalEntryModel]:
        """Get unclaimed entries whose event time is at or before the cutoff."""
        rows = await self.fetchall(
            f"SELECT {_COLUMN_LIST}, processed FROM message_wal "
            "WHERE processed = 0 AND timestamp <= ? ORDER BY timestamp ASC",
            (cutoff_timestamp,)
        )
        return [WalEntryModel(**dict(row)) for row in rows]

    async def get_wal_entry(self, message_id: str) -> Optional[WalEntryModel]:
        row = await self.fetchone(
            f"SELECT {_COLUMN_LIST}, processed FROM message_wal WHERE id = ?",
            (message_id,)
        )
        return WalEntryModel(**dict(row)) if row is not None else None

    async def claim_wal_entry(self, message_id: str) -> bool:
        """
        Mark a staged entry as owned by the current sweep.

        Returns:
            False if another sweep already claimed it
        """
        async def operation(conn: aiosqlite.Connection) -> bool:
            cursor = await conn.execute(
                "UPDATE message_wal SET processed = 1 WHERE id = ? AND processed = 0",
                (message_id,)
            )
            claimed = cursor.rowcount == 1
            await cursor.close()
            return claimed

        return await self._execute_with_retry(operation, f"claim_wal_entry_{message_id}")

    async def release_wal_entry(self, message_id: str) -> None:
        """Return a claimed entry to the pool for the next sweep."""
        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.execute("UPDATE message_wal SET processed = 0 WHERE id = ?", (message_id,))

        await self._execute_with_retry(operation, f"release_wal_entry_{message_id}")

    async def delete_wal_entry(self, message_id: str) -> None:
        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.execute("DELETE FROM message_wal WHERE id = ?", (message_id,))

        await self._execute_with_retry(operation, f"delete_wal_entry_{message_id}")

    async def promote_wal_entry(self, entry: MessageModel) -> None:
        """Archive a staged message and drop its entry in one transaction."""
        message = MessageModel(**entry.model_dump(include=set(MESSAGE_COLUMNS)))

        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.execute(MESSAGE_UPSERT_SQL, _message_params(message))
            await conn.execute("DELETE FROM message_wal WHERE id = ?", (message.id,))

        await self._execute_with_retry(operation, f"promote_wal_entry_{message.id}")

    async def get_wal_counts(self, cutoff_timestamp: int) -> Dict[str, Any]:
        row = await self.fetchone(
            "SELECT COUNT(*) AS total_entries, "
            "SUM(CASE WHEN processed = 0 AND timestamp <= ? THEN 1 ELSE 0 END) AS ready_to_process, "
            "MIN(timestamp) AS oldest_timestamp, "
            "MAX(timestamp) AS newest_timestamp "
            "FROM message_wal",
            (cutoff_timestamp,)
        )
        data = dict(row) if row is not None else {}
        data["total_entries"] = data.get("total_entries") or 0
        data["ready_to_process"] = data.get("ready_to_process") or 0
        return data

    # Channel cursors

    async def mark_channel_started(self, channel: ChannelRef) -> None:
        """Register a crawl target without touching an existing cursor."""
        now = epoch_ms()

        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                "INSERT INTO channels (id, name, fetch_started, fetch_completed, last_message_id, last_fetch_timestamp) "
                "VALUES (?, ?, 1, 0, NULL, ?) "
                "ON CONFLICT(id) DO UPDATE SET name = excluded.name, fetch_started = 1, "
                "last_fetch_timestamp = excluded.last_fetch_timestamp",
                (channel.id, channel.name, now)
            )

        await self._execute_with_retry(operation, f"mark_channel_started_{channel.id}")

    async def update_channel_cursor(self, channel_id: str, last_message_id: str) -> None:
        now = epoch_ms()

        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                "UPDATE channels SET last_message_id = ?, last_fetch_timestamp = ? WHERE id = ?",
                (last_message_id, now, channel_id)
            )

        await self._execute_with_retry(operation, f"update_channel_cursor_{channel_id}")

    async def mark_channel_completed(self, channel_id: str, last_message_id: Optional[str]) -> None:
        now = epoch_ms()

        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                "UPDATE channels SET fetch_started = 1, fetch_completed = 1, "
                "last_message_id = COALESCE(?, last_message_id), last_fetch_timestamp = ? WHERE id = ?",
                (last_message_id, now, channel_id)
            )

        await self._execute_with_retry(operation, f"mark_channel_completed_{channel_id}")

    async def get_channel_cursor(self, channel_id: str) -> Optional[ChannelCursorModel]:
        row = await self.fetchone("SELECT * FROM channels WHERE id = ?", (channel_id,))
        return ChannelCursorModel(**dict(row)) if row is not None else None

    async def get_channel_cursors(self) -> List[ChannelCursorModel]:
        rows = await self.fetchall("SELECT * FROM channels ORDER BY id")
        return [ChannelCursorModel(**dict(row)) for row in rows]

    # Members and roles

    async def upsert_members(self, members: List[GuildMemberModel]) -> int:
        """Store or refresh members in one transaction."""
        if not members:
            return 0

        params = [_member_params(member) for member in members]

        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.executemany(self._member_upsert_sql(), params)

        await self._execute_with_retry(operation, f"upsert_members_{len(params)}")
        return len(params)

    async def upsert_member(self, member: GuildMemberModel) -> None:
        await self.upsert_members([member])

    @staticmethod
    def _member_upsert_sql() -> str:
        return (
            "INSERT INTO guild_members (id, username, display_name, avatar_url, joined_at, joined_timestamp, "
            "bot, last_updated, left_guild, left_timestamp) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET username = excluded.username, display_name = excluded.display_name, "
            "avatar_url = excluded.avatar_url, joined_at = COALESCE(excluded.joined_at, guild_members.joined_at), "
            "joined_timestamp = COALESCE(excluded.joined_timestamp, guild_members.joined_timestamp), "
            "bot = excluded.bot, last_updated = excluded.last_updated, "
            "left_guild = excluded.left_guild, left_timestamp = excluded.left_timestamp"
        )

    async def store_member_with_roles(
        self,
        member: GuildMemberModel,
        roles: List[MemberRoleModel],
        history: Optional[List[RoleHistoryModel]] = None
    ) -> None:
        """
        Store a member, append role history, and replace current roles atomically.

        Args:
            member: Member row to upsert
            roles: Complete set of roles the member now holds
            history: Role changes to append before replacing roles
        """
        member_params = _member_params(member)
        role_params = [_member_role_params(role) for role in roles]
        history_params = [
            (entry.member_id, entry.role_id, entry.role_name, entry.action.value, entry.timestamp)
            for entry in history or []
        ]

        async def operation(conn: aiosqlite.Connection) -> None:
            if history_params:
                await conn.executemany(
                    "INSERT INTO role_history (member_id, role_id, role_name, action, timestamp) "
                    "VALUES (?, ?, ?, ?, ?)",
                    history_params
                )
            await conn.execute(self._member_upsert_sql(), member_params)
            await conn.execute("DELETE FROM member_roles WHERE member_id = ?", (member.id,))
            if role_params:
                await conn.executemany(
                    "INSERT INTO member_roles (member_id, role_id, role_name, role_color, role_position, "
                    "added_at, source) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    role_params
                )

        await self._execute_with_retry(operation, f"store_member_with_roles_{member.id}")

    async def store_member_batch(self, entries: List[Tuple[GuildMemberModel, List[MemberRoleModel]]]) -> int:
        """Store a batch of members with their current roles in one transaction."""
        if not entries:
            return 0

        async def operation(conn: aiosqlite.Connection) -> None:
            for member, roles in entries:
                await conn.execute(self._member_upsert_sql(), _member_params(member))
                await conn.execute("DELETE FROM member_roles WHERE member_id = ?", (member.id,))
                if roles:
                    await conn.executemany(
                        "INSERT INTO member_roles (member_id, role_id, role_name, role_color, role_position, "
                        "added_at, source) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        [_member_role_params(role) for role in roles]
                    )

        await self._execute_with_retry(operation, f"store_member_batch_{len(entries)}")
        return len(entries)

    async def mark_member_left(self, member_id: str, left_timestamp: int) -> bool:
        """
        Flag a tracked member as having left.

        Returns:
            True if a member row was updated
        """
        async def operation(conn: aiosqlite.Connection) -> bool:
            cursor = await conn.execute(
                "UPDATE guild_members SET left_guild = 1, left_timestamp = ?, last_updated = ? WHERE id = ?",
                (left_timestamp, epoch_ms(), member_id)
            )
            updated = cursor.rowcount == 1
            await cursor.close()
            return updated

        return await self._execute_with_retry(operation, f"mark_member_left_{member_id}")

    async def get_member(self, member_id: str) -> Optional[GuildMemberModel]:
        row = await self.fetchone("SELECT * FROM guild_members WHERE id = ?", (member_id,))
        return GuildMemberModel(**dict(row)) if row is not None else None

    async def get_member_roles(self, member_id: str) -> List[MemberRoleModel]:
        rows = await self.fetchall(
            "SELECT * FROM member_roles WHERE member_id = ? ORDER BY role_position DESC, role_id",
            (member_id,)
        )
        return [MemberRoleModel(**dict(row)) for row in rows]

    async def get_role_history(self, member_id: str) -> List[RoleHistoryModel]:
        rows = await self.fetchall(
            "SELECT member_id, role_id, role_name, action, timestamp FROM role_history "
            "WHERE member_id = ? ORDER BY id",
            (member_id,)
        )
        return [RoleHistoryModel(**dict(row)) for row in rows]

    async def upsert_roles(self, roles: List[GuildRoleModel]) -> int:
        """Store or refresh guild roles, clearing any soft-delete flag."""
        if not roles:
            return 0

        now = epoch_ms()
        params = [
            (
                role.id, role.name, role.color, role.position, role.permissions,
                int(role.mentionable), int(role.hoist), int(role.managed),
                role.created_at, role.created_timestamp, now
            )
            for role in roles
        ]

        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.executemany(
                "INSERT INTO guild_roles (id, name, color, position, permissions, mentionable, hoist, managed, "
                "created_at, created_timestamp, updated_timestamp, deleted) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0) "
                "ON CONFLICT(id) DO UPDATE SET name = excluded.name, color = excluded.color, "
                "position = excluded.position, permissions = excluded.permissions, "
                "mentionable = excluded.mentionable, hoist = excluded.hoist, managed = excluded.managed, "
                "updated_at = datetime('now'), updated_timestamp = excluded.updated_timestamp, deleted = 0",
                params
            )

        await self._execute_with_retry(operation, f"upsert_roles_{len(params)}")
        return len(params)

    async def upsert_role(self, role: GuildRoleModel) -> None:
        await self.upsert_roles([role])

    async def soft_delete_role(self, role_id: str, deleted_timestamp: int) -> None:
        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                "UPDATE guild_roles SET deleted = 1, deleted_at = datetime('now'), deleted_timestamp = ? WHERE id = ?",
                (deleted_timestamp, role_id)
            )

        await self._execute_with_retry(operation, f"soft_delete_role_{role_id}")

    async def get_role(self, role_id: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT * FROM guild_roles WHERE id = ?", (role_id,))
        return dict(row) if row is not None else None

    # Reconstruction queries

    async def find_left_member_candidates(self, limit: int) -> List[Dict[str, Any]]:
        """
        Find human authors with archived messages who are not tracked members.

        Returns:
            Rows with author_id, author_username, first_timestamp, last_timestamp
            and message_count, most recently active first
        """
        rows = await self.fetchall(
            """
            SELECT m.author_id AS author_id,
                   (SELECT x.author_username FROM messages x
                     WHERE x.author_id = m.author_id
                     ORDER BY x.timestamp DESC LIMIT 1) AS author_username,
                   MIN(m.timestamp) AS first_timestamp,
                   MAX(m.timestamp) AS last_timestamp,
                   COUNT(*) AS message_count
            FROM messages m
            WHERE m.author_bot = 0
              AND m.author_id NOT IN (SELECT id FROM guild_members)
            GROUP BY m.author_id
            ORDER BY last_timestamp DESC
            LIMIT ?
            """,
            (limit,)
        )
        return [dict(row) for row in rows]

    async def insert_left_members(self, members: List[GuildMemberModel]) -> int:
        """
        Insert reconstructed members, leaving existing rows untouched.

        Returns:
            Number of rows actually inserted
        """
        if not members:
            return 0

        params = [_member_params(member) for member in members]

        async def operation(conn: aiosqlite.Connection) -> int:
            inserted = 0
            for row in params:
                cursor = await conn.execute(
                    "INSERT OR IGNORE INTO guild_members (id, username, display_name, avatar_url, joined_at, "
                    "joined_timestamp, bot, last_updated, left_guild, left_timestamp) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    row
                )
                inserted += cursor.rowcount
                await cursor.close()
            return inserted

        return await self._execute_with_retry(operation, f"insert_left_members_{len(params)}")

    async def find_left_members_without_roles(self, limit: int) -> List[str]:
        rows = await self.fetchall(
            """
            SELECT gm.id FROM guild_members gm
            WHERE gm.left_guild = 1
              AND NOT EXISTS (SELECT 1 FROM member_roles mr WHERE mr.member_id = gm.id)
            ORDER BY gm.left_timestamp DESC
            LIMIT ?
            """,
            (limit,)
        )
        return [row["id"] for row in rows]

    async def get_role_history_additions(self, member_id: str) -> List[Dict[str, Any]]:
        """Earliest recorded "added" entry per role for a member."""
        rows = await self.fetchall(
            """
            SELECT rh.role_id AS role_id,
                   rh.role_name AS role_name,
                   MIN(rh.timestamp) AS first_seen,
                   gr.color AS role_color,
                   gr.position AS role_position
            FROM role_history rh
            LEFT JOIN guild_roles gr ON gr.id = rh.role_id
            WHERE rh.member_id = ? AND rh.action = 'added'
            GROUP BY rh.role_id
            """,
            (member_id,)
        )
        return [dict(row) for row in rows]

    async def get_mentioned_roles(self, member_id: str) -> List[Dict[str, Any]]:
        """
        Earliest mention per known role in a member's authored messages.

        Matches exact elements of the stored role-mention array.
        """
        rows = await self.fetchall(
            """
            SELECT gr.id AS role_id,
                   gr.name AS role_name,
                   gr.color AS role_color,
                   gr.position AS role_position,
                   MIN(m.timestamp) AS first_seen
            FROM messages m,
                 json_each(CASE WHEN json_valid(m.mention_roles_json)
                                THEN m.mention_roles_json ELSE '[]' END) AS mention
            JOIN guild_roles gr ON gr.id = CAST(mention.value AS TEXT)
            WHERE m.author_id = ?
            GROUP BY gr.id
            """,
            (member_id,)
        )
        return [dict(row) for row in rows]

    async def insert_member_roles(self, roles: List[MemberRoleModel]) -> int:
        """
        Insert member roles, ignoring rows that already exist.

        Returns:
            Number of rows actually inserted
        """
        if not roles:
            return 0

        params = [_member_role_params(role) for role in roles]

        async def operation(conn: aiosqlite.Connection) -> int:
            inserted = 0
            for row in params:
                cursor = await conn.execute(
                    "INSERT OR IGNORE INTO member_roles (member_id, role_id, role_name, role_color, "
                    "role_position, added_at, source) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    row
                )
                inserted += cursor.rowcount
                await cursor.close()
            return inserted

        return await self._execute_with_retry(operation, f"insert_member_roles_{len(params)}")

    # Metadata and maintenance

    async def set_metadata(self, values: Dict[str, Any]) -> None:
        now = epoch_ms()
        params = [(key, str(value), now) for key, value in values.items()]

        async def operation(conn: aiosqlite.Connection) -> None:
            await conn.executemany(
                "INSERT INTO guild_metadata (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                params
            )

        await self._execute_with_retry(operation, "set_metadata")

    async def get_metadata(self) -> Dict[str, str]:
        rows = await self.fetchall("SELECT key, value FROM guild_metadata ORDER BY key")
        return {row["key"]: row["value"] for row in rows}

    async def get_statistics(self) -> Dict[str, Any]:
        """
        Get archive statistics.

        Returns:
            Dictionary containing row counts per table
        """
        stats: Dict[str, Any] = {}
        queries: Iterable[Tuple[str, str]] = (
            ("total_messages", "SELECT COUNT(*) FROM messages"),
            ("staged_messages", "SELECT COUNT(*) FROM message_wal"),
            ("channels_tracked", "SELECT COUNT(*) FROM channels"),
            ("channels_completed", "SELECT COUNT(*) FROM channels WHERE fetch_completed = 1"),
            ("members_tracked", "SELECT COUNT(*) FROM guild_members"),
            ("members_left", "SELECT COUNT(*) FROM guild_members WHERE left_guild = 1"),
            ("member_roles", "SELECT COUNT(*) FROM member_roles"),
            ("role_history", "SELECT COUNT(*) FROM role_history"),
            ("guild_roles", "SELECT COUNT(*) FROM guild_roles WHERE deleted = 0"),
        )
        for name, sql in queries:
            stats[name] = await self._scalar(sql) or 0
        stats["file_size_bytes"] = _file_size(self.path)
        return stats

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the archive.

        Returns:
            Dictionary containing health check results
        """
        health_status: Dict[str, Any] = {
            "database_connected": False,
            "tables_accessible": False,
            "last_message_timestamp": None,
            "error": None
        }

        try:
            await self.connect()
            health_status["database_connected"] = True
            health_status["last_message_timestamp"] = await self._scalar("SELECT MAX(timestamp) FROM messages")
            health_status["tables_accessible"] = True
        except Exception as e:
            health_status["error"] = str(e)
            logger.error(f"Health check failed: {e}")

        return health_status

    async def vacuum(self) -> VacuumResult:
        """
        Compact the archive file.

        Returns:
            Sizes before and after the compaction
        """
        conn = self._ensure_connection()

        async with self._write_lock:
            await self._pragma(conn, "wal_checkpoint(TRUNCATE)")
            size_before = _file_size(self.path)
            logger.info(f"Vacuuming {self.path} ({size_before / (1024 * 1024):.2f} MB)")
            cursor = await conn.execute("VACUUM")
            await cursor.close()
            await self._pragma(conn, "wal_checkpoint(TRUNCATE)")
            size_after = _file_size(self.path)

        size_before_mb = size_before / (1024 * 1024)
        size_after_mb = size_after / (1024 * 1024)
        saved_mb = size_before_mb - size_after_mb
        percent_saved = (saved_mb / size_before_mb * 100) if size_before_mb > 0 else 0.0

        logger.info(f"Vacuum complete: saved {saved_mb:.2f} MB ({percent_saved:.1f}%)")
        return VacuumResult(
            size_before_mb=round(size_before_mb, 2),
            size_after_mb=round(size_after_mb, 2),
            space_saved_mb=round(saved_mb, 2),
            percent_saved=round(percent_saved, 1)
        )
