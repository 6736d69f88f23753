"""
Membership reconstruction from archived evidence.

Members who left before the bot started tracking leave no membership record,
only the messages they wrote. These routines infer such members and the
roles they most likely held. The results are best-effort evidence, not
ground truth: join and leave times are bounded by first and last message,
and mention-derived roles only show that a member mentioned a role.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from .config import Config
from .database import ArchiveDatabase
from .models import GuildMemberModel, MemberRoleModel, ReconstructionSummary, RoleSource, epoch_ms
from .source import ArchiveSource, RateLimitedError


def _iso_from_ms(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


class MembershipReconstructor:
    """Infers departed members and their roles, idempotently."""

    def __init__(self, db: ArchiveDatabase, source: Optional[ArchiveSource], config: Config) -> None:
        """
        Initialize the reconstructor.

        Args:
            db: Archive database
            source: Upstream used to confirm departures; role reconstruction
                works offline and does not need one
            config: Configuration object
        """
        self.db = db
        self.source = source
        self.config = config

    async def _confirm_absent(self, member_id: str) -> bool:
        """
        Check upstream whether a candidate is still in the guild.

        Rate limits are waited out; any other failure counts as absent.
        """
        if self.source is None:
            raise ValueError("Confirming departures requires an upstream source")

        while True:
            try:
                current = await self.source.fetch_current_member(member_id)
                return current is None
            except RateLimitedError as e:
                delay = e.retry_after if e.retry_after is not None else self.config.default_rate_limit_retry
                logger.warning(f"Rate limited while checking member {member_id}, retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
            except Exception as e:
                logger.debug(f"Member {member_id} lookup failed, treating as departed: {e}")
                return True

    async def reconstruct_left_members(self) -> ReconstructionSummary:
        """
        Create member rows for message authors who are no longer in the guild.

        Join time is estimated from the author's first archived message and
        leave time from the last. Existing member rows are never modified.

        Returns:
            Summary with candidates, inserted rows, skipped current members
            and failed batches
        """
        candidates = await self.db.find_left_member_candidates(self.config.left_member_candidate_limit)
        summary = ReconstructionSummary(candidates=len(candidates))
        batch_size = self.config.reconstruction_batch_size

        logger.info(f"Reconstructing left members from {len(candidates)} candidates")

        for start in range(0, len(candidates), batch_size):
            batch = candidates[start:start + batch_size]
            members: List[GuildMemberModel] = []

            for row in batch:
                summary.processed += 1
                if not await self._confirm_absent(row["author_id"]):
                    summary.skipped += 1
                    continue

                name = row.get("author_username") or ""
                members.append(GuildMemberModel(
                    id=row["author_id"],
                    username=name,
                    display_name=name,
                    joined_at=_iso_from_ms(row["first_timestamp"]),
                    joined_timestamp=row["first_timestamp"],
                    bot=False,
                    last_updated=epoch_ms(),
                    left_guild=True,
                    left_timestamp=row["last_timestamp"],
                ))

            if not members:
                continue

            try:
                inserted = await self.db.insert_left_members(members)
                summary.inserted += inserted
                logger.debug(f"Left-member batch at {start}: {inserted} inserted")
            except Exception as e:
                summary.failed_batches += 1
                summary.errors.append(f"batch {start // batch_size}: {e}")
                logger.error(f"Left-member batch at {start} rolled back: {e}")

        logger.info(
            f"Left-member reconstruction done: {summary.inserted} inserted, "
            f"{summary.skipped} still members, {summary.failed_batches} failed batches"
        )
        return summary

    def _merge_role_evidence(
        self,
        member_id: str,
        history: List[Dict[str, Any]],
        mentions: List[Dict[str, Any]]
    ) -> Dict[str, MemberRoleModel]:
        """Merge role evidence, keeping the earliest timestamp per role."""
        merged: Dict[str, MemberRoleModel] = {}

        for rows, source in ((history, RoleSource.ROLE_HISTORY), (mentions, RoleSource.MESSAGE_MENTION)):
            for row in rows:
                role_id = str(row["role_id"])
                first_seen = row["first_seen"]
                existing = merged.get(role_id)
                # On a tie the role history entry, seen first, wins
                if existing is not None and existing.added_at <= first_seen:
                    continue
                merged[role_id] = MemberRoleModel(
                    member_id=member_id,
                    role_id=role_id,
                    role_name=row.get("role_name") or "",
                    role_color=row.get("role_color"),
                    role_position=row.get("role_position") or 0,
                    added_at=first_seen,
                    source=source,
                )

        return merged

    async def reconstruct_roles(self) -> ReconstructionSummary:
        """
        Infer roles for departed members that have no role rows.

        Combines recorded role additions with roles the member mentioned in
        their own messages, keeping the earliest evidence per role.

        Returns:
            Summary with members examined, roles inserted and failed batches;
            details counts roles by provenance
        """
        member_ids = await self.db.find_left_members_without_roles(self.config.role_candidate_limit)
        summary = ReconstructionSummary(candidates=len(member_ids))
        summary.details = {RoleSource.ROLE_HISTORY.value: 0, RoleSource.MESSAGE_MENTION.value: 0}
        batch_size = self.config.reconstruction_batch_size

        logger.info(f"Reconstructing roles for {len(member_ids)} departed members")

        for start in range(0, len(member_ids), batch_size):
            batch = member_ids[start:start + batch_size]
            rows: List[MemberRoleModel] = []

            try:
                for member_id in batch:
                    summary.processed += 1
                    history = await self.db.get_role_history_additions(member_id)
                    mentions = await self.db.get_mentioned_roles(member_id)
                    merged = self._merge_role_evidence(member_id, history, mentions)
                    if not merged:
                        summary.skipped += 1
                        continue
                    rows.extend(merged.values())

                inserted = await self.db.insert_member_roles(rows)
                summary.inserted += inserted
                for row in rows:
                    summary.details[row.source.value] += 1
            except Exception as e:
                summary.failed_batches += 1
                summary.errors.append(f"batch {start // batch_size}: {e}")
                logger.error(f"Role reconstruction batch at {start} rolled back: {e}")

        logger.info(
            f"Role reconstruction done: {summary.inserted} roles for {summary.processed - summary.skipped} members, "
            f"{summary.failed_batches} failed batches"
        )
        return summary
