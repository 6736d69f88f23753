"""
Guild Archiver - A Discord bot that archives guild messages and membership to SQLite.

This package provides a Discord bot that can:
- Crawl the full history of every readable channel, resumably
- Stage live messages in a write-ahead buffer before archiving them
- Track members, roles and role changes
- Reconstruct departed members and their roles from message history
"""

__version__ = "0.1.0"

from .bot import GuildArchiver
from .config import Config
from .models import MessageModel, ExportSummary, ReconstructionSummary
from .service import GuildArchive

__all__ = [
    "GuildArchiver",
    "GuildArchive",
    "Config",
    "MessageModel",
    "ExportSummary",
    "ReconstructionSummary",
]
