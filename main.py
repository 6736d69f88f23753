#!/usr/bin/env python3
"""
Main entry point for the Guild Archiver.

This script initializes and runs the Discord bot that archives guild messages
and membership into one SQLite file per guild.
"""

import asyncio
import sys
from pathlib import Path

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).parent / "src"))

from guild_archiver import GuildArchiver
from guild_archiver.config import load_config


async def main() -> None:
    """Main entry point for the Guild Archiver bot."""
    try:
        print("Loading configuration...")
        config = load_config()
        print("Configuration loaded successfully")
        print(f"Archives will be stored in {Path(config.database_dir).resolve()}")
        print(f"Live messages are archived after {config.wal_dwell_time:.0f}s")

        print("Initializing Discord bot...")
        bot = GuildArchiver(config)

        print("Starting bot...")
        print("Press Ctrl+C to stop the bot gracefully")

        await bot.start(config.discord_token)

    except KeyboardInterrupt:
        print("\nReceived keyboard interrupt, shutting down gracefully...")
    except Exception as e:
        print(f"Fatal error: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)
    finally:
        print("Bot shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
