#!/usr/bin/env python3
"""
Guild Archiver CLI Tool

A command-line interface for inspecting and maintaining guild archives.
Provides commands for setup, statistics, deduplication, compaction and
offline role reconstruction.
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Optional

import click
import aiohttp
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn

# Add the src directory to the path for imports
sys.path.insert(0, str(Path(__file__).parent / "src"))

from guild_archiver.config import Config, load_config_with_overrides, get_config
from guild_archiver.database import ArchiveDatabase
from guild_archiver.reconstruction import MembershipReconstructor
from guild_archiver.wal import WriteAheadBuffer

console = Console()


class ArchiverCLI:
    """Main CLI application class."""

    def __init__(self):
        self.config: Optional[Config] = None

    def load_config(self, **overrides) -> bool:
        """Load configuration with optional overrides."""
        try:
            if overrides:
                self.config = load_config_with_overrides(**overrides)
            else:
                self.config = get_config()
            return True
        except Exception as e:
            console.print(f"[red]Failed to load configuration: {e}[/red]")
            return False

    async def open_archive(self, guild_id: str) -> Optional[ArchiveDatabase]:
        """Open and migrate an existing guild archive."""
        if not self.config:
            return None
        path = self.config.database_path_for(guild_id)
        if not path.exists():
            console.print(f"[red]No archive found at {path}[/red]")
            return None
        db = ArchiveDatabase(path, self.config)
        await db.initialize()
        return db


cli = ArchiverCLI()


@click.group()
@click.version_option(version="0.1.0")
def main():
    """Guild Archiver Management CLI"""
    pass


@main.command()
@click.option('--token', prompt='Discord Bot Token', help='Discord bot token', hide_input=True)
@click.option('--database-dir', default='data', help='Directory for guild archives')
@click.option('--env-file', default='.env', help='Environment file path')
def setup(token: str, database_dir: str, env_file: str):
    """Write an initial .env configuration."""

    console.print("[bold blue]Setting up Guild Archiver...[/bold blue]")

    if len(token) < 50:
        console.print("[red]Error: Discord token appears to be invalid (too short)[/red]")
        return

    env_content = f"""# Discord Configuration
DISCORD_TOKEN={token}
BOT_PREFIX=!

# Storage Configuration
DATABASE_DIR={database_dir}

# Logging Configuration
LOG_LEVEL=INFO
ENABLE_DEBUG=false

# Crawler Configuration
HISTORY_PAGE_SIZE=100
DB_BATCH_SIZE=100
MAX_CONCURRENT_CRAWLS=10

# Write-Ahead Buffer Configuration
WAL_CHECK_INTERVAL=60
WAL_DWELL_TIME=3600

# Memory Configuration
MEMORY_LIMIT_MB=1024
MEMORY_SCALE_FACTOR=0.85
"""

    try:
        with open(env_file, 'w') as f:
            f.write(env_content)
        console.print(f"[green]✓ Configuration saved to {env_file}[/green]")
        console.print("\n[cyan]Test it with: python cli.py config test[/cyan]")
    except Exception as e:
        console.print(f"[red]Error writing configuration file: {e}[/red]")


@main.group()
def config():
    """Configuration management commands."""
    pass


@config.command()
def test():
    """Test the configuration and the archive directory."""

    console.print("[bold blue]Testing Guild Archiver configuration...[/bold blue]")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:

        task1 = progress.add_task("Loading configuration...", total=None)
        if not cli.load_config():
            return
        progress.update(task1, description="✓ Configuration loaded")

        task2 = progress.add_task("Checking archive directory...", total=None)
        database_dir = Path(cli.config.database_dir)
        if database_dir.is_dir() and os.access(database_dir, os.W_OK):
            progress.update(task2, description="✓ Archive directory writable")
        else:
            progress.update(task2, description="✗ Archive directory not writable")
            console.print(f"[red]Cannot write to {database_dir}[/red]")
            return

    console.print("\n[bold green]✓ All tests passed! Configuration is valid.[/bold green]")

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Log Level", cli.config.log_level.value)
    table.add_row("Archive Directory", str(database_dir.resolve()))
    table.add_row("Concurrent Crawls", str(cli.config.max_concurrent_crawls))
    table.add_row("Dwell Time", f"{cli.config.wal_dwell_time:.0f}s")
    table.add_row("Memory Limit", f"{cli.config.memory_limit_mb} MB x {cli.config.memory_scale_factor}")
    table.add_row("Excluded Channels", ", ".join(cli.config.excluded_channels_list) or "none")
    table.add_row("Production Mode", str(cli.config.is_production))

    console.print(table)


@main.group()
def db():
    """Archive management commands."""
    pass


@db.command()
@click.argument('guild_id')
def stats(guild_id: str):
    """Show archive statistics for a guild."""

    async def _show_stats():
        if not cli.load_config():
            return
        archive = await cli.open_archive(guild_id)
        if archive is None:
            return

        try:
            stats = await archive.get_statistics()
            metadata = await archive.get_metadata()

            table = Table(title=f"Archive Statistics ({guild_id})")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", style="magenta")

            for key, value in stats.items():
                table.add_row(key.replace('_', ' ').title(), f"{value:,}")
            for key, value in metadata.items():
                table.add_row(key.replace('_', ' ').title(), value)

            console.print(table)
        except Exception as e:
            console.print(f"[red]Failed to get archive statistics: {e}[/red]")
        finally:
            await archive.close()

    asyncio.run(_show_stats())


@db.command()
@click.argument('guild_id')
def dedupe(guild_id: str):
    """Remove duplicate message rows."""

    async def _dedupe():
        if not cli.load_config():
            return
        archive = await cli.open_archive(guild_id)
        if archive is None:
            return

        try:
            duplicates = await archive.check_duplicates()
            console.print(f"[green]✓ Removed duplicates for {duplicates} message IDs[/green]")
        except Exception as e:
            console.print(f"[red]Deduplication failed: {e}[/red]")
        finally:
            await archive.close()

    asyncio.run(_dedupe())


@db.command()
@click.argument('guild_id')
def vacuum(guild_id: str):
    """Compact a guild archive (stop the bot first)."""

    async def _vacuum():
        if not cli.load_config():
            return
        archive = await cli.open_archive(guild_id)
        if archive is None:
            return

        try:
            result = await archive.vacuum()

            table = Table(title="Vacuum Result")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", style="magenta")
            table.add_row("Size Before", f"{result.size_before_mb:.2f} MB")
            table.add_row("Size After", f"{result.size_after_mb:.2f} MB")
            table.add_row("Space Saved", f"{result.space_saved_mb:.2f} MB ({result.percent_saved:.1f}%)")
            console.print(table)
        except Exception as e:
            console.print(f"[red]Vacuum failed: {e}[/red]")
        finally:
            await archive.close()

    asyncio.run(_vacuum())


@db.command()
@click.argument('guild_id')
def health(guild_id: str):
    """Check archive health."""

    async def _check_health():
        if not cli.load_config():
            return
        archive = ArchiveDatabase(cli.config.database_path_for(guild_id), cli.config)

        try:
            health = await archive.health_check()

            table = Table(title="Archive Health Check")
            table.add_column("Check", style="cyan")
            table.add_column("Status", style="magenta")
            table.add_column("Details", style="dim")

            status = "✓ Healthy" if health["database_connected"] else "✗ Failed"
            table.add_row("Database Connection", status, "")

            status = "✓ Accessible" if health["tables_accessible"] else "✗ Failed"
            table.add_row("Table Access", status, "")

            if health["last_message_timestamp"]:
                table.add_row("Last Message", "✓ Available", str(health["last_message_timestamp"]))
            else:
                table.add_row("Last Message", "No messages", "")

            console.print(table)

            if health.get("error"):
                console.print(f"\n[red]Error: {health['error']}[/red]")
        finally:
            await archive.close()

    asyncio.run(_check_health())


@main.group()
def wal():
    """Write-ahead buffer commands."""
    pass


@wal.command(name="stats")
@click.argument('guild_id')
def wal_stats(guild_id: str):
    """Show write-ahead buffer statistics."""

    async def _wal_stats():
        if not cli.load_config():
            return
        archive = await cli.open_archive(guild_id)
        if archive is None:
            return

        try:
            buffer = WriteAheadBuffer(archive, source=None, config=cli.config)
            stats = await buffer.get_stats()

            table = Table(title="Write-Ahead Buffer")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", style="magenta")
            table.add_row("Staged Entries", f"{stats.total_entries:,}")
            table.add_row("Ready To Process", f"{stats.ready_to_process:,}")
            table.add_row("Oldest Entry Age", stats.oldest_age)
            table.add_row("Newest Entry Age", stats.newest_age)
            console.print(table)
        finally:
            await archive.close()

    asyncio.run(_wal_stats())


@main.group()
def reconstruct():
    """Offline reconstruction commands."""
    pass


@reconstruct.command(name="roles")
@click.argument('guild_id')
def reconstruct_roles(guild_id: str):
    """Infer roles of departed members from role history and mentions."""

    async def _reconstruct_roles():
        if not cli.load_config():
            return
        archive = await cli.open_archive(guild_id)
        if archive is None:
            return

        try:
            reconstructor = MembershipReconstructor(archive, source=None, config=cli.config)
            summary = await reconstructor.reconstruct_roles()

            table = Table(title="Role Reconstruction")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", style="magenta")
            table.add_row("Departed Members", str(summary.candidates))
            table.add_row("Roles Inserted", str(summary.inserted))
            table.add_row("Members Without Evidence", str(summary.skipped))
            for source, count in summary.details.items():
                table.add_row(f"From {source.replace('_', ' ')}", str(count))
            table.add_row("Failed Batches", str(summary.failed_batches))
            console.print(table)
            console.print("[dim]Reconstructed roles are inferred evidence, not ground truth.[/dim]")
        finally:
            await archive.close()

    asyncio.run(_reconstruct_roles())


@main.group()
def bot():
    """Bot management commands."""
    pass


@bot.command()
@click.option('--url', help='Bot health check URL')
def status(url: str):
    """Check bot status via health check endpoint."""

    async def _check_status():
        port = os.environ.get('PORT') or (cli.config.health_check_port if cli.load_config() else 8080)
        check_url = url or f"http://localhost:{port}/health"

        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(check_url, timeout=aiohttp.ClientTimeout(total=10)) as response:
                    if response.status == 200:
                        data = await response.json()
                        console.print("[bold green]✓ Bot is running[/bold green]")

                        table = Table(title="Bot Status")
                        table.add_column("Metric", style="cyan")
                        table.add_column("Value", style="magenta")

                        for key, value in data.items():
                            if isinstance(value, dict):
                                value = json.dumps(value, indent=2)
                            table.add_row(key.replace('_', ' ').title(), str(value))

                        console.print(table)
                    else:
                        console.print(f"[red]✗ Bot health check failed (HTTP {response.status})[/red]")
        except Exception as e:
            console.print(f"[red]✗ Bot is not responding: {e}[/red]")
            console.print("[yellow]Make sure the bot and healthcheck server are running[/yellow]")
            if not url:
                console.print("[cyan]Try specifying the URL with --url option[/cyan]")

    asyncio.run(_check_status())


@main.command()
def docs():
    """Show documentation and helpful information."""

    console.print("[bold blue]Guild Archiver[/bold blue]\n")

    console.print("[bold yellow]Quick Start:[/bold yellow]")
    console.print("1. python cli.py setup")
    console.print("2. python cli.py config test")
    console.print("3. python main.py")
    console.print("4. In Discord, run !exportguild as an administrator")

    console.print("\n[bold yellow]Bot Commands:[/bold yellow]")
    console.print("• !exportguild - archive every readable channel")
    console.print("• !members sync - import current members and roles")
    console.print("• !members left / !members roles - reconstruct departed members")
    console.print("• !ex list | !ex add <channel> | !ex remove <channel> - manage excluded channels")
    console.print("• !walstats, !dedupe, !vacuum - maintenance")
