import os
import sys
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, HTTPException

sys.path.insert(0, str(Path(__file__).parent / "src"))

from guild_archiver.config import get_config
from guild_archiver.database import ArchiveDatabase
from guild_archiver.models import epoch_ms
from guild_archiver.wal import format_duration

app = FastAPI()


@app.get("/health")
async def health() -> dict[str, str]:
    """Healthcheck endpoint."""
    return {"status": "ok"}


@app.get("/health/wal/{guild_id}")
async def wal_health(guild_id: str) -> Dict[str, Any]:
    """Write-ahead buffer backlog for one guild archive."""
    config = get_config()
    path = config.database_path_for(guild_id)
    if not path.exists():
        raise HTTPException(status_code=404, detail=f"No archive for guild {guild_id}")

    db = ArchiveDatabase(path, config)
    await db.connect()
    try:
        now = epoch_ms()
        counts = await db.get_wal_counts(now - int(config.wal_dwell_time * 1000))
    finally:
        await db.close()

    oldest = counts.get("oldest_timestamp")
    return {
        "status": "ok",
        "total_entries": counts["total_entries"],
        "ready_to_process": counts["ready_to_process"],
        "oldest_age": format_duration(now - oldest if oldest is not None else None),
    }


if __name__ == "__main__":
    import uvicorn
    # Hosting platforms hand the port over in PORT
    port = int(os.environ.get("PORT") or get_config().health_check_port)
    uvicorn.run(app, host="0.0.0.0", port=port)
