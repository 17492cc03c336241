"""Register a player account and print its id.

Usage: uv run python bin/register-player.py <username> [display_name]

The id is what the gateway forwards as X-Player-Id and what the race
service puts in submitted results.
"""

import asyncio
import sys
from pathlib import Path

# Add backend to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from progression.errors import ProgressionError
from progression.results.service import ProgressionService
from progression.settings import ProgressionSettings
from shared.db import Database


async def main() -> None:
    if len(sys.argv) not in (2, 3):
        print(f"Usage: {sys.argv[0]} <username> [display_name]")
        sys.exit(1)

    username = sys.argv[1]
    display_name = sys.argv[2] if len(sys.argv) == 3 else None
    settings = ProgressionSettings()

    db = Database(settings.database_path, busy_timeout_ms=settings.busy_timeout_ms)
    db.connect()

    try:
        service = ProgressionService(db, settings)
        try:
            player = await service.register_player(username, display_name=display_name)
        except ProgressionError as e:
            print(f"Error: {e}")
            sys.exit(1)

        print(f"Player registered: {player.username} (id: {player.id})")
    finally:
        db.close()


if __name__ == "__main__":
    asyncio.run(main())
