#!/usr/bin/env python3
"""Print long-term memory statistics for a chatmem database.

Usage examples:
    # Whole database
    python scripts/memory_report.py

    # One user's memories in a specific database file
    python scripts/memory_report.py --db data/chatmem.db --user 1234

    # Most related memories of a record
    python scripts/memory_report.py --related 3f2a...
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from chatmem.config import settings
from chatmem.engine import MemoryEngine
from chatmem.memory.models import MemoryOwner


async def report(db_path: Path, owner: MemoryOwner | None, related: str | None) -> dict:
    engine = MemoryEngine(db_path=db_path, use_fallback_embeddings=True)
    data: dict = {"analytics": await engine.analytics(owner=owner)}
    if related:
        data["related"] = [
            {"memory_id": r.memory_id, "type": str(r.relationship_type), "strength": r.strength}
            for r in await engine.find_related(related, include_indirect=True)
        ]
    return data


def main() -> None:
    parser = argparse.ArgumentParser(description="Report on a chatmem memory database")
    parser.add_argument("--db", type=Path, default=settings.database_path, help="SQLite file")
    parser.add_argument("--user", help="Only memories owned by this user ID")
    parser.add_argument("--guild", help="Only memories owned by this guild ID")
    parser.add_argument("--related", help="Also list memories related to this memory ID")
    args = parser.parse_args()

    if not args.db.exists():
        print(f"Database not found: {args.db}", file=sys.stderr)
        sys.exit(1)

    owner = MemoryOwner(user_id=args.user, guild_id=args.guild) if args.user or args.guild else None
    print(json.dumps(asyncio.run(report(args.db, owner, args.related)), indent=2))


if __name__ == "__main__":
    main()
