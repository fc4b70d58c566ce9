#!/usr/bin/env python3
"""
Seed client records for the users service and optionally flush its cache.

Clients are owned by another system; this helper creates them in a local or
staging database so users can be attached to them. It can be executed
manually from a developer workstation or CI job.
"""

import argparse
import asyncio
import json
from pathlib import Path
from typing import List, Optional
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from service_users.app.caching.tag_cache import RedisTagStore, TagAwareCache  # noqa: E402
from service_users.app.persistence import Client, Database  # noqa: E402
from shared.config import get_config  # noqa: E402


DEFAULT_CLIENTS = [
    {"name": "Demo Client", "email": "demo@example.com"},
]


async def seed(
    *,
    database_url: str,
    clients: List[dict],
    redis_url: Optional[str],
    cache_tag: str,
    dry_run: bool,
) -> dict:
    """Insert clients and return the summary."""
    summary = {"clients": [], "invalidated": None}

    if dry_run:
        summary["clients"] = [dict(data, id=None) for data in clients]
        return summary

    database = Database(database_url)
    await database.initialize()
    try:
        async with database.session() as session:
            records = [Client(name=data["name"], email=data.get("email")) for data in clients]
            session.add_all(records)
            await session.commit()
            summary["clients"] = [{"id": r.id, "name": r.name, "email": r.email} for r in records]
    finally:
        await database.close()

    if redis_url:
        cache = TagAwareCache(RedisTagStore(redis_url))
        await cache.start()
        try:
            summary["invalidated"] = await cache.invalidate_tags([cache_tag])
        finally:
            await cache.stop()

    return summary


def _load_clients(path: Optional[Path]) -> List[dict]:
    if path is None:
        return DEFAULT_CLIENTS
    data = json.loads(path.read_text())
    if not isinstance(data, list):
        raise ValueError("clients file must contain a JSON array")
    return data


def _parse_args() -> argparse.Namespace:
    config = get_config("users", 8013)
    parser = argparse.ArgumentParser(description="Seed clients for the users service.")
    parser.add_argument("--database-url", default=config.database_url, help="SQLAlchemy async database URL")
    parser.add_argument("--clients-file", type=Path, default=None, help="JSON array of {name, email} objects")
    parser.add_argument("--flush-cache", action="store_true", help="Drop the users cache tag in Redis afterwards")
    parser.add_argument("--redis-url", default=config.redis_url, help="Redis connection URL")
    parser.add_argument("--cache-tag", default=config.users_cache_tag, help="Cache tag to invalidate")
    parser.add_argument("--dry-run", action="store_true", help="Do not write anything; print planned inserts")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    try:
        summary = asyncio.run(
            seed(
                database_url=args.database_url,
                clients=_load_clients(args.clients_file),
                redis_url=args.redis_url if args.flush_cache else None,
                cache_tag=args.cache_tag,
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[seed-clients] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[seed-clients] DRY RUN - no database writes executed")

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
