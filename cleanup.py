"""Cleanup script — runs one session sweep and prints the session stats."""

import asyncio

from rcs_auth.database.engine import dispose_db, init_db
from rcs_auth.webhook.handler import build_services


async def cleanup() -> None:
    """Purge expired and downgraded sessions, clear stale codes."""
    await init_db()
    manager = build_services().manager
    sweep = await manager.cleanup_expired_sessions()
    stats = await manager.get_session_stats()
    await dispose_db()

    print(
        f"🧹 Deleted {sweep.expired_deleted} expired and {sweep.downgraded_deleted} "
        f"downgraded sessions, cleared {sweep.codes_cleared} codes."
    )
    print(
        f"📊 {stats.active_sessions} active sessions "
        f"({', '.join(f'{method}: {count}' for method, count in stats.by_method.items())}), "
        f"average age {stats.average_session_age}."
    )


if __name__ == "__main__":
    asyncio.run(cleanup())
