"""
Maintenance jobs invoked by an external scheduler.

Every job opens its own database session and may run on any cadence, even
overlapping with itself:

    python -m livequiz.tasks drain
    python -m livequiz.tasks sweep
    python -m livequiz.tasks purge
"""

import asyncio
import logging
import sys
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from livequiz.config import settings
from livequiz.database import AsyncSessionLocal
from livequiz.services import connection_registry
from livequiz.services.event_log import purge_events_older_than
from livequiz.services.response_capture import DrainReport, drain_queue
from livequiz.services.connection_registry import SweepReport

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


async def drain_response_queue(
    limit: Optional[int] = None,
    session_factory: SessionFactory = AsyncSessionLocal,
) -> DrainReport:
    async with session_factory() as db:
        try:
            return await drain_queue(db, limit=limit or settings.QUEUE_DRAIN_LIMIT)
        except Exception:
            await db.rollback()
            raise


async def sweep_stale_connections(
    timeout_seconds: Optional[int] = None,
    session_factory: SessionFactory = AsyncSessionLocal,
) -> SweepReport:
    async with session_factory() as db:
        try:
            report = await connection_registry.sweep_stale(db, timeout_seconds=timeout_seconds)
            await db.commit()
            return report
        except Exception:
            await db.rollback()
            raise


async def purge_session_logs(
    retention_days: Optional[int] = None,
    session_factory: SessionFactory = AsyncSessionLocal,
) -> int:
    async with session_factory() as db:
        try:
            deleted = await purge_events_older_than(
                db, retention_days=retention_days or settings.SESSION_LOG_RETENTION_DAYS
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    if deleted:
        logger.info("Purged %s session log rows", deleted)
    return deleted


JOBS = {
    "drain": drain_response_queue,
    "sweep": sweep_stale_connections,
    "purge": purge_session_logs,
}


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 1 or args[0] not in JOBS:
        print(f"usage: python -m livequiz.tasks {{{'|'.join(JOBS)}}}", file=sys.stderr)
        return 2
    result = asyncio.run(JOBS[args[0]]())
    logger.info("Job %s finished: %s", args[0], result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
