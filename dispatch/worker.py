"""
ARQ background worker: periodic AFK sweep (agents with no interaction go AFK and
their tickets are handed off) plus an on-demand orphaned-ticket redistribution job.
"""

import asyncio
import logging
from dataclasses import replace

from arq import cron, run_worker
from arq.connections import RedisSettings

from dispatch.config import AFK_CHECK_INTERVAL_MINUTES, REDIS_CONN_TIMEOUT, REDIS_URL
from dispatch.engine import build_engine

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:
    ctx["engine"] = build_engine()


async def sweep_idle_agents(ctx: dict) -> list[str]:
    """Cron job: switch agents idle past the AFK timeout to `afk`."""
    engine = ctx["engine"]
    switched = await asyncio.to_thread(engine.afk.check_for_inactive_agents)
    if switched:
        engine.publish_connected_agents()
        logger.info("AFK sweep switched %d agent(s): %s", len(switched), ", ".join(switched))
    return switched


async def redistribute_orphaned_tickets(ctx: dict, cap: int | None = None) -> int:
    """Job: hand out waiting tickets to available agents. Returns the number moved."""
    engine = ctx["engine"]
    outcomes = await asyncio.to_thread(engine.rebalancing.redistribute_orphaned, cap)
    moved = sum(1 for o in outcomes if o.ok)
    logger.info("Redistributed %d/%d waiting ticket(s).", moved, len(outcomes))
    return moved


class WorkerSettings:
    functions = [sweep_idle_agents, redistribute_orphaned_tickets]
    cron_jobs = [
        cron(sweep_idle_agents, minute=set(range(0, 60, max(1, AFK_CHECK_INTERVAL_MINUTES)))),
    ]
    on_startup = startup
    redis_settings = replace(
        RedisSettings.from_dsn(REDIS_URL),
        conn_timeout=REDIS_CONN_TIMEOUT,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    run_worker(WorkerSettings)
