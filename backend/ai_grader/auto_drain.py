"""Auto-drain poller: keep triggering drains until the grading queue is empty.

Usage:
    ai-grader-auto-drain https://grader.example.edu --interval 1.5 --limit 6 --rounds 3

This is the external caller the deployment relies on instead of a worker
process. It talks to the API only, so it can run anywhere (a laptop, a CI
job, a cron box).
"""
import argparse
import asyncio
import logging
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)


async def fetch_queue(session: aiohttp.ClientSession, base_url: str) -> Optional[dict]:
    """Queue counts from the monitor endpoint, or None if unreachable."""
    try:
        async with session.get(f"{base_url}/api/monitor/ai-worker") as resp:
            if resp.status != 200:
                logger.warning(f"Monitor returned HTTP {resp.status}")
                return None
            data = await resp.json()
            return data.get("aiWorkerQueue")
    except aiohttp.ClientError as e:
        logger.warning(f"Failed to fetch monitor: {e}")
        return None


async def trigger_drain(
    session: aiohttp.ClientSession, base_url: str, limit: int, rounds: int,
) -> Optional[dict]:
    try:
        async with session.post(
            f"{base_url}/api/trigger-ai-worker", params={"limit": limit, "rounds": rounds},
        ) as resp:
            if resp.status != 200:
                logger.warning(f"Trigger failed: HTTP {resp.status} {await resp.text()}")
                return None
            return await resp.json()
    except aiohttp.ClientError as e:
        logger.warning(f"Trigger error: {e}")
        return None


async def auto_drain(
    base_url: str,
    *,
    interval: float = 1.5,
    limit: int = 6,
    rounds: int = 3,
    max_iterations: Optional[int] = None,
    timeout: float = 60.0,
) -> int:
    """Poll and trigger until pending and processing are both zero.

    Returns the number of trigger calls made.
    """
    base_url = base_url.rstrip("/")
    triggers = 0
    iterations = 0
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            queue = await fetch_queue(session, base_url)
            if queue is not None:
                pending = int(queue.get("pending", 0))
                processing = int(queue.get("processing", 0))
                logger.info(f"Pending: {pending}, processing: {processing}")
                if pending == 0 and processing == 0:
                    logger.info("Queue drained")
                    break
            else:
                logger.info("Could not read queue counts; triggering anyway")

            summary = await trigger_drain(session, base_url, limit, rounds)
            triggers += 1
            if summary is not None:
                logger.info(f"Trigger response: {summary.get('processed', 0)} processed")
            await asyncio.sleep(interval)
    return triggers


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Drain the AI grading queue via the API.")
    parser.add_argument("base_url", nargs="?", default="http://localhost:8721")
    parser.add_argument("--interval", type=float, default=1.5, help="seconds between triggers")
    parser.add_argument("--limit", type=int, default=6, help="jobs per round")
    parser.add_argument("--rounds", type=int, default=3, help="rounds per trigger")
    parser.add_argument("--max-iterations", type=int, default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    logger.info(f"Auto-drain starting against {args.base_url}")
    asyncio.run(auto_drain(
        args.base_url,
        interval=args.interval,
        limit=args.limit,
        rounds=args.rounds,
        max_iterations=args.max_iterations,
    ))


if __name__ == "__main__":
    main()
