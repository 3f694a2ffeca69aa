"""APScheduler configuration for periodic refreshes.

Two jobs:
- portfolio_refresh: balances and PnL for Settings.wallet_address (only
  scheduled when a wallet is configured)
- network_stats_refresh: network-wide trading metrics

A job that hits the API rate limit has its next run pushed back and is put
back on its normal interval after the next success.
"""

from datetime import datetime, timezone, timedelta
from typing import Awaitable, Callable, Dict

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from trusted_stake.core.config import get_settings

logger = structlog.get_logger()

PORTFOLIO_JOB_ID = "portfolio_refresh"
NETWORK_STATS_JOB_ID = "network_stats_refresh"

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None

# Last outcome per job, for observability
_last_results: Dict[str, dict] = {}


def _new_result() -> dict:
    return {
        "success": None,
        "timestamp": None,
        "error": None,
        "consecutive_failures": 0,
        "rate_limited": False,
    }


def _result(job_id: str) -> dict:
    return _last_results.setdefault(job_id, _new_result())


def _record(job_id: str, success: bool, error: str | None = None, rate_limited: bool = False) -> None:
    result = _result(job_id)
    result["success"] = success
    result["error"] = error
    result["rate_limited"] = rate_limited
    result["timestamp"] = datetime.now(timezone.utc).isoformat()
    result["consecutive_failures"] = 0 if success else result["consecutive_failures"] + 1


async def _refresh_portfolio() -> None:
    from trusted_stake.services.portfolio import get_portfolio_service

    owner = get_settings().wallet_address
    outcome = await get_portfolio_service().refresh(owner)
    if not outcome.stale:
        summary = outcome.summary
        logger.info(
            "Scheduled portfolio refresh completed",
            total_staked_tao=summary.total_staked_tao,
            failed_hotkeys=len(summary.failed_hotkeys),
        )


async def _refresh_network_stats() -> None:
    from trusted_stake.services.network_stats import get_network_stats_service

    snapshot = await get_network_stats_service().refresh()
    logger.info("Scheduled network stats refresh completed", subnets=snapshot.subnet_count)


async def _run_job(job_id: str, refresh: Callable[[], Awaitable[None]]) -> None:
    """Run one refresh with rate limit handling."""
    from trusted_stake.services.data.trustedstake_client import TrustedStakeRateLimitError

    logger.debug("Scheduled job starting", job_id=job_id)
    try:
        await refresh()
    except TrustedStakeRateLimitError as e:
        _record(job_id, False, error=str(e), rate_limited=True)
        logger.warning("Scheduled job rate limited", job_id=job_id, retry_after=e.retry_after)
        _handle_rate_limit_backoff(job_id, retry_after=e.retry_after)
    except Exception as e:
        _record(job_id, False, error=str(e))
        logger.error("Scheduled job failed", job_id=job_id, error=str(e))
    else:
        backed_off = _result(job_id)["rate_limited"]
        _record(job_id, True)
        if backed_off:
            reset_to_normal_interval(job_id)


def _normal_trigger(job_id: str) -> IntervalTrigger:
    settings = get_settings()
    if job_id == PORTFOLIO_JOB_ID:
        return IntervalTrigger(seconds=settings.portfolio_refresh_seconds)
    return IntervalTrigger(seconds=settings.stats_refresh_seconds)


def _handle_rate_limit_backoff(job_id: str, retry_after: int | None = None) -> None:
    """Back off a rate-limited job.

    Uses Retry-After when given, otherwise exponential backoff on
    consecutive failures (1, 2, 4 ... 30 minutes).
    """
    scheduler = get_scheduler()
    if not scheduler.running:
        return

    if retry_after and retry_after > 0:
        delay_seconds = retry_after
    else:
        failures = max(1, _result(job_id)["consecutive_failures"])
        delay_seconds = min(30 * 60, 60 * (2 ** (failures - 1)))

    next_run = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
    logger.info(
        "Rate limited - backing off job",
        job_id=job_id,
        delay_seconds=delay_seconds,
        next_run=next_run.isoformat(),
        consecutive_failures=_result(job_id)["consecutive_failures"],
    )

    # Keep the interval trigger; a fired one-shot trigger removes the job
    job = scheduler.get_job(job_id)
    if job:
        job.modify(next_run_time=next_run)


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler singleton."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AsyncIOScheduler(timezone="UTC")
    return _scheduler


def start_scheduler() -> None:
    """Start the background scheduler."""
    settings = get_settings()
    scheduler = get_scheduler()

    if scheduler.running:
        logger.warning("Scheduler already running")
        return

    if settings.wallet_address:
        scheduler.add_job(
            _run_job,
            trigger=_normal_trigger(PORTFOLIO_JOB_ID),
            id=PORTFOLIO_JOB_ID,
            name="Portfolio refresh",
            args=[PORTFOLIO_JOB_ID, _refresh_portfolio],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    else:
        logger.info("No wallet configured, portfolio refresh not scheduled")

    scheduler.add_job(
        _run_job,
        trigger=_normal_trigger(NETWORK_STATS_JOB_ID),
        id=NETWORK_STATS_JOB_ID,
        name="Network stats refresh",
        args=[NETWORK_STATS_JOB_ID, _refresh_network_stats],
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started",
        portfolio_interval=f"{settings.portfolio_refresh_seconds}s" if settings.wallet_address else None,
        stats_interval=f"{settings.stats_refresh_seconds}s",
    )


def stop_scheduler() -> None:
    """Stop the background scheduler."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None


def get_scheduler_status() -> dict:
    """Get current scheduler status for health checks."""
    scheduler = get_scheduler()
    jobs = {}
    if scheduler.running:
        for job in scheduler.get_jobs():
            jobs[job.id] = {
                "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
                "last_result": _result(job.id).copy(),
            }

    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": jobs,
    }


def reset_to_normal_interval(job_id: str) -> None:
    """Put a job back on its normal interval after a backoff period."""
    scheduler = get_scheduler()
    if not scheduler.running:
        return

    job = scheduler.get_job(job_id)
    if job:
        job.reschedule(trigger=_normal_trigger(job_id))
        logger.info("Job reset to normal interval", job_id=job_id)
