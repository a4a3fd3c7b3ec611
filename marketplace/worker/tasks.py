"""Job registry wiring: dead-letter wrapper, the default periodic schedule, arq settings."""

import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable

from arq.connections import RedisSettings

from marketplace.core.config import get_settings
from marketplace.core.logging import get_logger
from marketplace.services.gateway import PaymentGateway
from marketplace.worker import cron as jobs
from marketplace.worker.scheduler import JobScheduler

log = get_logger(__name__)

AUTO_TOP_UP = "auto_top_up"
CLEANUP_STALE_PAYMENTS = "cleanup_stale_payments"
LOW_CREDIT_NOTIFICATIONS = "low_credit_notifications"
LEDGER_AUDIT = "ledger_audit"


async def _run_with_dlq(
    job_name: str,
    run_id: str | None,
    context: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from marketplace.models.failed_job import FailedJob
        fid = run_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            run_id=fid,
            context=context,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, run_id=fid, reason=str(e))
        raise


def with_dlq(job_name: str, body: Callable[[], Awaitable[Any]]) -> Callable[[], Awaitable[Any]]:
    async def run() -> Any:
        return await _run_with_dlq(job_name, None, {}, body())

    return run


def build_scheduler(gateway: PaymentGateway | None = None, poll_seconds: float = 30.0) -> JobScheduler:
    """The four periodic jobs on their default intervals."""
    s = get_settings()
    scheduler = JobScheduler(poll_seconds=poll_seconds)
    scheduler.register(
        AUTO_TOP_UP,
        with_dlq(AUTO_TOP_UP, lambda: jobs.run_auto_top_up(gateway)),
        timedelta(minutes=s.auto_top_up_interval_minutes),
    )
    scheduler.register(
        CLEANUP_STALE_PAYMENTS,
        with_dlq(CLEANUP_STALE_PAYMENTS, jobs.run_cleanup_stale_payments),
        timedelta(hours=1),
    )
    scheduler.register(
        LOW_CREDIT_NOTIFICATIONS,
        with_dlq(LOW_CREDIT_NOTIFICATIONS, jobs.run_low_credit_notifications),
        timedelta(hours=1),
    )
    scheduler.register(
        LEDGER_AUDIT,
        with_dlq(LEDGER_AUDIT, jobs.run_ledger_audit),
        timedelta(days=1),
    )
    return scheduler


async def startup(ctx: dict) -> None:
    from marketplace.core.logging import configure_logging
    from marketplace.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
