"""Run ARQ worker. Usage: python -m marketplace.worker.run_worker (or: arq marketplace.worker.run_worker.WorkerSettings)"""

from arq import run_worker

from marketplace.worker.tasks import build_scheduler, get_redis_settings, shutdown, startup

scheduler = build_scheduler()


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions: list = []
    cron_jobs = scheduler.arq_cron_jobs()
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    run_worker(WorkerSettings)
