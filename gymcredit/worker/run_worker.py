"""Run ARQ worker. Usage: python -m gymcredit.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from gymcredit.core.config import get_settings
from gymcredit.worker.tasks import expire_passes, get_redis_settings, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [expire_passes]
    cron_jobs = [
        cron(expire_passes, minute=get_settings().pass_expiry_sweep_minute, second=0),  # hourly
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    run_worker(WorkerSettings)
