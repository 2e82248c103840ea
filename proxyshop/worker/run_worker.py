"""Run ARQ worker. Usage: python -m proxyshop.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from proxyshop.worker.tasks import expire_proxies, get_redis_settings, shutdown, startup, sweep_stalled_orders


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = []
    cron_jobs = [
        cron(expire_proxies, minute=set(range(0, 60, 10)), second=0),  # every 10 minutes
        cron(sweep_stalled_orders, second=0),  # every minute at :00
    ]
    on_startup = startup
    on_shutdown = shutdown


def main():
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
