import os

import django
import redis
from rq import Worker


def main() -> None:
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "clawster.settings")
    django.setup()
    from fleet_orchestrator.worker_tasks import schedule_periodic_jobs

    redis_url = os.environ.get("CLAWSTER_JOBS_REDIS_URL", "redis://redis:6379/0")
    conn = redis.Redis.from_url(redis_url)
    schedule_periodic_jobs()
    worker = Worker(["default"], connection=conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
