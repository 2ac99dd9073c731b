"""arq worker settings.

Run with: arq kartpark.workers.settings.WorkerSettings

Sessions are normally folded right after ingestion and statistics rebuilt
right after approval. The cron jobs pick up what those background tasks
missed (process restarts, failures) and retry it.
"""

from __future__ import annotations

from arq import cron
from arq.connections import RedisSettings

from kartpark.config import get_settings
from kartpark.workers.stats_worker import (
    process_pending_sessions,
    recompute_stale_statistics,
    recompute_user_statistics,
    stats_shutdown,
    stats_startup,
)


class WorkerSettings:
    functions = [recompute_user_statistics, recompute_stale_statistics, process_pending_sessions]
    cron_jobs = [
        cron(process_pending_sessions, second={0, 30}, unique=True),
        cron(recompute_stale_statistics, second={15, 45}, unique=True),
    ]
    on_startup = stats_startup
    on_shutdown = stats_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 4
    job_timeout = 300
