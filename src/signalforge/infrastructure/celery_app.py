from celery import Celery
from celery import signals
import time
from prometheus_client import Counter, Histogram
from signalforge.config import get_settings

settings = get_settings()

celery_app = Celery(
    "signalforge",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "signalforge.tasks.sync",
        "signalforge.tasks.predictive",
        "signalforge.tasks.abandonment",
        "signalforge.tasks.lifecycle",
    ],
)

celery_app.conf.update(task_serializer="json", result_serializer="json", accept_content=["json"], timezone="UTC", enable_utc=True)

# Worker-side task metrics (default registry of the worker process)
TASK_SUCCESS = Counter('celery_task_success_total', 'Celery task successes', ['task'])
TASK_FAILURE = Counter('celery_task_failure_total', 'Celery task failures', ['task'])
TASK_DURATION = Histogram('celery_task_duration_seconds', 'Celery task runtime', ['task'], buckets=(0.05,0.1,0.25,0.5,1,2,5,10,30,60))

_task_start_times = {}


@signals.task_prerun.connect
def _task_prerun(sender=None, task_id=None, **kwargs):  # noqa
    _task_start_times[task_id] = time.time()


@signals.task_postrun.connect
def _task_postrun(sender=None, task_id=None, state=None, **kwargs):  # noqa
    name = sender.name if sender else 'unknown'
    start = _task_start_times.pop(task_id, None)
    if start is not None:
        TASK_DURATION.labels(task=name).observe(time.time() - start)
    if state == 'SUCCESS':
        TASK_SUCCESS.labels(task=name).inc()
    elif state is not None:
        TASK_FAILURE.labels(task=name).inc()


# Periodic tasks (beat). Requires worker with -B or separate beat service.
celery_app.conf.beat_schedule = {
    "dispatch-sync-jobs-every-60s": {
        "task": "signalforge.tasks.sync.dispatch_sync_jobs",
        "schedule": 60.0,
    },
    "predictive-engine-15m": {
        "task": "signalforge.tasks.predictive.run_predictive_engine",
        "schedule": 900.0,
    },
    "detect-abandonments-10m": {
        "task": "signalforge.tasks.abandonment.detect_abandonments",
        "schedule": 600.0,
    },
    "cleanup-expired-signals-hourly": {
        "task": "signalforge.tasks.predictive.cleanup_expired_signals",
        "schedule": 3600.0,
    },
}
