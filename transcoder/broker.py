import json
import logging
import time

import redis
from django.conf import settings
from django.db.models import F
from django.db.models.functions import Greatest
from django.utils import timezone

from .models import Job

logger = logging.getLogger(__name__)

TERMINAL_PUBLISH_ATTEMPTS = 3
TERMINAL_PUBLISH_DELAY = 1.0


def get_events_client():
    return redis.Redis.from_url(
        settings.EVENTS_REDIS_URL,
        socket_timeout=settings.EVENTS_SOCKET_TIMEOUT,
        socket_connect_timeout=settings.EVENTS_SOCKET_TIMEOUT,
    )


def encode_event(job_id: str, event: str, data=None) -> str:
    return json.dumps({"jobId": str(job_id), "event": event, "data": data})


class DjangoJobBroker:
    """
    Job state lives in the ``Job`` table, delivery goes through Celery and
    lifecycle events fan out on a Redis pub/sub channel.

    Progress is best-effort: a lost update is logged and forgotten. Terminal
    state is written to the database before it is announced, so a client that
    missed the event still finds it on the row.
    """

    def __init__(self, events=None, channel: str | None = None, *, sleep=time.sleep):
        self._events = events
        self.channel = channel or settings.EVENTS_CHANNEL
        self._sleep = sleep

    @property
    def events(self):
        if self._events is None:
            self._events = get_events_client()
        return self._events

    def enqueue(self, source_key: str) -> str:
        from .tasks import transcode_job

        job = Job.objects.create(source_key=source_key)
        transcode_job.delay(str(job.id))
        logger.info("Queued job %s for %s", job.id, source_key)
        return str(job.id)

    def mark_active(self, job_id: str) -> None:
        try:
            Job.objects.filter(pk=job_id).update(status=Job.Status.ACTIVE, error="", updated_at=timezone.now())
        except Exception:
            logger.warning("Could not mark job %s active", job_id, exc_info=True)

    def publish_progress(self, job_id: str, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        try:
            Job.objects.filter(pk=job_id).update(
                progress=Greatest(F("progress"), percent), updated_at=timezone.now()
            )
            self.events.publish(self.channel, encode_event(job_id, "progress", percent))
        except Exception:
            logger.warning("Dropped progress %s%% for job %s", percent, job_id, exc_info=True)

    def publish_terminal(self, job_id: str, state: str, reason: str | None = None, manifest_key: str = "") -> None:
        if state not in Job.TERMINAL:
            raise ValueError(f"Not a terminal state: {state!r}")

        job = Job.objects.get(pk=job_id)
        job.status = state
        if state == Job.Status.COMPLETED:
            job.progress = 100
            job.package_key = manifest_key
            job.error = ""
        else:
            job.error = (reason or "")[:4000]
        job.save(update_fields=["status", "progress", "error", "package_key", "updated_at"])

        if state == Job.Status.FAILED:
            logger.error("Job %s failed: %s", job_id, reason)
        else:
            logger.info("Job %s completed: %s", job_id, manifest_key)

        message = encode_event(job_id, state, reason if state == Job.Status.FAILED else None)
        for attempt in range(1, TERMINAL_PUBLISH_ATTEMPTS + 1):
            try:
                self.events.publish(self.channel, message)
                return
            except redis.RedisError as exc:
                logger.warning(
                    "Publishing %s for job %s failed (attempt %d/%d): %s",
                    state, job_id, attempt, TERMINAL_PUBLISH_ATTEMPTS, exc,
                )
                if attempt < TERMINAL_PUBLISH_ATTEMPTS:
                    self._sleep(TERMINAL_PUBLISH_DELAY)
        logger.error("Job %s is %s but no subscriber was told; state is on the row", job_id, state)
