import logging

from celery import shared_task
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .broker import DjangoJobBroker
from .encoder import FfmpegEncoder
from .ladder import get_ladder
from .models import Job
from .orchestrator import TranscodeOrchestrator
from .s3 import StorageClient

logger = logging.getLogger(__name__)


def build_orchestrator(job: Job, broker=None) -> TranscodeOrchestrator:
    return TranscodeOrchestrator(
        str(job.id),
        job.source_key,
        storage=StorageClient(),
        encoder=FfmpegEncoder(),
        broker=broker or DjangoJobBroker(),
        ladder=get_ladder(),
        workspace_root=settings.TRANSCODER_WORKSPACE_ROOT,
        namespace=settings.HLS_PREFIX,
        codecs=settings.HLS_CODECS,
        segment_seconds=settings.HLS_SEGMENT_SECONDS,
    )


@shared_task(bind=True, acks_late=True)
def transcode_job(self, job_id: str):
    try:
        job = Job.objects.get(pk=job_id)
    except Job.DoesNotExist:
        logger.error("Job %s vanished before it could run", job_id)
        return {"job_id": job_id, "state": Job.Status.FAILED, "reason": "unknown job"}

    if job.is_terminal:
        # Redelivery after the worker already finished; terminal state is set exactly once.
        logger.info("Job %s already %s, skipping redelivery", job_id, job.status)
        return {"job_id": job_id, "state": job.status, "reason": job.error}

    broker = DjangoJobBroker()
    try:
        orchestrator = build_orchestrator(job, broker)
    except ImproperlyConfigured as exc:
        reason = f"configuration error: {exc}"
        broker.publish_terminal(str(job.id), Job.Status.FAILED, reason=reason)
        return {"job_id": job_id, "state": Job.Status.FAILED, "reason": reason}

    outcome = orchestrator.run()
    return {
        "job_id": outcome.job_id,
        "state": outcome.state,
        "reason": outcome.reason,
        "manifest_key": outcome.manifest_key,
    }
