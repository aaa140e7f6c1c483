import logging
import os
from celery import Celery
from celery.signals import worker_init
from django.core.exceptions import ImproperlyConfigured

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "hls_pipeline.settings")

logger = logging.getLogger(__name__)

celery_app = Celery("hls_pipeline")
celery_app.config_from_object("django.conf:settings", namespace="CELERY")
celery_app.autodiscover_tasks()


@worker_init.connect
def validate_ladder(**kwargs):
    """Refuse to start a worker with an empty or malformed bitrate ladder."""
    from transcoder.ladder import get_ladder

    try:
        get_ladder()
    except ImproperlyConfigured as exc:
        # Signal.send logs and swallows Exception subclasses; SystemExit gets through.
        logger.critical("Refusing to start worker: %s", exc)
        raise SystemExit(1) from exc
