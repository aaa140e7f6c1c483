import json
import logging
import os
import tempfile

from django.conf import settings
from django.http import StreamingHttpResponse
from rest_framework import renderers, status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .broker import DjangoJobBroker, get_events_client
from .manifest import MASTER_MANIFEST_NAME
from .models import Job
from .notifications import QueueConnection
from .s3 import StorageClient, create_presigned_put, object_url
from .serializers import (
    JobFromKeyRequestSerializer,
    JobSerializer,
    PackageSerializer,
    PresignRequestSerializer,
    PresignResponseSerializer,
    UploadCreateSerializer,
)
from .utils import format_sse, is_video, upload_key

logger = logging.getLogger(__name__)

UNSUPPORTED_TYPE = {"detail": "Unsupported file type. Upload a video."}


class IntakeView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    storage_class = StorageClient
    broker_class = DjangoJobBroker

    def get_storage(self):
        return self.storage_class()

    def get_broker(self):
        return self.broker_class()


class UploadAndCreateJobView(IntakeView):
    """
    Accepts a video through the API server (local dev convenience), stores it
    under uploads/ in object storage and queues a transcoding job.
    """

    def post(self, request):
        ser = UploadCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        upload = ser.validated_data["video"]
        if not is_video(upload.name):
            return Response(UNSUPPORTED_TYPE, status=status.HTTP_400_BAD_REQUEST)

        key = upload_key(upload.name)
        fd, tmp_path = tempfile.mkstemp(suffix=os.path.splitext(upload.name)[1])
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in upload.chunks():
                    f.write(chunk)
            self.get_storage().put(tmp_path, key, content_type=upload.content_type or None)
        finally:
            os.unlink(tmp_path)

        job_id = self.get_broker().enqueue(key)
        return Response({"job_id": job_id, "key": key}, status=status.HTTP_202_ACCEPTED)


class PresignUploadView(IntakeView):
    """
    Returns a presigned PUT URL + recommended key so the client can upload
    directly to MinIO/S3 without streaming through Django.
    """

    def post(self, request):
        ser = PresignRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        filename = ser.validated_data["filename"]
        if not is_video(filename):
            return Response(UNSUPPORTED_TYPE, status=status.HTTP_400_BAD_REQUEST)

        key = upload_key(filename)
        signed = create_presigned_put(key, content_type=ser.validated_data.get("content_type") or None)
        out = PresignResponseSerializer({"key": key, "url": signed["url"], "headers": signed["headers"]}).data
        return Response(out, status=status.HTTP_201_CREATED)


class CreateJobFromKeyView(IntakeView):
    """
    Creates a job for a video already uploaded to MinIO/S3. The object must
    exist: the worker is never handed a job without a source.
    """

    def post(self, request):
        ser = JobFromKeyRequestSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        key = ser.validated_data["key"]

        if not is_video(key):
            return Response(UNSUPPORTED_TYPE, status=status.HTTP_400_BAD_REQUEST)
        if not self.get_storage().exists(key):
            return Response({"detail": f"No uploaded object at {key}"}, status=status.HTTP_404_NOT_FOUND)

        job_id = self.get_broker().enqueue(key)
        return Response({"job_id": job_id}, status=status.HTTP_202_ACCEPTED)


class JobDetailView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        try:
            job = Job.objects.get(pk=job_id)
        except Job.DoesNotExist:
            return Response({"detail": "Not found"}, status=status.HTTP_404_NOT_FOUND)

        data = JobSerializer(job).data
        data["manifest_url"] = object_url(job.package_key) if job.package_key else None
        return Response(data)


class PackageListView(IntakeView):
    """Every packaged video under the HLS prefix with its master playlist URL."""

    def get(self, request):
        names = sorted(self.get_storage().list_packages(settings.HLS_PREFIX))
        packages = [
            {"name": name, "url": object_url(f"{settings.HLS_PREFIX}/{name}/{MASTER_MANIFEST_NAME}")}
            for name in names
        ]
        return Response(PackageSerializer(packages, many=True).data)


class EventStreamRenderer(renderers.BaseRenderer):
    """
    Lets ``Accept: text/event-stream`` (what EventSource sends) through content
    negotiation. Error bodies go out as a single ``error`` event.
    """

    media_type = "text/event-stream"
    format = "event-stream"
    charset = "utf-8"

    def render(self, data, accepted_media_type=None, renderer_context=None):
        if data is None:
            return b""
        return format_sse("error", json.dumps(data)).encode(self.charset)


class JobEventsView(views.APIView):
    """
    Server-sent events for one job: ``progress`` carries the percentage,
    ``status`` carries "completed" or "failed" and ends the stream.
    """

    permission_classes = [AllowAny]
    authentication_classes = []
    renderer_classes = [renderers.JSONRenderer, EventStreamRenderer]

    router = None
    heartbeat = 15.0

    def get(self, request, job_id):
        if not Job.objects.filter(pk=job_id).exists():
            return Response({"detail": "Not found"}, status=status.HTTP_404_NOT_FOUND)

        self.router.start(get_events_client(), settings.EVENTS_CHANNEL)
        conn = QueueConnection()
        self.router.connect(conn)
        self.router.subscribe(conn, job_id)
        # Read after subscribing so a transition in between is not lost.
        job = Job.objects.get(pk=job_id)

        response = StreamingHttpResponse(self.stream(conn, job), content_type="text/event-stream")
        response["Cache-Control"] = "no-cache"
        response["X-Accel-Buffering"] = "no"
        return response

    def stream(self, conn, job):
        last_progress = job.progress
        try:
            yield format_sse("progress", last_progress)
            if job.is_terminal:
                yield format_sse("status", job.status)
                return
            while True:
                message = conn.receive(timeout=self.heartbeat)
                if message is None:
                    yield ": keep-alive\n\n"
                    continue
                event, data = message
                if event == "progress":
                    if data <= last_progress:
                        continue
                    last_progress = data
                yield format_sse(event, data)
                if event == "status":
                    return
        finally:
            self.router.disconnect(conn)
